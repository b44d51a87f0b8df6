"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from olympiad_marker.marking.models import MarkingJob, PartSpec
from olympiad_marker.marking.oracle.base import OracleRequest, OracleResponse
from olympiad_marker.marking.repository import MarkingRepository
from olympiad_marker.storage.page_store import PageImageStore

THREE_PARTS = tuple(
    PartSpec(part_id=str(index), name=f"Problem {index}", max_points=7, rubric=f"Rubric {index}")
    for index in (1, 2, 3)
)

Handler = Callable[[OracleRequest], OracleResponse]


def fixed_score(request: OracleRequest) -> OracleResponse:
    return OracleResponse(
        score=float(request.part_index + 1),
        explanation=f"scored {request.part.part_id}",
        confidence=0.9,
        total_tokens=10,
    )


class ScriptedOracle:
    """Thread-safe fake oracle; page bytes carry the job id."""

    def __init__(self, handler: Handler = fixed_score) -> None:
        self.handler = handler
        self.calls: list[tuple[str, str]] = []
        self.requests: list[OracleRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def score(self, request: OracleRequest) -> OracleResponse:
        job_id = request.page_images[0].decode("utf-8")
        with self._lock:
            self.calls.append((job_id, request.part.part_id))
            self.requests.append(request)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return self.handler(request)
        finally:
            with self._lock:
                self.in_flight -= 1

    def parts_called(self, job_id: str) -> list[str]:
        with self._lock:
            return [part_id for called_job, part_id in self.calls if called_job == job_id]

    def jobs_in_call_order(self) -> list[str]:
        with self._lock:
            seen: list[str] = []
            for job_id, _ in self.calls:
                if job_id not in seen:
                    seen.append(job_id)
            return seen


def new_job(
    job_id: str,
    *,
    position: int = 0,
    parts: tuple[PartSpec, ...] = THREE_PARTS,
) -> MarkingJob:
    return MarkingJob(
        job_id=job_id,
        queue_position=position,
        label=f"paper-{job_id}",
        file_name=f"paper-{job_id}.pdf",
        parts=parts,
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[MarkingRepository]:
    repo = MarkingRepository(tmp_path / "marking.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def page_store(tmp_path: Path) -> PageImageStore:
    return PageImageStore(tmp_path / "pages")


@pytest.fixture()
def scripted_oracle() -> type[ScriptedOracle]:
    return ScriptedOracle


@pytest.fixture()
def make_job() -> Callable[..., MarkingJob]:
    return new_job


@pytest.fixture()
def three_parts() -> tuple[PartSpec, ...]:
    return THREE_PARTS
