"""Use-case services around the marking scheduler."""

from __future__ import annotations

import csv
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from olympiad_marker.documents import render_pdf_pages
from olympiad_marker.marking.models import (
    DEFAULT_MARKING_SCHEME,
    MarkingJob,
    MarkingScheme,
    PartSpec,
)
from olympiad_marker.marking.repository import MarkingRepository
from olympiad_marker.marking.scheduler import MarkingScheduler
from olympiad_marker.storage.page_store import PageImageStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_POINTS = 7.0
MISSING_VALUE = "N/A"


class SchemeExtractor(Protocol):
    """Oracle capability for reading a marking scheme off rendered pages."""

    def extract_marking_scheme(self, page_images: list[bytes]) -> list[dict[str, Any]]: ...


@dataclass(slots=True)
class IngestSkip:
    """File that could not be turned into a job."""

    path: Path
    reason: str


@dataclass(slots=True)
class IngestSummary:
    """Jobs created by one ingest call and files that were skipped."""

    jobs: list[MarkingJob] = field(default_factory=list)
    skipped: list[IngestSkip] = field(default_factory=list)


class MarkingService:
    """Turns files into queued jobs and queue state into reports."""

    def __init__(
        self,
        *,
        repository: MarkingRepository,
        page_store: PageImageStore,
        scheduler: MarkingScheduler,
        renderer: Callable[[Path], list[bytes]] = render_pdf_pages,
    ) -> None:
        self.repository = repository
        self.page_store = page_store
        self.scheduler = scheduler
        self.renderer = renderer

    def current_scheme(self) -> MarkingScheme:
        return self.repository.load_scheme() or DEFAULT_MARKING_SCHEME

    def set_scheme(self, scheme: MarkingScheme) -> MarkingScheme:
        validate_scheme(scheme)
        self.repository.save_scheme(scheme)
        self.scheduler.set_scheme(scheme)
        logger.info(
            "Active marking scheme set: %s (%d problems)",
            scheme.paper_name,
            len(scheme.parts),
        )
        return scheme

    def load_scheme_file(self, path: Path) -> MarkingScheme:
        """Activate a scheme described by a JSON file (see :func:`scheme_from_dict`)."""

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as error:
            raise ValueError(f"Invalid marking scheme JSON in {path}: {error}") from error
        return self.set_scheme(scheme_from_dict(payload, base=self.current_scheme()))

    def update_scheme(
        self,
        *,
        paper_name: str | None = None,
        exam_duration: str | None = None,
        additional_instructions: str | None = None,
    ) -> MarkingScheme:
        """Change paper-level context; problems are left as they are."""

        current = self.current_scheme()
        return self.set_scheme(
            replace(
                current,
                paper_name=current.paper_name if paper_name is None else paper_name,
                exam_duration=current.exam_duration if exam_duration is None else exam_duration,
                additional_instructions=(
                    current.additional_instructions
                    if additional_instructions is None
                    else additional_instructions
                ),
            ),
        )

    def add_problem(
        self,
        *,
        name: str | None = None,
        max_points: float = DEFAULT_MAX_POINTS,
        rubric: str = "",
    ) -> PartSpec:
        """Append a problem; it is named ``Problem <n>`` unless a name is given."""

        current = self.current_scheme()
        part = PartSpec(
            part_id=_next_part_id(current.parts),
            name=name or f"Problem {len(current.parts) + 1}",
            max_points=max_points,
            rubric=rubric,
        )
        self.set_scheme(replace(current, parts=(*current.parts, part)))
        return part

    def update_problem(
        self,
        part_id: str,
        *,
        name: str | None = None,
        max_points: float | None = None,
        rubric: str | None = None,
    ) -> PartSpec:
        current = self.current_scheme()
        index = _part_index(current, part_id)
        old = current.parts[index]
        part = PartSpec(
            part_id=old.part_id,
            name=old.name if name is None else name,
            max_points=old.max_points if max_points is None else max_points,
            rubric=old.rubric if rubric is None else rubric,
        )
        parts = (*current.parts[:index], part, *current.parts[index + 1 :])
        self.set_scheme(replace(current, parts=parts))
        return part

    def remove_problem(self, part_id: str) -> PartSpec:
        current = self.current_scheme()
        index = _part_index(current, part_id)
        parts = (*current.parts[:index], *current.parts[index + 1 :])
        self.set_scheme(replace(current, parts=parts))
        return current.parts[index]

    def ingest_papers(self, paths: Iterable[Path]) -> IngestSummary:
        """Render each PDF, store its pages and enqueue a ``pending`` job.

        Parts are fixed from the scheme active at ingest time; later scheme
        edits do not change jobs that are already queued.
        """

        scheme = self.current_scheme()
        if not scheme.parts:
            raise ValueError("Marking scheme has no problems; set a scheme before adding papers.")

        summary = IngestSummary()
        for path in paths:
            try:
                images = self.renderer(path)
            except Exception as error:  # noqa: BLE001
                logger.warning("Skipping %s: could not render pages: %s", path, error)
                summary.skipped.append(IngestSkip(path=path, reason=str(error)))
                continue
            if not images:
                logger.warning("Skipping %s: document has no pages", path)
                summary.skipped.append(IngestSkip(path=path, reason="Document has no pages."))
                continue

            job_id = str(uuid4())
            self.page_store.save(job_id, images)
            job = self.scheduler.enqueue(
                MarkingJob(
                    job_id=job_id,
                    queue_position=0,
                    label=path.stem,
                    file_name=path.name,
                    parts=scheme.parts,
                ),
            )
            summary.jobs.append(job)
        return summary

    def extract_scheme(
        self,
        pdf_path: Path,
        *,
        extractor: SchemeExtractor,
        paper_name: str | None = None,
    ) -> MarkingScheme:
        """Read problems and rubrics from a marking-scheme PDF and activate it."""

        images = self.renderer(pdf_path)
        if not images:
            raise ValueError(f"Marking scheme document has no pages: {pdf_path}")
        problems = extractor.extract_marking_scheme(images)
        parts = tuple(
            PartSpec(
                part_id=str(index),
                name=str(problem.get("name") or f"Problem {index}"),
                max_points=float(problem.get("max_points") or DEFAULT_MAX_POINTS),
                rubric=str(problem.get("rubric") or ""),
            )
            for index, problem in enumerate(problems, start=1)
        )
        if not parts:
            raise ValueError(f"No problems found in marking scheme: {pdf_path}")

        current = self.current_scheme()
        return self.set_scheme(
            MarkingScheme(
                paper_name=paper_name or current.paper_name,
                exam_duration=current.exam_duration,
                parts=parts,
                additional_instructions=current.additional_instructions,
            ),
        )

    def export_csv(self, path: Path) -> int:
        """Write one row per job; returns the number of rows written."""

        scheme = self.current_scheme()
        jobs = self.scheduler.snapshot()
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(export_header(scheme))
            for job in jobs:
                writer.writerow(export_row(job, scheme))
        logger.info("Exported %d job(s) to %s", len(jobs), path)
        return len(jobs)


def export_header(scheme: MarkingScheme) -> list[str]:
    return ["Name", "School", "ID", *(part.name for part in scheme.parts), "Total", "Status"]


def export_row(job: MarkingJob, scheme: MarkingScheme) -> list[str]:
    """Scores are matched to scheme columns by part id."""

    scores = {result.part_id: result.score for result in job.results}
    return [
        job.display_name,
        job.identity.group_name or MISSING_VALUE,
        job.job_id,
        *(
            f"{scores[part.part_id]:g}" if part.part_id in scores else MISSING_VALUE
            for part in scheme.parts
        ),
        f"{job.total_score:g}",
        job.status.value,
    ]


def validate_scheme(scheme: MarkingScheme) -> None:
    """Raise ``ValueError`` for a scheme that can not be used for marking."""

    if not scheme.parts:
        raise ValueError("Marking scheme must contain at least one problem.")
    seen: set[str] = set()
    for part in scheme.parts:
        if part.part_id in seen:
            raise ValueError(f"Duplicate problem id in marking scheme: {part.part_id}")
        seen.add(part.part_id)
        if not part.name.strip():
            raise ValueError(f"Problem {part.part_id} needs a name.")
        if part.max_points <= 0:
            raise ValueError(f"Problem {part.part_id} max points must be > 0.")


def scheme_from_dict(
    payload: object,
    *,
    base: MarkingScheme = DEFAULT_MARKING_SCHEME,
) -> MarkingScheme:
    """Build a scheme from JSON data.

    Accepts ``paper_name``, ``exam_duration``, ``additional_instructions`` and
    a ``problems`` list of ``{"name", "max_points", "rubric"}`` objects (the
    camelCase spellings ``paperName``/``maxPoints`` etc. are also read).
    Paper-level keys that are missing are taken from ``base``; problems get
    ids ``"1"``, ``"2"``... unless they carry ``part_id``.
    """

    if not isinstance(payload, dict):
        raise ValueError("Marking scheme JSON must be an object.")
    problems = payload.get("problems")
    if not isinstance(problems, list):
        raise ValueError("Marking scheme JSON needs a 'problems' list.")

    parts: list[PartSpec] = []
    for index, problem in enumerate(problems, start=1):
        if not isinstance(problem, dict):
            raise ValueError(f"Problem {index} must be an object.")
        max_points = _first_key(problem, "max_points", "maxPoints")
        try:
            points = DEFAULT_MAX_POINTS if max_points is None else float(max_points)
        except (TypeError, ValueError) as error:
            raise ValueError(f"Problem {index} max points is not a number.") from error
        parts.append(
            PartSpec(
                part_id=str(problem.get("part_id") or index),
                name=str(problem.get("name") or f"Problem {index}"),
                max_points=points,
                rubric=str(problem.get("rubric") or ""),
            ),
        )

    return MarkingScheme(
        paper_name=str(_first_key(payload, "paper_name", "paperName") or base.paper_name),
        exam_duration=str(
            _first_key(payload, "exam_duration", "examDuration") or base.exam_duration,
        ),
        parts=tuple(parts),
        additional_instructions=str(
            _first_key(payload, "additional_instructions", "additionalInstructions")
            or base.additional_instructions,
        ),
    )


def _first_key(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _next_part_id(parts: tuple[PartSpec, ...]) -> str:
    numeric = [int(part.part_id) for part in parts if part.part_id.isdigit()]
    candidate = max(numeric, default=0) + 1
    taken = {part.part_id for part in parts}
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)


def _part_index(scheme: MarkingScheme, part_id: str) -> int:
    for index, part in enumerate(scheme.parts):
        if part.part_id == part_id:
            return index
    raise ValueError(f"Problem not found in marking scheme: {part_id}")
