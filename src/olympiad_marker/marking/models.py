"""Domain models for the marking queue."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from olympiad_marker.storage.common import utc_now


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


ELIGIBLE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.PAUSED, JobStatus.FAILED},
)


class FailureClass(str, Enum):
    """Normalized causes attached to paused/failed jobs."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT_ORACLE_ERROR = "transient_oracle_error"
    USER_STOP = "user_stop"
    PERSISTENCE_ERROR = "persistence_error"
    MISSING_PAGES = "missing_pages"
    INTERRUPTED = "interrupted"
    INTERNAL_ERROR = "internal_error"


class OutcomeKind(str, Enum):
    """Terminal result of one worker run."""

    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


OUTCOME_STATUS: dict[OutcomeKind, JobStatus] = {
    OutcomeKind.COMPLETED: JobStatus.COMPLETED,
    OutcomeKind.PAUSED: JobStatus.PAUSED,
    OutcomeKind.FAILED: JobStatus.FAILED,
}


@dataclass(frozen=True, slots=True)
class PartSpec:
    """One scorable problem of the marking scheme."""

    part_id: str
    name: str
    max_points: float
    rubric: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "part_id": self.part_id,
            "name": self.name,
            "max_points": self.max_points,
            "rubric": self.rubric,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PartSpec:
        return cls(
            part_id=str(payload["part_id"]),
            name=str(payload["name"]),
            max_points=float(payload["max_points"]),
            rubric=str(payload.get("rubric", "")),
        )


@dataclass(frozen=True, slots=True)
class MarkingScheme:
    """Paper-level scoring configuration."""

    paper_name: str
    exam_duration: str
    parts: tuple[PartSpec, ...]
    additional_instructions: str = ""


DEFAULT_MARKING_SCHEME = MarkingScheme(
    paper_name="National Math Olympiad 2024",
    exam_duration="3 Hours",
    parts=(
        PartSpec(
            part_id="1",
            name="Problem 1",
            max_points=7,
            rubric=(
                "Standard Olympiad marking (0-7). "
                "0-2 for progress, 6-7 for complete proof."
            ),
        ),
        PartSpec(
            part_id="2",
            name="Problem 2",
            max_points=7,
            rubric="Combinatorics. Look for correct bijection or construction.",
        ),
        PartSpec(
            part_id="3",
            name="Problem 3",
            max_points=7,
            rubric="Geometry. High rigour required.",
        ),
    ),
    additional_instructions=(
        "Be a skeptical examiner. Most progress that doesn't reach a breakthrough "
        "is 0, 1, or 2 points."
    ),
)


@dataclass(frozen=True, slots=True)
class PartResult:
    """Oracle verdict for one part."""

    part_id: str
    score: float
    explanation: str
    confidence: float
    total_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class CandidateIdentity:
    """Identity fields read off the first page by the oracle."""

    author_name: str | None = None
    group_name: str | None = None

    def merge_missing(self, other: CandidateIdentity | None) -> CandidateIdentity:
        """Fill only the fields that are still empty."""

        if other is None:
            return self
        return CandidateIdentity(
            author_name=self.author_name or other.author_name or None,
            group_name=self.group_name or other.group_name or None,
        )


@dataclass(frozen=True, slots=True)
class MarkingJob:
    """Immutable snapshot of one paper's marking progress.

    ``cursor`` is derived from ``results`` so the two can never drift apart.
    Mutations return a new snapshot; the scheduler swaps snapshots under its
    lock and the owning worker threads its own copy forward part by part.
    """

    job_id: str
    queue_position: int
    label: str
    file_name: str
    parts: tuple[PartSpec, ...]
    results: tuple[PartResult, ...] = ()
    status: JobStatus = JobStatus.PENDING
    failure_class: FailureClass | None = None
    error: str | None = None
    identity: CandidateIdentity = field(default_factory=CandidateIdentity)
    has_pages: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if len(self.results) > len(self.parts):
            raise ValueError(
                f"Job {self.job_id} has {len(self.results)} results for {len(self.parts)} parts.",
            )
        for part, result in zip(self.parts, self.results, strict=False):
            if part.part_id != result.part_id:
                raise ValueError(
                    f"Job {self.job_id} result for part {result.part_id!r} "
                    f"does not match part {part.part_id!r}.",
                )
        # A fully scored job stays ``running`` only until the scheduler applies
        # the worker outcome.
        if self.status == JobStatus.COMPLETED and not self.is_complete:
            raise ValueError(
                f"Job {self.job_id} status {self.status.value} contradicts "
                f"cursor {self.cursor}/{self.total_parts}.",
            )
        if self.is_complete and self.status not in {JobStatus.COMPLETED, JobStatus.RUNNING}:
            raise ValueError(
                f"Job {self.job_id} status {self.status.value} contradicts "
                f"cursor {self.cursor}/{self.total_parts}.",
            )

    @property
    def cursor(self) -> int:
        return len(self.results)

    @property
    def total_parts(self) -> int:
        return len(self.parts)

    @property
    def is_complete(self) -> bool:
        return self.cursor == self.total_parts

    @property
    def next_part(self) -> PartSpec | None:
        if self.is_complete:
            return None
        return self.parts[self.cursor]

    @property
    def total_score(self) -> float:
        return sum(result.score for result in self.results)

    @property
    def display_name(self) -> str:
        return self.identity.author_name or self.label

    def with_result(
        self,
        result: PartResult,
        *,
        identity: CandidateIdentity | None = None,
    ) -> MarkingJob:
        """Append the verdict for ``parts[cursor]``.

        Identity is only taken from the first part and never overwrites a
        field that is already present.
        """

        part = self.next_part
        if part is None:
            raise ValueError(f"Job {self.job_id} has no unmarked parts left.")
        if part.part_id != result.part_id:
            raise ValueError(
                f"Expected result for part {part.part_id!r}, got {result.part_id!r}.",
            )
        merged_identity = self.identity
        if self.cursor == 0:
            merged_identity = self.identity.merge_missing(identity)
        return replace(
            self,
            results=(*self.results, result),
            identity=merged_identity,
            updated_at=utc_now(),
        )

    def with_status(
        self,
        status: JobStatus,
        *,
        failure_class: FailureClass | None = None,
        error: str | None = None,
    ) -> MarkingJob:
        """Return a copy in ``status``; ``completed`` requires every part scored."""

        if status == JobStatus.COMPLETED and not self.is_complete:
            raise ValueError(
                f"Job {self.job_id} cannot complete at cursor {self.cursor}/{self.total_parts}.",
            )
        if status != JobStatus.COMPLETED and self.is_complete:
            status = JobStatus.COMPLETED
            failure_class = None
            error = None
        return replace(
            self,
            status=status,
            failure_class=failure_class,
            error=error,
            updated_at=utc_now(),
        )


@dataclass(frozen=True, slots=True)
class WorkerOutcome:
    """Report sent from a worker back to the scheduler when its run ends."""

    job: MarkingJob
    kind: OutcomeKind
    failure_class: FailureClass | None = None
    cause: str | None = None
    parts_scored: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def job_id(self) -> str:
        return self.job.job_id


@dataclass(slots=True)
class JobEventView:
    """Audit trail entry for one job."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
