"""Per-job worker that marks one paper part by part."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from olympiad_marker.marking.cancellation import RunTokens
from olympiad_marker.marking.failure_classifier import classify_oracle_failure
from olympiad_marker.marking.models import (
    CandidateIdentity,
    FailureClass,
    MarkingJob,
    MarkingScheme,
    OutcomeKind,
    PartResult,
    WorkerOutcome,
)
from olympiad_marker.marking.oracle.base import OracleRequest, ScoringOracle
from olympiad_marker.marking.repository import MarkingRepository
from olympiad_marker.storage.page_store import PageImageStore

logger = logging.getLogger(__name__)

STOP_REQUESTED = "Stop requested."
QUOTA_EXCEEDED = "API Quota Exceeded. Pausing all tasks."
QUOTA_EXCEEDED_ELSEWHERE = "Stop requested: API quota exceeded by another paper."
MISSING_PAGES = "Page images missing for job."


class WorkerState(str, Enum):
    """Worker state machine positions."""

    AWAITING_PART = "awaiting_part"
    SCORING_PART = "scoring_part"
    CHECKPOINTED = "checkpointed"
    DONE = "done"
    PAUSED = "paused"
    FAILED = "failed"


@dataclass(slots=True)
class _RunProgress:
    job: MarkingJob
    parts_scored: int = 0
    state: WorkerState = WorkerState.AWAITING_PART


class MarkingWorker:
    """Runs one job to completion, pause or failure.

    The worker only touches ``cursor``/``results``/``identity`` of the job it
    was handed; the status transition out of ``running`` belongs to the
    scheduler, which receives the returned :class:`WorkerOutcome`.
    """

    def __init__(
        self,
        *,
        oracle: ScoringOracle,
        repository: MarkingRepository,
        page_store: PageImageStore,
    ) -> None:
        self.oracle = oracle
        self.repository = repository
        self.page_store = page_store

    def run(
        self,
        job: MarkingJob,
        *,
        scheme: MarkingScheme,
        tokens: RunTokens,
        on_checkpoint: Callable[[MarkingJob], None] | None = None,
    ) -> WorkerOutcome:
        """Mark ``job`` from its cursor; never raises."""

        progress = _RunProgress(job=job)
        try:
            return self._run(
                progress,
                scheme=scheme,
                tokens=tokens,
                on_checkpoint=on_checkpoint,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected worker error for job %s", job.job_id)
            return self._finish(
                progress,
                WorkerState.FAILED,
                failure_class=FailureClass.INTERNAL_ERROR,
                cause=f"Unexpected worker error: {error}",
            )

    def _run(
        self,
        progress: _RunProgress,
        *,
        scheme: MarkingScheme,
        tokens: RunTokens,
        on_checkpoint: Callable[[MarkingJob], None] | None,
    ) -> WorkerOutcome:
        job_id = progress.job.job_id
        pages = self.page_store.load(job_id)
        if not pages:
            return self._finish(
                progress,
                WorkerState.FAILED,
                failure_class=FailureClass.MISSING_PAGES,
                cause=MISSING_PAGES,
            )
        # Parts are fixed per job; the scheme only contributes paper context.
        context = replace(scheme, parts=progress.job.parts)

        while True:
            progress.state = WorkerState.AWAITING_PART
            part = progress.job.next_part
            if part is None:
                return self._finish(progress, WorkerState.DONE)
            stop = _stop_cause(tokens)
            if stop is not None:
                failure_class, cause = stop
                return self._finish(
                    progress,
                    WorkerState.PAUSED,
                    failure_class=failure_class,
                    cause=cause,
                )

            progress.state = WorkerState.SCORING_PART
            part_index = progress.job.cursor
            logger.debug("Job %s: scoring part %d (%s)", job_id, part_index + 1, part.name)
            try:
                response = self.oracle.score(
                    OracleRequest(
                        scheme=context,
                        part=part,
                        part_index=part_index,
                        page_images=pages,
                        extract_identity=part_index == 0,
                        prior_results=progress.job.results,
                        identity=progress.job.identity,
                    ),
                )
            except Exception as error:  # noqa: BLE001
                classification = classify_oracle_failure(error)
                if classification.rate_limited:
                    if tokens.global_stop.set(QUOTA_EXCEEDED):
                        logger.warning(
                            "Job %s: oracle rate limit hit on part %d, pausing all jobs",
                            job_id,
                            part_index + 1,
                        )
                    return self._finish(
                        progress,
                        WorkerState.PAUSED,
                        failure_class=FailureClass.RATE_LIMITED,
                        cause=QUOTA_EXCEEDED,
                        details=classification.to_event_details(),
                    )
                logger.warning(
                    "Job %s: oracle failed on part %d: %s",
                    job_id,
                    part_index + 1,
                    error,
                )
                return self._finish(
                    progress,
                    WorkerState.FAILED,
                    failure_class=classification.failure_class,
                    cause=str(error) or type(error).__name__,
                    details=classification.to_event_details(),
                )

            progress.job = progress.job.with_result(
                PartResult(
                    part_id=part.part_id,
                    score=response.score,
                    explanation=response.explanation,
                    confidence=response.confidence,
                    total_tokens=response.total_tokens,
                ),
                identity=CandidateIdentity(
                    author_name=response.author_name,
                    group_name=response.group_name,
                ),
            )
            progress.parts_scored += 1
            progress.state = WorkerState.CHECKPOINTED
            self._checkpoint(progress.job, on_checkpoint=on_checkpoint)

    def _checkpoint(
        self,
        job: MarkingJob,
        *,
        on_checkpoint: Callable[[MarkingJob], None] | None,
    ) -> None:
        if on_checkpoint is not None:
            on_checkpoint(job)
        try:
            self.repository.save_job(
                job,
                event_type="checkpoint",
                details={"part_id": job.results[-1].part_id},
            )
        except Exception:  # noqa: BLE001
            # A lost write costs at most one re-scored part on resume.
            logger.exception(
                "Job %s: checkpoint at cursor %d was not persisted (%s)",
                job.job_id,
                job.cursor,
                FailureClass.PERSISTENCE_ERROR.value,
            )
        else:
            logger.info("Job %s: checkpoint %d/%d", job.job_id, job.cursor, job.total_parts)

    def _finish(
        self,
        progress: _RunProgress,
        state: WorkerState,
        *,
        failure_class: FailureClass | None = None,
        cause: str | None = None,
        details: dict[str, object] | None = None,
    ) -> WorkerOutcome:
        progress.state = state
        kind = {
            WorkerState.DONE: OutcomeKind.COMPLETED,
            WorkerState.PAUSED: OutcomeKind.PAUSED,
            WorkerState.FAILED: OutcomeKind.FAILED,
        }[state]
        return WorkerOutcome(
            job=progress.job,
            kind=kind,
            failure_class=failure_class,
            cause=cause,
            parts_scored=progress.parts_scored,
            details=dict(details or {}),
        )


def _stop_cause(tokens: RunTokens) -> tuple[FailureClass, str] | None:
    if tokens.user_stop.is_set():
        return FailureClass.USER_STOP, STOP_REQUESTED
    if tokens.global_stop.is_set():
        return FailureClass.RATE_LIMITED, QUOTA_EXCEEDED_ELSEWHERE
    return None
