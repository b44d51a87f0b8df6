"""Durable job store for the marking queue (the persistence gateway)."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from olympiad_marker.marking.models import (
    CandidateIdentity,
    FailureClass,
    JobEventView,
    JobStatus,
    MarkingJob,
    MarkingScheme,
    PartResult,
    PartSpec,
)
from olympiad_marker.storage.alembic_runner import upgrade_head
from olympiad_marker.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from olympiad_marker.storage.sqlmodel_models import (
    ACTIVE_SCHEME_ID,
    MarkingJobEventRow,
    MarkingJobRow,
    MarkingResultRow,
    MarkingSchemeRow,
)

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted before completion."


class MarkingRepository:
    """Job, result and scheme persistence backed by SQLModel + SQLite.

    Every call opens its own session, so one instance can be shared by the
    scheduler and all worker threads.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- marking scheme -------------------------------------------------------

    def save_scheme(self, scheme: MarkingScheme) -> None:
        """Replace the active marking scheme."""

        with Session(self.engine) as session:
            row = session.get(MarkingSchemeRow, ACTIVE_SCHEME_ID)
            if row is None:
                row = MarkingSchemeRow(
                    scheme_id=ACTIVE_SCHEME_ID,
                    paper_name=scheme.paper_name,
                    exam_duration=scheme.exam_duration,
                    additional_instructions=scheme.additional_instructions,
                    parts_json=_dump_parts(scheme.parts),
                    updated_at=to_db_datetime(utc_now()),
                )
            else:
                row.paper_name = scheme.paper_name
                row.exam_duration = scheme.exam_duration
                row.additional_instructions = scheme.additional_instructions
                row.parts_json = _dump_parts(scheme.parts)
                row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def load_scheme(self) -> MarkingScheme | None:
        with Session(self.engine) as session:
            row = session.get(MarkingSchemeRow, ACTIVE_SCHEME_ID)
            if row is None:
                return None
            return MarkingScheme(
                paper_name=row.paper_name,
                exam_duration=row.exam_duration,
                parts=_load_parts(row.parts_json),
                additional_instructions=row.additional_instructions,
            )

    # -- jobs -----------------------------------------------------------------

    def next_queue_position(self) -> int:
        with Session(self.engine) as session:
            current = session.exec(select(func.max(MarkingJobRow.queue_position))).one()
        return 0 if current is None else int(current) + 1

    def insert_job(self, job: MarkingJob) -> None:
        """Persist a newly enqueued job."""

        with Session(self.engine) as session:
            session.add(_to_job_row(job))
            # Child rows reference the job row; it must reach the database first.
            session.flush()
            for index, result in enumerate(job.results):
                session.add(_to_result_row(job.job_id, index, result))
            self._add_event(
                session=session,
                job_id=job.job_id,
                event_type="enqueued",
                status_from=None,
                status_to=job.status,
                details={
                    "file_name": job.file_name,
                    "total_parts": job.total_parts,
                    "queue_position": job.queue_position,
                },
            )
            session.commit()

    def save_job(
        self,
        job: MarkingJob,
        *,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Write the job record and append results that are not stored yet.

        Stored results are never rewritten or removed. A snapshot that is
        behind the stored progress (fewer results than stored, or a completed
        row moving back) is refused, so a stale copy held by another process
        can not leave a row whose status contradicts its results. Returns False
        when the job no longer exists (purged) or the write was refused.
        """

        with Session(self.engine) as session:
            row = session.get(MarkingJobRow, job.job_id)
            if row is None:
                return False
            status_from = JobStatus(row.status)
            stored = int(
                session.exec(
                    select(func.count())
                    .select_from(MarkingResultRow)
                    .where(MarkingResultRow.job_id == job.job_id),
                ).one(),
            )
            if job.cursor < stored or (
                status_from == JobStatus.COMPLETED and job.status != JobStatus.COMPLETED
            ):
                logger.warning(
                    "Job %s: refused stale write (%s at cursor %d, stored %s at cursor %d)",
                    job.job_id,
                    job.status.value,
                    job.cursor,
                    status_from.value,
                    stored,
                )
                return False
            _apply_job_fields(row, job)
            session.add(row)

            for index in range(stored, job.cursor):
                session.add(_to_result_row(job.job_id, index, job.results[index]))

            if event_type is not None:
                self._add_event(
                    session=session,
                    job_id=job.job_id,
                    event_type=event_type,
                    status_from=status_from,
                    status_to=job.status,
                    details={"cursor": job.cursor, **(details or {})},
                )
            session.commit()
            return True

    def save_snapshot(self, jobs: Iterable[MarkingJob]) -> int:
        """Persist a full queue snapshot; returns how many jobs were written."""

        written = 0
        for job in jobs:
            if self.save_job(job):
                written += 1
        return written

    def load_queue(self, *, recover_interrupted: bool = True) -> list[MarkingJob]:
        """Load the queue in insertion order.

        A ``running`` row can only be true while the process that wrote it is
        alive. With ``recover_interrupted`` (only for the process about to mark)
        every such row is durably demoted to ``paused`` first, or to
        ``completed`` if all its parts were already checkpointed. Without it
        the rows are returned as stored.
        """

        if not recover_interrupted:
            return self.list_jobs()
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(MarkingJobRow).where(MarkingJobRow.status == JobStatus.RUNNING.value),
            ).all()
            for row in stale_rows:
                stored = session.exec(
                    select(func.count())
                    .select_from(MarkingResultRow)
                    .where(MarkingResultRow.job_id == row.job_id),
                ).one()
                finished = int(stored) >= len(_load_parts(row.parts_json))
                status_to = JobStatus.COMPLETED if finished else JobStatus.PAUSED
                row.status = status_to.value
                row.failure_class = None if finished else FailureClass.INTERRUPTED.value
                row.error_summary = None if finished else INTERRUPTED_ERROR
                row.updated_at = to_db_datetime(utc_now())
                session.add(row)
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="recovered",
                    status_from=JobStatus.RUNNING,
                    status_to=status_to,
                    details={"cursor": int(stored)},
                )
            if stale_rows:
                session.commit()
                logger.warning("Recovered %d interrupted job(s) as paused", len(stale_rows))

            rows = session.exec(
                select(MarkingJobRow).order_by(col(MarkingJobRow.queue_position).asc()),
            ).all()
            results = self._results_by_job(session=session)
            return [_to_job(row, results.get(row.job_id, [])) for row in rows]

    def get_job(self, *, job_id: str) -> MarkingJob | None:
        with Session(self.engine) as session:
            row = session.get(MarkingJobRow, job_id)
            if row is None:
                return None
            results = self._results_by_job(session=session, job_id=job_id)
            return _to_job(row, results.get(job_id, []))

    def list_jobs(self, *, status: JobStatus | None = None) -> list[MarkingJob]:
        with Session(self.engine) as session:
            statement = select(MarkingJobRow)
            if status is not None:
                statement = statement.where(MarkingJobRow.status == status.value)
            rows = session.exec(
                statement.order_by(col(MarkingJobRow.queue_position).asc()),
            ).all()
            results = self._results_by_job(session=session)
            return [_to_job(row, results.get(row.job_id, [])) for row in rows]

    def list_events(self, *, job_id: str) -> list[JobEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(MarkingJobEventRow)
                .where(MarkingJobEventRow.job_id == job_id)
                .order_by(col(MarkingJobEventRow.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def delete_job(self, *, job_id: str) -> bool:
        """Delete a job with its results and events."""

        with Session(self.engine) as session:
            row = session.get(MarkingJobRow, job_id)
            if row is None:
                return False
            session.exec(sa_delete(MarkingResultRow).where(col(MarkingResultRow.job_id) == job_id))
            session.exec(
                sa_delete(MarkingJobEventRow).where(col(MarkingJobEventRow.job_id) == job_id),
            )
            session.delete(row)
            session.commit()
            return True

    def delete_all_jobs(self) -> int:
        with Session(self.engine) as session:
            session.exec(sa_delete(MarkingResultRow))
            session.exec(sa_delete(MarkingJobEventRow))
            result = session.exec(sa_delete(MarkingJobRow))
            session.commit()
            return int(result.rowcount or 0)

    # -- helpers --------------------------------------------------------------

    def _results_by_job(
        self,
        *,
        session: Session,
        job_id: str | None = None,
    ) -> dict[str, list[MarkingResultRow]]:
        statement = select(MarkingResultRow)
        if job_id is not None:
            statement = statement.where(MarkingResultRow.job_id == job_id)
        rows = session.exec(
            statement.order_by(
                col(MarkingResultRow.job_id).asc(),
                col(MarkingResultRow.part_index).asc(),
            ),
        ).all()
        grouped: dict[str, list[MarkingResultRow]] = defaultdict(list)
        for row in rows:
            grouped[row.job_id].append(row)
        return grouped

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            MarkingJobEventRow(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _dump_parts(parts: tuple[PartSpec, ...]) -> str:
    return json.dumps([part.to_dict() for part in parts], ensure_ascii=False)


def _load_parts(raw: str) -> tuple[PartSpec, ...]:
    payload = json.loads(raw or "[]")
    if not isinstance(payload, list):
        raise ValueError("Stored parts payload must be a JSON list.")
    return tuple(PartSpec.from_dict(item) for item in payload)


def _apply_job_fields(row: MarkingJobRow, job: MarkingJob) -> None:
    row.label = job.label
    row.file_name = job.file_name
    row.status = job.status.value
    row.failure_class = job.failure_class.value if job.failure_class is not None else None
    row.error_summary = job.error
    row.author_name = job.identity.author_name
    row.group_name = job.identity.group_name
    row.has_pages = job.has_pages
    row.updated_at = to_db_datetime(job.updated_at)


def _to_job_row(job: MarkingJob) -> MarkingJobRow:
    return MarkingJobRow(
        job_id=job.job_id,
        queue_position=job.queue_position,
        label=job.label,
        file_name=job.file_name,
        status=job.status.value,
        failure_class=job.failure_class.value if job.failure_class is not None else None,
        error_summary=job.error,
        parts_json=_dump_parts(job.parts),
        author_name=job.identity.author_name,
        group_name=job.identity.group_name,
        has_pages=job.has_pages,
        created_at=to_db_datetime(job.created_at),
        updated_at=to_db_datetime(job.updated_at),
    )


def _to_result_row(job_id: str, index: int, result: PartResult) -> MarkingResultRow:
    return MarkingResultRow(
        job_id=job_id,
        part_index=index,
        part_id=result.part_id,
        score=result.score,
        explanation=result.explanation,
        confidence=result.confidence,
        total_tokens=result.total_tokens,
        created_at=to_db_datetime(utc_now()),
    )


def _to_job(row: MarkingJobRow, result_rows: list[MarkingResultRow]) -> MarkingJob:
    return MarkingJob(
        job_id=row.job_id,
        queue_position=row.queue_position,
        label=row.label,
        file_name=row.file_name,
        parts=_load_parts(row.parts_json),
        results=tuple(
            PartResult(
                part_id=result.part_id,
                score=result.score,
                explanation=result.explanation,
                confidence=result.confidence,
                total_tokens=result.total_tokens,
            )
            for result in result_rows
        ),
        status=JobStatus(row.status),
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        error=row.error_summary,
        identity=CandidateIdentity(author_name=row.author_name, group_name=row.group_name),
        has_pages=row.has_pages,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
