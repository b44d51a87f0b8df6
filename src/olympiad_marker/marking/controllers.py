"""Controllers for marking CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from olympiad_marker.config import Settings
from olympiad_marker.marking.models import (
    DEFAULT_MARKING_SCHEME,
    JobStatus,
    MarkingJob,
    MarkingScheme,
)
from olympiad_marker.marking.oracle import (
    EchoOracle,
    GeminiOracle,
    OracleError,
    OracleRequest,
    OracleResponse,
)
from olympiad_marker.marking.repository import MarkingRepository
from olympiad_marker.marking.scheduler import MarkingScheduler, SchedulerStatus
from olympiad_marker.marking.services import MarkingService
from olympiad_marker.marking.worker import MarkingWorker
from olympiad_marker.storage.page_store import PageImageStore

EchoFn = Callable[[str], None]


@dataclass(slots=True)
class SchemeShowCommand:
    """CLI inputs for scheme show command."""

    db_path: Path | None


@dataclass(slots=True)
class SchemeSetDefaultCommand:
    """CLI inputs for resetting the scheme to the built-in default."""

    db_path: Path | None


@dataclass(slots=True)
class SchemeExtractCommand:
    """CLI inputs for reading a scheme off a marking-scheme PDF."""

    db_path: Path | None
    pdf_path: Path
    paper_name: str | None


@dataclass(slots=True)
class SchemeSetCommand:
    """CLI inputs for activating a scheme from a JSON file."""

    db_path: Path | None
    file: Path


@dataclass(slots=True)
class SchemeUpdateCommand:
    """CLI inputs for editing paper-level scheme context."""

    db_path: Path | None
    paper_name: str | None
    exam_duration: str | None
    additional_instructions: str | None


@dataclass(slots=True)
class ProblemAddCommand:
    """CLI inputs for appending a problem to the scheme."""

    db_path: Path | None
    name: str | None
    max_points: float
    rubric: str


@dataclass(slots=True)
class ProblemEditCommand:
    """CLI inputs for changing one problem of the scheme."""

    db_path: Path | None
    part_id: str
    name: str | None
    max_points: float | None
    rubric: str | None


@dataclass(slots=True)
class ProblemRemoveCommand:
    """CLI inputs for removing one problem from the scheme."""

    db_path: Path | None
    part_id: str


@dataclass(slots=True)
class PapersAddCommand:
    """CLI inputs for queueing papers."""

    db_path: Path | None
    paths: tuple[Path, ...]


@dataclass(slots=True)
class PapersListCommand:
    """CLI inputs for queue listing."""

    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class PapersInspectCommand:
    """CLI inputs for job inspection."""

    db_path: Path | None
    job_id: str
    show_events: bool


@dataclass(slots=True)
class PapersPurgeCommand:
    """CLI inputs for single job purge."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class PapersPurgeAllCommand:
    """CLI inputs for purging the whole queue."""

    db_path: Path | None


@dataclass(slots=True)
class RunCommand:
    """CLI inputs for a marking run."""

    db_path: Path | None
    concurrency_limit: int | None


@dataclass(slots=True)
class ExportCommand:
    """CLI inputs for CSV export."""

    db_path: Path | None
    output: Path


@dataclass(slots=True)
class _Runtime:
    repository: MarkingRepository
    page_store: PageImageStore
    scheduler: MarkingScheduler
    service: MarkingService


class _OfflineOracle:
    """Placeholder for commands that queue or inspect jobs but never mark them."""

    def score(self, request: OracleRequest) -> OracleResponse:
        raise OracleError(
            f"No oracle configured for this command (part {request.part.part_id}).",
        )


class MarkingCliController:
    """Coordinates scheme, queue and run CLI operations."""

    def scheme_show(self, command: SchemeShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            scheme = runtime.service.current_scheme()
        return _scheme_lines(scheme)

    def scheme_set_default(self, command: SchemeSetDefaultCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            scheme = runtime.service.set_scheme(DEFAULT_MARKING_SCHEME)
        return ["Marking scheme reset to default.", *_scheme_lines(scheme)]

    def scheme_extract(self, command: SchemeExtractCommand) -> list[str]:
        settings = _settings(command.db_path, require_oracle=True)
        with _oracle(settings) as oracle, _runtime(settings) as runtime:
            scheme = runtime.service.extract_scheme(
                command.pdf_path,
                extractor=oracle,
                paper_name=command.paper_name,
            )
        return [f"Marking scheme extracted from {command.pdf_path}.", *_scheme_lines(scheme)]

    def scheme_set(self, command: SchemeSetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            scheme = runtime.service.load_scheme_file(command.file)
        return [f"Marking scheme loaded from {command.file}.", *_scheme_lines(scheme)]

    def scheme_update(self, command: SchemeUpdateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            scheme = runtime.service.update_scheme(
                paper_name=command.paper_name,
                exam_duration=command.exam_duration,
                additional_instructions=command.additional_instructions,
            )
        return ["Marking scheme updated.", *_scheme_lines(scheme)]

    def problem_add(self, command: ProblemAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            part = runtime.service.add_problem(
                name=command.name,
                max_points=command.max_points,
                rubric=command.rubric,
            )
            scheme = runtime.service.current_scheme()
        return [f"Added problem [{part.part_id}] {part.name}.", *_scheme_lines(scheme)]

    def problem_edit(self, command: ProblemEditCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            part = runtime.service.update_problem(
                command.part_id,
                name=command.name,
                max_points=command.max_points,
                rubric=command.rubric,
            )
            scheme = runtime.service.current_scheme()
        return [f"Updated problem [{part.part_id}] {part.name}.", *_scheme_lines(scheme)]

    def problem_remove(self, command: ProblemRemoveCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            part = runtime.service.remove_problem(command.part_id)
            scheme = runtime.service.current_scheme()
        return [f"Removed problem [{part.part_id}] {part.name}.", *_scheme_lines(scheme)]

    def papers_add(self, command: PapersAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            runtime.scheduler.load(recover_interrupted=False)
            summary = runtime.service.ingest_papers(command.paths)

        lines = [f"Papers queued: {len(summary.jobs)} skipped={len(summary.skipped)}"]
        lines.extend(
            f"  {job.job_id} label={job.label} parts={job.total_parts} status={job.status.value}"
            for job in summary.jobs
        )
        lines.extend(f"  skipped {skip.path}: {skip.reason}" for skip in summary.skipped)
        return lines

    def papers_list(self, command: PapersListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _runtime(settings) as runtime:
            jobs = runtime.repository.list_jobs(status=status_filter)

        if not jobs:
            return ["No papers queued."]
        return [_job_line(job) for job in jobs]

    def papers_inspect(self, command: PapersInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            job = runtime.repository.get_job(job_id=command.job_id)
            if job is None:
                raise ValueError(f"Job not found: {command.job_id}")
            events = (
                runtime.repository.list_events(job_id=command.job_id)
                if command.show_events
                else []
            )
            has_pages = runtime.page_store.has_pages(command.job_id)

        lines = [
            f"Job: {job.job_id}",
            f"Label: {job.label} ({job.file_name})",
            f"Status: {job.status.value}",
            f"Progress: {job.cursor}/{job.total_parts}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error or '-'}",
            f"Candidate: {job.identity.author_name or '-'}",
            f"School: {job.identity.group_name or '-'}",
            f"Page images: {'yes' if has_pages else 'missing'}",
            f"Total score: {job.total_score:g}",
        ]
        for part, result in zip(job.parts, job.results, strict=False):
            lines.append(
                f"  {part.name}: {result.score:g}/{part.max_points:g} "
                f"confidence={result.confidence:.2f}",
            )
            lines.append(f"    {result.explanation}")
        for part in job.parts[job.cursor :]:
            lines.append(f"  {part.name}: -/{part.max_points:g}")
        if command.show_events:
            lines.append("Events:")
            for event in events:
                lines.append(
                    f"  {event.created_at.isoformat()} {event.event_type} "
                    f"{event.status_from.value if event.status_from else '-'}"
                    f"->{event.status_to.value if event.status_to else '-'} "
                    f"{event.details or ''}".rstrip(),
                )
        return lines

    def papers_purge(self, command: PapersPurgeCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            runtime.scheduler.load(recover_interrupted=False)
            job = runtime.scheduler.purge(command.job_id)
        return [f"Purged job {job.job_id} ({job.label})."]

    def papers_purge_all(self, command: PapersPurgeAllCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            runtime.scheduler.load(recover_interrupted=False)
            removed = runtime.scheduler.purge_all()
        return [f"Purged {removed} job(s) and their page images."]

    def run(self, command: RunCommand, *, echo: EchoFn | None = None) -> list[str]:
        """Mark every eligible job until the queue drains or the user interrupts."""

        settings = Settings.from_env(db_path=command.db_path)
        if command.concurrency_limit is not None:
            settings.scheduler.concurrency_limit = command.concurrency_limit
        settings.validate()

        interrupted = False
        with _oracle(settings) as oracle, _runtime(settings, oracle=oracle) as runtime:
            scheduler = runtime.scheduler
            loaded = scheduler.load()
            scheduler.start()
            last_line = ""
            try:
                while not scheduler.wait_idle(settings.scheduler.wait_poll_seconds):
                    line = _status_line(scheduler.status())
                    if echo is not None and line != last_line:
                        echo(line)
                        last_line = line
            except KeyboardInterrupt:
                interrupted = True
                if echo is not None:
                    echo("Stop requested; waiting for in-flight parts to finish...")
                scheduler.stop()
                scheduler.wait_idle()
            status = scheduler.status()
            jobs = scheduler.snapshot()

        lines = [
            f"Run {'stopped' if interrupted else 'finished'}: loaded={loaded} "
            f"{_counts_text(status)}",
        ]
        if status.stop_reason:
            lines.append(f"Stop reason: {status.stop_reason}")
        lines.extend(_job_line(job) for job in jobs)
        return lines

    def export(self, command: ExportCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            runtime.scheduler.load(recover_interrupted=False)
            rows = runtime.service.export_csv(command.output)
        return [f"Exported {rows} paper(s) to {command.output}"]


def _settings(db_path: Path | None, *, require_oracle: bool = False) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate(require_oracle=require_oracle)
    return settings


def _build_oracle(settings: Settings) -> EchoOracle | GeminiOracle:
    if settings.oracle.backend == "echo":
        return EchoOracle()
    return GeminiOracle(
        api_key=settings.oracle.api_key or "",
        model=settings.oracle.model,
        base_url=settings.oracle.base_url,
        timeout_seconds=settings.oracle.timeout_seconds,
        max_retries=settings.oracle.max_retries,
    )


@contextmanager
def _oracle(settings: Settings) -> Iterator[EchoOracle | GeminiOracle]:
    oracle = _build_oracle(settings)
    try:
        yield oracle
    finally:
        if isinstance(oracle, GeminiOracle):
            oracle.close()


@contextmanager
def _runtime(
    settings: Settings,
    *,
    oracle: EchoOracle | GeminiOracle | None = None,
) -> Iterator[_Runtime]:
    repository = MarkingRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.storage.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    page_store = PageImageStore(settings.storage.pages_dir)
    scheme = repository.load_scheme() or DEFAULT_MARKING_SCHEME
    scheduler = MarkingScheduler(
        repository=repository,
        worker=MarkingWorker(
            oracle=oracle if oracle is not None else _OfflineOracle(),
            repository=repository,
            page_store=page_store,
        ),
        page_store=page_store,
        scheme=scheme,
        concurrency_limit=settings.scheduler.concurrency_limit,
    )
    try:
        yield _Runtime(
            repository=repository,
            page_store=page_store,
            scheduler=scheduler,
            service=MarkingService(
                repository=repository,
                page_store=page_store,
                scheduler=scheduler,
            ),
        )
    finally:
        scheduler.shutdown()
        repository.close()


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _scheme_lines(scheme: MarkingScheme) -> list[str]:
    lines = [
        f"Paper: {scheme.paper_name}",
        f"Duration: {scheme.exam_duration}",
        f"Instructions: {scheme.additional_instructions or '-'}",
        f"Problems: {len(scheme.parts)}",
    ]
    for part in scheme.parts:
        lines.append(f"  [{part.part_id}] {part.name} (max {part.max_points:g}): {part.rubric}")
    return lines


def _job_line(job: MarkingJob) -> str:
    line = (
        f"{job.job_id} {job.display_name} status={job.status.value} "
        f"progress={job.cursor}/{job.total_parts} total={job.total_score:g}"
    )
    if job.error:
        line += f" error={job.error}"
    return line


def _counts_text(status: SchedulerStatus) -> str:
    return " ".join(f"{key.value}={count}" for key, count in status.counts.items())


def _status_line(status: SchedulerStatus) -> str:
    return (
        f"[{status.state.value}] active={status.active_workers}/{status.concurrency_limit} "
        f"{_counts_text(status)}"
    )
