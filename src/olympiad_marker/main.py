"""CLI entrypoint for olympiad-marker."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from olympiad_marker import __version__
from olympiad_marker.marking.controllers import (
    ExportCommand,
    MarkingCliController,
    PapersAddCommand,
    PapersInspectCommand,
    PapersListCommand,
    PapersPurgeAllCommand,
    PapersPurgeCommand,
    ProblemAddCommand,
    ProblemEditCommand,
    ProblemRemoveCommand,
    RunCommand,
    SchemeExtractCommand,
    SchemeSetCommand,
    SchemeSetDefaultCommand,
    SchemeShowCommand,
    SchemeUpdateCommand,
)
from olympiad_marker.marking.oracle import OracleError
from olympiad_marker.marking.scheduler import JobBusyError, JobNotFoundError

click.rich_click.USE_MARKDOWN = True
MARKING_CONTROLLER = MarkingCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="olympiad-marker")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for queue, worker and oracle messages.",
)
def olympiad_marker(log_level: str) -> None:
    """Olympiad paper marking CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )


@olympiad_marker.group()
def scheme() -> None:
    """Marking scheme commands."""


@scheme.command("show")
@_DB_PATH_OPTION
def scheme_show(db_path: Path | None) -> None:
    """Show the active marking scheme."""

    _emit_lines(_call(lambda: MARKING_CONTROLLER.scheme_show(SchemeShowCommand(db_path=db_path))))


@scheme.command("set-default")
@_DB_PATH_OPTION
def scheme_set_default(db_path: Path | None) -> None:
    """Reset the active marking scheme to the built-in three-problem default."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.scheme_set_default(
                SchemeSetDefaultCommand(db_path=db_path),
            ),
        ),
    )


@scheme.command("extract")
@_DB_PATH_OPTION
@click.argument("pdf_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--paper-name", default=None, help="Override the paper name of the new scheme.")
def scheme_extract(db_path: Path | None, pdf_path: Path, paper_name: str | None) -> None:
    """Read problems and rubrics from a marking-scheme PDF and make them active."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.scheme_extract(
                SchemeExtractCommand(db_path=db_path, pdf_path=pdf_path, paper_name=paper_name),
            ),
        ),
    )


@scheme.command("set")
@_DB_PATH_OPTION
@click.option(
    "--file",
    "scheme_file",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="JSON file with paper_name, exam_duration, additional_instructions and problems.",
)
def scheme_set(db_path: Path | None, scheme_file: Path) -> None:
    """Replace the active marking scheme with one read from a JSON file."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.scheme_set(
                SchemeSetCommand(db_path=db_path, file=scheme_file),
            ),
        ),
    )


@scheme.command("update")
@_DB_PATH_OPTION
@click.option("--paper-name", default=None, help="New paper name.")
@click.option("--duration", "exam_duration", default=None, help="New exam duration.")
@click.option(
    "--instructions",
    "additional_instructions",
    default=None,
    help="Global marking instructions sent with every problem.",
)
def scheme_update(
    db_path: Path | None,
    paper_name: str | None,
    exam_duration: str | None,
    additional_instructions: str | None,
) -> None:
    """Edit the paper name, duration or global instructions of the active scheme."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.scheme_update(
                SchemeUpdateCommand(
                    db_path=db_path,
                    paper_name=paper_name,
                    exam_duration=exam_duration,
                    additional_instructions=additional_instructions,
                ),
            ),
        ),
    )


@scheme.command("add-problem")
@_DB_PATH_OPTION
@click.option("--name", default=None, help="Problem name (default: Problem <n>).")
@click.option(
    "--max-points",
    type=float,
    default=7.0,
    show_default=True,
    help="Maximum score for the problem.",
)
@click.option("--rubric", default="", help="Marking rubric for the problem.")
def scheme_add_problem(
    db_path: Path | None,
    name: str | None,
    max_points: float,
    rubric: str,
) -> None:
    """Append a problem to the active marking scheme."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.problem_add(
                ProblemAddCommand(
                    db_path=db_path,
                    name=name,
                    max_points=max_points,
                    rubric=rubric,
                ),
            ),
        ),
    )


@scheme.command("edit-problem")
@_DB_PATH_OPTION
@click.argument("part_id")
@click.option("--name", default=None, help="New problem name.")
@click.option("--max-points", type=float, default=None, help="New maximum score.")
@click.option("--rubric", default=None, help="New marking rubric.")
def scheme_edit_problem(
    db_path: Path | None,
    part_id: str,
    name: str | None,
    max_points: float | None,
    rubric: str | None,
) -> None:
    """Change the name, maximum score or rubric of one problem."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.problem_edit(
                ProblemEditCommand(
                    db_path=db_path,
                    part_id=part_id,
                    name=name,
                    max_points=max_points,
                    rubric=rubric,
                ),
            ),
        ),
    )


@scheme.command("remove-problem")
@_DB_PATH_OPTION
@click.argument("part_id")
def scheme_remove_problem(db_path: Path | None, part_id: str) -> None:
    """Remove one problem from the active marking scheme."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.problem_remove(
                ProblemRemoveCommand(db_path=db_path, part_id=part_id),
            ),
        ),
    )


@olympiad_marker.group()
def papers() -> None:
    """Paper queue commands."""


@papers.command("add")
@_DB_PATH_OPTION
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
)
def papers_add(db_path: Path | None, paths: tuple[Path, ...]) -> None:
    """Render PDF papers to page images and queue them for marking."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.papers_add(
                PapersAddCommand(db_path=db_path, paths=paths),
            ),
        ),
    )


@papers.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "completed", "failed", "paused"]),
    default=None,
    help="Only show papers in this status.",
)
def papers_list(db_path: Path | None, status: str | None) -> None:
    """List queued papers in queue order."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.papers_list(
                PapersListCommand(db_path=db_path, status=status),
            ),
        ),
    )


@papers.command("inspect")
@_DB_PATH_OPTION
@click.argument("job_id")
@click.option(
    "--events/--no-events",
    "show_events",
    default=False,
    show_default=True,
    help="Print the job's audit trail.",
)
def papers_inspect(db_path: Path | None, job_id: str, show_events: bool) -> None:
    """Show per-problem results of one paper."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.papers_inspect(
                PapersInspectCommand(db_path=db_path, job_id=job_id, show_events=show_events),
            ),
        ),
    )


@papers.command("purge")
@_DB_PATH_OPTION
@click.argument("job_id")
def papers_purge(db_path: Path | None, job_id: str) -> None:
    """Delete one paper, its results and its page images."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.papers_purge(
                PapersPurgeCommand(db_path=db_path, job_id=job_id),
            ),
        ),
    )


@papers.command("purge-all")
@_DB_PATH_OPTION
@click.confirmation_option(prompt="Delete every queued paper and all page images?")
def papers_purge_all(db_path: Path | None) -> None:
    """Delete every paper, result and page image."""

    _emit_lines(
        _call(lambda: MARKING_CONTROLLER.papers_purge_all(PapersPurgeAllCommand(db_path=db_path))),
    )


@olympiad_marker.command("run")
@_DB_PATH_OPTION
@click.option(
    "--concurrency",
    "concurrency_limit",
    type=click.IntRange(min=1, max=32),
    default=None,
    help="Override OLYMPIAD_MARKER_CONCURRENCY_LIMIT for this run.",
)
def run(db_path: Path | None, concurrency_limit: int | None) -> None:
    """Mark every eligible paper; Ctrl-C stops after the parts in flight."""

    _emit_lines(
        _call(
            lambda: MARKING_CONTROLLER.run(
                RunCommand(db_path=db_path, concurrency_limit=concurrency_limit),
                echo=click.echo,
            ),
        ),
    )


@olympiad_marker.command("export")
@_DB_PATH_OPTION
@click.option(
    "--output",
    type=click.Path(path_type=Path, dir_okay=False),
    default=Path("olympiad_results.csv"),
    show_default=True,
    help="CSV file to write.",
)
def export(db_path: Path | None, output: Path) -> None:
    """Export per-problem scores of every paper as CSV."""

    _emit_lines(
        _call(lambda: MARKING_CONTROLLER.export(ExportCommand(db_path=db_path, output=output))),
    )


def _call(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, JobBusyError, JobNotFoundError, OracleError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    olympiad_marker()
