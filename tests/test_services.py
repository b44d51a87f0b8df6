from __future__ import annotations

import csv
import json
from pathlib import Path

import allure
import pytest

from olympiad_marker.marking.models import (
    DEFAULT_MARKING_SCHEME,
    CandidateIdentity,
    JobStatus,
    MarkingScheme,
    PartResult,
)
from olympiad_marker.marking.oracle import EchoOracle
from olympiad_marker.marking.scheduler import MarkingScheduler
from olympiad_marker.marking.services import MarkingService
from olympiad_marker.marking.worker import MarkingWorker

pytestmark = [
    allure.epic("Marking Queue"),
    allure.feature("Services"),
]


def _fake_renderer(path: Path) -> list[bytes]:
    if path.stem == "broken":
        raise RuntimeError("cannot open broken document")
    if path.stem == "blank":
        return []
    return [f"{path.stem}-page-{index}".encode() for index in range(2)]


@pytest.fixture()
def service(repository, page_store):
    scheduler = MarkingScheduler(
        repository=repository,
        worker=MarkingWorker(oracle=EchoOracle(), repository=repository, page_store=page_store),
        page_store=page_store,
        scheme=DEFAULT_MARKING_SCHEME,
    )
    try:
        yield MarkingService(
            repository=repository,
            page_store=page_store,
            scheduler=scheduler,
            renderer=_fake_renderer,
        )
    finally:
        scheduler.shutdown()


def test_ingest_creates_pending_jobs_and_skips_bad_files(service, page_store, tmp_path) -> None:
    summary = service.ingest_papers(
        [
            tmp_path / "alice.pdf",
            tmp_path / "broken.pdf",
            tmp_path / "blank.pdf",
            tmp_path / "bob.pdf",
        ],
    )

    assert [job.label for job in summary.jobs] == ["alice", "bob"]
    assert [job.queue_position for job in summary.jobs] == [0, 1]
    assert {job.status for job in summary.jobs} == {JobStatus.PENDING}
    assert summary.jobs[0].parts == DEFAULT_MARKING_SCHEME.parts
    assert [skip.path.name for skip in summary.skipped] == ["broken.pdf", "blank.pdf"]
    assert "cannot open" in summary.skipped[0].reason
    assert page_store.load(summary.jobs[0].job_id) == [b"alice-page-0", b"alice-page-1"]
    assert [job.label for job in service.repository.list_jobs()] == ["alice", "bob"]


def test_ingest_fixes_parts_from_scheme_at_ingest_time(service, tmp_path) -> None:
    [early] = service.ingest_papers([tmp_path / "early.pdf"]).jobs
    service.set_scheme(
        MarkingScheme(
            paper_name="Shortlist",
            exam_duration="1 Hour",
            parts=DEFAULT_MARKING_SCHEME.parts[:1],
        ),
    )
    [late] = service.ingest_papers([tmp_path / "late.pdf"]).jobs

    assert early.total_parts == 3
    assert late.total_parts == 1
    stored = service.repository.get_job(job_id=early.job_id)
    assert stored is not None and stored.total_parts == 3


def test_ingest_requires_scheme_with_parts(service, tmp_path) -> None:
    service.repository.save_scheme(
        MarkingScheme(paper_name="Empty", exam_duration="-", parts=()),
    )

    with pytest.raises(ValueError, match="no problems"):
        service.ingest_papers([tmp_path / "alice.pdf"])


def test_extract_scheme_activates_extracted_problems(service, tmp_path) -> None:
    scheme = service.extract_scheme(
        tmp_path / "scheme.pdf",
        extractor=EchoOracle(),
        paper_name="Team Selection Test",
    )

    assert scheme.paper_name == "Team Selection Test"
    assert [part.part_id for part in scheme.parts] == ["1", "2"]
    assert [part.name for part in scheme.parts] == ["Problem 1", "Problem 2"]
    assert {part.max_points for part in scheme.parts} == {7.0}
    assert service.repository.load_scheme() == scheme


def test_set_scheme_rejects_empty_parts(service) -> None:
    with pytest.raises(ValueError, match="at least one problem"):
        service.set_scheme(MarkingScheme(paper_name="x", exam_duration="y", parts=()))


def test_export_csv_layout(service, make_job, tmp_path) -> None:
    running = make_job("done").with_status(JobStatus.RUNNING)
    scored = running.with_result(
        PartResult(part_id="1", score=7, explanation="", confidence=1.0),
        identity=CandidateIdentity(author_name="Ada Lovelace", group_name="Lyceum 2"),
    )
    for part_id, score in (("2", 2.5), ("3", 0)):
        scored = scored.with_result(
            PartResult(part_id=part_id, score=score, explanation="", confidence=1.0),
        )
    completed = scored.with_status(JobStatus.COMPLETED)
    partial = (
        make_job("half")
        .with_status(JobStatus.RUNNING)
        .with_result(PartResult(part_id="1", score=3, explanation="", confidence=1.0))
        .with_status(JobStatus.PAUSED)
    )
    service.scheduler.enqueue(completed)
    service.scheduler.enqueue(partial)
    output = tmp_path / "out" / "results.csv"

    assert service.export_csv(output) == 2

    with output.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.reader(handle))
    assert rows == [
        ["Name", "School", "ID", "Problem 1", "Problem 2", "Problem 3", "Total", "Status"],
        ["Ada Lovelace", "Lyceum 2", "done", "7", "2.5", "0", "9.5", "completed"],
        ["paper-half", "N/A", "half", "3", "N/A", "N/A", "3", "paused"],
    ]


def test_update_scheme_changes_paper_context_only(service) -> None:
    scheme = service.update_scheme(
        paper_name="Team Selection Test",
        additional_instructions="Be strict.",
    )

    assert scheme.paper_name == "Team Selection Test"
    assert scheme.exam_duration == DEFAULT_MARKING_SCHEME.exam_duration
    assert scheme.additional_instructions == "Be strict."
    assert scheme.parts == DEFAULT_MARKING_SCHEME.parts
    assert service.repository.load_scheme() == scheme


def test_problem_add_edit_remove(service) -> None:
    added = service.add_problem(max_points=10, rubric="Inequality.")
    assert added.part_id == "4"
    assert added.name == "Problem 4"

    edited = service.update_problem("2", name="Combinatorics", max_points=5)
    assert edited.rubric == DEFAULT_MARKING_SCHEME.parts[1].rubric

    removed = service.remove_problem("1")
    assert removed.name == "Problem 1"

    scheme = service.repository.load_scheme()
    assert scheme is not None
    assert [(part.part_id, part.name, part.max_points) for part in scheme.parts] == [
        ("2", "Combinatorics", 5),
        ("3", "Problem 3", 7),
        ("4", "Problem 4", 10),
    ]
    assert service.add_problem(name="Functional equation").part_id == "5"


def test_problem_edits_are_validated(service) -> None:
    with pytest.raises(ValueError, match="Problem not found"):
        service.update_problem("9", name="Nope")
    with pytest.raises(ValueError, match="max points must be > 0"):
        service.update_problem("1", max_points=0)
    service.remove_problem("1")
    service.remove_problem("2")
    with pytest.raises(ValueError, match="at least one problem"):
        service.remove_problem("3")

    assert [part.part_id for part in service.current_scheme().parts] == ["3"]


def test_load_scheme_file_reads_both_key_spellings(service, tmp_path) -> None:
    path = tmp_path / "scheme.json"
    path.write_text(
        json.dumps(
            {
                "paperName": "Regional Round",
                "additional_instructions": "Partial credit allowed.",
                "problems": [
                    {"name": "Algebra", "maxPoints": 10, "rubric": "Full solution."},
                    {"name": "Geometry", "max_points": "6"},
                    {},
                ],
            },
        ),
        encoding="utf-8",
    )

    scheme = service.load_scheme_file(path)

    assert scheme.paper_name == "Regional Round"
    assert scheme.exam_duration == DEFAULT_MARKING_SCHEME.exam_duration
    assert scheme.additional_instructions == "Partial credit allowed."
    assert [(part.part_id, part.name, part.max_points) for part in scheme.parts] == [
        ("1", "Algebra", 10),
        ("2", "Geometry", 6),
        ("3", "Problem 3", 7),
    ]
    assert service.repository.load_scheme() == scheme


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("{not json", "Invalid marking scheme JSON"),
        ("[]", "must be an object"),
        ('{"paper_name": "x"}', "'problems' list"),
        ('{"problems": []}', "at least one problem"),
        ('{"problems": [{"max_points": "seven"}]}', "not a number"),
        ('{"problems": [{"part_id": "a"}, {"part_id": "a"}]}', "Duplicate problem id"),
    ],
)
def test_load_scheme_file_rejects_bad_files(service, tmp_path, content, message) -> None:
    path = tmp_path / "scheme.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError, match=message):
        service.load_scheme_file(path)

    assert service.repository.load_scheme() is None
