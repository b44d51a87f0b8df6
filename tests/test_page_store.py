from __future__ import annotations

from pathlib import Path

import allure
import pytest

from olympiad_marker.storage.page_store import PageImageStore

pytestmark = [
    allure.epic("Marking Queue"),
    allure.feature("Page Images"),
]


def test_save_and_load_keep_page_order(page_store: PageImageStore) -> None:
    pages = [f"page-{index}".encode() for index in range(12)]
    page_store.save("job-1", pages)

    assert page_store.load("job-1") == pages
    assert page_store.has_pages("job-1")


def test_save_replaces_previous_pages(page_store: PageImageStore) -> None:
    page_store.save("job-1", [b"a", b"b", b"c"])
    page_store.save("job-1", [b"z"])

    assert page_store.load("job-1") == [b"z"]


def test_missing_job_has_no_pages(page_store: PageImageStore) -> None:
    assert page_store.load("unknown") == []
    assert not page_store.has_pages("unknown")


def test_delete_and_clear(page_store: PageImageStore, tmp_path: Path) -> None:
    page_store.save("job-1", [b"a"])
    page_store.save("job-2", [b"b"])

    page_store.delete("job-1")
    assert not page_store.has_pages("job-1")
    assert page_store.has_pages("job-2")

    page_store.clear()
    assert not page_store.has_pages("job-2")
    assert (tmp_path / "pages").exists()


@pytest.mark.parametrize("job_id", ["", "..", "a/b", "a\\b"])
def test_rejects_path_like_job_ids(page_store: PageImageStore, job_id: str) -> None:
    with pytest.raises(ValueError, match="Invalid job id"):
        page_store.load(job_id)
