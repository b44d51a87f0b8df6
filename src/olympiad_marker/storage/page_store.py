"""Filesystem store for rendered page images of each job."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

_PAGE_GLOB = "page-*.jpg"


class PageImageStore:
    """Keeps JPEG page renders under ``<root>/<job_id>/page-NNNN.jpg``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def save(self, job_id: str, images: list[bytes]) -> None:
        job_dir = self._job_dir(job_id)
        if job_dir.exists():
            shutil.rmtree(job_dir)
        job_dir.mkdir(parents=True, exist_ok=True)
        for index, image in enumerate(images, start=1):
            (job_dir / f"page-{index:04d}.jpg").write_bytes(image)

    def load(self, job_id: str) -> list[bytes]:
        job_dir = self._job_dir(job_id)
        if not job_dir.is_dir():
            return []
        return [path.read_bytes() for path in sorted(job_dir.glob(_PAGE_GLOB))]

    def has_pages(self, job_id: str) -> bool:
        job_dir = self._job_dir(job_id)
        return job_dir.is_dir() and any(job_dir.glob(_PAGE_GLOB))

    def delete(self, job_id: str) -> None:
        job_dir = self._job_dir(job_id)
        if job_dir.exists():
            shutil.rmtree(job_dir)
            logger.debug("Deleted page images for job %s", job_id)

    def clear(self) -> None:
        if not self.root.exists():
            return
        for child in self.root.iterdir():
            if child.is_dir():
                shutil.rmtree(child)
        logger.info("Cleared page image store %s", self.root)

    def _job_dir(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id in {".", ".."}:
            raise ValueError(f"Invalid job id for page storage: {job_id!r}")
        return self.root / job_id
