"""Deterministic offline oracle for smoke runs and tests."""

from __future__ import annotations

import hashlib
import time
from collections.abc import Mapping

from olympiad_marker.marking.oracle.base import OracleError, OracleRequest, OracleResponse


class EchoOracle:
    """Derive a stable score from the page bytes and part id; no network."""

    def __init__(
        self,
        *,
        delay_seconds: float = 0.0,
        author_name: str | None = None,
        group_name: str | None = None,
        errors: Mapping[int, Exception] | None = None,
    ) -> None:
        self.delay_seconds = delay_seconds
        self.errors = dict(errors or {})
        self.author_name = author_name
        self.group_name = group_name

    def score(self, request: OracleRequest) -> OracleResponse:
        if not request.page_images:
            raise OracleError("Echo oracle received no page images.")
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)
        error = self.errors.get(request.part_index)
        if error is not None:
            raise error

        digest = hashlib.sha256()
        for image in request.page_images:
            digest.update(image)
        digest.update(request.part.part_id.encode("utf-8"))
        buckets = int(request.part.max_points) + 1
        score = float(int.from_bytes(digest.digest()[:4], "big") % max(1, buckets))

        return OracleResponse(
            score=score,
            explanation=f"Echo verdict for {request.part.name} (part {request.part_index + 1}).",
            confidence=1.0,
            author_name=self.author_name if request.extract_identity else None,
            group_name=self.group_name if request.extract_identity else None,
            total_tokens=0,
        )

    def extract_marking_scheme(self, page_images: list[bytes]) -> list[dict[str, object]]:
        return [
            {"name": f"Problem {index}", "max_points": 7.0, "rubric": "Echo rubric."}
            for index in range(1, len(page_images) + 1)
        ]
