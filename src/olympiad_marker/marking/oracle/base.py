"""Oracle interface for scoring one part of a paper."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from olympiad_marker.marking.models import (
    CandidateIdentity,
    MarkingScheme,
    PartResult,
    PartSpec,
)


@dataclass(slots=True)
class OracleRequest:
    """Everything the oracle needs for one call; nothing is kept between calls."""

    scheme: MarkingScheme
    part: PartSpec
    part_index: int
    page_images: list[bytes]
    extract_identity: bool
    prior_results: tuple[PartResult, ...] = ()
    identity: CandidateIdentity = field(default_factory=CandidateIdentity)


@dataclass(slots=True)
class OracleResponse:
    """Parsed oracle verdict."""

    score: float
    explanation: str
    confidence: float
    author_name: str | None = None
    group_name: str | None = None
    total_tokens: int | None = None


class OracleError(RuntimeError):
    """Oracle call failure with rate-limit hint."""

    def __init__(
        self,
        message: str,
        *,
        rate_limited: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited
        self.status_code = status_code


class ScoringOracle(Protocol):
    """Protocol implemented by scoring oracles."""

    def score(self, request: OracleRequest) -> OracleResponse:
        """Score one part; raise ``OracleError`` on failure."""
