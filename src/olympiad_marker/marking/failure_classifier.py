"""Deterministic oracle failure classification for worker pause/fail policy."""

from __future__ import annotations

from dataclasses import dataclass

from olympiad_marker.marking.models import FailureClass
from olympiad_marker.marking.oracle.base import OracleError

ORACLE_FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "429",
    "too many requests",
    "rate limit",
    "ratelimit",
    "quota",
    "resource_exhausted",
    "resource exhausted",
)


@dataclass(slots=True)
class OracleFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def rate_limited(self) -> bool:
        return self.failure_class == FailureClass.RATE_LIMITED

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": ORACLE_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_oracle_failure(error: BaseException) -> OracleFailureClassification:
    """Classify an oracle failure as a global rate limit or a per-job error."""

    if isinstance(error, OracleError):
        if error.rate_limited:
            return OracleFailureClassification(
                failure_class=FailureClass.RATE_LIMITED,
                reason_code="oracle_rate_limited",
                matched_rule="oracle_flag",
                matched_pattern=None,
            )
        if error.status_code == 429:  # noqa: PLR2004
            return OracleFailureClassification(
                failure_class=FailureClass.RATE_LIMITED,
                reason_code="oracle_rate_limited",
                matched_rule="http_status",
                matched_pattern="429",
            )

    pattern = _first_match(str(error).lower(), _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return OracleFailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code="oracle_rate_limited",
            matched_rule="rate_limit_message",
            matched_pattern=pattern,
        )

    return OracleFailureClassification(
        failure_class=FailureClass.TRANSIENT_ORACLE_ERROR,
        reason_code=(
            "oracle_error" if isinstance(error, OracleError) else "oracle_unexpected_error"
        ),
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
