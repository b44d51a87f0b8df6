"""Scoring oracle implementations."""

from olympiad_marker.marking.oracle.base import (
    OracleError,
    OracleRequest,
    OracleResponse,
    ScoringOracle,
)
from olympiad_marker.marking.oracle.echo_oracle import EchoOracle
from olympiad_marker.marking.oracle.gemini import GeminiOracle

__all__ = [
    "EchoOracle",
    "GeminiOracle",
    "OracleError",
    "OracleRequest",
    "OracleResponse",
    "ScoringOracle",
]
