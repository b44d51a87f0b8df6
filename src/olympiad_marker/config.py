"""Runtime configuration for the marking queue, oracle and storage."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_ORACLE_BACKENDS: tuple[str, ...] = ("gemini", "echo")


@dataclass(slots=True)
class SchedulerSettings:
    """Marking scheduler settings."""

    concurrency_limit: int = 3
    wait_poll_seconds: float = 0.5


@dataclass(slots=True)
class OracleSettings:
    """Scoring oracle settings."""

    backend: str = "gemini"
    api_key: str | None = None
    model: str = "gemini-3-pro-preview"
    base_url: str = "https://generativelanguage.googleapis.com"
    timeout_seconds: float = 300.0
    max_retries: int = 2


@dataclass(slots=True)
class StorageSettings:
    """Filesystem storage settings."""

    pages_dir: Path = Path(".olympiad_marker_pages")
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".olympiad_marker.db")
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    oracle: OracleSettings = field(default_factory=OracleSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        return cls(
            db_path=db_path or Path(os.getenv("OLYMPIAD_MARKER_DB_PATH", ".olympiad_marker.db")),
            scheduler=SchedulerSettings(
                concurrency_limit=int(os.getenv("OLYMPIAD_MARKER_CONCURRENCY_LIMIT", "3")),
                wait_poll_seconds=float(os.getenv("OLYMPIAD_MARKER_WAIT_POLL_SECONDS", "0.5")),
            ),
            oracle=OracleSettings(
                backend=os.getenv("OLYMPIAD_MARKER_ORACLE_BACKEND", "gemini").strip().lower(),
                api_key=_first_env(
                    "OLYMPIAD_MARKER_GEMINI_API_KEY",
                    "GEMINI_API_KEY",
                    "API_KEY",
                ),
                model=os.getenv("OLYMPIAD_MARKER_GEMINI_MODEL", "gemini-3-pro-preview"),
                base_url=os.getenv(
                    "OLYMPIAD_MARKER_GEMINI_BASE_URL",
                    "https://generativelanguage.googleapis.com",
                ),
                timeout_seconds=float(
                    os.getenv("OLYMPIAD_MARKER_ORACLE_TIMEOUT_SECONDS", "300.0"),
                ),
                max_retries=int(os.getenv("OLYMPIAD_MARKER_ORACLE_MAX_RETRIES", "2")),
            ),
            storage=StorageSettings(
                pages_dir=Path(
                    os.getenv("OLYMPIAD_MARKER_PAGES_DIR", ".olympiad_marker_pages"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("OLYMPIAD_MARKER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
        )

    def validate(self, *, require_oracle: bool = True) -> None:
        """Raise configuration error if values are out of range."""

        if self.scheduler.concurrency_limit < 1:
            raise ValueError("OLYMPIAD_MARKER_CONCURRENCY_LIMIT must be >= 1.")
        if self.scheduler.wait_poll_seconds <= 0:
            raise ValueError("OLYMPIAD_MARKER_WAIT_POLL_SECONDS must be > 0.")
        if self.storage.sqlite_busy_timeout_ms <= 0:
            raise ValueError("OLYMPIAD_MARKER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not require_oracle:
            return

        if self.oracle.backend not in SUPPORTED_ORACLE_BACKENDS:
            raise ValueError(
                f"Unsupported oracle backend: {self.oracle.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_ORACLE_BACKENDS)}.",
            )
        if self.oracle.timeout_seconds <= 0:
            raise ValueError("OLYMPIAD_MARKER_ORACLE_TIMEOUT_SECONDS must be > 0.")
        if self.oracle.max_retries < 0:
            raise ValueError("OLYMPIAD_MARKER_ORACLE_MAX_RETRIES must be >= 0.")
        if self.oracle.backend == "gemini":
            if not self.oracle.api_key:
                raise ValueError(
                    "Gemini API key is required. Set OLYMPIAD_MARKER_GEMINI_API_KEY "
                    "or use OLYMPIAD_MARKER_ORACLE_BACKEND=echo for offline runs.",
                )
            _validate_base_url(self.oracle.base_url)


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid oracle base URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
