from __future__ import annotations

from pathlib import Path

import allure
import pytest

from olympiad_marker.config import OracleSettings, SchedulerSettings, Settings, StorageSettings

pytestmark = [
    allure.epic("Marking Queue"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "OLYMPIAD_MARKER_DB_PATH",
    "OLYMPIAD_MARKER_CONCURRENCY_LIMIT",
    "OLYMPIAD_MARKER_WAIT_POLL_SECONDS",
    "OLYMPIAD_MARKER_ORACLE_BACKEND",
    "OLYMPIAD_MARKER_GEMINI_API_KEY",
    "GEMINI_API_KEY",
    "API_KEY",
    "OLYMPIAD_MARKER_GEMINI_MODEL",
    "OLYMPIAD_MARKER_GEMINI_BASE_URL",
    "OLYMPIAD_MARKER_ORACLE_TIMEOUT_SECONDS",
    "OLYMPIAD_MARKER_ORACLE_MAX_RETRIES",
    "OLYMPIAD_MARKER_PAGES_DIR",
    "OLYMPIAD_MARKER_SQLITE_BUSY_TIMEOUT_MS",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_from_env_defaults(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".olympiad_marker.db")
    assert settings.scheduler.concurrency_limit == 3
    assert settings.oracle.backend == "gemini"
    assert settings.oracle.model == "gemini-3-pro-preview"
    assert settings.oracle.api_key is None
    assert settings.storage.pages_dir == Path(".olympiad_marker_pages")


def test_from_env_reads_overrides(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("OLYMPIAD_MARKER_CONCURRENCY_LIMIT", "5")
    clean_env.setenv("OLYMPIAD_MARKER_ORACLE_BACKEND", " ECHO ")
    clean_env.setenv("OLYMPIAD_MARKER_PAGES_DIR", str(tmp_path / "pages"))
    clean_env.setenv("OLYMPIAD_MARKER_ORACLE_TIMEOUT_SECONDS", "12.5")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.scheduler.concurrency_limit == 5
    assert settings.oracle.backend == "echo"
    assert settings.oracle.timeout_seconds == 12.5
    assert settings.storage.pages_dir == tmp_path / "pages"
    settings.validate()


def test_api_key_falls_back_to_generic_names(clean_env) -> None:
    clean_env.setenv("API_KEY", "generic")
    assert Settings.from_env().oracle.api_key == "generic"

    clean_env.setenv("GEMINI_API_KEY", "gemini")
    assert Settings.from_env().oracle.api_key == "gemini"

    clean_env.setenv("OLYMPIAD_MARKER_GEMINI_API_KEY", "specific")
    assert Settings.from_env().oracle.api_key == "specific"


def test_validate_rejects_zero_concurrency() -> None:
    settings = Settings(scheduler=SchedulerSettings(concurrency_limit=0))

    with pytest.raises(ValueError, match="CONCURRENCY_LIMIT must be >= 1"):
        settings.validate(require_oracle=False)


def test_validate_rejects_non_positive_busy_timeout() -> None:
    settings = Settings(storage=StorageSettings(sqlite_busy_timeout_ms=0))

    with pytest.raises(ValueError, match="BUSY_TIMEOUT_MS must be > 0"):
        settings.validate(require_oracle=False)


def test_validate_requires_gemini_api_key() -> None:
    settings = Settings(oracle=OracleSettings(backend="gemini", api_key=None))

    settings.validate(require_oracle=False)
    with pytest.raises(ValueError, match="Gemini API key is required"):
        settings.validate()


def test_validate_rejects_unknown_backend() -> None:
    settings = Settings(oracle=OracleSettings(backend="openai"))

    with pytest.raises(ValueError, match="Unsupported oracle backend: 'openai'"):
        settings.validate()


def test_validate_rejects_invalid_base_url() -> None:
    settings = Settings(
        oracle=OracleSettings(backend="gemini", api_key="k", base_url="ftp://example.com"),
    )

    with pytest.raises(ValueError, match="Invalid oracle base URL"):
        settings.validate()


def test_validate_rejects_negative_retries() -> None:
    settings = Settings(oracle=OracleSettings(backend="echo", max_retries=-1))

    with pytest.raises(ValueError, match="MAX_RETRIES must be >= 0"):
        settings.validate()
