from pathlib import Path

import allure
from sqlalchemy import text

from olympiad_marker.marking.repository import MarkingRepository

pytestmark = [
    allure.epic("Marking Queue"),
    allure.feature("Persistence Gateway"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = MarkingRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name LIKE 'marking_%'
                ORDER BY name
                """,
            ),
        ).scalars()
        table_names = list(tables)
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    repository.close()

    assert version == "20261019_0001"
    assert table_names == [
        "marking_job_events",
        "marking_jobs",
        "marking_results",
        "marking_schemes",
    ]
    assert str(journal_mode).lower() == "wal"


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = MarkingRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    assert repository.load_queue() == []
    repository.close()
