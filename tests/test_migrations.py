from pathlib import Path

import allure
from sqlalchemy import text

from agent_workbench.storage.repository import WorkbenchRepository

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = WorkbenchRepository(tmp_path / "migrations.db")
    repository.init_schema()

    assert repository.schema_revision() == "20261018_0001"
    with repository.engine.connect() as connection:
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()

    assert tables == [
        "agent_runs",
        "conversation_messages",
        "conversations",
        "run_chunks",
        "users",
        "workspaces",
    ]
    assert str(journal_mode).lower() == "wal"
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = WorkbenchRepository(tmp_path / "twice.db")
    assert repository.schema_revision() is None
    repository.init_schema()
    repository.init_schema()

    assert repository.list_workspaces() == []
    repository.close()
