"""Run Alembic migrations for the workbench database from code."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply every pending migration to the SQLite database at ``db_path``."""

    logger.debug("Upgrading %s to head", db_path)
    command.upgrade(_alembic_config(db_path), "head")


def current_revision(engine: Engine) -> str | None:
    """Return the applied migration revision, or ``None`` for an empty database."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
