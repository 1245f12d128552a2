"""Programmatic Alembic entry points for the report job database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine

ROOT_DIR = Path(__file__).resolve().parents[3]


def build_alembic_config(db_path: Path) -> Config:
    """Alembic config pointing at the repository migrations and ``db_path``."""

    config = Config(str(ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    command.upgrade(build_alembic_config(db_path), "head")


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, or None before the first upgrade."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
