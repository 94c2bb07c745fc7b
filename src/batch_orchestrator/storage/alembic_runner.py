"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from importlib import resources
from pathlib import Path

from alembic import command
from alembic.config import Config


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database.

    Migration scripts ship inside the package, so no ``alembic.ini`` is needed.
    """

    migrations = resources.files("batch_orchestrator.storage") / "migrations"
    with resources.as_file(migrations) as script_location:
        config = Config()
        config.set_main_option("script_location", str(script_location))
        config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
        command.upgrade(config, "head")
