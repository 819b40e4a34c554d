"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    command.upgrade(_build_config(db_path), "head")


def head_revision(db_path: Path) -> str | None:
    """Return the newest revision id known to the migration scripts."""

    return ScriptDirectory.from_config(_build_config(db_path)).get_current_head()


def _build_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config
