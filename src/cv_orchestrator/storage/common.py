"""Common helpers for storage repositories."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def load_json_object(raw: str | None) -> dict[str, Any]:
    """Decode a stored JSON column, tolerating NULL and non-object values."""

    if not raw:
        return {}
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()
