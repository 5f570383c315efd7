"""Clock, timestamp and SQLite engine helpers shared by the group chat stores."""

from __future__ import annotations

import re
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

DEFAULT_BUSY_TIMEOUT_MS = 5000

# Producers may send nanosecond fractions; datetime keeps microseconds.
_FRACTION_OVERFLOW = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime:
    """Default clock for handlers, services and stores."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse an envelope timestamp (``Z`` suffix and long fractions allowed).

    Naive values are read as UTC; the result is always an aware UTC datetime.
    """

    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    return to_utc_aware_datetime(datetime.fromisoformat(_FRACTION_OVERFLOW.sub(r"\1", text)))


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> Engine:
    """Engine for one database file shared by the repository and the ledger.

    Connections are not pooled; each one runs in WAL mode with foreign keys
    enforced, so CLI reads do not block a worker committing a job.
    """

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _apply_sqlite_pragmas(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    return engine


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC, the form stored in SQLite columns."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for pragma in (
            "journal_mode = WAL",
            f"busy_timeout = {max(1, busy_timeout_ms)}",
            "foreign_keys = ON",
        ):
            cursor.execute(f"PRAGMA {pragma}")
    finally:
        cursor.close()
