"""
Versioned schema setup for the SQLite stores.

Each store names itself as a component and hands over an ordered list of
migrations; applied versions are recorded in `schema_migrations` so reopening
a database only runs what is new.
"""
from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from .errors import PersistenceError
from .observability import get_logger

logger = get_logger(__name__)

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def connect_sqlite(db_path) -> sqlite3.Connection:
    """One connection per store, shared across threads; the store serializes access with its lock."""
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    for pragma in _PRAGMAS:
        try:
            conn.execute(pragma)
        except sqlite3.Error as exc:
            # In-memory and read-only databases reject some of these.
            logger.warning("sqlite_pragma_rejected", pragma=pragma, error=str(exc))
    return conn


def current_version(conn: sqlite3.Connection, component: str) -> int:
    row = conn.execute(
        "SELECT MAX(version) FROM schema_migrations WHERE component = ?",
        (component,),
    ).fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def _check_order(component: str, migrations: Sequence[SqliteMigration]) -> list[SqliteMigration]:
    ordered = sorted(migrations, key=lambda m: m.version)
    versions = [m.version for m in ordered]
    if len(set(versions)) != len(versions):
        raise ValueError(f"duplicate migration versions for {component}: {versions}")
    return ordered


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: Sequence[SqliteMigration],
) -> int:
    """Runs every migration newer than the recorded version. Returns the resulting version."""
    ordered = _check_order(component, migrations)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )

    version = current_version(conn, component)
    known = ordered[-1].version if ordered else 0
    if version > known:
        raise PersistenceError(
            f"{component} schema is at version {version}, newer than this build supports ({known})"
        )

    for migration in ordered:
        if migration.version <= version:
            continue
        for statement in migration.statements:
            if statement.strip():
                conn.execute(statement)
        conn.execute(
            "INSERT INTO schema_migrations (component, version, name, applied_at) VALUES (?, ?, ?, ?)",
            (component, migration.version, migration.name, utcnow_iso()),
        )
        version = migration.version
        logger.info("db_migration_applied", component=component, version=version, name=migration.name)
    return version
