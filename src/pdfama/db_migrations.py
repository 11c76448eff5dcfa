"""
Versioned SQLite schema migrations.

Each store names itself as a component and owns an ordered list of migrations;
applied versions are recorded per component in `schema_migrations`, so the
session store and the vector store can share one database file or use two.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .errors import ValidationError
from .observability import get_logger

logger = get_logger(__name__)


MigrationRunner = Callable[[sqlite3.Connection], None]

_MIGRATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    component TEXT NOT NULL,
    version INTEGER NOT NULL,
    name TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    PRIMARY KEY(component, version)
)
"""


@dataclass(frozen=True)
class SqliteMigration:
    """One schema step: plain statements, a Python runner, or both (statements first)."""

    version: int
    name: str
    statements: tuple[str, ...] = ()
    runner: MigrationRunner | None = None


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def applied_versions(conn: sqlite3.Connection, component: str) -> set[int]:
    conn.execute(_MIGRATIONS_TABLE)
    rows = conn.execute(
        "SELECT version FROM schema_migrations WHERE component = ?",
        (component,),
    ).fetchall()
    return {int(row[0]) for row in rows}


def schema_version(conn: sqlite3.Connection, component: str) -> int:
    """Highest applied version for `component`, 0 for a fresh database."""
    return max(applied_versions(conn, component), default=0)


def _ordered(component: str, migrations: list[SqliteMigration]) -> list[SqliteMigration]:
    ordered = sorted(migrations, key=lambda m: int(m.version))
    versions = [int(m.version) for m in ordered]
    if any(version < 1 for version in versions) or len(set(versions)) != len(versions):
        raise ValidationError(
            "Migration versions must be unique positive integers",
            field="version",
            details={"component": component, "versions": versions},
        )
    return ordered


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: list[SqliteMigration],
) -> list[int]:
    """Applies pending migrations in version order and returns the versions applied now.

    A step that raises is not recorded, so it runs again on the next open.
    """
    ordered = _ordered(component, migrations)
    done = applied_versions(conn, component)
    newly_applied: list[int] = []

    for migration in ordered:
        version = int(migration.version)
        if version in done:
            continue

        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        if migration.runner is not None:
            migration.runner(conn)

        conn.execute(
            "INSERT INTO schema_migrations (component, version, name, applied_at) VALUES (?, ?, ?, ?)",
            (component, version, migration.name, utcnow_iso()),
        )
        newly_applied.append(version)
        logger.info("db_migration_applied", component=component, version=version, name=migration.name)

    if newly_applied:
        logger.info("db_schema_upgraded", component=component, version=max(newly_applied))
    return newly_applied
