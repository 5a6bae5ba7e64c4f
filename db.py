"""SQLite relational store (projects, records) and schema migrations.

The connection runs in autocommit mode so every relational write commits on
its own. Migrations manage their own BEGIN/COMMIT/ROLLBACK; DDL is
transactional in SQLite, so a failed upgrade leaves no trace.
"""

from __future__ import annotations

import sqlite3
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from errors import MigrationError, NotInitializedError, StorageError

Migration = tuple[int, Callable[[sqlite3.Connection], None]]


# =============================================================================
# Migrations
# =============================================================================


def _create_base_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE project (
          id         INTEGER PRIMARY KEY AUTOINCREMENT,
          name       TEXT    NOT NULL UNIQUE,
          created_at TEXT    NOT NULL,
          updated_at TEXT    NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE record (
          id         INTEGER PRIMARY KEY AUTOINCREMENT,
          project_id INTEGER NOT NULL REFERENCES project(id) ON DELETE CASCADE,
          kind       TEXT    NOT NULL CHECK (kind IN ('issue', 'spec')),
          title      TEXT    NOT NULL,
          body       TEXT    NOT NULL DEFAULT '',
          status     TEXT    NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'resolved', 'archived')),
          created_at TEXT    NOT NULL,
          updated_at TEXT    NOT NULL
        )
        """
    )


def _expand_record_kinds(conn: sqlite3.Connection) -> None:
    # SQLite can't ALTER a CHECK constraint; rebuild the table instead.
    conn.execute(
        """
        CREATE TABLE record_new (
          id         INTEGER PRIMARY KEY AUTOINCREMENT,
          project_id INTEGER NOT NULL REFERENCES project(id) ON DELETE CASCADE,
          kind       TEXT    NOT NULL CHECK (kind IN ('issue', 'spec', 'arch', 'update')),
          title      TEXT    NOT NULL,
          body       TEXT    NOT NULL DEFAULT '',
          status     TEXT    NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'resolved', 'archived')),
          created_at TEXT    NOT NULL,
          updated_at TEXT    NOT NULL
        )
        """
    )
    conn.execute(
        """
        INSERT INTO record_new (id, project_id, kind, title, body, status, created_at, updated_at)
        SELECT id, project_id, kind, title, body, status, created_at, updated_at FROM record
        """
    )
    conn.execute("DROP TABLE record")
    conn.execute("ALTER TABLE record_new RENAME TO record")
    conn.execute("CREATE INDEX idx_record_project_kind ON record(project_id, kind)")


MIGRATIONS: list[Migration] = [
    (1, _create_base_schema),
    (2, _expand_record_kinds),
]


def schema_version(conn: sqlite3.Connection) -> int:
    """Return the applied schema version (0 for a fresh database)."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def run_migrations(conn: sqlite3.Connection, migrations: Sequence[Migration] = MIGRATIONS) -> int:
    """Apply every pending migration, one transaction each.

    Returns the schema version after the run. Raises MigrationError when the
    list is malformed or an upgrade fails; the failed upgrade is rolled back
    and nothing after it runs.
    """
    versions = [version for version, _ in migrations]
    if any(b <= a for a, b in zip(versions, versions[1:])) or any(v < 1 for v in versions):
        raise MigrationError(f"Migration versions must be positive and strictly increasing: {versions}")

    current = schema_version(conn)
    for version, upgrade in migrations:
        if version <= current:
            continue
        print(f"[dude] Running migration {upgrade.__name__} (v{version})...", file=sys.stderr)
        conn.execute("BEGIN")
        try:
            upgrade(conn)
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            conn.execute("COMMIT")
        except Exception as e:
            conn.execute("ROLLBACK")
            raise MigrationError(f"Migration v{version} ({upgrade.__name__}) failed: {e}") from e
        current = version
    return current


# =============================================================================
# Connection
# =============================================================================


class Database:
    """Owns the SQLite connection for one data directory."""

    def __init__(self, path: Path, migrations: Sequence[Migration] = MIGRATIONS):
        self.path = Path(path)
        self.migrations = migrations
        self._conn: sqlite3.Connection | None = None

    def open(self) -> Database:
        if self._conn is not None:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA busy_timeout = 1500")
            try:
                conn.execute("PRAGMA journal_mode = WAL")
            except sqlite3.OperationalError:
                # Some filesystems don't support WAL; keep default.
                pass
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.path}: {e}") from e
        try:
            run_migrations(conn, self.migrations)
        except Exception:
            conn.close()
            raise
        self._conn = conn
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise NotInitializedError("Database not initialised - call open() first")
        return self._conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    @property
    def version(self) -> int:
        return schema_version(self.conn)
