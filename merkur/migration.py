"""Schema version bookkeeping and upgrades for the SQLite backend."""

from __future__ import annotations

import logging
import sqlite3

from merkur.models import StorageError

logger = logging.getLogger(__name__)

CURRENT_VERSION = 1

_META_DDL = """
CREATE TABLE IF NOT EXISTS merkur_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def _ensure_meta(connection: sqlite3.Connection) -> None:
    try:
        connection.executescript(_META_DDL)
    except sqlite3.Error as exc:
        raise StorageError(f"migration: create meta table: {exc}") from exc


def _set_version(connection: sqlite3.Connection, version: int) -> None:
    try:
        with connection:
            connection.execute(
                "INSERT OR REPLACE INTO merkur_meta (key, value) "
                "VALUES ('schema_version', ?1)",
                (str(version),),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"migration: set version: {exc}") from exc


def schema_version(connection: sqlite3.Connection) -> int | None:
    """The recorded schema version, or None when none has been recorded."""
    try:
        row = connection.execute(
            "SELECT value FROM merkur_meta WHERE key = 'schema_version'"
        ).fetchone()
    except sqlite3.OperationalError as exc:
        if "no such table" in str(exc):
            return None
        raise StorageError(f"migration: read version: {exc}") from exc
    except sqlite3.Error as exc:
        raise StorageError(f"migration: read version: {exc}") from exc
    if row is None:
        return None
    try:
        return int(row[0])
    except ValueError as exc:
        raise StorageError(f"invalid schema_version: {exc}") from exc


def migrate(connection: sqlite3.Connection) -> int:
    """Bring the database up to the current schema version and return it.

    A database with no recorded version is taken to be current already;
    a version newer than this code knows is left untouched.
    """
    _ensure_meta(connection)
    version = schema_version(connection)
    if version is None:
        _set_version(connection, CURRENT_VERSION)
        return CURRENT_VERSION
    if version >= CURRENT_VERSION:
        return version

    logger.info("Running migrations from %d to %d", version, CURRENT_VERSION)
    _set_version(connection, CURRENT_VERSION)
    logger.info("Migrations complete (schema v%d)", CURRENT_VERSION)
    return CURRENT_VERSION