"""Relational schema of the SQLite backend and the embedding blob codec."""

from __future__ import annotations

import sqlite3
import struct
from collections.abc import Iterable, Sequence

from merkur.models import StorageError

_EDGE_KINDS = ("auto", "manual")
_OWNED_BY_MEMORY = "REFERENCES memories(id) ON DELETE CASCADE"


def _literal(value: object) -> str:
    """Render a Python value as an SQL literal for a column default."""
    if isinstance(value, str):
        escaped = value.replace("'", "''")
        return f"'{escaped}'"
    return repr(value)


def _column(
    name: str,
    sql_type: str,
    *,
    required: bool = False,
    default: object = None,
    extra: str = "",
) -> str:
    parts = [name, sql_type]
    if required:
        parts.append("NOT NULL")
    if default is not None:
        parts.append(f"DEFAULT {_literal(default)}")
    if extra:
        parts.append(extra)
    return " ".join(parts)


def _serial_key() -> str:
    return _column("id", "INTEGER", extra="PRIMARY KEY AUTOINCREMENT")


def _timestamps(*names: str) -> list[str]:
    return [_column(name, "TEXT", required=True) for name in names]


def _counters(*names: str) -> list[str]:
    return [_column(name, "INTEGER", required=True, default=0) for name in names]


def _create_table(name: str, definitions: Iterable[str]) -> str:
    body = ",\n".join(f"    {line}" for line in definitions)
    return f"CREATE TABLE IF NOT EXISTS {name} (\n{body}\n)"


_TABLES: dict[str, list[str]] = {
    "memories": [
        _column("id", "TEXT", extra="PRIMARY KEY"),
        _column("content", "TEXT", required=True),
        _column("abstract", "TEXT", default=""),
        _column("category", "TEXT", default="general"),
        _column("weight", "REAL", required=True, default=1.0),
        _column("level", "INTEGER", required=True, default=2),
        _column("pending_consolidation", "INTEGER", required=True, default=1),
        _column("embedding", "BLOB"),
        _column("metadata", "TEXT", required=True, default="{}"),
        *_timestamps("created_at", "updated_at", "accessed_at"),
        *_counters("access_count"),
    ],
    "edges": [
        _serial_key(),
        _column("source_id", "TEXT", required=True, extra=_OWNED_BY_MEMORY),
        _column("target_id", "TEXT", required=True, extra=_OWNED_BY_MEMORY),
        _column("weight", "REAL", required=True, default=1.0),
        _column("relation", "TEXT", required=True, default="related"),
        _column(
            "edge_type",
            "TEXT",
            required=True,
            default=_EDGE_KINDS[0],
            extra="CHECK(edge_type IN ({}))".format(
                ",".join(_literal(kind) for kind in _EDGE_KINDS)
            ),
        ),
        *_timestamps("created_at", "updated_at"),
        "UNIQUE(source_id, target_id, relation)",
    ],
    "context_tags": [
        _serial_key(),
        _column("memory_id", "TEXT", required=True, extra=_OWNED_BY_MEMORY),
        _column("key", "TEXT", required=True),
        _column("value", "TEXT", required=True),
    ],
    "consolidate_log": [
        _serial_key(),
        *_timestamps("started_at"),
        _column("finished_at", "TEXT"),
        *_counters("memories_processed", "edges_created", "errors"),
    ],
}

# index name -> (table, indexed columns)
_INDEXES: dict[str, tuple[str, tuple[str, ...]]] = {
    "idx_mem_pending": ("memories", ("pending_consolidation",)),
    "idx_mem_level": ("memories", ("level",)),
    "idx_mem_accessed": ("memories", ("accessed_at",)),
    "idx_mem_category": ("memories", ("category",)),
    "idx_edges_source": ("edges", ("source_id",)),
    "idx_edges_target": ("edges", ("target_id",)),
    "idx_ctx_memory": ("context_tags", ("memory_id",)),
    "idx_ctx_kv": ("context_tags", ("key", "value")),
}


def _statements() -> list[str]:
    statements = [_create_table(name, cols) for name, cols in _TABLES.items()]
    statements.extend(
        f"CREATE INDEX IF NOT EXISTS {index} ON {table}({', '.join(columns)})"
        for index, (table, columns) in _INDEXES.items()
    )
    return statements


DDL = "".join(f"{statement};\n" for statement in _statements())

_FLOAT32 = struct.Struct("<f")


def init_schema(connection: sqlite3.Connection) -> None:
    """Create the tables and indexes if they do not exist yet."""
    try:
        connection.executescript(DDL)
    except sqlite3.Error as exc:
        raise StorageError(f"Failed to init schema: {exc}") from exc


def encode_embedding(vector: Sequence[float]) -> bytes:
    """Pack a vector as consecutive little-endian 32-bit floats."""
    return struct.pack(f"<{len(vector)}f", *vector)


def decode_embedding(blob: bytes) -> list[float]:
    """Unpack a blob written by :func:`encode_embedding`."""
    if len(blob) % _FLOAT32.size:
        raise ValueError(
            f"embedding blob length {len(blob)} is not a multiple of {_FLOAT32.size}"
        )
    return [value for (value,) in _FLOAT32.iter_unpack(blob)]