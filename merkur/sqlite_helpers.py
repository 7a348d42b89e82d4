"""Pooled SQLite access and the storage queries shared by the backends."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone

from merkur.models import (
    ConsolidationLogEntry,
    ConsolidationReport,
    Edge,
    MemoryNotFoundError,
    NewEdge,
    ScoredMemory,
    StorageError,
    StorageStats,
    parse_edge_type,
    parse_memory_level,
)

logger = logging.getLogger(__name__)

MAX_BFS_DEPTH = 5
MAX_BFS_DEGREE = 200

_FRACTION = re.compile(r"\.(\d+)")

_BFS_SQL = """
WITH RECURSIVE
    bfs(id, d, w, path) AS (
        SELECT value, 0, 1.0, ',' || value || ','
        FROM (SELECT DISTINCT value FROM json_each(?1))
        UNION
        SELECT
            CASE WHEN e.source_id = bfs.id THEN e.target_id ELSE e.source_id END,
            bfs.d + 1,
            bfs.w * e.weight,
            bfs.path || (CASE WHEN e.source_id = bfs.id THEN e.target_id ELSE e.source_id END) || ','
        FROM bfs
        JOIN edges e ON (
            (e.edge_type = 'auto' AND (e.source_id = bfs.id OR e.target_id = bfs.id))
            OR
            (e.edge_type = 'manual' AND e.source_id = bfs.id)
        )
        WHERE bfs.d < ?2
          AND bfs.path NOT LIKE '%,' || (CASE WHEN e.source_id = bfs.id THEN e.target_id ELSE e.source_id END) || ',%'
    )
SELECT bfs.id, bfs.d, bfs.w, m.content, m.abstract, m.level, m.category, m.created_at
FROM bfs
JOIN memories m ON m.id = bfs.id
WHERE bfs.d > 0 AND m.level >= 0
ORDER BY bfs.d, bfs.w DESC
LIMIT ?3
"""

_EDGE_COLUMNS = "id, source_id, target_id, weight, relation, edge_type"


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise StorageError(f"{action}: {exc}") from exc


def _timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class ConnectionPool:
    """A bounded pool of SQLite connections with foreign keys enforced.

    SQLite's ``foreign_keys`` setting is per connection, so every connection
    the pool opens is configured before it is handed out.
    """

    def __init__(self, path: str, max_size: int = 10) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._path = path
        self._uri = path.startswith("file:")
        self._max_size = max_size
        self._cond = threading.Condition()
        self._idle: list[sqlite3.Connection] = []
        self._closed = False
        try:
            first = self._open()
        except StorageError as exc:
            raise StorageError(f"Failed to create connection pool: {exc}") from exc
        self._idle.append(first)
        self._created = 1

    def _open(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self._path,
                uri=self._uri,
                check_same_thread=False,
                isolation_level=None,
                timeout=30.0,
            )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to get connection: {exc}") from exc
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL").fetchall()
        except sqlite3.Error as exc:
            conn.close()
            raise StorageError(f"Failed to get connection: {exc}") from exc
        return conn

    def _acquire(self) -> sqlite3.Connection:
        with self._cond:
            while True:
                if self._closed:
                    raise StorageError("Failed to get connection: pool is closed")
                if self._idle:
                    return self._idle.pop()
                if self._created < self._max_size:
                    self._created += 1
                    break
                self._cond.wait()
        try:
            return self._open()
        except BaseException:
            with self._cond:
                self._created -= 1
                self._cond.notify()
            raise

    def _release(self, conn: sqlite3.Connection) -> None:
        try:
            if conn.in_transaction:
                conn.rollback()
        except sqlite3.Error:
            logger.warning("Rollback failed while returning connection to pool")
        with self._cond:
            if self._closed:
                conn.close()
                self._created -= 1
            else:
                self._idle.append(conn)
            self._cond.notify()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection for the duration of the ``with`` block."""
        conn = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn)

    def close(self) -> None:
        """Close idle connections and refuse further borrowing."""
        with self._cond:
            self._closed = True
            for conn in self._idle:
                conn.close()
            self._created -= len(self._idle)
            self._idle.clear()
            self._cond.notify_all()

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def build_pool(path: str, max_size: int = 10) -> ConnectionPool:
    """Create a connection pool for the database at ``path``."""
    return ConnectionPool(path, max_size)


def parse_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp to UTC, falling back to now when malformed."""
    normalized = text.strip()
    if normalized and normalized[-1] in "Zz":
        normalized = normalized[:-1] + "+00:00"
    normalized = _FRACTION.sub(
        lambda m: "." + (m.group(1) + "000000")[:6], normalized, count=1
    )
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        return datetime.now(timezone.utc)
    return parsed.astimezone(timezone.utc)


def insert_edge(pool: ConnectionPool, edge: NewEdge) -> None:
    """Insert an edge, ignoring duplicates of (source, target, relation)."""
    now = _timestamp()
    weight = 1.0 if edge.weight is None else edge.weight
    relation = "related" if edge.relation is None else edge.relation
    with pool.connection() as conn, _storage_errors("Failed to insert edge"):
        conn.execute(
            "INSERT OR IGNORE INTO edges "
            "(source_id, target_id, weight, relation, edge_type, created_at, updated_at) "
            "VALUES (?1, ?2, ?3, ?4, ?5, ?6, ?6)",
            (edge.source_id, edge.target_id, weight, relation, edge.edge_type.db_value, now),
        )


def bfs_expand(
    pool: ConnectionPool, seed_ids: Sequence[str], depth: int, degree_limit: int
) -> list[ScoredMemory]:
    """Walk the edge graph from the seeds and score the memories reached.

    Auto edges are followed both ways, manual edges from source to target.
    Each result scores ``0.5 ** depth * path_weight``; archived memories and
    the seeds themselves are left out.
    """
    if not seed_ids or depth <= 0:
        return []
    depth = min(depth, MAX_BFS_DEPTH)
    degree_limit = min(degree_limit, MAX_BFS_DEGREE)
    seeds_json = json.dumps(list(seed_ids))

    with pool.connection() as conn, _storage_errors("BFS query failed"):
        rows = conn.execute(_BFS_SQL, (seeds_json, depth, degree_limit)).fetchall()

    seen: set[str] = set()
    unique_rows = []
    for row in rows:
        if row[0] in seen:
            continue
        seen.add(row[0])
        unique_rows.append(row)

    contexts = get_context_tags_batch(pool, [row[0] for row in unique_rows])
    return [
        ScoredMemory(
            id=memory_id,
            content=content,
            abstract=abstract,
            score=0.5**bfs_depth * weight,
            weight=weight,
            level=parse_memory_level(level),
            category=category,
            context=contexts.pop(memory_id, {}),
            created_at=parse_rfc3339(created_at),
        )
        for memory_id, bfs_depth, weight, content, abstract, level, category, created_at in unique_rows
    ]


def insert_context_tag(pool: ConnectionPool, memory_id: str, key: str, value: str) -> None:
    """Attach a key/value context tag to a memory."""
    with pool.connection() as conn, _storage_errors("Failed to insert context tag"):
        conn.execute(
            "INSERT INTO context_tags (memory_id, key, value) VALUES (?1, ?2, ?3)",
            (memory_id, key, value),
        )


def search_by_context(pool: ConnectionPool, filters: Mapping[str, str]) -> list[str]:
    """Return ids of memories carrying any of the given key/value tags."""
    if not filters:
        return []
    pairs = list(filters.items())
    conditions = " OR ".join("(key = ? AND value = ?)" for _ in pairs)
    sql = f"SELECT DISTINCT memory_id FROM context_tags WHERE {conditions}"
    params = [item for pair in pairs for item in pair]
    with pool.connection() as conn, _storage_errors("Context search failed"):
        return [row[0] for row in conn.execute(sql, params)]


def list_pending_ids(pool: ConnectionPool, limit: int) -> list[str]:
    """Ids of memories awaiting consolidation."""
    with pool.connection() as conn, _storage_errors("Pending query failed"):
        rows = conn.execute(
            "SELECT id FROM memories WHERE pending_consolidation = 1 LIMIT ?1", (limit,)
        )
        return [row[0] for row in rows]


def list_forgetting_ids(pool: ConnectionPool, limit: int) -> list[str]:
    """Ids of non-archived memories, least recently accessed first."""
    with pool.connection() as conn, _storage_errors("Forgetting query failed"):
        rows = conn.execute(
            "SELECT id FROM memories WHERE level >= 0 ORDER BY accessed_at ASC LIMIT ?1",
            (limit,),
        )
        return [row[0] for row in rows]


def mark_consolidated(pool: ConnectionPool, ids: Sequence[str]) -> None:
    """Clear the pending-consolidation flag on the given memories."""
    if not ids:
        return
    with pool.connection() as conn, _storage_errors("Failed to mark consolidated"):
        conn.execute(
            "UPDATE memories SET pending_consolidation = 0 "
            "WHERE id IN (SELECT value FROM json_each(?1))",
            (json.dumps(list(ids)),),
        )


def update_level(pool: ConnectionPool, memory_id: str, level: int) -> None:
    """Set the detail level of a memory."""
    with pool.connection() as conn, _storage_errors("Failed to update level"):
        conn.execute(
            "UPDATE memories SET level = ?1, updated_at = ?2 WHERE id = ?3",
            (int(level), _timestamp(), memory_id),
        )


def log_consolidation(
    pool: ConnectionPool,
    started_at: datetime,
    finished_at: datetime,
    report: ConsolidationReport,
) -> None:
    """Record a finished consolidation run."""
    with pool.connection() as conn, _storage_errors("Failed to log consolidation"):
        conn.execute(
            "INSERT INTO consolidate_log "
            "(started_at, finished_at, memories_processed, edges_created, errors) "
            "VALUES (?1, ?2, ?3, ?4, ?5)",
            (
                _timestamp(started_at),
                _timestamp(finished_at),
                report.memories_processed,
                report.edges_created,
                report.errors,
            ),
        )


def get_consolidation_log(pool: ConnectionPool, limit: int) -> list[ConsolidationLogEntry]:
    """Most recent consolidation runs first."""
    with pool.connection() as conn, _storage_errors("Log query failed"):
        rows = conn.execute(
            "SELECT id, started_at, finished_at, memories_processed, edges_created, errors "
            "FROM consolidate_log ORDER BY id DESC LIMIT ?1",
            (limit,),
        ).fetchall()
    return [
        ConsolidationLogEntry(
            id=entry_id,
            started_at=parse_rfc3339(started),
            finished_at=parse_rfc3339(finished or ""),
            memories_processed=processed,
            edges_created=edges,
            errors=errors,
        )
        for entry_id, started, finished, processed, edges, errors in rows
    ]


def stats(pool: ConnectionPool) -> StorageStats:
    """Count memories, edges, pending memories and memories per level."""
    with pool.connection() as conn, _storage_errors("Stats query failed"):
        (total_memories,) = conn.execute("SELECT COUNT(*) FROM memories").fetchone()
        (total_edges,) = conn.execute("SELECT COUNT(*) FROM edges").fetchone()
        (pending,) = conn.execute(
            "SELECT COUNT(*) FROM memories WHERE pending_consolidation = 1"
        ).fetchone()
        by_level = dict(
            conn.execute("SELECT level, COUNT(*) FROM memories GROUP BY level").fetchall()
        )
    return StorageStats(
        total_memories=total_memories,
        total_edges=total_edges,
        pending_consolidation=pending,
        by_level=by_level,
    )


def get_context_tags(pool: ConnectionPool, memory_id: str) -> dict[str, str]:
    """Context tags of one memory."""
    with pool.connection() as conn, _storage_errors("Context query failed"):
        return dict(
            conn.execute(
                "SELECT key, value FROM context_tags WHERE memory_id = ?1", (memory_id,)
            ).fetchall()
        )


def get_context_tags_batch(
    pool: ConnectionPool, memory_ids: Sequence[str]
) -> dict[str, dict[str, str]]:
    """Context tags of several memories, keyed by memory id."""
    if not memory_ids:
        return {}
    with pool.connection() as conn, _storage_errors("Ctx batch failed"):
        rows = conn.execute(
            "SELECT memory_id, key, value FROM context_tags "
            "WHERE memory_id IN (SELECT value FROM json_each(?1))",
            (json.dumps(list(memory_ids)),),
        ).fetchall()
    by_id: dict[str, dict[str, str]] = {}
    for memory_id, key, value in rows:
        by_id.setdefault(memory_id, {})[key] = value
    return by_id


def _edges_from_rows(rows: Iterable[tuple]) -> list[Edge]:
    return [
        Edge(
            id=edge_id,
            source_id=source,
            target_id=target,
            weight=weight,
            relation=relation,
            edge_type=parse_edge_type(edge_type),
        )
        for edge_id, source, target, weight, relation, edge_type in rows
    ]


def get_edges(pool: ConnectionPool, memory_id: str) -> list[Edge]:
    """Edges touching a memory as source or target."""
    with pool.connection() as conn, _storage_errors("Edges query failed"):
        rows = conn.execute(
            f"SELECT {_EDGE_COLUMNS} FROM edges WHERE source_id = ?1 OR target_id = ?1",
            (memory_id,),
        ).fetchall()
    return _edges_from_rows(rows)


def get_edges_batch(
    pool: ConnectionPool, memory_ids: Sequence[str]
) -> dict[str, list[Edge]]:
    """Edges touching any of the memories, listed under each memory they touch."""
    if not memory_ids:
        return {}
    with pool.connection() as conn, _storage_errors("Edges query failed"):
        rows = conn.execute(
            f"SELECT {_EDGE_COLUMNS} FROM edges "
            "WHERE source_id IN (SELECT value FROM json_each(?1)) "
            "OR target_id IN (SELECT value FROM json_each(?1))",
            (json.dumps(list(memory_ids)),),
        ).fetchall()
    wanted = set(memory_ids)
    by_memory: dict[str, list[Edge]] = {}
    for edge in _edges_from_rows(rows):
        for endpoint in (edge.source_id, edge.target_id):
            if endpoint in wanted:
                by_memory.setdefault(endpoint, []).append(edge)
    return by_memory


def update_access(pool: ConnectionPool, ids: Sequence[str]) -> None:
    """Bump access time and count; failures are logged, never raised."""
    if not ids:
        return
    try:
        with pool.connection() as conn:
            conn.execute(
                "UPDATE memories SET accessed_at = ?1, access_count = access_count + 1 "
                "WHERE id IN (SELECT value FROM json_each(?2))",
                (_timestamp(), json.dumps(list(ids))),
            )
    except (StorageError, sqlite3.Error) as exc:
        logger.warning("update_access failed: %s", exc)


def memory_exists(pool: ConnectionPool, memory_id: str) -> bool:
    """Whether a memory with this id is stored."""
    with pool.connection() as conn, _storage_errors("memory_exists failed"):
        (count,) = conn.execute(
            "SELECT COUNT(1) FROM memories WHERE id = ?1", (memory_id,)
        ).fetchone()
    return count > 0


def memory_exists_batch(pool: ConnectionPool, ids: Sequence[str]) -> set[str]:
    """The subset of ``ids`` that are stored."""
    if not ids:
        return set()
    with pool.connection() as conn, _storage_errors("memory_exists_batch query failed"):
        rows = conn.execute(
            "SELECT id FROM memories WHERE id IN (SELECT value FROM json_each(?1))",
            (json.dumps(list(ids)),),
        )
        return {row[0] for row in rows}


def update_abstract(pool: ConnectionPool, memory_id: str, abstract: str) -> None:
    """Set the consolidation abstract of a memory."""
    with pool.connection() as conn, _storage_errors("update_abstract failed"):
        cursor = conn.execute(
            "UPDATE memories SET abstract = ?1, updated_at = ?2 WHERE id = ?3",
            (abstract, _timestamp(), memory_id),
        )
        affected = cursor.rowcount
    if affected == 0:
        raise MemoryNotFoundError(memory_id)