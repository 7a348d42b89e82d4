"""SQLite-backed memory storage with an in-memory cosine vector index."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from merkur import sqlite_helpers
from merkur.migration import migrate
from merkur.models import (
    ConsolidationLogEntry,
    ConsolidationReport,
    Edge,
    Memory,
    MemoryNotFoundError,
    NewEdge,
    NewMemory,
    ScoredMemory,
    StorageError,
    StorageStats,
    parse_memory_level,
)
from merkur.schema import decode_embedding, encode_embedding, init_schema
from merkur.vector_index import InMemoryVectorIndex

logger = logging.getLogger(__name__)

_POOL_SIZE = 10

_MEMORY_COLUMNS = (
    "id, content, abstract, category, weight, level, pending_consolidation, "
    "metadata, created_at, updated_at, accessed_at, access_count"
)


@contextmanager
def _errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise StorageError(f"{action}: {exc}") from exc


def _timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _decode_metadata(text: str) -> dict:
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


class SqliteStorage:
    """Memory store keeping rows in SQLite and embeddings in an in-memory index.

    Embeddings are persisted as blobs and loaded back into the index when the
    storage is opened.
    """

    def __init__(self, path: str, embedding_dim: int) -> None:
        self._pool = sqlite_helpers.build_pool(path, _POOL_SIZE)
        try:
            with self._pool.connection() as conn:
                init_schema(conn)
                migrate(conn)
            self._index = InMemoryVectorIndex(embedding_dim)
            self._load_vectors()
        except BaseException:
            self._pool.close()
            raise
        logger.info("SqliteStorage initialized, loaded %d vectors", len(self._index))

    @classmethod
    def in_memory(cls, embedding_dim: int) -> SqliteStorage:
        """Open a storage backed by a fresh, private in-memory database."""
        return cls(f"file:merkur_{uuid.uuid4().hex}?mode=memory&cache=shared", embedding_dim)

    @property
    def embedding_dim(self) -> int:
        return self._index.dim()

    def close(self) -> None:
        """Release every database connection."""
        self._pool.close()

    def __enter__(self) -> SqliteStorage:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _load_vectors(self) -> None:
        with self._pool.connection() as conn, _errors("Failed to query embeddings"):
            rows = conn.execute(
                "SELECT id, embedding FROM memories WHERE embedding IS NOT NULL"
            ).fetchall()
        self._index.rebuild((memory_id, decode_embedding(blob)) for memory_id, blob in rows)

    def _check_dim(self, vector: Sequence[float]) -> None:
        if len(vector) != self._index.dim():
            raise ValueError(
                f"Vector dimension mismatch: expected {self._index.dim()}, got {len(vector)}"
            )

    def insert_memory(self, mem: NewMemory) -> str:
        """Store a new memory and return its generated id."""
        if mem.embedding is not None:
            self._check_dim(mem.embedding)
        memory_id = f"mem_{uuid.uuid4()}"
        now = _timestamp()
        try:
            metadata = json.dumps(mem.metadata)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Failed to serialize metadata: {exc}") from exc
        category = "general" if mem.category is None else mem.category
        blob = None if mem.embedding is None else encode_embedding(mem.embedding)

        with self._pool.connection() as conn, _errors("Failed to insert memory"):
            conn.execute("BEGIN")
            conn.execute(
                "INSERT INTO memories (id, content, category, weight, level, "
                "pending_consolidation, embedding, metadata, created_at, updated_at, accessed_at) "
                "VALUES (?1, ?2, ?3, 1.0, 2, 1, ?4, ?5, ?6, ?6, ?6)",
                (memory_id, mem.content, category, blob, metadata, now),
            )
            conn.executemany(
                "INSERT INTO context_tags (memory_id, key, value) VALUES (?1, ?2, ?3)",
                [(memory_id, key, value) for key, value in mem.context.items()],
            )
            conn.execute("COMMIT")

        if mem.embedding is not None:
            self._index.add(memory_id, mem.embedding)
        return memory_id

    def update_memory(
        self, memory_id: str, content: str, embedding: Sequence[float] | None
    ) -> None:
        """Replace content and embedding; the memory becomes pending again."""
        if embedding is not None:
            self._check_dim(embedding)
        blob = None if embedding is None else encode_embedding(embedding)
        with self._pool.connection() as conn, _errors("Failed to update memory"):
            affected = conn.execute(
                "UPDATE memories SET content = ?1, embedding = ?2, "
                "pending_consolidation = 1, updated_at = ?3 WHERE id = ?4",
                (content, blob, _timestamp(), memory_id),
            ).rowcount
        if affected == 0:
            raise MemoryNotFoundError(memory_id)
        if embedding is not None:
            self._index.add(memory_id, embedding)
        else:
            self._index.remove(memory_id)

    def get_memory(self, memory_id: str) -> Memory | None:
        """The memory with this id, without its embedding, or None."""
        with self._pool.connection() as conn, _errors("Failed to query memory"):
            rows = conn.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?1", (memory_id,)
            ).fetchall()
        if not rows:
            return None
        (
            found_id,
            content,
            abstract,
            category,
            weight,
            level,
            pending,
            metadata,
            created_at,
            updated_at,
            accessed_at,
            access_count,
        ) = rows[0]
        return Memory(
            id=found_id,
            content=content,
            abstract=abstract,
            category=category,
            weight=weight,
            level=parse_memory_level(level),
            pending_consolidation=bool(pending),
            embedding=None,
            metadata=_decode_metadata(metadata),
            context=sqlite_helpers.get_context_tags(self._pool, found_id),
            created_at=sqlite_helpers.parse_rfc3339(created_at),
            updated_at=sqlite_helpers.parse_rfc3339(updated_at),
            accessed_at=sqlite_helpers.parse_rfc3339(accessed_at),
            access_count=access_count,
        )

    def delete_memory(self, memory_id: str) -> None:
        """Delete a memory; its edges and context tags go with it."""
        with self._pool.connection() as conn, _errors("Failed to delete memory"):
            affected = conn.execute(
                "DELETE FROM memories WHERE id = ?1", (memory_id,)
            ).rowcount
        if affected == 0:
            raise MemoryNotFoundError(memory_id)
        self._index.remove(memory_id)

    def vector_search(self, vector: Sequence[float], limit: int) -> list[ScoredMemory]:
        """Non-archived memories most similar to ``vector``, best first."""
        oversample = max(limit * 2, limit)
        scored = self._index.search(vector, oversample)
        if not scored:
            return []
        scores = dict(scored)

        with self._pool.connection() as conn, _errors("Batch query failed"):
            rows = conn.execute(
                "SELECT id, content, abstract, category, weight, level, created_at "
                "FROM memories WHERE id IN (SELECT value FROM json_each(?1)) AND level >= 0",
                (json.dumps(list(scores)),),
            ).fetchall()
        contexts = sqlite_helpers.get_context_tags_batch(self._pool, [row[0] for row in rows])

        results = sorted(
            (
                ScoredMemory(
                    id=memory_id,
                    content=content,
                    abstract=abstract,
                    score=scores.get(memory_id, 0.0),
                    weight=weight,
                    level=parse_memory_level(level),
                    category=category,
                    context=contexts.get(memory_id, {}),
                    created_at=sqlite_helpers.parse_rfc3339(created_at),
                )
                for memory_id, content, abstract, category, weight, level, created_at in rows
            ),
            key=lambda memory: memory.score,
            reverse=True,
        )[:limit]

        sqlite_helpers.update_access(self._pool, [memory.id for memory in results])
        return results

    def insert_edge(self, edge: NewEdge) -> None:
        sqlite_helpers.insert_edge(self._pool, edge)

    def get_edges(self, memory_id: str) -> list[Edge]:
        return sqlite_helpers.get_edges(self._pool, memory_id)

    def get_edges_batch(self, memory_ids: Sequence[str]) -> dict[str, list[Edge]]:
        return sqlite_helpers.get_edges_batch(self._pool, memory_ids)

    def bfs_expand(
        self, seed_ids: Sequence[str], depth: int, degree_limit: int
    ) -> list[ScoredMemory]:
        return sqlite_helpers.bfs_expand(self._pool, seed_ids, depth, degree_limit)

    def insert_context_tag(self, memory_id: str, key: str, value: str) -> None:
        sqlite_helpers.insert_context_tag(self._pool, memory_id, key, value)

    def search_by_context(self, filters: Mapping[str, str]) -> list[str]:
        return sqlite_helpers.search_by_context(self._pool, filters)

    def _memories(self, ids: Sequence[str]) -> list[Memory]:
        return [memory for memory in map(self.get_memory, ids) if memory is not None]

    def list_pending(self, limit: int) -> list[Memory]:
        """Memories awaiting consolidation."""
        return self._memories(sqlite_helpers.list_pending_ids(self._pool, limit))

    def list_for_forgetting(self, limit: int) -> list[Memory]:
        """Non-archived memories, least recently accessed first."""
        return self._memories(sqlite_helpers.list_forgetting_ids(self._pool, limit))

    def mark_consolidated(self, ids: Sequence[str]) -> None:
        sqlite_helpers.mark_consolidated(self._pool, ids)

    def update_level(self, memory_id: str, level: int) -> None:
        sqlite_helpers.update_level(self._pool, memory_id, level)

    def update_abstract(self, memory_id: str, abstract: str) -> None:
        sqlite_helpers.update_abstract(self._pool, memory_id, abstract)

    def delete_archived_older_than(self, days: int) -> int:
        """Delete archived memories not updated for ``days`` days; return the count."""
        threshold = _timestamp(datetime.now(timezone.utc) - timedelta(days=days))
        with self._pool.connection() as conn, _errors("Failed to delete archived"):
            conn.execute("BEGIN")
            ids = [
                row[0]
                for row in conn.execute(
                    "SELECT id FROM memories WHERE level = -1 AND updated_at < ?1",
                    (threshold,),
                ).fetchall()
            ]
            count = conn.execute(
                "DELETE FROM memories WHERE level = -1 AND updated_at < ?1", (threshold,)
            ).rowcount
            conn.execute("COMMIT")
        for memory_id in ids:
            self._index.remove(memory_id)
        return count

    def log_consolidation(
        self, started_at: datetime, finished_at: datetime, report: ConsolidationReport
    ) -> None:
        sqlite_helpers.log_consolidation(self._pool, started_at, finished_at, report)

    def get_consolidation_log(self, limit: int) -> list[ConsolidationLogEntry]:
        return sqlite_helpers.get_consolidation_log(self._pool, limit)

    def stats(self) -> StorageStats:
        return sqlite_helpers.stats(self._pool)

    def memory_exists(self, memory_id: str) -> bool:
        return sqlite_helpers.memory_exists(self._pool, memory_id)

    def memory_exists_batch(self, ids: Sequence[str]) -> set[str]:
        return sqlite_helpers.memory_exists_batch(self._pool, ids)