from datetime import datetime, timedelta, timezone

import pytest

from merkur import sqlite_helpers as h
from merkur.models import (
    ConsolidationReport,
    EdgeType,
    MemoryLevel,
    MemoryNotFoundError,
    NewEdge,
    StorageError,
)

DDL = """
CREATE TABLE IF NOT EXISTS memories (
    id                     TEXT PRIMARY KEY,
    content                TEXT NOT NULL,
    abstract               TEXT DEFAULT '',
    category               TEXT DEFAULT 'general',
    weight                 REAL NOT NULL DEFAULT 1.0,
    level                  INTEGER NOT NULL DEFAULT 2,
    pending_consolidation  INTEGER NOT NULL DEFAULT 1,
    metadata               TEXT NOT NULL DEFAULT '{}',
    created_at             TEXT NOT NULL,
    updated_at             TEXT NOT NULL,
    accessed_at            TEXT NOT NULL,
    access_count           INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS edges (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id    TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    target_id    TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    weight       REAL NOT NULL DEFAULT 1.0,
    relation     TEXT NOT NULL DEFAULT 'related',
    edge_type    TEXT NOT NULL DEFAULT 'auto' CHECK(edge_type IN ('auto','manual')),
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    UNIQUE(source_id, target_id, relation)
);
CREATE TABLE IF NOT EXISTS context_tags (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    key       TEXT NOT NULL,
    value     TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS consolidate_log (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at          TEXT NOT NULL,
    finished_at         TEXT,
    memories_processed  INTEGER NOT NULL DEFAULT 0,
    edges_created       INTEGER NOT NULL DEFAULT 0,
    errors              INTEGER NOT NULL DEFAULT 0
);
"""

TS = "2024-01-01T00:00:00.000000+00:00"


@pytest.fixture
def pool(tmp_path):
    p = h.build_pool(str(tmp_path / "test.db"), 4)
    with p.connection() as conn:
        conn.executescript(DDL)
    yield p
    p.close()


def add_memory(pool, memory_id, *, level=2, accessed_at=TS, content=None):
    with pool.connection() as conn:
        conn.execute(
            "INSERT INTO memories (id, content, level, created_at, updated_at, accessed_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (memory_id, content or memory_id, level, TS, TS, accessed_at),
        )


def auto_edge(a, b, weight=None):
    return NewEdge(source_id=a, target_id=b, weight=weight, edge_type=EdgeType.AUTO)


def test_pool_enables_foreign_keys(pool):
    with pool.connection() as conn:
        (enabled,) = conn.execute("PRAGMA foreign_keys").fetchone()
    assert enabled == 1


def test_closed_pool_refuses_connections(tmp_path):
    p = h.build_pool(str(tmp_path / "x.db"), 2)
    p.close()
    with pytest.raises(StorageError):
        with p.connection():
            pass


def test_shared_memory_pool_persists_between_borrows():
    p = h.build_pool("file:helpers_shared?mode=memory&cache=shared", 2)
    with p.connection() as conn:
        conn.execute("CREATE TABLE t (x INTEGER)")
        conn.execute("INSERT INTO t VALUES (7)")
    with p.connection() as conn:
        assert conn.execute("SELECT x FROM t").fetchall() == [(7,)]
    p.close()


def test_parse_rfc3339_variants():
    expected = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert h.parse_rfc3339("2024-01-02T03:04:05+00:00") == expected
    assert h.parse_rfc3339("2024-01-02T03:04:05Z") == expected
    assert h.parse_rfc3339("2024-01-02T05:04:05+02:00") == expected
    nanos = h.parse_rfc3339("2024-01-02T03:04:05.123456789+00:00")
    assert nanos.microsecond == 123456


def test_parse_rfc3339_malformed_falls_back_to_now():
    before = datetime.now(timezone.utc)
    for text in ("not a date", "", "2024-01-02T03:04:05"):
        parsed = h.parse_rfc3339(text)
        assert before - timedelta(seconds=1) <= parsed <= datetime.now(timezone.utc)


def test_insert_edge_defaults_and_duplicates(pool):
    add_memory(pool, "mem_a")
    add_memory(pool, "mem_b")
    h.insert_edge(pool, NewEdge(source_id="mem_a", target_id="mem_b"))
    h.insert_edge(pool, NewEdge(source_id="mem_a", target_id="mem_b", weight=0.3))
    edges = h.get_edges(pool, "mem_a")
    assert len(edges) == 1
    assert edges[0].weight == 1.0
    assert edges[0].relation == "related"
    assert edges[0].edge_type is EdgeType.AUTO


def test_insert_edge_to_unknown_memory_fails(pool):
    add_memory(pool, "mem_a")
    with pytest.raises(StorageError):
        h.insert_edge(pool, NewEdge("mem_a", "mem_does_not_exist", edge_type=EdgeType.MANUAL))


def test_delete_cascades(pool):
    add_memory(pool, "mem_a")
    add_memory(pool, "mem_b")
    h.insert_edge(pool, auto_edge("mem_a", "mem_b"))
    h.insert_context_tag(pool, "mem_a", "ns", "team")
    with pool.connection() as conn:
        conn.execute("DELETE FROM memories WHERE id = 'mem_a'")
    assert h.get_edges(pool, "mem_b") == []
    assert h.get_context_tags(pool, "mem_a") == {}


def test_bfs_chain(pool):
    for m in ("mem_a", "mem_b", "mem_c"):
        add_memory(pool, m)
    h.insert_edge(pool, auto_edge("mem_a", "mem_b", 1.0))
    h.insert_edge(pool, auto_edge("mem_b", "mem_c", 0.5))
    h.insert_context_tag(pool, "mem_c", "agent", "test")
    result = h.bfs_expand(pool, ["mem_a"], 2, 20)
    assert [m.id for m in result] == ["mem_b", "mem_c"]
    assert result[0].score == pytest.approx(0.5)
    assert result[1].score < result[0].score
    assert result[1].context == {"agent": "test"}
    assert result[0].level is MemoryLevel.FULL


def test_bfs_depth_and_limits(pool):
    for m in ("mem_a", "mem_b", "mem_c"):
        add_memory(pool, m)
    h.insert_edge(pool, auto_edge("mem_a", "mem_b"))
    h.insert_edge(pool, auto_edge("mem_b", "mem_c"))
    assert [m.id for m in h.bfs_expand(pool, ["mem_a"], 1, 20)] == ["mem_b"]
    assert len(h.bfs_expand(pool, ["mem_a"], 2, 1)) == 1
    assert h.bfs_expand(pool, ["mem_a"], 0, 20) == []
    assert h.bfs_expand(pool, [], 2, 20) == []


def test_bfs_auto_edges_go_both_ways_manual_one_way(pool):
    for m in ("mem_a", "mem_b", "mem_c"):
        add_memory(pool, m)
    h.insert_edge(pool, auto_edge("mem_a", "mem_b"))
    h.insert_edge(pool, NewEdge("mem_c", "mem_b", edge_type=EdgeType.MANUAL))
    assert [m.id for m in h.bfs_expand(pool, ["mem_b"], 1, 20)] == ["mem_a"]
    assert [m.id for m in h.bfs_expand(pool, ["mem_c"], 1, 20)] == ["mem_b"]


def test_bfs_skips_archived(pool):
    add_memory(pool, "mem_a")
    add_memory(pool, "mem_b", level=-1)
    h.insert_edge(pool, auto_edge("mem_a", "mem_b"))
    assert h.bfs_expand(pool, ["mem_a"], 2, 20) == []


def test_context_tags_and_search(pool):
    add_memory(pool, "mem_a")
    add_memory(pool, "mem_b")
    h.insert_context_tag(pool, "mem_a", "agent", "x")
    h.insert_context_tag(pool, "mem_b", "agent", "y")
    assert h.get_context_tags(pool, "mem_a") == {"agent": "x"}
    batch = h.get_context_tags_batch(pool, ["mem_a", "mem_b"])
    assert batch == {"mem_a": {"agent": "x"}, "mem_b": {"agent": "y"}}
    assert h.get_context_tags_batch(pool, []) == {}
    assert h.search_by_context(pool, {"agent": "x"}) == ["mem_a"]
    assert sorted(h.search_by_context(pool, {"agent": "y", "other": "z"})) == ["mem_b"]
    assert h.search_by_context(pool, {}) == []


def test_pending_and_mark_consolidated(pool):
    add_memory(pool, "mem_a")
    add_memory(pool, "mem_b")
    assert sorted(h.list_pending_ids(pool, 10)) == ["mem_a", "mem_b"]
    assert len(h.list_pending_ids(pool, 1)) == 1
    h.mark_consolidated(pool, ["mem_a"])
    h.mark_consolidated(pool, [])
    assert h.list_pending_ids(pool, 10) == ["mem_b"]


def test_forgetting_order_and_level(pool):
    add_memory(pool, "mem_new", accessed_at="2024-03-01T00:00:00.000000+00:00")
    add_memory(pool, "mem_old", accessed_at="2023-03-01T00:00:00.000000+00:00")
    add_memory(pool, "mem_gone", accessed_at="2022-03-01T00:00:00.000000+00:00")
    h.update_level(pool, "mem_gone", -1)
    assert h.list_forgetting_ids(pool, 10) == ["mem_old", "mem_new"]


def test_consolidation_log_round_trip(pool):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    h.log_consolidation(pool, start, start + timedelta(seconds=5), ConsolidationReport(3, 2, 1))
    h.log_consolidation(pool, start, start, ConsolidationReport(9, 0, 0))
    entries = h.get_consolidation_log(pool, 10)
    assert [e.memories_processed for e in entries] == [9, 3]
    assert entries[1].started_at == start
    assert entries[1].finished_at == start + timedelta(seconds=5)
    assert (entries[1].edges_created, entries[1].errors) == (2, 1)
    assert len(h.get_consolidation_log(pool, 1)) == 1


def test_stats(pool):
    add_memory(pool, "mem_a")
    add_memory(pool, "mem_b", level=0)
    h.insert_edge(pool, auto_edge("mem_a", "mem_b"))
    h.mark_consolidated(pool, ["mem_b"])
    s = h.stats(pool)
    assert s.total_memories == 2
    assert s.total_edges == 1
    assert s.pending_consolidation == 1
    assert s.by_level == {2: 1, 0: 1}


def test_edges_batch(pool):
    for m in ("mem_a", "mem_b", "mem_c"):
        add_memory(pool, m)
    h.insert_edge(pool, auto_edge("mem_a", "mem_b"))
    h.insert_edge(pool, auto_edge("mem_b", "mem_c"))
    batch = h.get_edges_batch(pool, ["mem_a", "mem_b"])
    assert len(batch["mem_a"]) == 1
    assert len(batch["mem_b"]) == 2
    assert "mem_c" not in batch
    assert h.get_edges_batch(pool, []) == {}
    assert len(h.get_edges(pool, "mem_b")) == 2


def test_update_access(pool):
    add_memory(pool, "mem_a")
    h.update_access(pool, ["mem_a"])
    h.update_access(pool, ["mem_a"])
    h.update_access(pool, [])
    with pool.connection() as conn:
        count, accessed = conn.execute(
            "SELECT access_count, accessed_at FROM memories WHERE id = 'mem_a'"
        ).fetchone()
    assert count == 2
    assert h.parse_rfc3339(accessed) > h.parse_rfc3339(TS)


def test_memory_exists(pool):
    add_memory(pool, "mem_a")
    assert h.memory_exists(pool, "mem_a") is True
    assert h.memory_exists(pool, "mem_zzz") is False
    assert h.memory_exists_batch(pool, ["mem_a", "mem_nonexistent"]) == {"mem_a"}
    assert h.memory_exists_batch(pool, []) == set()


def test_update_abstract(pool):
    add_memory(pool, "mem_a")
    h.update_abstract(pool, "mem_a", "summarized")
    with pool.connection() as conn:
        (abstract,) = conn.execute("SELECT abstract FROM memories WHERE id='mem_a'").fetchone()
    assert abstract == "summarized"
    with pytest.raises(MemoryNotFoundError):
        h.update_abstract(pool, "mem_missing", "x")