# merkur

A small memory store for agents and applications. Memories are kept in SQLite,
their embeddings in an in-memory cosine-similarity index, and relations between
memories in an edge table that can be walked breadth-first.

Only the Python standard library is needed.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Using the store

```python
from merkur.models import NewMemory, NewEdge, EdgeType
from merkur.sqlite_storage import SqliteStorage

with SqliteStorage("memories.db", embedding_dim=4) as storage:
    gc = storage.insert_memory(NewMemory(
        content="v8 GC is generational",
        category="general",
        context={"agent": "docs"},
        embedding=[1.0, 0.0, 0.0, 0.0],
    ))
    rust = storage.insert_memory(NewMemory(
        content="Rust async",
        embedding=[0.0, 1.0, 0.0, 0.0],
    ))

    storage.insert_edge(NewEdge(source_id=gc, target_id=rust, weight=0.8, edge_type=EdgeType.AUTO))

    for hit in storage.vector_search([1.0, 0.0, 0.0, 0.0], limit=5):
        print(hit.id, hit.score, hit.content)

    for neighbour in storage.bfs_expand([gc], depth=2, degree_limit=20):
        print(neighbour.id, neighbour.score)

    print(storage.stats())
```

`SqliteStorage` can also be closed explicitly with `close()`.
`SqliteStorage.in_memory(embedding_dim)` opens a fresh, private in-memory
database that lasts until the storage is closed.

### Memories

- `insert_memory(NewMemory)` returns a generated id of the form `mem_<uuid>`.
  New memories start at `MemoryLevel.FULL`, with weight 1.0, category
  `"general"` unless given, and are pending consolidation. Embeddings are
  stored as little-endian 32-bit float blobs and loaded back into the index
  when the storage is reopened.
- `get_memory(id)` returns a `Memory` (without its embedding) or `None`.
- `update_memory(id, content, embedding)` replaces content and embedding and
  marks the memory pending again; passing `None` as the embedding removes it
  from the index.
- `delete_memory(id)` removes the memory; its edges and context tags go with it.
- An embedding whose length differs from `embedding_dim` raises `ValueError`.

### Search and graph

- `vector_search(vector, limit)` returns `ScoredMemory` objects, best cosine
  score first, leaving out archived memories, and bumps the access time and
  count of the memories returned.
- `bfs_expand(seed_ids, depth, degree_limit)` follows `AUTO` edges in both
  directions and `MANUAL` edges from source to target only. Each reached
  memory scores `0.5 ** depth * path_weight`. Depth is capped at 5 and the
  number of results at 200; the seeds and archived memories are not returned.
- `insert_edge`, `get_edges(id)` and `get_edges_batch(ids)` manage edges;
  inserting a duplicate of (source, target, relation) is ignored.
- `insert_context_tag(id, key, value)` and `search_by_context(filters)`
  (ids of memories carrying any of the given key/value pairs).
- `memory_exists(id)` and `memory_exists_batch(ids)`.

### Consolidation and forgetting

`list_pending`, `mark_consolidated`, `list_for_forgetting` (least recently
accessed first), `update_level`, `update_abstract` and
`delete_archived_older_than(days)` support consolidation and forgetting
passes; `log_consolidation` and `get_consolidation_log` record their runs
(`ConsolidationReport`, `ConsolidationLogEntry`).

### Errors

All errors derive from `merkur.models.MerkurError`. Database failures raise
`StorageError`; foreign keys are enforced on every connection, so an edge to
an unknown memory is refused with a `StorageError`. Updating, deleting or
setting the abstract of a memory that does not exist raises
`MemoryNotFoundError`.

## The vector index alone

```python
from merkur.vector_index import InMemoryVectorIndex

index = InMemoryVectorIndex(3)
index.add("a", [3.0, 4.0, 0.0])
index.add("b", [0.0, 0.0, 1.0])
print(index.search([0.0, 0.0, 1.0], 1))   # [('b', 1.0)]
```

Scores are cosine similarities in [-1, 1]. A zero vector on either side scores
0.0. The index is thread-safe; `rebuild(items)` replaces its whole contents.

## Lower-level modules

- `merkur.sqlite_helpers`: `ConnectionPool` / `build_pool`, a bounded pool of
  SQLite connections, and the query functions the storage is built on.
- `merkur.schema`: `init_schema(connection)`, `encode_embedding` and
  `decode_embedding`.
- `merkur.migration`: `migrate(connection)` and `schema_version(connection)`,
  tracking the schema version in a `merkur_meta` table.

## What it does not do

This is a library only. It has no command-line tool, no server or network API,
and it does not compute embeddings: callers supply the vectors. SQLite is the
only storage backend.