"""SQLite-backed memory store with vector search and graph expansion."""

__version__ = "0.4.0"
__all__ = [
    "migration",
    "models",
    "schema",
    "sqlite_helpers",
    "sqlite_storage",
    "vector_index",
]