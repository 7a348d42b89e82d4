"""Domain types shared by the storage layer: errors, enums and records."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class MerkurError(Exception):
    """Base class for every error raised by the storage layer."""


class StorageError(MerkurError):
    """A database operation failed."""


class MemoryNotFoundError(MerkurError):
    """The requested memory does not exist."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"Memory not found: {memory_id}")
        self.memory_id = memory_id


class EdgeType(str, enum.Enum):
    """How an edge came to be.

    Automatic edges are traversed in both directions; manual edges are
    followed from source to target only.
    """

    AUTO = "auto"
    MANUAL = "manual"

    @property
    def db_value(self) -> str:
        return self.value


class MemoryLevel(enum.IntEnum):
    """Detail level of a stored memory; negative levels are archived."""

    ARCHIVED = -1
    SUMMARY = 0
    ABSTRACT = 1
    FULL = 2

    @property
    def is_archived(self) -> bool:
        return self < 0


def parse_edge_type(value: str) -> EdgeType:
    """Map a stored edge type string to an EdgeType, defaulting to AUTO."""
    return EdgeType.MANUAL if value == EdgeType.MANUAL.value else EdgeType.AUTO


def parse_memory_level(value: int) -> MemoryLevel:
    """Map a stored integer level to a MemoryLevel, clamping out-of-range values."""
    value = int(value)
    if value < MemoryLevel.ARCHIVED:
        return MemoryLevel.ARCHIVED
    if value > MemoryLevel.FULL:
        return MemoryLevel.FULL
    return MemoryLevel(value)


@dataclass
class NewMemory:
    """A memory to be inserted."""

    content: str
    category: str | None = None
    context: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None


@dataclass
class Memory:
    """A stored memory as read back from the database."""

    id: str
    content: str
    abstract: str | None
    category: str
    weight: float
    level: MemoryLevel
    pending_consolidation: bool
    embedding: list[float] | None
    metadata: dict[str, Any]
    context: dict[str, str]
    created_at: datetime
    updated_at: datetime
    accessed_at: datetime
    access_count: int


@dataclass
class ScoredMemory:
    """A memory returned from a search together with its relevance score."""

    id: str
    content: str
    abstract: str | None
    score: float
    weight: float
    level: MemoryLevel
    category: str
    context: dict[str, str]
    created_at: datetime


@dataclass
class NewEdge:
    """An edge to be inserted between two memories."""

    source_id: str
    target_id: str
    weight: float | None = None
    relation: str | None = None
    edge_type: EdgeType = EdgeType.AUTO


@dataclass
class Edge:
    """A stored edge between two memories."""

    id: int
    source_id: str
    target_id: str
    weight: float
    relation: str
    edge_type: EdgeType


@dataclass
class ConsolidationReport:
    """Counters produced by one consolidation run."""

    memories_processed: int = 0
    edges_created: int = 0
    errors: int = 0


@dataclass
class ConsolidationLogEntry:
    """A persisted record of a consolidation run."""

    id: int
    started_at: datetime
    finished_at: datetime
    memories_processed: int
    edges_created: int
    errors: int


@dataclass
class StorageStats:
    """Aggregate counts over the stored memories and edges."""

    total_memories: int = 0
    total_edges: int = 0
    pending_consolidation: int = 0
    by_level: dict[int, int] = field(default_factory=dict)