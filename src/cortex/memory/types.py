"""Core data types for the memory core.

This module defines the data structures shared by the storage and memory layers:
- ItemKind: Enum for the six memory item kinds
- Relation: Enum for association edge relations
- ItemRef: Typed (kind, id) reference to a stored item
- Association / Neighbor: Rows of the association graph
- ActivatedItem: Output of spreading activation
- SearchResult: Ranked hybrid search hit
- StoreResult / DuplicateMatch / DuplicatePair: Outcome of storing an item
- DecayStats: Per-table strength distribution
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

ItemId = Union[int, str]


class ItemKind(Enum):
    """Kinds of items held by the memory core.

    - DECISION: Architectural or implementation decision with reasoning
    - ERROR: Observed error, de-duplicated by normalized signature
    - LEARNING: Anti-pattern paired with the correct pattern
    - NOTE: Free-form note
    - UNFINISHED: Open task (accepted under the alias "todo")
    - SESSION: Summary of one assistant session
    """
    DECISION = "decision"
    ERROR = "error"
    LEARNING = "learning"
    NOTE = "note"
    UNFINISHED = "unfinished"
    SESSION = "session"

    @classmethod
    def parse(cls, value: Union[str, "ItemKind"]) -> "ItemKind":
        """Resolve a kind from its name, accepting "todo" for UNFINISHED.

        Raises:
            ValueError: If the value names no known kind
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "todo":
            return cls.UNFINISHED
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown item kind '{value}'. Valid kinds: {valid}, todo")


class Relation(Enum):
    """Relations recorded on association edges."""
    SAME_SESSION = "same-session"
    TEMPORAL = "temporal"
    SAME_FILE = "same-file"
    SEMANTIC = "semantic"


@dataclass(frozen=True)
class ItemRef:
    """Reference to one stored item."""

    kind: ItemKind
    id: ItemId

    @property
    def key(self) -> str:
        """Stable string key, e.g. ``decision:12``."""
        return f"{self.kind.value}:{self.id}"

    @classmethod
    def from_key(cls, key: str) -> "ItemRef":
        """Parse a key produced by :attr:`key`."""
        kind_name, _, raw_id = key.partition(":")
        kind = ItemKind.parse(kind_name)
        if not raw_id:
            raise ValueError(f"Invalid item key '{key}'")
        if kind is ItemKind.SESSION:
            return cls(kind, raw_id)
        return cls(kind, int(raw_id))


@dataclass
class Association:
    """A directed, typed, weighted edge between two items.

    Attributes:
        source: Item the edge starts at
        target: Item the edge points to
        relation: Why the two items are linked
        strength: Edge weight in [0, 1]
        created_at: Creation timestamp (UTC text)
        last_activated: Last traversal timestamp, if ever traversed
        id: Database row id
    """

    source: ItemRef
    target: ItemRef
    relation: Relation
    strength: float = 1.0
    created_at: Optional[str] = None
    last_activated: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Neighbor:
    """An item adjacent to another, seen from either edge direction."""

    ref: ItemRef
    relation: Relation
    strength: float


@dataclass
class ActivatedItem:
    """An item reached by spreading activation."""

    ref: ItemRef
    activation: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.ref.kind.value,
            "id": self.ref.id,
            "activation": round(self.activation, 4),
        }


@dataclass
class SearchResult:
    """A ranked search hit.

    Attributes:
        ref: The matching item
        score: Relevance (negated BM25 or fused RRF score)
        title: Short display title
        snippet: Context window around the first query term
        created_at: Creation timestamp of the item
        metadata: Kind-specific display metadata (severity, priority, ...)
    """

    ref: ItemRef
    score: float
    title: str
    snippet: str
    created_at: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.ref.kind.value,
            "id": self.ref.id,
            "score": self.score,
            "title": self.title,
            "snippet": self.snippet,
            "created_at": self.created_at,
            "metadata": self.metadata,
        }


@dataclass
class DuplicateMatch:
    """An existing item found to be near-identical to new content."""

    ref: ItemRef
    score: float
    title: str = ""


@dataclass
class DuplicatePair:
    """Two stored items whose embeddings are probable duplicates."""

    new: ItemRef
    existing: ItemRef
    similarity: float


@dataclass
class StoreResult:
    """Result of storing an item.

    Attributes:
        success: Whether the item was written
        ref: Reference to the stored item
        importance: Initial importance score
        associations_created: Edges inserted by the synchronous rules
        duplicate: Lexically similar existing item, if any
        created: False when an existing error signature was updated instead
        error: Error message when success is False
    """

    success: bool
    ref: Optional[ItemRef] = None
    importance: Optional[float] = None
    associations_created: int = 0
    duplicate: Optional[DuplicateMatch] = None
    created: bool = True
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.ref is not None:
            result["type"] = self.ref.kind.value
            result["id"] = self.ref.id
            result["created"] = self.created
        if self.importance is not None:
            result["importance"] = self.importance
        result["associations_created"] = self.associations_created
        if self.duplicate is not None:
            result["duplicate"] = {
                "type": self.duplicate.ref.kind.value,
                "id": self.duplicate.ref.id,
                "score": round(self.duplicate.score * 100),
                "title": self.duplicate.title,
            }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class DecayStats:
    """Distribution of memory strength in one item table."""

    table: str
    total: int = 0
    strong: int = 0
    weak: int = 0
    pinned: int = 0
