"""Typed registry describing how each item kind is stored and scored.

Every component that needs per-kind behavior (decay, importance, search,
association rules, embedding text) looks it up here instead of switching on
kind names. All SQL identifiers used by the storage layer come from this
registry, never from caller input.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from cortex.memory.types import ItemKind

EMBEDDING_TEXT_LIMIT = 512


@dataclass(frozen=True)
class DecayConfig:
    """Half-life parameters for the forgetting curve.

    half_life = base_half_life_days * (1 + access_factor * access_count)
    """

    base_half_life_days: float = 7.0
    access_factor: float = 0.5

    def half_life(self, access_count: int) -> float:
        return self.base_half_life_days * (1 + self.access_factor * max(access_count, 0))


@dataclass(frozen=True)
class ItemSpec:
    """Storage and scoring description of one item kind.

    Attributes:
        kind: The item kind
        table: Source table name
        date_column: Creation timestamp column
        recency_column: Column ordering "most recent" lookups
        fts_table: FTS5 table indexing text_columns
        fts_join: Source column joined to the FTS rowid
        text_columns: Columns indexed for full-text search
        snippet_columns: Columns searched for a snippet, in preference order
        required_fields: Fields a caller must supply on store
        optional_fields: Other fields a caller may supply
        json_fields: Fields stored as JSON text
        impact_column: Column holding high/medium/low (None: neutral impact)
        files_column: JSON list of file paths the item touches
        embedding_fields: Fields concatenated into the embedding text
        sentiment: Fixed emotional-salience prior for the kind
        counts_for_surprise: Whether the kind counts toward rarity
        decay: Forgetting curve, or None when the kind never decays
        immunity_flags: Boolean columns that exempt a row from decay and pruning
        prunable: Whether stale rows are archived by maintenance
        title_builder: Builds a display title from a row
        metadata_fields: Fields surfaced as display metadata
    """

    kind: ItemKind
    table: str
    date_column: str
    recency_column: str
    fts_table: str
    fts_join: str
    text_columns: tuple[str, ...]
    snippet_columns: tuple[str, ...]
    required_fields: tuple[str, ...]
    optional_fields: tuple[str, ...]
    json_fields: tuple[str, ...] = ()
    impact_column: Optional[str] = None
    files_column: Optional[str] = None
    embedding_fields: tuple[str, ...] = ()
    sentiment: float = 0.5
    counts_for_surprise: bool = True
    decay: Optional[DecayConfig] = field(default_factory=DecayConfig)
    immunity_flags: tuple[str, ...] = ()
    prunable: bool = False
    title_builder: Callable[[dict[str, Any]], str] = lambda row: str(row.get("id", ""))
    metadata_fields: tuple[str, ...] = ()

    @property
    def id_type(self) -> type:
        return str if self.kind is ItemKind.SESSION else int

    def coerce_id(self, raw_id: Any) -> Any:
        """Convert an id read from text storage to the kind's id type."""
        return self.id_type(raw_id)

    @property
    def writable_fields(self) -> tuple[str, ...]:
        return self.required_fields + self.optional_fields

    def immunity_sql(self) -> str:
        """SQL predicate selecting rows that are NOT immune."""
        if not self.immunity_flags:
            return "1 = 1"
        return " AND ".join(f"COALESCE({flag}, 0) = 0" for flag in self.immunity_flags)

    def title(self, row: dict[str, Any]) -> str:
        return self.title_builder(row)

    def metadata(self, row: dict[str, Any]) -> dict[str, Any]:
        return {
            name: row[name]
            for name in self.metadata_fields
            if name in row.keys() and row[name] is not None
        }

    def files(self, row: dict[str, Any]) -> list[str]:
        """Decode the files column of a row (empty when malformed)."""
        if self.files_column is None:
            return []
        return decode_list(row.get(self.files_column))

    def embedding_text(self, fields: dict[str, Any]) -> str:
        """Join the embedding fields of an item into one bounded text."""
        parts = []
        for name in self.embedding_fields:
            value = fields.get(name)
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                value = " ".join(str(v) for v in value)
            elif name in self.json_fields and isinstance(value, str):
                value = " ".join(decode_list(value)) or value
            value = str(value).strip()
            if value:
                parts.append(value)
        return " ".join(parts)[:EMBEDDING_TEXT_LIMIT]


def decode_list(raw: Any) -> list[str]:
    """Decode a JSON list column, tolerating plain strings and bad JSON."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, (list, tuple)):
        return [str(v) for v in raw]
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return [str(raw)]
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def _clip(value: Any, length: int = 80) -> str:
    return str(value or "")[:length]


REGISTRY: dict[ItemKind, ItemSpec] = {
    ItemKind.DECISION: ItemSpec(
        kind=ItemKind.DECISION,
        table="decisions",
        date_column="created_at",
        recency_column="created_at",
        fts_table="decisions_fts",
        fts_join="id",
        text_columns=("title", "reasoning"),
        snippet_columns=("title", "reasoning"),
        required_fields=("title", "reasoning", "category"),
        optional_fields=("alternatives", "files_affected", "confidence"),
        json_fields=("alternatives", "files_affected"),
        files_column="files_affected",
        embedding_fields=("title", "reasoning"),
        sentiment=0.6,
        prunable=True,
        title_builder=lambda row: str(row.get("title") or ""),
        metadata_fields=("category", "confidence"),
    ),
    ItemKind.ERROR: ItemSpec(
        kind=ItemKind.ERROR,
        table="errors",
        date_column="first_seen",
        recency_column="last_seen",
        fts_table="errors_fts",
        fts_join="id",
        text_columns=("error_message", "root_cause", "fix_description"),
        snippet_columns=("error_message", "root_cause", "fix_description"),
        required_fields=("error_message",),
        optional_fields=(
            "root_cause",
            "fix_description",
            "files_involved",
            "prevention_rule",
            "severity",
        ),
        json_fields=("files_involved",),
        impact_column="severity",
        files_column="files_involved",
        embedding_fields=("error_message", "root_cause", "fix_description"),
        sentiment=0.8,
        prunable=True,
        title_builder=lambda row: _clip(row.get("error_message")),
        metadata_fields=("severity", "occurrences"),
    ),
    ItemKind.LEARNING: ItemSpec(
        kind=ItemKind.LEARNING,
        table="learnings",
        date_column="created_at",
        recency_column="created_at",
        fts_table="learnings_fts",
        fts_join="id",
        text_columns=("anti_pattern", "correct_pattern", "context"),
        snippet_columns=("anti_pattern", "correct_pattern", "context"),
        required_fields=("anti_pattern", "correct_pattern", "context"),
        optional_fields=("detection_regex", "severity", "auto_block", "core_memory"),
        impact_column="severity",
        embedding_fields=("anti_pattern", "correct_pattern", "context"),
        sentiment=0.8,
        immunity_flags=("core_memory", "auto_block"),
        prunable=True,
        title_builder=lambda row: _clip(row.get("anti_pattern")),
        metadata_fields=("severity", "auto_block"),
    ),
    ItemKind.NOTE: ItemSpec(
        kind=ItemKind.NOTE,
        table="notes",
        date_column="created_at",
        recency_column="created_at",
        fts_table="notes_fts",
        fts_join="id",
        text_columns=("text",),
        snippet_columns=("text",),
        required_fields=("text",),
        optional_fields=("tags",),
        json_fields=("tags",),
        embedding_fields=("text", "tags"),
        sentiment=0.3,
        title_builder=lambda row: _clip(row.get("text")),
        metadata_fields=("tags",),
    ),
    ItemKind.UNFINISHED: ItemSpec(
        kind=ItemKind.UNFINISHED,
        table="unfinished",
        date_column="created_at",
        recency_column="created_at",
        fts_table="unfinished_fts",
        fts_join="id",
        text_columns=("description", "context"),
        snippet_columns=("description", "context"),
        required_fields=("description",),
        optional_fields=("context", "priority", "blocked_by"),
        impact_column="priority",
        embedding_fields=("description", "context"),
        sentiment=0.5,
        title_builder=lambda row: _clip(row.get("description")),
        metadata_fields=("priority",),
    ),
    ItemKind.SESSION: ItemSpec(
        kind=ItemKind.SESSION,
        table="sessions",
        date_column="started_at",
        recency_column="started_at",
        fts_table="sessions_fts",
        fts_join="rowid",
        text_columns=("summary", "key_changes"),
        snippet_columns=("summary", "key_changes"),
        required_fields=(),
        optional_fields=("summary", "key_changes", "status"),
        embedding_fields=("summary", "key_changes"),
        sentiment=0.5,
        counts_for_surprise=False,
        decay=None,
        title_builder=lambda row: _clip(row.get("summary")) or str(row.get("id", "")),
        metadata_fields=("status",),
    ),
}

# Round-robin order of the decay sweep
DECAYING_KINDS: tuple[ItemKind, ...] = tuple(
    kind for kind, spec in REGISTRY.items() if spec.decay is not None
)


def get_spec(kind: ItemKind) -> ItemSpec:
    """Look up the registry entry for a kind."""
    return REGISTRY[ItemKind.parse(kind)]


def surprise_specs() -> list[ItemSpec]:
    return [spec for spec in REGISTRY.values() if spec.counts_for_surprise]
