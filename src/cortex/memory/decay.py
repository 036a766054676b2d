"""Ebbinghaus-style decay of memory strength.

Strength is recomputed from timestamps on every sweep rather than multiplied
down incrementally, so a sweep can be interrupted and re-run without
compounding:

    strength = exp(-days_since_access / half_life)
    half_life = 7 * (1 + 0.5 * access_count) days

Only touching an item raises its strength again (back to 1.0).
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from cortex.memory.registry import DECAYING_KINDS, REGISTRY, DecayConfig
from cortex.memory.types import DecayStats, ItemId, ItemKind
from cortex.storage.sqlite import (
    SQLiteStore,
    SQLiteStoreError,
    days_between,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

# Below this an item is effectively forgotten and no longer swept
DEAD_STRENGTH = 0.01
WEAK_STRENGTH = 0.1

UNUSED_PRUNE_DAYS = 90
RARELY_USED_PRUNE_DAYS = 365
RARE_ACCESS_LIMIT = 3


def memory_strength(
    elapsed_days: float, access_count: int, config: Optional[DecayConfig] = None
) -> float:
    """Strength after ``elapsed_days`` without access."""
    config = config or DecayConfig()
    return math.exp(-max(elapsed_days, 0.0) / config.half_life(access_count))


class DecayEngine:
    """Applies the forgetting curve to item tables in round-robin slices.

    Args:
        store: SQLite item store
    """

    def __init__(self, store: SQLiteStore):
        self._store = store

    def run_decay(
        self,
        max_tables: int = 5,
        start_index: int = 0,
        now: Optional[datetime] = None,
    ) -> int:
        """Recompute strength for up to ``max_tables`` decaying kinds.

        Kinds are taken in registry order starting at ``start_index`` and
        wrapping around. A table that fails is logged and skipped.

        Returns:
            The start index for the next call
        """
        kinds = DECAYING_KINDS
        if not kinds:
            return 0
        now = now or utc_now()
        count = min(max(max_tables, 0), len(kinds))

        for offset in range(count):
            kind = kinds[(start_index + offset) % len(kinds)]
            try:
                updated = self._decay_kind(kind, now)
                logger.debug(f"Decayed {updated} {kind.value} items")
            except SQLiteStoreError as e:
                logger.warning(f"Skipping decay for {kind.value}: {e}")

        return (start_index + count) % len(kinds)

    def _decay_kind(self, kind: ItemKind, now: datetime) -> int:
        spec = REGISTRY[kind]
        if spec.decay is None:
            return 0
        updates: list[tuple[float, ItemId]] = []

        for row in self._store.fetch_decay_candidates(kind):
            try:
                reference = parse_timestamp(row["last_accessed"]) or parse_timestamp(
                    row["created_at"]
                )
            except ValueError:
                logger.debug(f"Skipping {kind.value} {row['id']}: unreadable timestamp")
                continue
            if reference is None:
                continue
            strength = memory_strength(
                days_between(reference, now), row["access_count"] or 0, spec.decay
            )
            updates.append((strength, row["id"]))

        with self._store.transaction():
            return self._store.set_strengths(kind, updates)

    def touch_memory(
        self, kind: ItemKind, item_id: ItemId, now: Optional[datetime] = None
    ) -> bool:
        """Reset an item's strength to 1.0 and count the access.

        Returns:
            True if the item exists and is active
        """
        return self._store.touch_item(kind, item_id, now=now)

    def decay_stats(self) -> list[DecayStats]:
        """Strength distribution of every decaying table."""
        stats = []
        for kind in DECAYING_KINDS:
            try:
                stats.append(self._store.decay_distribution(kind, weak_below=WEAK_STRENGTH))
            except SQLiteStoreError as e:
                logger.warning(f"No decay stats for {kind.value}: {e}")
        return stats

    def run_pruning(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Archive stale items of prunable kinds.

        Items older than 90 days that were never read, or older than a year
        and read fewer than 3 times, are archived. Immune learnings are kept.

        Returns:
            Mapping of kind name to number of items archived
        """
        now = now or utc_now()
        archived: dict[str, int] = {}
        for kind, spec in REGISTRY.items():
            if not spec.prunable:
                continue
            try:
                archived[kind.value] = self._store.archive_stale(
                    kind,
                    unused_before=now - timedelta(days=UNUSED_PRUNE_DAYS),
                    rarely_used_before=now - timedelta(days=RARELY_USED_PRUNE_DAYS),
                    rare_access_limit=RARE_ACCESS_LIMIT,
                    now=now,
                )
            except SQLiteStoreError as e:
                logger.warning(f"Skipping pruning for {kind.value}: {e}")
        total = sum(archived.values())
        if total:
            logger.info(f"Archived {total} stale items: {archived}")
        return archived
