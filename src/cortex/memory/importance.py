"""Five-dimension importance scoring.

importance = 0.15 * frequency + 0.25 * recency + 0.30 * impact
           + 0.15 * surprise + 0.15 * sentiment

- frequency: access_count / 10, capped at 1
- recency: exp(-days / 14) since last access (or creation)
- impact: high/critical 1.0, medium 0.6, low 0.3, otherwise 0.5
- surprise: 1 - share of the kind among active items (rare kinds score high)
- sentiment: fixed prior per kind from the registry
"""

import logging
import math
from datetime import datetime
from typing import Optional, Union

from cortex.memory.registry import REGISTRY, surprise_specs
from cortex.memory.types import ItemId, ItemKind
from cortex.storage.sqlite import (
    SQLiteStore,
    SQLiteStoreError,
    days_between,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

WEIGHTS = {
    "frequency": 0.15,
    "recency": 0.25,
    "impact": 0.30,
    "surprise": 0.15,
    "sentiment": 0.15,
}

IMPACT_LEVELS = {
    "critical": 1.0,
    "high": 1.0,
    "medium": 0.6,
    "low": 0.3,
}
NEUTRAL = 0.5

FREQUENCY_SATURATION = 10
RECENCY_HALF_DAYS = 14.0
UNKNOWN_AGE_DAYS = 30.0
REFRESH_BATCH = 500


def impact_value(level: Optional[str]) -> float:
    if not level:
        return NEUTRAL
    return IMPACT_LEVELS.get(str(level).strip().lower(), NEUTRAL)


class SurpriseCache:
    """Rarity of each item kind, cached for one session at a time.

    The cache holds a single slot keyed by session id. Asking for a
    different session (including no session) rebuilds it, so values never
    outlive a session boundary.

    Args:
        store: SQLite item store
    """

    def __init__(self, store: SQLiteStore):
        self._store = store
        self._session_key: Optional[str] = None
        self._values: Optional[dict[ItemKind, float]] = None

    def get(self, kind: ItemKind, session_id: Optional[str] = None) -> float:
        """Surprise of ``kind`` for a session (0.5 when nothing is stored)."""
        key = session_id or ""
        if self._values is None or self._session_key != key:
            self._values = self._compute()
            self._session_key = key
        return self._values.get(kind, NEUTRAL)

    def invalidate(self, session_id: Optional[str] = None) -> None:
        """Drop the cached slot if it belongs to ``session_id`` (any slot when None)."""
        if session_id is None or session_id == self._session_key:
            self._values = None
            self._session_key = None

    def _compute(self) -> dict[ItemKind, float]:
        counts: dict[ItemKind, int] = {}
        for spec in surprise_specs():
            try:
                counts[spec.kind] = self._store.count_active(spec.kind)
            except SQLiteStoreError as e:
                logger.debug(f"Not counting {spec.table} for surprise: {e}")
        total = sum(counts.values())
        if total == 0:
            return {}
        return {kind: 1.0 - count / total for kind, count in counts.items()}

    def __contains__(self, session_id: str) -> bool:
        return self._values is not None and (session_id or "") == self._session_key


class ImportanceScorer:
    """Computes and refreshes importance scores.

    Args:
        store: SQLite item store
        cache: Surprise cache (one is created when omitted)
    """

    def __init__(self, store: SQLiteStore, cache: Optional[SurpriseCache] = None):
        self._store = store
        self.surprise_cache = cache or SurpriseCache(store)

    def compute_importance(
        self,
        access_count: int,
        last_accessed: Optional[Union[str, datetime]],
        created_at: Optional[Union[str, datetime]],
        impact: Optional[str],
        kind: ItemKind,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> float:
        """Importance in [0, 1], rounded to 3 decimals.

        Args:
            access_count: Number of reads so far
            last_accessed: Last read timestamp, if any
            created_at: Creation timestamp, if known
            impact: Priority or severity level text
            kind: Item kind (selects the sentiment prior and surprise)
            session_id: Session whose surprise values apply
            now: Reference time for recency

        Raises:
            ValueError: If a timestamp string cannot be parsed
        """
        now = now or utc_now()
        kind = ItemKind.parse(kind)

        frequency = min(max(access_count or 0, 0) / FREQUENCY_SATURATION, 1.0)

        reference = _as_datetime(last_accessed) or _as_datetime(created_at)
        age_days = days_between(reference, now) if reference else UNKNOWN_AGE_DAYS
        recency = math.exp(-age_days / RECENCY_HALF_DAYS)

        score = (
            WEIGHTS["frequency"] * frequency
            + WEIGHTS["recency"] * recency
            + WEIGHTS["impact"] * impact_value(impact)
            + WEIGHTS["surprise"] * self.surprise_cache.get(kind, session_id)
            + WEIGHTS["sentiment"] * REGISTRY[kind].sentiment
        )
        return round(min(max(score, 0.0), 1.0), 3)

    def refresh_importance_scores(
        self,
        kind: ItemKind,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Recompute importance for up to 500 active items of a kind.

        Returns:
            Number of items updated (0 if the table could not be read)
        """
        kind = ItemKind.parse(kind)
        now = now or utc_now()
        try:
            rows = self._store.fetch_importance_candidates(kind, limit=REFRESH_BATCH)
        except SQLiteStoreError as e:
            logger.warning(f"Skipping importance refresh for {kind.value}: {e}")
            return 0

        updates: list[tuple[float, ItemId]] = []
        for row in rows:
            try:
                score = self.compute_importance(
                    access_count=row["access_count"] or 0,
                    last_accessed=row["last_accessed"],
                    created_at=row["created_at"],
                    impact=row["impact"],
                    kind=kind,
                    session_id=session_id,
                    now=now,
                )
            except ValueError:
                logger.debug(f"Skipping {kind.value} {row['id']}: unreadable timestamp")
                continue
            updates.append((score, row["id"]))

        try:
            with self._store.transaction():
                return self._store.set_importance(kind, updates)
        except SQLiteStoreError as e:
            logger.warning(f"Importance refresh for {kind.value} failed: {e}")
            return 0


def _as_datetime(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    if isinstance(value, str):
        return parse_timestamp(value)
    return value
