"""Association graph between memory items.

Edges are created automatically when an item is stored:

| Relation      | Linked items                                           | Strength   |
|---------------|--------------------------------------------------------|------------|
| same-session  | 5 latest items of each other kind in the session       | 0.6        |
| same-session  | 3 latest items of the same kind in the session         | 0.5        |
| temporal      | items of any kind created within 5 minutes             | 1.0        |
| same-file     | 3 latest errors and decisions touching the same file   | 0.7        |
| semantic      | items with embedding cosine >= 0.8 (background pass)   | similarity |

Edges are unique per (source, target, relation) and never self-loops.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from cortex.embedding.ollama import EmbeddingError
from cortex.memory.types import Association, ItemKind, ItemRef, Neighbor, Relation
from cortex.storage.hybrid import MIN_EMBEDDING_TEXT, HybridStore
from cortex.storage.sqlite import SQLiteStore, SQLiteStoreError, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssociationRule:
    """Limits and strength of one automatic association rule."""

    relation: Relation
    strength: float
    limit: int


SESSION_CROSS_KIND = AssociationRule(Relation.SAME_SESSION, 0.6, limit=5)
SESSION_SAME_KIND = AssociationRule(Relation.SAME_SESSION, 0.5, limit=3)
TEMPORAL = AssociationRule(Relation.TEMPORAL, 1.0, limit=5)
SAME_FILE = AssociationRule(Relation.SAME_FILE, 0.7, limit=3)

TEMPORAL_WINDOW = timedelta(seconds=300)
SAME_FILE_MAX_FILES = 3
SAME_FILE_KINDS = (ItemKind.ERROR, ItemKind.DECISION)

SEMANTIC_THRESHOLD = 0.8
SEMANTIC_CANDIDATES = 10

# Kinds eligible as same-session / temporal partners
LINKABLE_KINDS = (
    ItemKind.DECISION,
    ItemKind.ERROR,
    ItemKind.LEARNING,
    ItemKind.NOTE,
    ItemKind.UNFINISHED,
)


class AssociationGraph:
    """Creates and reads association edges.

    Args:
        store: SQLite item store
    """

    def __init__(self, store: SQLiteStore):
        self._store = store

    def create_association(
        self,
        source: ItemRef,
        target: ItemRef,
        relation: Relation,
        strength: float = 1.0,
        now: Optional[datetime] = None,
    ) -> bool:
        """Insert an edge; existing edges, self-loops and bad strengths are no-ops.

        Returns:
            True if a new edge was created
        """
        if source == target:
            return False
        if not 0.0 <= strength <= 1.0:
            logger.debug(f"Ignoring {relation.value} edge with strength {strength}")
            return False
        return self._store.add_association(source, target, relation, strength, now=now)

    def get_neighbors(self, ref: ItemRef) -> list[Neighbor]:
        return self._store.get_neighbors(ref)

    def get_associations(self, ref: ItemRef) -> list[Association]:
        return self._store.get_associations(ref)

    def count(self) -> int:
        return self._store.count_associations()

    def auto_create_associations(
        self,
        ref: ItemRef,
        session_id: Optional[str] = None,
        files: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Link a newly stored item to its session, time and file neighbours.

        All rules run in one transaction. A failing rule is logged and the
        remaining rules still run.

        Returns:
            Number of edges actually inserted
        """
        now = now or utc_now()
        if not self._store.is_active(ref):
            return 0

        rules: list[tuple[str, Callable[[], int]]] = [
            ("same-session", lambda: self._link_session(ref, session_id, now)),
            ("temporal", lambda: self._link_temporal(ref, now)),
            ("same-file", lambda: self._link_files(ref, files or [], now)),
        ]

        created = 0
        with self._store.transaction():
            for name, rule in rules:
                try:
                    created += rule()
                except SQLiteStoreError as e:
                    logger.warning(f"Association rule {name} failed for {ref.key}: {e}")

        if created:
            logger.debug(f"Created {created} associations for {ref.key}")
        return created

    def _link_session(self, ref: ItemRef, session_id: Optional[str], now: datetime) -> int:
        if not session_id:
            return 0
        created = 0
        for kind in LINKABLE_KINDS:
            if kind is ref.kind:
                rule = SESSION_SAME_KIND
                partners = self._store.recent_in_session(
                    kind, session_id, rule.limit, exclude_id=ref.id
                )
            else:
                rule = SESSION_CROSS_KIND
                partners = self._store.recent_in_session(kind, session_id, rule.limit)
            created += self._link_all(ref, partners, rule, now)
        return created

    def _link_temporal(self, ref: ItemRef, now: datetime) -> int:
        created = 0
        for kind in LINKABLE_KINDS:
            partners = self._store.created_between(
                kind,
                now - TEMPORAL_WINDOW,
                now + TEMPORAL_WINDOW,
                TEMPORAL.limit,
                exclude_id=ref.id if kind is ref.kind else None,
            )
            created += self._link_all(ref, partners, TEMPORAL, now)
        return created

    def _link_files(self, ref: ItemRef, files: Sequence[str], now: datetime) -> int:
        created = 0
        for file_path in list(files)[:SAME_FILE_MAX_FILES]:
            if not file_path:
                continue
            for kind in SAME_FILE_KINDS:
                partners = self._store.items_for_file(
                    kind,
                    file_path,
                    SAME_FILE.limit,
                    exclude_id=ref.id if kind is ref.kind else None,
                )
                created += self._link_all(ref, partners, SAME_FILE, now)
        return created

    def _link_all(
        self,
        ref: ItemRef,
        partners: list[ItemRef],
        rule: AssociationRule,
        now: datetime,
    ) -> int:
        return sum(
            1
            for partner in partners
            if self.create_association(ref, partner, rule.relation, rule.strength, now=now)
        )

    async def auto_create_semantic_associations(
        self,
        ref: ItemRef,
        text: str,
        hybrid: HybridStore,
        threshold: float = SEMANTIC_THRESHOLD,
    ) -> int:
        """Link an item to its nearest neighbours in embedding space.

        Intended for the background queue, after the item's embedding has
        been stored. Archived neighbours are ignored.

        Returns:
            Number of semantic edges inserted (0 when embeddings are unavailable)
        """
        if len(text.strip()) < MIN_EMBEDDING_TEXT:
            return 0
        try:
            matches = await hybrid.similar_to_item(ref, text, SEMANTIC_CANDIDATES)
        except EmbeddingError as e:
            logger.warning(f"Semantic linking skipped for {ref.key}: {e}")
            return 0

        created = 0
        with self._store.transaction():
            for other, score in matches:
                if other == ref or score < threshold:
                    continue
                if not self._store.is_active(other):
                    continue
                if self.create_association(ref, other, Relation.SEMANTIC, min(score, 1.0)):
                    created += 1
        if created:
            logger.debug(f"Created {created} semantic associations for {ref.key}")
        return created
