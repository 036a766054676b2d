"""High-level memory operations.

This module provides ``MemoryService``, the single entry point used by the
CLI and by embedding applications:
- store_item: validate, write, score, link, and queue embedding work
- get_item: read one item and record the access
- search: hybrid BM25 + vector search (hits count as accesses)
- related_to: spreading activation from files or items
- run_maintenance: round-robin decay sweep with a persisted cursor
- start_session / end_session: session boundaries (surprise cache, refresh)
"""

import logging
from collections import deque
from datetime import datetime
from typing import Any, Optional, Sequence, Union

from cortex.config import CortexSettings
from cortex.memory.activation import activate_for_files, spreading_activation
from cortex.memory.associations import AssociationGraph
from cortex.memory.background import BackgroundQueue
from cortex.memory.decay import DecayEngine
from cortex.memory.importance import ImportanceScorer
from cortex.memory.registry import REGISTRY, ItemSpec, decode_list, get_spec
from cortex.memory.search import HybridSearch
from cortex.memory.similarity import find_similar_texts
from cortex.memory.types import (
    ActivatedItem,
    DuplicateMatch,
    DuplicatePair,
    ItemId,
    ItemKind,
    ItemRef,
    SearchResult,
    StoreResult,
)
from cortex.storage.hybrid import HybridStore
from cortex.storage.sqlite import SQLiteStoreError, format_timestamp, utc_now

logger = logging.getLogger(__name__)

MAINTENANCE_CURSOR_KEY = "decay_cursor"
LEXICAL_DUPLICATE_KINDS = (ItemKind.DECISION, ItemKind.LEARNING)
LEXICAL_CORPUS_LIMIT = 500
DUPLICATE_PAIR_LIMIT = 200


class MemoryService:
    """Facade over the decay, importance, association and search engines.

    Args:
        store: Hybrid store (SQLite item store, vectors, embedder)
        settings: Thresholds and limits (defaults when omitted)

    Example:
        >>> service = await MemoryService.create(ephemeral=True)
        >>> result = await service.store_item(
        ...     "decision",
        ...     {"title": "Use WAL", "reasoning": "Concurrent readers", "category": "architecture"},
        ... )
        >>> result.success
        True
    """

    def __init__(self, store: HybridStore, settings: Optional[CortexSettings] = None):
        self.settings = settings or CortexSettings()
        self.store = store
        sqlite = store.sqlite
        self.decay = DecayEngine(sqlite)
        self.scorer = ImportanceScorer(sqlite)
        self.graph = AssociationGraph(sqlite)
        self.search_engine = HybridSearch(
            store,
            vector_search_enabled=store.vector_search_available,
            embedding_only_threshold=self.settings.embedding_only_threshold,
        )
        self.background = BackgroundQueue(self.settings.background_concurrency)
        # Most recent pairs only; older ones are dropped once the limit is reached
        self.duplicate_pairs: deque[DuplicatePair] = deque(maxlen=DUPLICATE_PAIR_LIMIT)
        self.duplicates_flagged = 0
        self.current_session: Optional[str] = None

    @classmethod
    async def create(
        cls,
        settings: Optional[CortexSettings] = None,
        ephemeral: bool = False,
    ) -> "MemoryService":
        """Open the stores described by ``settings`` and build a service."""
        settings = settings or CortexSettings()
        store = await HybridStore.create(
            sqlite_path=settings.get_sqlite_path(),
            chroma_path=settings.get_chroma_path(),
            collection_name=settings.collection_name,
            ollama_host=settings.ollama_host,
            ollama_model=settings.ollama_model,
            ollama_timeout=settings.ollama_timeout,
            embedding_dimensions=settings.embedding_dimensions,
            vector_index_enabled=settings.vector_index_enabled,
            ephemeral=ephemeral,
        )
        return cls(store, settings)

    async def close(self) -> None:
        """Finish background work and close the stores."""
        await self.background.close()
        await self.store.close()

    async def __aenter__(self) -> "MemoryService":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def drain(self) -> None:
        """Wait for queued embedding and linking work."""
        await self.background.drain()

    # =========================================================================
    # Store / Get
    # =========================================================================

    async def store_item(
        self,
        kind: Union[str, ItemKind],
        fields: dict[str, Any],
        session_id: Optional[str] = None,
    ) -> StoreResult:
        """Validate and store an item.

        Caller errors (unknown kind, missing required fields, wrong field
        types) are reported on the result before anything is written.
        After the write the item gets an initial importance score and
        synchronous associations; embedding and semantic linking are queued.

        Args:
            kind: Item kind name ("todo" is accepted for unfinished)
            fields: Item fields
            session_id: Session to record the item in (default: current session)

        Returns:
            StoreResult with the new id, importance, edges created and any
            lexical duplicate
        """
        try:
            spec = get_spec(ItemKind.parse(kind))
        except ValueError as e:
            return StoreResult(success=False, error=str(e))

        error = self._validate(spec, fields)
        if error is not None:
            return StoreResult(success=False, error=error)

        session_id = session_id or self.current_session
        duplicate = self._lexical_duplicate(spec, fields)

        try:
            item_id, created = self.store.sqlite.add_item(spec.kind, fields, session_id=session_id)
        except (SQLiteStoreError, ValueError) as e:
            logger.error(f"Failed to store {spec.kind.value}: {e}")
            return StoreResult(success=False, error=str(e))

        ref = ItemRef(spec.kind, item_id)
        importance = self._score_new_item(spec, ref, fields, session_id) if created else None

        associations = 0
        if created:
            files = decode_list(fields.get(spec.files_column)) if spec.files_column else []
            try:
                associations = self.graph.auto_create_associations(
                    ref, session_id=session_id, files=files
                )
            except SQLiteStoreError as e:
                logger.warning(f"Association creation failed for {ref.key}: {e}")

        text = spec.embedding_text(fields)
        if created and self.store.vector_search_available:
            self.background.submit(self._index_item(ref, text), label=f"index {ref.key}")

        logger.info(
            f"Stored {ref.key} (importance {importance}, {associations} associations)"
        )
        return StoreResult(
            success=True,
            ref=ref,
            importance=importance,
            associations_created=associations,
            duplicate=duplicate,
            created=created,
        )

    def _validate(self, spec: ItemSpec, fields: dict[str, Any]) -> Optional[str]:
        if not isinstance(fields, dict):
            return "fields must be a mapping"
        missing = [name for name in spec.required_fields if not fields.get(name)]
        if missing:
            return f"{spec.kind.value} requires {', '.join(spec.required_fields)}"
        for name, value in fields.items():
            if name not in spec.writable_fields and name != "id":
                continue
            if name in spec.json_fields:
                if not isinstance(value, (str, list, tuple)) and value is not None:
                    return f"{name} must be a string or a list of strings"
            elif name in spec.immunity_flags:
                if not isinstance(value, (bool, int)):
                    return f"{name} must be a boolean"
            elif value is not None and not isinstance(value, str):
                return f"{name} must be a string"
        return None

    def _lexical_duplicate(
        self, spec: ItemSpec, fields: dict[str, Any]
    ) -> Optional[DuplicateMatch]:
        if spec.kind not in LEXICAL_DUPLICATE_KINDS:
            return None
        columns = spec.embedding_fields
        query = " ".join(str(fields.get(c) or "") for c in columns)
        try:
            rows = self.store.sqlite.list_active(spec.kind, columns, LEXICAL_CORPUS_LIMIT)
        except SQLiteStoreError as e:
            logger.debug(f"Duplicate check skipped for {spec.kind.value}: {e}")
            return None
        corpus = [(row, " ".join(str(row.get(c) or "") for c in columns)) for row in rows]
        matches = find_similar_texts(
            query, corpus, threshold=self.settings.lexical_duplicate_threshold
        )
        if not matches:
            return None
        row, score = matches[0]
        return DuplicateMatch(
            ref=ItemRef(spec.kind, row["id"]),
            score=score,
            title=spec.title(row),
        )

    def _score_new_item(
        self,
        spec: ItemSpec,
        ref: ItemRef,
        fields: dict[str, Any],
        session_id: Optional[str],
    ) -> Optional[float]:
        impact = fields.get(spec.impact_column) if spec.impact_column else None
        try:
            importance = self.scorer.compute_importance(
                access_count=0,
                last_accessed=None,
                created_at=utc_now(),
                impact=impact,
                kind=spec.kind,
                session_id=session_id,
            )
            self.store.sqlite.set_importance(spec.kind, [(importance, ref.id)])
            return importance
        except (SQLiteStoreError, ValueError) as e:
            logger.warning(f"Initial importance failed for {ref.key}: {e}")
            return None

    async def _index_item(self, ref: ItemRef, text: str) -> int:
        """Background: embed, flag probable duplicates, then link semantically."""
        if not await self.store.embed_and_index(ref, text):
            return 0
        duplicate = await self.store.find_duplicate(
            ref, threshold=self.settings.duplicate_threshold
        )
        if duplicate is not None:
            logger.warning(
                f"{ref.key} is a probable duplicate of {duplicate.ref.key} "
                f"(similarity {duplicate.score:.2f})"
            )
            self._flag_duplicate(
                DuplicatePair(new=ref, existing=duplicate.ref, similarity=duplicate.score)
            )
        return await self.graph.auto_create_semantic_associations(
            ref,
            text,
            self.store,
            threshold=self.settings.semantic_association_threshold,
        )

    def _flag_duplicate(self, pair: DuplicatePair) -> None:
        self.duplicate_pairs.append(pair)
        self.duplicates_flagged += 1

    def take_duplicate_pairs(self) -> list[DuplicatePair]:
        """Return the flagged duplicate pairs and clear them."""
        pairs = list(self.duplicate_pairs)
        self.duplicate_pairs.clear()
        return pairs

    async def get_item(
        self, kind: Union[str, ItemKind], item_id: ItemId
    ) -> Optional[dict[str, Any]]:
        """Fetch an active item and record the access.

        Returns:
            The item row after the touch, or None if missing or archived
        """
        kind = ItemKind.parse(kind)
        with self.store.sqlite.transaction():
            if not self.decay.touch_memory(kind, item_id):
                return None
            return self.store.sqlite.get_item(kind, item_id)

    async def archive_item(self, kind: Union[str, ItemKind], item_id: ItemId) -> bool:
        """Archive an item; its associations are left in place."""
        kind = ItemKind.parse(kind)
        archived = self.store.sqlite.archive_item(kind, item_id)
        if archived:
            self.store.forget_vector(ItemRef(kind, get_spec(kind).coerce_id(item_id)))
            self.scorer.surprise_cache.invalidate()
        return archived

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        use_vector: bool = True,
    ) -> list[SearchResult]:
        """Search all kinds; every hit counts as an access."""
        limit = limit or self.settings.default_search_limit
        if use_vector:
            results = await self.search_engine.search_all(query, limit)
        else:
            results = self.search_engine.search_bm25(query, limit)

        if results:
            try:
                with self.store.sqlite.transaction():
                    for result in results:
                        self.decay.touch_memory(result.ref.kind, result.ref.id)
            except SQLiteStoreError as e:
                logger.warning(f"Failed to record search hits: {e}")
        return results

    async def related_to(
        self,
        files: Optional[Sequence[str]] = None,
        seeds: Optional[Sequence[ItemRef]] = None,
    ) -> list[ActivatedItem]:
        """Items activated from files and/or explicit seed items.

        Archived items reached through old edges are left out.
        """
        sqlite = self.store.sqlite
        if files:
            activated = activate_for_files(sqlite, self.graph, files)
            if seeds:
                activated = _merge(activated, spreading_activation(self.graph, seeds))
        elif seeds:
            activated = spreading_activation(self.graph, seeds)
        else:
            return []
        return [item for item in activated if sqlite.is_active(item.ref)]

    # =========================================================================
    # Maintenance
    # =========================================================================

    def run_maintenance(
        self, max_tables: Optional[int] = None, now: Optional[datetime] = None
    ) -> int:
        """Decay the next slice of tables and advance the stored cursor.

        Returns:
            The cursor position for the next sweep
        """
        sqlite = self.store.sqlite
        try:
            start = int(sqlite.get_meta(MAINTENANCE_CURSOR_KEY, "0") or 0)
        except (SQLiteStoreError, ValueError):
            start = 0
        next_index = self.decay.run_decay(
            max_tables=max_tables or self.settings.decay_max_tables,
            start_index=start,
            now=now,
        )
        try:
            sqlite.set_meta(MAINTENANCE_CURSOR_KEY, str(next_index))
        except SQLiteStoreError as e:
            logger.warning(f"Failed to persist maintenance cursor: {e}")
        return next_index

    def prune(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Archive stale items; see ``DecayEngine.run_pruning``."""
        archived = self.decay.run_pruning(now=now)
        if any(archived.values()):
            self.scorer.surprise_cache.invalidate()
        return archived

    def refresh_importance(self, session_id: Optional[str] = None) -> dict[str, int]:
        """Recompute importance for every kind."""
        return {
            kind.value: self.scorer.refresh_importance_scores(kind, session_id=session_id)
            for kind in REGISTRY
        }

    async def start_session(
        self,
        session_id: Optional[str] = None,
        run_maintenance: bool = True,
    ) -> dict[str, Any]:
        """Open a session: record it, reset surprise, refresh scores.

        Returns:
            Summary with the session id, refreshed counts and decay cursor
        """
        sid, _ = self.store.sqlite.add_item(
            ItemKind.SESSION, {"id": session_id} if session_id else {}
        )
        self.current_session = str(sid)
        self.scorer.surprise_cache.invalidate()
        refreshed = self.refresh_importance(self.current_session)
        summary: dict[str, Any] = {"session_id": self.current_session, "refreshed": refreshed}
        if run_maintenance:
            summary["next_decay_index"] = self.run_maintenance()
        logger.info(f"Session {self.current_session} started")
        return summary

    async def end_session(
        self,
        summary: Optional[str] = None,
        key_changes: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> bool:
        """Close a session and queue its summary for embedding."""
        sid = session_id or self.current_session
        if sid is None:
            return False
        updated = self.store.sqlite.update_session(sid, summary=summary, key_changes=key_changes)
        if updated and summary and self.store.vector_search_available:
            ref = ItemRef(ItemKind.SESSION, sid)
            text = REGISTRY[ItemKind.SESSION].embedding_text(
                {"summary": summary, "key_changes": key_changes}
            )
            self.background.submit(self.store.embed_and_index(ref, text), label=f"index {ref.key}")
        self.scorer.surprise_cache.invalidate()
        if sid == self.current_session:
            self.current_session = None
        return updated

    def stats(self) -> dict[str, Any]:
        """Counts of items, edges, vectors, strength and background work."""
        sqlite = self.store.sqlite
        return {
            "items": {kind.value: sqlite.count_active(kind) for kind in REGISTRY},
            "associations": self.graph.count(),
            "embeddings": sqlite.count_embeddings(),
            "vector_index": self.store.vector_index_available,
            "decay": [vars(stat) for stat in self.decay.decay_stats()],
            "background": self.background.stats().to_dict(),
            "duplicates_flagged": self.duplicates_flagged,
            "generated_at": format_timestamp(utc_now()),
        }


def _merge(first: list[ActivatedItem], second: list[ActivatedItem]) -> list[ActivatedItem]:
    best: dict[ItemRef, ActivatedItem] = {}
    for item in first + second:
        if item.ref not in best or item.activation > best[item.ref].activation:
            best[item.ref] = item
    return sorted(best.values(), key=lambda item: item.activation, reverse=True)
