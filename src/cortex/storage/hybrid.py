"""Hybrid storage layer coordinating the item store, vectors, and embeddings.

This module provides a HybridStore that coordinates SQLite (items, graph,
FTS, embedding BLOBs), ChromaDB (vector index) and the Ollama embedder.

Key principles:
- SQLite is the source of truth, including every embedding vector
- ChromaDB mirrors the vectors for fast nearest-neighbour queries
- Without ChromaDB, similarity falls back to a brute-force numpy scan
- Embedding failures never fail a write; they are logged and reported
- Vector search capability is resolved once, in ``create()``
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import numpy as np

from cortex.embedding.ollama import EmbeddingError, OllamaClient
from cortex.memory.registry import REGISTRY, get_spec
from cortex.memory.types import DuplicateMatch, ItemKind, ItemRef
from cortex.storage.chromadb import ChromaStore, StorageError as ChromaStorageError
from cortex.storage.sqlite import SQLiteStore, SQLiteStoreError

logger = logging.getLogger(__name__)

# Texts shorter than this are not worth embedding
MIN_EMBEDDING_TEXT = 10


class HybridStoreError(Exception):
    """Custom exception for hybrid storage operations."""

    pass


@dataclass(frozen=True)
class Capabilities:
    """Vector features available to this process.

    Attributes:
        vector_search: Embeddings can be produced and compared at all
        vector_index: A ChromaDB index backs similarity queries
    """

    vector_search: bool
    vector_index: bool


@dataclass
class BackfillResult:
    """Outcome of embedding items that had no vector yet."""

    processed: int = 0
    embedded: int = 0
    skipped: int = 0
    failed: int = 0


def to_unit_vector(values: Any) -> np.ndarray:
    """Convert to a float32 vector of length 1.

    Raises:
        EmbeddingError: If the vector has zero length
    """
    vector = np.asarray(values, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        raise EmbeddingError("Cannot normalize a zero vector")
    return vector / norm


class HybridStore:
    """Coordinated storage combining SQLite, ChromaDB and the embedder.

    Args:
        sqlite_store: SQLiteStore instance (source of truth)
        embedding_client: Client with an async ``embed(text)`` method, or None
        chroma_store: Optional ChromaStore vector index
        capabilities: Resolved vector capabilities (derived when omitted)

    Example:
        >>> store = await HybridStore.create(ephemeral=True)
        >>> await store.embed_and_index(ItemRef(ItemKind.NOTE, 1), "Prefer WAL mode")
        True
    """

    def __init__(
        self,
        sqlite_store: SQLiteStore,
        embedding_client: Optional[OllamaClient] = None,
        chroma_store: Optional[ChromaStore] = None,
        capabilities: Optional[Capabilities] = None,
    ):
        self._sqlite = sqlite_store
        self._embedding_client = embedding_client
        self._chroma = chroma_store
        self.capabilities = capabilities or Capabilities(
            vector_search=embedding_client is not None,
            vector_index=chroma_store is not None,
        )

    @classmethod
    async def create(
        cls,
        sqlite_path: Optional[Path] = None,
        chroma_path: Optional[Path] = None,
        collection_name: str = "embeddings",
        ollama_host: str = "http://localhost:11434",
        ollama_model: str = "all-minilm",
        ollama_timeout: float = 30.0,
        embedding_dimensions: Optional[int] = 384,
        vector_index_enabled: bool = True,
        ephemeral: bool = False,
    ) -> "HybridStore":
        """Create a HybridStore and resolve its vector capabilities.

        A ChromaDB index that fails to open is logged and left out; vector
        similarity then uses the SQLite BLOBs directly.

        Raises:
            HybridStoreError: If the SQLite store cannot be opened
        """
        try:
            sqlite_store = SQLiteStore(db_path=sqlite_path, ephemeral=ephemeral)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to create HybridStore: {e}") from e

        chroma_store: Optional[ChromaStore] = None
        if vector_index_enabled:
            try:
                chroma_store = ChromaStore(
                    db_path=chroma_path,
                    collection_name=collection_name,
                    ephemeral=ephemeral,
                )
            except ChromaStorageError as e:
                logger.warning(f"Vector index unavailable, using brute-force similarity: {e}")

        embedding_client = OllamaClient(
            host=ollama_host,
            model=ollama_model,
            timeout=ollama_timeout,
            dimensions=embedding_dimensions,
        )

        capabilities = Capabilities(
            vector_search=True,
            vector_index=chroma_store is not None,
        )
        logger.info(
            f"Vector search enabled (index: {'chromadb' if capabilities.vector_index else 'brute-force'})"
        )

        return cls(
            sqlite_store=sqlite_store,
            embedding_client=embedding_client,
            chroma_store=chroma_store,
            capabilities=capabilities,
        )

    @property
    def sqlite(self) -> SQLiteStore:
        return self._sqlite

    @property
    def vector_index_available(self) -> bool:
        return self.capabilities.vector_index

    @property
    def vector_search_available(self) -> bool:
        return self.capabilities.vector_search

    async def close(self) -> None:
        """Close all underlying stores and clients."""
        if self._embedding_client is not None:
            await self._embedding_client.close()
        self._sqlite.close()

    async def __aenter__(self) -> "HybridStore":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Embedding Operations
    # =========================================================================

    async def embed_text(self, text: str) -> np.ndarray:
        """Embed a text and return its unit vector.

        Raises:
            EmbeddingError: If no embedder is configured or the call fails
        """
        if self._embedding_client is None:
            raise EmbeddingError("No embedding client configured")
        try:
            raw = await self._embedding_client.embed(text)
        except ValueError as e:
            raise EmbeddingError(str(e)) from e
        return to_unit_vector(raw)

    async def embed_and_index(self, ref: ItemRef, text: str) -> bool:
        """Embed an item's text, persist the vector and mirror it to ChromaDB.

        Returns:
            True if the vector was stored in SQLite; False if the text was
            too short or embedding failed
        """
        if not self.vector_search_available or len(text.strip()) < MIN_EMBEDDING_TEXT:
            return False

        try:
            vector = await self.embed_text(text)
        except EmbeddingError as e:
            logger.warning(f"Embedding generation failed for {ref.key}: {e}")
            return False

        model = getattr(self._embedding_client, "model", "unknown")
        self._sqlite.upsert_embedding(ref, vector.tobytes(), str(model))

        if self._chroma is not None:
            try:
                self._chroma.upsert(ref, vector.tolist())
            except ChromaStorageError as e:
                logger.warning(f"Vector index sync failed for {ref.key}: {e}")

        logger.debug(f"Stored embedding for {ref.key}")
        return True

    def forget_vector(self, ref: ItemRef) -> None:
        """Drop an item from the vector index (its SQLite BLOB is kept)."""
        if self._chroma is None:
            return
        try:
            self._chroma.delete([ref])
        except ChromaStorageError as e:
            logger.warning(f"Failed to remove {ref.key} from vector index: {e}")

    def has_embeddings(self) -> bool:
        """Whether any vectors are stored at all."""
        return self._sqlite.count_embeddings() > 0

    # =========================================================================
    # Similarity
    # =========================================================================

    async def find_similar(self, text: str, k: int = 10) -> list[tuple[ItemRef, float]]:
        """Nearest items to a text by cosine similarity.

        Raises:
            EmbeddingError: If the text cannot be embedded
        """
        vector = await self.embed_text(text)
        return self.find_similar_to_vector(vector, k)

    async def similar_to_item(
        self, ref: ItemRef, text: str, k: int = 10
    ) -> list[tuple[ItemRef, float]]:
        """Nearest items to a stored item, embedding ``text`` if it has no vector.

        Raises:
            EmbeddingError: If a vector is needed and cannot be produced
        """
        blob = self._sqlite.get_embedding(ref)
        if blob is not None:
            return self.find_similar_to_vector(np.frombuffer(blob, dtype=np.float32), k)
        return await self.find_similar(text, k)

    def find_similar_to_vector(
        self, vector: np.ndarray, k: int = 10
    ) -> list[tuple[ItemRef, float]]:
        """Nearest items to a unit vector, most similar first."""
        if self._chroma is not None:
            try:
                return [
                    (ItemRef.from_key(key), score)
                    for key, score in self._chroma.query(vector.tolist(), n_results=k)
                ]
            except ChromaStorageError as e:
                logger.warning(f"Vector index query failed, scanning stored vectors: {e}")
        return self._brute_force_similar(vector, k)

    def _brute_force_similar(
        self, vector: np.ndarray, k: int
    ) -> list[tuple[ItemRef, float]]:
        stored = self._sqlite.all_embeddings()
        if not stored:
            return []

        refs: list[ItemRef] = []
        rows: list[np.ndarray] = []
        for ref, blob in stored:
            candidate = np.frombuffer(blob, dtype=np.float32)
            if candidate.shape != vector.shape:
                logger.debug(f"Skipping {ref.key}: dimension {candidate.shape[0]}")
                continue
            refs.append(ref)
            rows.append(candidate)
        if not rows:
            return []

        # Stored vectors are unit length, so the dot product is the cosine
        scores = np.vstack(rows) @ vector
        order = np.argsort(-scores, kind="stable")[:k]
        return [(refs[i], float(scores[i])) for i in order]

    async def find_duplicate(
        self, ref: ItemRef, threshold: float = 0.92, candidates: int = 10
    ) -> Optional[DuplicateMatch]:
        """Closest active item of the same kind at or above ``threshold``.

        Uses the stored vector of ``ref``; returns None if it has none.
        """
        blob = self._sqlite.get_embedding(ref)
        if blob is None:
            return None
        vector = np.frombuffer(blob, dtype=np.float32)
        for other, score in self.find_similar_to_vector(vector, candidates):
            if other == ref or other.kind is not ref.kind:
                continue
            if score < threshold:
                break
            row = self._sqlite.get_item(other.kind, other.id)
            if row is None:
                continue
            return DuplicateMatch(ref=other, score=score, title=get_spec(other.kind).title(row))
        return None

    # =========================================================================
    # Backfill
    # =========================================================================

    async def backfill_embeddings(
        self, limit_per_kind: int = 300, force: bool = False
    ) -> BackfillResult:
        """Embed active items that have no stored vector.

        Args:
            limit_per_kind: Maximum items embedded per kind in this call
            force: Rebuild the vector index from the stored vectors first

        Returns:
            Counts of processed, embedded, skipped and failed items
        """
        result = BackfillResult()
        if not self.vector_search_available:
            return result

        if force and self._chroma is not None:
            self._rebuild_index(self._chroma)

        for kind in ItemKind:
            spec = REGISTRY[kind]
            for row in self._sqlite.items_missing_embeddings(kind, limit_per_kind):
                result.processed += 1
                text = spec.embedding_text(row)
                if len(text.strip()) < MIN_EMBEDDING_TEXT:
                    result.skipped += 1
                    continue
                ref = ItemRef(kind, spec.coerce_id(row["id"]))
                if await self.embed_and_index(ref, text):
                    result.embedded += 1
                else:
                    result.failed += 1

        logger.info(
            f"Backfill: {result.embedded} embedded, {result.skipped} skipped, "
            f"{result.failed} failed of {result.processed}"
        )
        return result

    def _rebuild_index(self, chroma: ChromaStore) -> None:
        try:
            chroma.clear()
            for ref, blob in self._sqlite.all_embeddings():
                chroma.upsert(ref, np.frombuffer(blob, dtype=np.float32).tolist())
        except ChromaStorageError as e:
            logger.warning(f"Failed to rebuild vector index: {e}")
