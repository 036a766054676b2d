"""ChromaDB vector index for item embeddings.

This module wraps a ChromaDB collection used as an approximate-nearest-
neighbour index over item embeddings:
- Persistent storage via PersistentClient, ephemeral via EphemeralClient
- Cosine space, so similarity = 1 - distance
- Documents keyed by item key (``decision:12``) with kind/id metadata
"""

from pathlib import Path
from typing import Any, Optional

import chromadb  # type: ignore[import-not-found]
from chromadb.api.models.Collection import Collection  # type: ignore[import-not-found]

from cortex.memory.types import ItemRef


class StorageError(Exception):
    """Custom exception for vector index errors."""

    pass


class ChromaStore:
    """Vector index over item embeddings using ChromaDB.

    Args:
        db_path: Path to ChromaDB persistent storage directory.
                 Defaults to ~/.cortex/chroma_db
        collection_name: Name of the collection (default: "embeddings")
        ephemeral: If True, use in-memory storage for testing (default: False)

    Attributes:
        db_path: Path to database storage (None if ephemeral)
        collection_name: Name of the active collection
        ephemeral: Whether using ephemeral storage
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        collection_name: str = "embeddings",
        ephemeral: bool = False,
    ):
        """Initialize ChromaStore with persistent or ephemeral storage.

        Raises:
            StorageError: If database initialization fails
        """
        self.collection_name = collection_name
        self.ephemeral = ephemeral

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".cortex" / "chroma_db"

        try:
            if ephemeral:
                self._client = chromadb.EphemeralClient()
            else:
                if self.db_path is not None:
                    self.db_path.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(self.db_path))

            self._collection = self._get_or_create_collection()

        except Exception as e:
            raise StorageError(f"Failed to initialize ChromaDB storage: {e}") from e

    def _get_or_create_collection(self) -> Collection:
        """Get existing collection or create it in cosine space.

        Raises:
            StorageError: If collection operations fail
        """
        try:
            return self._client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        except Exception as e:
            raise StorageError(f"Failed to get or create collection: {e}") from e

    def upsert(self, ref: ItemRef, embedding: list[float]) -> None:
        """Insert or replace the vector of one item.

        Raises:
            StorageError: If the write fails
        """
        try:
            self._collection.upsert(
                ids=[ref.key],
                embeddings=[embedding],  # type: ignore[arg-type]
                metadatas=[{"entity_type": ref.kind.value, "entity_id": str(ref.id)}],
            )
        except Exception as e:
            raise StorageError(f"Failed to upsert vector for {ref.key}: {e}") from e

    def query(
        self,
        query_embedding: list[float],
        n_results: int = 10,
        where: Optional[dict] = None,
    ) -> list[tuple[str, float]]:
        """Find the nearest stored vectors.

        Args:
            query_embedding: Query vector
            n_results: Number of neighbours to return
            where: Optional metadata filter (e.g. {"entity_type": "learning"})

        Returns:
            List of (item key, cosine similarity), most similar first

        Raises:
            StorageError: If search operation fails
        """
        try:
            total = self._collection.count()
            if total == 0:
                return []
            query_kwargs: dict[str, Any] = {
                "query_embeddings": [query_embedding],
                "n_results": min(n_results, total),
                "include": ["distances"],
            }
            if where is not None:
                query_kwargs["where"] = where
            results = self._collection.query(**query_kwargs)

            # Results come wrapped in one list per query embedding
            ids = results["ids"][0] if results["ids"] else []
            distances = results["distances"][0] if results["distances"] else []
            return [(key, 1.0 - float(distance)) for key, distance in zip(ids, distances)]

        except Exception as e:
            raise StorageError(f"Failed to query vectors: {e}") from e

    def delete(self, refs: list[ItemRef]) -> None:
        """Remove the vectors of some items.

        Raises:
            StorageError: If delete operation fails
        """
        if not refs:
            return
        try:
            self._collection.delete(ids=[ref.key for ref in refs])
        except Exception as e:
            raise StorageError(f"Failed to delete vectors: {e}") from e

    def count(self) -> int:
        """Number of stored vectors.

        Raises:
            StorageError: If count operation fails
        """
        try:
            return self._collection.count()
        except Exception as e:
            raise StorageError(f"Failed to count vectors: {e}") from e

    def clear(self) -> int:
        """Drop and recreate the collection.

        Returns:
            Number of vectors deleted
        """
        try:
            current_count = self._collection.count()
            if current_count == 0:
                return 0
            self._client.delete_collection(self.collection_name)
            self._collection = self._get_or_create_collection()
            return current_count
        except Exception as e:
            raise StorageError(f"Failed to clear collection: {e}") from e
