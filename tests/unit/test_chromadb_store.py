"""Unit tests for the ChromaDB vector index."""

import uuid

import pytest

from cortex.memory.types import ItemKind, ItemRef
from cortex.storage.chromadb import ChromaStore


def unique_collection_name() -> str:
    """Generate a unique collection name for test isolation."""
    return f"test_{uuid.uuid4().hex[:8]}"


class TestChromaStoreInit:
    """Tests for ChromaStore initialization."""

    def test_ephemeral_mode_creates_in_memory_client(self):
        """Ephemeral mode should use in-memory storage."""
        store = ChromaStore(ephemeral=True, collection_name=unique_collection_name())
        assert store.ephemeral is True
        assert store.db_path is None

    def test_default_collection_name(self):
        """Default collection name should be 'embeddings'."""
        assert ChromaStore.__init__.__defaults__[1] == "embeddings"

    def test_collection_uses_cosine_distance(self):
        """Collection should be created with cosine distance metric."""
        store = ChromaStore(ephemeral=True, collection_name=unique_collection_name())
        assert store._collection.metadata.get("hnsw:space") == "cosine"


class TestChromaStoreVectors:
    """Tests for upsert and query."""

    @pytest.fixture
    def store(self):
        """Create store with three item vectors."""
        store = ChromaStore(ephemeral=True, collection_name=unique_collection_name())
        store.upsert(ItemRef(ItemKind.DECISION, 1), [1.0, 0.0, 0.0])
        store.upsert(ItemRef(ItemKind.ERROR, 2), [0.0, 1.0, 0.0])
        store.upsert(ItemRef(ItemKind.SESSION, "sess_a"), [0.0, 0.0, 1.0])
        return store

    def test_query_returns_keys_and_similarity(self, store):
        """Should return item keys with similarity = 1 - cosine distance."""
        results = store.query([1.0, 0.0, 0.0], n_results=1)
        assert len(results) == 1
        key, score = results[0]
        assert key == "decision:1"
        assert score == pytest.approx(1.0, abs=1e-4)

    def test_query_caps_results_at_count(self, store):
        """Should not ask for more results than stored vectors."""
        assert len(store.query([1.0, 1.0, 0.0], n_results=10)) == 3

    def test_query_with_where_filter(self, store):
        """Should filter by entity metadata."""
        results = store.query([1.0, 0.0, 0.0], n_results=3, where={"entity_type": "error"})
        assert [key for key, _ in results] == ["error:2"]

    def test_upsert_replaces(self, store):
        """Upserting the same item replaces its vector."""
        store.upsert(ItemRef(ItemKind.DECISION, 1), [0.0, 1.0, 0.0])
        assert store.count() == 3
        key, _ = store.query([0.0, 1.0, 0.0], n_results=3)[-1]
        assert key == "session:sess_a"

    def test_session_keys_round_trip(self, store):
        """Session keys parse back into string ids."""
        key, _ = store.query([0.0, 0.0, 1.0], n_results=1)[0]
        assert ItemRef.from_key(key) == ItemRef(ItemKind.SESSION, "sess_a")

    def test_empty_collection_query(self):
        """Query on an empty collection returns nothing."""
        store = ChromaStore(ephemeral=True, collection_name=unique_collection_name())
        assert store.query([1.0, 0.0], n_results=5) == []


class TestChromaStoreDelete:
    """Tests for delete and clear."""

    @pytest.fixture
    def store(self):
        store = ChromaStore(ephemeral=True, collection_name=unique_collection_name())
        store.upsert(ItemRef(ItemKind.NOTE, 1), [0.1, 0.2, 0.3])
        store.upsert(ItemRef(ItemKind.NOTE, 2), [0.4, 0.5, 0.6])
        return store

    def test_delete(self, store):
        """Should remove the given items."""
        store.delete([ItemRef(ItemKind.NOTE, 1)])
        assert store.count() == 1

    def test_delete_empty_list(self, store):
        """Deleting nothing is a no-op."""
        store.delete([])
        assert store.count() == 2

    def test_clear(self, store):
        """Should drop all vectors and keep the collection usable."""
        assert store.clear() == 2
        assert store.count() == 0
        store.upsert(ItemRef(ItemKind.NOTE, 3), [0.1, 0.1, 0.1])
        assert store.count() == 1
        assert store.clear() == 1
