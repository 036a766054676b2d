"""Tests for the association graph and automatic linking rules."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from cortex.embedding.ollama import EmbeddingError
from cortex.memory.associations import AssociationGraph
from cortex.memory.types import ItemKind, ItemRef, Relation
from cortex.storage.hybrid import HybridStore
from cortex.storage.sqlite import SQLiteStore

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
LONG_AGO = NOW - timedelta(days=2)


@pytest.fixture
def store():
    sqlite = SQLiteStore(ephemeral=True)
    yield sqlite
    sqlite.close()


@pytest.fixture
def graph(store):
    return AssociationGraph(store)


def add(store: SQLiteStore, kind: ItemKind, fields: dict, session_id=None, now=LONG_AGO) -> ItemRef:
    item_id, _ = store.add_item(kind, fields, session_id=session_id, now=now)
    return ItemRef(kind, item_id)


def note(store, text="a note", **kwargs) -> ItemRef:
    return add(store, ItemKind.NOTE, {"text": text}, **kwargs)


def relations(graph: AssociationGraph, ref: ItemRef) -> dict:
    return {
        (edge.target if edge.source == ref else edge.source, edge.relation): edge.strength
        for edge in graph.get_associations(ref)
    }


class TestCreateAssociation:
    """Tests for manual edge creation."""

    def test_create(self, graph):
        a = ItemRef(ItemKind.NOTE, 1)
        b = ItemRef(ItemKind.ERROR, 2)
        assert graph.create_association(a, b, Relation.SEMANTIC, 0.9) is True
        assert graph.count() == 1

    def test_idempotent(self, graph):
        """Test creating the same edge twice leaves one edge."""
        a = ItemRef(ItemKind.NOTE, 1)
        b = ItemRef(ItemKind.NOTE, 2)
        graph.create_association(a, b, Relation.TEMPORAL)
        assert graph.create_association(a, b, Relation.TEMPORAL) is False
        assert graph.count() == 1

    def test_self_loop_refused(self, graph):
        """Test an item never links to itself."""
        a = ItemRef(ItemKind.NOTE, 1)
        assert graph.create_association(a, a, Relation.TEMPORAL) is False
        assert graph.count() == 0

    @pytest.mark.parametrize("strength", [-0.1, 1.01])
    def test_strength_out_of_range(self, graph, strength):
        a = ItemRef(ItemKind.NOTE, 1)
        b = ItemRef(ItemKind.NOTE, 2)
        assert graph.create_association(a, b, Relation.SEMANTIC, strength) is False

    def test_different_relations_coexist(self, graph):
        """Test two relations between the same pair are separate edges."""
        a = ItemRef(ItemKind.NOTE, 1)
        b = ItemRef(ItemKind.NOTE, 2)
        graph.create_association(a, b, Relation.TEMPORAL)
        graph.create_association(a, b, Relation.SAME_SESSION, 0.5)
        assert graph.count() == 2
        assert len(graph.get_neighbors(b)) == 2


class TestSessionRule:
    """Tests for same-session links."""

    def test_links_session_items(self, store, graph):
        """Test cross-kind 0.6 and same-kind 0.5 strengths."""
        earlier_note = note(store, session_id="s1")
        decision = add(
            store,
            ItemKind.DECISION,
            {"title": "t", "reasoning": "r", "category": "c"},
            session_id="s1",
        )
        other_session = note(store, session_id="s2")
        new = note(store, "new note", session_id="s1")

        created = graph.auto_create_associations(new, session_id="s1", now=NOW)

        edges = relations(graph, new)
        assert created == 2
        assert edges[(earlier_note, Relation.SAME_SESSION)] == 0.5
        assert edges[(decision, Relation.SAME_SESSION)] == 0.6
        assert all(ref != other_session for ref, _ in edges)

    def test_limits(self, store, graph):
        """Test at most 3 same-kind and 5 cross-kind partners."""
        for i in range(6):
            note(store, f"n{i}", session_id="s1")
            add(store, ItemKind.ERROR, {"error_message": f"error kind {'x' * i}"}, session_id="s1")
        new = note(store, "new note", session_id="s1")

        graph.auto_create_associations(new, session_id="s1", now=NOW)

        edges = relations(graph, new)
        assert sum(1 for ref, _ in edges if ref.kind is ItemKind.NOTE) == 3
        assert sum(1 for ref, _ in edges if ref.kind is ItemKind.ERROR) == 5

    def test_no_session(self, store, graph):
        note(store, session_id="s1")
        new = note(store, "new note")
        assert graph.auto_create_associations(new, session_id=None, now=NOW) == 0


class TestTemporalRule:
    """Tests for temporal links."""

    def test_links_items_within_window(self, store, graph):
        """Test items created within 5 minutes are linked at 1.0."""
        near = note(store, "near", now=NOW - timedelta(minutes=4))
        far = note(store, "far", now=NOW - timedelta(minutes=6))
        error = add(store, ItemKind.ERROR, {"error_message": "boom"}, now=NOW - timedelta(seconds=30))
        new = note(store, "new", now=NOW)

        graph.auto_create_associations(new, now=NOW)

        edges = relations(graph, new)
        assert edges[(near, Relation.TEMPORAL)] == 1.0
        assert edges[(error, Relation.TEMPORAL)] == 1.0
        assert (far, Relation.TEMPORAL) not in edges
        assert (new, Relation.TEMPORAL) not in edges


class TestSameFileRule:
    """Tests for same-file links."""

    def test_links_errors_and_decisions(self, store, graph):
        """Test items sharing a file are linked at 0.7."""
        error = add(
            store, ItemKind.ERROR, {"error_message": "db locked", "files_involved": ["src/db.py"]}
        )
        decision = add(
            store,
            ItemKind.DECISION,
            {"title": "WAL", "reasoning": "r", "category": "c", "files_affected": ["src/db.py"]},
        )
        unrelated = add(
            store, ItemKind.ERROR, {"error_message": "ui crash", "files_involved": ["src/ui.py"]}
        )
        new = add(
            store,
            ItemKind.ERROR,
            {"error_message": "db timeout", "files_involved": ["src/db.py"]},
            now=NOW,
        )

        graph.auto_create_associations(new, files=["src/db.py"], now=NOW)

        edges = relations(graph, new)
        assert edges[(error, Relation.SAME_FILE)] == 0.7
        assert edges[(decision, Relation.SAME_FILE)] == 0.7
        assert all(ref != unrelated for ref, _ in edges)
        assert all(ref != new for ref, _ in edges)


class TestAutoCreate:
    """Tests for the combined rule run."""

    def test_inactive_item(self, store, graph):
        """Test archived or missing items get no edges."""
        note(store, session_id="s1")
        archived = note(store, "archived", session_id="s1")
        store.archive_item(ItemKind.NOTE, archived.id)
        assert graph.auto_create_associations(archived, session_id="s1", now=NOW) == 0
        assert graph.auto_create_associations(ItemRef(ItemKind.NOTE, 99), now=NOW) == 0

    def test_archived_partners_ignored(self, store, graph):
        old = note(store, session_id="s1")
        store.archive_item(ItemKind.NOTE, old.id)
        new = note(store, "new", session_id="s1")
        assert graph.auto_create_associations(new, session_id="s1", now=NOW) == 0

    def test_counts_only_new_edges(self, store, graph):
        """Test a re-run reports zero new edges."""
        note(store, session_id="s1")
        new = note(store, "new", session_id="s1")
        assert graph.auto_create_associations(new, session_id="s1", now=NOW) == 1
        assert graph.auto_create_associations(new, session_id="s1", now=NOW) == 0


class TestSemanticAssociations:
    """Tests for the background semantic pass."""

    @pytest.fixture
    def hybrid(self):
        return MagicMock(spec=HybridStore)

    @pytest.mark.asyncio
    async def test_links_above_threshold(self, store, graph, hybrid):
        """Test neighbours at or above 0.8 are linked with their similarity."""
        new = note(store, "new")
        close = note(store, "close")
        distant = note(store, "distant")
        hybrid.similar_to_item = AsyncMock(
            return_value=[(new, 1.0), (close, 0.85), (distant, 0.5)]
        )

        created = await graph.auto_create_semantic_associations(new, "some long text", hybrid)

        assert created == 1
        edges = relations(graph, new)
        assert edges == {(close, Relation.SEMANTIC): 0.85}

    @pytest.mark.asyncio
    async def test_skips_archived(self, store, graph, hybrid):
        new = note(store, "new")
        archived = note(store, "archived")
        store.archive_item(ItemKind.NOTE, archived.id)
        hybrid.similar_to_item = AsyncMock(return_value=[(archived, 0.95)])
        assert await graph.auto_create_semantic_associations(new, "some long text", hybrid) == 0

    @pytest.mark.asyncio
    async def test_clamps_strength(self, store, graph, hybrid):
        """Test float similarity slightly above 1 is stored as 1.0."""
        new = note(store, "new")
        twin = note(store, "twin")
        hybrid.similar_to_item = AsyncMock(return_value=[(twin, 1.0000001)])
        assert await graph.auto_create_semantic_associations(new, "some long text", hybrid) == 1
        assert relations(graph, new)[(twin, Relation.SEMANTIC)] == 1.0

    @pytest.mark.asyncio
    async def test_embedding_failure(self, store, graph, hybrid):
        """Test embedder errors mean no edges, not an exception."""
        new = note(store, "new")
        hybrid.similar_to_item = AsyncMock(side_effect=EmbeddingError("down"))
        assert await graph.auto_create_semantic_associations(new, "some long text", hybrid) == 0

    @pytest.mark.asyncio
    async def test_short_text(self, store, graph, hybrid):
        new = note(store, "new")
        hybrid.similar_to_item = AsyncMock()
        assert await graph.auto_create_semantic_associations(new, "short", hybrid) == 0
        hybrid.similar_to_item.assert_not_called()
