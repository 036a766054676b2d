"""Tests for hybrid search - BM25, vector matches and Reciprocal Rank Fusion."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from cortex.embedding.ollama import EmbeddingError, OllamaClient
from cortex.memory.registry import get_spec
from cortex.memory.search import (
    NO_SNIPPET,
    HybridSearch,
    build_snippet,
    extract_context,
    format_age,
    format_results,
    rrf_score,
)
from cortex.memory.types import ItemKind, ItemRef, SearchResult
from cortex.storage.hybrid import HybridStore
from cortex.storage.sqlite import SQLiteStore, format_timestamp

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

VECTORS = {
    "pooling": [1.0, 0.0, 0.0],
    "reuse": [0.5, 0.8660254, 0.0],
    "logging": [0.2, 0.9797959, 0.0],
}


def keyword_embedder(mapping: dict[str, list[float]]) -> AsyncMock:
    """Mocked OllamaClient returning the vector of the first keyword found in the text."""
    client = AsyncMock(spec=OllamaClient)
    client.model = "all-minilm"

    async def embed(text: str) -> list[float]:
        for keyword, vector in mapping.items():
            if keyword in text:
                return list(vector)
        return [0.0, 0.0, 1.0]

    client.embed.side_effect = embed
    return client


@pytest.fixture
def hybrid():
    store = HybridStore(
        sqlite_store=SQLiteStore(ephemeral=True),
        embedding_client=keyword_embedder(VECTORS),
    )
    yield store
    store.sqlite.close()


async def add_note(store: HybridStore, text: str, embed: bool = True) -> ItemRef:
    item_id, _ = store.sqlite.add_item(ItemKind.NOTE, {"text": text})
    ref = ItemRef(ItemKind.NOTE, item_id)
    if embed:
        assert await store.embed_and_index(ref, text)
    return ref


class TestRRF:
    """Tests for the fusion formula."""

    def test_rank_zero(self):
        assert rrf_score(0) == pytest.approx(1 / 61)

    def test_custom_k(self):
        assert rrf_score(2, k=10) == pytest.approx(1 / 13)


class TestSnippets:
    """Tests for snippet extraction."""

    def test_short_text_unchanged(self):
        assert extract_context("use WAL mode", ["wal"]) == "use WAL mode"

    def test_window_around_match(self):
        """Test the window starts 30 characters before the first match."""
        text = "a" * 100 + " connection pooling " + "b" * 300
        snippet = extract_context(text, ["pooling"])
        assert snippet.startswith("...")
        assert snippet.endswith("...")
        assert "pooling" in snippet
        assert len(snippet) == 150 + 6

    def test_no_match_truncates(self):
        text = "x" * 200
        assert extract_context(text, ["missing"]) == "x" * 150 + "..."

    def test_best_column(self):
        """Test the column with the most query terms is used."""
        spec = get_spec(ItemKind.DECISION)
        row = {"title": "Use WAL", "reasoning": "Readers proceed while a writer commits"}
        assert build_snippet(row, spec, "readers proceed") == row["reasoning"]

    def test_tie_prefers_earlier_column(self):
        spec = get_spec(ItemKind.DECISION)
        row = {"title": "Pooling", "reasoning": "Pooling again"}
        assert build_snippet(row, spec, "pooling") == "Pooling"

    def test_empty_row(self):
        spec = get_spec(ItemKind.SESSION)
        assert build_snippet({"summary": None, "key_changes": ""}, spec, "x") == NO_SNIPPET


class TestBM25:
    """Tests for full-text ranking."""

    @pytest.mark.asyncio
    async def test_across_kinds(self, hybrid):
        """Test every kind is searched and results carry titles and metadata."""
        note = await add_note(hybrid, "Tune connection pooling", embed=False)
        error_id, _ = hybrid.sqlite.add_item(
            ItemKind.ERROR, {"error_message": "pooling exhausted", "severity": "high"}
        )
        search = HybridSearch(hybrid, vector_search_enabled=False)

        results = search.search_bm25("pooling")

        refs = {result.ref for result in results}
        assert refs == {note, ItemRef(ItemKind.ERROR, error_id)}
        error_result = next(r for r in results if r.ref.kind is ItemKind.ERROR)
        assert error_result.title == "pooling exhausted"
        assert error_result.metadata == {"severity": "high", "occurrences": 1}
        assert all(result.score > 0 for result in results)

    @pytest.mark.asyncio
    async def test_limit(self, hybrid):
        for i in range(5):
            await add_note(hybrid, f"pooling note {i}", embed=False)
        search = HybridSearch(hybrid, vector_search_enabled=False)
        assert len(search.search_bm25("pooling", limit=3)) == 3

    def test_malformed_query(self, hybrid):
        """Test FTS syntax errors yield no results instead of raising."""
        search = HybridSearch(hybrid, vector_search_enabled=False)
        assert search.search_bm25('"unterminated') == []

    def test_blank_query(self, hybrid):
        search = HybridSearch(hybrid, vector_search_enabled=True)
        assert search.search_bm25("   ") == []


class TestHybridFusion:
    """Tests for combining BM25 and vector rankings."""

    @pytest.mark.asyncio
    async def test_rrf_fusion(self, hybrid):
        """Test both-list hits sum their RRF terms and weak vector-only hits are dropped."""
        both = await add_note(hybrid, "Guide to pooling in postgres")
        vector_only = await add_note(hybrid, "Database connection reuse")
        weak = await add_note(hybrid, "Structured logging setup")
        search = HybridSearch(hybrid, vector_search_enabled=True)

        results = await search.search_all("pooling")

        assert [result.ref for result in results] == [both, vector_only]
        assert results[0].score == pytest.approx(1 / (60 + 0 + 1) + 1 / (60 + 0 + 1))
        assert results[1].score == pytest.approx(1 / (60 + 1 + 1))
        assert weak not in {result.ref for result in results}

    @pytest.mark.asyncio
    async def test_threshold_configurable(self, hybrid):
        """Test a lower floor admits the weak vector-only hit."""
        await add_note(hybrid, "Guide to pooling in postgres")
        await add_note(hybrid, "Database connection reuse")
        weak = await add_note(hybrid, "Structured logging setup")
        search = HybridSearch(hybrid, vector_search_enabled=True, embedding_only_threshold=0.1)

        results = await search.search_all("pooling")

        assert results[-1].ref == weak
        assert results[-1].score == pytest.approx(1 / (60 + 2 + 1))

    @pytest.mark.asyncio
    async def test_archived_vector_hits_skipped(self, hybrid):
        """Test vector-only hits that were archived are not resolved."""
        await add_note(hybrid, "Guide to pooling in postgres")
        archived = await add_note(hybrid, "Database connection reuse")
        hybrid.sqlite.archive_item(ItemKind.NOTE, archived.id)
        search = HybridSearch(hybrid, vector_search_enabled=True)

        results = await search.search_all("pooling")

        assert archived not in {result.ref for result in results}

    @pytest.mark.asyncio
    async def test_vector_disabled(self, hybrid):
        """Test the capability flag turns vector search off entirely."""
        await add_note(hybrid, "Guide to pooling in postgres")
        await add_note(hybrid, "Database connection reuse")
        search = HybridSearch(hybrid, vector_search_enabled=False)
        embed_calls = hybrid._embedding_client.embed.call_count

        results = await search.search_all("pooling")

        assert len(results) == 1
        assert hybrid._embedding_client.embed.call_count == embed_calls

    @pytest.mark.asyncio
    async def test_no_embeddings_uses_bm25(self, hybrid):
        note = await add_note(hybrid, "Guide to pooling in postgres", embed=False)
        search = HybridSearch(hybrid, vector_search_enabled=True)
        results = await search.search_all("pooling")
        assert [result.ref for result in results] == [note]
        hybrid._embedding_client.embed.assert_not_called()

    @pytest.mark.asyncio
    async def test_embedder_failure_falls_back(self, hybrid):
        """Test an embedding error degrades to BM25 only."""
        note = await add_note(hybrid, "Guide to pooling in postgres")
        hybrid._embedding_client.embed.side_effect = EmbeddingError("Ollama unreachable")
        search = HybridSearch(hybrid, vector_search_enabled=True)

        results = await search.search_all("pooling")

        assert [result.ref for result in results] == [note]
        assert results[0].score > 0


class TestFormatting:
    """Tests for plain-text rendering."""

    def test_format_age(self):
        assert format_age(format_timestamp(NOW), NOW) == "today"
        assert format_age(format_timestamp(NOW - timedelta(days=1)), NOW) == "1d ago"
        assert format_age(format_timestamp(NOW - timedelta(days=3)), NOW) == "3d ago"
        assert format_age(format_timestamp(NOW - timedelta(days=15)), NOW) == "2w ago"
        assert format_age(format_timestamp(NOW - timedelta(days=65)), NOW) == "2mo ago"
        assert format_age(None, NOW) == ""
        assert format_age("garbage", NOW) == ""

    def test_format_results(self):
        results = [
            SearchResult(
                ref=ItemRef(ItemKind.ERROR, 3),
                score=0.0328,
                title="pool exhausted",
                snippet="...pool exhausted under load...",
                created_at=format_timestamp(NOW - timedelta(days=2)),
                metadata={"severity": "high"},
            )
        ]
        assert format_results(results, NOW) == (
            "1. [ERROR] pool exhausted\n"
            "   (score: 0.03) 2d ago [severity: high]\n"
            "   ...pool exhausted under load..."
        )

    def test_format_empty(self):
        assert format_results([]) == "No results."
