"""Hybrid search: BM25 full-text ranking fused with vector similarity.

Both rankings are combined with Reciprocal Rank Fusion,

    score(item) = sum over lists of 1 / (60 + rank + 1)

with ranks counted from 0. Items found only by vector search must clear a
similarity floor (0.28 by default) to be included at all. When vector search
is unavailable the BM25 ranking is returned on its own.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from cortex.embedding.ollama import EmbeddingError
from cortex.memory.registry import REGISTRY, ItemSpec
from cortex.memory.types import ItemKind, ItemRef, SearchResult
from cortex.storage.hybrid import HybridStore
from cortex.storage.sqlite import SQLiteStoreError, days_between, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

RRF_K = 60
DEFAULT_LIMIT = 15
EMBEDDING_ONLY_THRESHOLD = 0.28

SNIPPET_LENGTH = 150
SNIPPET_LEAD = 30
NO_SNIPPET = "(no snippet)"

SEARCH_ORDER = (
    ItemKind.LEARNING,
    ItemKind.DECISION,
    ItemKind.ERROR,
    ItemKind.NOTE,
    ItemKind.SESSION,
    ItemKind.UNFINISHED,
)


def query_terms(query: str) -> list[str]:
    return [term for term in query.lower().split() if term]


def extract_context(text: str, terms: list[str], max_length: int = SNIPPET_LENGTH) -> str:
    """Window of ``text`` around the first occurrence of any term.

    The window starts up to 30 characters before the match and is marked
    with ``...`` on each side where text was cut.
    """
    lowered = text.lower()
    positions = [pos for pos in (lowered.find(term) for term in terms) if pos >= 0]
    if not positions:
        return text if len(text) <= max_length else text[:max_length] + "..."

    start = max(0, min(positions) - SNIPPET_LEAD)
    end = min(len(text), start + max_length)
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def build_snippet(row: dict[str, Any], spec: ItemSpec, query: str) -> str:
    """Snippet from the column containing the most query terms.

    Ties go to the earlier column in the kind's snippet order.
    """
    terms = query_terms(query)
    best_text = ""
    best_hits = -1
    for column in spec.snippet_columns:
        value = row.get(column)
        if not value:
            continue
        text = str(value)
        lowered = text.lower()
        hits = sum(1 for term in terms if term in lowered)
        if hits > best_hits:
            best_text, best_hits = text, hits
    if not best_text:
        return NO_SNIPPET
    return extract_context(best_text, terms)


def rrf_score(rank: int, k: int = RRF_K) -> float:
    return 1.0 / (k + rank + 1)


class HybridSearch:
    """Ranks items for a query across all kinds.

    Args:
        store: Hybrid store (item store plus vector similarity)
        vector_search_enabled: Capability flag resolved at startup; when
            False only BM25 is used
        embedding_only_threshold: Cosine floor for vector-only hits
    """

    def __init__(
        self,
        store: HybridStore,
        vector_search_enabled: bool,
        embedding_only_threshold: float = EMBEDDING_ONLY_THRESHOLD,
    ):
        self._store = store
        self.vector_search_enabled = vector_search_enabled
        self.embedding_only_threshold = embedding_only_threshold

    def search_bm25(self, query: str, limit: int = DEFAULT_LIMIT) -> list[SearchResult]:
        """Full-text search over every kind, best matches first.

        Kinds whose query fails (e.g. FTS syntax errors) contribute nothing.
        """
        if not query.strip():
            return []

        results: list[SearchResult] = []
        for kind in SEARCH_ORDER:
            spec = REGISTRY[kind]
            try:
                rows = self._store.sqlite.search_fts(kind, query, limit)
            except SQLiteStoreError as e:
                logger.debug(f"Full-text search skipped {spec.table}: {e}")
                continue
            for row in rows:
                results.append(self._to_result(spec, row, query, -row["fts_rank"]))

        results.sort(key=lambda result: result.score, reverse=True)
        return results[:limit]

    async def search_all(self, query: str, limit: int = DEFAULT_LIMIT) -> list[SearchResult]:
        """BM25 and vector rankings fused with Reciprocal Rank Fusion."""
        lexical = self.search_bm25(query, limit * 2)
        semantic = await self._vector_matches(query, limit * 2)
        if not semantic:
            return lexical[:limit]

        fused: dict[ItemRef, SearchResult] = {}
        for rank, result in enumerate(lexical):
            result.score = rrf_score(rank)
            fused[result.ref] = result

        for rank, (ref, similarity) in enumerate(semantic):
            if ref in fused:
                fused[ref].score += rrf_score(rank)
                continue
            if similarity < self.embedding_only_threshold:
                continue
            resolved = self._resolve(ref, query)
            if resolved is None:
                continue
            resolved.score = rrf_score(rank)
            fused[ref] = resolved

        ranked = sorted(fused.values(), key=lambda result: result.score, reverse=True)
        return ranked[:limit]

    async def _vector_matches(self, query: str, k: int) -> list[tuple[ItemRef, float]]:
        if not self.vector_search_enabled or not query.strip():
            return []
        try:
            if not self._store.has_embeddings():
                return []
            return await self._store.find_similar(query, k)
        except (EmbeddingError, SQLiteStoreError) as e:
            logger.warning(f"Vector search unavailable, using full-text only: {e}")
            return []

    def _resolve(self, ref: ItemRef, query: str) -> Optional[SearchResult]:
        spec = REGISTRY[ref.kind]
        try:
            row = self._store.sqlite.get_item(ref.kind, ref.id)
        except SQLiteStoreError as e:
            logger.debug(f"Cannot resolve {ref.key}: {e}")
            return None
        if row is None:
            return None
        return self._to_result(spec, row, query, 0.0)

    def _to_result(
        self, spec: ItemSpec, row: dict[str, Any], query: str, score: float
    ) -> SearchResult:
        return SearchResult(
            ref=ItemRef(spec.kind, spec.coerce_id(row["id"])),
            score=score,
            title=spec.title(row),
            snippet=build_snippet(row, spec, query),
            created_at=row.get(spec.date_column),
            metadata=spec.metadata(row),
        )


def format_age(created_at: Optional[str], now: Optional[datetime] = None) -> str:
    """Human age such as ``today``, ``3d ago`` or ``2mo ago``."""
    try:
        created = parse_timestamp(created_at)
    except ValueError:
        return ""
    if created is None:
        return ""
    days = int(days_between(created, now or utc_now()))
    if days == 0:
        return "today"
    if days == 1:
        return "1d ago"
    if days < 7:
        return f"{days}d ago"
    if days < 30:
        return f"{days // 7}w ago"
    return f"{days // 30}mo ago"


def format_results(results: list[SearchResult], now: Optional[datetime] = None) -> str:
    """Render results as a numbered plain-text list."""
    if not results:
        return "No results."
    lines = []
    for position, result in enumerate(results, start=1):
        tags = "".join(f" [{key}: {value}]" for key, value in result.metadata.items())
        lines.append(f"{position}. [{result.ref.kind.value.upper()}] {result.title}")
        lines.append(
            f"   (score: {result.score:.2f}) {format_age(result.created_at, now)}{tags}"
        )
        lines.append(f"   {result.snippet}")
    return "\n".join(lines)
