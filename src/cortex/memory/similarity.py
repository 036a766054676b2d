"""TF-IDF cosine similarity for cheap lexical duplicate checks."""

import math
import re
from collections import Counter
from typing import Any, Iterable

STOPWORDS = frozenset(
    """
    a an the and or but in on at to for of with is it this that are was be
    have has do does not no so if as by from use used using should must will
    can may always never instead
    """.split()
)

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str) -> list[str]:
    """Lower-cased alphanumeric tokens longer than two characters, minus stopwords."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOPWORDS]


def _cosine(a: dict[str, float], b: dict[str, float]) -> float:
    dot = sum(value * b.get(term, 0.0) for term, value in a.items())
    norm_a = math.sqrt(sum(v * v for v in a.values()))
    norm_b = math.sqrt(sum(v * v for v in b.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def find_similar_texts(
    query: str,
    corpus: Iterable[tuple[Any, str]],
    threshold: float = 0.85,
) -> list[tuple[Any, float]]:
    """Corpus entries whose TF-IDF cosine with ``query`` reaches ``threshold``.

    IDF is smoothed (ln((N + 1) / (df + 1)) + 1) over the corpus plus the
    query itself, so terms shared by every document still count.

    Args:
        query: Text being checked
        corpus: (key, text) pairs
        threshold: Minimum similarity in [0, 1]

    Returns:
        (key, score) pairs, most similar first
    """
    query_tokens = tokenize(query)
    if not query_tokens:
        return []

    entries = [(key, tokenize(text)) for key, text in corpus]
    documents = [tokens for _, tokens in entries] + [query_tokens]
    doc_count = len(documents)
    document_frequency: Counter[str] = Counter()
    for tokens in documents:
        document_frequency.update(set(tokens))

    def weights(tokens: list[str]) -> dict[str, float]:
        counts = Counter(tokens)
        total = len(tokens) or 1
        return {
            term: (count / total) * (math.log((doc_count + 1) / (document_frequency[term] + 1)) + 1)
            for term, count in counts.items()
        }

    query_vector = weights(query_tokens)
    matches = []
    for key, tokens in entries:
        score = _cosine(query_vector, weights(tokens))
        if score >= threshold:
            matches.append((key, score))
    matches.sort(key=lambda match: match[1], reverse=True)
    return matches
