"""BM25 ranking for the local retrieval store."""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import List, Sequence, Tuple

BM25_K1 = 1.5
BM25_B = 0.75

_TOKEN_RE = re.compile(r"\w+")


def tokenize_text(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class BM25Index:
    """Corpus statistics for one store snapshot.

    Document frequencies and lengths are computed once; ``scores`` can then be
    called for any number of queries against the same documents.
    """

    def __init__(self, documents: List[List[str]], *, k1: float = BM25_K1, b: float = BM25_B) -> None:
        self.k1 = k1
        self.b = b
        self.size = len(documents)
        self._term_counts = [Counter(doc) for doc in documents]
        self._lengths = [len(doc) for doc in documents]
        self._avg_length = (sum(self._lengths) / float(self.size)) if self.size else 0.0
        self._doc_freq: Counter = Counter()
        for counts in self._term_counts:
            self._doc_freq.update(counts.keys())

    def _idf(self, term: str) -> float:
        df = self._doc_freq.get(term, 0)
        return math.log(1 + (self.size - df + 0.5) / (df + 0.5))

    def scores(self, query_tokens: Sequence[str]) -> List[float]:
        terms = [t for t in dict.fromkeys(query_tokens) if self._doc_freq.get(t)]
        if not terms:
            return [0.0] * self.size
        idf = {term: self._idf(term) for term in terms}
        avg = self._avg_length or 1.0

        results: List[float] = []
        for counts, length in zip(self._term_counts, self._lengths):
            norm = self.k1 * (1 - self.b + self.b * (length / avg))
            total = 0.0
            for term in terms:
                freq = counts.get(term, 0)
                if freq:
                    total += idf[term] * (freq * (self.k1 + 1)) / (freq + norm)
            results.append(total)
        return results

    def rank(self, query_tokens: Sequence[str], limit: int) -> List[Tuple[int, float]]:
        """Indices of matching documents, best first; ties keep corpus order."""
        scored = [(idx, score) for idx, score in enumerate(self.scores(query_tokens)) if score > 0]
        scored.sort(key=lambda pair: (-pair[1], pair[0]))
        return scored[: max(limit, 0)]


def compute_bm25_scores(
    query_tokens: Sequence[str],
    documents: List[List[str]],
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> List[float]:
    if not documents:
        return []
    return BM25Index(documents, k1=k1, b=b).scores(query_tokens)
