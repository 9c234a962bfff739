"""
Stratum search helpers -- scoring and fusion used by MemoryManager.

Keyword:  FTS5 query building and BM25 rank normalization, plus a
          term-coverage scorer for when no full-text index is available.
Vector:   cosine similarity over stored embeddings.
Hybrid:   weighted reciprocal rank fusion (RRF) of the two ranked lists.
"""

import hashlib
import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from stratum.types import MatchType, MemoryEntry, MemorySearchResult, Tier

RRF_K = 60
MAX_FTS_TOKENS = 20


def hash_content(content: str) -> str:
    """First 16 hex chars of the SHA-256 of *content* (change detection)."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Keyword scoring
# ---------------------------------------------------------------------------


def build_fts_query(raw: str) -> Optional[str]:
    """Turn free text into a safe FTS5 MATCH expression.

    Each whitespace token is wrapped in double quotes (embedded quotes
    doubled) so FTS5 operators in user input are matched literally. At most
    20 tokens, joined with OR. Returns None for blank input.
    """
    tokens = [t for t in raw.split() if t][:MAX_FTS_TOKENS]
    if not tokens:
        return None
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in tokens)


def bm25_rank_to_score(rank: float) -> float:
    """Map an FTS5 rank (negative, more negative is better) into [0, 1)."""
    r = abs(rank)
    return r / (r + 1.0)


def _count_occurrences(haystack: str, needle: str) -> int:
    # Overlapping matches count, e.g. "aa" occurs twice in "aaa"
    count = 0
    idx = haystack.find(needle)
    while idx != -1:
        count += 1
        idx = haystack.find(needle, idx + 1)
    return count


def query_terms(query: str) -> List[str]:
    """Lowercased whitespace tokens, ignoring single-character terms."""
    return [t for t in query.lower().split() if len(t) > 1]


def score_keyword_fallback(terms: Sequence[str], content: str) -> float:
    """Term-coverage score for *content*; 0.0 means no term matched.

    score = coverage * 0.7 + min(0.3, 0.02 * occurrences) + 0.1, capped at 1.
    """
    if not terms:
        return 0.0
    content_lower = content.lower()
    matched = 0
    occurrences = 0
    for term in terms:
        n = _count_occurrences(content_lower, term)
        if n:
            matched += 1
            occurrences += n
    if not matched:
        return 0.0
    coverage = matched / len(terms)
    return min(1.0, coverage * 0.7 + min(0.3, occurrences * 0.02) + 0.1)


def rank_keyword_fallback(
    query: str, candidates: Iterable[Tuple[MemoryEntry, Tier]], limit: int
) -> List[MemorySearchResult]:
    """Score *candidates* with the coverage scorer, best first."""
    terms = query_terms(query)
    results = []
    for entry, tier in candidates:
        score = score_keyword_fallback(terms, entry.content)
        if score > 0:
            results.append(MemorySearchResult(entry, score, tier, MatchType.KEYWORD))
    results.sort(key=lambda r: r.score, reverse=True)
    return results[:limit]


# ---------------------------------------------------------------------------
# Vector scoring
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between *a* and *b*.

    0.0 for empty or mismatched-length vectors and when either norm is zero.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    denom = math.sqrt(norm_a) * math.sqrt(norm_b)
    if denom == 0:
        return 0.0
    return dot / denom


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------


def merge_hybrid_results(
    keyword_results: Sequence[MemorySearchResult],
    vector_results: Sequence[MemorySearchResult],
    text_weight: float = 0.4,
    vector_weight: float = 0.6,
    k: int = RRF_K,
) -> List[MemorySearchResult]:
    """Weighted reciprocal rank fusion.

    An entry at 0-based position i in a list contributes weight / (k + i + 1).
    Contributions are summed per entry id, sorted descending and divided by
    the top score, so the best fused result scores exactly 1.0.
    """
    fused: Dict[str, List] = {}  # id -> [entry, tier, score]
    for results, weight in ((keyword_results, text_weight), (vector_results, vector_weight)):
        for i, result in enumerate(results):
            contribution = weight / (k + i + 1)
            slot = fused.get(result.entry.id)
            if slot is None:
                fused[result.entry.id] = [result.entry, result.tier, contribution]
            else:
                slot[2] += contribution

    ranked = sorted(fused.values(), key=lambda s: s[2], reverse=True)
    if not ranked:
        return []
    top = ranked[0][2]
    return [
        MemorySearchResult(entry, score / top if top > 0 else 0.0, tier, MatchType.HYBRID)
        for entry, tier, score in ranked
    ]
