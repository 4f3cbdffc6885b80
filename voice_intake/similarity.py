# voice_intake/similarity.py

import re

from rapidfuzz.distance import Levenshtein

_WS = re.compile(r"\s+")

# scores are rounded so threshold comparisons (>= 0.6, >= 0.8) are exact
_PRECISION = 6


def normalize_name(value) -> str:
    if value is None:
        return ""
    return _WS.sub(" ", str(value)).strip().lower()


def levenshtein_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def similarity(a: str, b: str) -> float:
    """
    Normalized edit-distance similarity, 1 - distance / max_len, on
    case-folded and whitespace-collapsed input. Two empty strings score 1.0.
    """
    a, b = normalize_name(a), normalize_name(b)
    if not a and not b:
        return 1.0
    return round(Levenshtein.normalized_similarity(a, b), _PRECISION)


def name_similarity(query: str, name: str, *, partial_weight: float = 0.9) -> float:
    """
    Score a spoken query against a stored name.

    Besides the full-name score, every run of consecutive words of `name`
    with as many words as the query is compared too, and the best of those
    is weighted by `partial_weight`. "Siemenz" against "Siemens Healthcare"
    is a close hit on one word of two, so it lands below auto-resolve.
    A weight of 0 keeps the plain full-name score.
    """
    full = similarity(query, name)
    q = normalize_name(query)
    n_tokens = normalize_name(name).split(" ")
    width = len(q.split(" "))
    if not q or not partial_weight or len(n_tokens) <= width:
        return full

    windows = [" ".join(n_tokens[start:start + width]) for start in range(len(n_tokens) - width + 1)]
    best = max(Levenshtein.normalized_similarity(q, window) for window in windows)
    return max(full, round(best * partial_weight, _PRECISION))
