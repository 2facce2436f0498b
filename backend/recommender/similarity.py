"""
Similarity math for collaborative filtering.

Vectors are sparse mappings key -> score (e.g. user -> interaction weight for
an item vector, product -> rating for a user vector). All functions are pure.
"""
from __future__ import annotations

from typing import Dict, Hashable, Iterable, List, Mapping, Set, Tuple, TypeVar
import math

K = TypeVar("K", bound=Hashable)


def cosine_similarity(vec_a: Mapping[K, float], vec_b: Mapping[K, float]) -> float:
    """
    Dot product over the shared keys divided by the product of the *full*
    vector magnitudes, so non-overlapping dimensions still pull the score down.
    """
    if not vec_a or not vec_b:
        return 0.0

    common = vec_a.keys() & vec_b.keys()
    if not common:
        return 0.0

    dot = 0.0
    for key in common:
        dot += vec_a[key] * vec_b[key]

    mag_a = math.sqrt(sum(v * v for v in vec_a.values()))
    mag_b = math.sqrt(sum(v * v for v in vec_b.values()))
    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0

    return dot / (mag_a * mag_b)


def pearson_correlation(vec_a: Mapping[K, float], vec_b: Mapping[K, float]) -> float:
    """Mean-centred correlation over the shared keys only. Range [-1, 1]."""
    common = [k for k in vec_a if k in vec_b]
    n = len(common)
    if n < 2:
        return 0.0

    mean_a = sum(vec_a[k] for k in common) / n
    mean_b = sum(vec_b[k] for k in common) / n

    cov = 0.0
    var_a = 0.0
    var_b = 0.0
    for k in common:
        da = vec_a[k] - mean_a
        db = vec_b[k] - mean_b
        cov += da * db
        var_a += da * da
        var_b += db * db

    if var_a == 0.0 or var_b == 0.0:
        return 0.0

    r = cov / (math.sqrt(var_a) * math.sqrt(var_b))
    # float noise can push |r| a hair over 1
    return max(-1.0, min(r, 1.0))


def jaccard_similarity(set_a: Set[K], set_b: Set[K]) -> float:
    if not set_a and not set_b:
        return 1.0
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def normalize_scores(scores: Mapping[K, float]) -> Dict[K, float]:
    """Min-max normalize to [0, 1]. If every score is equal they all map to 0.5."""
    if not scores:
        return {}

    lo = min(scores.values())
    hi = max(scores.values())
    if hi == lo:
        return {k: 0.5 for k in scores}

    span = hi - lo
    return {k: (v - lo) / span for k, v in scores.items()}


def top_n(scores: Mapping[K, float] | Iterable[Tuple[K, float]], n: int) -> List[Tuple[K, float]]:
    """
    Highest-scoring n entries, descending. The sort is stable, so ties keep
    their insertion order. Accepts a mapping or the output of a previous call.
    """
    if n <= 0:
        return []
    items = list(scores.items()) if isinstance(scores, Mapping) else list(scores)
    items.sort(key=lambda kv: kv[1], reverse=True)
    return items[:n]

