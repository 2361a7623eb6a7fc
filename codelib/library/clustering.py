"""
Vector math kernel + bisecting clusterer for the self-organizing library.

Pure functions: cosine similarity, centroids, pairwise cohesion, k-means
bisection. No DB access and no I/O — these are the building blocks the
resolution cascade and the coherence engine share.

CONVENTIONS:
  - Similarities are clipped to [0, 1]. Zero-norm, empty or dimension-
    mismatched inputs score 0 instead of raising.
  - Centroids are L2-normalized means. Empty input → empty list.
  - A set of fewer than 2 vectors is perfectly cohesive (1.0) by convention.

PERFORMANCE: the bisection seed search is the one O(n²) step. It runs on a
single family's children (tens, not thousands), which is what bounds the
practical family size.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as pairwise_cosine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fixed k-means iterations for bisection, no convergence check. The caller
# validates cohesion of both halves and discards a failed split.
BISECT_ITERATIONS = 10

Vector = Sequence[float]


# ── Cosine similarity ────────────────────────────────────────────────────────

def cosine_similarity(a: Optional[Vector], b: Optional[Vector]) -> float:
    """Cosine similarity in [0, 1]. Returns 0 if either vector has zero norm."""
    if a is None or b is None or len(a) == 0 or len(b) == 0 or len(a) != len(b):
        return 0.0

    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    denom = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if denom == 0:
        return 0.0
    return float(np.clip(np.dot(vec_a, vec_b) / denom, 0.0, 1.0))


def _normalize(vec: np.ndarray) -> np.ndarray:
    """L2-normalize. A zero vector is returned unchanged."""
    norm = np.linalg.norm(vec)
    if norm == 0:
        return vec
    return vec / norm


def _as_matrix(vectors: Sequence[Vector]) -> np.ndarray:
    """Stack vectors into a matrix, dropping any whose dimension differs from the majority."""
    # Ties go to the dimension seen first
    dim = Counter(len(v) for v in vectors).most_common(1)[0][0]
    rows = [v for v in vectors if len(v) == dim]
    if len(rows) < len(vectors):
        logger.warning(f"Dropped {len(vectors) - len(rows)} vectors with dimension != {dim}")
    return np.asarray(rows, dtype=float)


def _similarity_matrix(a: np.ndarray, b: Optional[np.ndarray] = None) -> np.ndarray:
    """Cosine matrix (a vs b, or a vs itself), clipped to [0, 1]. Zero rows score 0."""
    return np.clip(pairwise_cosine(a, b), 0.0, 1.0)


# ── Centroid operations ──────────────────────────────────────────────────────

def compute_centroid(vectors: Sequence[Vector]) -> List[float]:
    """Normalized mean of the given vectors. Empty in → empty out."""
    if len(vectors) == 0:
        return []
    matrix = _as_matrix(vectors)
    return _normalize(matrix.mean(axis=0)).tolist()


def update_centroid(current: Vector, count: int, new_vector: Vector) -> List[float]:
    """Fold one more member into a centroid without re-reading the family.

    Incremental updates drift (the stored centroid is normalized, so the
    running mean is only approximate). The coherence check recomputes
    from scratch to correct it.
    """
    if not new_vector:
        return list(current)
    if not current or count <= 0:
        return _normalize(np.asarray(new_vector, dtype=float)).tolist()
    if len(current) != len(new_vector):
        logger.warning(
            f"update_centroid: dimension mismatch ({len(current)} vs {len(new_vector)}), keeping current"
        )
        return list(current)

    cur = np.asarray(current, dtype=float)
    new = np.asarray(new_vector, dtype=float)
    return _normalize((count * cur + new) / (count + 1)).tolist()


# ── Pairwise similarity ─────────────────────────────────────────────────────

def average_pairwise_similarity(vectors: Sequence[Vector]) -> float:
    """Average cosine over all member pairs (cohesion). 1.0 for a singleton."""
    n = len(vectors)
    if n < 2:
        return 1.0
    matrix = _as_matrix(vectors)
    if len(matrix) < 2:
        return 1.0
    sim = _similarity_matrix(matrix)
    upper = sim[np.triu_indices(len(matrix), k=1)]
    return float(upper.mean())


def cross_similarity(vectors_a: Sequence[Vector], vectors_b: Sequence[Vector]) -> float:
    """Average cosine over the full cross product of two sets. 0.0 if either is empty."""
    if len(vectors_a) == 0 or len(vectors_b) == 0:
        return 0.0
    a = _as_matrix(vectors_a)
    b = _as_matrix(vectors_b)
    if a.shape[1] != b.shape[1]:
        return 0.0

    return float(_similarity_matrix(a, b).mean())


# ── K-means bisection ───────────────────────────────────────────────────────

@dataclass
class BisectResult(Generic[T]):
    group_a: List[T] = field(default_factory=list)
    group_b: List[T] = field(default_factory=list)

    @property
    def minority(self) -> List[T]:
        """Smaller half (group B on a tie)."""
        return self.group_a if len(self.group_a) < len(self.group_b) else self.group_b

    @property
    def majority(self) -> List[T]:
        return self.group_b if len(self.group_a) < len(self.group_b) else self.group_a


def k_means_bisect(
    members: Sequence[T],
    key: Optional[Callable[[T], Vector]] = None,
) -> BisectResult[T]:
    """
    Split members into two groups by embedding similarity.

    Seeds are the two most distant members (1 - cosine). Each member goes to
    the nearer seed centroid (ties → group B), centroids are recomputed, and
    this repeats BISECT_ITERATIONS times. Unbalanced halves are allowed.

    Args:
        members: Items to split. Fewer than 2 → all in group A.
        key: Embedding accessor. Defaults to ``member.embedding``.
    """
    get_embedding = key or (lambda m: m.embedding)
    if len(members) < 2:
        return BisectResult(group_a=list(members), group_b=[])

    emb = np.asarray([get_embedding(m) for m in members], dtype=float)
    n = len(emb)

    # Seed: the most distant pair (first one found on ties)
    dist = 1.0 - _similarity_matrix(emb)
    rows, cols = np.triu_indices(n, k=1)
    best = int(np.argmax(dist[rows, cols]))
    seed_a, seed_b = int(rows[best]), int(cols[best])

    centroid_a = emb[seed_a].copy()
    centroid_b = emb[seed_b].copy()
    in_a = np.zeros(n, dtype=bool)

    for _ in range(BISECT_ITERATIONS):
        sim_a = np.array([cosine_similarity(e, centroid_a) for e in emb])
        sim_b = np.array([cosine_similarity(e, centroid_b) for e in emb])
        in_a = sim_a > sim_b

        if in_a.any():
            centroid_a = _normalize(emb[in_a].mean(axis=0))
        if (~in_a).any():
            centroid_b = _normalize(emb[~in_a].mean(axis=0))

    group_a = [m for m, flag in zip(members, in_a) if flag]
    group_b = [m for m, flag in zip(members, in_a) if not flag]
    logger.debug(f"Bisect: {n} members → {len(group_a)}/{len(group_b)} (seeds {seed_a}, {seed_b})")
    return BisectResult(group_a=group_a, group_b=group_b)
