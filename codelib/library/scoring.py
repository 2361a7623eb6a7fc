"""
Structural reranking — metadata agreement on top of embedding similarity.

Embedding search finds items that SOUND alike. Two snippets can describe
the same thing in very different stacks, so the candidate list is reranked
with a weighted match over the categorical fields before the judge sees it.

Weights: generic fields > specific fields. Category defines the family,
type the kind, domain the area; tags and libraries are minor refinements.
"""

import logging
from typing import Any, Iterable, List, Optional

from codelib.schemas import SimilarCandidate

logger = logging.getLogger(__name__)

# Sum = 1.0
STRUCTURAL_WEIGHTS = {
    "category": 0.30,
    "type": 0.25,
    "domain": 0.20,
    "stack": 0.10,
    "language": 0.05,
    "libraries": 0.05,
    "tags": 0.05,
}

SEMANTIC_WEIGHT = 0.7
STRUCTURAL_WEIGHT = 0.3


def overlap_ratio(a: Optional[Iterable[str]], b: Optional[Iterable[str]]) -> float:
    """|A ∩ B| / max(|A|, |B|) over lower-cased sets. 0 if either side is empty."""
    set_a = {s.lower() for s in (a or []) if s}
    set_b = {s.lower() for s in (b or []) if s}
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / max(len(set_a), len(set_b))


def _same_text(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def compute_structural_score(new_item: Any, candidate: Any) -> float:
    """Weighted field agreement in [0, 1]. Accepts any object with the scoring fields."""
    score = 0.0

    cat_a = getattr(new_item, "category_id", None)
    cat_b = getattr(candidate, "category_id", None)
    if cat_a is not None and cat_b is not None and cat_a == cat_b:
        score += STRUCTURAL_WEIGHTS["category"]

    for field_name in ("type", "domain", "stack", "language"):
        if _same_text(getattr(new_item, field_name, None), getattr(candidate, field_name, None)):
            score += STRUCTURAL_WEIGHTS[field_name]

    score += STRUCTURAL_WEIGHTS["libraries"] * overlap_ratio(
        getattr(new_item, "libraries", None), getattr(candidate, "libraries", None),
    )
    score += STRUCTURAL_WEIGHTS["tags"] * overlap_ratio(
        getattr(new_item, "tags", None), getattr(candidate, "tags", None),
    )
    return score


def compute_combined_score(similarity: float, structural_score: float) -> float:
    return similarity * SEMANTIC_WEIGHT + structural_score * STRUCTURAL_WEIGHT


def rerank_candidates(
    new_item: Any,
    candidates: List[SimilarCandidate],
    top_n: int = 5,
) -> List[SimilarCandidate]:
    """Score every candidate, sort by combined score (desc) and keep the top N."""
    scored = []
    for candidate in candidates:
        structural = compute_structural_score(new_item, candidate.item)
        scored.append(candidate.model_copy(update={
            "structural_score": structural,
            "combined_score": compute_combined_score(candidate.similarity, structural),
        }))
    scored.sort(key=lambda c: c.combined_score, reverse=True)
    if scored:
        logger.debug(
            f"Rerank: {len(candidates)} → top {min(top_n, len(scored))}, "
            f"best '{scored[0].item.name}' ({scored[0].combined_score:.3f})"
        )
    return scored[:top_n]
