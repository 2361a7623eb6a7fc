"""
Self-organizing code library: resolution, decomposition and coherence.

Modules:
  - clustering.py: Vector math kernel + k-means bisection (pure, no I/O)
  - scoring.py: Structural reranking of embedding-search candidates
  - oracle.py / prompts.py: LLM oracle (outline, children, atoms, judge, parent)
  - resolution.py: ResolutionCascade (reuse / create / link per piece)
  - hierarchy.py: HierarchyPipeline (top-down decomposition of a submission)
  - coherence.py: CoherenceEngine + CoherenceScheduler (split / merge / absorb / prune)

Only the pure modules are re-exported here; the pipeline classes import the
database and are imported from their own modules.
"""

from codelib.library.clustering import (
    BisectResult, average_pairwise_similarity, compute_centroid, cosine_similarity,
    cross_similarity, k_means_bisect, update_centroid,
)
from codelib.library.scoring import (
    compute_combined_score, compute_structural_score, overlap_ratio, rerank_candidates,
)
