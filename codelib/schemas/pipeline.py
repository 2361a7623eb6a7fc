"""
Pipeline models — what flows through resolution, decomposition and coherence.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from codelib.schemas.base import (
    CoherenceOperation, EdgeType, FamilyRole, PieceLevel, ResolveAction, Verdict,
)
from codelib.schemas.graph import Item, ItemRef


class SourceFile(BaseModel):
    name: str
    code: str
    language: Optional[str] = None

    def signature(self, max_lines: int = 30) -> str:
        """First N lines — enough for the outline call to classify the file."""
        return "\n".join(self.code.split("\n")[:max_lines])


class ScoringFields(BaseModel):
    """Optional categorical fields used by the structural reranker."""
    category_id: Optional[int] = None
    type: Optional[str] = None
    domain: Optional[str] = None
    stack: Optional[str] = None
    language: Optional[str] = None
    libraries: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class Piece(ScoringFields):
    """A candidate piece to resolve against the library."""
    name: str
    description: str = ""
    code: Optional[str] = None
    is_demoable: bool = False
    files: List[str] = Field(default_factory=list)
    parent: Optional[str] = None

    @property
    def embedding_text(self) -> str:
        return " ".join(p for p in (self.name, self.description) if p)


class SimilarCandidate(BaseModel):
    """A library item retrieved by embedding search."""
    item: Item
    similarity: float
    structural_score: float = 0.0
    combined_score: float = 0.0


class JudgeCandidate(BaseModel):
    """A reranked candidate enriched with family context for the judge."""
    id: int
    name: str
    code: str = ""
    description: Optional[str] = None
    similarity: float = 0.0
    combined_score: float = 0.0
    role: FamilyRole = FamilyRole.STANDALONE
    parent: Optional[ItemRef] = None
    siblings: List[ItemRef] = Field(default_factory=list)
    children: List[ItemRef] = Field(default_factory=list)


class ResolveResult(BaseModel):
    item_id: int
    action: ResolveAction
    verdict: Optional[Verdict] = None
    matched_item_id: Optional[int] = None

    @property
    def created(self) -> bool:
        return self.action == ResolveAction.CREATED


class PieceRecord(BaseModel):
    name: str
    item_id: int
    level: PieceLevel
    action: ResolveAction
    make_demo: bool = False
    verdict: Optional[Verdict] = None
    matched_item_id: Optional[int] = None
    code: Optional[str] = None
    files: List[str] = Field(default_factory=list)


class EdgeRecord(BaseModel):
    source_id: int
    target_id: int
    type: EdgeType


class HierarchyResult(BaseModel):
    items: List[PieceRecord] = Field(default_factory=list)
    edges: List[EdgeRecord] = Field(default_factory=list)


class CoherenceReport(BaseModel):
    """Outcome of one coherence check on one family."""
    parent_id: int
    skipped: Optional[str] = None  # not_found | not_a_parent | cooldown
    operations: List[CoherenceOperation] = Field(default_factory=list)
    budget_remaining: int = 0
    avg_similarity: Optional[float] = None
    created_parent_ids: List[int] = Field(default_factory=list)
    absorbed_ids: List[int] = Field(default_factory=list)
    merged_parent_id: Optional[int] = None
    pruned: bool = False
    checked_at: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return bool(self.operations)
