"""
Schemas package — all data models for the code library graph.

Models are organized by concern in submodules:
  - base.py: Enums (item kinds, edge types, verdicts, levels)
  - graph.py: Item, Edge, Family, Taxonomy
  - pipeline.py: Piece, candidates, resolve / hierarchy / coherence results
  - llm_outputs.py: Structured oracle outputs (outline, judge, atoms, parent)
"""

# base.py — enums
from codelib.schemas.base import (
    ItemKind, EdgeType, Verdict, JudgeVerdict, FamilyRole, ResolveAction,
    PieceLevel, CoherenceOperation,
)

# graph.py — graph views
from codelib.schemas.graph import UseCase, Item, Edge, ItemRef, Family, Taxonomy

# pipeline.py — pipeline models
from codelib.schemas.pipeline import (
    SourceFile, ScoringFields, Piece, SimilarCandidate, JudgeCandidate,
    ResolveResult, PieceRecord, EdgeRecord, HierarchyResult, CoherenceReport,
)

# llm_outputs.py — oracle outputs
from codelib.schemas.llm_outputs import (
    OutlinePieceLLM, OutlineOrganismLLM, DecomposeChildrenLLM, OutlineLLM,
    AtomLLM, AtomsLLM, JudgeMatchLLM, JudgeLLM, AbstractParentLLM,
)

__all__ = [
    # base
    "ItemKind", "EdgeType", "Verdict", "JudgeVerdict", "FamilyRole", "ResolveAction",
    "PieceLevel", "CoherenceOperation",
    # graph
    "UseCase", "Item", "Edge", "ItemRef", "Family", "Taxonomy",
    # pipeline
    "SourceFile", "ScoringFields", "Piece", "SimilarCandidate", "JudgeCandidate",
    "ResolveResult", "PieceRecord", "EdgeRecord", "HierarchyResult", "CoherenceReport",
    # llm outputs
    "OutlinePieceLLM", "OutlineOrganismLLM", "DecomposeChildrenLLM", "OutlineLLM",
    "AtomLLM", "AtomsLLM", "JudgeMatchLLM", "JudgeLLM", "AbstractParentLLM",
]
