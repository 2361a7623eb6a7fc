"""API request/response schemas for the item trigger routes."""

from typing import List, Optional

from pydantic import BaseModel, Field

from codelib.schemas import ItemRef, JudgeCandidate, ScoringFields


class LinkRequest(BaseModel):
    parent_id: int


class CoherenceAccepted(BaseModel):
    parent_id: int
    status: str = "scheduled"


class FamilyResponse(BaseModel):
    parent_id: int
    name: str
    is_abstract: bool = False
    grandparent_id: Optional[int] = None
    children: List[ItemRef] = Field(default_factory=list)
    avg_similarity: Optional[float] = None  # None when fewer than 2 embedded children


class SimilarityRequest(ScoringFields):
    """A draft item, checked against the library before it is saved."""
    name: str = ""
    code: str = ""
    description: str = ""


class SimilarityResponse(BaseModel):
    data: List[JudgeCandidate] = Field(default_factory=list)
