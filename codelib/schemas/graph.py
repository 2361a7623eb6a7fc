"""
Graph models — detached, validated views of Item and Edge rows.

The Database returns these instead of ORM objects so callers never touch a
closed session. Embeddings are plain float lists (None = no semantic identity).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from codelib.schemas.base import EdgeType, ItemKind


class UseCase(BaseModel):
    title: str = ""
    use: str = ""


class Item(BaseModel):
    """A library graph node (snippet / component / collection)."""
    id: int
    kind: ItemKind
    name: str
    slug: str
    description: Optional[str] = None
    code: Optional[str] = None

    # Categorical fields (structural reranking)
    category_id: Optional[int] = None
    type: Optional[str] = None
    domain: Optional[str] = None
    stack: Optional[str] = None
    language: Optional[str] = None
    libraries: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    use_cases: Optional[List[UseCase]] = None
    entry_file: Optional[str] = None

    embedding: Optional[List[float]] = None
    centroid_embedding: Optional[List[float]] = None
    is_abstract: bool = False
    last_coherence_check: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Edge(BaseModel):
    id: int
    source_id: int
    target_id: int
    type: EdgeType
    resource: str = "item"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ItemRef(BaseModel):
    """Lightweight (id, name) reference for family context."""
    id: int
    name: str


class Family(BaseModel):
    """A parent item plus its direct children (via parent edges)."""
    parent: Item
    children: List[Item] = Field(default_factory=list)

    @property
    def embedded_children(self) -> List[Item]:
        """Children that carry an embedding (the only ones that count for cohesion)."""
        return [c for c in self.children if c.embedding]

    @property
    def child_embeddings(self) -> List[List[float]]:
        return [c.embedding for c in self.children if c.embedding]


class Taxonomy(BaseModel):
    """Existing vocabulary, fed to the outline oracle to bias reuse."""
    types: List[str] = Field(default_factory=list)
    domains: List[str] = Field(default_factory=list)
    stacks: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.types or self.domains or self.tags or self.categories)
