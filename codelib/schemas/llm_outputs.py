"""
Inner Pydantic models for LLM structured output.

These models define ONLY what the oracle produces. Fields set
programmatically (ids, slugs, embeddings) are excluded. Used with
LLMService.run_structured() to get typed, validated output with automatic
retry on validation failure.

Convention: Suffix with "LLM" to distinguish from the graph models.
"""

from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.functional_validators import BeforeValidator

from codelib.schemas.base import ItemKind, JudgeVerdict
from codelib.schemas.graph import UseCase


def _coerce_to_list(v):
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    return list(v)


StrList = Annotated[List[str], BeforeValidator(_coerce_to_list)]


class OutlinePieceLLM(BaseModel):
    """One declared child of an organism / sub-organism."""
    name: str
    description: str = ""
    is_demoable: bool = False
    files: StrList = Field(default_factory=list)
    parent: Optional[str] = None


class OutlineOrganismLLM(BaseModel):
    """Top-level classification of the whole submission."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    kind: ItemKind = ItemKind.COMPONENT
    type: Optional[str] = None
    domain: Optional[str] = None
    stack: Optional[str] = None
    language: Optional[str] = None
    category: Optional[str] = None
    libraries: StrList = Field(default_factory=list)
    tags: StrList = Field(default_factory=list)
    use_cases: List[UseCase] = Field(default_factory=list, alias="useCases")
    entry_file: Optional[str] = Field(default=None, alias="entryFile")
    is_demoable: bool = False
    files: StrList = Field(default_factory=list)


class DecomposeChildrenLLM(BaseModel):
    """Direct children of a sub-organism (or of the orphan-file bucket)."""
    sub_organisms: List[OutlinePieceLLM] = Field(default_factory=list)
    molecules: List[OutlinePieceLLM] = Field(default_factory=list)

    @property
    def claimed_files(self) -> set:
        claimed = set()
        for piece in [*self.sub_organisms, *self.molecules]:
            claimed.update(piece.files)
        return claimed


class OutlineLLM(DecomposeChildrenLLM):
    """Outline = organism classification + its immediate children. NO atoms."""
    organism: OutlineOrganismLLM


class AtomLLM(BaseModel):
    name: str
    description: str = ""
    code: str = ""
    is_demoable: bool = False


class AtomsLLM(BaseModel):
    atoms: List[AtomLLM] = Field(default_factory=list)


class JudgeMatchLLM(BaseModel):
    """One judge conclusion about one candidate."""
    model_config = ConfigDict(populate_by_name=True)

    candidate_id: int = Field(alias="candidateId")
    verdict: JudgeVerdict
    confidence: float = Field(ge=0.0, le=1.0, default=0.5)
    reasoning: str = ""


class JudgeLLM(BaseModel):
    """Zero or more matches. Empty = nothing in the library truly fits."""
    matches: List[JudgeMatchLLM] = Field(default_factory=list)


class AbstractParentLLM(BaseModel):
    """Abstract parent generated for a freshly split sub-family."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    code: str = ""
    use_cases: List[UseCase] = Field(default_factory=list, alias="useCases")
    type: Optional[str] = None
    domain: Optional[str] = None
    stack: Optional[str] = None
    language: Optional[str] = None
    libraries: StrList = Field(default_factory=list)
    tags: StrList = Field(default_factory=list)

    @property
    def embedding_text(self) -> str:
        return " ".join(p for p in (self.name, self.description, self.type, self.domain) if p)
