"""
Pytest configuration and shared fakes for the code library tests.

The embedder and the oracle are replaced by deterministic fakes so every
test controls exactly which vectors and verdicts the pipelines see. Vectors
live in a small space built from unit axes:

    blend(p, s, c) = c * e_p + sqrt(1 - c²) * e_s

so two blends on the same primary axis with different secondary axes have
cosine c1 * c2, and blends on different primaries are orthogonal.
"""

import math
from typing import Callable, Dict, List, Optional

import pytest

from codelib.config import Settings
from codelib.database import Database
from codelib.schemas import (
    AbstractParentLLM, AtomLLM, DecomposeChildrenLLM, Item, ItemKind, JudgeMatchLLM,
    OutlineLLM, Piece, SourceFile, Taxonomy,
)

DIM = 12


# ============================================================================
# VECTORS
# ============================================================================

def unit(axis: int) -> List[float]:
    vec = [0.0] * DIM
    vec[axis] = 1.0
    return vec


def blend(primary: int, secondary: int, cos: float) -> List[float]:
    """Unit vector at angle acos(cos) from e_primary, tilted toward e_secondary."""
    vec = [0.0] * DIM
    vec[primary] = cos
    vec[secondary] = math.sqrt(max(0.0, 1.0 - cos * cos))
    return vec


# ============================================================================
# FAKES
# ============================================================================

class FakeEmbedder:
    """Text → vector lookup. Unknown text embeds to None (absent)."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, fail: bool = False):
        self.vectors: Dict[str, List[float]] = dict(vectors or {})
        self.fail = fail
        self.calls: List[str] = []

    def embed_text(self, text: str) -> Optional[List[float]]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding provider down")
        return self.vectors.get(text)


class FakeOracle:
    """Scripted LibraryOracle. Every call is recorded; `failing` names calls that raise."""

    def __init__(self):
        self.outline_result: Optional[OutlineLLM] = None
        self.children: Dict[str, DecomposeChildrenLLM] = {}
        self.atoms: Dict[str, List[AtomLLM]] = {}
        self.matches: Dict[str, List[JudgeMatchLLM]] = {}
        self.judge_fn: Optional[Callable] = None
        self.parent_result: Optional[AbstractParentLLM] = None
        self.failing: set = set()
        self.calls: List[tuple] = []

    def _record(self, name: str, *args):
        self.calls.append((name, *args))
        if name in self.failing:
            raise RuntimeError(f"oracle {name} failed")

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def outline(self, files: List[SourceFile], taxonomy: Optional[Taxonomy] = None) -> OutlineLLM:
        self._record("outline", [f.name for f in files])
        return self.outline_result

    async def decompose_children(self, name: str, description: str, files: List[SourceFile]):
        self._record("decompose_children", name, [f.name for f in files])
        return self.children.get(name, DecomposeChildrenLLM())

    async def extract_atoms(self, molecule_name: str, files: List[SourceFile]) -> List[AtomLLM]:
        self._record("extract_atoms", molecule_name, [f.name for f in files])
        return self.atoms.get(molecule_name, [])

    async def judge(self, piece: Piece, description: str, candidates) -> List[JudgeMatchLLM]:
        self._record("judge", piece.name, description, [c.id for c in candidates])
        if self.judge_fn is not None:
            return self.judge_fn(piece, candidates)
        return self.matches.get(piece.name, [])

    async def create_abstract_parent(self, variant_a: Item, variant_b: Item) -> AbstractParentLLM:
        self._record("create_abstract_parent", variant_a.id, variant_b.id)
        if self.parent_result is not None:
            return self.parent_result
        return AbstractParentLLM(
            name=f"Abstract {variant_a.name}",
            description=f"Generic version of {variant_a.name} and {variant_b.name}",
        )


class RecordingScheduler:
    """Stands in for CoherenceScheduler in API tests: records, never runs."""

    def __init__(self):
        self.scheduled: List[int] = []
        self.pending = 0

    def schedule(self, parent_id: int):
        self.scheduled.append(parent_id)
        return None

    async def drain(self):
        return None


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        auto_reuse_threshold=0.875,
        search_threshold=0.70,
        search_limit=15,
        rerank_top=5,
        variant_threshold=0.82,
        split_threshold=0.72,
        merge_threshold=0.85,
        split_min_cohesion=0.78,
        coherence_budget=2,
        min_split_size=3,
        coherence_cooldown_seconds=300,
        api_key="",
    )


@pytest.fixture
def db() -> Database:
    database = Database("sqlite://")
    database.create_tables()
    yield database
    database.engine.dispose()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def add_item(db):
    """Create an item directly in storage: add_item(name, embedding=None, kind=SNIPPET, **fields)."""

    def _add(name: str, embedding: Optional[List[float]] = None, kind: ItemKind = ItemKind.SNIPPET, **fields) -> Item:
        return db.create_item(
            kind, name, fields.pop("description", f"{name} description"),
            fields.pop("code", f"def {name.lower().replace(' ', '_')}(): pass"),
            embedding=embedding, **fields,
        )

    return _add


@pytest.fixture
def make_family(db, add_item):
    """Parent + children linked by parent edges. Returns (parent, [children])."""

    def _make(parent_name: str, child_vectors: List[List[float]], parent_embedding=None, **parent_fields):
        parent = add_item(parent_name, parent_embedding, **parent_fields)
        children = []
        for i, vec in enumerate(child_vectors):
            child = add_item(f"{parent_name} child {i}", vec)
            db.add_edge(parent.id, child.id, "parent")
            children.append(child)
        return parent, children

    return _make
