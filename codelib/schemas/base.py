"""
Common enums used across the library graph.

They define the vocabulary of the system: what an item is, how two items
relate, what the judge may conclude, and where a piece sits in a
decomposition tree.
"""

from enum import Enum


class ItemKind(str, Enum):
    """Kind of library item."""
    SNIPPET = "snippet"
    COMPONENT = "component"
    COLLECTION = "collection"


class EdgeType(str, Enum):
    """
    Edge types. Three kinds coexist over the same nodes:

    parent      family tree (parent → child). A child has AT MOST one parent.
    expansion   many-to-many "extends the functionality of" links.
    belongs_to  decomposition tree (piece → container).
    """
    PARENT = "parent"
    EXPANSION = "expansion"
    BELONGS_TO = "belongs_to"


class Verdict(str, Enum):
    """Judge verdicts. CLONE is set by auto-reuse, never by the judge."""
    CLONE = "clone"
    VARIANT = "variant"
    PARENT_OF = "parent_of"
    EXPANSION = "expansion"


class JudgeVerdict(str, Enum):
    """Closed set of conclusions the judge may return."""
    VARIANT = "variant"
    PARENT_OF = "parent_of"
    EXPANSION = "expansion"

    def as_verdict(self) -> Verdict:
        return Verdict(self.value)


class FamilyRole(str, Enum):
    """Position of a candidate in the family tree, shown to the judge."""
    PARENT = "PARENT"
    CHILD = "CHILD"
    STANDALONE = "STANDALONE"


class ResolveAction(str, Enum):
    CREATED = "created"
    REUSED = "reused"


class PieceLevel(str, Enum):
    """
    Decomposition levels, largest → smallest.

    ORGANISM      the whole submission (crosses domain boundaries)
    SUB_ORGANISM  a nested organism with its own state / lifecycle
    MOLECULE      multi-file unit serving one purpose
    ATOM          single-responsibility unit (leaf)
    """
    ORGANISM = "organism"
    SUB_ORGANISM = "sub_organism"
    MOLECULE = "molecule"
    ATOM = "atom"

    @property
    def kind(self) -> ItemKind:
        """Item kind a piece at this level is stored as."""
        return _LEVEL_KIND.get(self, ItemKind.COMPONENT)

    @property
    def label(self) -> str:
        return self.value.replace("_", "-").capitalize()


_LEVEL_KIND = {
    PieceLevel.SUB_ORGANISM: ItemKind.COLLECTION,
    PieceLevel.MOLECULE: ItemKind.COMPONENT,
    PieceLevel.ATOM: ItemKind.SNIPPET,
}


class CoherenceOperation(str, Enum):
    """Graph surgery performed by a coherence check."""
    SPLIT = "split"
    MERGE = "merge"
    ABSORB = "absorb"
    PRUNE = "prune"
    DISSOLVE = "dissolve"
