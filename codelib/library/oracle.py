"""
Library oracle — the five LLM judgements the library depends on.

  outline(files, taxonomy)            → organism + direct children (signatures only)
  decompose_children(name, desc, files) → direct children of a sub-organism (full code)
  extract_atoms(molecule, files)      → leaf atoms of a molecule (full code)
  judge(piece, description, candidates) → ordered matches against library items
  create_abstract_parent(a, b)        → generic parent for two variants

Every call goes through LLMService.run_structured(); output is validated by
the *LLM models in codelib.schemas. Failures propagate, the callers decide
what a failed call means (skip a step, skip a piece).
"""

import logging
from typing import List, Optional

from codelib.config import get_settings
from codelib.library import prompts
from codelib.schemas import (
    AbstractParentLLM, AtomLLM, AtomsLLM, DecomposeChildrenLLM, Item, JudgeCandidate,
    JudgeLLM, JudgeMatchLLM, OutlineLLM, Piece, SourceFile, Taxonomy,
)
from codelib.tools.llm_service import LLMService

logger = logging.getLogger(__name__)


class LibraryOracle:
    """Structured-output facade over LLMService for the library pipelines."""

    def __init__(self, llm: Optional[LLMService] = None):
        self.settings = get_settings()
        self.llm = llm or LLMService()

    async def outline(self, files: List[SourceFile], taxonomy: Optional[Taxonomy] = None) -> OutlineLLM:
        lines = self.settings.signature_lines
        result = await self.llm.run_structured(
            prompt=prompts.build_outline_prompt(files, taxonomy or Taxonomy(), lines),
            system_prompt=prompts.OUTLINE_PROMPT,
            output_type=OutlineLLM,
        )
        logger.info(
            f"Outline '{result.organism.name}': {len(result.sub_organisms)} sub-organisms, "
            f"{len(result.molecules)} molecules"
        )
        return result

    async def decompose_children(
        self, name: str, description: str, files: List[SourceFile],
    ) -> DecomposeChildrenLLM:
        result = await self.llm.run_structured(
            prompt=prompts.build_children_prompt(name, description, files),
            system_prompt=prompts.CHILDREN_PROMPT,
            output_type=DecomposeChildrenLLM,
        )
        logger.info(
            f"Children of '{name}': {len(result.sub_organisms)} sub-organisms, "
            f"{len(result.molecules)} molecules"
        )
        return result

    async def extract_atoms(self, molecule_name: str, files: List[SourceFile]) -> List[AtomLLM]:
        result = await self.llm.run_structured(
            prompt=prompts.build_atoms_prompt(molecule_name, files),
            system_prompt=prompts.ATOMS_PROMPT,
            output_type=AtomsLLM,
        )
        logger.info(f"Extracted {len(result.atoms)} atoms from '{molecule_name}'")
        return result.atoms

    async def judge(
        self, piece: Piece, description: str, candidates: List[JudgeCandidate],
    ) -> List[JudgeMatchLLM]:
        """Ordered matches, best first. Empty = nothing in the library truly fits."""
        if not candidates:
            return []
        result = await self.llm.run_structured(
            prompt=prompts.build_judge_prompt(piece, description, candidates),
            system_prompt=prompts.JUDGE_PROMPT,
            output_type=JudgeLLM,
            temperature=0.0,
        )
        return result.matches

    async def create_abstract_parent(self, variant_a: Item, variant_b: Item) -> AbstractParentLLM:
        return await self.llm.run_structured(
            prompt=prompts.build_parent_creator_prompt(
                variant_a.name, variant_a.code, variant_a.description,
                variant_b.name, variant_b.code, variant_b.description,
            ),
            system_prompt=prompts.PARENT_CREATOR_PROMPT,
            output_type=AbstractParentLLM,
        )
