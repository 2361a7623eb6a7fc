"""
Hierarchy pipeline — top-down decomposition fused with resolution.

Each step:
  1. RESOLVE the current piece (auto-reuse → search → judge → create)
  2. Record a belongs_to edge piece → immediate container
  3. If CREATED: decompose it (one oracle call) and queue its children
  4. If REUSED: stop — the library already holds that subtree

Flow:
  outline(files) → organism + direct children (sub-organisms / molecules)
  sub-organism: resolve → decompose_children → children queued
  molecule:     resolve → extract_atoms → atoms queued as leaves
  orphan files → decompose_children → same treatment

The tree is discovered incrementally (children are unknown until the oracle
answers), so it is walked with an explicit depth-first worklist instead of
recursion. Siblings run strictly in declared order: a later sibling may need
to see a node an earlier sibling just created.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from codelib.config import Settings, get_settings
from codelib.database import Database, ItemNotFoundError
from codelib.library.oracle import LibraryOracle
from codelib.library.resolution import ResolutionCascade
from codelib.schemas import (
    DecomposeChildrenLLM, EdgeRecord, EdgeType, HierarchyResult, Item, OutlineLLM,
    OutlinePieceLLM, Piece, PieceLevel, PieceRecord, ResolveAction, SourceFile,
)

logger = logging.getLogger(__name__)

ORPHAN_DESCRIPTION = "Unassigned files from the organism"


@dataclass
class WorkItem:
    """One queued piece: what to resolve and where it hangs."""
    piece: Piece
    level: PieceLevel
    parent_id: int
    parent_name: str
    source_files: List[SourceFile] = field(default_factory=list)

    @property
    def context(self) -> str:
        return f'{self.level.label} of "{self.parent_name}"'

    @property
    def own_files(self) -> List[SourceFile]:
        return [f for f in self.source_files if f.name in self.piece.files]


class HierarchyPipeline:
    """Walk a submission top-down, resolving every piece against the library."""

    def __init__(
        self,
        db: Database,
        cascade: ResolutionCascade,
        oracle: LibraryOracle,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.cascade = cascade
        self.oracle = oracle
        self.settings = settings or get_settings()

    # ── Entry points ──────────────────────────────────────────────────

    async def run(
        self,
        root_id: int,
        outline: OutlineLLM,
        source_files: List[SourceFile],
    ) -> HierarchyResult:
        """Decompose an already-outlined submission under the root item."""
        result = HierarchyResult()
        if not source_files:
            return result

        organism = outline.organism
        inherited = {"stack": organism.stack, "language": organism.language}

        worklist: List[WorkItem] = []
        self._queue_children(worklist, outline, organism.name, root_id, source_files, inherited)
        await self._drain(worklist, result, inherited)

        orphans = [f for f in source_files if f.name not in outline.claimed_files]
        if orphans:
            logger.info(f"{len(orphans)} orphan file(s), classifying...")
            try:
                orphan_children = await self.oracle.decompose_children(
                    organism.name, ORPHAN_DESCRIPTION, orphans,
                )
            except Exception as e:
                logger.error(f"Orphan classification failed: {e}")
            else:
                self._queue_children(worklist, orphan_children, organism.name, root_id, orphans, inherited)
                await self._drain(worklist, result, inherited)

        logger.info(
            f"Hierarchy for item {root_id}: {len(result.items)} pieces "
            f"({sum(1 for r in result.items if r.action == ResolveAction.CREATED)} created), "
            f"{len(result.edges)} edges"
        )
        return result

    async def decompose_item(self, item_id: int) -> HierarchyResult:
        """Outline an existing item's files and run the pipeline under it."""
        item = self.db.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found")

        files = self.load_source_files(item)
        if not files:
            return HierarchyResult()

        outline = await self.oracle.outline(files, self.db.get_taxonomy())
        return await self.run(item_id, outline, files)

    def load_source_files(self, item: Item) -> List[SourceFile]:
        """Stored files in order; a snippet falls back to one file built from its code."""
        files = self.db.get_item_files(item.id)
        if not files and item.code:
            files = [SourceFile(
                name=item.entry_file or item.name,
                code=item.code,
                language=item.language,
            )]
        return files

    # ── Worklist ──────────────────────────────────────────────────────

    def _queue_children(
        self,
        worklist: List[WorkItem],
        children: DecomposeChildrenLLM,
        parent_name: str,
        parent_id: int,
        source_files: List[SourceFile],
        inherited: Dict[str, Any],
    ) -> None:
        """Push children so they pop in declared order (sub-organisms first)."""
        declared = [(p, PieceLevel.SUB_ORGANISM) for p in children.sub_organisms]
        declared += [(p, PieceLevel.MOLECULE) for p in children.molecules]
        for outline_piece, level in reversed(declared):
            worklist.append(WorkItem(
                piece=self._to_piece(outline_piece, parent_name, inherited),
                level=level,
                parent_id=parent_id,
                parent_name=parent_name,
                source_files=source_files,
            ))

    @staticmethod
    def _to_piece(outline_piece: OutlinePieceLLM, parent_name: str, inherited: Dict[str, Any]) -> Piece:
        return Piece(
            name=outline_piece.name,
            description=outline_piece.description,
            is_demoable=outline_piece.is_demoable,
            files=list(outline_piece.files),
            parent=parent_name,
            **inherited,
        )

    async def _drain(self, worklist: List[WorkItem], result: HierarchyResult, inherited: Dict[str, Any]) -> None:
        while worklist:
            work = worklist.pop()
            try:
                await self._process(work, worklist, result, inherited)
            except Exception as e:
                logger.error(f"Failed {work.level.value} '{work.piece.name}': {e}")

    async def _process(
        self,
        work: WorkItem,
        worklist: List[WorkItem],
        result: HierarchyResult,
        inherited: Dict[str, Any],
    ) -> None:
        resolved = await self.cascade.resolve(work.piece, work.level, work.context)

        self._record_belongs_to(resolved.item_id, work.parent_id, work.level, result)
        result.items.append(PieceRecord(
            name=work.piece.name,
            item_id=resolved.item_id,
            level=work.level,
            action=resolved.action,
            make_demo=work.piece.is_demoable,
            verdict=resolved.verdict,
            matched_item_id=resolved.matched_item_id,
            code=work.piece.code if work.level == PieceLevel.ATOM else None,
            files=list(work.piece.files),
        ))

        # Reused subtrees already exist; atoms are leaves
        if not resolved.created or work.level == PieceLevel.ATOM:
            return

        files = work.own_files
        if not files:
            return

        if work.level == PieceLevel.SUB_ORGANISM:
            children = await self.oracle.decompose_children(work.piece.name, work.piece.description, files)
            self._queue_children(worklist, children, work.piece.name, resolved.item_id, files, inherited)

        elif work.level == PieceLevel.MOLECULE:
            atoms = await self.oracle.extract_atoms(work.piece.name, files)
            for atom in reversed(atoms):
                worklist.append(WorkItem(
                    piece=Piece(
                        name=atom.name,
                        description=atom.description,
                        code=atom.code,
                        is_demoable=atom.is_demoable,
                        parent=work.piece.name,
                        **inherited,
                    ),
                    level=PieceLevel.ATOM,
                    parent_id=resolved.item_id,
                    parent_name=work.piece.name,
                ))

    def _record_belongs_to(self, child_id: int, parent_id: int, level: PieceLevel, result: HierarchyResult) -> None:
        if child_id == parent_id:
            logger.warning(f"Skipping belongs_to self-loop on item {child_id}")
            return
        if self.db.get_edges(source_id=child_id, target_id=parent_id, type=EdgeType.BELONGS_TO):
            logger.debug(f"Item {child_id} already belongs to {parent_id}")
            return
        edge = self.db.add_edge_if_absent(child_id, parent_id, EdgeType.BELONGS_TO, {"level": level.value})
        if edge is not None:
            result.edges.append(EdgeRecord(source_id=child_id, target_id=parent_id, type=EdgeType.BELONGS_TO))
