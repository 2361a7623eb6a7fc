"""
Resolution cascade — reuse, create or link ONE candidate piece.

THE PROBLEM THIS SOLVES:
Submissions stream in with no human curation. Every piece (sub-organism,
molecule, atom) must either land on an existing library item or become a new
one, and a new one should be wired to what it resembles, all with ONE
synchronous decision per piece.

CASCADE (cheapest first, first hit wins):
  1. AUTO-REUSE  same name (case-insensitive) + same kind + cosine ≥ 0.875
                 → reuse, verdict "clone". No LLM call.
  2. SEARCH      embedding cosine > 0.70, top 15 → structural rerank → top 5,
                 each enriched with its family context (role, parent,
                 siblings, children).
  3. JUDGE       one oracle call; only the FIRST match is acted on:
                   parent_of → reuse the candidate
                   variant   → create + expansion edge (relationship="variant")
                   expansion → create + expansion edge
  4. CREATE      standalone.

EMBEDDING: exactly one Embed("<name> <description>") per resolve, threaded
through every stage. A failed embedding is "absent": stages 1-2 are skipped
and the item is created without semantic identity.

FAMILY FORMATION: a variant verdict only adds an expansion edge. A real
parent/child family appears later, when the coherence engine splits or
absorbs. The cascade only fires a coherence trigger for the matched item's
family (if it has one).
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from codelib.config import Settings, get_settings
from codelib.database import Database
from codelib.library.clustering import cosine_similarity
from codelib.library.oracle import LibraryOracle
from codelib.library.scoring import rerank_candidates
from codelib.schemas import (
    EdgeType, FamilyRole, Item, ItemKind, ItemRef, JudgeCandidate, JudgeMatchLLM,
    Piece, PieceLevel, ResolveAction, ResolveResult, SimilarCandidate, Verdict,
)
from codelib.tools.embeddings import embed_off_loop

logger = logging.getLogger(__name__)


class ResolutionCascade:
    """Decide reuse / create / link for one piece at a time."""

    def __init__(
        self,
        db: Database,
        embedder,
        oracle: LibraryOracle,
        settings: Optional[Settings] = None,
        on_family_touched: Optional[Callable[[int], None]] = None,
    ):
        self.db = db
        self.embedder = embedder
        self.oracle = oracle
        self.settings = settings or get_settings()
        self.on_family_touched = on_family_touched

    # ── Public API ────────────────────────────────────────────────────

    async def resolve(self, piece: Piece, level: PieceLevel, context: str = "") -> ResolveResult:
        kind = PieceLevel(level).kind
        embedding = await self.embed(piece.embedding_text)

        # Cascade 1: auto-reuse
        if embedding:
            reused_id = self.try_auto_reuse(piece.name, kind, embedding)
            if reused_id is not None:
                return ResolveResult(
                    item_id=reused_id, action=ResolveAction.REUSED,
                    verdict=Verdict.CLONE, matched_item_id=reused_id,
                )

        # Cascade 2: search + rerank + family context
        rich_description = f"{piece.description}. Context: {context}" if context else piece.description
        candidates = self.find_candidates(piece, embedding) if embedding else []

        # Cascade 3: judge
        if candidates:
            matches = await self.oracle.judge(piece, rich_description, candidates)
            best = self._first_match(matches, candidates)
            if best is not None:
                return self._apply_verdict(piece, kind, embedding, best)

        # Cascade 4: no match
        item = self._create(piece, kind, embedding)
        logger.info(f"Created new item {item.id} for '{piece.name}'")
        return ResolveResult(item_id=item.id, action=ResolveAction.CREATED)

    async def embed(self, text: str) -> Optional[List[float]]:
        """One embedding call off the event loop. Any failure → None."""
        return await embed_off_loop(self.embedder, text)

    def try_auto_reuse(self, name: str, kind: ItemKind, embedding: List[float]) -> Optional[int]:
        """Best same-name/same-kind item if its cosine reaches the auto-reuse threshold."""
        best_id, best_sim = None, 0.0
        for item in self.db.find_by_name_kind(name, kind):
            sim = cosine_similarity(embedding, item.embedding)
            if sim > best_sim:
                best_id, best_sim = item.id, sim

        if best_id is not None and best_sim >= self.settings.auto_reuse_threshold:
            logger.info(f"Auto-reuse: '{name}' → item #{best_id} (cosine: {best_sim:.3f})")
            return best_id
        return None

    def find_candidates(self, piece: Piece, embedding: List[float]) -> List[JudgeCandidate]:
        """Embedding search → structural rerank → family enrichment."""
        similar = self.db.search_similar(
            embedding, self.settings.search_threshold, self.settings.search_limit,
        )
        if not similar:
            return []
        top = rerank_candidates(
            piece,
            [SimilarCandidate(item=item, similarity=sim) for item, sim in similar],
            self.settings.rerank_top,
        )
        return self._with_family_context(top)

    # ── Internals ─────────────────────────────────────────────────────

    def _with_family_context(self, top: List[SimilarCandidate]) -> List[JudgeCandidate]:
        parents: Dict[int, Optional[int]] = {}
        children: Dict[int, List[int]] = {}
        siblings: Dict[int, List[int]] = {}
        for c in top:
            item_id = c.item.id
            parents[item_id] = self.db.parent_id_of(item_id)
            children[item_id] = self.db.child_ids(item_id)
            parent_id = parents[item_id]
            siblings[item_id] = (
                [s for s in self.db.child_ids(parent_id) if s != item_id]
                if parent_id is not None else []
            )

        related = set()
        for item_id in parents:
            if parents[item_id] is not None:
                related.add(parents[item_id])
            related.update(children[item_id])
            related.update(siblings[item_id])
        names = {item.id: item.name for item in self.db.get_items(sorted(related))}
        names.update({c.item.id: c.item.name for c in top})

        def ref(i: int) -> ItemRef:
            return ItemRef(id=i, name=names.get(i, f"#{i}"))

        enriched = []
        for c in top:
            item_id = c.item.id
            parent_id = parents[item_id]
            if parent_id is not None:
                role = FamilyRole.CHILD
            elif children[item_id]:
                role = FamilyRole.PARENT
            else:
                role = FamilyRole.STANDALONE
            enriched.append(JudgeCandidate(
                id=item_id,
                name=c.item.name,
                code=c.item.code or "",
                description=c.item.description,
                similarity=c.similarity,
                combined_score=c.combined_score,
                role=role,
                parent=ref(parent_id) if parent_id is not None else None,
                siblings=[ref(s) for s in siblings[item_id]],
                children=[ref(ch) for ch in children[item_id]],
            ))
        return enriched

    @staticmethod
    def _first_match(
        matches: List[JudgeMatchLLM], candidates: List[JudgeCandidate],
    ) -> Optional[JudgeMatchLLM]:
        """The judge's first match, or None if it names an id that was never offered."""
        if not matches:
            return None
        best = matches[0]
        if best.candidate_id not in {c.id for c in candidates}:
            logger.warning(f"Judge returned unknown candidate id {best.candidate_id}, ignoring")
            return None
        return best

    def _apply_verdict(
        self, piece: Piece, kind: ItemKind, embedding: Optional[List[float]], best: JudgeMatchLLM,
    ) -> ResolveResult:
        verdict = best.verdict.as_verdict()

        if verdict == Verdict.PARENT_OF:
            # The existing item already covers this piece
            logger.info(
                f"Reusing item {best.candidate_id} for '{piece.name}' "
                f"(parent_of, confidence: {best.confidence})"
            )
            return ResolveResult(
                item_id=best.candidate_id, action=ResolveAction.REUSED,
                verdict=verdict, matched_item_id=best.candidate_id,
            )

        if verdict in (Verdict.VARIANT, Verdict.EXPANSION):
            item = self._create(piece, kind, embedding)
            metadata = {
                "title": piece.name,
                "description": piece.description,
                "sourceName": piece.name,
                "createdAt": datetime.now(timezone.utc).isoformat(),
                "confidence": best.confidence,
                "reasoning": best.reasoning,
            }
            if verdict == Verdict.VARIANT:
                metadata["relationship"] = "variant"
            self.db.add_edge(item.id, best.candidate_id, EdgeType.EXPANSION, metadata)
            logger.info(
                f"Created item {item.id} as {verdict.value} of {best.candidate_id} for '{piece.name}'"
            )
            self._touch_family(best.candidate_id)
            return ResolveResult(
                item_id=item.id, action=ResolveAction.CREATED,
                verdict=verdict, matched_item_id=best.candidate_id,
            )

        raise ValueError(f"Unhandled judge verdict: {verdict}")

    def _create(self, piece: Piece, kind: ItemKind, embedding: Optional[List[float]]) -> Item:
        """Persist the item first, then its embedding (embedding failure is not fatal)."""
        item = self.db.create_item(
            kind,
            piece.name,
            piece.description,
            piece.code or None,
            category_id=piece.category_id,
            type=piece.type,
            domain=piece.domain,
            stack=piece.stack,
            language=piece.language,
            libraries=piece.libraries,
            tags=piece.tags,
        )
        if embedding:
            try:
                self.db.set_embedding(item.id, embedding)
                item = item.model_copy(update={"embedding": embedding})
            except Exception as e:
                logger.error(f"Embedding store failed for '{piece.name}': {e}")
        return item

    def _touch_family(self, matched_id: int) -> None:
        """Fire a coherence trigger for the family the matched item belongs to."""
        if self.on_family_touched is None:
            return
        parent_id = self.db.parent_id_of(matched_id)
        if parent_id is None and self.db.child_ids(matched_id):
            parent_id = matched_id
        if parent_id is not None:
            self.on_family_touched(parent_id)
