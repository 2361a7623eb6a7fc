"""
Coherence engine — keeps library families semantically tight.

THE PROBLEM THIS SOLVES:
  Items stream in one at a time and each insertion only sees its immediate
  neighbors. Over time families drift: a parent collects children that are
  really two concepts, two families grow around the same concept, and
  standalone items that belong to a family sit next to it unattached.

WHAT THIS MODULE DOES (per trigger, for ONE family parent):
  0. CENTROID: recompute the parent's centroid from its children (no drift).
  1. SPLIT:  avg pairwise < 0.72 with ≥ 3 children → k-means bisect; if both
             halves reach 0.78 cohesion, the minority half moves under a new
             abstract sub-parent generated by the oracle.
  2. MERGE:  another family whose centroid AND children cross-similarity
             exceed 0.85 → smaller family folds into the larger one.
  3. ABSORB: standalone items close to the centroid (> 0.82) and to the
             children on average (≥ 0.82) join the family.
  4. PRUNE:  an abstract parent left with 0 children is deleted; with 1 child
             it is dissolved (the child becomes standalone).

BOUNDS:
  - Budget: at most `coherence_budget` (2) corrective operations per check.
    Prune is free.
  - Cooldown: a family checked within the last 5 minutes is skipped. This is
    the only concurrency control; every step re-reads the family from
    storage, so a rare double run self-corrects instead of corrupting.
  - Each step is its own error boundary: a failed split never blocks prune.

Checks run detached from the request that triggered them (CoherenceScheduler).
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set, Tuple

import numpy as np

from codelib.config import Settings, get_settings
from codelib.database import Database, utcnow
from codelib.library.clustering import (
    average_pairwise_similarity, compute_centroid, cosine_similarity,
    cross_similarity, k_means_bisect,
)
from codelib.library.oracle import LibraryOracle
from codelib.schemas import CoherenceOperation, CoherenceReport, EdgeType, Family
from codelib.tools.embeddings import embed_off_loop

logger = logging.getLogger(__name__)


def _as_naive_utc(when: Optional[datetime]) -> datetime:
    if when is None:
        return utcnow()
    if when.tzinfo is not None:
        return when.astimezone(timezone.utc).replace(tzinfo=None)
    return when


class CoherenceEngine:
    """Bounded graph surgery on one family at a time."""

    def __init__(
        self,
        db: Database,
        embedder,
        oracle: LibraryOracle,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.embedder = embedder
        self.oracle = oracle
        self.settings = settings or get_settings()

    # ── Main entry point ──────────────────────────────────────────────

    async def coherence_check(
        self,
        parent_id: int,
        now: Optional[datetime] = None,
        ignore_cooldown: bool = False,
    ) -> CoherenceReport:
        """Run one coherence pass on the family rooted at parent_id."""
        now = _as_naive_utc(now)
        s = self.settings
        budget = s.coherence_budget
        report = CoherenceReport(parent_id=parent_id, budget_remaining=budget)

        family = self.db.get_family(parent_id)
        if family is None:
            report.skipped = "not_found"
            return report
        if not family.children:
            report.skipped = "not_a_parent"
            return report

        last = family.parent.last_coherence_check
        if not ignore_cooldown and last is not None:
            if now - last < timedelta(seconds=s.coherence_cooldown_seconds):
                logger.debug(f"Family {parent_id} checked at {last}, cooling down")
                report.skipped = "cooldown"
                return report

        # Step 0: recompute centroid from scratch
        try:
            self._recompute_centroid(parent_id)
            report.avg_similarity = average_pairwise_similarity(
                self.db.get_family(parent_id).child_embeddings
            )
        except Exception as e:
            logger.error(f"Centroid refresh failed for family {parent_id}: {e}")

        # Step 1: SPLIT if the family is too diverse
        if budget > 0:
            try:
                new_parent_id = await self._check_split(parent_id)
                if new_parent_id is not None:
                    budget -= 1
                    report.operations.append(CoherenceOperation.SPLIT)
                    report.created_parent_ids.append(new_parent_id)
            except Exception as e:
                logger.error(f"Split step failed for family {parent_id}: {e}")

        # Step 2: MERGE with a near-duplicate family
        if budget > 0:
            try:
                merged = self._check_merge(parent_id)
                if merged is not None:
                    budget -= 1
                    report.operations.append(CoherenceOperation.MERGE)
                    report.merged_parent_id = merged[1]
            except Exception as e:
                logger.error(f"Merge step failed for family {parent_id}: {e}")

        # Step 3: ABSORB nearby standalones
        if budget > 0:
            try:
                absorbed = self._check_absorb(parent_id)
                if absorbed:
                    budget -= 1
                    report.operations.append(CoherenceOperation.ABSORB)
                    report.absorbed_ids.extend(absorbed)
            except Exception as e:
                logger.error(f"Absorb step failed for family {parent_id}: {e}")

        # Step 4: PRUNE (budget-independent)
        try:
            pruned = self._prune(parent_id)
            if pruned is not None:
                report.operations.append(pruned)
                report.pruned = True
        except Exception as e:
            logger.error(f"Prune step failed for family {parent_id}: {e}")

        # Cooldown stamp (the parent may have been merged away or pruned)
        try:
            if self.db.get_item(parent_id) is not None:
                self.db.stamp_coherence_check(parent_id, now)
                report.checked_at = now
        except Exception as e:
            logger.error(f"Cooldown stamp failed for family {parent_id}: {e}")

        report.budget_remaining = budget
        if report.changed:
            logger.info(
                f"Coherence family {parent_id}: "
                f"{', '.join(op.value for op in report.operations)} (budget left {budget})"
            )
        return report

    # ── Centroid ──────────────────────────────────────────────────────

    def _recompute_centroid(self, parent_id: int) -> List[float]:
        """Centroid = normalized mean of the direct children's embeddings, persisted."""
        family = self.db.get_family(parent_id)
        if family is None:
            return []
        centroid = compute_centroid(family.child_embeddings)
        self.db.set_centroid(parent_id, centroid or None)
        return centroid

    # ── SPLIT ─────────────────────────────────────────────────────────

    async def _check_split(self, parent_id: int) -> Optional[int]:
        family = self.db.get_family(parent_id)
        if family is None:
            return None
        members = family.embedded_children
        if len(members) < self.settings.min_split_size:
            return None
        avg = average_pairwise_similarity([m.embedding for m in members])
        if avg >= self.settings.split_threshold:
            return None
        return await self._split(family)

    async def _split(self, family: Family) -> Optional[int]:
        """Bisect the family; returns the new sub-parent id, or None if rejected."""
        s = self.settings
        root_id = family.parent.id
        bisect = k_means_bisect(family.embedded_children)

        if len(bisect.group_a) < 2 or len(bisect.group_b) < 2:
            logger.debug(
                f"Split rejected for family {root_id}: halves "
                f"{len(bisect.group_a)}/{len(bisect.group_b)}"
            )
            return None

        sim_a = average_pairwise_similarity([m.embedding for m in bisect.group_a])
        sim_b = average_pairwise_similarity([m.embedding for m in bisect.group_b])
        if sim_a < s.split_min_cohesion or sim_b < s.split_min_cohesion:
            logger.debug(
                f"Split rejected for family {root_id}: cohesion {sim_a:.3f}/{sim_b:.3f} "
                f"< {s.split_min_cohesion}"
            )
            return None

        minority = bisect.minority
        parent_data = await self.oracle.create_abstract_parent(minority[0], minority[1])
        embedding = await embed_off_loop(self.embedder, parent_data.embedding_text)

        sub_parent = self.db.create_item(
            minority[0].kind,
            parent_data.name,
            parent_data.description,
            parent_data.code or None,
            type=parent_data.type,
            domain=parent_data.domain,
            stack=parent_data.stack,
            language=parent_data.language,
            libraries=parent_data.libraries or None,
            tags=parent_data.tags or None,
            use_cases=parent_data.use_cases or None,
            embedding=embedding,
            centroid_embedding=compute_centroid([m.embedding for m in minority]),
            is_abstract=True,
        )
        try:
            self.db.split_family(root_id, sub_parent.id, [m.id for m in minority])
        except Exception:
            # Never leave a childless abstract parent behind
            self.db.delete_item(sub_parent.id)
            raise

        self._recompute_centroid(root_id)
        logger.info(
            f"Split family {root_id}: created sub-parent {sub_parent.id} "
            f"'{sub_parent.name}' with {len(minority)} children"
        )
        return sub_parent.id

    # ── MERGE ─────────────────────────────────────────────────────────

    def _check_merge(self, parent_id: int) -> Optional[Tuple[int, int]]:
        """Fold the first qualifying neighbor family. Returns (keeper_id, absorbed_id)."""
        s = self.settings
        family = self.db.get_family(parent_id)
        if family is None or not family.parent.centroid_embedding:
            return None

        excluded: Set[int] = {parent_id, *(c.id for c in family.children)}
        own_parent = self.db.parent_id_of(parent_id)
        if own_parent is not None:
            excluded.add(own_parent)

        neighbors = self.db.find_family_parents_near(
            family.parent.centroid_embedding, s.merge_threshold,
            s.merge_candidate_limit, exclude_ids=excluded,
        )
        for neighbor, _ in neighbors:
            mine = self.db.get_family(parent_id)
            theirs = self.db.get_family(neighbor.id)
            if mine is None or theirs is None or not theirs.children:
                continue

            cross = cross_similarity(mine.child_embeddings, theirs.child_embeddings)
            if cross <= s.merge_threshold:
                logger.debug(f"Merge {parent_id}↔{neighbor.id} rejected: cross {cross:.3f}")
                continue

            keeper, absorbed = (
                (mine, theirs) if len(mine.children) >= len(theirs.children) else (theirs, mine)
            )
            former_parent_id = self.db.parent_id_of(absorbed.parent.id)
            self.db.merge_families(keeper.parent.id, absorbed.parent.id)
            self._recompute_centroid(keeper.parent.id)
            if self.db.get_item(absorbed.parent.id) is not None:
                # Demoted to a plain child, no longer a family parent
                self.db.set_centroid(absorbed.parent.id, None)
            elif former_parent_id is not None and former_parent_id != keeper.parent.id:
                # The deleted abstract parent left a gap in its own parent
                self._recompute_centroid(former_parent_id)
                self._prune_ancestors(former_parent_id)

            logger.info(
                f"Merged family {absorbed.parent.id} into {keeper.parent.id} "
                f"(cross {cross:.3f}, {len(absorbed.children)} children moved)"
            )
            return keeper.parent.id, absorbed.parent.id
        return None

    # ── ABSORB ────────────────────────────────────────────────────────

    def _check_absorb(self, parent_id: int) -> List[int]:
        s = self.settings
        family = self.db.get_family(parent_id)
        if family is None or not family.parent.centroid_embedding:
            return []
        child_embeddings = family.child_embeddings
        if not child_embeddings:
            return []

        nearby = self.db.find_standalones_near(
            family.parent.centroid_embedding, s.variant_threshold,
            s.absorb_candidate_limit, exclude_ids={parent_id},
        )

        absorbed: List[int] = []
        for standalone, _ in nearby:
            avg_to_family = float(np.mean([
                cosine_similarity(standalone.embedding, e) for e in child_embeddings
            ]))
            if avg_to_family < s.variant_threshold:
                continue
            edge = self.db.add_edge_if_absent(parent_id, standalone.id, EdgeType.PARENT)
            if edge is not None and edge.source_id == parent_id:
                absorbed.append(standalone.id)
                logger.info(
                    f"Absorbed standalone {standalone.id} into family {parent_id} "
                    f"(avg {avg_to_family:.3f})"
                )

        if absorbed:
            self._recompute_centroid(parent_id)
        return absorbed

    # ── PRUNE ─────────────────────────────────────────────────────────

    def _prune(self, parent_id: int) -> Optional[CoherenceOperation]:
        """Remove an abstract parent with 0-1 children, then re-check its ancestors."""
        operation, grandparent_id = self._prune_one(parent_id)
        if operation is not None and grandparent_id is not None:
            self._prune_ancestors(grandparent_id)
        return operation

    def _prune_ancestors(self, item_id: Optional[int]) -> List[int]:
        """Walk up from item_id while each abstract ancestor is left with 0-1 children."""
        removed: List[int] = []
        while item_id is not None:
            operation, grandparent_id = self._prune_one(item_id)
            if operation is None:
                break
            removed.append(item_id)
            item_id = grandparent_id
        return removed

    def _prune_one(self, parent_id: int) -> Tuple[Optional[CoherenceOperation], Optional[int]]:
        """Concrete parents are kept. Returns (operation, former grandparent id)."""
        parent = self.db.get_item(parent_id)
        if parent is None or not parent.is_abstract:
            return None, None

        children = self.db.child_ids(parent_id)
        if len(children) > 1:
            return None, None

        grandparent_id = self.db.parent_id_of(parent_id)
        if len(children) == 1:
            # The lone child becomes standalone
            self.db.remove_edge(parent_id, children[0], EdgeType.PARENT)
            operation = CoherenceOperation.DISSOLVE
        else:
            operation = CoherenceOperation.PRUNE

        self.db.delete_item(parent_id)
        if grandparent_id is not None:
            self._recompute_centroid(grandparent_id)

        logger.info(f"Pruned abstract parent {parent_id} (had {len(children)} children)")
        return operation, grandparent_id


class CoherenceScheduler:
    """
    Fire-and-forget coherence triggers.

    schedule() spawns a detached task and returns immediately; the task has
    its own error boundary. Tasks are tracked so drain() can await them at
    shutdown (and in tests).
    """

    def __init__(self, engine: CoherenceEngine):
        self.engine = engine
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, parent_id: int) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, coherence trigger for {parent_id} dropped")
            return None

        task = loop.create_task(self._run(parent_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, parent_id: int) -> Optional[CoherenceReport]:
        try:
            return await self.engine.coherence_check(parent_id)
        except Exception as e:
            logger.error(f"Async coherence check failed for item {parent_id}: {e}")
            return None

    async def drain(self) -> None:
        """Await every in-flight check (including ones scheduled while draining)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
