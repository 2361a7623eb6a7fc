"""
Coherence engine tests.

Key invariants tested:
1. After a check the parent's centroid is the normalized mean of its children
2. A split happens only when BOTH halves are cohesive (≥ 0.78) and ≥ 2 strong
3. No abstract parent survives with 0 or 1 children
4. Budget: at most 2 corrective operations per check
5. Cooldown: a family checked in the last 5 minutes is skipped
6. A second check on a stable family changes nothing (idempotence)
"""

import asyncio
import math
from datetime import datetime, timedelta

import pytest

from codelib.library.clustering import compute_centroid
from codelib.library.coherence import CoherenceEngine, CoherenceScheduler
from codelib.library.resolution import ResolutionCascade
from codelib.schemas import (
    AbstractParentLLM, CoherenceOperation, EdgeType, JudgeMatchLLM, JudgeVerdict, Piece, PieceLevel,
)
from conftest import blend, unit

NOW = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
def engine(db, embedder, oracle, settings):
    return CoherenceEngine(db, embedder, oracle, settings)


def two_clusters():
    """Four children: two tight pairs on orthogonal axes (avg pairwise ≈ 0.30)."""
    return [blend(0, 2, 0.95), blend(0, 3, 0.95), blend(1, 4, 0.95), blend(1, 5, 0.95)]


def abstract_items(db):
    return [i for i in db.list_items() if i.is_abstract]


def lean(direction, axis, cos):
    """Unit vector at cosine `cos` from a unit `direction`, tilted toward an orthogonal axis."""
    vec = [cos * x for x in direction]
    vec[axis] += math.sqrt(1.0 - cos * cos)
    return vec


def two_loose_pairs():
    """Two pairs sharing axis 0: within-pair cosine 0.75, across pairs 0.65 (avg ≈ 0.68)."""
    a, b, c = math.sqrt(0.70), math.sqrt(0.05), math.sqrt(0.25)
    vectors = []
    for sign, extras in ((1, (2, 3)), (-1, (4, 5))):
        for extra in extras:
            vec = [0.0] * len(unit(0))
            vec[0], vec[1], vec[extra] = a, sign * b, c
            vectors.append(vec)
    return vectors


class TestSkips:

    async def test_unknown_parent(self, engine):
        report = await engine.coherence_check(999, now=NOW)
        assert report.skipped == "not_found"
        assert not report.changed

    async def test_standalone_is_not_a_parent(self, engine, add_item):
        item = add_item("loner", unit(0))
        report = await engine.coherence_check(item.id, now=NOW)
        assert report.skipped == "not_a_parent"

    async def test_abstract_parent_without_children_is_left_alone(self, engine, db, add_item):
        item = add_item("empty abstract", unit(0), is_abstract=True)
        report = await engine.coherence_check(item.id, now=NOW)
        assert report.skipped == "not_a_parent"
        assert db.get_item(item.id) is not None

    async def test_cooldown(self, engine, make_family):
        parent, _ = make_family("fam", [blend(0, 2, 0.95), blend(0, 3, 0.95)])

        first = await engine.coherence_check(parent.id, now=NOW)
        second = await engine.coherence_check(parent.id, now=NOW + timedelta(seconds=120))
        later = await engine.coherence_check(parent.id, now=NOW + timedelta(seconds=301))

        assert first.skipped is None
        assert second.skipped == "cooldown"
        assert later.skipped is None

    async def test_ignore_cooldown(self, engine, make_family):
        parent, _ = make_family("fam", [blend(0, 2, 0.95), blend(0, 3, 0.95)])
        await engine.coherence_check(parent.id, now=NOW)
        report = await engine.coherence_check(parent.id, now=NOW, ignore_cooldown=True)
        assert report.skipped is None

    async def test_check_is_stamped(self, engine, db, make_family):
        parent, _ = make_family("fam", [blend(0, 2, 0.95), blend(0, 3, 0.95)])
        report = await engine.coherence_check(parent.id, now=NOW)
        assert report.checked_at == NOW
        assert db.get_item(parent.id).last_coherence_check == NOW


class TestCentroid:

    async def test_centroid_is_mean_of_children(self, engine, db, make_family):
        vectors = [blend(0, 2, 0.95), blend(0, 3, 0.9), blend(0, 4, 0.92)]
        parent, _ = make_family("fam", vectors, parent_embedding=unit(7))
        db.set_centroid(parent.id, unit(6))

        report = await engine.coherence_check(parent.id, now=NOW)

        assert db.get_item(parent.id).centroid_embedding == pytest.approx(compute_centroid(vectors))
        assert report.avg_similarity == pytest.approx((0.95 * 0.9 + 0.95 * 0.92 + 0.9 * 0.92) / 3)

    async def test_children_without_embedding_are_ignored(self, engine, db, make_family):
        parent, _ = make_family("fam", [unit(0), None])
        await engine.coherence_check(parent.id, now=NOW)
        assert db.get_item(parent.id).centroid_embedding == pytest.approx(unit(0))


class TestSplit:

    async def test_split_into_abstract_sub_parent(self, engine, db, oracle, make_family):
        root, children = make_family("UI Kit", two_clusters())

        report = await engine.coherence_check(root.id, now=NOW)

        assert report.operations == [CoherenceOperation.SPLIT]
        assert report.budget_remaining == 1
        sub_id = report.created_parent_ids[0]
        sub = db.get_item(sub_id)

        assert sub.is_abstract is True
        assert sub.name == f"Abstract {children[2].name}"
        assert db.child_ids(sub_id) == [children[2].id, children[3].id]
        assert db.child_ids(root.id) == [children[0].id, children[1].id, sub_id]
        assert db.parent_id_of(sub_id) == root.id
        assert oracle.called("create_abstract_parent") == [
            ("create_abstract_parent", children[2].id, children[3].id)
        ]

    async def test_split_updates_both_centroids(self, engine, db, make_family):
        vectors = two_clusters()
        root, _ = make_family("UI Kit", vectors)

        report = await engine.coherence_check(root.id, now=NOW)

        sub = db.get_item(report.created_parent_ids[0])
        assert sub.centroid_embedding == pytest.approx(compute_centroid(vectors[2:]))
        # Sub-parent has no embedding of its own, so only the direct halves count
        assert db.get_item(root.id).centroid_embedding == pytest.approx(compute_centroid(vectors[:2]))

    async def test_sub_parent_is_embedded(self, engine, db, embedder, oracle, make_family):
        oracle.parent_result = AbstractParentLLM(name="Toggle", description="Generic toggle", type="component")
        embedder.vectors["Toggle Generic toggle component"] = unit(1)
        root, _ = make_family("UI Kit", two_clusters())

        report = await engine.coherence_check(root.id, now=NOW)

        sub = db.get_item(report.created_parent_ids[0])
        assert sub.name == "Toggle"
        assert sub.embedding == pytest.approx(unit(1))

    async def test_halves_not_cohesive_rejects_split(self, engine, db, oracle, make_family):
        loose = [blend(0, 2, 0.8), blend(0, 3, 0.8), blend(1, 4, 0.8), blend(1, 5, 0.8)]
        root, children = make_family("UI Kit", loose)

        report = await engine.coherence_check(root.id, now=NOW)

        assert report.operations == []
        assert report.budget_remaining == 2
        assert oracle.called("create_abstract_parent") == []
        assert db.child_ids(root.id) == [c.id for c in children]
        assert abstract_items(db) == []

    async def test_rejected_split_leaves_full_budget_for_merge_and_absorb(
        self, engine, db, oracle, make_family, add_item,
    ):
        vectors = two_loose_pairs()
        root, children = make_family("UI Kit", vectors)
        heading = compute_centroid(vectors)
        neighbor_vectors = [lean(heading, 6, 0.99), lean(heading, 7, 0.99)]
        neighbor, neighbor_children = make_family("Kit", neighbor_vectors, is_abstract=True)
        db.set_centroid(neighbor.id, compute_centroid(neighbor_vectors))
        stray = add_item("stray", lean(heading, 8, 0.99))

        report = await engine.coherence_check(root.id, now=NOW)

        # Halves at 0.75 cohesion: no split, no sub-parent, nothing spent
        assert oracle.called("create_abstract_parent") == []
        assert report.created_parent_ids == []
        # Both remaining units go to merge and absorb
        assert report.operations == [CoherenceOperation.MERGE, CoherenceOperation.ABSORB]
        assert report.budget_remaining == 0
        assert report.merged_parent_id == neighbor.id
        assert report.absorbed_ids == [stray.id]
        assert db.child_ids(root.id) == [c.id for c in children + neighbor_children] + [stray.id]
        assert abstract_items(db) == []

    async def test_singleton_half_rejects_split(self, engine, db, oracle, make_family):
        root, children = make_family("UI Kit", [unit(0), unit(1), unit(2), unit(3)])

        report = await engine.coherence_check(root.id, now=NOW)

        assert CoherenceOperation.SPLIT not in report.operations
        assert oracle.called("create_abstract_parent") == []
        assert db.child_ids(root.id) == [c.id for c in children]

    async def test_cohesive_family_not_split(self, engine, oracle, make_family):
        root, _ = make_family("Timers", [blend(0, 2, 0.95), blend(0, 3, 0.95), blend(0, 4, 0.95)])
        report = await engine.coherence_check(root.id, now=NOW)
        assert report.operations == []

    async def test_small_family_not_split(self, engine, make_family):
        root, _ = make_family("pair", [unit(0), unit(1)])
        report = await engine.coherence_check(root.id, now=NOW)
        assert report.operations == []

    async def test_oracle_failure_skips_split_only(self, engine, db, oracle, make_family):
        oracle.failing.add("create_abstract_parent")
        root, children = make_family("UI Kit", two_clusters())

        report = await engine.coherence_check(root.id, now=NOW)

        assert report.operations == []
        assert report.checked_at == NOW
        assert abstract_items(db) == []
        assert db.child_ids(root.id) == [c.id for c in children]

    async def test_failed_regroup_deletes_new_parent(self, engine, db, make_family, monkeypatch):
        root, children = make_family("UI Kit", two_clusters())

        def conflict(*args, **kwargs):
            raise RuntimeError("regroup failed")

        monkeypatch.setattr(db, "split_family", conflict)
        report = await engine.coherence_check(root.id, now=NOW)

        assert report.operations == []
        assert abstract_items(db) == []
        assert db.child_ids(root.id) == [c.id for c in children]

    async def test_second_check_is_a_no_op(self, engine, db, make_family):
        root, _ = make_family("UI Kit", two_clusters())
        first = await engine.coherence_check(root.id, now=NOW)
        items_after_first = len(db.list_items())

        second = await engine.coherence_check(root.id, now=NOW, ignore_cooldown=True)
        sub_check = await engine.coherence_check(first.created_parent_ids[0], now=NOW)

        assert second.operations == []
        assert sub_check.operations == []
        assert len(db.list_items()) == items_after_first


class TestMerge:

    @staticmethod
    def _family_with_centroid(db, make_family, name, vectors, **fields):
        parent, children = make_family(name, vectors, **fields)
        db.set_centroid(parent.id, compute_centroid(vectors))
        return parent, children

    async def test_smaller_family_folds_into_larger(self, engine, db, make_family):
        big, big_children = make_family("Buttons", [blend(0, 2, 0.97), blend(0, 3, 0.97), blend(0, 4, 0.97)])
        small, small_children = self._family_with_centroid(
            db, make_family, "Btns", [blend(0, 5, 0.97), blend(0, 6, 0.97)], is_abstract=True,
        )

        report = await engine.coherence_check(big.id, now=NOW)

        assert report.operations == [CoherenceOperation.MERGE]
        assert report.merged_parent_id == small.id
        assert db.get_item(small.id) is None
        assert db.child_ids(big.id) == [c.id for c in big_children + small_children]
        all_vectors = [c.embedding for c in big_children + small_children]
        assert db.get_item(big.id).centroid_embedding == pytest.approx(compute_centroid(all_vectors))

    async def test_current_family_folds_into_larger_neighbor(self, engine, db, make_family):
        small, small_children = make_family("Btns", [blend(0, 5, 0.97), blend(0, 6, 0.97)])
        big, big_children = self._family_with_centroid(
            db, make_family, "Buttons", [blend(0, 2, 0.97), blend(0, 3, 0.97), blend(0, 4, 0.97)],
        )

        report = await engine.coherence_check(small.id, now=NOW)

        assert report.operations == [CoherenceOperation.MERGE]
        assert db.child_ids(big.id)[:3] == [c.id for c in big_children]
        assert set(db.child_ids(big.id)) == {c.id for c in big_children + small_children} | {small.id}
        # Concrete parent is demoted to a plain child
        assert db.parent_id_of(small.id) == big.id
        assert db.get_item(small.id).centroid_embedding is None
        # Still exists, so the check is stamped
        assert report.checked_at == NOW

    async def test_distant_family_not_merged(self, engine, db, make_family):
        a, _ = make_family("A", [blend(0, 2, 0.97), blend(0, 3, 0.97)])
        b, _ = self._family_with_centroid(db, make_family, "B", [blend(1, 4, 0.97), blend(1, 5, 0.97)])

        report = await engine.coherence_check(a.id, now=NOW)

        assert report.operations == []
        assert db.get_item(b.id) is not None

    async def test_own_sub_family_never_merged(self, engine, db, make_family, add_item):
        root, _ = make_family("root", [blend(0, 2, 0.97), blend(0, 3, 0.97)])
        sub, _ = self._family_with_centroid(db, make_family, "sub", [blend(0, 4, 0.97), blend(0, 5, 0.97)])
        db.add_edge(root.id, sub.id, EdgeType.PARENT)

        report = await engine.coherence_check(root.id, now=NOW)

        assert CoherenceOperation.MERGE not in report.operations
        assert db.parent_id_of(sub.id) == root.id


class TestAbsorb:

    async def test_absorbs_close_standalone(self, engine, db, make_family, add_item):
        vectors = [blend(0, 2, 0.95), blend(0, 3, 0.95), blend(0, 4, 0.95)]
        parent, _ = make_family("Timers", vectors)
        close = add_item("throttle", blend(0, 5, 0.95))
        # Close to the centroid but below 0.82 on average to the children
        borderline = add_item("interval", blend(0, 6, 0.85))

        report = await engine.coherence_check(parent.id, now=NOW)

        assert report.operations == [CoherenceOperation.ABSORB]
        assert report.absorbed_ids == [close.id]
        assert db.parent_id_of(close.id) == parent.id
        assert db.parent_id_of(borderline.id) is None
        assert db.get_item(parent.id).centroid_embedding == pytest.approx(
            compute_centroid(vectors + [close.embedding])
        )

    async def test_member_of_another_family_not_absorbed(self, engine, db, make_family):
        parent, _ = make_family("Timers", [blend(0, 2, 0.95), blend(0, 3, 0.95), blend(0, 4, 0.95)])
        other, others = make_family("Other", [blend(0, 5, 0.95)], parent_embedding=unit(9))

        report = await engine.coherence_check(parent.id, now=NOW)

        assert report.absorbed_ids == []
        assert db.parent_id_of(others[0].id) == other.id


class TestPrune:

    async def test_single_child_abstract_parent_dissolves(self, engine, db, make_family):
        parent, children = make_family("Abstract", [unit(0)], is_abstract=True)

        report = await engine.coherence_check(parent.id, now=NOW)

        assert report.operations == [CoherenceOperation.DISSOLVE]
        assert report.pruned is True
        assert report.checked_at is None
        assert db.get_item(parent.id) is None
        assert db.parent_id_of(children[0].id) is None
        assert db.get_item(children[0].id) is not None

    async def test_concrete_parent_with_one_child_kept(self, engine, db, make_family):
        parent, children = make_family("Concrete", [unit(0)])
        report = await engine.coherence_check(parent.id, now=NOW)
        assert report.pruned is False
        assert db.child_ids(parent.id) == [children[0].id]

    async def test_abstract_parent_with_two_children_kept(self, engine, db, make_family):
        parent, _ = make_family("Abstract", [blend(0, 2, 0.95), blend(0, 3, 0.95)], is_abstract=True)
        report = await engine.coherence_check(parent.id, now=NOW)
        assert report.pruned is False
        assert db.get_item(parent.id) is not None

    async def test_grandparent_centroid_recomputed(self, engine, db, make_family, add_item):
        root, root_children = make_family("root", [unit(0)])
        sub, _ = make_family("sub", [unit(1)], parent_embedding=unit(1), is_abstract=True)
        db.add_edge(root.id, sub.id, EdgeType.PARENT)
        db.set_centroid(root.id, compute_centroid([unit(0), unit(1)]))

        await engine.coherence_check(sub.id, now=NOW)

        assert db.get_item(sub.id) is None
        assert db.child_ids(root.id) == [root_children[0].id]
        assert db.get_item(root.id).centroid_embedding == pytest.approx(unit(0))

    async def test_dissolve_walks_up_abstract_ancestors(self, engine, db, make_family, add_item):
        top = add_item("Kit")
        group = add_item("Group", unit(0), is_abstract=True)
        sub, sub_children = make_family("Sub", [unit(1)], parent_embedding=unit(1), is_abstract=True)
        sibling = add_item("Sibling", unit(3))
        other = add_item("Other", unit(2))
        db.add_edge(top.id, group.id, EdgeType.PARENT)
        db.add_edge(top.id, other.id, EdgeType.PARENT)
        db.add_edge(group.id, sub.id, EdgeType.PARENT)
        db.add_edge(group.id, sibling.id, EdgeType.PARENT)

        report = await engine.coherence_check(sub.id, now=NOW)

        assert report.operations == [CoherenceOperation.DISSOLVE]
        # Group was left with one child, so it dissolves as well
        assert db.get_item(group.id) is None
        assert db.parent_id_of(sibling.id) is None
        assert db.parent_id_of(sub_children[0].id) is None
        assert abstract_items(db) == []
        # The walk stops at a concrete ancestor
        assert db.child_ids(top.id) == [other.id]
        assert db.get_item(top.id).centroid_embedding == pytest.approx(unit(2))

    async def test_merged_away_parent_leaves_no_lonely_ancestor(self, engine, db, make_family, add_item):
        big, big_children = make_family("Buttons", [blend(0, 2, 0.97), blend(0, 3, 0.97), blend(0, 4, 0.97)])
        small_vectors = [blend(0, 5, 0.97), blend(0, 6, 0.97)]
        small, small_children = make_family("Btns", small_vectors, is_abstract=True)
        db.set_centroid(small.id, compute_centroid(small_vectors))
        group = add_item("Controls", unit(10), is_abstract=True)
        far = add_item("Slider", unit(9))
        db.add_edge(group.id, small.id, EdgeType.PARENT)
        db.add_edge(group.id, far.id, EdgeType.PARENT)

        report = await engine.coherence_check(big.id, now=NOW)

        assert report.operations == [CoherenceOperation.MERGE]
        assert db.get_item(small.id) is None
        assert db.child_ids(big.id) == [c.id for c in big_children + small_children]
        assert db.get_item(group.id) is None
        assert db.parent_id_of(far.id) is None
        assert abstract_items(db) == []


class TestBudget:

    async def test_at_most_two_operations(self, engine, db, make_family, add_item):
        root, _ = make_family("UI Kit", two_clusters())
        neighbor_vectors = [blend(0, 6, 0.97), blend(0, 7, 0.97)]
        neighbor, _ = make_family("Neighbor", neighbor_vectors)
        db.set_centroid(neighbor.id, compute_centroid(neighbor_vectors))
        loner = add_item("loner", blend(0, 8, 0.97))

        report = await engine.coherence_check(root.id, now=NOW)

        assert report.operations == [CoherenceOperation.SPLIT, CoherenceOperation.MERGE]
        assert report.budget_remaining == 0
        assert report.merged_parent_id == neighbor.id
        # Absorb would have taken the loner, but the budget ran out
        assert db.parent_id_of(loner.id) is None


class TestScheduler:

    def test_schedule_without_loop_is_dropped(self, engine):
        scheduler = CoherenceScheduler(engine)
        assert scheduler.schedule(1) is None
        assert scheduler.pending == 0

    async def test_schedule_runs_detached(self, engine, db, make_family):
        parent, _ = make_family("fam", [blend(0, 2, 0.95), blend(0, 3, 0.95)])
        scheduler = CoherenceScheduler(engine)

        task = scheduler.schedule(parent.id)
        assert task is not None
        await scheduler.drain()

        assert scheduler.pending == 0
        assert task.result().parent_id == parent.id
        assert db.get_item(parent.id).last_coherence_check is not None

    async def test_failing_check_is_contained(self, engine, monkeypatch):
        async def boom(parent_id, now=None, ignore_cooldown=False):
            raise RuntimeError("storage down")

        monkeypatch.setattr(engine, "coherence_check", boom)
        scheduler = CoherenceScheduler(engine)

        task = scheduler.schedule(1)
        await scheduler.drain()

        assert task.result() is None

    async def test_variant_triggers_family_check(self, db, embedder, oracle, settings, make_family):
        engine = CoherenceEngine(db, embedder, oracle, settings)
        scheduler = CoherenceScheduler(engine)
        cascade = ResolutionCascade(db, embedder, oracle, settings, on_family_touched=scheduler.schedule)
        parent, children = make_family("Timers", [blend(0, 2, 0.95), blend(0, 3, 0.95)])
        piece = Piece(name="debounce", description="Delay calls")
        embedder.vectors[piece.embedding_text] = blend(0, 4, 0.95)
        oracle.matches["debounce"] = [
            JudgeMatchLLM(candidate_id=children[0].id, verdict=JudgeVerdict.VARIANT, confidence=0.9)
        ]

        result = await cascade.resolve(piece, PieceLevel.ATOM)
        await scheduler.drain()

        # The family absorbs its new variant on the follow-up check
        assert db.parent_id_of(result.item_id) == parent.id
        assert db.get_item(parent.id).last_coherence_check is not None

    async def test_drain_with_nothing_pending(self, engine):
        scheduler = CoherenceScheduler(engine)
        await asyncio.wait_for(scheduler.drain(), timeout=1)

