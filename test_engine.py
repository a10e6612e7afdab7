#!/usr/bin/env python3
"""
TrustGraph — Engine Validation Suite
Run: python3 test_engine.py    (or: pytest test_engine.py)

Validates the scoring engine end to end without external services
(in-memory state store, no Redis).
"""
import sys
import warnings

import pytest

from trustgraph.compute.pipeline import TrustEngine
from trustgraph.compute.refresh import parse_karma_csv
from trustgraph.errors import ComputationIncomplete, DuplicateVouch, ValidationError
from trustgraph.graph.store import GraphSnapshot, GraphStore
from trustgraph.trust.engine import CompositeScorer, build_snapshot
from trustgraph.trust.influence import InfluenceSolver
from trustgraph.trust.safety import SafetyClassifier, SafetyTier, VouchStore


def _engine() -> TrustEngine:
    return TrustEngine()


def _solve_quietly(solver: InfluenceSolver, snap: GraphSnapshot):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ComputationIncomplete)
        return solver.solve(snap)


# ── 1. Composite Scorer ───────────────────────────────────

def test_composite_reference_scenario():
    # 0.4×80 + 0.4×50 + 0.2×10
    score = CompositeScorer().score("a", influence_score=50, raw_interaction_count=10, external_karma=80)
    assert score == pytest.approx(54.0)


def test_composite_missing_karma_counts_as_zero():
    assert CompositeScorer().score("a", 50, 10) == pytest.approx(22.0)
    assert CompositeScorer().score("a", 50, 10, None) == pytest.approx(22.0)


def test_activity_term_is_unbounded():
    busy = CompositeScorer().score("a", 0, 1000, 0)
    assert busy == pytest.approx(200.0)


# ── 2. Influence Solver ───────────────────────────────────

def test_empty_graph_yields_empty_snapshot():
    store = GraphStore()
    snap = build_snapshot(store.snapshot_graph(), InfluenceSolver(), CompositeScorer(), version=1)
    assert len(snap) == 0
    assert snap.converged
    assert snap.leaderboard() == []


def test_zero_edge_graph_scores_everyone_zero():
    snap = GraphSnapshot(version=0, nodes=frozenset({"a", "b", "c"}), edges=())
    result = InfluenceSolver().solve(snap)
    assert result.normalized == {"a": 0.0, "b": 0.0, "c": 0.0}
    assert result.converged
    assert result.iterations == 1


def test_mass_conserved_without_dangling_agents():
    store = GraphStore()
    store.add_edge("interaction", "a", "b")
    store.add_edge("interaction", "b", "c")
    store.add_edge("interaction", "c", "a")
    store.add_edge("vouch", "a", "c")
    snap = store.snapshot_graph()

    for cap in range(1, 8):
        result = _solve_quietly(InfluenceSolver(max_iterations=cap), snap)
        assert sum(result.raw.values()) == pytest.approx(1.0, abs=1e-9)

    assert sum(_solve_quietly(InfluenceSolver(), snap).raw.values()) == pytest.approx(1.0, abs=1e-6)


def test_dangling_mass_is_dropped():
    store = GraphStore()
    store.add_edge("interaction", "a", "b")     # b has no outgoing weight
    result = InfluenceSolver().solve(store.snapshot_graph())
    assert sum(result.raw.values()) < 1.0
    assert result.normalized["b"] == pytest.approx(100.0)


def test_vouch_raises_target_raw_influence():
    engine = _engine()
    engine.record_interaction("a", "c")
    engine.record_interaction("c", "a")
    engine.record_interaction("b", "c")
    before = engine.snapshot().get("b").raw_influence

    engine.vouch_for_agent("a", "b")
    after = engine.snapshot().get("b").raw_influence
    assert after > before


def test_iteration_cap_warns_and_flags_snapshot():
    store = GraphStore()
    store.add_edge("interaction", "a", "b")
    store.add_edge("interaction", "b", "c")
    store.add_edge("trust", "c", "a", weight=3.0)
    store.add_edge("interaction", "a", "c")

    with pytest.warns(ComputationIncomplete):
        snap = build_snapshot(store.snapshot_graph(), InfluenceSolver(max_iterations=1),
                              CompositeScorer(), version=1)
    assert not snap.converged
    assert snap.iterations_used == 1


def test_default_solver_converges_on_star():
    engine = _engine()
    for spoke in ("b", "c", "d"):
        engine.record_interaction(spoke, "hub")
    snap = engine.snapshot()
    assert snap.converged
    assert snap.iterations_used < 10
    assert snap.get("hub").influence_score == pytest.approx(100.0)
    assert snap.get("b").influence_score < 100.0


# ── 3. Snapshot & Percentile ──────────────────────────────

def test_percentile_is_monotonic_in_composite():
    engine = _engine()
    pairs = [("a", "b"), ("a", "c"), ("b", "c"), ("c", "d"), ("e", "c"), ("d", "a")]
    for src, dst in pairs:
        engine.record_interaction(src, dst)
    engine.vouch_for_agent("e", "d")
    engine.set_karma_bulk({"a": 30, "e": 90})

    snap = engine.snapshot()
    agents = list(snap.entries)
    for x in agents:
        for y in agents:
            if snap.get(x).composite_score > snap.get(y).composite_score:
                assert engine.percentile(x) >= engine.percentile(y)


def test_percentile_unknown_agent_is_zero():
    engine = _engine()
    engine.record_interaction("a", "b")
    assert engine.percentile("nobody") == 0.0


def test_snapshot_is_immutable_across_mutations():
    engine = _engine()
    engine.record_interaction("a", "b")
    first = engine.snapshot()
    engine.record_interaction("b", "c")
    second = engine.snapshot()

    assert first is not second
    assert "c" not in first
    assert "c" in second
    assert second.version > first.version
    with pytest.raises(TypeError):
        first.entries["c"] = None


def test_leaderboard_dimensions():
    engine = _engine()
    engine.record_interaction("a", "b")
    engine.record_interaction("a", "c")
    engine.set_karma("c", 500)

    by_karma = engine.leaderboard(limit=2, by="karma")
    assert by_karma["agents"][0]["agent"] == "c"
    assert len(by_karma["agents"]) == 2

    by_interactions = engine.leaderboard(by="interactions")
    assert by_interactions["agents"][0]["agent"] == "a"
    assert by_interactions["agents"][0]["raw_interaction_count"] == 2

    with pytest.raises(ValidationError):
        engine.leaderboard(by="vibes")


# ── 4. Safety Classifier ──────────────────────────────────

def test_five_strong_passing_vouches_are_trusted():
    vouches = VouchStore()
    for i in range(5):
        vouches.add(f"voucher-{i}", "skill-x", passed=True)
    rating = SafetyClassifier(vouches, lambda agent: 70.0).classify("skill-x")
    assert rating.numeric_score == pytest.approx(100.0)
    assert rating.vouch_count == 5
    assert rating.tier is SafetyTier.TRUSTED


def test_single_default_vouch_is_limited_testing():
    vouches = VouchStore()
    vouches.add("newcomer", "skill-y", passed=True)
    rating = SafetyClassifier(vouches, lambda agent: None).classify("skill-y")
    assert rating.numeric_score == pytest.approx(100.0)
    assert rating.weighted_vouch_mass == pytest.approx(10.0)
    assert rating.tier is SafetyTier.LIMITED_TESTING


def test_duplicate_artifact_vouch_rejected_other_rater_counts():
    engine = _engine()
    engine.vouch_for_artifact("alice", "skill-z", passed=True)
    with pytest.raises(ValidationError):
        engine.vouch_for_artifact("Alice", "skill-z", passed=False)
    assert engine.safety("skill-z").vouch_count == 1

    engine.vouch_for_artifact("bob", "skill-z", passed=True)
    assert engine.safety("skill-z").vouch_count == 2


def test_voucher_reputation_comes_from_snapshot():
    engine = _engine()
    for _ in range(3):
        engine.record_interaction("veteran", "peer")
    engine.set_karma("veteran", 100)
    engine.vouch_for_artifact("veteran", "tool", passed=False)
    engine.vouch_for_artifact("stranger", "tool", passed=True)

    rep = engine.snapshot().get("veteran").composite_score
    expected = (rep * 0.5 + 10.0) / (rep + 10.0) * 100
    rating = engine.safety("tool")
    assert rating.numeric_score == pytest.approx(expected)
    assert rating.weighted_vouch_mass == pytest.approx(rep + 10.0)


def test_negative_karma_voucher_keeps_score_in_range():
    engine = _engine()
    engine.record_interaction("good", "bad")
    engine.set_karma_bulk({"good": 100, "bad": -150})
    engine.vouch_for_artifact("good", "tool", passed=False)
    engine.vouch_for_artifact("bad", "tool", passed=True)

    snap = engine.snapshot()
    assert snap.get("bad").composite_score < 0
    rating = engine.safety("tool")
    assert 0 <= rating.numeric_score <= 100
    assert rating.numeric_score == pytest.approx(50.0)
    assert rating.weighted_vouch_mass == pytest.approx(snap.get("good").composite_score)


# ── 5. Trust Edges ────────────────────────────────────────

def test_trust_revocation_lowers_target_and_repeats_quietly():
    engine = _engine()
    engine.record_interaction("a", "b")
    engine.record_interaction("b", "a")
    edge_id = engine.set_trust("a", "c")

    before = engine.snapshot().get("c")
    engine.revoke_trust(edge_id)
    after = engine.snapshot().get("c")
    assert after.raw_influence < before.raw_influence
    assert after.composite_score < before.composite_score

    version = engine.graph.version
    engine.revoke_trust(edge_id)
    assert engine.graph.version == version
    assert engine.graph.get_edge(edge_id).active is False


def test_duplicate_agent_vouch_is_conflict():
    engine = _engine()
    engine.vouch_for_agent("a", "b")
    with pytest.raises(DuplicateVouch):
        engine.vouch_for_agent("A", "b")
    engine.vouch_for_agent("b", "a")


# ── 6. External Karma ─────────────────────────────────────

def test_karma_csv_parsing():
    text = "agent,karma\nalice,80\nbob,not-a-number\n,5\ncarol,12.5\nalice,90\n"
    assert parse_karma_csv(text) == {"alice": 90.0, "carol": 12.5}


def test_karma_update_invalidates_snapshot():
    engine = _engine()
    engine.record_interaction("a", "b")
    first = engine.snapshot()
    engine.set_karma("a", 50)
    second = engine.snapshot()
    assert second.version > first.version
    assert second.get("a").karma == 50
    assert second.get("a").composite_score == pytest.approx(first.get("a").composite_score + 20.0)


# ── Runner ────────────────────────────────────────────────

if __name__ == "__main__":
    print("=" * 60)
    print("TrustGraph — Engine Validation")
    print("=" * 60)

    passed = failed = 0
    for name, fn in list(globals().items()):
        if not (name.startswith("test_") and callable(fn)):
            continue
        try:
            fn()
            passed += 1
            print(f"  ✓ {name}")
        except Exception as e:
            failed += 1
            print(f"  ✗ {name}: {type(e).__name__}: {e}")

    print("\n" + "=" * 60)
    print(f"Results: {passed}/{passed + failed} passed ({failed} failed)")
    print("=" * 60)
    sys.exit(0 if failed == 0 else 1)
