"""
TrustGraph — Graph store and analytics tests
Run: pytest test_graph.py
"""
import math
import threading
from datetime import datetime, timedelta, timezone

import pytest

from trustgraph.errors import DuplicateVouch, InvalidWeight, NotFound, ValidationError
from trustgraph.graph import analysis
from trustgraph.graph.store import EdgeType, GraphStore


@pytest.fixture
def store():
    return GraphStore()


# ── Mutations ─────────────────────────────────────────────

def test_default_weights(store):
    interaction = store.get_edge(store.add_edge("interaction", "a", "b"))
    failed = store.get_edge(store.add_edge("interaction", "a", "b", outcome="failure"))
    vouch = store.get_edge(store.add_edge("vouch", "a", "b"))
    trust = store.get_edge(store.add_edge("trust", "a", "b"))

    assert interaction.weight == 1.0
    assert failed.weight == 0.5
    assert vouch.weight == 2.0
    assert trust.weight == 1.0
    assert vouch.outcome is None


def test_self_loop_rejected_without_side_effects(store):
    with pytest.raises(ValidationError):
        store.add_edge("interaction", "a", "A ")
    assert store.version == 0
    assert store.node_count == 0


@pytest.mark.parametrize("weight", [-1, -0.001, math.inf, math.nan, "heavy"])
def test_invalid_weight_rejected(store, weight):
    with pytest.raises(InvalidWeight):
        store.add_edge("trust", "a", "b", weight=weight)
    assert store.edge_count == 0


def test_zero_weight_is_allowed(store):
    edge_id = store.add_edge("trust", "a", "b", weight=0)
    assert store.get_edge(edge_id).weight == 0.0


def test_unknown_edge_type_rejected(store):
    with pytest.raises(ValidationError):
        store.add_edge("follows", "a", "b")


def test_blank_agent_rejected(store):
    with pytest.raises(ValidationError):
        store.add_edge("interaction", "  ", "b")


def test_agents_are_case_insensitive(store):
    store.add_edge("interaction", "Alice", "bob")
    store.add_edge("interaction", "ALICE", "Bob")
    snap = store.snapshot_graph()
    assert snap.nodes == frozenset({"alice", "bob"})
    assert snap.display_name("alice") == "Alice"
    assert store.has_agent("aLiCe")


def test_duplicate_vouch_pair_rejected(store):
    store.add_edge("vouch", "a", "b")
    with pytest.raises(DuplicateVouch):
        store.add_edge("vouch", "A", "B")
    store.add_edge("vouch", "b", "a")
    assert store.edge_count == 2


def test_every_mutation_bumps_version(store):
    store.add_edge("interaction", "a", "b")
    edge_id = store.add_edge("trust", "a", "b")
    store.set_karma("a", 10)
    store.deactivate_trust(edge_id)
    assert store.version == 4


def test_deactivate_trust_is_a_tombstone(store):
    edge_id = store.add_edge("trust", "a", "b")
    edge = store.deactivate_trust(edge_id)
    assert edge.active is False
    assert edge.deactivated_at is not None

    snap = store.snapshot_graph()
    assert len(snap.edges) == 1
    assert snap.active_edges == []
    assert "b" in snap.nodes

    again = store.deactivate_trust(edge_id)
    assert again == edge


def test_deactivate_missing_or_non_trust_edge(store):
    with pytest.raises(NotFound):
        store.deactivate_trust("edge_missing")
    interaction = store.add_edge("interaction", "a", "b")
    with pytest.raises(NotFound):
        store.deactivate_trust(interaction)


def test_listeners_fire_after_mutation(store):
    calls = []
    store.add_listener(lambda: calls.append(store.version))
    store.add_edge("interaction", "a", "b")
    with pytest.raises(ValidationError):
        store.add_edge("interaction", "a", "a")
    assert calls == [1]


def test_karma_bulk_is_one_mutation(store):
    assert store.set_karma_bulk({"a": 1, "B": 2.5}) == 2
    assert store.version == 1
    assert store.get_karma("b") == 2.5
    with pytest.raises(ValidationError):
        store.set_karma_bulk({"a": "lots"})
    assert store.version == 1


def test_snapshot_is_point_in_time(store):
    store.add_edge("interaction", "a", "b")
    snap = store.snapshot_graph()
    store.add_edge("interaction", "b", "c")
    assert snap.version == 1
    assert len(snap.edges) == 1
    assert "c" not in snap.nodes


def test_concurrent_writers_keep_version_consistent(store):
    def writer(n):
        for i in range(50):
            store.add_edge("interaction", f"w{n}", f"peer{i}")

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snap = store.snapshot_graph()
    assert store.version == 200
    assert len(snap.edges) == 200
    assert snap.version == 200


def test_query_edges_filters(store):
    old = datetime.now(timezone.utc) - timedelta(days=10)
    store.add_edge("interaction", "a", "b", timestamp=old)
    store.add_edge("vouch", "a", "c")
    store.add_edge("trust", "d", "e")

    assert len(store.query_edges(agent="A")) == 2
    assert [e.edge_type for e in store.query_edges(edge_type="vouch")] == [EdgeType.VOUCH]
    recent = store.query_edges(since=datetime.now(timezone.utc) - timedelta(days=1))
    assert len(recent) == 2
    assert store.query_edges(agent="a")[0].edge_type is EdgeType.VOUCH
    assert len(store.query_edges(limit=1)) == 1
    with pytest.raises(ValidationError):
        store.query_edges(edge_type="follows")


def test_restore_requires_empty_store(store):
    source = GraphStore()
    source.add_edge("interaction", "a", "b")
    snap = source.snapshot_graph()

    store.restore(snap.edges, {"a": 3.0}, version=7)
    assert store.version == 7
    assert store.get_karma("a") == 3.0
    with pytest.raises(ValidationError):
        store.restore(snap.edges, {}, version=8)


# ── Analytics ─────────────────────────────────────────────

@pytest.fixture
def network(store):
    store.add_edge("interaction", "a", "b")
    store.add_edge("interaction", "b", "c", outcome="failed")
    store.add_edge("vouch", "d", "c")
    store.add_edge("interaction", "x", "y")
    revoked = store.add_edge("trust", "c", "z")
    store.deactivate_trust(revoked)
    return store.snapshot_graph()


def test_shortest_path_ignores_direction(network):
    assert analysis.shortest_path(network, "a", "d") == ["a", "b", "c", "d"]
    assert analysis.shortest_path(network, "a", "a") == ["a"]


def test_shortest_path_disconnected_or_tombstoned(network):
    assert analysis.shortest_path(network, "a", "x") is None
    assert analysis.shortest_path(network, "c", "z") is None
    with pytest.raises(NotFound):
        analysis.shortest_path(network, "a", "ghost")


def test_clusters_largest_first(network):
    components = analysis.clusters(network)
    assert components[0] == ["a", "b", "c", "d"]
    assert ["x", "y"] in components
    assert ["z"] in components


def test_graph_stats(network):
    stats = analysis.graph_stats(network)
    assert stats["nodes"] == 7
    assert stats["edges"] == 4
    assert stats["tombstoned_edges"] == 1
    assert stats["density"] == round(8 / 42, 4)
    assert stats["type_distribution"] == {"interaction": 3, "vouch": 1}


def test_agent_profile(network):
    profile = analysis.agent_profile(network, "C")
    assert profile["interactions"] == 1
    assert profile["success_rate"] == 0.0
    assert profile["vouches_received"] == 1
    assert profile["neighbors"] == ["b", "d"]
    assert profile["trusting"] == 0


def test_networkx_view_skips_tombstones(network):
    graph = analysis.to_networkx(network)
    assert graph.number_of_nodes() == 7
    assert graph.number_of_edges() == 4
    assert not graph.has_edge("c", "z")
    assert analysis.graph_stats(network)["components"] == 3


def test_clusters_break_size_ties_by_name(store):
    store.add_edge("interaction", "p", "q")
    store.add_edge("interaction", "e", "f")
    assert analysis.clusters(store.snapshot_graph()) == [["e", "f"], ["p", "q"]]
