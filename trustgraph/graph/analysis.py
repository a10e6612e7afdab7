"""
TrustGraph — Graph Analytics
Read-only views over a GraphSnapshot: paths, clusters, density, agent profiles.

Every function here treats active edges as undirected links. Direction only
matters to the influence solver, which keeps its own iteration because
dangling mass must be dropped rather than redistributed.
"""
from typing import Any, Dict, List, Optional

import networkx as nx

from trustgraph.errors import NotFound
from trustgraph.graph.store import EdgeType, GraphSnapshot, is_success, normalize_agent_id


def to_networkx(snap: GraphSnapshot) -> nx.MultiGraph:
    """Undirected multigraph of active edges. Parallel edges are kept for counts."""
    graph = nx.MultiGraph()
    graph.add_nodes_from(snap.nodes)
    for edge in snap.active_edges:
        graph.add_edge(edge.source, edge.target, key=edge.edge_id,
                       edge_type=edge.edge_type.value, weight=edge.weight)
    return graph


def _require(snap: GraphSnapshot, agent: str) -> str:
    key = normalize_agent_id(agent)
    if key not in snap.nodes:
        raise NotFound("agent", agent)
    return key


def shortest_path(snap: GraphSnapshot, source: str, target: str) -> Optional[List[str]]:
    """Fewest hops over undirected active edges. None when the agents are disconnected."""
    start = _require(snap, source)
    goal = _require(snap, target)
    try:
        return nx.shortest_path(to_networkx(snap), start, goal)
    except nx.NetworkXNoPath:
        return None


def clusters(snap: GraphSnapshot) -> List[List[str]]:
    """Connected components, largest first."""
    components = [sorted(c) for c in nx.connected_components(to_networkx(snap))]
    return sorted(components, key=lambda c: (-len(c), c))


def graph_stats(snap: GraphSnapshot) -> Dict[str, Any]:
    graph = to_networkx(snap)
    node_count = graph.number_of_nodes()
    edge_count = graph.number_of_edges()

    avg_degree = (2 * edge_count) / node_count if node_count else 0.0

    distribution: Dict[str, int] = {}
    for _, _, edge_type in graph.edges(data="edge_type"):
        distribution[edge_type] = distribution.get(edge_type, 0) + 1

    return {
        "nodes": node_count,
        "edges": edge_count,
        "tombstoned_edges": len(snap.edges) - edge_count,
        "density": round(nx.density(graph), 4),
        "avg_degree": round(avg_degree, 2),
        "components": nx.number_connected_components(graph),
        "type_distribution": distribution,
        "graph_version": snap.version,
    }


def agent_profile(snap: GraphSnapshot, agent: str) -> Dict[str, Any]:
    """One-hop neighbourhood plus collaboration and endorsement counters."""
    key = _require(snap, agent)

    outgoing = [e for e in snap.active_edges if e.source == key]
    incoming = [e for e in snap.active_edges if e.target == key]

    interactions = [
        e for e in snap.edges
        if e.edge_type is EdgeType.INTERACTION and key in (e.source, e.target)
    ]
    partners = {e.target if e.source == key else e.source for e in interactions}
    successes = sum(1 for e in interactions if is_success(e.outcome))

    return {
        "agent": snap.display_name(key),
        "in_degree": len(incoming),
        "out_degree": len(outgoing),
        "neighbors": sorted({e.target for e in outgoing} | {e.source for e in incoming}),
        "unique_collaborators": len(partners),
        "interactions": len(interactions),
        "success_rate": round(successes / len(interactions), 3) if interactions else None,
        "vouches_received": sum(1 for e in incoming if e.edge_type is EdgeType.VOUCH),
        "vouches_given": sum(1 for e in outgoing if e.edge_type is EdgeType.VOUCH),
        "trusted_by": sum(1 for e in incoming if e.edge_type is EdgeType.TRUST),
        "trusting": sum(1 for e in outgoing if e.edge_type is EdgeType.TRUST),
    }
