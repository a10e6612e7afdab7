"""
TrustGraph — Graph Package
Re-exports for convenience.
"""
from trustgraph.graph.store import Edge, EdgeType, GraphSnapshot, GraphStore, normalize_agent_id
