"""
TrustGraph — Engine Pipeline
One object wires the graph store, solver, scorer, rank cache, safety
classifier and durable state together. Every caller goes through it:

    Mutation → GraphStore / VouchStore → write-through → RankCache.invalidate
    Query    → RankCache.get_snapshot (lazy rebuild) → score / classify → Response

Lifecycle:
    init from durable storage → serve → periodic/lazy recompute → teardown flush

Dependencies: the state store is optional in spirit.
    If Redis is down → keep serving from memory, just don't persist.
"""
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog

from trustgraph.compute.cache import RankCache
from trustgraph.compute.persistence import MemoryStateStore, RedisStateStore, StateStore
from trustgraph.config import Settings, settings as default_settings
from trustgraph.errors import NotFound
from trustgraph.graph import analysis
from trustgraph.graph.store import EdgeType, GraphStore, normalize_agent_id
from trustgraph.trust.engine import CompositeScorer, ReputationSnapshot
from trustgraph.trust.influence import InfluenceSolver
from trustgraph.trust.safety import SafetyClassifier, SafetyRating, VouchRecord, VouchStore

logger = structlog.get_logger()


class TrustEngine:
    """
    Usage:
        engine = TrustEngine.from_settings()
        engine.load()

        engine.record_interaction("alice", "bob", outcome="success")
        engine.vouch_for_agent("carol", "bob")
        engine.get_reputation("bob")
    """

    def __init__(
        self,
        solver: Optional[InfluenceSolver] = None,
        scorer: Optional[CompositeScorer] = None,
        state_store: Optional[StateStore] = None,
        serve_stale: bool = False,
    ):
        self.graph = GraphStore()
        self.vouches = VouchStore()
        self.state = state_store or MemoryStateStore()
        self.cache = RankCache(
            self.graph,
            solver or InfluenceSolver(),
            scorer or CompositeScorer(),
            serve_stale=serve_stale,
            on_snapshot=self.state.save_snapshot,
        )
        self.classifier = SafetyClassifier(self.vouches, self.cache.composite_score)

        self.graph.add_listener(self.cache.invalidate)
        self.vouches.add_listener(self.state.save_vouch)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "TrustEngine":
        config = config or default_settings
        if config.redis_enabled:
            state = RedisStateStore(config.REDIS_URL, prefix=config.REDIS_PREFIX)
        else:
            state = MemoryStateStore()
        return cls(
            solver=InfluenceSolver(
                damping=config.DAMPING,
                tolerance=config.TOLERANCE,
                max_iterations=config.MAX_ITERATIONS,
            ),
            scorer=CompositeScorer(
                karma_weight=config.WEIGHT_KARMA,
                influence_weight=config.WEIGHT_INFLUENCE,
                activity_weight=config.WEIGHT_ACTIVITY,
            ),
            state_store=state,
            serve_stale=config.SERVE_STALE,
        )

    # =============================================
    # LIFECYCLE
    # =============================================

    def load(self) -> None:
        """Replay durable state. The stored snapshot is reused only if it is current."""
        state = self.state.load_all()
        if state.empty and state.snapshot is None:
            logger.info("engine_started_empty", backend=self.state.backend)
            return

        self.graph.restore(state.edges, state.karma, state.graph_version)
        self.vouches.restore(state.vouches)
        if state.snapshot is not None and state.snapshot.graph_version == self.graph.version:
            self.cache.install(state.snapshot)
        logger.info("engine_loaded", backend=self.state.backend, nodes=self.graph.node_count,
                    edges=self.graph.edge_count, vouches=len(self.vouches),
                    graph_version=self.graph.version)

    def flush(self) -> None:
        snapshot = self.cache.peek()
        if snapshot is not None:
            self.state.save_snapshot(snapshot)
        self.state.save_graph_version(self.graph.version)

    def close(self) -> None:
        self.flush()
        self.state.close()

    # =============================================
    # MUTATIONS
    # =============================================

    def _persist_edge(self, edge_id: str) -> str:
        self.state.save_edge(self.graph.get_edge(edge_id))
        self.state.save_graph_version(self.graph.version)
        return edge_id

    def record_interaction(
        self,
        agent_a: str,
        agent_b: str,
        outcome: str = "success",
        weight: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> str:
        edge_id = self.graph.add_edge(
            EdgeType.INTERACTION, agent_a, agent_b,
            weight=weight, timestamp=timestamp, outcome=outcome,
        )
        return self._persist_edge(edge_id)

    def vouch_for_agent(self, voucher: str, target: str, weight: Optional[float] = None) -> str:
        edge_id = self.graph.add_edge(EdgeType.VOUCH, voucher, target, weight=weight)
        return self._persist_edge(edge_id)

    def set_trust(self, source: str, target: str, weight: Optional[float] = None) -> str:
        edge_id = self.graph.add_edge(EdgeType.TRUST, source, target, weight=weight)
        return self._persist_edge(edge_id)

    def revoke_trust(self, edge_id: str) -> Dict[str, Any]:
        edge = self.graph.deactivate_trust(edge_id)
        self.state.save_edge(edge)
        self.state.save_graph_version(self.graph.version)
        return edge.to_dict()

    def vouch_for_artifact(
        self, voucher: str, artifact_id: str, passed: bool, evidence: Optional[str] = None
    ) -> VouchRecord:
        return self.vouches.add(voucher, artifact_id, passed, evidence)

    def revoke_artifact_vouch(self, voucher: str, artifact_id: str) -> VouchRecord:
        return self.vouches.revoke(voucher, artifact_id)

    def set_karma(self, agent: str, karma: float) -> None:
        self.set_karma_bulk({agent: karma})

    def set_karma_bulk(self, karma: Mapping[str, float]) -> int:
        updated = self.graph.set_karma_bulk(karma)
        if updated:
            self.state.save_karma({
                normalize_agent_id(agent): float(value) for agent, value in karma.items()
            })
            self.state.save_graph_version(self.graph.version)
        return updated

    # =============================================
    # QUERIES
    # =============================================

    def snapshot(self) -> ReputationSnapshot:
        return self.cache.get_snapshot()

    def recompute(self) -> ReputationSnapshot:
        return self.cache.recompute(force=True)

    def get_reputation(self, agent: str) -> Dict[str, Any]:
        key = normalize_agent_id(agent)
        if not self.graph.has_agent(key):
            raise NotFound("agent", agent)

        snap = self.cache.get_snapshot()
        entry = snap.get(key)
        if entry is None:
            # served-stale snapshot predates this agent
            result = {
                "agent": agent, "influence_score": 0.0, "composite_score": 0.0,
                "raw_interaction_count": 0, "karma": self.graph.get_karma(key),
                "scored": False,
            }
        else:
            result = {**entry.to_dict(), "scored": True}

        result["percentile"] = round(snap.percentile(key), 2)
        result["profile"] = analysis.agent_profile(self.graph.snapshot_graph(), key)
        result["snapshot"] = snap.metadata()
        return result

    def leaderboard(self, limit: int = 50, by: str = "composite") -> Dict[str, Any]:
        snap = self.cache.get_snapshot()
        return {
            "dimension": by,
            "agents": snap.leaderboard(limit=limit, by=by),
            "total_agents": len(snap),
            "snapshot": snap.metadata(),
        }

    def percentile(self, agent: str) -> float:
        return self.cache.percentile(agent)

    def safety(self, artifact_id: str) -> SafetyRating:
        # bring voucher reputations up to date; vouches themselves are live
        self.cache.get_snapshot()
        return self.classifier.classify(artifact_id)

    def safety_overview(self) -> Dict[str, Any]:
        self.cache.get_snapshot()
        return self.classifier.overview()

    def artifact_vouches(self, artifact_id: str, include_revoked: bool = False) -> List[VouchRecord]:
        return self.vouches.for_artifact(artifact_id, include_revoked=include_revoked)

    def rater_vouches(self, voucher: str, include_revoked: bool = False) -> List[VouchRecord]:
        return self.vouches.by_rater(voucher, include_revoked=include_revoked)

    def trust_relationships(self, agent: str) -> Dict[str, Any]:
        """Active trust edges from and to one agent."""
        key = normalize_agent_id(agent)
        if not self.graph.has_agent(key):
            raise NotFound("agent", agent)
        edges = self.graph.query_edges(key, EdgeType.TRUST.value, active_only=True)
        return {
            "agent": agent,
            "trusting": [e.to_dict() for e in edges if e.source == key],
            "trusted_by": [e.to_dict() for e in edges if e.target == key],
        }

    def list_edges(
        self,
        agent: Optional[str] = None,
        edge_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.graph.query_edges(agent, edge_type, since, limit)]

    # =============================================
    # GRAPH ANALYTICS
    # =============================================

    def shortest_path(self, source: str, target: str) -> Optional[List[str]]:
        return analysis.shortest_path(self.graph.snapshot_graph(), source, target)

    def clusters(self) -> List[List[str]]:
        return analysis.clusters(self.graph.snapshot_graph())

    def graph_stats(self) -> Dict[str, Any]:
        return analysis.graph_stats(self.graph.snapshot_graph())

    def agent_profile(self, agent: str) -> Dict[str, Any]:
        return analysis.agent_profile(self.graph.snapshot_graph(), agent)

    def status(self) -> Dict[str, Any]:
        solver = self.cache.solver
        return {
            "graph": {
                "nodes": self.graph.node_count,
                "edges": self.graph.edge_count,
                "version": self.graph.version,
            },
            "vouches": len(self.vouches),
            "cache": self.cache.stats(),
            "solver": {
                "damping": solver.damping,
                "tolerance": solver.tolerance,
                "max_iterations": solver.max_iterations,
            },
            "weights": self.cache.scorer.weights(),
            "state_store": self.state.stats(),
        }


# Singleton instance (initialized on first use)
_engine: Optional[TrustEngine] = None


def get_engine() -> TrustEngine:
    global _engine
    if _engine is None:
        _engine = TrustEngine.from_settings()
        _engine.load()
    return _engine


def shutdown():
    """Clean shutdown: flush the latest snapshot and close storage."""
    global _engine
    if _engine:
        _engine.close()
    _engine = None
    logger.info("engine_shutdown")
