"""
TrustGraph — Reputation Scoring Engine
One formula, shared by every caller. No per-service copies, no drift.

Composite Score = f(External Karma, Influence, Activity)

    External karma  (weight 40%): opaque signal supplied by an outside system
    Influence       (weight 40%): 0-100 normalized output of the influence solver
    Activity        (weight 20%): raw interaction count

Activity is deliberately NOT normalized: a busy agent's activity term keeps
growing while the other two terms top out at 100. Known scale inconsistency,
kept because published scores depend on it.

A ReputationSnapshot freezes one run of the solver + scorer over one graph
version. Snapshots are immutable; a mutation produces a new one, it never
edits an old one.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import structlog

from trustgraph.errors import ValidationError
from trustgraph.graph.store import GraphSnapshot
from trustgraph.trust.influence import InfluenceResult, InfluenceSolver

logger = structlog.get_logger()

WEIGHT_KARMA = 0.40
WEIGHT_INFLUENCE = 0.40
WEIGHT_ACTIVITY = 0.20


class RankDimension(str, Enum):
    COMPOSITE    = "composite"
    INFLUENCE    = "influence"
    INTERACTIONS = "interactions"
    KARMA        = "karma"


# =============================================
# COMPOSITE SCORER
# =============================================

class CompositeScorer:
    def __init__(
        self,
        karma_weight: float = WEIGHT_KARMA,
        influence_weight: float = WEIGHT_INFLUENCE,
        activity_weight: float = WEIGHT_ACTIVITY,
    ):
        self.karma_weight = karma_weight
        self.influence_weight = influence_weight
        self.activity_weight = activity_weight

    def score(
        self,
        agent_id: str,
        influence_score: float,
        raw_interaction_count: int,
        external_karma: Optional[float] = None,
    ) -> float:
        """Weighted blend. Never raises; missing karma counts as 0."""
        karma = external_karma or 0.0
        return (
            karma                 * self.karma_weight +
            influence_score       * self.influence_weight +
            raw_interaction_count * self.activity_weight
        )

    def weights(self) -> Dict[str, float]:
        return {
            "karma": self.karma_weight,
            "influence": self.influence_weight,
            "activity": self.activity_weight,
        }


# =============================================
# SNAPSHOT
# =============================================

@dataclass(frozen=True)
class AgentReputation:
    agent: str                      # canonical id
    name: str                       # display name as first seen
    influence_score: float          # 0-100
    composite_score: float
    raw_interaction_count: int
    karma: float
    raw_influence: float            # pre-normalization solver output

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.name,
            "influence_score": round(self.influence_score, 2),
            "composite_score": round(self.composite_score, 2),
            "raw_interaction_count": self.raw_interaction_count,
            "karma": self.karma,
        }

    @classmethod
    def from_dict(cls, agent: str, data: Dict[str, Any]) -> "AgentReputation":
        return cls(
            agent=agent,
            name=data.get("name", agent),
            influence_score=float(data["influence_score"]),
            composite_score=float(data["composite_score"]),
            raw_interaction_count=int(data["raw_interaction_count"]),
            karma=float(data.get("karma", 0.0)),
            raw_influence=float(data.get("raw_influence", 0.0)),
        )


_SORT_KEYS = {
    RankDimension.COMPOSITE:    lambda r: r.composite_score,
    RankDimension.INFLUENCE:    lambda r: r.influence_score,
    RankDimension.INTERACTIONS: lambda r: r.raw_interaction_count,
    RankDimension.KARMA:        lambda r: r.karma,
}


@dataclass(frozen=True)
class ReputationSnapshot:
    """
    Immutable, versioned scores for every agent at one graph version.
    `converged=False` means: trust the gross tiers, not the fine ordering
    among closely-scored agents.
    """
    version: int                    # monotonic per rank cache
    graph_version: int              # GraphStore version the run was built from
    computed_at: str
    iterations_used: int
    converged: bool
    entries: Mapping[str, AgentReputation] = field(default_factory=lambda: MappingProxyType({}))
    compute_time_ms: float = 0.0

    def get(self, agent: str) -> Optional[AgentReputation]:
        return self.entries.get(agent)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, agent: str) -> bool:
        return agent in self.entries

    def percentile(self, agent: str) -> float:
        """Share of agents strictly below this agent's composite score, as a %."""
        entry = self.entries.get(agent)
        if entry is None or not self.entries:
            return 0.0
        below = sum(1 for r in self.entries.values() if r.composite_score < entry.composite_score)
        return below / len(self.entries) * 100.0

    def leaderboard(self, limit: int = 50, by: str = "composite") -> List[Dict[str, Any]]:
        try:
            key = _SORT_KEYS[RankDimension(by)]
        except ValueError:
            raise ValidationError(
                f"dimension must be one of: {', '.join(d.value for d in RankDimension)}"
            ) from None
        ranked = sorted(self.entries.values(), key=lambda r: (-key(r), r.agent))
        return [
            {"rank": i + 1, **entry.to_dict()}
            for i, entry in enumerate(ranked[:max(limit, 0)])
        ]

    def metadata(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "graph_version": self.graph_version,
            "computed_at": self.computed_at,
            "iterations_used": self.iterations_used,
            "converged": self.converged,
            "agents": len(self.entries),
            "compute_time_ms": self.compute_time_ms,
        }

    def to_full(self) -> Dict[str, Any]:
        """Full serialization, used for durable storage."""
        d = self.metadata()
        d["entries"] = {
            agent: {
                "name": r.name,
                "influence_score": r.influence_score,
                "composite_score": r.composite_score,
                "raw_interaction_count": r.raw_interaction_count,
                "karma": r.karma,
                "raw_influence": r.raw_influence,
            }
            for agent, r in self.entries.items()
        }
        return d

    @classmethod
    def from_full(cls, data: Dict[str, Any]) -> "ReputationSnapshot":
        return cls(
            version=int(data["version"]),
            graph_version=int(data["graph_version"]),
            computed_at=data["computed_at"],
            iterations_used=int(data["iterations_used"]),
            converged=bool(data["converged"]),
            entries=MappingProxyType({
                agent: AgentReputation.from_dict(agent, entry)
                for agent, entry in data.get("entries", {}).items()
            }),
            compute_time_ms=float(data.get("compute_time_ms", 0.0)),
        )


# =============================================
# THE SCORING FUNCTION
# =============================================

def build_snapshot(
    graph: GraphSnapshot,
    solver: InfluenceSolver,
    scorer: CompositeScorer,
    version: int,
) -> ReputationSnapshot:
    """Run the solver over a graph snapshot and fold in karma and activity."""
    started = datetime.now(timezone.utc)
    influence: InfluenceResult = solver.solve(graph)
    counts = graph.interaction_counts()

    entries = {}
    for agent in graph.nodes:
        normalized = influence.normalized.get(agent, 0.0)
        interactions = counts.get(agent, 0)
        karma = graph.karma.get(agent, 0.0)
        entries[agent] = AgentReputation(
            agent=agent,
            name=graph.display_name(agent),
            influence_score=normalized,
            composite_score=scorer.score(agent, normalized, interactions, karma),
            raw_interaction_count=interactions,
            karma=karma,
            raw_influence=influence.raw.get(agent, 0.0),
        )

    finished = datetime.now(timezone.utc)
    return ReputationSnapshot(
        version=version,
        graph_version=graph.version,
        computed_at=finished.isoformat(),
        iterations_used=influence.iterations,
        converged=influence.converged,
        entries=MappingProxyType(entries),
        compute_time_ms=round((finished - started).total_seconds() * 1000, 2),
    )
