"""
TrustGraph — Graph Store
The durable node/edge repository behind every reputation score.

Agents are nodes. They are never created explicitly: an agent exists as soon
as any edge references it, and stays present as long as one does.

Edges are directed and typed:
    interaction   — observed collaboration (weight 1.0, failed outcome 0.5)
    vouch         — endorsement of one agent by another (weight 2.0)
    trust         — explicit, revocable trust declaration (weight 1.0)

The edge log is append-only. The one mutation allowed on an existing edge is
the `active` flag of a trust edge: revoking trust writes a tombstone so the
audit history survives.

Concurrency:
    One writer lock guards every mutation and every snapshot read.
    Each successful mutation bumps a monotonic version counter; the rank cache
    compares versions to decide staleness. Listeners are notified after the
    lock is released.
"""
import math
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import structlog

from trustgraph.errors import DuplicateVouch, InvalidWeight, NotFound, ValidationError

logger = structlog.get_logger()


class EdgeType(str, Enum):
    INTERACTION = "interaction"
    VOUCH       = "vouch"
    TRUST       = "trust"


DEFAULT_WEIGHTS = {
    EdgeType.INTERACTION: 1.0,
    EdgeType.VOUCH:       2.0,
    EdgeType.TRUST:       1.0,
}
FAILED_INTERACTION_WEIGHT = 0.5


def normalize_agent_id(agent: str) -> str:
    """Agents are unique case-insensitively; this is the canonical key."""
    if not isinstance(agent, str) or not agent.strip():
        raise ValidationError("Agent identifier must be a non-empty string")
    return agent.strip().lower()


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Edge:
    """A single directed, typed edge. Immutable; deactivation swaps in a copy."""
    edge_id: str
    edge_type: EdgeType
    source: str                     # canonical agent id
    target: str                     # canonical agent id
    weight: float
    timestamp: datetime
    active: bool = True
    outcome: Optional[str] = None   # interaction edges only
    deactivated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edge_id": self.edge_id,
            "edge_type": self.edge_type.value,
            "source": self.source,
            "target": self.target,
            "weight": self.weight,
            "timestamp": self.timestamp.isoformat(),
            "active": self.active,
            "outcome": self.outcome,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        deactivated = data.get("deactivated_at")
        return cls(
            edge_id=data["edge_id"],
            edge_type=EdgeType(data["edge_type"]),
            source=data["source"],
            target=data["target"],
            weight=float(data["weight"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            active=bool(data.get("active", True)),
            outcome=data.get("outcome"),
            deactivated_at=datetime.fromisoformat(deactivated) if deactivated else None,
        )


@dataclass(frozen=True)
class GraphSnapshot:
    """
    Point-in-time, consistent view of the graph.
    Never observes a half-applied mutation: it is built under the writer lock.
    """
    version: int
    nodes: FrozenSet[str]
    edges: Tuple[Edge, ...]
    karma: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def active_edges(self) -> List[Edge]:
        return [e for e in self.edges if e.active]

    def interaction_counts(self) -> Dict[str, int]:
        """Cumulative interaction count per agent (either endpoint)."""
        counts = {node: 0 for node in self.nodes}
        for edge in self.edges:
            if edge.edge_type is EdgeType.INTERACTION:
                counts[edge.source] += 1
                counts[edge.target] += 1
        return counts

    def display_name(self, agent: str) -> str:
        return self.names.get(agent, agent)


class GraphStore:
    """
    Thread-safe in-memory trust graph.

    Usage:
        store = GraphStore()
        store.add_listener(rank_cache.invalidate)

        edge_id = store.add_edge("interaction", "alice", "bob")
        store.add_edge("trust", "bob", "carol", weight=1.5)
        snap = store.snapshot_graph()
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._edges: List[Edge] = []
        self._index: Dict[str, int] = {}            # edge_id -> position in _edges
        self._nodes: Dict[str, str] = {}            # canonical id -> display name
        self._karma: Dict[str, float] = {}
        self._vouch_pairs: set = set()              # (source, target) of vouch edges
        self._version = 0
        self._listeners: List[Callable[[], None]] = []

    # --------------------------------------------------------
    # Hooks
    # --------------------------------------------------------

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback fired after every successful mutation."""
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in self._listeners:
            callback()

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    # --------------------------------------------------------
    # Mutations
    # --------------------------------------------------------

    def add_edge(
        self,
        edge_type: str,
        source: str,
        target: str,
        weight: Optional[float] = None,
        timestamp: Optional[datetime] = None,
        outcome: Optional[str] = None,
    ) -> str:
        """
        Append an edge and return its id.

        Raises:
            ValidationError: unknown type, blank agent, or self-loop
            InvalidWeight: negative or non-finite weight
            DuplicateVouch: a vouch edge already links this pair
        """
        try:
            etype = EdgeType(edge_type)
        except ValueError:
            raise ValidationError(
                f"edge type must be one of: {', '.join(t.value for t in EdgeType)}"
            ) from None

        src = normalize_agent_id(source)
        dst = normalize_agent_id(target)
        if src == dst:
            raise ValidationError(f"Self-loop rejected: {source} -> {target}")

        if weight is None:
            weight = DEFAULT_WEIGHTS[etype]
            if etype is EdgeType.INTERACTION and outcome is not None and not is_success(outcome):
                weight = FAILED_INTERACTION_WEIGHT
        try:
            weight = float(weight)
        except (TypeError, ValueError):
            raise InvalidWeight(weight) from None
        if not math.isfinite(weight) or weight < 0:
            raise InvalidWeight(weight)
        if timestamp is not None and timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        edge = Edge(
            edge_id=f"edge_{uuid.uuid4().hex[:16]}",
            edge_type=etype,
            source=src,
            target=dst,
            weight=weight,
            timestamp=timestamp or _now(),
            outcome=outcome if etype is EdgeType.INTERACTION else None,
        )

        with self._lock:
            if etype is EdgeType.VOUCH and (src, dst) in self._vouch_pairs:
                raise DuplicateVouch(source, target)
            self._append(edge, source.strip(), target.strip())
            self._version += 1

        logger.debug("edge_added", edge_id=edge.edge_id, type=etype.value,
                     source=src, target=dst, weight=weight)
        self._notify()
        return edge.edge_id

    def _append(self, edge: Edge, source_name: str, target_name: str) -> None:
        self._index[edge.edge_id] = len(self._edges)
        self._edges.append(edge)
        self._nodes.setdefault(edge.source, source_name)
        self._nodes.setdefault(edge.target, target_name)
        if edge.edge_type is EdgeType.VOUCH:
            self._vouch_pairs.add((edge.source, edge.target))

    def deactivate_trust(self, edge_id: str) -> Edge:
        """
        Tombstone a trust edge. Idempotent: an already-inactive edge is
        returned unchanged and the version does not move.

        Raises:
            NotFound: no trust edge with this id
        """
        with self._lock:
            pos = self._index.get(edge_id)
            if pos is None or self._edges[pos].edge_type is not EdgeType.TRUST:
                raise NotFound("trust edge", edge_id)
            edge = self._edges[pos]
            if not edge.active:
                return edge
            edge = replace(edge, active=False, deactivated_at=_now())
            self._edges[pos] = edge
            self._version += 1

        logger.info("trust_deactivated", edge_id=edge_id, source=edge.source, target=edge.target)
        self._notify()
        return edge

    def set_karma(self, agent: str, karma: float) -> None:
        """Record the external reputation signal for one agent."""
        self.set_karma_bulk({agent: karma})

    def set_karma_bulk(self, karma: Mapping[str, float]) -> int:
        """Record external karma for many agents as a single mutation."""
        clean = {}
        for agent, value in karma.items():
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ValidationError(f"karma for {agent} must be a number") from None
            if not math.isfinite(value):
                raise ValidationError(f"karma for {agent} must be finite")
            clean[normalize_agent_id(agent)] = value
        if not clean:
            return 0

        with self._lock:
            self._karma.update(clean)
            self._version += 1

        logger.info("karma_updated", agents=len(clean))
        self._notify()
        return len(clean)

    def restore(self, edges: Iterable[Edge], karma: Mapping[str, float], version: int = 0) -> None:
        """Load durable state into an empty store. Does not notify listeners."""
        with self._lock:
            if self._edges:
                raise ValidationError("restore() requires an empty graph store")
            for edge in sorted(edges, key=lambda e: e.timestamp):
                self._append(edge, edge.source, edge.target)
            self._karma.update(karma)
            self._version = max(int(version), len(self._edges))
        logger.info("graph_restored", edges=len(self._edges), nodes=len(self._nodes),
                    version=self._version)

    # --------------------------------------------------------
    # Reads
    # --------------------------------------------------------

    def snapshot_graph(self) -> GraphSnapshot:
        with self._lock:
            return GraphSnapshot(
                version=self._version,
                nodes=frozenset(self._nodes),
                edges=tuple(self._edges),
                karma=MappingProxyType(dict(self._karma)),
                names=MappingProxyType(dict(self._nodes)),
            )

    def get_edge(self, edge_id: str) -> Edge:
        with self._lock:
            pos = self._index.get(edge_id)
            if pos is None:
                raise NotFound("edge", edge_id)
            return self._edges[pos]

    def has_agent(self, agent: str) -> bool:
        with self._lock:
            return normalize_agent_id(agent) in self._nodes

    def get_karma(self, agent: str) -> float:
        with self._lock:
            return self._karma.get(normalize_agent_id(agent), 0.0)

    def query_edges(
        self,
        agent: Optional[str] = None,
        edge_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        active_only: bool = False,
    ) -> List[Edge]:
        """Filter the edge log. Newest first."""
        key = normalize_agent_id(agent) if agent else None
        try:
            etype = EdgeType(edge_type) if edge_type else None
        except ValueError:
            raise ValidationError(f"unknown edge type: {edge_type}") from None
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        with self._lock:
            edges = list(self._edges)

        results = [
            e for e in edges
            if (key is None or key in (e.source, e.target))
            and (etype is None or e.edge_type is etype)
            and (since is None or e.timestamp >= since)
            and (not active_only or e.active)
        ]
        results.sort(key=lambda e: e.timestamp, reverse=True)
        return results[:limit] if limit is not None else results

    @property
    def node_count(self) -> int:
        with self._lock:
            return len(self._nodes)

    @property
    def edge_count(self) -> int:
        with self._lock:
            return len(self._edges)


def is_success(outcome: Optional[str]) -> bool:
    """Interaction outcomes: anything but an explicit failure counts as success."""
    if outcome is None:
        return True
    return outcome.strip().lower() not in ("failure", "failed", "fail", "error")
