"""
TrustGraph — Rank Cache
Holds the latest ReputationSnapshot and decides when to rebuild it.

Snapshot lifecycle:
    absent    → no snapshot has ever been built or restored
    computing → a rebuild is in flight (at most one at a time)
    ready     → the latest snapshot matches the graph version
    stale     → a snapshot exists but the graph has moved on

Invalidation is lazy: a graph mutation only marks the cache stale; the
next reader pays for the rebuild. Concurrent readers that find the cache
stale coalesce onto one in-flight rebuild (single-flight). While it runs,
readers either wait for it (default) or get the last ready snapshot
(serve_stale=True).

The rebuild runs against GraphStore.snapshot_graph(), never the live
graph, so writers are not blocked for its duration. A mutation landing
mid-rebuild simply makes the new snapshot stale on arrival; the next
read rebuilds again.
"""
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from trustgraph.graph.store import GraphStore, normalize_agent_id
from trustgraph.trust.engine import CompositeScorer, ReputationSnapshot, build_snapshot
from trustgraph.trust.influence import InfluenceSolver

logger = structlog.get_logger()


class SnapshotState(str, Enum):
    ABSENT    = "absent"
    COMPUTING = "computing"
    READY     = "ready"
    STALE     = "stale"


class RankCache:
    """
    Usage:
        cache = RankCache(store, InfluenceSolver(), CompositeScorer())
        store.add_listener(cache.invalidate)

        snap = cache.get_snapshot()      # rebuilds if the graph moved
        cache.percentile("alice")
    """

    def __init__(
        self,
        graph_store: GraphStore,
        solver: InfluenceSolver,
        scorer: CompositeScorer,
        serve_stale: bool = False,
        on_snapshot: Optional[Callable[[ReputationSnapshot], None]] = None,
    ):
        self.graph_store = graph_store
        self.solver = solver
        self.scorer = scorer
        self.serve_stale = serve_stale
        self._on_snapshot = on_snapshot

        self._cond = threading.Condition()
        self._snapshot: Optional[ReputationSnapshot] = None
        self._computing = False
        self._dirty = True
        self._generation = 0             # bumped when a rebuild finishes (ok or not)
        self._snapshot_generation = 0    # generation that produced _snapshot
        self._next_version = 1

        self._computes = 0
        self._coalesced = 0
        self._stale_served = 0
        self._last_compute_ms = 0.0

    # --------------------------------------------------------
    # Reads
    # --------------------------------------------------------

    def get_snapshot(self) -> ReputationSnapshot:
        """Latest snapshot, rebuilt first when absent or behind the graph."""
        with self._cond:
            while True:
                if self._snapshot is not None and self._is_fresh():
                    return self._snapshot

                if not self._computing:
                    self._computing = True
                    break

                if self.serve_stale and self._snapshot is not None:
                    self._stale_served += 1
                    return self._snapshot

                # join the in-flight rebuild
                self._coalesced += 1
                generation = self._generation
                while self._generation == generation:
                    self._cond.wait()
                if self._snapshot is not None and self._snapshot_generation > generation:
                    return self._snapshot
                # that rebuild failed; loop and take over

        return self._rebuild()

    def peek(self) -> Optional[ReputationSnapshot]:
        """Last built snapshot without triggering a rebuild."""
        with self._cond:
            return self._snapshot

    def percentile(self, agent: str) -> float:
        """0 for an agent the latest snapshot has never scored."""
        return self.get_snapshot().percentile(normalize_agent_id(agent))

    def composite_score(self, agent: str) -> Optional[float]:
        """Voucher reputation lookup. None when the agent has no snapshot entry."""
        snap = self.peek()
        if snap is None:
            return None
        entry = snap.get(normalize_agent_id(agent))
        return entry.composite_score if entry else None

    @property
    def state(self) -> SnapshotState:
        with self._cond:
            if self._computing:
                return SnapshotState.COMPUTING
            if self._snapshot is None:
                return SnapshotState.ABSENT
            return SnapshotState.READY if self._is_fresh() else SnapshotState.STALE

    # --------------------------------------------------------
    # Writes
    # --------------------------------------------------------

    def invalidate(self) -> None:
        """Mark the cached snapshot stale. Does not rebuild."""
        with self._cond:
            self._dirty = True

    def install(self, snapshot: ReputationSnapshot) -> bool:
        """
        Adopt a snapshot built elsewhere (durable storage, a worker).
        Ignored if it is older than the one already held.
        """
        with self._cond:
            if self._snapshot is not None and snapshot.graph_version < self._snapshot.graph_version:
                return False
            self._set(snapshot)
        logger.info("snapshot_installed", version=snapshot.version,
                    graph_version=snapshot.graph_version)
        return True

    def recompute(self, force: bool = True) -> ReputationSnapshot:
        """Rebuild now. With force=False this is just get_snapshot()."""
        if force:
            self.invalidate()
        return self.get_snapshot()

    # --------------------------------------------------------
    # Internals
    # --------------------------------------------------------

    def _is_fresh(self) -> bool:
        return not self._dirty and self._snapshot.graph_version >= self.graph_store.version

    def _set(self, snapshot: ReputationSnapshot) -> None:
        self._snapshot = snapshot
        self._next_version = max(self._next_version, snapshot.version + 1)
        self._dirty = snapshot.graph_version < self.graph_store.version

    def _rebuild(self) -> ReputationSnapshot:
        start = time.monotonic()
        with self._cond:
            version = self._next_version
            self._next_version += 1
            # mutations from here on re-dirty the cache via invalidate()
            self._dirty = False

        try:
            graph = self.graph_store.snapshot_graph()
            snapshot = build_snapshot(graph, self.solver, self.scorer, version)
        except Exception as e:
            with self._cond:
                self._dirty = True
                self._computing = False
                self._generation += 1
                self._cond.notify_all()
            logger.error("snapshot_compute_failed", version=version, error=str(e))
            raise

        elapsed = round((time.monotonic() - start) * 1000, 2)
        with self._cond:
            self._snapshot = snapshot
            self._dirty = self._dirty or snapshot.graph_version < self.graph_store.version
            self._computing = False
            self._generation += 1
            self._snapshot_generation = self._generation
            self._computes += 1
            self._last_compute_ms = elapsed
            self._cond.notify_all()

        logger.info(
            "snapshot_computed",
            version=snapshot.version,
            graph_version=snapshot.graph_version,
            agents=len(snapshot),
            iterations=snapshot.iterations_used,
            converged=snapshot.converged,
            compute_ms=elapsed,
        )
        if self._on_snapshot is not None:
            self._on_snapshot(snapshot)
        return snapshot

    def stats(self) -> Dict[str, Any]:
        with self._cond:
            snap = self._snapshot
            return {
                "state": self.state.value,
                "serve_stale": self.serve_stale,
                "snapshot_version": snap.version if snap else None,
                "snapshot_graph_version": snap.graph_version if snap else None,
                "graph_version": self.graph_store.version,
                "computes": self._computes,
                "coalesced_reads": self._coalesced,
                "stale_reads": self._stale_served,
                "last_compute_ms": self._last_compute_ms,
            }
