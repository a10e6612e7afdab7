"""
TrustGraph — State Persistence Layer
Durable key-value state behind the in-memory graph and vouch stores.

Three logical collections plus bookkeeping:
    edges      append-mostly, trust edges rewritten when tombstoned
    vouches    append-mostly, one active record per (rater, artifact)
    snapshot   single latest ReputationSnapshot, replace-on-write

Key Schema (Redis, prefix configurable):
    tg:edges          → hash  edge_id → Edge JSON
    tg:vouches        → hash  "rater|artifact|record_id" → VouchRecord JSON
    tg:karma          → hash  agent → external karma
    tg:graph_version  → string
    tg:snapshot       → string, full snapshot JSON
    tg:snapshot_graph_version → string, graph version of the stored snapshot

Storage is best-effort, like a cache: if Redis is down the engine logs
state_store_unavailable and keeps serving from memory.

Dependencies: redis >= 5.0.0
"""
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import redis
import structlog

from trustgraph.graph.store import Edge
from trustgraph.trust.engine import ReputationSnapshot
from trustgraph.trust.safety import VouchRecord

logger = structlog.get_logger()


@dataclass
class PersistedState:
    edges: List[Edge] = field(default_factory=list)
    vouches: List[VouchRecord] = field(default_factory=list)
    karma: Dict[str, float] = field(default_factory=dict)
    graph_version: int = 0
    snapshot: Optional[ReputationSnapshot] = None

    @property
    def empty(self) -> bool:
        return not (self.edges or self.vouches or self.karma)


class StateStore:
    """Interface shared by both backends."""

    backend = "none"

    def save_edge(self, edge: Edge) -> bool:
        raise NotImplementedError

    def save_vouch(self, record: VouchRecord) -> bool:
        raise NotImplementedError

    def save_karma(self, karma: Mapping[str, float]) -> bool:
        raise NotImplementedError

    def save_graph_version(self, version: int) -> bool:
        raise NotImplementedError

    def save_snapshot(self, snapshot: ReputationSnapshot) -> bool:
        raise NotImplementedError

    def load_all(self) -> PersistedState:
        raise NotImplementedError

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.backend}

    def close(self):
        pass


# =============================================
# IN-MEMORY (development, tests)
# =============================================

class MemoryStateStore(StateStore):
    """
    Process-local store. Survives an engine restart inside one process,
    which is all tests and local development need.
    """

    backend = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._edges: Dict[str, Dict[str, Any]] = {}
        self._vouches: Dict[str, Dict[str, Any]] = {}
        self._karma: Dict[str, float] = {}
        self._graph_version = 0
        self._snapshot: Optional[Dict[str, Any]] = None

    def save_edge(self, edge: Edge) -> bool:
        with self._lock:
            self._edges[edge.edge_id] = edge.to_dict()
        return True

    def save_vouch(self, record: VouchRecord) -> bool:
        with self._lock:
            self._vouches[record.record_id] = record.to_dict()
        return True

    def save_karma(self, karma: Mapping[str, float]) -> bool:
        with self._lock:
            self._karma.update(karma)
        return True

    def save_graph_version(self, version: int) -> bool:
        with self._lock:
            self._graph_version = max(self._graph_version, version)
        return True

    def save_snapshot(self, snapshot: ReputationSnapshot) -> bool:
        with self._lock:
            if self._snapshot and self._snapshot["graph_version"] > snapshot.graph_version:
                return False
            self._snapshot = snapshot.to_full()
        return True

    def load_all(self) -> PersistedState:
        with self._lock:
            return PersistedState(
                edges=[Edge.from_dict(d) for d in self._edges.values()],
                vouches=[VouchRecord.from_dict(d) for d in self._vouches.values()],
                karma=dict(self._karma),
                graph_version=self._graph_version,
                snapshot=ReputationSnapshot.from_full(self._snapshot) if self._snapshot else None,
            )

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "backend": self.backend,
                "edges": len(self._edges),
                "vouches": len(self._vouches),
                "has_snapshot": self._snapshot is not None,
            }


# =============================================
# REDIS
# =============================================

class RedisStateStore(StateStore):
    """
    Redis-backed durable state.

    Usage:
        store = RedisStateStore("redis://localhost:6379/0")
        store.save_edge(edge)
        state = store.load_all()
    """

    backend = "redis"

    def __init__(self, redis_url: str, prefix: str = "tg"):
        self._url = redis_url
        self._prefix = prefix
        self._pool = None
        self._client: Optional[redis.Redis] = None
        self._enabled = True

    def _key(self, name: str) -> str:
        return f"{self._prefix}:{name}"

    def _connect(self) -> Optional[redis.Redis]:
        """Connects on first use; a failed ping disables the store for the process."""
        if not self._enabled:
            return None
        if self._client is None:
            try:
                self._pool = redis.ConnectionPool.from_url(
                    self._url,
                    max_connections=20,
                    decode_responses=True,
                    socket_connect_timeout=3,
                    socket_timeout=2,
                    retry_on_timeout=True,
                )
                self._client = redis.Redis(connection_pool=self._pool)
                self._client.ping()
                logger.info("state_store_connected", url=self._url.split("@")[-1])
            except redis.RedisError as e:
                logger.warning("state_store_unavailable", error=str(e))
                self._enabled = False
                self._client = None
        return self._client

    def _write(self, op: str, fn) -> bool:
        client = self._connect()
        if not client:
            return False
        try:
            return fn(client) is not False
        except redis.RedisError as e:
            logger.warning("state_store_write_failed", op=op, error=str(e))
            return False

    def save_edge(self, edge: Edge) -> bool:
        return self._write("edge", lambda c: c.hset(
            self._key("edges"), edge.edge_id, json.dumps(edge.to_dict())
        ))

    def save_vouch(self, record: VouchRecord) -> bool:
        field_name = f"{record.rater}|{record.artifact_id}|{record.record_id}"
        return self._write("vouch", lambda c: c.hset(
            self._key("vouches"), field_name, json.dumps(record.to_dict())
        ))

    def save_karma(self, karma: Mapping[str, float]) -> bool:
        if not karma:
            return True
        return self._write("karma", lambda c: c.hset(
            self._key("karma"), mapping={agent: value for agent, value in karma.items()}
        ))

    def save_graph_version(self, version: int) -> bool:
        return self._write("graph_version", lambda c: c.set(self._key("graph_version"), version))

    def save_snapshot(self, snapshot: ReputationSnapshot) -> bool:
        """
        Replace the stored snapshot unless a newer graph version is already there.
        WATCH on the version key makes the check and the write one step, so a
        worker and an API process writing together cannot regress it.
        """
        version_key = self._key("snapshot_graph_version")
        payload = json.dumps(snapshot.to_full(), default=str)

        def replace_if_newer(pipe) -> bool:
            current = pipe.get(version_key)
            if current is not None and int(current) > snapshot.graph_version:
                logger.info("snapshot_write_skipped", stored_graph_version=int(current),
                            graph_version=snapshot.graph_version)
                return False
            pipe.multi()
            pipe.set(self._key("snapshot"), payload)
            pipe.set(version_key, snapshot.graph_version)
            return True

        return self._write("snapshot", lambda c: c.transaction(
            replace_if_newer, version_key, value_from_callable=True
        ))

    def load_all(self) -> PersistedState:
        client = self._connect()
        if not client:
            return PersistedState()

        try:
            edges = client.hgetall(self._key("edges"))
            vouches = client.hgetall(self._key("vouches"))
            karma = client.hgetall(self._key("karma"))
            version = client.get(self._key("graph_version"))
            snapshot = client.get(self._key("snapshot"))
        except redis.RedisError as e:
            logger.warning("state_store_unavailable", error=str(e))
            return PersistedState()

        state = PersistedState(
            edges=[Edge.from_dict(json.loads(raw)) for raw in edges.values()],
            vouches=[VouchRecord.from_dict(json.loads(raw)) for raw in vouches.values()],
            karma={agent: float(value) for agent, value in karma.items()},
            graph_version=int(version or 0),
            snapshot=ReputationSnapshot.from_full(json.loads(snapshot)) if snapshot else None,
        )
        logger.info("state_loaded", edges=len(state.edges), vouches=len(state.vouches),
                    agents_with_karma=len(state.karma), has_snapshot=state.snapshot is not None)
        return state

    def stats(self) -> Dict[str, Any]:
        client = self._connect()
        if not client:
            return {"backend": self.backend, "connected": False}
        try:
            return {
                "backend": self.backend,
                "connected": True,
                "edges": client.hlen(self._key("edges")),
                "vouches": client.hlen(self._key("vouches")),
                "has_snapshot": bool(client.exists(self._key("snapshot"))),
            }
        except redis.RedisError as e:
            return {"backend": self.backend, "connected": False, "error": str(e)}

    def close(self):
        """Shutdown state store connections."""
        if self._pool:
            self._pool.disconnect()
            logger.info("state_store_disconnected")
