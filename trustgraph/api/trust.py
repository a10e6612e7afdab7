"""
TrustGraph — Reputation API
HTTP surface over the TrustEngine.

Queries:
    GET    /v1/reputation/{agent}                    - Scores, percentile, profile
    GET    /v1/leaderboard                           - Top agents by dimension
    GET    /v1/percentile/{agent}                    - Composite-score percentile
    GET    /v1/safety/{artifact_id}                  - Vouch-weighted safety tier
    GET    /v1/safety                                - Tier histogram
    GET    /v1/vouches/artifacts/{artifact}          - Vouch records on an artifact
    GET    /v1/vouches/agents/{voucher}              - Artifact vouches written by a rater
    GET    /v1/trust/agents/{agent}                  - Active trust in and out

Mutations:
    POST   /v1/interactions                          - Record an interaction
    POST   /v1/vouches/agents                        - Vouch for an agent
    POST   /v1/vouches/artifacts                     - Vouch for an artifact
    DELETE /v1/vouches/artifacts/{artifact}/{voucher}- Revoke an artifact vouch
    POST   /v1/trust                                 - Declare trust
    DELETE /v1/trust/{edge_id}                       - Revoke trust (tombstone)
    PUT    /v1/karma                                 - Supply external karma

Graph:
    GET    /v1/graph/stats | clusters | path | edges | agents/{agent}

Snapshot:
    GET    /v1/snapshot                              - Snapshot metadata + cache state
    POST   /v1/snapshot/recompute                    - Force a rebuild

Domain errors are mapped to status codes by the app's exception handlers.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
import structlog

from trustgraph.compute.pipeline import TrustEngine, get_engine

logger = structlog.get_logger()


# =============================================
# REQUEST/RESPONSE MODELS
# =============================================

class InteractionRequest(BaseModel):
    agent_a: str = Field(..., min_length=1, max_length=200)
    agent_b: str = Field(..., min_length=1, max_length=200)
    outcome: str = "success"
    weight: Optional[float] = None
    timestamp: Optional[datetime] = None


class AgentVouchRequest(BaseModel):
    voucher: str = Field(..., min_length=1, max_length=200)
    target: str = Field(..., min_length=1, max_length=200)
    weight: Optional[float] = None


class ArtifactVouchRequest(BaseModel):
    voucher: str = Field(..., min_length=1, max_length=200)
    artifact_id: str = Field(..., min_length=1, max_length=200)
    passed: bool
    evidence: Optional[str] = Field(None, max_length=2000)


class TrustRequest(BaseModel):
    source: str = Field(..., min_length=1, max_length=200)
    target: str = Field(..., min_length=1, max_length=200)
    weight: Optional[float] = None


class KarmaRequest(BaseModel):
    karma: Dict[str, float]


class EdgeCreatedResponse(BaseModel):
    edge_id: str
    edge_type: str
    graph_version: int


class SafetyResponse(BaseModel):
    artifact_id: str
    tier: str
    score: float
    vouch_count: int
    weighted_vouch_mass: float
    passed: int
    failed: int
    details: str


class PercentileResponse(BaseModel):
    agent: str
    percentile: float
    snapshot_version: int


class VouchRecordResponse(BaseModel):
    record_id: str
    rater: str
    artifact_id: str
    passed: bool
    evidence: Optional[str]
    created_at: str
    active: bool


# =============================================
# ENGINE DEPENDENCY
# =============================================

def engine_dependency() -> TrustEngine:
    """Process-wide engine. Tests swap it via app.dependency_overrides."""
    return get_engine()


# =============================================
# QUERY + MUTATION ROUTES
# =============================================

trust_router = APIRouter(prefix="/v1", tags=["reputation"])


@trust_router.get("/reputation/{agent}")
def get_reputation(agent: str, engine: TrustEngine = Depends(engine_dependency)):
    return engine.get_reputation(agent)


@trust_router.get("/leaderboard")
def leaderboard(
    limit: int = Query(default=50, ge=1, le=500),
    by: str = Query(default="composite", description="composite | influence | interactions | karma"),
    engine: TrustEngine = Depends(engine_dependency),
):
    return engine.leaderboard(limit=limit, by=by)


@trust_router.get("/percentile/{agent}", response_model=PercentileResponse)
def percentile(agent: str, engine: TrustEngine = Depends(engine_dependency)):
    snapshot = engine.snapshot()
    return PercentileResponse(
        agent=agent,
        percentile=round(engine.percentile(agent), 2),
        snapshot_version=snapshot.version,
    )


@trust_router.get("/safety/{artifact_id}", response_model=SafetyResponse)
def artifact_safety(artifact_id: str, engine: TrustEngine = Depends(engine_dependency)):
    return engine.safety(artifact_id).to_dict()


@trust_router.get("/safety")
def safety_overview(engine: TrustEngine = Depends(engine_dependency)):
    return engine.safety_overview()


@trust_router.post("/interactions", response_model=EdgeCreatedResponse, status_code=201)
def record_interaction(req: InteractionRequest, engine: TrustEngine = Depends(engine_dependency)):
    edge_id = engine.record_interaction(
        req.agent_a, req.agent_b, outcome=req.outcome,
        weight=req.weight, timestamp=req.timestamp,
    )
    return EdgeCreatedResponse(edge_id=edge_id, edge_type="interaction",
                               graph_version=engine.graph.version)


@trust_router.post("/vouches/agents", response_model=EdgeCreatedResponse, status_code=201)
def vouch_for_agent(req: AgentVouchRequest, engine: TrustEngine = Depends(engine_dependency)):
    edge_id = engine.vouch_for_agent(req.voucher, req.target, weight=req.weight)
    return EdgeCreatedResponse(edge_id=edge_id, edge_type="vouch",
                               graph_version=engine.graph.version)


@trust_router.post("/vouches/artifacts", response_model=VouchRecordResponse, status_code=201)
def vouch_for_artifact(req: ArtifactVouchRequest, engine: TrustEngine = Depends(engine_dependency)):
    record = engine.vouch_for_artifact(req.voucher, req.artifact_id, req.passed, req.evidence)
    return record.to_dict()


@trust_router.get("/vouches/artifacts/{artifact_id}", response_model=List[VouchRecordResponse])
def list_artifact_vouches(
    artifact_id: str,
    include_revoked: bool = False,
    engine: TrustEngine = Depends(engine_dependency),
):
    return [r.to_dict() for r in engine.artifact_vouches(artifact_id, include_revoked=include_revoked)]


@trust_router.get("/vouches/agents/{voucher}", response_model=List[VouchRecordResponse])
def list_rater_vouches(
    voucher: str,
    include_revoked: bool = False,
    engine: TrustEngine = Depends(engine_dependency),
):
    return [r.to_dict() for r in engine.rater_vouches(voucher, include_revoked=include_revoked)]


@trust_router.delete("/vouches/artifacts/{artifact_id}/{voucher}", response_model=VouchRecordResponse)
def revoke_artifact_vouch(artifact_id: str, voucher: str, engine: TrustEngine = Depends(engine_dependency)):
    return engine.revoke_artifact_vouch(voucher, artifact_id).to_dict()


@trust_router.post("/trust", response_model=EdgeCreatedResponse, status_code=201)
def set_trust(req: TrustRequest, engine: TrustEngine = Depends(engine_dependency)):
    edge_id = engine.set_trust(req.source, req.target, weight=req.weight)
    return EdgeCreatedResponse(edge_id=edge_id, edge_type="trust",
                               graph_version=engine.graph.version)


@trust_router.get("/trust/agents/{agent}")
def trust_relationships(agent: str, engine: TrustEngine = Depends(engine_dependency)):
    return engine.trust_relationships(agent)


@trust_router.delete("/trust/{edge_id}")
def revoke_trust(edge_id: str, engine: TrustEngine = Depends(engine_dependency)):
    return engine.revoke_trust(edge_id)


@trust_router.put("/karma")
def set_karma(req: KarmaRequest, engine: TrustEngine = Depends(engine_dependency)):
    updated = engine.set_karma_bulk(req.karma)
    return {"updated": updated, "graph_version": engine.graph.version}


# =============================================
# GRAPH ANALYTICS
# =============================================

graph_router = APIRouter(prefix="/v1/graph", tags=["graph"])


@graph_router.get("/stats")
def graph_stats(engine: TrustEngine = Depends(engine_dependency)):
    return engine.graph_stats()


@graph_router.get("/clusters")
def graph_clusters(
    min_size: int = Query(default=1, ge=1),
    engine: TrustEngine = Depends(engine_dependency),
):
    components = [c for c in engine.clusters() if len(c) >= min_size]
    return {"clusters": components, "count": len(components)}


@graph_router.get("/path")
def graph_path(
    source: str = Query(..., alias="from"),
    target: str = Query(..., alias="to"),
    engine: TrustEngine = Depends(engine_dependency),
):
    path = engine.shortest_path(source, target)
    return {
        "from": source,
        "to": target,
        "path": path,
        "hops": len(path) - 1 if path else None,
        "connected": path is not None,
    }


@graph_router.get("/agents/{agent}")
def graph_agent(agent: str, engine: TrustEngine = Depends(engine_dependency)):
    return engine.agent_profile(agent)


@graph_router.get("/edges")
def graph_edges(
    agent: Optional[str] = None,
    edge_type: Optional[str] = Query(default=None, alias="type"),
    since: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    engine: TrustEngine = Depends(engine_dependency),
) -> Dict[str, Any]:
    edges: List[Dict[str, Any]] = engine.list_edges(agent=agent, edge_type=edge_type, since=since, limit=limit)
    return {"edges": edges, "count": len(edges)}


# =============================================
# SNAPSHOT ADMIN
# =============================================

snapshot_router = APIRouter(prefix="/v1/snapshot", tags=["snapshot"])


@snapshot_router.get("")
def snapshot_status(engine: TrustEngine = Depends(engine_dependency)):
    snapshot = engine.snapshot()
    return {"snapshot": snapshot.metadata(), "cache": engine.cache.stats()}


@snapshot_router.post("/recompute")
def snapshot_recompute(engine: TrustEngine = Depends(engine_dependency)):
    snapshot = engine.recompute()
    logger.info("snapshot_recompute_requested", version=snapshot.version)
    return {"snapshot": snapshot.metadata()}
