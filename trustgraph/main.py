"""
TrustGraph — Trust Graph & Reputation Service
Influence ranking, composite reputation and artifact safety tiers over one
shared interaction graph.

Start with:
    uvicorn trustgraph.main:app --host 0.0.0.0 --port 8000
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from trustgraph.config import settings
from trustgraph.errors import DuplicateVouch, NotFound, TrustGraphError, ValidationError

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.LOG_LEVEL.upper())
    ),
)
logger = structlog.get_logger()

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("service_starting", version=VERSION, environment=settings.ENVIRONMENT,
                persistence=settings.PERSISTENCE)

    from trustgraph.compute.pipeline import get_engine, shutdown as engine_shutdown
    engine = get_engine()
    logger.info("engine_initialized",
                nodes=engine.graph.node_count,
                edges=engine.graph.edge_count,
                snapshot_state=engine.cache.state.value)

    yield

    engine_shutdown()
    logger.info("service_stopped")


app = FastAPI(
    title="TrustGraph — Reputation Engine",
    description=(
        "Trust graph storage, PageRank-style influence, composite reputation "
        "and vouch-weighted artifact safety tiers."
    ),
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:8080"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "X-Response-Time"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())[:8]
    start = time.time()
    request.state.request_id = request_id
    response = await call_next(request)
    duration_ms = round((time.time() - start) * 1000, 2)
    response.headers["X-Request-Id"] = request_id
    response.headers["X-Response-Time"] = f"{duration_ms}ms"
    if request.url.path != "/health":
        logger.info("request",
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    duration_ms=duration_ms,
                    request_id=request_id)
    return response


# === Error mapping ===

def _status_for(exc: TrustGraphError) -> int:
    if isinstance(exc, DuplicateVouch):
        return 409
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    return 500


@app.exception_handler(TrustGraphError)
async def trustgraph_exception_handler(request: Request, exc: TrustGraphError):
    status = _status_for(exc)
    logger.info("request_rejected", path=request.url.path, status=status,
                error=type(exc).__name__, detail=str(exc))
    return JSONResponse(
        status_code=status,
        content={
            "error": type(exc).__name__,
            "message": str(exc),
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception",
                 path=request.url.path,
                 error=str(exc),
                 type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "Something went wrong.",
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


# === Routers ===

from trustgraph.api.trust import graph_router, snapshot_router, trust_router  # noqa: E402

app.include_router(trust_router)
app.include_router(graph_router)
app.include_router(snapshot_router)


# === Core endpoints ===

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "trustgraph",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/")
async def root():
    return {
        "name": "TrustGraph",
        "version": VERSION,
        "endpoints": {
            "reputation": "GET /v1/reputation/{agent}",
            "leaderboard": "GET /v1/leaderboard?limit=50&by=composite",
            "percentile": "GET /v1/percentile/{agent}",
            "safety": "GET /v1/safety/{artifact_id}",
            "interactions": "POST /v1/interactions",
            "vouches": "POST /v1/vouches/agents | /v1/vouches/artifacts",
            "trust": "POST /v1/trust",
            "graph": "GET /v1/graph/stats",
            "snapshot": "GET /v1/snapshot",
            "health": "GET /health",
            "docs": "GET /docs",
        },
    }
