"""
TrustGraph - Worker Settings

arq worker that keeps the durable reputation snapshot warm.
API processes load it on startup instead of paying for a cold recompute.

Storage I/O and the solver are synchronous, so jobs hand them to a thread
and keep the worker's event loop free for arq's own Redis traffic.

Run:
    arq trustgraph.workers.worker_settings.WorkerSettings
"""
import asyncio
from typing import Optional, Tuple

from arq import cron
from arq.connections import RedisSettings

import structlog

from trustgraph.compute.pipeline import TrustEngine
from trustgraph.config import settings
from trustgraph.trust.engine import ReputationSnapshot

logger = structlog.get_logger()

REDIS_SETTINGS = RedisSettings.from_dsn(settings.REDIS_URL)


def _load_engine() -> TrustEngine:
    engine = TrustEngine.from_settings(settings)
    engine.load()
    return engine


def rebuild_from_storage(previous: Optional[TrustEngine] = None) -> Tuple[TrustEngine, ReputationSnapshot]:
    """
    Replay the latest durable state into a fresh engine, rebuild and persist.
    API processes write edges through to storage, so the previous engine's
    in-memory copy is discarded.
    """
    if previous is not None:
        previous.state.close()
    engine = _load_engine()
    snapshot = engine.recompute()
    engine.flush()
    return engine, snapshot


async def startup(ctx):
    engine = await asyncio.to_thread(_load_engine)
    ctx["engine"] = engine
    logger.info("worker_started", backend=engine.state.backend)


async def shutdown(ctx):
    engine = ctx.get("engine")
    if engine is not None:
        await asyncio.to_thread(engine.close)
    logger.info("worker_stopped")


async def recompute_snapshot(ctx):
    engine, snapshot = await asyncio.to_thread(rebuild_from_storage, ctx.get("engine"))
    ctx["engine"] = engine
    logger.info("scheduled_recompute_complete", version=snapshot.version,
                graph_version=snapshot.graph_version, agents=len(snapshot),
                converged=snapshot.converged)
    return snapshot.metadata()


class WorkerSettings:
    """arq worker configuration."""

    functions = [recompute_snapshot]

    cron_jobs = [
        cron(
            recompute_snapshot,
            minute=settings.RECOMPUTE_MINUTES,
            unique=True,  # Prevent duplicate runs
        ),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = REDIS_SETTINGS
    max_jobs = 1
    job_timeout = 300
