"""
TrustGraph — Maintenance Jobs
Keeps the durable snapshot and the external karma signal fresh.

Jobs:
    1. Karma import — load external karma (agent,karma CSV) from a file or URL
    2. Snapshot recompute — rebuild the reputation snapshot and persist it

Run manually:
    python -m trustgraph.compute.refresh karma karma.csv
    python -m trustgraph.compute.refresh karma https://example.org/karma.csv
    python -m trustgraph.compute.refresh recompute
"""
import asyncio
import csv
import io
import sys
import time
from typing import Dict

import httpx
import structlog

from trustgraph.compute.pipeline import TrustEngine, get_engine, shutdown

logger = structlog.get_logger()


# ── Karma Import ──────────────────────────────────

def parse_karma_csv(text: str) -> Dict[str, float]:
    """
    Rows of `agent,karma`. A header row and malformed rows are skipped.
    Later rows win for repeated agents.
    """
    karma: Dict[str, float] = {}
    skipped = 0
    for row in csv.reader(io.StringIO(text)):
        if len(row) < 2 or not row[0].strip():
            skipped += 1
            continue
        try:
            karma[row[0].strip()] = float(row[1])
        except ValueError:
            skipped += 1
    if skipped:
        logger.info("karma_rows_skipped", skipped=skipped)
    return karma


async def fetch_karma_csv(source: str) -> str:
    if source.startswith(("http://", "https://")):
        async with httpx.AsyncClient() as client:
            resp = await client.get(source, timeout=60.0)
            resp.raise_for_status()
            return resp.text
    with open(source, encoding="utf-8") as f:
        return f.read()


async def import_karma(engine: TrustEngine, source: str) -> int:
    """Load external karma into the graph as one mutation."""
    logger.info("karma_import_starting", source=source)
    start = time.time()

    karma = parse_karma_csv(await fetch_karma_csv(source))
    count = engine.set_karma_bulk(karma)

    elapsed = round(time.time() - start, 2)
    logger.info("karma_import_complete", agents=count, elapsed_seconds=elapsed)
    print(f"Karma import complete: {count:,} agents updated in {elapsed}s")
    return count


# ── Snapshot Recompute ────────────────────────────

def recompute_snapshot(engine: TrustEngine) -> dict:
    snapshot = engine.recompute()
    engine.flush()
    meta = snapshot.metadata()
    print(
        f"Snapshot v{meta['version']} (graph v{meta['graph_version']}): "
        f"{meta['agents']} agents, {meta['iterations_used']} iterations, "
        f"converged={meta['converged']}"
    )
    return meta


# ── CLI Entry Point ───────────────────────────────

async def main():
    if len(sys.argv) < 2:
        print("Usage: python -m trustgraph.compute.refresh [karma <csv>|recompute]")
        sys.exit(1)

    cmd = sys.argv[1]
    engine = get_engine()
    try:
        if cmd == "karma":
            if len(sys.argv) < 3:
                print("Usage: python -m trustgraph.compute.refresh karma <path-or-url>")
                sys.exit(1)
            await import_karma(engine, sys.argv[2])
            recompute_snapshot(engine)
        elif cmd == "recompute":
            recompute_snapshot(engine)
        else:
            print(f"Unknown command: {cmd}")
            sys.exit(1)
    finally:
        shutdown()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
