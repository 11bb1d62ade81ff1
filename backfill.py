"""
backfill.py — background job that computes missing catalog embeddings.

Every BACKFILL_INTERVAL_SECS it takes up to BACKFILL_BATCH_SIZE entries with
no embedding, embeds each description through the Gate (one at a time, so
the job never fills the Gate's wait queue ahead of live requests), then
writes the vector to the index snapshot and to the DB.

Catalog text is authoritative, so backfilled vectors carry confidence 1.0.
Neither the index nor the DB ever replaces a higher-confidence embedding.
"""
from __future__ import annotations

import asyncio
import logging

from errors import Overloaded, PipelineError

logger = logging.getLogger(__name__)

BACKFILL_CONFIDENCE = 1.0

_running = False
_rejected: set[str] = set()     # codes upstream refused to embed; not retried


async def run_once(pipeline, batch_size: int) -> int:
    """Embed one batch. Returns the number of entries written."""
    import database as db

    index    = pipeline.index
    embedder = pipeline.embedder

    pending = [
        e for e in index.missing_embeddings(batch_size + len(_rejected))
        if e.code not in _rejected
    ][:batch_size]
    if not pending:
        return 0

    written = 0
    for entry in pending:
        try:
            vector = await embedder.embed(entry.description)
        except Overloaded:
            logger.info("Backfill paused: inference gate is overloaded")
            break
        except PipelineError as exc:
            if exc.kind in ("invalid_input", "rejected_input"):
                _rejected.add(entry.code)
            logger.warning("Backfill skipped %s (%s): %s", entry.code, exc.kind, exc)
            continue

        if not index.set_embeddings([(entry.code, vector, BACKFILL_CONFIDENCE)]):
            continue
        if await db.save_embedding(entry.code, vector, BACKFILL_CONFIDENCE):
            written += 1
        else:
            logger.warning("Backfill: DB kept existing embedding for %s", entry.code)

    logger.info(
        "Backfill wrote %d/%d embedding(s); %d of %d entries embedded",
        written, len(pending), index.embedded_count, len(index),
    )
    return written


async def _backfill_loop(pipeline) -> None:
    """Background coroutine — one batch per interval."""
    import config

    logger.info(
        "🧮 Embedding backfill started (every %.0fs, batch %d)",
        config.BACKFILL_INTERVAL_SECS, config.BACKFILL_BATCH_SIZE,
    )

    while _running:
        try:
            await run_once(pipeline, config.BACKFILL_BATCH_SIZE)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.error("Backfill loop error: %s", exc, exc_info=True)
        await asyncio.sleep(config.BACKFILL_INTERVAL_SECS)


def start(pipeline) -> asyncio.Task:
    """Start the backfill job as a background asyncio Task."""
    global _running
    _running = True
    return asyncio.create_task(_backfill_loop(pipeline))


def stop() -> None:
    global _running
    _running = False
