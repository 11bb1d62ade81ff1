"""
main.py — Single entry point.

Runs the HTTP service and the embedding backfill job in the same asyncio
event loop — no threads, no subprocesses.

Architecture:
  asyncio event loop
    ├── aiohttp web server   (/identify, /search, /match, /products, /health)
    └── backfill task        (embeds catalog rows that have no vector yet)
         Only started when BACKFILL_ENABLED=true.
"""
import asyncio
import logging
import signal
import sys

import config

# Log file lives in the same data/ directory as the database so that a single
# Docker volume mount (./data:/app/data) captures both.
config.DATA_DIR.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(config.DATA_DIR / "pipeline.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def run() -> None:
    # ── Database bootstrap (must happen before anything else) ─────────────────
    import database as _db
    try:
        await _db.init_db()
        total, embedded = await _db.count_entries()
        logger.info("Database ready at %s (%d entries, %d embedded)", _db.DB_PATH, total, embedded)
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise

    # ── Composition root: gate, providers, index, engines ─────────────────────
    from pipeline import build_pipeline
    try:
        pipeline = await build_pipeline()
    except Exception as exc:
        logger.critical("FATAL: pipeline wiring failed: %s", exc, exc_info=True)
        raise

    from server import start_server
    web_runner = await start_server(pipeline)

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    # ── Start embedding backfill ──────────────────────────────────────────────
    import backfill
    backfill_task = backfill.start(pipeline) if config.BACKFILL_ENABLED else None

    logger.info("✅ Pipeline is running. Press Ctrl+C to stop.")

    # Block until signal received
    try:
        await stop_event.wait()
    except (KeyboardInterrupt, SystemExit):
        pass

    # Graceful shutdown
    logger.info("Shutting down…")
    if backfill_task:
        backfill.stop()
        backfill_task.cancel()
        try:
            await backfill_task
        except asyncio.CancelledError:
            pass

    await web_runner.cleanup()
    logger.info("HTTP server stopped.")
    logger.info("Goodbye.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
