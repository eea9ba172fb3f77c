"""
Main entrypoint: starts the FastAPI app and the auto-sync scheduler in one
process, sharing one SyncOrchestrator.

Usage:
    python -m fmssync               # starts API + scheduler
    uvicorn --factory fmssync.api.main:create_app --port 8000  # API only
"""
import asyncio
import logging

import uvicorn

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run() -> None:
    from fmssync.api.main import create_app
    from fmssync.config import get_settings
    from fmssync.db.engine import get_engine
    from fmssync.scheduler.jobs import build_scheduler
    from fmssync.sync.orchestrator import SyncOrchestrator

    settings = get_settings()
    engine = get_engine()
    orchestrator = SyncOrchestrator(engine, settings=settings)

    # Log every step transition so headless runs show progress
    orchestrator.events.subscribe(
        lambda event: logger.debug(
            "%s sync %s: %s %d%%",
            event.facility_id, event.sync_log_id, event.step, event.progress_percentage,
        )
    )

    scheduler = build_scheduler(orchestrator)
    scheduler.start()
    logger.info("Scheduler started (auto-sync check every %d min)", settings.auto_sync_check_minutes)

    app = create_app(engine=engine, orchestrator=orchestrator)
    server = uvicorn.Server(uvicorn.Config(app, host=settings.api_host, port=settings.api_port))
    try:
        await server.serve()
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    asyncio.run(_run())
