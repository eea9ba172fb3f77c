"""
APScheduler jobs for automatic syncs.

A single interval job wakes up every auto_sync_check_minutes and triggers
an "automatic" sync for every enabled facility whose sync_interval_minutes
has elapsed since its last completed sync. Facilities with no interval are
only synced on demand.

The scheduler runs inside the same event loop as the API (wired in
__main__.py).
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from fmssync.config import get_settings
from fmssync.models.sync import FacilitySyncConfig, TriggerSource
from fmssync.sync.errors import AlreadyRunning

logger = logging.getLogger(__name__)


def build_scheduler(orchestrator) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        orchestrator: SyncOrchestrator the job triggers syncs on.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _auto_sync,
        trigger="interval",
        minutes=settings.auto_sync_check_minutes,
        id="auto_sync",
        replace_existing=True,
        kwargs={"orchestrator": orchestrator},
    )

    return scheduler


def due_configs(
    configs: List[FacilitySyncConfig], now: Optional[datetime] = None
) -> List[FacilitySyncConfig]:
    """Enabled configs with an interval that has elapsed since the last sync."""
    now = now or datetime.utcnow()
    due = []
    for config in configs:
        if not config.is_enabled or not config.sync_interval_minutes:
            continue
        if config.last_sync_at is None or now - config.last_sync_at >= timedelta(
            minutes=config.sync_interval_minutes
        ):
            due.append(config)
    return due


async def _auto_sync(orchestrator) -> None:
    """
    Interval job: trigger automatic syncs for due facilities.

    Facilities sync independently; one failing or busy facility never
    stops the others.
    """
    configs = due_configs(orchestrator.store.list_enabled_configs())
    if not configs:
        return
    logger.info("Automatic sync for %d facilities", len(configs))
    await asyncio.gather(*(_sync_one(orchestrator, c.facility_id) for c in configs))


async def _sync_one(orchestrator, facility_id: str) -> None:
    try:
        result = await orchestrator.trigger_sync(
            facility_id, triggered_by=TriggerSource.AUTOMATIC.value
        )
        logger.info("Automatic sync for %s finished as %s", facility_id, result.status)
    except AlreadyRunning:
        logger.info("Skipping automatic sync for %s: a sync is already active", facility_id)
    except Exception as exc:
        logger.error("Automatic sync for %s failed: %s", facility_id, exc)
