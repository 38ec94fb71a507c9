"""Timer-driven sweep: sync retries followed by the retention purge.

Uses APScheduler to run the sweep at SWEEP_INTERVAL_MINUTES. Every run works
from persisted state only, so a run cut short is simply resumed by the next.
"""
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from secure_entry.config import Settings
from secure_entry.database import SchemaCapabilities
from secure_entry.modules.archive_client import ArchiveClient
from secure_entry.modules.object_archive import LocalObjectArchive, ObjectArchive
from secure_entry.modules.record_store import RecordStore
from secure_entry.modules.retention import PurgeReport, purge_expired
from secure_entry.modules.sync_engine import SessionFactory, SyncSweepReport, run_sync_sweep

logger = logging.getLogger(__name__)


def run_sweep(
    *,
    settings: Settings,
    session_factory: SessionFactory,
    capabilities: SchemaCapabilities,
    client: Optional[ArchiveClient] = None,
    objects: Optional[ObjectArchive] = None,
) -> dict:
    """One full sweep. Each phase swallows its own errors so the other still runs."""
    client = client or ArchiveClient(settings)
    objects = objects or LocalObjectArchive(settings.OBJECT_STORE_DIR)
    results: dict = {"sync": None, "purge": None}

    try:
        results["sync"] = run_sync_sweep(
            settings=settings,
            session_factory=session_factory,
            client=client,
            capabilities=capabilities,
        )
    except Exception:
        logger.exception("Sync sweep failed")

    db = session_factory()
    try:
        results["purge"] = purge_expired(
            settings=settings,
            store=RecordStore(db, capabilities),
            objects=objects,
            client=client,
        )
    except Exception:
        logger.exception("Retention purge failed")
    finally:
        db.close()
    return results


def build_scheduler(
    *,
    settings: Settings,
    session_factory: SessionFactory,
    capabilities: SchemaCapabilities,
    blocking: bool = False,
):
    scheduler = BlockingScheduler() if blocking else BackgroundScheduler()
    scheduler.add_job(
        run_sweep,
        IntervalTrigger(minutes=settings.SWEEP_INTERVAL_MINUTES),
        kwargs={
            "settings": settings,
            "session_factory": session_factory,
            "capabilities": capabilities,
        },
        id="sweep",
        name="Sync retry + retention purge",
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def summarize(results: dict) -> str:
    parts = []
    sync: Optional[SyncSweepReport] = results.get("sync")
    purge: Optional[PurgeReport] = results.get("purge")
    if sync is not None:
        parts.append(f"sync {sync.done}/{sync.attempted} done, {len(sync.stuck)} stuck")
    if purge is not None:
        parts.append(f"purge {purge.rows_deleted}/{purge.examined} deleted, {purge.deferred} deferred")
    return "; ".join(parts) or "nothing ran"
