"""Sync engine — drives each entry to a terminal state against the archive.

States: PENDING → DONE | FAILED, FAILED → DONE | FAILED, DONE is terminal.
An attempt is fired right after a submission is stored (detached from the
response) and again by the periodic sweep for PENDING/FAILED rows still
under ``SYNC_MAX_ATTEMPTS``.

``sync_entry`` never raises: it runs in a background context and every
failure becomes a FAILED status update, which is itself best-effort.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from secure_entry.config import Settings
from secure_entry.database import FULL_CAPABILITIES, SchemaCapabilities
from secure_entry.models.base import SyncStatusEnum, utcnow
from secure_entry.modules.archive_client import ArchiveClient
from secure_entry.modules.record_store import RecordStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def iso_utc(dt: Optional[datetime]) -> str:
    if dt is None:
        return ""
    return dt.isoformat(timespec="milliseconds") + "Z"


def build_photo_url(settings: Settings, entry_id: str, image_key: Optional[str]) -> str:
    """Photo-fetch URL for the archive, or "" when there is nothing to mirror.

    Requires an object key plus both PUBLIC_BASE_URL and IMAGE_VIEW_TOKEN.
    """
    if not image_key or not settings.photo_links_configured:
        return ""
    base = settings.PUBLIC_BASE_URL.rstrip("/")
    query = urlencode({"id": entry_id, "token": settings.IMAGE_VIEW_TOKEN})
    return f"{base}/photo?{query}"


def build_sync_payload(row, settings: Settings) -> dict:
    return {
        "id": row.id,
        "createdAt": iso_utc(row.created_at),
        "clientTxnId": row.client_txn_id,
        "deviceId": row.device_id or "",
        "name": row.name or "",
        "docNo": row.doc_no or "",
        "regNo": row.reg_no or "",
        "contact": row.contact or "",
        "remark": row.remark or "",
        "unitNo": row.unit_no or "",
        "tower": row.tower or "",
        "reason": row.reason or "",
        "reasonOther": row.reason_other or "",
        "imageViewUrl": build_photo_url(settings, row.id, row.image_key),
    }


# Entry ids with an attempt running in this process
_in_flight: set[str] = set()
_in_flight_lock = threading.Lock()


def _claim(entry_id: str) -> bool:
    with _in_flight_lock:
        if entry_id in _in_flight:
            return False
        _in_flight.add(entry_id)
        return True


def _release(entry_id: str) -> None:
    with _in_flight_lock:
        _in_flight.discard(entry_id)


def sync_entry(
    entry_id: str,
    *,
    settings: Settings,
    session_factory: SessionFactory,
    client: ArchiveClient,
    capabilities: SchemaCapabilities = FULL_CAPABILITIES,
) -> Optional[str]:
    """Run one sync attempt. Returns the resulting status, or None if skipped.

    An entry whose previous attempt is still running in this process is
    skipped, so attempts for one entry never overlap.
    """
    if not settings.sync_configured:
        logger.debug("Archive sync not configured; entry %s left PENDING", entry_id)
        return None
    if not _claim(entry_id):
        logger.info("Entry %s is already syncing; attempt skipped", entry_id)
        return None
    try:
        return _attempt_sync(entry_id, settings, session_factory, client, capabilities)
    finally:
        _release(entry_id)


def _attempt_sync(
    entry_id: str,
    settings: Settings,
    session_factory: SessionFactory,
    client: ArchiveClient,
    capabilities: SchemaCapabilities,
) -> Optional[str]:
    try:
        db = session_factory()
    except Exception:
        logger.exception("Could not open a session to sync entry %s", entry_id)
        return None

    store = RecordStore(db, capabilities)
    try:
        row = store.get_for_sync(entry_id)
        if row is None:
            logger.info("Entry %s no longer exists; sync skipped", entry_id)
            return None
        if row.sync_status == SyncStatusEnum.DONE.value:
            logger.info("Entry %s is already DONE; sync skipped", entry_id)
            return None

        # Counted before calling out so a crash mid-call still consumes an attempt.
        try:
            store.increment_attempts(entry_id)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Could not record sync attempt for %s: %s", entry_id, exc)

        reply = client.sync_entry(build_sync_payload(row, settings))
        store.mark_done(entry_id, reply.file_id, reply.url)
        logger.info("Entry %s synced (file=%s)", entry_id, reply.file_id or "-")
        return SyncStatusEnum.DONE.value
    except Exception as exc:
        msg = str(exc) or type(exc).__name__
        logger.warning("Sync of entry %s failed: %s", entry_id, msg[:200])
        try:
            db.rollback()
            store.mark_failed(entry_id, msg)
        except Exception as status_exc:
            logger.warning("Could not record sync failure for %s: %s", entry_id, status_exc)
        return SyncStatusEnum.FAILED.value
    finally:
        db.close()


@dataclass
class SyncSweepReport:
    attempted: int = 0
    done: int = 0
    failed: int = 0
    stuck: list[str] = field(default_factory=list)


def run_sync_sweep(
    *,
    settings: Settings,
    session_factory: SessionFactory,
    client: ArchiveClient,
    capabilities: SchemaCapabilities = FULL_CAPABILITIES,
    now: Optional[datetime] = None,
) -> SyncSweepReport:
    """Re-drive unsynced rows under the retry cap; surface rows at the cap.

    Each entry is attempted at most once per sweep, so attempts for one entry
    stay sequential while different entries run in parallel.
    """
    report = SyncSweepReport()
    if not settings.sync_configured:
        logger.info("Archive sync not configured; sync sweep skipped")
        return report

    now = now or utcnow()
    pending_before = now - timedelta(seconds=settings.pending_grace_seconds)
    db = session_factory()
    try:
        store = RecordStore(db, capabilities)
        entry_ids = store.select_retryable(
            settings.SYNC_MAX_ATTEMPTS, settings.SYNC_BATCH, pending_before
        )
        report.stuck = [r.id for r in store.select_stuck(settings.SYNC_MAX_ATTEMPTS)]
    finally:
        db.close()

    if report.stuck:
        logger.warning(
            "%d entr%s reached %d sync attempts and need manual intervention: %s",
            len(report.stuck), "y" if len(report.stuck) == 1 else "ies",
            settings.SYNC_MAX_ATTEMPTS, ", ".join(report.stuck[:20]),
        )

    def _attempt(entry_id: str) -> Optional[str]:
        return sync_entry(
            entry_id,
            settings=settings,
            session_factory=session_factory,
            client=client,
            capabilities=capabilities,
        )

    if settings.SYNC_WORKERS > 1 and len(entry_ids) > 1:
        with ThreadPoolExecutor(max_workers=settings.SYNC_WORKERS) as pool:
            results = list(pool.map(_attempt, entry_ids))
    else:
        results = [_attempt(entry_id) for entry_id in entry_ids]

    report.attempted = len(entry_ids)
    report.done = sum(1 for r in results if r == SyncStatusEnum.DONE.value)
    report.failed = sum(1 for r in results if r == SyncStatusEnum.FAILED.value)
    logger.info(
        "Sync sweep: %d attempted, %d done, %d failed, %d stuck",
        report.attempted, report.done, report.failed, len(report.stuck),
    )
    return report
