"""Retention purger — cascade deletion across archive, object store, and rows.

Order per cycle:
  1. select up to PURGE_BATCH entries older than RETENTION_DAYS, least
     deferred first, then oldest first
  2. delete their external files (per-item best effort; failures defer the entry)
  3. delete their objects from the object archive
  4. delete the entry rows
  5. purge aged visit logs and sweep logs pointing at deleted entries

The entry row is the only record that something still needs deleting, so it
goes last; a deferred entry is retried from scratch on the next cycle. Each
deferral is counted on the row, and rows deferred PURGE_STUCK_AFTER times are
reported for an operator.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from secure_entry.config import Settings
from secure_entry.models.base import utcnow
from secure_entry.modules.archive_client import ArchiveClient, ArchiveError
from secure_entry.modules.object_archive import ObjectArchive
from secure_entry.modules.record_store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class PurgeReport:
    examined: int = 0
    archive_deleted: int = 0
    deferred: int = 0
    objects_deleted: int = 0
    rows_deleted: int = 0
    visit_logs_purged: int = 0
    dangling_logs_swept: int = 0
    stuck: list[str] = field(default_factory=list)


def retention_cutoff(settings: Settings, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(days=settings.RETENTION_DAYS)


def purge_expired(
    *,
    settings: Settings,
    store: RecordStore,
    objects: ObjectArchive,
    client: ArchiveClient,
    now: Optional[datetime] = None,
) -> PurgeReport:
    report = PurgeReport()
    cutoff = retention_cutoff(settings, now)

    batch = store.select_expired(cutoff, settings.PURGE_BATCH)
    report.examined = len(batch)

    ready = []
    linked = []
    for row in batch:
        if getattr(row, "external_file_id", None):
            linked.append(row)
        else:
            ready.append(row)

    deferred_ids: list[str] = []
    if linked:
        confirmed = _delete_external(settings, store, client, linked, report)
        confirmed_ids = {row.id for row in confirmed}
        deferred_ids.extend(row.id for row in linked if row.id not in confirmed_ids)
        ready.extend(confirmed)

    removable: list[str] = []
    for row in ready:
        if row.image_key:
            try:
                objects.delete(row.image_key)
            except Exception as exc:
                logger.warning("Could not delete object %s for entry %s: %s", row.image_key, row.id, exc)
                deferred_ids.append(row.id)
                continue
            report.objects_deleted += 1
        removable.append(row.id)

    report.deferred = len(deferred_ids)
    report.rows_deleted = store.delete_entries(removable)
    store.record_purge_deferrals(deferred_ids)
    report.visit_logs_purged = store.purge_visit_logs(cutoff)
    report.dangling_logs_swept = store.sweep_dangling_visit_logs()

    if deferred_ids:
        report.stuck = [r.id for r in store.select_purge_stuck(settings.PURGE_STUCK_AFTER)]
    if report.stuck:
        logger.warning(
            "%d expired entr%s deferred %d+ times and need manual intervention: %s",
            len(report.stuck), "y" if len(report.stuck) == 1 else "ies",
            settings.PURGE_STUCK_AFTER, ", ".join(report.stuck[:20]),
        )

    logger.info(
        "Purge: %d examined, %d archive files deleted, %d objects deleted, "
        "%d rows deleted, %d deferred, %d visit logs purged",
        report.examined, report.archive_deleted, report.objects_deleted,
        report.rows_deleted, report.deferred,
        report.visit_logs_purged + report.dangling_logs_swept,
    )
    return report


def _delete_external(settings: Settings, store: RecordStore, client: ArchiveClient, rows, report: PurgeReport) -> list:
    """Delete archive copies; return the rows whose copy is confirmed gone."""
    if not (settings.archive_delete_url and settings.SYNC_TOKEN):
        logger.warning(
            "Archive delete not configured; %d expired entr%s with archive files kept",
            len(rows), "y" if len(rows) == 1 else "ies",
        )
        return []

    file_ids = list(dict.fromkeys(row.external_file_id for row in rows))
    try:
        deleted = set(client.delete_files(file_ids).deleted)
    except ArchiveError as exc:
        logger.warning("Archive delete failed: %s", exc)
        deleted = set()

    confirmed = [row for row in rows if row.external_file_id in deleted]
    report.archive_deleted = len(confirmed)
    # Confirmed deletes lose their link before the object and row steps.
    store.clear_external_links([row.id for row in confirmed])
    return confirmed
