"""Record store — durable entry rows plus the visit audit trail.

Every operation is a single statement followed by a commit; no invariant
relies on multi-statement transactions. Column sets are picked from the
startup ``SchemaCapabilities`` so that older tables lacking the optional
groups keep accepting writes.
"""
from __future__ import annotations

import string
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from secure_entry.database import FULL_CAPABILITIES, SchemaCapabilities
from secure_entry.models.base import SyncStatusEnum, utcnow
from secure_entry.models.entry import Entry
from secure_entry.models.visit_log import VisitLog
from secure_entry.modules.normalize import KeyKind


SYNC_ERROR_MAX_CHARS = 600

# Characters stripped when the precomputed key columns are absent. Matches
# normalize_key for ASCII input; non-ASCII letters need the backfilled columns.
_SEPARATORS = tuple(string.punctuation + string.whitespace)

SUBJECT_COLUMNS = (
    Entry.id,
    Entry.created_at,
    Entry.client_txn_id,
    Entry.device_id,
    Entry.name,
    Entry.doc_no,
    Entry.reg_no,
    Entry.contact,
    Entry.remark,
    Entry.unit_no,
    Entry.tower,
    Entry.reason,
    Entry.reason_other,
)


class ConstraintError(Exception):
    """The idempotency token already exists; the caller answers with the stored entry."""

    def __init__(self, client_txn_id: str):
        super().__init__(f"client_txn_id already recorded: {client_txn_id}")
        self.client_txn_id = client_txn_id


class RecordStore:
    def __init__(self, db: Session, capabilities: SchemaCapabilities = FULL_CAPABILITIES):
        self.db = db
        self.capabilities = capabilities

    # -- writes -------------------------------------------------------------

    def insert(self, values: dict[str, Any]) -> None:
        """Insert one entry row.

        Raises ConstraintError when ``client_txn_id`` is already present.
        """
        row = self.capabilities.writable(values)
        try:
            self.db.execute(insert(Entry).values(**row))
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if self.find_by_client_txn(values["client_txn_id"]) is not None:
                raise ConstraintError(values["client_txn_id"]) from exc
            raise

    def increment_attempts(self, entry_id: str) -> None:
        self._update(entry_id, {Entry.sync_attempts: func.coalesce(Entry.sync_attempts, 0) + 1})

    def mark_failed(self, entry_id: str, message: str) -> None:
        self._update(entry_id, {
            Entry.sync_status: SyncStatusEnum.FAILED.value,
            Entry.sync_error: (message or "")[:SYNC_ERROR_MAX_CHARS],
        })

    def mark_done(self, entry_id: str, file_id: str = "", url: str = "") -> None:
        """Mark DONE and merge the returned external link.

        Empty values leave a previously stored link in place.
        """
        values: dict = {
            Entry.sync_status: SyncStatusEnum.DONE.value,
            Entry.sync_error: "",
        }
        if self.capabilities.external_links:
            if file_id:
                values[Entry.external_file_id] = file_id
            if url:
                values[Entry.external_url] = url
        self._update(entry_id, values)

    def reset_sync(self, entry_id: str) -> bool:
        """Re-arm an unsynced entry for the retry sweep (manual intervention).

        DONE is terminal: returns False for DONE and unknown entries.
        """
        count = (
            self.db.query(Entry)
            .filter(Entry.id == entry_id, Entry.sync_status != SyncStatusEnum.DONE.value)
            .update(
                {
                    Entry.sync_status: SyncStatusEnum.PENDING.value,
                    Entry.sync_attempts: 0,
                    Entry.sync_error: "",
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return count > 0

    def clear_external_links(self, entry_ids: list[str]) -> None:
        if not entry_ids or not self.capabilities.external_links:
            return
        self.db.query(Entry).filter(Entry.id.in_(entry_ids)).update(
            {Entry.external_file_id: None, Entry.external_url: None},
            synchronize_session=False,
        )
        self.db.commit()

    def delete_entries(self, entry_ids: list[str]) -> int:
        if not entry_ids:
            return 0
        count = self.db.query(Entry).filter(Entry.id.in_(entry_ids)).delete(
            synchronize_session=False
        )
        self.db.commit()
        return count

    def _update(self, entry_id: str, values: dict) -> int:
        count = self.db.query(Entry).filter(Entry.id == entry_id).update(
            values, synchronize_session=False
        )
        self.db.commit()
        return count

    # -- point lookups ------------------------------------------------------

    def find_by_client_txn(self, client_txn_id: str) -> Optional[Row]:
        return (
            self.db.query(Entry.id, Entry.created_at, Entry.sync_status)
            .filter(Entry.client_txn_id == client_txn_id)
            .first()
        )

    def get_image_key(self, entry_id: str) -> Optional[str]:
        row = self.db.query(Entry.image_key).filter(Entry.id == entry_id).first()
        return row.image_key if row else None

    def get_for_sync(self, entry_id: str) -> Optional[Row]:
        return (
            self.db.query(*SUBJECT_COLUMNS, Entry.image_key, Entry.sync_status)
            .filter(Entry.id == entry_id)
            .first()
        )

    def find_latest_by_key(self, key: str, kind: KeyKind) -> Optional[Row]:
        """Most recent row whose key of ``kind`` equals ``key``."""
        if not key:
            return None
        return (
            self.db.query(*SUBJECT_COLUMNS)
            .filter(self._key_expr(kind) == key)
            .order_by(Entry.created_at.desc())
            .first()
        )

    def find_latest_proof_by_key(self, key: str, kind: KeyKind) -> Optional[str]:
        """External URL of the most recent row for ``key`` that has one.

        Independent of the latest row overall: a newer submission without a
        photo neither hides nor inherits an older proof.
        """
        if not key or not self.capabilities.external_links:
            return None
        row = (
            self.db.query(Entry.external_url)
            .filter(
                self._key_expr(kind) == key,
                Entry.external_url.isnot(None),
                func.trim(Entry.external_url) != "",
            )
            .order_by(Entry.created_at.desc())
            .first()
        )
        return row.external_url.strip() if row else None

    def _key_expr(self, kind: KeyKind):
        if self.capabilities.norm_keys:
            return Entry.reg_norm if kind is KeyKind.REGISTRATION else Entry.id_norm
        expr = func.upper(Entry.reg_no if kind is KeyKind.REGISTRATION else Entry.doc_no)
        for sep in _SEPARATORS:
            expr = func.replace(expr, sep, "")
        return expr

    # -- scans --------------------------------------------------------------

    def select_retryable(
        self, max_attempts: int, limit: int, pending_before: datetime
    ) -> list[str]:
        """Ids of PENDING/FAILED rows still under the retry cap, oldest first.

        PENDING rows created after ``pending_before`` are skipped; their
        request-triggered attempt may still be running.
        """
        rows = (
            self.db.query(Entry.id)
            .filter(
                func.coalesce(Entry.sync_attempts, 0) < max_attempts,
                (Entry.sync_status == SyncStatusEnum.FAILED.value)
                | (
                    (Entry.sync_status == SyncStatusEnum.PENDING.value)
                    & (Entry.created_at < pending_before)
                ),
            )
            .order_by(Entry.created_at.asc())
            .limit(limit)
            .all()
        )
        return [r.id for r in rows]

    def select_stuck(self, max_attempts: int, limit: int = 100) -> list[Row]:
        """Unsynced rows that reached the retry cap and need an operator."""
        return (
            self.db.query(
                Entry.id, Entry.created_at, Entry.sync_status,
                Entry.sync_attempts, Entry.sync_error,
            )
            .filter(
                Entry.sync_status != SyncStatusEnum.DONE.value,
                Entry.sync_attempts >= max_attempts,
            )
            .order_by(Entry.created_at.asc())
            .limit(limit)
            .all()
        )

    def count_by_status(self) -> dict[str, int]:
        rows = (
            self.db.query(Entry.sync_status, func.count(Entry.id))
            .group_by(Entry.sync_status)
            .all()
        )
        return {status: count for status, count in rows}

    def select_expired(self, cutoff: datetime, limit: int) -> list[Row]:
        """Batch of rows created before ``cutoff``, oldest first.

        Rows the purge already had to keep sort behind rows with fewer deferrals.
        """
        columns = [Entry.id, Entry.created_at, Entry.image_key]
        if self.capabilities.external_links:
            columns.append(Entry.external_file_id)
        order = [Entry.created_at.asc()]
        if self.capabilities.purge_tracking:
            order.insert(0, func.coalesce(Entry.purge_attempts, 0).asc())
        return (
            self.db.query(*columns)
            .filter(Entry.created_at < cutoff)
            .order_by(*order)
            .limit(limit)
            .all()
        )

    def record_purge_deferrals(self, entry_ids: list[str]) -> None:
        if not entry_ids or not self.capabilities.purge_tracking:
            return
        self.db.query(Entry).filter(Entry.id.in_(entry_ids)).update(
            {Entry.purge_attempts: func.coalesce(Entry.purge_attempts, 0) + 1},
            synchronize_session=False,
        )
        self.db.commit()

    def select_purge_stuck(self, min_deferrals: int, limit: int = 100) -> list[Row]:
        """Expired rows the purge has kept at least ``min_deferrals`` times."""
        if not self.capabilities.purge_tracking:
            return []
        columns = [Entry.id, Entry.created_at, Entry.purge_attempts]
        if self.capabilities.external_links:
            columns.append(Entry.external_file_id)
        return (
            self.db.query(*columns)
            .filter(Entry.purge_attempts >= min_deferrals)
            .order_by(Entry.created_at.asc())
            .limit(limit)
            .all()
        )

    # -- visit audit trail --------------------------------------------------

    def log_visit(
        self,
        action: str,
        lookup_key: str | None = None,
        entry_id: str | None = None,
        hit: bool | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        self.db.add(VisitLog(
            action=action,
            lookup_key=lookup_key or None,
            entry_id=entry_id,
            hit=hit,
            user_agent=user_agent[:255] if user_agent else None,
            ip_address=ip_address,
            created_at=utcnow(),
        ))
        self.db.commit()

    def purge_visit_logs(self, cutoff: datetime) -> int:
        count = self.db.query(VisitLog).filter(VisitLog.created_at < cutoff).delete(
            synchronize_session=False
        )
        self.db.commit()
        return count

    def sweep_dangling_visit_logs(self) -> int:
        """Delete audit rows whose entry no longer exists."""
        count = (
            self.db.query(VisitLog)
            .filter(VisitLog.entry_id.isnot(None), VisitLog.entry_id.not_in(select(Entry.id)))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return count
