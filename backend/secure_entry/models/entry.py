"""Entry entity — one row per submission event.

Append-mostly: rows are only mutated by the sync engine (status and external
link fields) and by the retention purger. The optional column groups
(normalized keys, external links, purge tracking) may be absent on older databases; see
app startup capability detection in ``secure_entry.database``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from secure_entry.models.base import Base, SyncStatusEnum, utcnow


class Entry(Base):
    __tablename__ = "entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    client_txn_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Subject fields (upper-cased on write, except contact)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    doc_no: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reg_no: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contact: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    remark: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    unit_no: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    tower: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reason_other: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Precomputed lookup keys (optional group "norm_keys")
    reg_norm: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    id_norm: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    image_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    image_sha256: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Set once the archive confirms an upload (optional group "external_links").
    # Never overwritten with an empty value.
    external_file_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    sync_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SyncStatusEnum.PENDING.value
    )
    sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default="")

    # Purge cycles that had to keep this row (optional group "purge_tracking")
    purge_attempts: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_entries_reg_norm", "reg_norm"),
        Index("ix_entries_id_norm", "id_norm"),
        Index("ix_entries_created_at", "created_at"),
        Index("ix_entries_sync_status", "sync_status"),
    )
