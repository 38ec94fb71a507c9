"""VisitLog entity — audit trail of submissions and searches.

Purged by age independently of entries; rows pointing at a purged entry are
swept after every purge cycle.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from secure_entry.models.base import Base, utcnow


class VisitLog(Base):
    __tablename__ = "visit_logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    lookup_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entry_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    hit: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
