"""Shared declarative base and enums for all models."""
from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class SyncStatusEnum(str, enum.Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


class VisitActionEnum(str, enum.Enum):
    SUBMIT = "SUBMIT"
    SEARCH = "SEARCH"


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
