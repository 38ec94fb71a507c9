"""Import all models to register them with SQLAlchemy metadata."""
from secure_entry.models.base import Base, SyncStatusEnum, VisitActionEnum
from secure_entry.models.entry import Entry
from secure_entry.models.visit_log import VisitLog

__all__ = [
    "Base",
    "SyncStatusEnum",
    "VisitActionEnum",
    "Entry",
    "VisitLog",
]
