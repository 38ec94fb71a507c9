from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generator

from sqlalchemy import Engine, create_engine, event, inspect as sa_inspect, text
from sqlalchemy.orm import Session, sessionmaker

from secure_entry.config import settings

logger = logging.getLogger(__name__)

_engine_kwargs: dict = {"pool_pre_ping": True}
if "sqlite" in settings.DATABASE_URL:
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    _engine_kwargs["pool_size"] = settings.DB_POOL_SIZE
    _engine_kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
engine = create_engine(settings.DATABASE_URL, **_engine_kwargs)

if "sqlite" in settings.DATABASE_URL:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Factory for work that outlives the request (background sync)."""
    return SessionLocal


# ---------------------------------------------------------------------------
# Schema capabilities
# ---------------------------------------------------------------------------

ENTRIES_TABLE = "entries"

_CORE_COLUMNS = frozenset({
    "id", "created_at", "client_txn_id", "device_id",
    "name", "doc_no", "reg_no", "contact", "remark",
    "unit_no", "tower", "reason", "reason_other",
    "image_key", "image_sha256",
    "sync_status", "sync_attempts", "sync_error",
})

# Optional column groups: (group, columns, column type for ALTER TABLE)
OPTIONAL_COLUMN_GROUPS: dict[str, tuple[tuple[str, str], ...]] = {
    "norm_keys": (("reg_norm", "VARCHAR(64)"), ("id_norm", "VARCHAR(64)")),
    "external_links": (("external_file_id", "VARCHAR(255)"), ("external_url", "TEXT")),
    "purge_tracking": (("purge_attempts", "INTEGER"),),
}


class SchemaCapabilityError(RuntimeError):
    """Required entry columns are missing; the service cannot start."""


@dataclass(frozen=True)
class SchemaCapabilities:
    """Which optional column groups the live ``entries`` table carries.

    Decided once at startup; the write path and the lookups pick their column
    sets from this instead of reacting to errors per statement.
    """
    norm_keys: bool = True
    external_links: bool = True
    purge_tracking: bool = True

    @property
    def version(self) -> int:
        if self.norm_keys and self.external_links:
            return 3
        if self.norm_keys:
            return 2
        return 1

    def missing_columns(self) -> set[str]:
        missing: set[str] = set()
        for group, columns in OPTIONAL_COLUMN_GROUPS.items():
            if not getattr(self, group):
                missing.update(name for name, _ in columns)
        return missing

    def writable(self, values: dict) -> dict:
        """Drop values for columns the table does not have."""
        missing = self.missing_columns()
        return {k: v for k, v in values.items() if k not in missing}


FULL_CAPABILITIES = SchemaCapabilities()


def detect_schema_capabilities(bind: Engine | None = None) -> SchemaCapabilities:
    """Inspect the entries table and report its optional column groups.

    A missing table means it has not been created yet; ``init_db`` will create
    it with every column, so full capabilities are reported.
    """
    inspector = sa_inspect(bind or engine)
    if not inspector.has_table(ENTRIES_TABLE):
        return FULL_CAPABILITIES

    present = {c["name"] for c in inspector.get_columns(ENTRIES_TABLE)}
    missing_core = _CORE_COLUMNS - present
    if missing_core:
        raise SchemaCapabilityError(
            f"entries table is missing required columns: {', '.join(sorted(missing_core))}"
        )

    groups = {
        group: all(name in present for name, _ in columns)
        for group, columns in OPTIONAL_COLUMN_GROUPS.items()
    }
    caps = SchemaCapabilities(**groups)
    if caps != FULL_CAPABILITIES:
        logger.warning(
            "entries schema v%d (missing %s); writes use a reduced column set",
            caps.version, ", ".join(sorted(caps.missing_columns())),
        )
    return caps


# ---------------------------------------------------------------------------
# Table creation and additive migrations
# ---------------------------------------------------------------------------


def init_db(bind: Engine | None = None) -> None:
    """Create all tables, then add optional columns absent from older tables."""
    from secure_entry.models import Base  # noqa: F401
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _run_migrations(bind)
    backfill_norm_keys(bind)


def _run_migrations(bind: Engine) -> None:
    """Idempotent ALTER TABLE migrations for column groups added after the initial schema.

    Uses sqlalchemy.inspect() to check column existence before ALTER; real SQL
    errors (syntax, permissions) propagate instead of being silently swallowed.
    """
    inspector = sa_inspect(bind)
    existing = {c["name"] for c in inspector.get_columns(ENTRIES_TABLE)}

    with bind.connect() as conn:
        for columns in OPTIONAL_COLUMN_GROUPS.values():
            for col_name, col_type in columns:
                if col_name in existing:
                    continue
                logger.info("Adding column %s.%s", ENTRIES_TABLE, col_name)
                conn.execute(text(
                    f"ALTER TABLE {ENTRIES_TABLE} ADD COLUMN {col_name} {col_type}"
                ))
                conn.commit()
                existing.add(col_name)

    existing_indexes = {idx["name"] for idx in sa_inspect(bind).get_indexes(ENTRIES_TABLE)}
    with bind.connect() as conn:
        for idx_name, col in (("ix_entries_reg_norm", "reg_norm"), ("ix_entries_id_norm", "id_norm")):
            if idx_name not in existing_indexes:
                conn.execute(text(f"CREATE INDEX {idx_name} ON {ENTRIES_TABLE} ({col})"))
                conn.commit()


def backfill_norm_keys(bind: Engine | None = None, batch_size: int = 500) -> int:
    """Recompute reg_norm/id_norm for rows written before the columns existed.

    Returns the number of rows updated.
    """
    from secure_entry.models.entry import Entry
    from secure_entry.modules.normalize import normalize_key

    bind = bind or engine
    updated = 0
    with Session(bind) as db:
        while True:
            rows = (
                db.query(Entry.id, Entry.reg_no, Entry.doc_no)
                .filter(Entry.reg_norm.is_(None), Entry.id_norm.is_(None))
                .limit(batch_size)
                .all()
            )
            if not rows:
                break
            for row in rows:
                db.query(Entry).filter(Entry.id == row.id).update(
                    {
                        Entry.reg_norm: normalize_key(row.reg_no),
                        Entry.id_norm: normalize_key(row.doc_no),
                    },
                    synchronize_session=False,
                )
            db.commit()
            updated += len(rows)
    if updated:
        logger.info("Backfilled normalized keys for %d entries", updated)
    return updated
