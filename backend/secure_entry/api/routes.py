from __future__ import annotations

import hmac
import logging
import time

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from secure_entry.config import Settings, settings
from secure_entry.database import (
    FULL_CAPABILITIES,
    SchemaCapabilities,
    get_db,
    get_session_factory,
)
from secure_entry.models.base import VisitActionEnum
from secure_entry.modules.archive_client import ArchiveClient
from secure_entry.modules.normalize import normalize_key, to_text
from secure_entry.modules.object_archive import LocalObjectArchive, ObjectArchive
from secure_entry.modules.record_store import RecordStore
from secure_entry.modules.search_resolver import (
    NOT_FOUND,
    SearchCache,
    SearchOutcome,
    resolve_search,
)
from secure_entry.modules.submission import (
    InvalidImageError,
    MissingIdentityError,
    submit_entry,
)
from secure_entry.modules.sync_engine import iso_utc, sync_entry
from secure_entry.schemas.entry import SubmitRequest

logger = logging.getLogger(__name__)

router = APIRouter()

_search_cache = SearchCache(settings.SEARCH_CACHE_SECONDS)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_settings() -> Settings:
    return settings


def get_capabilities(request: Request) -> SchemaCapabilities:
    """Schema capabilities detected once in the app lifespan."""
    return getattr(request.app.state, "capabilities", FULL_CAPABILITIES)


def get_object_archive(cfg: Settings = Depends(get_settings)) -> ObjectArchive:
    return LocalObjectArchive(cfg.OBJECT_STORE_DIR)


def get_archive_client(cfg: Settings = Depends(get_settings)) -> ArchiveClient:
    return ArchiveClient(cfg)


def get_search_cache() -> SearchCache:
    return _search_cache


def _client_meta(request: Request) -> dict:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
    }


def _record_visit(store: RecordStore, request: Request, **fields) -> None:
    """Append to the audit trail; never fails the request."""
    try:
        store.log_visit(**fields, **_client_meta(request))
    except SQLAlchemyError as exc:
        store.db.rollback()
        logger.warning("Could not record %s visit: %s", fields.get("action"), exc)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def _cached_json(body: dict, cfg: Settings, cache_status: str = "MISS") -> JSONResponse:
    return JSONResponse(
        body,
        headers={
            "Cache-Control": f"public, max-age={cfg.SEARCH_CACHE_SECONDS}",
            "X-Cache": cache_status,
        },
    )


def _uncached_json(body: dict) -> JSONResponse:
    return JSONResponse(body, headers={"Cache-Control": "no-store"})


@router.get("/search", tags=["search"])
@router.get("/", include_in_schema=False)
def search(
    request: Request,
    field: str = "",
    value: str = "",
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
    client: ArchiveClient = Depends(get_archive_client),
    cache: SearchCache = Depends(get_search_cache),
    cfg: Settings = Depends(get_settings),
):
    """Resolve a document or registration number to its current proof.

    Always answers 200 with one of the three documented shapes.
    """
    field, value = to_text(field), to_text(value)
    if not value:
        return _uncached_json(dict(NOT_FOUND))

    cache_key = str(request.url)
    cached = cache.get(cache_key)
    if cached is not None:
        return _cached_json(cached, cfg, "HIT")

    store = RecordStore(db, capabilities)
    local_ok = True
    try:
        outcome = resolve_search(store, field, value)
    except SQLAlchemyError:
        logger.exception("Local search failed for field=%s", field or "-")
        db.rollback()
        outcome = SearchOutcome(dict(NOT_FOUND))
        local_ok = False

    if not outcome.exists and cfg.ARCHIVE_SEARCH_URL:
        upstream = client.search({"field": field, "value": value})
        body = None
        if upstream is not None and upstream.is_success:
            try:
                body = upstream.json()
            except ValueError:
                body = None
        if isinstance(body, dict):
            cache.put(cache_key, body)
            return _cached_json(body, cfg)
        return _uncached_json(outcome.body)

    if not local_ok:
        return _uncached_json(outcome.body)

    _record_visit(
        store, request,
        action=VisitActionEnum.SEARCH.value,
        lookup_key=outcome.key,
        entry_id=outcome.entry_id,
        hit=outcome.exists,
    )
    cache.put(cache_key, outcome.body)
    return _cached_json(outcome.body, cfg)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

@router.post("/submit", tags=["submission"])
def submit(
    request: Request,
    payload: SubmitRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
    objects: ObjectArchive = Depends(get_object_archive),
    client: ArchiveClient = Depends(get_archive_client),
    session_factory: sessionmaker = Depends(get_session_factory),
    cfg: Settings = Depends(get_settings),
):
    """Store a submission durably and queue its archive sync."""
    store = RecordStore(db, capabilities)
    try:
        result = submit_entry(
            payload.subject_fields(),
            store=store,
            objects=objects,
            settings=cfg,
            image_url=payload.image_url,
            client_txn_id=payload.client_txn_id,
        )
    except (InvalidImageError, MissingIdentityError) as exc:
        return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})
    except Exception as exc:
        logger.exception("Submission could not be stored")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": f"Could not store submission: {type(exc).__name__}"},
        )

    if result.duplicate:
        return {
            "success": True,
            "id": result.entry_id,
            "createdAt": iso_utc(result.created_at),
            "duplicate": True,
            "syncStatus": result.sync_status,
        }

    _record_visit(
        store, request,
        action=VisitActionEnum.SUBMIT.value,
        lookup_key=normalize_key(payload.doc_no) or normalize_key(payload.reg_no),
        entry_id=result.entry_id,
        hit=None,
    )
    background.add_task(
        sync_entry,
        result.entry_id,
        settings=cfg,
        session_factory=session_factory,
        client=client,
        capabilities=capabilities,
    )
    return {
        "success": True,
        "id": result.entry_id,
        "createdAt": iso_utc(result.created_at),
        "syncStatus": result.sync_status,
    }


# ---------------------------------------------------------------------------
# Photo fetch (for the archive only)
# ---------------------------------------------------------------------------

@router.get("/photo", tags=["archive"])
def photo(
    id: str = "",
    token: str = "",
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
    objects: ObjectArchive = Depends(get_object_archive),
    cfg: Settings = Depends(get_settings),
):
    """Serve an entry's stored photo to the archive when the view token matches."""
    expected = cfg.IMAGE_VIEW_TOKEN or ""
    if not id or not expected or not hmac.compare_digest(token.encode(), expected.encode()):
        return PlainTextResponse("Unauthorized", status_code=401)

    image_key = RecordStore(db, capabilities).get_image_key(id)
    if not image_key:
        return PlainTextResponse("Not found", status_code=404)
    obj = objects.get(image_key)
    if obj is None:
        return PlainTextResponse("Not found", status_code=404)

    return Response(
        content=obj.body,
        media_type=obj.content_type or "image/jpeg",
        headers={"Cache-Control": f"private, max-age={cfg.PHOTO_CACHE_SECONDS}"},
    )


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

@router.get("/health/ready", tags=["system"])
def readiness(
    db: Session = Depends(get_db),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    """Readiness check with DB latency measurement."""
    t0 = time.time()
    try:
        db.execute(text("SELECT 1"))
        db_status = "ok"
    except SQLAlchemyError as e:
        db_status = f"error: {e}"
    latency_ms = round((time.time() - t0) * 1000, 1)

    return {
        "ok": db_status == "ok",
        "database": {"status": db_status, "latency_ms": latency_ms},
        "schemaVersion": capabilities.version,
    }
