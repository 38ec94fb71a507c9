"""Submission write path.

Order: decode and validate the photo, write it to the object archive, then
insert the entry row. If the insert fails the just-written object is deleted
again so no blob is left without a row. The archive sync is not awaited here;
the caller schedules it once the entry is durable.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from secure_entry.config import Settings
from secure_entry.models.base import SyncStatusEnum, utcnow
from secure_entry.modules.normalize import normalize_key, to_text, to_upper
from secure_entry.modules.object_archive import ObjectArchive
from secure_entry.modules.record_store import ConstraintError, RecordStore

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)


class InvalidImageError(ValueError):
    """The image payload is not a usable base64 image data URL."""


class MissingIdentityError(ValueError):
    """Neither a document number nor a registration number was supplied."""


@dataclass
class DecodedImage:
    content_type: str
    data: bytes
    sha256: str


@dataclass
class SubmissionResult:
    entry_id: str
    created_at: datetime
    sync_status: str
    duplicate: bool = False


def decode_image_data_url(data_url: str, max_bytes: int) -> DecodedImage:
    if not data_url.startswith("data:image/"):
        raise InvalidImageError("Invalid imageUrl")
    m = _DATA_URL.match(data_url)
    if not m:
        raise InvalidImageError("Invalid image data URL")
    content_type, b64 = m.group(1), m.group(2)
    try:
        data = base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImageError("Invalid image data URL") from exc
    if not data:
        raise InvalidImageError("Empty image")
    if len(data) > max_bytes:
        raise InvalidImageError(f"Image too large ({len(data) / (1024 * 1024):.1f} MB)")
    return DecodedImage(content_type, data, hashlib.sha256(data).hexdigest())


def object_key_for(prefix: str, entry_id: str, content_type: str, created_at: datetime) -> str:
    ext = ".jpg" if content_type in ("image/jpeg", "image/jpg") else (
        mimetypes.guess_extension(content_type) or ".bin"
    )
    prefix = prefix.strip("/") or "entries"
    return f"{prefix}/{created_at:%Y-%m-%d}/{entry_id}{ext}"


def build_entry_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Canonical column values for the subject part of an entry."""
    values = {
        "device_id": to_text(fields.get("device_id")),
        "name": to_upper(fields.get("name")),
        "doc_no": to_upper(fields.get("doc_no")),
        "reg_no": to_upper(fields.get("reg_no")),
        "contact": to_text(fields.get("contact")),
        "remark": to_upper(fields.get("remark")),
        "unit_no": to_upper(fields.get("unit_no")),
        "tower": to_upper(fields.get("tower")),
        "reason": to_upper(fields.get("reason")),
        "reason_other": to_upper(fields.get("reason_other")),
    }
    values["reg_norm"] = normalize_key(values["reg_no"])
    values["id_norm"] = normalize_key(values["doc_no"])
    return values


def submit_entry(
    fields: dict[str, Any],
    *,
    store: RecordStore,
    objects: ObjectArchive,
    settings: Settings,
    image_url: Optional[str] = None,
    client_txn_id: Optional[str] = None,
) -> SubmissionResult:
    """Make a submission durable.

    Raises MissingIdentityError / InvalidImageError before anything is
    written. A repeated ``client_txn_id`` answers with the stored entry and
    ``duplicate=True``.
    """
    subject = build_entry_values(fields)
    if not subject["id_norm"] and not subject["reg_norm"]:
        raise MissingIdentityError("docNo or regNo is required")

    client_txn_id = to_text(client_txn_id) or str(uuid.uuid4())
    existing = store.find_by_client_txn(client_txn_id)
    if existing is not None:
        return _duplicate(existing)

    image = None
    image_url = to_text(image_url)
    if image_url:
        image = decode_image_data_url(image_url, int(settings.MAX_IMAGE_MB * 1024 * 1024))

    entry_id = str(uuid.uuid4())
    created_at = utcnow()
    image_key = None
    if image is not None:
        image_key = object_key_for(settings.OBJECT_KEY_PREFIX, entry_id, image.content_type, created_at)
        objects.put(image_key, image.data, image.content_type, {
            "id": entry_id,
            "clientTxnId": client_txn_id,
            "sha256": image.sha256,
        })

    values = {
        "id": entry_id,
        "created_at": created_at,
        "client_txn_id": client_txn_id,
        **subject,
        "image_key": image_key,
        "image_sha256": image.sha256 if image else None,
        # A new row never carries a proof forward from an older one.
        "external_file_id": "",
        "external_url": "",
        "sync_status": SyncStatusEnum.PENDING.value,
        "sync_attempts": 0,
        "sync_error": "",
    }
    try:
        store.insert(values)
    except ConstraintError:
        _discard_object(objects, image_key)
        existing = store.find_by_client_txn(client_txn_id)
        logger.info("Concurrent duplicate submission for client txn %s", client_txn_id)
        return _duplicate(existing)
    except Exception:
        _discard_object(objects, image_key)
        raise

    logger.info("Stored entry %s (photo=%s)", entry_id, "yes" if image_key else "no")
    return SubmissionResult(entry_id, created_at, SyncStatusEnum.PENDING.value)


def _duplicate(row) -> SubmissionResult:
    return SubmissionResult(
        entry_id=row.id,
        created_at=row.created_at,
        sync_status=row.sync_status or SyncStatusEnum.PENDING.value,
        duplicate=True,
    )


def _discard_object(objects: ObjectArchive, image_key: Optional[str]) -> None:
    if not image_key:
        return
    try:
        objects.delete(image_key)
    except Exception as exc:
        logger.warning("Could not remove orphaned object %s: %s", image_key, exc)
