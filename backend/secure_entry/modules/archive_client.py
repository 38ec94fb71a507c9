"""External archive client — mirrors entries and deletes mirrored files.

The archive is a remote web app reached over HTTP POST with a shared secret.
Every answer must be JSON carrying an explicit ``success: true``; anything
else (network error, non-2xx, unparsable body, missing or false flag) is a
failure, whatever the HTTP status says.

Protocol:
  SYNC    {token, action: "SYNC", id, createdAt, ..., imageViewUrl}
          → {success, fileId?, url?}   (legacy: driveFileId / driveUrl)
  DELETE  {token, action: "DELETE", fileIds: [...]}
          → {success, failedIds?}
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from secure_entry.config import Settings
from secure_entry.modules.normalize import to_text
from secure_entry.utils.http_retry import CONNECT_ERRORS, retry_request

logger = logging.getLogger(__name__)

_BODY_SNIPPET = 180


class ArchiveError(Exception):
    """Any failure talking to the external archive."""


@dataclass
class SyncReply:
    file_id: str = ""
    url: str = ""


@dataclass
class DeleteReply:
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _first_text(data: dict, *keys: str) -> str:
    for key in keys:
        value = to_text(data.get(key))
        if value:
            return value
    return ""


class ArchiveClient:
    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.settings.ARCHIVE_TIMEOUT,
            follow_redirects=True,
            transport=self._transport,
        )

    def _post(self, url: str, payload: dict[str, Any], label: str, resend_safe: bool = True) -> dict:
        """POST to the archive and return the decoded success reply.

        Calls that are not ``resend_safe`` are retried only when the request
        never reached the archive.
        """
        token = self.settings.SYNC_TOKEN or ""
        body = {"token": token, **payload}
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        retry_kwargs: dict[str, Any] = {}
        if not resend_safe:
            retry_kwargs = {"retry_exceptions": CONNECT_ERRORS, "retry_statuses": frozenset()}
        try:
            with self._client() as client:
                resp = retry_request(
                    client.post, url, json=body, headers=headers,
                    delays=self.settings.ARCHIVE_RETRY_DELAYS,
                    **retry_kwargs,
                )
        except httpx.HTTPError as exc:
            raise ArchiveError(f"archive {label} request failed: {type(exc).__name__}: {exc}") from exc

        text = resp.text or ""
        if not resp.is_success:
            raise ArchiveError(
                f"archive {label} http failed: {resp.status_code} {text[:_BODY_SNIPPET]}"
            )
        try:
            data = json.loads(text or "{}")
        except ValueError:
            data = None
        if not isinstance(data, dict) or data.get("success") is not True:
            msg = (data or {}).get("message") if isinstance(data, dict) else None
            raise ArchiveError(
                f"archive {label} app failed: {msg or text[:_BODY_SNIPPET] or 'non-success reply'}"
            )
        return data

    def sync_entry(self, payload: dict[str, Any]) -> SyncReply:
        """Push one entry. The archive uploads a photo only when imageViewUrl is set."""
        if not self.settings.sync_configured:
            raise ArchiveError("archive sync not configured")
        # Never resent once the request may have reached the archive
        data = self._post(
            self.settings.ARCHIVE_SYNC_URL, {"action": "SYNC", **payload}, "sync", resend_safe=False
        )
        return SyncReply(
            file_id=_first_text(data, "fileId", "driveFileId"),
            url=_first_text(data, "url", "driveUrl"),
        )

    def delete_files(self, file_ids: list[str]) -> DeleteReply:
        """Request deletion of mirrored files in chunks.

        A failing chunk marks all of its ids failed; other chunks still run.
        """
        reply = DeleteReply()
        url = self.settings.archive_delete_url
        if not url or not self.settings.SYNC_TOKEN:
            raise ArchiveError("archive delete not configured")

        chunk_size = max(1, self.settings.ARCHIVE_DELETE_CHUNK)
        for i in range(0, len(file_ids), chunk_size):
            chunk = file_ids[i:i + chunk_size]
            try:
                data = self._post(url, {"action": "DELETE", "fileIds": chunk}, "delete")
            except ArchiveError as exc:
                logger.warning("Archive delete of %d file(s) failed: %s", len(chunk), exc)
                reply.failed.extend(chunk)
                continue
            failed = {to_text(f) for f in data.get("failedIds") or []}
            for file_id in chunk:
                (reply.failed if file_id in failed else reply.deleted).append(file_id)
        return reply

    def search(self, params: dict[str, str]) -> httpx.Response | None:
        """Forward a search to the legacy archive lookup, if one is configured."""
        url = self.settings.ARCHIVE_SEARCH_URL
        if not url:
            return None
        try:
            with self._client() as client:
                return client.get(url, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Archive search fallback failed: %s", exc)
            return None
