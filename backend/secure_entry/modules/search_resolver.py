"""Search resolver — answers "does this subject have a current proof photo?"

Two independent lookups per key kind:
  latest row   → the subject's current identity details
  latest proof → the newest row with a non-empty external URL

Answers:
  {exists: False}                               no key, or no row
  {exists: True, hasProof: False, data: {}}     rows exist, no usable proof
  {exists: True, hasProof: True, data: {...}}   details + photoLink
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

from secure_entry.modules.normalize import (
    format_reason,
    format_remark,
    normalize_key,
    resolve_key_kinds,
)
from secure_entry.modules.record_store import RecordStore

NOT_FOUND: dict[str, Any] = {"exists": False}


@dataclass
class SearchOutcome:
    """Resolved answer plus the entry it was drawn from (for the audit trail)."""
    body: dict[str, Any]
    key: str = ""
    entry_id: Optional[str] = None

    @property
    def exists(self) -> bool:
        return bool(self.body.get("exists"))


def resolve_search(store: RecordStore, field: Any, value: Any) -> SearchOutcome:
    key = normalize_key(value)
    if not key:
        return SearchOutcome(dict(NOT_FOUND))

    latest = None
    proof_url = None
    for kind in resolve_key_kinds(field):
        latest = store.find_latest_by_key(key, kind)
        if latest is None:
            continue
        # Stay on the key kind that matched; never mix results across kinds.
        proof_url = store.find_latest_proof_by_key(key, kind)
        break

    if latest is None:
        return SearchOutcome(dict(NOT_FOUND), key)

    if not proof_url:
        return SearchOutcome({"exists": True, "hasProof": False, "data": {}}, key, latest.id)

    return SearchOutcome(
        {
            "exists": True,
            "hasProof": True,
            "data": {
                "name": latest.name or "",
                "docNo": latest.doc_no or "",
                "regNo": latest.reg_no or "",
                "contact": latest.contact or "",
                "remark": format_remark(latest.remark, latest.unit_no),
                "tower": latest.tower or "",
                "reason": format_reason(latest.reason, latest.reason_other),
                "photoLink": proof_url,
            },
        },
        key,
        latest.id,
    )


class SearchCache:
    """Short-lived cache of search answers keyed by the exact request URL.

    Misses are cached too; the TTL bounds how long a fresh proof stays hidden.
    """

    def __init__(self, ttl_seconds: float, max_entries: int = 10_000):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._items: dict[str, tuple[float, dict]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            expires, body = item
            if expires <= time.monotonic():
                del self._items[key]
                return None
            return body

    def put(self, key: str, body: dict) -> None:
        if self.ttl <= 0:
            return
        with self._lock:
            if len(self._items) >= self.max_entries:
                self._evict_expired()
                if len(self._items) >= self.max_entries:
                    self._items.pop(next(iter(self._items)))
            self._items[key] = (time.monotonic() + self.ttl, body)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def _evict_expired(self) -> None:
        now = time.monotonic()
        for k in [k for k, (expires, _) in self._items.items() if expires <= now]:
            del self._items[k]
