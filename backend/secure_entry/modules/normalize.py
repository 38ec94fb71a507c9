"""Lookup-key normalization and read-time display formatting.

The normalized key is the only form used to find a subject: uppercase with
everything outside ``[A-Z0-9]`` removed. Display helpers are applied when a
search answer is rendered and never persisted.
"""
from __future__ import annotations

import enum
import re
from typing import Any

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


class KeyKind(str, enum.Enum):
    REGISTRATION = "REGISTRATION"
    IDENTITY = "IDENTITY"


# Field hints sent by kiosks, compared after normalize_key()
_REGISTRATION_HINTS = frozenset({
    "REG", "REGNO", "REGNUM", "REGISTRATION", "CAR", "PLATE", "VEHICLE",
})
_IDENTITY_HINTS = frozenset({
    "ID", "DOC", "DOCNO", "IDENTITY", "MYKAD", "MYKADPASSPORT", "PASSPORT", "IC",
})


def to_text(v: Any) -> str:
    return ("" if v is None else str(v)).strip()


def to_upper(v: Any) -> str:
    return to_text(v).upper()


def normalize_key(raw: Any) -> str:
    """Map raw user text to the canonical lookup key.

    Registration and identity numbers share the same canonical form, so the
    field hint only matters for choosing which column to search.
    """
    return _NON_ALNUM.sub("", to_upper(raw))


def resolve_key_kinds(field_hint: Any) -> list[KeyKind]:
    """Key kinds to try, in order, for a search field hint.

    Unknown or empty hints try registration first, then identity.
    """
    hint = normalize_key(field_hint)
    if hint in _REGISTRATION_HINTS:
        return [KeyKind.REGISTRATION]
    if hint in _IDENTITY_HINTS:
        return [KeyKind.IDENTITY]
    return [KeyKind.REGISTRATION, KeyKind.IDENTITY]


def format_remark(remark: Any, unit_no: Any) -> str:
    r = to_upper(remark)
    u = to_upper(unit_no)
    if r in ("OWNER", "TENANT") and u:
        return f"{r} ( {u} )"
    return r


def format_reason(reason: Any, reason_other: Any) -> str:
    r = to_upper(reason)
    o = to_upper(reason_other)
    if r == "OTHER" and o:
        return f"OTHER ( {o} )"
    return r
