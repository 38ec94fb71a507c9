"""Tests for lookup-key normalization and display formatting (normalize.py).

Covers:
- Canonical key form (uppercase, [A-Z0-9] only)
- Field hint resolution to key kinds
- Remark / reason display formatting
"""
import pytest

from secure_entry.modules.normalize import (
    KeyKind,
    format_reason,
    format_remark,
    normalize_key,
    resolve_key_kinds,
)


class TestNormalizeKey:
    @pytest.mark.parametrize("raw,expected", [
        ("wxy 1234", "WXY1234"),
        (" WXY-1234 ", "WXY1234"),
        ("900101-14-5678", "900101145678"),
        ("a.b/c_d", "ABCD"),
        ("A1B2", "A1B2"),
    ])
    def test_canonical_form(self, raw, expected):
        assert normalize_key(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "--//", "!!!"])
    def test_empty_when_nothing_alphanumeric(self, raw):
        assert normalize_key(raw) == ""

    def test_non_string_input(self):
        assert normalize_key(12345) == "12345"

    def test_idempotent(self):
        key = normalize_key("abc - 123")
        assert normalize_key(key) == key

    def test_variants_collapse_to_one_key(self):
        assert normalize_key("wxy1234") == normalize_key("W X Y-12/34")


class TestResolveKeyKinds:
    @pytest.mark.parametrize("hint", ["regNo", "regnum", "REG", "plate", "vehicle"])
    def test_registration_hints(self, hint):
        assert resolve_key_kinds(hint) == [KeyKind.REGISTRATION]

    @pytest.mark.parametrize("hint", ["docNo", "mykadPassport", "passport", "id", "IC"])
    def test_identity_hints(self, hint):
        assert resolve_key_kinds(hint) == [KeyKind.IDENTITY]

    @pytest.mark.parametrize("hint", [None, "", "unknown", "name"])
    def test_unknown_hint_tries_registration_then_identity(self, hint):
        assert resolve_key_kinds(hint) == [KeyKind.REGISTRATION, KeyKind.IDENTITY]


class TestFormatRemark:
    def test_owner_with_unit(self):
        assert format_remark("owner", "a-1-2") == "OWNER ( A-1-2 )"

    def test_tenant_with_unit(self):
        assert format_remark("Tenant", "B-3") == "TENANT ( B-3 )"

    def test_owner_without_unit(self):
        assert format_remark("OWNER", "") == "OWNER"

    def test_other_remark_ignores_unit(self):
        assert format_remark("visitor", "A-1") == "VISITOR"

    def test_empty(self):
        assert format_remark(None, None) == ""


class TestFormatReason:
    def test_other_with_detail(self):
        assert format_reason("other", "plumber") == "OTHER ( PLUMBER )"

    def test_other_without_detail(self):
        assert format_reason("OTHER", "") == "OTHER"

    def test_non_other_ignores_detail(self):
        assert format_reason("delivery", "pizza") == "DELIVERY"
