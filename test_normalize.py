"""Vendor name, trade and keyword normalization."""

import pytest

from draw_matching.normalize import (
    UNKNOWN_VENDOR,
    normalize_keywords,
    normalize_trade,
    normalize_vendor_name,
    tokenize,
)


class TestNormalizeVendorName:

    @pytest.mark.parametrize("raw, expected", [
        ("ACME Lumber Co.", "acme lumber"),
        ("Acme Lumber Co", "acme lumber"),
        ("  Acme   Lumber, Co ", "acme lumber"),
        ("Bright Spark Electric LLC", "bright spark electric"),
        ("Bob's Plumbing, Inc.", "bobs plumbing"),
        ("Smith & Sons L.L.C.", "smith sons"),
        ("Summit Roofing Corp", "summit roofing"),
    ])
    def test_known_forms(self, raw, expected):
        assert normalize_vendor_name(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", None, "...", "''"])
    def test_empty_input_is_unknown(self, raw):
        assert normalize_vendor_name(raw) == UNKNOWN_VENDOR

    def test_suffix_only_name_is_kept(self):
        assert normalize_vendor_name("Co.") == "co"

    def test_only_trailing_suffixes_are_removed(self):
        assert normalize_vendor_name("Inc Builders LLC") == "inc builders"

    def test_idempotent(self):
        names = [
            "ACME Lumber Co.",
            "Bright Spark Electric LLC",
            "Bob's Plumbing, Inc.",
            "Smith & Sons L.L.C.",
            "",
            "Co",
            "Ace-Hardware / Supply Company",
        ]
        for name in names:
            once = normalize_vendor_name(name)
            assert normalize_vendor_name(once) == once

    def test_variants_share_a_key(self):
        variants = ["ACME Lumber Co.", "acme lumber", "Acme Lumber Company", "ACME  LUMBER, LLC"]
        assert {normalize_vendor_name(v) for v in variants} == {"acme lumber"}


class TestTextHelpers:

    def test_tokenize_drops_short_tokens(self):
        assert tokenize("Electrical - Rough In") == ["electrical", "rough"]

    def test_tokenize_splits_on_separators(self):
        assert tokenize("Doors/Windows & Trim_Work") == ["doors", "windows", "trim", "work"]

    def test_tokenize_empty(self):
        assert tokenize(None) == []
        assert tokenize("") == []

    def test_normalize_trade(self):
        assert normalize_trade("  HVAC ") == "hvac"
        assert normalize_trade("Low   Voltage") == "low voltage"
        assert normalize_trade("") is None
        assert normalize_trade(None) is None

    def test_normalize_keywords(self):
        assert normalize_keywords([" Wire ", "wire", "", "Panel"]) == ["wire", "panel"]
        assert normalize_keywords([]) == []
