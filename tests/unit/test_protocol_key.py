"""Unit tests for ouvidoria_etl.protocol_key."""

import pytest

from ouvidoria_etl.protocol_key import comparison_key, normalize_protocol

KEYS = [
    "2024001",
    " 2024001",
    "2024001 ",
    "2024 001",
    "2024   001",
    "\t2024\n001 ",
    "OUV-2024/0001",
    "C 200",
]


class TestNormalizeProtocol:
    def test_trims_and_collapses(self):
        assert normalize_protocol("  2024   000 123 ") == "2024 000 123"

    @pytest.mark.parametrize("raw", [None, "", "   ", "-", "null", "undefined"])
    def test_absent(self, raw):
        assert normalize_protocol(raw) is None

    def test_number_input(self):
        assert normalize_protocol(20240001) == "20240001"

    @pytest.mark.parametrize("raw", KEYS)
    def test_idempotent(self, raw):
        once = normalize_protocol(raw)
        assert normalize_protocol(once) == once


class TestComparisonKey:
    def test_strips_all_whitespace(self):
        assert comparison_key(" 2024 000\t123 ") == "2024000123"

    def test_absent(self):
        assert comparison_key(None) is None
        assert comparison_key(" - ") is None

    @pytest.mark.parametrize("raw", KEYS)
    def test_idempotent(self, raw):
        once = comparison_key(raw)
        assert comparison_key(once) == once

    def test_whitespace_variants_share_a_key(self):
        variants = ["2024001", " 2024001", "2024001 ", "2024 001", "2024   001", "\t2024\n001 "]
        assert {comparison_key(v) for v in variants} == {"2024001"}

    def test_display_form_differs_but_key_matches(self):
        assert normalize_protocol(" C200") != normalize_protocol("C 200")
        assert comparison_key(" C200") == comparison_key("C 200")

    def test_case_is_significant(self):
        assert comparison_key("ab1") != comparison_key("AB1")
