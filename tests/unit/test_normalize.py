"""Unit tests for ouvidoria_etl.normalize."""

import pytest

from ouvidoria_etl.normalize import (
    canon_text,
    clean_value,
    normalize_date,
    normalize_space,
    strip_accents,
    to_lowercase,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None

    def test_number_is_stringified(self):
        assert trim(42) == "42"


# ---------------------------------------------------------------------------
# normalize_space
# ---------------------------------------------------------------------------

class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("hello   world") == "hello world"

    def test_collapses_tabs_and_newlines(self):
        assert normalize_space("hello\t\n world") == "hello world"

    def test_trims_outer(self):
        assert normalize_space("  hello  ") == "hello"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# clean_value
# ---------------------------------------------------------------------------

class TestCleanValue:
    @pytest.mark.parametrize("raw", ["-", " - ", "null", "undefined", "", "   ", None])
    def test_absent_markers(self, raw):
        assert clean_value(raw) is None

    def test_keeps_real_value(self):
        assert clean_value("  Saúde ") == "Saúde"

    def test_marker_inside_text_is_kept(self):
        assert clean_value("null pointer") == "null pointer"


# ---------------------------------------------------------------------------
# canon_text / strip_accents / to_lowercase
# ---------------------------------------------------------------------------

class TestCanonText:
    def test_accents_case_and_spaces(self):
        assert canon_text("  Não   se Aplica ") == "nao se aplica"

    def test_absent_is_empty_string(self):
        assert canon_text(None) == ""
        assert canon_text("   ") == ""

    def test_strip_accents(self):
        assert strip_accents("Educação Pública") == "Educacao Publica"


class TestToLowercase:
    def test_lowercases_and_strips_accents(self):
        assert to_lowercase("Saúde ") == "saude"

    def test_none(self):
        assert to_lowercase(None) is None

    def test_empty(self):
        assert to_lowercase("") is None

    def test_non_string(self):
        assert to_lowercase(12) is None  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# normalize_date
# ---------------------------------------------------------------------------

class TestNormalizeDate:
    def test_iso_date(self):
        assert normalize_date("2024-03-05") == "2024-03-05"

    def test_iso_datetime_keeps_date_part(self):
        assert normalize_date("2024-03-05T10:00:00.000Z") == "2024-03-05"

    def test_brazilian_format(self):
        assert normalize_date("05/03/2024") == "2024-03-05"

    def test_brazilian_with_padding_whitespace(self):
        assert normalize_date(" 05/03/2024 ") == "2024-03-05"

    def test_unpadded_day_rejected(self):
        assert normalize_date("5/3/2024") is None

    @pytest.mark.parametrize("raw", [None, "", "-", "março de 2024", "2024/03/05"])
    def test_unparseable_is_none(self, raw):
        assert normalize_date(raw) is None
