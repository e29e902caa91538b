"""Normalization primitives for ouvidoria sheet ingestion.

All functions accept Any | None (sheet cells arrive as strings, but
programmatic callers may pass numbers) and return str or None.  Nothing
here raises on malformed input: unparseable values become None.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any

# Cell values the sheet uses to mean "no value".
ABSENT_MARKERS = frozenset({"-", "null", "undefined"})

_ISO_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})")
_BR_DATE_RE = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: clean_value
# ---------------------------------------------------------------------------

def clean_value(value: Any | None) -> str | None:
    """Trim a sheet cell; '-', 'null', 'undefined' and blanks become None."""
    v = trim(value)
    if v is None or v in ABSENT_MARKERS:
        return None
    return v


# ---------------------------------------------------------------------------
# Rule 4: strip_accents / canon_text
# ---------------------------------------------------------------------------

def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def canon_text(value: Any | None) -> str:
    """Lookup key for rule tables: no accents, lowercase, single spaces.

    Returns "" (not None) for absent input so it can be used directly as a
    dict key.
    """
    v = normalize_space(value)
    if v is None:
        return ""
    return strip_accents(v).lower()


# ---------------------------------------------------------------------------
# Rule 5: to_lowercase  (shadow fields for case-insensitive filtering)
# ---------------------------------------------------------------------------

def to_lowercase(value: str | None) -> str | None:
    """Accent-stripped lowercase copy of a text field, or None."""
    if not value or not isinstance(value, str):
        return None
    v = strip_accents(value).lower().strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 6: normalize_date
# ---------------------------------------------------------------------------

def normalize_date(value: Any | None) -> str | None:
    """Return a YYYY-MM-DD string or None.

    Accepts 'YYYY-MM-DD', an ISO datetime (date prefix kept) and the
    Brazilian 'DD/MM/YYYY'.  Anything else is treated as absent.
    """
    v = clean_value(value)
    if v is None:
        return None
    m = _ISO_DATE_RE.match(v)
    if m:
        return m.group(1)
    m = _BR_DATE_RE.match(v)
    if m:
        day, month, year = m.groups()
        return f"{year}-{month}-{day}"
    return None
