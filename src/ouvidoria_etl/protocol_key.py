"""ouvidoria_etl.protocol_key

The single implementation of protocol (identity key) normalization.

Two forms are derived from one raw value:

  display form:    trimmed, internal whitespace runs collapsed to one space.
                   Stored in service_record.protocol.
  comparison form: display form with all whitespace removed.  Used only for
                   matching: the existing-state index, in-batch duplicate
                   detection, the pre-insert existence check, and the dedup
                   repair scan all call comparison_key() from here.

Both forms are idempotent: f(f(k)) == f(k).
"""

from __future__ import annotations

import re
from typing import Any

from ouvidoria_etl.normalize import clean_value, normalize_space

_WS_RE = re.compile(r"\s+")


def normalize_protocol(value: Any | None) -> str | None:
    """Return the display form of a protocol, or None when absent."""
    v = clean_value(value)
    if v is None:
        return None
    return normalize_space(v)


def comparison_key(value: Any | None) -> str | None:
    """Return the whitespace-insensitive comparison form, or None when absent."""
    display = normalize_protocol(value)
    if display is None:
        return None
    return _WS_RE.sub("", display) or None
