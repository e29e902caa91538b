"""ouvidoria_etl.diff

Field-level diff between an incoming CanonicalRecord and a stored snapshot.

Equality: None, empty and whitespace-only values are all "absent" and equal
to each other; anything else is compared as a trimmed string, so 5 == "5 ".
Booleans and integral floats use the sheet spelling: True == "true",
5.0 == "5".
The raw-payload mirror (``data``) is compared key by key over the union of
both key sets, and on any difference the whole incoming payload is emitted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from ouvidoria_etl.canonical import COMPARED_FIELDS, PAYLOAD_FIELD, CanonicalRecord


@dataclass
class RecordDiff:
    changed_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.changed_fields)


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    # sheet text spelling: true / false, 5 for 5.0
    if isinstance(value, bool):
        v = "true" if value else "false"
    elif isinstance(value, float) and value.is_integer():
        v = str(int(value))
    else:
        v = str(value).strip()
    return v or None


def values_equal(a: Any, b: Any) -> bool:
    return _as_text(a) == _as_text(b)


def payload_equal(incoming: Mapping[str, Any] | None, existing: Mapping[str, Any] | None) -> bool:
    incoming = incoming or {}
    existing = existing or {}
    for key in set(incoming) | set(existing):
        if not values_equal(incoming.get(key), existing.get(key)):
            return False
    return True


def diff_record(incoming: CanonicalRecord, existing: Mapping[str, Any]) -> RecordDiff:
    """Return the columns whose value differs, mapped to the incoming value.

    ``existing`` is a stored snapshot as loaded by the existing-state index;
    columns missing from it count as absent.
    """
    values = incoming.to_fields()
    changed: dict[str, Any] = {}
    for name in COMPARED_FIELDS:
        if not values_equal(values[name], existing.get(name)):
            changed[name] = values[name]

    if not payload_equal(incoming.data, existing.get(PAYLOAD_FIELD)):
        changed[PAYLOAD_FIELD] = dict(incoming.data)
    return RecordDiff(changed_fields=changed)
