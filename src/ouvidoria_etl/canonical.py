"""ouvidoria_etl.canonical

Field normalizer: one sheet row (SourceRow) → CanonicalRecord.

Pure and deterministic.  Malformed cells are treated as absent, never
raised.  Rule order:

  1. extract each canonical field through the header alias table, cleaned
  2. "não se aplica" theme → override category (subject too when generic)
  3. staff name corrections
  4. theme → organization, default organization when unmapped and empty
  5. unit canonicalization (sector ombudsman + theme → themed ombudsman)
  6. responsible-party canonicalization
  7. channel alias folding
  8. concluded status → fixed remaining-deadline sentinel
  9. ISO dates, lowercase shadows and protocol forms from the final values
 10. final trim of every string field
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Mapping

from ouvidoria_etl.normalize import canon_text, clean_value, normalize_date, to_lowercase
from ouvidoria_etl.protocol_key import comparison_key, normalize_protocol
from ouvidoria_etl.rules import BusinessRules

# Canonical text fields read from the sheet (header_aliases keys).
SOURCE_FIELDS = (
    "protocol",
    "created_date",
    "demand_status",
    "remaining_deadline",
    "completed_date",
    "resolution_days",
    "priority",
    "manifestation_type",
    "theme",
    "subject",
    "channel",
    "address",
    "registration_unit",
    "health_unit",
    "status",
    "staff",
    "responsible",
    "verified",
    "organization",
)

# Lowercase shadow columns and the field each one mirrors.
SHADOW_FIELDS = {
    "theme_lc": "theme",
    "subject_lc": "subject",
    "channel_lc": "channel",
    "organization_lc": "organization",
    "demand_status_lc": "demand_status",
    "manifestation_type_lc": "manifestation_type",
    "responsible_lc": "responsible",
}

DERIVED_FIELDS = ("protocol_key", "created_iso", "completed_iso", *SHADOW_FIELDS)

# Every stored column the diff engine compares, in a fixed order.
COMPARED_FIELDS = (*SOURCE_FIELDS, *DERIVED_FIELDS)

PAYLOAD_FIELD = "data"


@dataclass
class CanonicalRecord:
    protocol: str | None = None
    protocol_key: str | None = None
    created_date: str | None = None
    created_iso: str | None = None
    demand_status: str | None = None
    remaining_deadline: str | None = None
    completed_date: str | None = None
    completed_iso: str | None = None
    resolution_days: str | None = None
    priority: str | None = None
    manifestation_type: str | None = None
    theme: str | None = None
    subject: str | None = None
    channel: str | None = None
    address: str | None = None
    registration_unit: str | None = None
    health_unit: str | None = None
    status: str | None = None
    staff: str | None = None
    responsible: str | None = None
    verified: str | None = None
    organization: str | None = None
    theme_lc: str | None = None
    subject_lc: str | None = None
    channel_lc: str | None = None
    organization_lc: str | None = None
    demand_status_lc: str | None = None
    manifestation_type_lc: str | None = None
    responsible_lc: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_fields(self) -> dict[str, Any]:
        """Column → value mapping for every stored column, payload included."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _pick(row: Mapping[str, Any], aliases: tuple[str, ...]) -> str | None:
    for alias in aliases:
        v = clean_value(row.get(alias))
        if v is not None:
            return v
    return None


def extract_fields(row: Mapping[str, Any], rules: BusinessRules) -> dict[str, str | None]:
    """Return {canonical field: cleaned value} for every SOURCE_FIELDS entry."""
    out: dict[str, str | None] = {}
    for name in SOURCE_FIELDS:
        aliases = rules.header_aliases.get(name, (name,))
        out[name] = _pick(row, aliases)
    return out


# ---------------------------------------------------------------------------
# Business rules
# ---------------------------------------------------------------------------

def apply_not_applicable_rule(values: dict[str, str | None], rules: BusinessRules) -> None:
    if canon_text(values["theme"]) not in rules.not_applicable_themes:
        return
    subject = canon_text(values["subject"])
    if subject == "" or subject in rules.generic_subjects:
        values["subject"] = rules.not_applicable_override
    values["theme"] = rules.not_applicable_override


def apply_staff_names(values: dict[str, str | None], rules: BusinessRules) -> None:
    staff = values["staff"]
    if staff and staff in rules.staff_names:
        values["staff"] = rules.staff_names[staff]


def apply_organization(values: dict[str, str | None], rules: BusinessRules) -> None:
    theme = canon_text(values["theme"])
    if not theme:
        return
    mapped = rules.theme_to_organization.get(theme)
    if mapped:
        values["organization"] = mapped
    elif not values["organization"]:
        values["organization"] = rules.default_organization


def apply_unit(values: dict[str, str | None], rules: BusinessRules) -> None:
    unit = values["registration_unit"]
    unit_key = canon_text(unit)
    if not unit_key:
        return
    if unit_key == canon_text(rules.sector_ombudsman_unit):
        themed = rules.theme_to_ombudsman.get(canon_text(values["theme"]))
        values["registration_unit"] = themed or rules.fallback_unit
    elif unit_key in rules.unit_names:
        values["registration_unit"] = rules.unit_names[unit_key]


def apply_responsible(values: dict[str, str | None], rules: BusinessRules) -> None:
    mapped = rules.responsible_names.get(canon_text(values["responsible"]))
    if mapped:
        values["responsible"] = mapped


def apply_channel(values: dict[str, str | None], rules: BusinessRules) -> None:
    if canon_text(values["channel"]) in rules.channel_aliases:
        values["channel"] = rules.canonical_channel


def apply_concluded_status(values: dict[str, str | None], rules: BusinessRules) -> None:
    if canon_text(values["demand_status"]) in rules.concluded_statuses:
        values["remaining_deadline"] = rules.concluded_deadline


_RULES = (
    apply_not_applicable_rule,
    apply_staff_names,
    apply_organization,
    apply_unit,
    apply_responsible,
    apply_channel,
    apply_concluded_status,
)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def normalize_row(row: Mapping[str, Any], rules: BusinessRules) -> CanonicalRecord:
    """Normalize one sheet row.  The row is mirrored in .data with text keys."""
    values = extract_fields(row, rules)
    for rule in _RULES:
        rule(values, rules)

    values["protocol"] = normalize_protocol(values["protocol"])
    derived: dict[str, str | None] = {
        "protocol_key": comparison_key(values["protocol"]),
        "created_iso": normalize_date(values["created_date"]),
        "completed_iso": normalize_date(values["completed_date"]),
    }
    for shadow, source in SHADOW_FIELDS.items():
        derived[shadow] = to_lowercase(values[source])

    merged = {**values, **derived}
    # final pass: every string field trimmed, blanks dropped
    merged = {k: (v.strip() or None) if isinstance(v, str) else v for k, v in merged.items()}
    # jsonb keys are always text
    data = {str(k): v for k, v in row.items() if k is not None}
    return CanonicalRecord(**merged, data=data)
