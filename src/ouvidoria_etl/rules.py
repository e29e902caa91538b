"""ouvidoria_etl.rules

YAML-backed business-rule tables for the field normalizer.

Responsibilities:
  - Load and validate config/business_rules.yml
  - Pre-key every accent/case-insensitive table with canon_text()
  - Expose the tables as read-only mappings
  - Hash the YAML content for traceability in run reports

Usage:
    from ouvidoria_etl.rules import load_business_rules

    rules = load_business_rules()
    rules.theme_to_organization.get(canon_text("Saúde"))
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from ouvidoria_etl.normalize import canon_text

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RULES_PATH = Path(__file__).parent.parent.parent / "config" / "business_rules.yml"

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "header_aliases",
    "not_applicable",
    "default_organization",
    "theme_to_organization",
    "sector_ombudsman_unit",
    "fallback_unit",
    "theme_to_ombudsman",
    "unit_names",
    "responsible_names",
    "staff_names",
    "channel_aliases",
    "concluded",
})

_MAPPING_KEYS = (
    "header_aliases",
    "theme_to_organization",
    "theme_to_ombudsman",
    "unit_names",
    "responsible_names",
    "staff_names",
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RulesValidationError(ValueError):
    """Raised when the business-rules YAML fails schema validation."""


# ---------------------------------------------------------------------------
# BusinessRules dataclass
# ---------------------------------------------------------------------------

def _frozen(d: dict[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(d))


@dataclass(frozen=True)
class BusinessRules:
    """Parsed, validated lookup tables.  Canon-keyed tables use canon_text keys."""

    version: str
    yaml_hash: str
    header_aliases: Mapping[str, tuple[str, ...]]
    not_applicable_themes: frozenset[str]
    generic_subjects: frozenset[str]
    not_applicable_override: str
    default_organization: str
    theme_to_organization: Mapping[str, str]
    sector_ombudsman_unit: str
    fallback_unit: str
    theme_to_ombudsman: Mapping[str, str]
    unit_names: Mapping[str, str]
    responsible_names: Mapping[str, str]
    staff_names: Mapping[str, str]
    canonical_channel: str
    channel_aliases: frozenset[str]
    concluded_statuses: frozenset[str]
    concluded_deadline: str
    raw_yaml: str = field(repr=False, default="")


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_business_rules(yaml_path: Path | None = None) -> BusinessRules:
    """Load, validate and return BusinessRules from a YAML file.

    Args:
        yaml_path: Path to the rules file.  Defaults to
                   config/business_rules.yml at the project root.

    Raises:
        RulesValidationError: If any required key is missing or malformed.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_RULES_PATH
    raw = path.read_text(encoding="utf-8")
    return parse_business_rules(raw)


def parse_business_rules(raw: str) -> BusinessRules:
    """Build BusinessRules from YAML text (used by load_business_rules and tests)."""
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise RulesValidationError(f"Invalid YAML: {exc}") from exc
    validate_business_rules(data)

    na = data["not_applicable"]
    channels = data["channel_aliases"]
    concluded = data["concluded"]
    return BusinessRules(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        header_aliases=_frozen({
            fld: tuple(str(a) for a in aliases)
            for fld, aliases in data["header_aliases"].items()
        }),
        not_applicable_themes=frozenset(canon_text(t) for t in na["themes"]),
        generic_subjects=frozenset(canon_text(s) for s in na["generic_subjects"]),
        not_applicable_override=str(na["override"]),
        default_organization=str(data["default_organization"]),
        theme_to_organization=_canon_table(data["theme_to_organization"]),
        sector_ombudsman_unit=str(data["sector_ombudsman_unit"]),
        fallback_unit=str(data["fallback_unit"]),
        theme_to_ombudsman=_canon_table(data["theme_to_ombudsman"]),
        unit_names=_canon_table(data["unit_names"]),
        responsible_names=_canon_table(data["responsible_names"]),
        # staff corrections are exact-match on the trimmed value
        staff_names=_frozen({str(k).strip(): str(v) for k, v in data["staff_names"].items()}),
        canonical_channel=str(channels["canonical"]),
        channel_aliases=frozenset(canon_text(a) for a in channels["aliases"]),
        concluded_statuses=frozenset(canon_text(s) for s in concluded["statuses"]),
        concluded_deadline=str(concluded["remaining_deadline"]),
        raw_yaml=raw,
    )


def _canon_table(table: dict[str, Any]) -> Mapping[str, str]:
    return _frozen({canon_text(k): str(v) for k, v in table.items()})


def validate_business_rules(data: Any) -> None:
    """Raise RulesValidationError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - lookup tables are mappings (possibly empty)
      - header_aliases has a non-empty alias list for 'protocol'
      - nested sections carry their required keys
    """
    if not isinstance(data, dict):
        raise RulesValidationError("YAML root must be a mapping.")

    missing = REQUIRED_YAML_KEYS - set(data.keys())
    if missing:
        raise RulesValidationError(f"Missing required YAML keys: {sorted(missing)}")

    for key in _MAPPING_KEYS:
        if not isinstance(data[key] or {}, dict):
            raise RulesValidationError(f"'{key}' must be a mapping.")
        data[key] = data[key] or {}

    for fld, aliases in data["header_aliases"].items():
        if not isinstance(aliases, list) or not aliases:
            raise RulesValidationError(
                f"header_aliases['{fld}'] must be a non-empty list of header names."
            )
    if "protocol" not in data["header_aliases"]:
        raise RulesValidationError("header_aliases must define 'protocol'.")

    _require_section(data, "not_applicable", ("themes", "generic_subjects", "override"))
    _require_section(data, "channel_aliases", ("canonical", "aliases"))
    _require_section(data, "concluded", ("statuses", "remaining_deadline"))

    for key in ("default_organization", "sector_ombudsman_unit", "fallback_unit"):
        if not isinstance(data[key], str) or not data[key].strip():
            raise RulesValidationError(f"'{key}' must be a non-empty string.")


def _require_section(data: dict[str, Any], name: str, keys: tuple[str, ...]) -> None:
    section = data.get(name)
    if not isinstance(section, dict):
        raise RulesValidationError(f"'{name}' must be a mapping.")
    absent = [k for k in keys if k not in section]
    if absent:
        raise RulesValidationError(f"'{name}' is missing keys: {absent}")
