"""ouvidoria_etl.dedup_repair

Dedup Repair Job: collapses service_record rows that share a protocol.

Two passes over every record with a non-blank protocol:
  1. group by the stored protocol exactly
  2. group the survivors by comparison_key(protocol), which catches rows
     differing only by whitespace

In each group of two or more, most_recently_updated_wins() picks the keeper
and the rest are deleted, one transaction per group.  A final re-scan
confirms nothing is left (RepairCounters.verified).

Running it again immediately afterwards finds zero groups and deletes nothing.

Also provides the read-only scan used by ``--mode dedup_check`` and by the
uniqueness enforcement guard.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

import psycopg

from ouvidoria_etl.protocol_key import comparison_key
from ouvidoria_etl.shared import format_report
from ouvidoria_etl.store import count_records, delete_records, load_protocol_rows

log = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class RepairCounters:
    records_before: int = 0
    rows_scanned: int = 0
    groups_exact: int = 0
    groups_comparison: int = 0
    records_deleted: int = 0
    records_kept: int = 0
    final_count: int = 0
    remaining_groups: int = 0
    verified: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def groups_found(self) -> int:
        return self.groups_exact + self.groups_comparison

    def to_dict(self) -> dict[str, Any]:
        return {
            "records_before": self.records_before,
            "rows_scanned": self.rows_scanned,
            "groups_exact": self.groups_exact,
            "groups_comparison": self.groups_comparison,
            "groups_found": self.groups_found,
            "records_deleted": self.records_deleted,
            "records_kept": self.records_kept,
            "final_count": self.final_count,
            "remaining_groups": self.remaining_groups,
            "verified": self.verified,
            "warnings": self.warnings,
        }


@dataclass
class DuplicateScan:
    rows_scanned: int = 0
    exact: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    comparison: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    @property
    def has_duplicates(self) -> bool:
        return bool(self.exact or self.comparison)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_scanned": self.rows_scanned,
            "groups_exact": len(self.exact),
            "groups_comparison": len(self.comparison),
            "exact_samples": _samples(self.exact),
            "comparison_samples": _samples(self.comparison),
        }


def _samples(groups: Mapping[str, list[dict[str, Any]]], limit: int = 10) -> dict[str, list[str]]:
    return {key: [m["id"] for m in members] for key, members in list(groups.items())[:limit]}


# ---------------------------------------------------------------------------
# Policy + grouping
# ---------------------------------------------------------------------------

def _recency(member: Mapping[str, Any]) -> tuple[bool, datetime, str]:
    ts = member.get("updated_at") or member.get("created_at")
    return (ts is not None, ts if ts is not None else _EPOCH, str(member["id"]))


def most_recently_updated_wins(
    members: Iterable[Mapping[str, Any]],
) -> tuple[Mapping[str, Any], list[Mapping[str, Any]]]:
    """Return (keeper, losers) for one duplicate group.

    The keeper has the latest updated_at, falling back to created_at when
    updated_at is missing.  Records with neither lose to any timestamped one.
    Ties go to the greatest id, matching the existing-state index load order.
    """
    ordered = sorted(members, key=_recency)
    if not ordered:
        raise ValueError("duplicate group is empty")
    return ordered[-1], ordered[:-1]


def exact_protocol(row: Mapping[str, Any]) -> str | None:
    return row.get("protocol") or None


def protocol_comparison_key(row: Mapping[str, Any]) -> str | None:
    return comparison_key(row.get("protocol"))


def find_duplicate_groups(
    rows: Iterable[Mapping[str, Any]],
    key_fn: Callable[[Mapping[str, Any]], str | None],
) -> dict[str, list[dict[str, Any]]]:
    """Group rows by key_fn and return only groups with more than one member."""
    groups: dict[str, list[dict[str, Any]]] = {}
    for row in rows:
        key = key_fn(row)
        if key is None:
            continue
        groups.setdefault(key, []).append(dict(row))
    return {k: v for k, v in groups.items() if len(v) > 1}


def _scoped(rows: list[dict[str, Any]], keys: set[str] | None) -> list[dict[str, Any]]:
    if keys is None:
        return rows
    return [r for r in rows if protocol_comparison_key(r) in keys]


# ---------------------------------------------------------------------------
# Scan (read-only)
# ---------------------------------------------------------------------------

def scan_duplicates(conn: psycopg.Connection, keys: set[str] | None = None) -> DuplicateScan:
    rows = _scoped(load_protocol_rows(conn), keys)
    return DuplicateScan(
        rows_scanned=len(rows),
        exact=find_duplicate_groups(rows, exact_protocol),
        comparison=find_duplicate_groups(rows, protocol_comparison_key),
    )


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------

def _collapse(
    conn: psycopg.Connection,
    groups: dict[str, list[dict[str, Any]]],
    pass_name: str,
    counters: RepairCounters,
    kept_ids: set[str],
    deleted_ids: set[str],
) -> None:
    for key, members in groups.items():
        keeper, losers = most_recently_updated_wins(members)
        loser_ids = [str(m["id"]) for m in losers]
        with conn.transaction():
            n = delete_records(conn, loser_ids)
        if n != len(loser_ids):
            msg = (
                f"{pass_name} group {key!r}: expected to delete {len(loser_ids)} "
                f"records, deleted {n}"
            )
            counters.warnings.append(msg)
            log.warning(msg)
        counters.records_deleted += n
        kept_ids.add(str(keeper["id"]))
        deleted_ids.update(loser_ids)
        log.info(
            "%s group %r: kept %s, deleted %s", pass_name, key, keeper["id"], loser_ids
        )


def run_dedup_repair(
    conn: psycopg.Connection,
    counters: RepairCounters | None = None,
    keys: Iterable[str] | None = None,
) -> RepairCounters:
    """Collapse duplicate groups and verify the result.

    Args:
        conn: An autocommit connection (each group commits on its own), or a
              connection already inside a transaction for a dry run.
        counters: Counters to fill in; a new instance is created if omitted.
        keys: Restrict the repair to these comparison keys.  None means the
              whole table.
    """
    counters = counters or RepairCounters()
    scope = set(keys) if keys is not None else None

    counters.records_before = count_records(conn)
    rows = _scoped(load_protocol_rows(conn), scope)
    counters.rows_scanned = len(rows)

    kept_ids: set[str] = set()
    deleted_ids: set[str] = set()

    exact_groups = find_duplicate_groups(rows, exact_protocol)
    counters.groups_exact = len(exact_groups)
    _collapse(conn, exact_groups, "exact", counters, kept_ids, deleted_ids)

    survivors = [r for r in rows if r["id"] not in deleted_ids]
    comparison_groups = find_duplicate_groups(survivors, protocol_comparison_key)
    counters.groups_comparison = len(comparison_groups)
    _collapse(conn, comparison_groups, "comparison", counters, kept_ids, deleted_ids)

    counters.records_kept = len(kept_ids - deleted_ids)

    recheck = scan_duplicates(conn, scope)
    counters.remaining_groups = len(recheck.exact) + len(recheck.comparison)
    counters.verified = counters.remaining_groups == 0
    counters.final_count = count_records(conn)
    if not counters.verified:
        msg = f"self-check found {counters.remaining_groups} duplicate group(s) after repair"
        counters.warnings.append(msg)
        log.error(msg)

    log.info(
        "dedup repair: %d exact + %d comparison groups, %d deleted, %d kept, %d -> %d records",
        counters.groups_exact, counters.groups_comparison, counters.records_deleted,
        counters.records_kept, counters.records_before, counters.final_count,
    )
    return counters


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def build_repair_report(counters: RepairCounters, dry_run: bool = False) -> str:
    lines = [
        f"  records before:          {counters.records_before}",
        f"  rows scanned:            {counters.rows_scanned}",
        f"  groups (exact):          {counters.groups_exact}",
        f"  groups (comparison key): {counters.groups_comparison}",
        f"  groups found:            {counters.groups_found}",
        f"  records deleted:         {counters.records_deleted}",
        f"  records kept:            {counters.records_kept}",
        f"  final count:             {counters.final_count}",
        f"  remaining groups:        {counters.remaining_groups}",
        f"  self-check:              {'OK' if counters.verified else 'FAILED'}",
    ]
    return format_report("Dedup Repair Report", lines, counters.warnings, dry_run)


def build_check_report(scan: DuplicateScan) -> str:
    lines = [
        f"  rows scanned:            {scan.rows_scanned}",
        f"  groups (exact):          {len(scan.exact)}",
        f"  groups (comparison key): {len(scan.comparison)}",
    ]
    for title, groups in (("exact", scan.exact), ("comparison", scan.comparison)):
        for key, ids in _samples(groups).items():
            lines.append(f"    [{title}] {key!r}: {', '.join(ids)}")
    return format_report("Duplicate Check Report", lines, [], dry_run=False)
