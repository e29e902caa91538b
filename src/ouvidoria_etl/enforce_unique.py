"""ouvidoria_etl.enforce_unique

Guarded installation of the unique index on service_record.protocol.

Verify, then act:
  1. re-run the duplicate scan used by the repair job
  2. any duplicate group left → abort without touching the schema
  3. index already present → success, nothing to do
  4. otherwise create it

Protocol-related indexes are listed before and after for the report.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import psycopg
import psycopg.errors

from ouvidoria_etl.dedup_repair import scan_duplicates
from ouvidoria_etl.shared import format_report
from ouvidoria_etl.store import (
    UNIQUE_INDEX_NAME,
    create_unique_protocol_index,
    list_protocol_indexes,
    unique_index_exists,
)

log = logging.getLogger(__name__)

CREATED = "created"
ALREADY_PRESENT = "already_present"
ABORTED_DUPLICATES = "aborted_duplicates"
FAILED = "failed"

SUCCESS_STATUSES = frozenset({CREATED, ALREADY_PRESENT})


@dataclass
class EnforceResult:
    status: str = ""
    message: str = ""
    groups_exact: int = 0
    groups_comparison: int = 0
    indexes_before: list[tuple[str, str]] = field(default_factory=list)
    indexes_after: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in SUCCESS_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "groups_exact": self.groups_exact,
            "groups_comparison": self.groups_comparison,
            "indexes_before": [name for name, _ in self.indexes_before],
            "indexes_after": [name for name, _ in self.indexes_after],
        }


def run_enforce_unique(conn: psycopg.Connection) -> EnforceResult:
    """Install the unique protocol index if, and only if, no duplicates remain.

    Expects an autocommit connection.
    """
    result = EnforceResult(indexes_before=list_protocol_indexes(conn))

    scan = scan_duplicates(conn)
    result.groups_exact = len(scan.exact)
    result.groups_comparison = len(scan.comparison)

    if scan.has_duplicates:
        result.status = ABORTED_DUPLICATES
        result.message = (
            f"{result.groups_exact} exact and {result.groups_comparison} comparison-key "
            "duplicate group(s) remain; run --mode dedup_repair first"
        )
        log.error("unique index not installed: %s", result.message)
    elif unique_index_exists(conn):
        result.status = ALREADY_PRESENT
        result.message = f"{UNIQUE_INDEX_NAME} already exists"
        log.info(result.message)
    else:
        try:
            create_unique_protocol_index(conn)
            result.status = CREATED
            result.message = f"{UNIQUE_INDEX_NAME} created"
            log.info(result.message)
        except psycopg.errors.DuplicateTable:
            # created concurrently by another run
            result.status = ALREADY_PRESENT
            result.message = f"{UNIQUE_INDEX_NAME} already exists"
            log.info(result.message)
        except psycopg.errors.UniqueViolation as exc:
            # duplicates written between the scan and the CREATE
            result.status = FAILED
            result.message = f"index creation failed: {exc}; run --mode dedup_repair first"
            log.error(result.message)

    result.indexes_after = list_protocol_indexes(conn)
    return result


def build_enforce_report(result: EnforceResult) -> str:
    lines = [
        f"  status:                  {result.status}",
        f"  groups (exact):          {result.groups_exact}",
        f"  groups (comparison key): {result.groups_comparison}",
        f"  {result.message}",
        "  indexes before:",
        *(f"    - {name}: {definition}" for name, definition in result.indexes_before),
        "  indexes after:",
        *(f"    - {name}: {definition}" for name, definition in result.indexes_after),
    ]
    return format_report("Unique Protocol Index Report", lines, [], dry_run=False)
