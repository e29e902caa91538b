"""ouvidoria_etl.shared

Shared utilities used by every mode: run-level exceptions, RejectWriter,
header normalization, report formatting, and the JSON run-report writer.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceFetchError(Exception):
    """Raised when the source snapshot cannot be obtained or parsed."""


class StoreConnectionError(Exception):
    """Raised when the store cannot be reached or the connection breaks mid-run."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    Rows from one sheet can carry different header sets; the header line is
    taken from the first rejected row and unknown keys are ignored.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: Mapping[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# SyncCounters
# ---------------------------------------------------------------------------

@dataclass
class SyncCounters:
    rows_read: int = 0
    skipped: int = 0
    duplicates_in_batch: int = 0
    inserted: int = 0
    updated: int = 0
    fields_modified: int = 0
    unchanged: int = 0
    # insert found the key already stored at write time (pre-insert recheck
    # or unique violation)
    skipped_existing: int = 0
    batch_fallbacks: int = 0
    errors: int = 0
    index_collisions: int = 0
    collision_records_deleted: int = 0
    records_before: int | None = None
    records_after: int | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "skipped": self.skipped,
            "duplicates_in_batch": self.duplicates_in_batch,
            "inserted": self.inserted,
            "updated": self.updated,
            "fields_modified": self.fields_modified,
            "unchanged": self.unchanged,
            "skipped_existing": self.skipped_existing,
            "batch_fallbacks": self.batch_fallbacks,
            "errors": self.errors,
            "index_collisions": self.index_collisions,
            "collision_records_deleted": self.collision_records_deleted,
            "records_before": self.records_before,
            "records_after": self.records_after,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: Mapping[Any, Any]) -> dict[str, Any]:
    """Return a new dict with header keys whitespace-stripped.

    csv.DictReader puts overflow cells under a None key; those are dropped.
    """
    return {str(k).strip(): v for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Report helpers
# ---------------------------------------------------------------------------

class _HasToDict(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


def format_report(title: str, lines: Iterable[str], warnings: list[str], dry_run: bool) -> str:
    """Render the fixed-width text block every mode prints at the end of a run."""
    out = [
        "=" * 60,
        f"{title}{' (DRY RUN)' if dry_run else ''}",
        "=" * 60,
        *lines,
    ]
    if warnings:
        out.append(f"  warnings ({len(warnings)}):")
        for w in warnings[:50]:
            out.append(f"    - {w}")
        if len(warnings) > 50:
            out.append(f"    ... and {len(warnings) - 50} more")
    out.append("=" * 60)
    return "\n".join(out)


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str | None],
    counters: _HasToDict,
    rules_version: str | None = None,
    rules_hash: str | None = None,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "dry_run": dry_run,
        **source_paths,
        "rules_version": rules_version,
        "rules_hash": rules_hash,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
