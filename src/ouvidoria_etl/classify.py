"""ouvidoria_etl.classify

Batch classifier: partitions one batch of CanonicalRecords into
skip / duplicate-in-batch / insert / update / unchanged.

Pure: works only against the in-memory ExistingStateIndex, no store access.

Two dedup policies exist in this package:
  - first_occurrence_wins (here): within one run's input, the first row in
    source order wins and later rows with the same comparison key are dropped.
  - dedup_repair.most_recently_updated_wins: across historical store state,
    the most recently updated record wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from ouvidoria_etl.canonical import CanonicalRecord
from ouvidoria_etl.diff import diff_record
from ouvidoria_etl.state_index import ExistingStateIndex

INSERT = "insert"
UPDATE = "update"


@dataclass
class WriteOp:
    """One planned store write.  Updates carry the target id and changed columns."""

    kind: str
    record: CanonicalRecord
    record_id: str | None = None
    changed_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def protocol(self) -> str | None:
        return self.record.protocol


@dataclass
class BatchPlan:
    operations: list[WriteOp] = field(default_factory=list)
    unchanged: list[CanonicalRecord] = field(default_factory=list)
    skipped: list[CanonicalRecord] = field(default_factory=list)
    duplicates: list[CanonicalRecord] = field(default_factory=list)

    @property
    def inserts(self) -> list[WriteOp]:
        return [op for op in self.operations if op.kind == INSERT]

    @property
    def updates(self) -> list[WriteOp]:
        return [op for op in self.operations if op.kind == UPDATE]

    def counts(self) -> dict[str, int]:
        return {
            "insert": len(self.inserts),
            "update": len(self.updates),
            "unchanged": len(self.unchanged),
            "skip": len(self.skipped),
            "duplicate": len(self.duplicates),
        }


# ---------------------------------------------------------------------------
# In-batch policy
# ---------------------------------------------------------------------------

def first_occurrence_wins(
    records: Iterable[CanonicalRecord],
) -> tuple[list[CanonicalRecord], list[CanonicalRecord], list[CanonicalRecord]]:
    """Split records into (kept, duplicates, skipped), preserving source order.

    Records without a comparison key are skipped.  For each comparison key the
    first record seen is kept and every later one is a duplicate.
    """
    kept: list[CanonicalRecord] = []
    duplicates: list[CanonicalRecord] = []
    skipped: list[CanonicalRecord] = []
    seen: set[str] = set()
    for record in records:
        key = record.protocol_key
        if key is None:
            skipped.append(record)
        elif key in seen:
            duplicates.append(record)
        else:
            seen.add(key)
            kept.append(record)
    return kept, duplicates, skipped


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

def classify_batch(records: Iterable[CanonicalRecord], index: ExistingStateIndex) -> BatchPlan:
    kept, duplicates, skipped = first_occurrence_wins(records)
    plan = BatchPlan(skipped=skipped, duplicates=duplicates)
    for record in kept:
        entry = index.get(record.protocol_key)
        if entry is None:
            plan.operations.append(WriteOp(kind=INSERT, record=record))
            continue
        diff = diff_record(record, entry.snapshot)
        if diff.has_changes:
            plan.operations.append(WriteOp(
                kind=UPDATE,
                record=record,
                record_id=entry.record_id,
                changed_fields=diff.changed_fields,
            ))
        else:
            plan.unchanged.append(record)
    return plan
