"""ouvidoria_etl.sync

One reconciliation run: normalize → index → classify → write.

The source rows must already be fully read (see ouvidoria_etl.source);
this module never fetches.  On a connection that is already inside a
transaction (dry run) every write lands in savepoints and the caller rolls
back at the end.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import psycopg

from ouvidoria_etl.bulk_write import DEFAULT_CHUNK_SIZE, execute_plan
from ouvidoria_etl.canonical import normalize_row
from ouvidoria_etl.classify import classify_batch
from ouvidoria_etl.dedup_repair import run_dedup_repair
from ouvidoria_etl.rules import BusinessRules
from ouvidoria_etl.shared import RejectWriter, SyncCounters, format_report
from ouvidoria_etl.state_index import load_existing_index
from ouvidoria_etl.store import count_records

log = logging.getLogger(__name__)


def run_sync(
    conn: psycopg.Connection,
    rows: Sequence[Mapping[str, Any]],
    rules: BusinessRules,
    counters: SyncCounters,
    rejects: RejectWriter | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    repair_collisions: bool = True,
) -> SyncCounters:
    """Reconcile one source snapshot into service_record.

    Args:
        conn: Store connection.  Autocommit for a real run; inside an open
              transaction for a dry run.
        rows: Source rows (header → raw cell) in source order.
        rules: Business-rule tables for the field normalizer.
        counters: Filled in place and returned.
        rejects: Receives rows skipped for lack of a protocol.
        chunk_size: Operations per write chunk.
        repair_collisions: Run a dedup repair scoped to the comparison keys
              that already had more than one stored record.

    Raises:
        StoreConnectionError: If the store connection breaks.
    """
    counters.records_before = count_records(conn)
    counters.rows_read = len(rows)
    records = [normalize_row(row, rules) for row in rows]

    index = load_existing_index(conn)
    counters.index_collisions = len(index.collisions)
    for key, ids in index.collisions.items():
        counters.warnings.append(
            f"stored duplicates for protocol_key={key!r}: {ids} (indexed {ids[-1]})"
        )

    plan = classify_batch(records, index)
    counters.skipped += len(plan.skipped)
    counters.duplicates_in_batch += len(plan.duplicates)
    counters.unchanged += len(plan.unchanged)
    if rejects is not None:
        for record in plan.skipped:
            rejects.write(record.data, "missing_protocol")
    for record in plan.duplicates:
        log.info("duplicate in batch dropped: protocol=%r", record.protocol)
    log.info("classified: %s", plan.counts())

    execute_plan(conn, plan.operations, counters, chunk_size=chunk_size)

    if repair_collisions and index.collisions:
        repair = run_dedup_repair(conn, keys=index.collisions.keys())
        counters.collision_records_deleted = repair.records_deleted
        counters.warnings.extend(repair.warnings)
        if not repair.verified:
            counters.errors += 1

    counters.records_after = count_records(conn)
    return counters


def build_sync_report(counters: SyncCounters, dry_run: bool = False) -> str:
    lines = [
        f"  rows read:               {counters.rows_read}",
        f"  skipped (no protocol):   {counters.skipped}",
        f"  duplicates in batch:     {counters.duplicates_in_batch}",
        f"  inserted:                {counters.inserted}",
        f"  updated:                 {counters.updated}",
        f"  fields modified:         {counters.fields_modified}",
        f"  unchanged:               {counters.unchanged}",
        f"  already stored (skip):   {counters.skipped_existing}",
        f"  batch fallbacks:         {counters.batch_fallbacks}",
        f"  errors:                  {counters.errors}",
        f"  index collisions:        {counters.index_collisions}",
        f"  collision rows deleted:  {counters.collision_records_deleted}",
        f"  records before:          {counters.records_before}",
        f"  records after:           {counters.records_after}",
    ]
    return format_report("Ouvidoria Sync Report", lines, counters.warnings, dry_run)
