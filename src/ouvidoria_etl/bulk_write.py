"""ouvidoria_etl.bulk_write

Bulk Write Executor: applies a BatchPlan's insert/update operations to
service_record in chunks.

Transaction layout per chunk:

    with conn.transaction():            # chunk: committed independently
        with conn.transaction():        # savepoint: whole-chunk attempt
            executemany inserts, one UPDATE per changed record
        # on failure: savepoint rolled back, then per operation:
        with conn.transaction():        # savepoint: one operation
            ...

so one failing operation never aborts the others, and a process killed
between chunks leaves every finished chunk committed.

Inserts in the per-operation fallback re-check the comparison key first;
a record that already exists (written by a concurrent run or external writer)
is counted as skipped_existing, not as an error.  Updates always target the
storage id and SET only the changed columns; an update that hits a unique
violation is an error.
"""

from __future__ import annotations

import logging

import psycopg
import psycopg.errors

from ouvidoria_etl.classify import INSERT, WriteOp
from ouvidoria_etl.shared import StoreConnectionError, SyncCounters
from ouvidoria_etl.store import (
    find_id_by_comparison_key,
    insert_record,
    insert_records,
    update_record_fields,
)

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500
MAX_CHUNK_SIZE = 5000


# ---------------------------------------------------------------------------
# Whole-chunk attempt
# ---------------------------------------------------------------------------

def _apply_chunk(conn: psycopg.Connection, chunk: list[WriteOp], counters: SyncCounters) -> None:
    """Apply a chunk in one go.  Counters are only touched if nothing raised."""
    inserts = [op.record for op in chunk if op.kind == INSERT]
    updates = [op for op in chunk if op.kind != INSERT]

    inserted = insert_records(conn, inserts)
    updated = fields_modified = 0
    vanished: list[WriteOp] = []
    for op in updates:
        if update_record_fields(conn, op.record_id, op.changed_fields):
            updated += 1
            fields_modified += len(op.changed_fields)
        else:
            vanished.append(op)

    counters.inserted += inserted
    counters.updated += updated
    counters.fields_modified += fields_modified
    for op in vanished:
        _record_error(counters, op, "update target no longer exists")


# ---------------------------------------------------------------------------
# Per-operation fallback
# ---------------------------------------------------------------------------

def _record_error(counters: SyncCounters, op: WriteOp, reason: str) -> None:
    counters.errors += 1
    msg = f"{op.kind} protocol={op.protocol!r} id={op.record_id}: {reason}"
    counters.warnings.append(msg)
    log.warning(msg)


def _apply_one(conn: psycopg.Connection, op: WriteOp, counters: SyncCounters) -> None:
    if op.kind == INSERT:
        existing_id = find_id_by_comparison_key(conn, op.record.protocol_key)
        if existing_id is not None:
            counters.skipped_existing += 1
            log.info(
                "insert skipped: protocol_key=%r already stored as %s",
                op.record.protocol_key, existing_id,
            )
            return
        insert_record(conn, op.record)
        counters.inserted += 1
        return

    if update_record_fields(conn, op.record_id, op.changed_fields):
        counters.updated += 1
        counters.fields_modified += len(op.changed_fields)
    else:
        _record_error(counters, op, "update target no longer exists")


def _apply_individually(conn: psycopg.Connection, chunk: list[WriteOp], counters: SyncCounters) -> None:
    for op in chunk:
        try:
            with conn.transaction():
                _apply_one(conn, op, counters)
        except psycopg.errors.UniqueViolation as exc:
            if op.kind != INSERT:
                # an update rewriting protocol onto another record's display form
                _record_error(counters, op, f"unique violation: {exc}")
                continue
            counters.skipped_existing += 1
            log.info("insert skipped: protocol=%r hit a unique violation", op.protocol)
        except psycopg.errors.QueryCanceled as exc:
            _record_error(counters, op, f"statement timeout: {exc}")
        except psycopg.Error as exc:
            if conn.broken:
                raise StoreConnectionError(f"connection lost during write: {exc}") from exc
            _record_error(counters, op, f"db_error: {exc}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def execute_plan(
    conn: psycopg.Connection,
    operations: list[WriteOp],
    counters: SyncCounters,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    """Execute insert/update operations chunk by chunk.

    On an autocommit connection each chunk is committed on its own.  On a
    connection already inside a transaction (dry run) the chunk blocks become
    savepoints and the caller decides whether to commit or roll back.

    Raises:
        StoreConnectionError: If the connection breaks.  Chunks already
            committed stay committed.
        ValueError: If chunk_size is out of range.
    """
    if not 1 <= chunk_size <= MAX_CHUNK_SIZE:
        raise ValueError(f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}, got {chunk_size}")

    total = len(operations)
    for start in range(0, total, chunk_size):
        chunk = operations[start:start + chunk_size]
        try:
            with conn.transaction():
                try:
                    with conn.transaction():
                        _apply_chunk(conn, chunk, counters)
                except psycopg.Error as exc:
                    if conn.broken:
                        raise
                    counters.batch_fallbacks += 1
                    log.warning(
                        "chunk %d-%d failed as a batch (%s); retrying per record",
                        start, start + len(chunk) - 1, exc,
                    )
                    _apply_individually(conn, chunk, counters)
        except psycopg.Error as exc:
            if conn.broken:
                raise StoreConnectionError(f"connection lost during write: {exc}") from exc
            raise
        log.info("chunk committed: %d/%d operations", min(start + chunk_size, total), total)
