"""ouvidoria_etl.import_ouvidoria_sheet

Unified CLI entrypoint for the ouvidoria protocol store.

Modes (--mode):
  sync            reconcile a sheet snapshot into service_record (default)
  dedup_repair    collapse stored records sharing a protocol
  dedup_check     read-only duplicate scan
  enforce_unique  install the unique protocol index once no duplicates remain

Usage (sync from the published sheet):
    python -m ouvidoria_etl.import_ouvidoria_sheet \\
        --mode sync \\
        --db-dsn "$OUVIDORIA_DB_DSN" \\
        --sheet-url "$OUVIDORIA_SHEET_URL"

Usage (sync from a local export):
    python -m ouvidoria_etl.import_ouvidoria_sheet \\
        --mode sync \\
        --csv-path "exports/ouvidoria.csv" \\
        --rejects-path "artifacts/rejects/ouvidoria_rejects.csv"

Usage (maintenance, in order):
    python -m ouvidoria_etl.import_ouvidoria_sheet --mode dedup_repair --dry-run
    python -m ouvidoria_etl.import_ouvidoria_sheet --mode dedup_repair
    python -m ouvidoria_etl.import_ouvidoria_sheet --mode enforce_unique
"""

from __future__ import annotations

import logging
import sys
import uuid
from pathlib import Path

import click
import psycopg

from ouvidoria_etl.bulk_write import DEFAULT_CHUNK_SIZE, MAX_CHUNK_SIZE
from ouvidoria_etl.rules import BusinessRules, RulesValidationError, load_business_rules
from ouvidoria_etl.shared import (
    RejectWriter,
    SourceFetchError,
    StoreConnectionError,
    SyncCounters,
    utc_now_iso,
    write_run_report,
)
from ouvidoria_etl.source import DEFAULT_FETCH_TIMEOUT, fetch_sheet_rows, read_csv_rows
from ouvidoria_etl.store import connect


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="sync",
    type=click.Choice(["sync", "dedup_repair", "dedup_check", "enforce_unique"]),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", required=True, envvar="OUVIDORIA_DB_DSN", help="PostgreSQL DSN")
# sync flags
@click.option("--csv-path", default=None, type=click.Path(), help="[sync] Local CSV export")
@click.option("--sheet-url", default=None, envvar="OUVIDORIA_SHEET_URL", help="[sync] Sheet CSV export URL")
@click.option(
    "--rules-file",
    default=None,
    type=click.Path(),
    help="[sync] Business rules YAML (default: config/business_rules.yml)",
)
@click.option(
    "--chunk-size",
    default=DEFAULT_CHUNK_SIZE,
    type=click.IntRange(1, MAX_CHUNK_SIZE),
    show_default=True,
    help="[sync] Write operations per chunk",
)
@click.option("--fetch-timeout", default=DEFAULT_FETCH_TIMEOUT, type=int, show_default=True, help="[sync] Sheet download timeout (s)")
@click.option(
    "--repair-collisions/--no-repair-collisions",
    default=True,
    show_default=True,
    help="[sync] Repair stored duplicates found while indexing",
)
# shared flags
@click.option("--connect-timeout", default=10, type=int, show_default=True, help="Store connect timeout (s)")
@click.option("--statement-timeout-ms", default=60000, type=int, show_default=True, help="Per-statement timeout (ms)")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/ouvidoria_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    sheet_url: str | None,
    rules_file: str | None,
    chunk_size: int,
    fetch_timeout: int,
    repair_collisions: bool,
    connect_timeout: int,
    statement_timeout_ms: int,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified ouvidoria sheet ingestion and maintenance CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "sync":
        _run_sync_mode(
            run_id, started_at, db_dsn,
            csv_path=csv_path,
            sheet_url=sheet_url,
            rules_file=rules_file,
            chunk_size=chunk_size,
            fetch_timeout=fetch_timeout,
            repair_collisions=repair_collisions,
            connect_timeout=connect_timeout,
            statement_timeout_ms=statement_timeout_ms,
            rejects_path=rejects_path,
            dry_run=dry_run,
        )
    elif mode == "dedup_repair":
        _run_repair_mode(run_id, started_at, db_dsn, connect_timeout, statement_timeout_ms, dry_run)
    elif mode == "dedup_check":
        _run_check_mode(run_id, started_at, db_dsn, connect_timeout, statement_timeout_ms)
    elif mode == "enforce_unique":
        if dry_run:
            click.echo(f"[{run_id}] --dry-run has no effect in enforce_unique mode; use dedup_check")
        _run_enforce_mode(run_id, started_at, db_dsn, connect_timeout, statement_timeout_ms)


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _open(run_id: str, db_dsn: str, autocommit: bool, connect_timeout: int, statement_timeout_ms: int) -> psycopg.Connection:
    try:
        return connect(
            db_dsn,
            autocommit=autocommit,
            connect_timeout=connect_timeout,
            statement_timeout_ms=statement_timeout_ms,
        )
    except StoreConnectionError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)


def _load_rules(run_id: str, rules_file: str | None) -> BusinessRules:
    try:
        return load_business_rules(Path(rules_file) if rules_file else None)
    except (RulesValidationError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: business rules: {exc}", err=True)
        sys.exit(1)


def _run_sync_mode(
    run_id: str,
    started_at: str,
    db_dsn: str,
    csv_path: str | None,
    sheet_url: str | None,
    rules_file: str | None,
    chunk_size: int,
    fetch_timeout: int,
    repair_collisions: bool,
    connect_timeout: int,
    statement_timeout_ms: int,
    rejects_path: str,
    dry_run: bool,
) -> None:
    from ouvidoria_etl.sync import build_sync_report, run_sync

    if not csv_path and not sheet_url:
        click.echo(f"[{run_id}] ERROR: sync requires --csv-path or --sheet-url", err=True)
        sys.exit(1)

    rules = _load_rules(run_id, rules_file)

    # The whole snapshot is read before any store connection is opened.
    try:
        if csv_path:
            rows = read_csv_rows(Path(csv_path))
        else:
            rows = fetch_sheet_rows(sheet_url, timeout=fetch_timeout)  # type: ignore[arg-type]
    except SourceFetchError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Source: {len(rows)} rows read (rules {rules.version})")

    counters = SyncCounters()
    rejects = RejectWriter(Path(rejects_path))
    conn = _open(run_id, db_dsn, not dry_run, connect_timeout, statement_timeout_ms)
    try:
        run_sync(
            conn, rows, rules, counters,
            rejects=rejects,
            chunk_size=chunk_size,
            repair_collisions=repair_collisions,
        )
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
    except StoreConnectionError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    except psycopg.Error as exc:
        if not conn.broken:
            conn.rollback()
        click.echo(f"[{run_id}] FATAL: run failed with DB error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()
        rejects.close()

    click.echo(build_sync_report(counters, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, "sync", dry_run,
        {"csv_path": csv_path, "sheet_url": sheet_url, "rejects_path": rejects_path},
        counters,
        rules_version=rules.version,
        rules_hash=rules.yaml_hash,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if counters.errors > 0:
        click.echo(f"[{run_id}] {counters.errors} error(s), exiting non-zero", err=True)
        sys.exit(1)


def _run_repair_mode(
    run_id: str,
    started_at: str,
    db_dsn: str,
    connect_timeout: int,
    statement_timeout_ms: int,
    dry_run: bool,
) -> None:
    from ouvidoria_etl.dedup_repair import RepairCounters, build_repair_report, run_dedup_repair

    counters = RepairCounters()
    conn = _open(run_id, db_dsn, not dry_run, connect_timeout, statement_timeout_ms)
    try:
        run_dedup_repair(conn, counters)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
    except psycopg.Error as exc:
        if not conn.broken:
            conn.rollback()
        click.echo(f"[{run_id}] FATAL: repair failed with DB error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()

    click.echo(build_repair_report(counters, dry_run=dry_run))
    report_path = write_run_report(run_id, started_at, "dedup_repair", dry_run, {}, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")

    if not counters.verified:
        click.echo(
            f"[{run_id}] self-check found {counters.remaining_groups} remaining group(s)",
            err=True,
        )
        sys.exit(1)


def _run_check_mode(
    run_id: str,
    started_at: str,
    db_dsn: str,
    connect_timeout: int,
    statement_timeout_ms: int,
) -> None:
    from ouvidoria_etl.dedup_repair import build_check_report, scan_duplicates

    conn = _open(run_id, db_dsn, True, connect_timeout, statement_timeout_ms)
    try:
        scan = scan_duplicates(conn)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: scan failed with DB error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()

    click.echo(build_check_report(scan))
    report_path = write_run_report(run_id, started_at, "dedup_check", False, {}, scan)
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_enforce_mode(
    run_id: str,
    started_at: str,
    db_dsn: str,
    connect_timeout: int,
    statement_timeout_ms: int,
) -> None:
    from ouvidoria_etl.enforce_unique import build_enforce_report, run_enforce_unique

    conn = _open(run_id, db_dsn, True, connect_timeout, statement_timeout_ms)
    try:
        result = run_enforce_unique(conn)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: enforcement failed with DB error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()

    click.echo(build_enforce_report(result))
    report_path = write_run_report(run_id, started_at, "enforce_unique", False, {}, result)
    click.echo(f"[{run_id}] Run report: {report_path}")

    if not result.ok:
        click.echo(f"[{run_id}] {result.message}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
