"""Integration tests: dedup repair and duplicate scan against a real table."""

from __future__ import annotations

from datetime import datetime, timezone

from ouvidoria_etl.dedup_repair import run_dedup_repair, scan_duplicates
from ouvidoria_etl.store import connect, count_records

T1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 6, 1, tzinfo=timezone.utc)
T3 = datetime(2024, 9, 1, tzinfo=timezone.utc)


class TestRepair:
    def test_most_recently_updated_survives(self, db_conn, insert_raw, record_ids):
        conn, _ = db_conn
        insert_raw(conn, "2024 001", updated_at=T1)
        newer = insert_raw(conn, "2024001", updated_at=T2)

        counters = run_dedup_repair(conn)
        assert counters.groups_comparison == 1
        assert counters.records_deleted == 1
        assert counters.verified
        assert record_ids(conn) == [newer]

    def test_exact_group_then_comparison_group(self, db_conn, insert_raw, record_ids):
        conn, _ = db_conn
        insert_raw(conn, "A-1", updated_at=T1)
        insert_raw(conn, "A-1", updated_at=T2)
        newest = insert_raw(conn, "A -1", updated_at=T3)
        lone = insert_raw(conn, "B-1", updated_at=T1)

        counters = run_dedup_repair(conn)
        assert counters.records_before == 4
        assert counters.groups_exact == 1
        assert counters.groups_comparison == 1
        assert counters.records_deleted == 2
        assert counters.records_kept == 1
        assert counters.final_count == 2
        assert sorted(record_ids(conn)) == sorted([newest, lone])

    def test_created_at_used_when_updated_at_missing(self, db_conn, insert_raw, record_ids):
        conn, _ = db_conn
        insert_raw(conn, "C-1", updated_at=T1)
        later = insert_raw(conn, "C-1", created_at=T2)
        insert_raw(conn, "C-1")

        run_dedup_repair(conn)
        assert record_ids(conn) == [later]

    def test_rows_without_protocol_untouched(self, db_conn, insert_raw):
        conn, _ = db_conn
        insert_raw(conn, None)
        insert_raw(conn, None)
        insert_raw(conn, "")

        counters = run_dedup_repair(conn)
        assert counters.rows_scanned == 0
        assert counters.records_deleted == 0
        assert count_records(conn) == 3

    def test_second_run_is_a_no_op(self, db_conn, insert_raw):
        conn, _ = db_conn
        insert_raw(conn, "D1", updated_at=T1)
        insert_raw(conn, "D 1", updated_at=T2)
        insert_raw(conn, "D  1", updated_at=T3)
        run_dedup_repair(conn)

        again = run_dedup_repair(conn)
        assert again.groups_found == 0
        assert again.records_deleted == 0
        assert again.verified
        assert again.final_count == again.records_before == 1

    def test_scoped_repair_leaves_other_groups(self, db_conn, insert_raw):
        conn, _ = db_conn
        insert_raw(conn, "E-1", updated_at=T1)
        insert_raw(conn, "E-1", updated_at=T2)
        insert_raw(conn, "F-1", updated_at=T1)
        insert_raw(conn, "F-1", updated_at=T2)

        counters = run_dedup_repair(conn, keys=["E-1"])
        assert counters.records_deleted == 1
        scan = scan_duplicates(conn)
        assert list(scan.exact) == ["F-1"]

    def test_dry_run_rolls_back(self, db_conn, insert_raw):
        conn, dsn = db_conn
        insert_raw(conn, "G-1", updated_at=T1)
        insert_raw(conn, "G-1", updated_at=T2)

        dry = connect(dsn, autocommit=False)
        try:
            counters = run_dedup_repair(dry)
            dry.rollback()
        finally:
            dry.close()
        assert counters.records_deleted == 1
        assert counters.verified
        assert count_records(conn) == 2


class TestScan:
    def test_reports_both_kinds(self, db_conn, insert_raw):
        conn, _ = db_conn
        insert_raw(conn, "H-1")
        insert_raw(conn, "H-1")
        insert_raw(conn, "J 1")
        insert_raw(conn, "J1")

        scan = scan_duplicates(conn)
        assert scan.rows_scanned == 4
        assert list(scan.exact) == ["H-1"]
        # the exact pair also shares a comparison key
        assert set(scan.comparison) == {"H-1", "J1"}
        assert count_records(conn) == 4
