"""Unit tests for ouvidoria_etl.enforce_unique (store patched)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import psycopg.errors

from ouvidoria_etl.dedup_repair import DuplicateScan
from ouvidoria_etl.enforce_unique import (
    ABORTED_DUPLICATES,
    ALREADY_PRESENT,
    CREATED,
    FAILED,
    build_enforce_report,
    run_enforce_unique,
)
from ouvidoria_etl.store import UNIQUE_INDEX_NAME

MODULE = "ouvidoria_etl.enforce_unique"

PLAIN_INDEX = ("service_record_protocol_idx", "CREATE INDEX service_record_protocol_idx ON ...")
UNIQUE_INDEX = (UNIQUE_INDEX_NAME, "CREATE UNIQUE INDEX service_record_protocol_unique ON ...")


def _run(scan: DuplicateScan, exists: bool = False, create_error: Exception | None = None,
         indexes=([PLAIN_INDEX], [PLAIN_INDEX, UNIQUE_INDEX])):
    with patch(f"{MODULE}.scan_duplicates", return_value=scan), \
         patch(f"{MODULE}.unique_index_exists", return_value=exists), \
         patch(f"{MODULE}.list_protocol_indexes", side_effect=list(indexes)), \
         patch(f"{MODULE}.create_unique_protocol_index", side_effect=create_error) as create:
        result = run_enforce_unique(MagicMock())
    return result, create


class TestRunEnforceUnique:
    def test_aborts_when_duplicates_remain(self):
        scan = DuplicateScan(rows_scanned=2, comparison={"K1": [{"id": "a"}, {"id": "b"}]})
        result, create = _run(scan, indexes=([PLAIN_INDEX], [PLAIN_INDEX]))
        create.assert_not_called()
        assert result.status == ABORTED_DUPLICATES
        assert not result.ok
        assert "dedup_repair" in result.message
        assert result.groups_comparison == 1

    def test_abort_checked_before_index_state(self):
        scan = DuplicateScan(exact={"K1": [{"id": "a"}, {"id": "b"}]})
        with patch(f"{MODULE}.scan_duplicates", return_value=scan), \
             patch(f"{MODULE}.unique_index_exists") as exists, \
             patch(f"{MODULE}.list_protocol_indexes", return_value=[]), \
             patch(f"{MODULE}.create_unique_protocol_index") as create:
            result = run_enforce_unique(MagicMock())
        exists.assert_not_called()
        create.assert_not_called()
        assert result.status == ABORTED_DUPLICATES

    def test_already_present_is_success(self):
        result, create = _run(DuplicateScan(), exists=True, indexes=([UNIQUE_INDEX], [UNIQUE_INDEX]))
        create.assert_not_called()
        assert result.status == ALREADY_PRESENT
        assert result.ok

    def test_creates_index(self):
        result, create = _run(DuplicateScan())
        create.assert_called_once()
        assert result.status == CREATED
        assert result.ok
        assert [n for n, _ in result.indexes_before] == ["service_record_protocol_idx"]
        assert UNIQUE_INDEX_NAME in [n for n, _ in result.indexes_after]

    def test_concurrent_creation_counts_as_present(self):
        result, _ = _run(DuplicateScan(), create_error=psycopg.errors.DuplicateTable("exists"))
        assert result.status == ALREADY_PRESENT

    def test_duplicates_written_after_scan(self):
        result, _ = _run(
            DuplicateScan(),
            create_error=psycopg.errors.UniqueViolation("could not create unique index"),
            indexes=([PLAIN_INDEX], [PLAIN_INDEX]),
        )
        assert result.status == FAILED
        assert not result.ok


class TestBuildEnforceReport:
    def test_lists_indexes(self):
        result, _ = _run(DuplicateScan())
        report = build_enforce_report(result)
        assert "status:                  created" in report
        assert "indexes before:" in report
        assert f"- {UNIQUE_INDEX_NAME}:" in report

    def test_to_dict(self):
        result, _ = _run(DuplicateScan())
        d = result.to_dict()
        assert d["status"] == CREATED
        assert d["indexes_after"] == ["service_record_protocol_idx", UNIQUE_INDEX_NAME]
