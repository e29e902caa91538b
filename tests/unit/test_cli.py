"""Unit tests for the ouvidoria_etl.import_ouvidoria_sheet argument handling.

Only paths that fail before a store connection is opened are covered here;
full runs live in tests/integration/test_cli_runs.py.
"""

from __future__ import annotations

from unittest.mock import patch

from click.testing import CliRunner

from ouvidoria_etl.import_ouvidoria_sheet import main
from ouvidoria_etl.shared import SourceFetchError


class TestSyncArguments:
    def test_requires_a_source(self, monkeypatch):
        monkeypatch.delenv("OUVIDORIA_SHEET_URL", raising=False)
        result = CliRunner().invoke(main, ["--db-dsn", "postgresql://unused", "--run-id", "t"])
        assert result.exit_code == 1
        assert "requires --csv-path or --sheet-url" in result.output

    def test_missing_csv_is_fatal_before_connecting(self, tmp_path):
        with patch("ouvidoria_etl.import_ouvidoria_sheet.connect") as connect:
            result = CliRunner().invoke(main, [
                "--db-dsn", "postgresql://unused",
                "--csv-path", str(tmp_path / "missing.csv"),
                "--run-id", "t",
            ])
        assert result.exit_code == 1
        assert "FATAL" in result.output
        connect.assert_not_called()

    def test_fetch_failure_is_fatal_before_connecting(self):
        with patch("ouvidoria_etl.import_ouvidoria_sheet.fetch_sheet_rows",
                   side_effect=SourceFetchError("could not fetch sheet: 503")), \
             patch("ouvidoria_etl.import_ouvidoria_sheet.connect") as connect:
            result = CliRunner().invoke(main, [
                "--db-dsn", "postgresql://unused",
                "--sheet-url", "https://example.test/export",
                "--run-id", "t",
            ])
        assert result.exit_code == 1
        assert "could not fetch sheet" in result.output
        connect.assert_not_called()

    def test_bad_rules_file_is_fatal(self, tmp_path):
        rules = tmp_path / "rules.yml"
        rules.write_text("version: 1\n", encoding="utf-8")
        csv_path = tmp_path / "in.csv"
        csv_path.write_text("protocolo\n1\n", encoding="utf-8")
        result = CliRunner().invoke(main, [
            "--db-dsn", "postgresql://unused",
            "--csv-path", str(csv_path),
            "--rules-file", str(rules),
            "--run-id", "t",
        ])
        assert result.exit_code == 1
        assert "business rules" in result.output

    def test_chunk_size_range(self, tmp_path):
        result = CliRunner().invoke(main, [
            "--db-dsn", "postgresql://unused", "--csv-path", "x.csv", "--chunk-size", "0",
        ])
        assert result.exit_code == 2

    def test_dsn_from_environment(self, monkeypatch):
        monkeypatch.setenv("OUVIDORIA_DB_DSN", "postgresql://from-env")
        monkeypatch.delenv("OUVIDORIA_SHEET_URL", raising=False)
        result = CliRunner().invoke(main, ["--run-id", "t"])
        # got past option parsing: failed on the missing source, not the DSN
        assert result.exit_code == 1
        assert "requires --csv-path" in result.output
