"""Integration test fixtures.

Applies the service_record migration against an ephemeral PostgreSQL
database provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from ouvidoria_etl.rules import load_business_rules

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_service_record.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (autocommit connection, dsn) with the schema applied.

    Each test gets a fresh database via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture(scope="session")
def rules():
    return load_business_rules()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _insert_raw(
    conn: psycopg.Connection,
    protocol: str | None,
    updated_at: datetime | None = None,
    created_at: datetime | None = None,
    status: str | None = None,
    protocol_key: str | None = None,
) -> str:
    """Insert a row directly, the way an external writer would."""
    row = conn.execute(
        """
        INSERT INTO service_record (protocol, protocol_key, status, created_at, updated_at)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """,
        (protocol, protocol_key, status, created_at, updated_at),
    ).fetchone()
    return str(row[0])


def _record_ids(conn: psycopg.Connection) -> list[str]:
    return [str(r[0]) for r in conn.execute("SELECT id FROM service_record ORDER BY id").fetchall()]


@pytest.fixture
def insert_raw():
    return _insert_raw


@pytest.fixture
def record_ids():
    return _record_ids
