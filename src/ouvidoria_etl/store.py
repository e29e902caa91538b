"""ouvidoria_etl.store

psycopg helpers for the service_record table.  Every function takes an open
connection; transaction scope is always the caller's.
"""

from __future__ import annotations

from typing import Any

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from ouvidoria_etl.canonical import COMPARED_FIELDS, PAYLOAD_FIELD, CanonicalRecord
from ouvidoria_etl.protocol_key import comparison_key
from ouvidoria_etl.shared import StoreConnectionError

TABLE = "service_record"
UNIQUE_INDEX_NAME = "service_record_protocol_unique"

# Columns written on insert / loaded into the existing-state index.
STORE_COLUMNS = (*COMPARED_FIELDS, PAYLOAD_FIELD)


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

def connect(
    db_dsn: str,
    autocommit: bool = True,
    connect_timeout: int = 10,
    statement_timeout_ms: int = 60000,
) -> psycopg.Connection:
    """Open a connection with bounded connect and statement timeouts.

    Raises:
        StoreConnectionError: If the server cannot be reached.
    """
    try:
        return psycopg.connect(
            db_dsn,
            autocommit=autocommit,
            connect_timeout=connect_timeout,
            options=f"-c statement_timeout={int(statement_timeout_ms)}",
        )
    except psycopg.OperationalError as exc:
        raise StoreConnectionError(f"could not connect to store: {exc}") from exc


def _adapt(column: str, value: Any) -> Any:
    if column == PAYLOAD_FIELD:
        return Jsonb(value if value is not None else {})
    return value


def _record_params(record: CanonicalRecord) -> list[Any]:
    values = record.to_fields()
    return [_adapt(c, values[c]) for c in STORE_COLUMNS]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def count_records(conn: psycopg.Connection) -> int:
    row = conn.execute(f"SELECT count(*) FROM {TABLE}").fetchone()
    return int(row[0])


def load_records_for_index(conn: psycopg.Connection) -> list[dict[str, Any]]:
    """Full snapshots of every record with a protocol, oldest activity first."""
    cols = ["id", *STORE_COLUMNS]
    query = sql.SQL(
        "SELECT {cols} FROM {table} WHERE protocol IS NOT NULL "
        "ORDER BY COALESCE(updated_at, created_at) ASC NULLS FIRST, id ASC"
    ).format(
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
        table=sql.Identifier(TABLE),
    )
    rows = conn.execute(query).fetchall()
    out = []
    for raw in rows:
        row = dict(zip(cols, raw))
        row["id"] = str(row["id"])
        out.append(row)
    return out


def load_protocol_rows(conn: psycopg.Connection) -> list[dict[str, Any]]:
    """id / protocol / timestamps for every record with a non-blank protocol."""
    rows = conn.execute(
        f"SELECT id, protocol, created_at, updated_at FROM {TABLE} "
        "WHERE protocol IS NOT NULL AND protocol <> '' ORDER BY id"
    ).fetchall()
    return [
        {
            "id": str(r[0]),
            "protocol": r[1],
            "created_at": r[2],
            "updated_at": r[3],
        }
        for r in rows
    ]


def _candidate_pattern(key: str) -> str:
    """LIKE pattern matching any protocol holding key's characters in order."""
    escaped = [c.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") for c in key]
    return "%" + "%".join(escaped) + "%"


def find_id_by_comparison_key(conn: psycopg.Connection, key: str) -> str | None:
    """Storage id of the first record whose protocol has this comparison key.

    The stored protocol_key is not trusted (other tools may leave it NULL or
    stale): candidates are narrowed in SQL and confirmed with comparison_key().
    """
    rows = conn.execute(
        f"SELECT id, protocol FROM {TABLE} WHERE protocol LIKE %s ORDER BY id",
        (_candidate_pattern(key),),
    ).fetchall()
    for record_id, protocol in rows:
        if comparison_key(protocol) == key:
            return str(record_id)
    return None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _insert_sql(returning: bool = False) -> sql.Composed:
    query = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals})").format(
        table=sql.Identifier(TABLE),
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in STORE_COLUMNS),
        vals=sql.SQL(", ").join(sql.Placeholder() for _ in STORE_COLUMNS),
    )
    if returning:
        query = query + sql.SQL(" RETURNING id")
    return query


def insert_records(conn: psycopg.Connection, records: list[CanonicalRecord]) -> int:
    """Insert many records in one round of executemany.  Returns count."""
    if not records:
        return 0
    with conn.cursor() as cur:
        cur.executemany(_insert_sql(), [_record_params(r) for r in records])
    return len(records)


def insert_record(conn: psycopg.Connection, record: CanonicalRecord) -> str:
    row = conn.execute(_insert_sql(returning=True), _record_params(record)).fetchone()
    return str(row[0])


def update_record_fields(
    conn: psycopg.Connection,
    record_id: str,
    changed_fields: dict[str, Any],
) -> int:
    """SET only the changed columns (plus updated_at) on one record by id.

    Returns the number of rows touched (0 when the id no longer exists).
    """
    if not changed_fields:
        return 0
    columns = list(changed_fields)
    query = sql.SQL("UPDATE {table} SET {assignments}, updated_at = now() WHERE id = %s").format(
        table=sql.Identifier(TABLE),
        assignments=sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
        ),
    )
    params = [_adapt(c, changed_fields[c]) for c in columns] + [record_id]
    cur = conn.execute(query, params)
    return cur.rowcount


def delete_records(conn: psycopg.Connection, record_ids: list[str]) -> int:
    if not record_ids:
        return 0
    cur = conn.execute(
        f"DELETE FROM {TABLE} WHERE id = ANY(%s::uuid[])",
        (list(record_ids),),
    )
    return cur.rowcount


# ---------------------------------------------------------------------------
# Index management
# ---------------------------------------------------------------------------

def list_protocol_indexes(conn: psycopg.Connection) -> list[tuple[str, str]]:
    """(indexname, indexdef) for every index on service_record touching protocol."""
    rows = conn.execute(
        """
        SELECT indexname, indexdef
        FROM pg_indexes
        WHERE tablename = %s AND indexdef ILIKE %s
        ORDER BY indexname
        """,
        (TABLE, "%protocol%"),
    ).fetchall()
    return [(r[0], r[1]) for r in rows]


def unique_index_exists(conn: psycopg.Connection) -> bool:
    row = conn.execute(
        "SELECT 1 FROM pg_indexes WHERE tablename = %s AND indexname = %s",
        (TABLE, UNIQUE_INDEX_NAME),
    ).fetchone()
    return row is not None


def create_unique_protocol_index(conn: psycopg.Connection) -> None:
    conn.execute(
        sql.SQL("CREATE UNIQUE INDEX {name} ON {table} (protocol)").format(
            name=sql.Identifier(UNIQUE_INDEX_NAME),
            table=sql.Identifier(TABLE),
        )
    )
