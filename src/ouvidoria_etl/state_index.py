"""ouvidoria_etl.state_index

In-memory index of persisted service records keyed by protocol comparison
key.  Rebuilt from the store at the start of every reconciliation run and
never shared between runs.

Stored rows arrive ordered by COALESCE(updated_at, created_at), id, so when
two rows already share a comparison key the last one loaded (the one the
dedup repair job would keep) is the one indexed.  Every such key is recorded
in ``collisions`` for the caller to route to a scoped repair.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import psycopg

from ouvidoria_etl.protocol_key import comparison_key
from ouvidoria_etl.store import load_records_for_index

log = logging.getLogger(__name__)


@dataclass
class IndexEntry:
    record_id: str
    snapshot: dict[str, Any]


@dataclass
class ExistingStateIndex:
    entries: dict[str, IndexEntry] = field(default_factory=dict)
    # comparison key -> every storage id seen for it, load order
    collisions: dict[str, list[str]] = field(default_factory=dict)
    rows_loaded: int = 0

    def get(self, key: str) -> IndexEntry | None:
        return self.entries.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)


def build_index(rows: Iterable[Mapping[str, Any]]) -> ExistingStateIndex:
    """Build the index from stored rows (each must carry 'id' and 'protocol').

    Rows whose protocol normalizes to nothing are ignored.  A repeated
    comparison key replaces the earlier entry and is flagged as a collision.
    """
    index = ExistingStateIndex()
    for row in rows:
        index.rows_loaded += 1
        key = comparison_key(row.get("protocol"))
        if key is None:
            continue
        record_id = str(row["id"])
        previous = index.entries.get(key)
        if previous is not None:
            ids = index.collisions.setdefault(key, [previous.record_id])
            ids.append(record_id)
        index.entries[key] = IndexEntry(record_id=record_id, snapshot=dict(row))

    for key, ids in index.collisions.items():
        log.warning(
            "existing-state collision: protocol_key=%r has %d stored records %s; "
            "indexed %s",
            key, len(ids), ids, ids[-1],
        )
    return index


def load_existing_index(conn: psycopg.Connection) -> ExistingStateIndex:
    """Load every stored record with a protocol and index it."""
    index = build_index(load_records_for_index(conn))
    log.info(
        "existing-state index: %d rows loaded, %d keys, %d collisions",
        index.rows_loaded, len(index), len(index.collisions),
    )
    return index
