"""festival_etl.shared

Shared utilities used by the legacy dump import and the year backfill.
Includes RejectWriter, RunCounters, destination-store helpers
(insert-or-ignore, parent rows, constraint relaxation, identity sequences),
and report-writing support.
"""

from __future__ import annotations

import csv
import json
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

import psycopg
from psycopg import pq, sql


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected legacy rows."""

    FIELDNAMES = ["legacy_table", "row_number", "raw_cells", "_reject_reason"]

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, legacy_table: str, row_number: int, row: list[str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=self.FIELDNAMES)
            self._writer.writeheader()
        self._writer.writerow({
            "legacy_table": legacy_table,
            "row_number": row_number,
            "raw_cells": json.dumps(row, ensure_ascii=False),
            "_reject_reason": reason,
        })
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class TableCounters:
    rows_read: int = 0
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_filtered: int = 0
    rows_rejected: int = 0
    rows_deleted: int = 0  # replace tables only
    parents_ensured: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "rows_read": self.rows_read,
            "rows_processed": self.rows_processed,
            "rows_inserted": self.rows_inserted,
            "rows_filtered": self.rows_filtered,
            "rows_rejected": self.rows_rejected,
            "rows_deleted": self.rows_deleted,
            "parents_ensured": self.parents_ensured,
        }


@dataclass
class RunCounters:
    tables: dict[str, TableCounters] = field(default_factory=dict)
    blocks_missing: list[str] = field(default_factory=list)
    sequences_synced: int = 0
    warnings: list[str] = field(default_factory=list)

    def table(self, legacy_table: str) -> TableCounters:
        if legacy_table not in self.tables:
            self.tables[legacy_table] = TableCounters()
        return self.tables[legacy_table]

    @property
    def rows_processed(self) -> int:
        return sum(t.rows_processed for t in self.tables.values())

    @property
    def rows_rejected(self) -> int:
        return sum(t.rows_rejected for t in self.tables.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": {name: t.to_dict() for name, t in self.tables.items()},
            "rows_processed": self.rows_processed,
            "rows_rejected": self.rows_rejected,
            "blocks_missing": self.blocks_missing,
            "sequences_synced": self.sequences_synced,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Destination-store helpers
# ---------------------------------------------------------------------------

def insert_or_ignore(
    conn: psycopg.Connection,
    table: str,
    primary_key: str,
    record: dict[str, Any],
) -> bool:
    """INSERT record into table; no-op on a primary-key collision.

    Returns True when a row was written.
    """
    columns = list(record.keys())
    query = sql.SQL(
        "INSERT INTO {table} ({columns}) VALUES ({values}) "
        "ON CONFLICT ({pk}) DO NOTHING"
    ).format(
        table=sql.Identifier(table),
        columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        pk=sql.Identifier(primary_key),
    )
    cur = conn.execute(query, [record[c] for c in columns])
    return cur.rowcount == 1


def ensure_parent(
    conn: psycopg.Connection,
    table: str,
    key: str,
    value: Any,
) -> bool:
    """Make sure a bare parent row with ``key = value`` exists."""
    if value is None:
        return False
    return insert_or_ignore(conn, table, key, {key: value})


def ensure_edition(conn: psycopg.Connection, year: int) -> bool:
    return ensure_parent(conn, "edition", "year", year)


def delete_all(conn: psycopg.Connection, table: str) -> int:
    cur = conn.execute(sql.SQL("DELETE FROM {}").format(sql.Identifier(table)))
    return cur.rowcount


def sync_identity_sequence(conn: psycopg.Connection, table: str) -> None:
    """Move table's id sequence past its highest id.

    Imported rows carry explicit legacy ids, which leave the identity
    sequence untouched; without this the next default-id insert collides.
    """
    conn.execute(
        sql.SQL(
            "SELECT setval(pg_get_serial_sequence(%s, 'id'), "
            "COALESCE(MAX(id), 0) + 1, false) FROM {table}"
        ).format(table=sql.Identifier(table)),
        (table,),
    )


@contextmanager
def relaxed_constraints(conn: psycopg.Connection) -> Iterator[psycopg.Connection]:
    """Disable referential-integrity triggers for the enclosed block.

    Foreign keys are enforced by system triggers, which do not fire while
    session_replication_role is 'replica'.  The default role is restored on
    every exit path; a transaction left in error is rolled back first so
    the restore can run.  A closed connection has no session left to
    restore, so the original error propagates untouched.
    """
    conn.execute("SET session_replication_role = replica")
    try:
        yield conn
    finally:
        if not conn.closed:
            if conn.info.transaction_status == pq.TransactionStatus.INERROR:
                conn.rollback()
            conn.execute("SET session_replication_role = DEFAULT")


def current_replication_role(conn: psycopg.Connection) -> str:
    row = conn.execute("SHOW session_replication_role").fetchone()
    return str(row[0])


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    sections: dict[str, Any],
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        **{name: counters.to_dict() for name, counters in sections.items()},
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
