"""festival_etl.import_legacy_dump

CLI entrypoint for the legacy MySQL dump migration.

Modes (--mode):
  legacy_dump   : import every mapped legacy table, then run the
                  current-year backfill (default)
  year_backfill : run the current-year backfill only

The table import is one atomic pass: all tables are written inside a single
transaction with referential-integrity checks relaxed, so orphan rows from
the legacy data are accepted.  Any database error rolls the whole pass back
and exits non-zero.  The backfill runs afterwards in its own transaction.

Usage (legacy_dump):
    festival-etl \\
        --mode legacy_dump \\
        --db-dsn "$FESTIVAL_DB_DSN" \\
        --dump-path "rawEvidence/eistedglobal.sql" \\
        --rejects-path "artifacts/rejects/legacy_dump_rejects.csv"

Usage (year_backfill):
    festival-etl --mode year_backfill --db-dsn "$FESTIVAL_DB_DSN" --current-year 2026
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import date, datetime
from pathlib import Path

import click
import psycopg

from festival_etl.column_maps import (
    IDENTITY_TABLES,
    ColumnMapSet,
    ColumnMapValidationError,
    RowShapeAnomaly,
    TableMap,
    apply_table_map,
    load_column_maps,
)
from festival_etl.dump_parse import parse_table
from festival_etl.normalize import positive_int
from festival_etl.shared import (
    RejectWriter,
    RunCounters,
    TableCounters,
    delete_all,
    ensure_parent,
    insert_or_ignore,
    relaxed_constraints,
    sync_identity_sequence,
    write_run_report,
)
from festival_etl.year_backfill import (
    BackfillCounters,
    build_backfill_report,
    run_year_backfill,
)

log = logging.getLogger(__name__)

DEFAULT_ENCODING = "latin-1"


# ---------------------------------------------------------------------------
# Dump reading
# ---------------------------------------------------------------------------

def read_dump(dump_path: Path, encoding: str = DEFAULT_ENCODING) -> str:
    """Read the whole dump into memory as text."""
    return dump_path.read_bytes().decode(encoding)


# ---------------------------------------------------------------------------
# Table importer
# ---------------------------------------------------------------------------

def import_table(
    conn: psycopg.Connection,
    document: str,
    table_map: TableMap,
    counters: RunCounters,
    rejects: RejectWriter | None = None,
    strict_rows: bool = False,
) -> TableCounters:
    """Import one legacy table.  Caller manages transaction.

    A missing INSERT block is a warning, not an error.  Rows too short for
    the table map are rejected (or raised when strict_rows is set).
    """
    tc = counters.table(table_map.legacy_table)

    if table_map.replace:
        tc.rows_deleted = delete_all(conn, table_map.destination)

    rows = parse_table(document, table_map.legacy_table)
    if rows is None:
        message = f"No {table_map.legacy_table} block found"
        log.warning(message)
        counters.blocks_missing.append(table_map.legacy_table)
        counters.warnings.append(message)
        return tc

    for row_number, row in enumerate(rows, start=1):
        tc.rows_read += 1
        try:
            record = apply_table_map(table_map, row, row_number)
        except RowShapeAnomaly as exc:
            if strict_rows:
                raise
            log.warning("%s", exc)
            counters.warnings.append(str(exc))
            if rejects is not None:
                rejects.write(table_map.legacy_table, row_number, row, str(exc))
            tc.rows_rejected += 1
            continue

        if table_map.require_positive:
            key = positive_int(record[table_map.require_positive])
            if key is None:
                tc.rows_filtered += 1
                continue
            record[table_map.require_positive] = key

        for parent in table_map.parents:
            if ensure_parent(conn, parent.table, parent.key, record[parent.field]):
                tc.parents_ensured += 1

        if insert_or_ignore(conn, table_map.destination, table_map.primary_key, record):
            tc.rows_inserted += 1
        tc.rows_processed += 1

    if tc.rows_filtered:
        log.info(
            "%s: %d row(s) filtered on non-positive %s",
            table_map.legacy_table, tc.rows_filtered, table_map.require_positive,
        )
    log.info("%s: %d rows", table_map.destination, tc.rows_processed)
    return tc


# ---------------------------------------------------------------------------
# Atomic import pass
# ---------------------------------------------------------------------------

def run_legacy_import(
    conn: psycopg.Connection,
    document: str,
    column_maps: ColumnMapSet,
    counters: RunCounters | None = None,
    rejects: RejectWriter | None = None,
    strict_rows: bool = False,
) -> RunCounters:
    """Import every mapped table as one atomic unit.

    Constraints are relaxed for the pass and restored afterwards whatever
    happens.  Any exception rolls back every table written so far and
    propagates.  The caller commits.
    """
    ctrs = counters if counters is not None else RunCounters()
    with relaxed_constraints(conn):
        with conn.transaction():
            for table_map in column_maps.tables:
                import_table(conn, document, table_map, ctrs, rejects, strict_rows)
            for table in sorted(IDENTITY_TABLES):
                sync_identity_sequence(conn, table)
                ctrs.sequences_synced += 1
    return ctrs


def run_backfill_phase(
    conn: psycopg.Connection,
    current_year: int,
    counters: BackfillCounters | None = None,
) -> BackfillCounters:
    """Run the year backfill in its own unit.  The caller commits.

    Cloned registrations copy participant references from legacy rows,
    which may be orphans, so constraints are relaxed here as well.
    """
    ctrs = counters if counters is not None else BackfillCounters()
    with relaxed_constraints(conn):
        with conn.transaction():
            run_year_backfill(conn, current_year, ctrs)
    return ctrs


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_import_report(ctrs: RunCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Legacy Dump Import Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
    ]
    for name, tc in ctrs.tables.items():
        line = (
            f"  {name:<12} read={tc.rows_read} processed={tc.rows_processed} "
            f"inserted={tc.rows_inserted}"
        )
        if tc.rows_filtered:
            line += f" filtered={tc.rows_filtered}"
        if tc.rows_rejected:
            line += f" rejected={tc.rows_rejected}"
        if tc.rows_deleted:
            line += f" deleted={tc.rows_deleted}"
        lines.append(line)
    lines.append(f"  rows processed:      {ctrs.rows_processed}")
    lines.append(f"  rows rejected:       {ctrs.rows_rejected}")
    if ctrs.blocks_missing:
        lines.append(f"  blocks missing:      {', '.join(ctrs.blocks_missing)}")
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    type=click.Choice(["legacy_dump", "year_backfill"]),
    default="legacy_dump",
    show_default=True,
)
@click.option("--db-dsn", required=True, envvar="FESTIVAL_DB_DSN", help="PostgreSQL DSN")
@click.option("--dump-path", default=None, type=click.Path(), help="[legacy_dump] Legacy SQL dump")
@click.option("--encoding", default=DEFAULT_ENCODING, show_default=True, help="[legacy_dump] Dump text encoding")
@click.option("--column-map", default=None, type=click.Path(), help="[legacy_dump] Column map YAML (default: the legacy_dump.yml shipped with the package)")
@click.option("--current-year", default=None, type=int, help="Year to backfill (default: this calendar year)")
@click.option("--skip-backfill", is_flag=True, default=False, help="[legacy_dump] Import tables only")
@click.option("--strict-row-shape", is_flag=True, default=False, help="[legacy_dump] Abort on rows with too few cells instead of rejecting them")
@click.option(
    "--rejects-path",
    default="artifacts/rejects/legacy_dump_rejects.csv",
    show_default=True,
    type=click.Path(),
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False)
def main(
    mode: str,
    db_dsn: str,
    dump_path: str | None,
    encoding: str,
    column_map: str | None,
    current_year: int | None,
    skip_backfill: bool,
    strict_row_shape: bool,
    rejects_path: str,
    dry_run: bool,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Legacy festival dump migration CLI."""
    configure_logging(verbose)
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    year = current_year or date.today().year

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "year_backfill":
        ctrs = _run_year_backfill(run_id, db_dsn, year, dry_run)
        report_path = write_run_report(
            run_id, started_at, mode, dry_run,
            {"current_year": str(year)},
            {"backfill": ctrs},
        )
        click.echo(f"[{run_id}] Run report: {report_path}")
        return

    if not dump_path:
        click.echo(f"[{run_id}] FATAL: --dump-path is required for legacy_dump", err=True)
        sys.exit(1)

    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))
    backfill = _run_legacy_dump(
        run_id, db_dsn, counters, rejects,
        dump_path=Path(dump_path),
        encoding=encoding,
        column_map_path=Path(column_map) if column_map else None,
        current_year=year,
        skip_backfill=skip_backfill,
        strict_rows=strict_row_shape,
        dry_run=dry_run,
    )

    sections: dict = {"counters": counters}
    if backfill is not None:
        sections["backfill"] = backfill
    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"dump_path": dump_path, "rejects_path": rejects_path},
        sections,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _load_inputs(
    run_id: str,
    dump_path: Path,
    encoding: str,
    column_map_path: Path | None,
) -> tuple[str, ColumnMapSet]:
    try:
        column_maps = load_column_maps(column_map_path)
    except (OSError, ColumnMapValidationError) as exc:
        click.echo(f"[{run_id}] FATAL: column map unusable: {exc}", err=True)
        sys.exit(1)

    try:
        document = read_dump(dump_path, encoding)
    except (OSError, LookupError) as exc:
        click.echo(f"[{run_id}] FATAL: cannot read dump {dump_path}: {exc}", err=True)
        sys.exit(1)

    click.echo(
        f"[{run_id}] Read {len(document)} characters from {dump_path.name}; "
        f"{len(column_maps.tables)} tables mapped (column map {column_maps.version})"
    )
    return document, column_maps


def _run_legacy_dump(
    run_id: str,
    db_dsn: str,
    counters: RunCounters,
    rejects: RejectWriter,
    dump_path: Path,
    encoding: str,
    column_map_path: Path | None,
    current_year: int,
    skip_backfill: bool,
    strict_rows: bool,
    dry_run: bool,
) -> BackfillCounters | None:
    document, column_maps = _load_inputs(run_id, dump_path, encoding, column_map_path)

    backfill: BackfillCounters | None = None
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        run_legacy_import(conn, document, column_maps, counters, rejects, strict_rows)
        click.echo(build_import_report(counters, dry_run=dry_run))
        if not dry_run:
            conn.commit()
            click.echo(f"[{run_id}] Import committed.")

        if not skip_backfill:
            backfill = run_backfill_phase(conn, current_year)
            click.echo(build_backfill_report(backfill, dry_run=dry_run))

        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except RowShapeAnomaly as exc:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: {exc}; import rolled back.", err=True)
        sys.exit(1)
    except Exception as exc:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: run failed with DB error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()
        rejects.close()

    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} row(s) rejected; see {rejects.path}")
    return backfill


def _run_year_backfill(
    run_id: str,
    db_dsn: str,
    current_year: int,
    dry_run: bool,
) -> BackfillCounters:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        ctrs = run_backfill_phase(conn, current_year)
        click.echo(build_backfill_report(ctrs, dry_run=dry_run))
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except Exception as exc:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: backfill failed with DB error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()
    return ctrs


if __name__ == "__main__":
    main()
