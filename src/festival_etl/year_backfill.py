"""festival_etl.year_backfill

Current-year backfill (--mode year_backfill, and the tail of legacy_dump).

When the current calendar year has no registrations yet, clones the most
recent prior year that does:

  1. Guard: any registration already tagged with the current year → no-op
  2. Source: greatest year < current year with at least one registration;
     none → ensure a bare edition row for the current year and stop
  3. Competitions: every source-year competition, ordered by (rank, id), is
     inserted as "{current_year}-{id}" with its language re-coerced
  4. Registrations: every source-year registration whose competition was
     cloned is inserted into the current year with its date moved
     into that year; the rest are skipped and counted

Idempotency:
  - Competitions use insert-or-ignore on their derived id, so a re-run after
    an interrupted backfill does not duplicate them.
  - Once any registration lands in the current year, step 1 stops every later run.

The caller owns the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import psycopg

from festival_etl.normalize import coerce_language, date_in_year
from festival_etl.shared import ensure_edition, insert_or_ignore, sync_identity_sequence

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class BackfillCounters:
    current_year: int | None = None
    source_year: int | None = None
    already_populated: bool = False
    competitions_cloned: int = 0
    competitions_already_present: int = 0
    registrations_cloned: int = 0
    registrations_skipped: int = 0  # competition not in the clone map
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_year": self.current_year,
            "source_year": self.source_year,
            "already_populated": self.already_populated,
            "competitions_cloned": self.competitions_cloned,
            "competitions_already_present": self.competitions_already_present,
            "registrations_cloned": self.registrations_cloned,
            "registrations_skipped": self.registrations_skipped,
            "warnings": self.warnings[:50],
        }


def cloned_competition_id(year: int, original_id: str) -> str:
    return f"{year}-{original_id}"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def count_registrations(conn: psycopg.Connection, year: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM registration WHERE year = %s",
        (year,),
    ).fetchone()
    return int(row[0])


def find_source_year(conn: psycopg.Connection, current_year: int) -> int | None:
    """Greatest year before current_year that has registrations."""
    row = conn.execute(
        "SELECT MAX(year) FROM registration WHERE year < %s",
        (current_year,),
    ).fetchone()
    return int(row[0]) if row and row[0] is not None else None


def _source_competitions(conn: psycopg.Connection, year: int) -> list[tuple]:
    return conn.execute(
        """
        SELECT id, category_id, description, language, type, rank, preliminary
        FROM competition
        WHERE year = %s
        ORDER BY rank ASC, id ASC
        """,
        (year,),
    ).fetchall()


def _source_registrations(conn: psycopg.Connection, year: int) -> list[tuple]:
    return conn.execute(
        """
        SELECT participant_id, competition_id, pseudonym, registered_at, dropped
        FROM registration
        WHERE year = %s
        ORDER BY id ASC
        """,
        (year,),
    ).fetchall()


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _warn(counters: BackfillCounters, message: str) -> None:
    log.warning(message)
    counters.warnings.append(message)


def clone_competitions(
    conn: psycopg.Connection,
    source_year: int,
    current_year: int,
    counters: BackfillCounters,
) -> dict[str, str]:
    """Clone source-year competitions; return original id → cloned id."""
    id_map: dict[str, str] = {}
    for comp_id, category_id, description, language, comp_type, rank, preliminary in (
        _source_competitions(conn, source_year)
    ):
        cloned_id = cloned_competition_id(current_year, comp_id)
        inserted = insert_or_ignore(
            conn,
            "competition",
            "id",
            {
                "id": cloned_id,
                "category_id": category_id,
                "description": description,
                "language": coerce_language(language),
                "year": current_year,
                "type": comp_type,
                "rank": rank if rank is not None else 0,
                "preliminary": preliminary,
            },
        )
        if inserted:
            counters.competitions_cloned += 1
        else:
            counters.competitions_already_present += 1
        id_map[str(comp_id)] = cloned_id
    return id_map


def clone_registrations(
    conn: psycopg.Connection,
    source_year: int,
    current_year: int,
    id_map: dict[str, str],
    counters: BackfillCounters,
) -> int:
    """Clone source-year registrations whose competition was cloned.

    Returns the number of source registrations read.
    """
    rows = _source_registrations(conn, source_year)
    if not rows:
        return 0

    sync_identity_sequence(conn, "registration")
    for participant_id, competition_id, pseudonym, registered_at, dropped in rows:
        cloned_comp_id = id_map.get(str(competition_id))
        if cloned_comp_id is None:
            counters.registrations_skipped += 1
            log.debug(
                "Skipping registration of participant %s: competition %r not cloned",
                participant_id, competition_id,
            )
            continue
        conn.execute(
            """
            INSERT INTO registration
              (participant_id, competition_id, pseudonym, registered_at, year, dropped)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                participant_id,
                cloned_comp_id,
                pseudonym,
                date_in_year(registered_at, current_year),
                current_year,
                dropped if dropped is not None else 0,
            ),
        )
        counters.registrations_cloned += 1
    return len(rows)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def run_year_backfill(
    conn: psycopg.Connection,
    current_year: int,
    counters: BackfillCounters | None = None,
) -> BackfillCounters:
    """Clone the latest prior year into current_year if it has no registrations."""
    ctrs = counters or BackfillCounters()
    ctrs.current_year = current_year

    if count_registrations(conn, current_year) > 0:
        ctrs.already_populated = True
        log.info("Current year %s already has registrations; nothing to backfill", current_year)
        return ctrs

    source_year = find_source_year(conn, current_year)
    ensure_edition(conn, current_year)
    if source_year is None:
        _warn(ctrs, f"No prior registrations found to backfill {current_year}")
        return ctrs
    ctrs.source_year = source_year

    id_map = clone_competitions(conn, source_year, current_year, ctrs)
    if not id_map:
        _warn(ctrs, f"Year {source_year} has no competitions to clone into {current_year}")
        return ctrs

    read = clone_registrations(conn, source_year, current_year, id_map, ctrs)
    if read == 0:
        _warn(ctrs, f"Year {source_year} has no registrations to clone into {current_year}")
        return ctrs

    if ctrs.registrations_skipped:
        _warn(
            ctrs,
            f"{ctrs.registrations_skipped} registration(s) of {source_year} reference "
            "competitions outside that year and were skipped",
        )
    log.info(
        "Backfilled %d registrations and %d competitions into %s (source year: %s)",
        ctrs.registrations_cloned, ctrs.competitions_cloned, current_year, source_year,
    )
    return ctrs


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_backfill_report(ctrs: BackfillCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Current-Year Backfill Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  current year:              {ctrs.current_year}",
        f"  source year:               {ctrs.source_year}",
        f"  already populated:         {ctrs.already_populated}",
        f"  competitions cloned:       {ctrs.competitions_cloned}",
        f"  competitions already present: {ctrs.competitions_already_present}",
        f"  registrations cloned:      {ctrs.registrations_cloned}",
        f"  registrations skipped:     {ctrs.registrations_skipped}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
