"""Integration tests for the legacy dump import pass.

These tests run against an ephemeral PostgreSQL database with the
destination schema applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

import csv
import json

import psycopg
import pytest

from festival_etl.column_maps import RowShapeAnomaly, load_column_maps
from festival_etl.import_legacy_dump import (
    build_import_report,
    read_dump,
    run_legacy_import,
)
from festival_etl.shared import RejectWriter, current_replication_role, relaxed_constraints

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

TABLES = ["edition", "category", "competition", "participant", "registration", "work", "upload"]


def _count(conn: psycopg.Connection, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


def _counts(conn: psycopg.Connection) -> dict[str, int]:
    return {table: _count(conn, table) for table in TABLES}


def _import(conn, document, rejects=None, strict_rows=False):
    counters = run_legacy_import(
        conn, document, load_column_maps(), rejects=rejects, strict_rows=strict_rows,
    )
    conn.commit()
    return counters


EXPECTED_COUNTS = {
    "edition": 5,
    "category": 2,
    "competition": 3,
    "participant": 2,
    "registration": 2,
    "work": 4,
    "upload": 3,
}


# ---------------------------------------------------------------------------
# Test: full import
# ---------------------------------------------------------------------------

class TestFullImport:
    def test_row_counts(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        counters = _import(conn, read_dump(legacy_dump_path))

        assert _counts(conn) == EXPECTED_COUNTS
        assert counters.rows_processed == 18
        assert counters.rows_rejected == 0
        assert counters.blocks_missing == []
        assert counters.sequences_synced == 5

    def test_table_counters(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        counters = _import(conn, read_dump(legacy_dump_path))

        comp = counters.table("competencia")
        assert (comp.rows_read, comp.rows_inserted, comp.parents_ensured) == (3, 3, 1)

        uploads = counters.table("subidas")
        assert uploads.rows_read == 4
        assert uploads.rows_processed == 3
        assert uploads.rows_filtered == 1
        assert uploads.parents_ensured == 2

    def test_editions_include_referenced_years(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        years = [r[0] for r in conn.execute("SELECT year FROM edition ORDER BY year").fetchall()]
        assert years == [2012, 2013, 2014, 2015, 2016]

        bare = conn.execute(
            "SELECT committee, presenters FROM edition WHERE year = 2014"
        ).fetchone()
        assert bare == (None, None)

    def test_latin1_text_decoded(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        committee = conn.execute("SELECT committee FROM edition WHERE year = 2012").fetchone()[0]
        assert committee == "Comisión 2012"
        title = conn.execute("SELECT title FROM work WHERE id = 1").fetchone()[0]
        assert title == "Can y Môr"

    def test_edition_blank_committee_is_null(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        row = conn.execute(
            "SELECT committee, committee_img, presenters FROM edition WHERE year = 2013"
        ).fetchone()
        assert row == (None, None, None)

    def test_competition_values(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        rows = {
            r[0]: r[1:]
            for r in conn.execute(
                "SELECT id, description, language, type, rank, preliminary FROM competition"
            ).fetchall()
        }
        assert rows["10"] == ("Solo tenor", "Spanish", "IND", 2, "1")
        assert rows["11"] == ("Danza; grupal", "Other", "GRU", 0, "0")
        assert rows["12"] == ("Coro", None, "IND", 1, "0")

    def test_participant_values(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        row = conn.execute(
            "SELECT name, surname, document_id, type FROM participant WHERE id = 2"
        ).fetchone()
        assert row == ("Coro", "Gaiman", "007", "GRU")

    def test_registration_values(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        rows = conn.execute(
            "SELECT id, competition_id, pseudonym, registered_at, year, dropped "
            "FROM registration ORDER BY id"
        ).fetchall()
        assert rows == [
            (1, "10", "Eos", "2012-05-01", 2012, 0),
            (2, "12", None, "2014-06-30", 2014, 1),
        ]

    def test_work_values(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        rows = {
            r[0]: r[1:]
            for r in conn.execute(
                "SELECT id, placement, title, video_url, photo_url FROM work"
            ).fetchall()
        }
        assert rows[1] == ("1", "Can y Môr", None, None)
        assert rows[2] == ("mention", "(untitled)", None, "foto.jpg")
        assert rows[3] == (None, "It's (late)", None, None)

    def test_orphan_reference_accepted(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        row = conn.execute("SELECT participant_id, title FROM work WHERE id = 4").fetchone()
        assert row == (99, "Huérfana")

    def test_upload_values(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        _import(conn, read_dump(legacy_dump_path))

        rows = conn.execute(
            "SELECT id, year, filename, description FROM upload ORDER BY id"
        ).fetchall()
        assert rows == [
            (1, 2012, "programa2012.pdf", "Programa"),
            (3, 2015, "", "Afiche"),
            (4, 2016, "x.pdf", "y"),
        ]

    def test_report_mentions_every_table(self, db_conn, legacy_dump_path):
        conn, _ = db_conn
        counters = _import(conn, read_dump(legacy_dump_path))

        report = build_import_report(counters)
        for table in ["anio", "categoria", "competencia", "persona", "inscriptos", "Obra", "subidas"]:
            assert table in report
        assert "filtered=1" in report


# ---------------------------------------------------------------------------
# Test: idempotency and category replacement
# ---------------------------------------------------------------------------

class TestRerun:
    def test_second_run_adds_nothing(self, db_conn, legacy_document):
        conn, _ = db_conn
        _import(conn, legacy_document)
        second = _import(conn, legacy_document)

        assert _counts(conn) == EXPECTED_COUNTS
        for name, tc in second.tables.items():
            if name == "categoria":
                continue
            assert tc.rows_inserted == 0, name
            assert tc.parents_ensured == 0, name

    def test_categories_replaced_each_run(self, db_conn, legacy_document):
        conn, _ = db_conn
        _import(conn, legacy_document)
        second = _import(conn, legacy_document)

        cat = second.table("categoria")
        assert cat.rows_deleted == 2
        assert cat.rows_inserted == 2

    def test_manual_category_removed(self, db_conn, legacy_document):
        conn, _ = db_conn
        conn.execute("INSERT INTO category (id, name) VALUES (50, 'Teatro')")
        conn.commit()

        _import(conn, legacy_document)

        ids = [r[0] for r in conn.execute("SELECT id FROM category ORDER BY id").fetchall()]
        assert ids == [1, 2]

    def test_existing_rows_not_overwritten(self, db_conn, legacy_document):
        conn, _ = db_conn
        conn.execute("INSERT INTO participant (id, name, type) VALUES (1, 'Edited', 'IND')")
        conn.commit()

        _import(conn, legacy_document)

        name = conn.execute("SELECT name FROM participant WHERE id = 1").fetchone()[0]
        assert name == "Edited"

    def test_category_cleared_when_block_missing(self, db_conn, legacy_document):
        conn, _ = db_conn
        _import(conn, legacy_document)

        document = "\n".join(
            line for line in legacy_document.splitlines()
            if not line.startswith("INSERT INTO `categoria`")
        )
        counters = _import(conn, document)

        assert _count(conn, "category") == 0
        assert counters.table("categoria").rows_deleted == 2
        assert counters.blocks_missing == ["categoria"]


# ---------------------------------------------------------------------------
# Test: missing blocks and malformed rows
# ---------------------------------------------------------------------------

class TestPartialDumps:
    def test_missing_block_warns(self, db_conn, legacy_document):
        conn, _ = db_conn
        document = "\n".join(
            line for line in legacy_document.splitlines()
            if not line.startswith("INSERT INTO `subidas`")
        )
        counters = _import(conn, document)

        assert counters.blocks_missing == ["subidas"]
        assert any("subidas" in w for w in counters.warnings)
        assert _count(conn, "upload") == 0
        assert _count(conn, "work") == 4

    def test_quoted_upload_year_kept(self, db_conn):
        conn, _ = db_conn
        document = (
            "INSERT INTO `subidas` VALUES "
            "(1,'a.pdf','x','2015'),(2,'b.pdf','y',2015),(3,'c.pdf','z','0');"
        )
        counters = _import(conn, document)

        uploads = counters.table("subidas")
        assert uploads.rows_processed == 2
        assert uploads.rows_filtered == 1
        rows = conn.execute("SELECT id, year FROM upload ORDER BY id").fetchall()
        assert rows == [(1, 2015), (2, 2015)]

    def test_empty_dump_imports_nothing(self, db_conn):
        conn, _ = db_conn
        counters = _import(conn, "-- MySQL dump\n")

        assert len(counters.blocks_missing) == 7
        assert _counts(conn) == {table: 0 for table in TABLES}

    def test_short_row_rejected(self, db_conn, legacy_document, tmp_path):
        conn, _ = db_conn
        document = legacy_document.replace(
            "INSERT INTO `persona` VALUES ",
            "INSERT INTO `persona` VALUES (3,'999','Solo'),",
        )
        rejects = RejectWriter(tmp_path / "rejects.csv")
        counters = _import(conn, document, rejects=rejects)
        rejects.close()

        persona = counters.table("persona")
        assert persona.rows_read == 3
        assert persona.rows_rejected == 1
        assert persona.rows_processed == 2
        assert _count(conn, "participant") == 2

        with open(tmp_path / "rejects.csv", newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert len(rows) == 1
        assert rows[0]["legacy_table"] == "persona"
        assert rows[0]["row_number"] == "1"
        assert json.loads(rows[0]["raw_cells"]) == ["3", "'999'", "'Solo'"]
        assert "row_shape_anomaly" in rows[0]["_reject_reason"]

    def test_short_row_strict_rolls_back(self, db_conn, legacy_document):
        conn, _ = db_conn
        document = legacy_document.replace(
            "INSERT INTO `persona` VALUES ",
            "INSERT INTO `persona` VALUES (3,'999','Solo'),",
        )
        with pytest.raises(RowShapeAnomaly):
            run_legacy_import(conn, document, load_column_maps(), strict_rows=True)
        conn.rollback()

        assert _counts(conn) == {table: 0 for table in TABLES}


# ---------------------------------------------------------------------------
# Test: atomicity and constraint relaxation
# ---------------------------------------------------------------------------

class TestAtomicity:
    def test_constraint_violation_rolls_back_everything(self, db_conn, legacy_document):
        conn, _ = db_conn
        document = legacy_document.replace("NULL,'GRU');", "NULL,'XYZ');")

        with pytest.raises(psycopg.errors.CheckViolation):
            run_legacy_import(conn, document, load_column_maps())
        conn.rollback()

        assert _counts(conn) == {table: 0 for table in TABLES}

    def test_role_restored_after_failure(self, db_conn, legacy_document):
        conn, _ = db_conn
        document = legacy_document.replace("NULL,'GRU');", "NULL,'XYZ');")

        with pytest.raises(psycopg.errors.CheckViolation):
            run_legacy_import(conn, document, load_column_maps())
        conn.rollback()

        assert current_replication_role(conn) == "origin"

    def test_role_restored_after_success(self, db_conn, legacy_document):
        conn, _ = db_conn
        _import(conn, legacy_document)

        assert current_replication_role(conn) == "origin"

    def test_foreign_keys_enforced_after_import(self, db_conn, legacy_document):
        conn, _ = db_conn
        _import(conn, legacy_document)

        with pytest.raises(psycopg.errors.ForeignKeyViolation):
            conn.execute(
                "INSERT INTO work (participant_id, competition_id, title) VALUES (1, 'nope', 'x')"
            )
        conn.rollback()

    def test_identity_sequences_synced(self, db_conn, legacy_document):
        conn, _ = db_conn
        _import(conn, legacy_document)

        new_participant = conn.execute(
            "INSERT INTO participant (name, type) VALUES ('Nuevo', 'IND') RETURNING id"
        ).fetchone()[0]
        new_work = conn.execute(
            "INSERT INTO work (participant_id, competition_id, title) "
            "VALUES (1, '10', 'Nueva') RETURNING id"
        ).fetchone()[0]
        conn.commit()

        assert new_participant == 3
        assert new_work == 5

    def test_closed_connection_keeps_original_error(self, db_conn):
        conn, _ = db_conn

        with pytest.raises(RuntimeError, match="import aborted"):
            with relaxed_constraints(conn):
                conn.close()
                raise RuntimeError("import aborted")

        assert conn.closed
