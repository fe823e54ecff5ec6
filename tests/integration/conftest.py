"""Integration test fixtures.

Applies the destination schema migrations against an ephemeral PostgreSQL
database provided by pytest-postgresql before any integration test runs.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_festival_schema.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture: applies all migrations for every test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return a psycopg connection with schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
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
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Legacy dump fixture
# ---------------------------------------------------------------------------

LEGACY_DUMP = """\
-- MySQL dump 10.13  Distrib 5.5.54
-- Host: localhost    Database: eistedglobal

DROP TABLE IF EXISTS `anio`;
INSERT INTO `anio` VALUES (2012,'Comisi\xf3n 2012','Ana y Luis',NULL,NULL,NULL,NULL,'com2012.jpg',''),(2013,'','',NULL,NULL,NULL,NULL,'','');
INSERT INTO `categoria` VALUES (1,'Canto','Canu','Voces'),(2,'Danza','Dawns','');
INSERT INTO `competencia` VALUES (10,1,'Solo tenor',2012,'Castellano',2,'1',NULL,'IND',NULL),(11,2,'Danza; grupal',2013,'Klingon',NULL,NULL,NULL,'GRU',NULL),(12,1,'Coro',2014,NULL,1,'0',NULL,'',NULL);
INSERT INTO `persona` VALUES (1,'30111222','Ana','Jones','Calle 1','1990-01-02','AR','Trelew','ana@example.com','2804',NULL,'IND'),(2,'007','Coro','Gaiman','','','AR','Gaiman','','',NULL,'GRU');
INSERT INTO `inscriptos` VALUES (1,1,10,'Eos','2012-05-01',2012,NULL),(2,2,12,NULL,'2014-06-30',2014,1);
INSERT INTO `Obra` VALUES (1,1,'1',10,'Can y M\xf4r','2012-10-28','',''),(2,2,'mencion',12,'','2014-10-28',NULL,'foto.jpg'),(3,1,'7',10,'It''s (late)','2012-10-29',NULL,NULL),(4,99,NULL,11,'Hu\xe9rfana','2013-10-28',NULL,NULL);
INSERT INTO `subidas` VALUES (1,'programa2012.pdf','Programa',2012),(2,'sin_anio.pdf','Sin a\xf1o',0),(3,'','Afiche',2015),(4,'x.pdf','y','2016');
"""


@pytest.fixture
def legacy_dump_path(tmp_path: Path) -> Path:
    """Write the sample dump in the legacy single-byte encoding."""
    path = tmp_path / "eistedglobal.sql"
    path.write_bytes(LEGACY_DUMP.encode("latin-1"))
    return path


@pytest.fixture
def legacy_document() -> str:
    return LEGACY_DUMP
