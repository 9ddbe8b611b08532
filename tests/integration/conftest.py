"""Integration test fixtures.

Applies migrations 0001–0006 against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_extensions.sql",
    PROJECT_ROOT / "migrations" / "0002_clients_contacts.sql",
    PROJECT_ROOT / "migrations" / "0003_segments_import_jobs.sql",
    PROJECT_ROOT / "migrations" / "0004_newsletters_versions.sql",
    PROJECT_ROOT / "migrations" / "0005_state_guards.sql",
    PROJECT_ROOT / "migrations" / "0006_review_tokens_comments.sql",
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
    """Return (connection, dsn) with the schema applied.

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
# Row fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def client_id(db_conn) -> str:
    conn, _ = db_conn
    row = conn.execute(
        "INSERT INTO clients (name) VALUES (%s) RETURNING id", ("Acme Realty",)
    ).fetchone()
    conn.commit()
    return str(row[0])


@pytest.fixture()
def newsletter(db_conn, client_id) -> dict:
    """A committed draft newsletter with sendable HTML (version 1)."""
    from newsletter_flow.versions import create_newsletter

    conn, _ = db_conn
    nl = create_newsletter(
        conn, client_id, "March Market Update", date(2026, 3, 1),
        document={"html": "<p>Hello</p>", "subject": "March update"},
        created_by="user-1",
    )
    conn.commit()
    return nl
