"""newsletter_flow.versions

Append-only version log for newsletter documents.

Every committed content change writes a new newsletter_versions row with
version_number = latest + 1 (scoped per newsletter) and moves
newsletters.current_version_id forward to it.  Restoring an old version
copies its snapshot into the working document and stamps a *new* version on
top; history is never rewritten, deleted, or renumbered.

Concurrency: the newsletter row is locked (SELECT ... FOR UPDATE) while the
next number is computed, and (newsletter_id, version_number) is unique, so
two concurrent commits serialize instead of sharing a number.  Document
edits themselves are last-write-wins; the earlier content survives as a
version and can be restored.

Caller manages the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from newsletter_flow.shared import NewsletterNotFoundError, NotFoundError

log = logging.getLogger(__name__)

INITIAL_CHANGE_SUMMARY = "Initial version"

_NEWSLETTER_COLS = (
    "id, client_id, title, status, current_version_id, expected_send_date, "
    "scheduled_for, sent_at, document_json, invoice_id, subscription_id"
)
_NEWSLETTER_KEYS = [c.strip() for c in _NEWSLETTER_COLS.split(",")]

_VERSION_COLS = (
    "id, newsletter_id, version_number, snapshot_json, created_at, "
    "created_by_id, change_summary"
)


class VersionNotFoundError(NotFoundError):
    """Raised when a version id does not belong to the newsletter."""


@dataclass(frozen=True)
class NewsletterVersion:
    id: str
    newsletter_id: str
    version_number: int
    content_snapshot: dict[str, Any]
    created_at: datetime
    created_by_id: str | None
    change_summary: str | None

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> "NewsletterVersion":
        return cls(
            id=str(row[0]),
            newsletter_id=str(row[1]),
            version_number=int(row[2]),
            content_snapshot=dict(row[3] or {}),
            created_at=row[4],
            created_by_id=row[5],
            change_summary=row[6],
        )


# ---------------------------------------------------------------------------
# Newsletter reads
# ---------------------------------------------------------------------------

def _newsletter_row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
    d = dict(zip(_NEWSLETTER_KEYS, row))
    d["id"] = str(d["id"])
    d["client_id"] = str(d["client_id"])
    if d["current_version_id"] is not None:
        d["current_version_id"] = str(d["current_version_id"])
    return d


def get_newsletter(
    conn: psycopg.Connection,
    newsletter_id: str,
    for_update: bool = False,
) -> dict[str, Any]:
    """Return the newsletter row as a dict.

    for_update=True locks the row until the caller's transaction ends.
    """
    lock = " FOR UPDATE" if for_update else ""
    row = conn.execute(
        f"SELECT {_NEWSLETTER_COLS} FROM newsletters WHERE id = %s{lock}",
        (newsletter_id,),
    ).fetchone()
    if row is None:
        raise NewsletterNotFoundError(f"Newsletter {newsletter_id} not found")
    return _newsletter_row_to_dict(row)


# ---------------------------------------------------------------------------
# Version reads
# ---------------------------------------------------------------------------

def latest_version_number(conn: psycopg.Connection, newsletter_id: str) -> int:
    row = conn.execute(
        "SELECT COALESCE(MAX(version_number), 0) FROM newsletter_versions WHERE newsletter_id = %s",
        (newsletter_id,),
    ).fetchone()
    return int(row[0])


def list_versions(conn: psycopg.Connection, newsletter_id: str) -> list[NewsletterVersion]:
    """All versions, newest first."""
    rows = conn.execute(
        f"""
        SELECT {_VERSION_COLS} FROM newsletter_versions
        WHERE newsletter_id = %s
        ORDER BY version_number DESC
        """,
        (newsletter_id,),
    ).fetchall()
    return [NewsletterVersion.from_row(r) for r in rows]


def get_version(
    conn: psycopg.Connection,
    newsletter_id: str,
    version_id: str,
) -> NewsletterVersion:
    row = conn.execute(
        f"SELECT {_VERSION_COLS} FROM newsletter_versions WHERE id = %s AND newsletter_id = %s",
        (version_id, newsletter_id),
    ).fetchone()
    if row is None:
        raise VersionNotFoundError(
            f"Version {version_id} not found for newsletter {newsletter_id}"
        )
    return NewsletterVersion.from_row(row)


def current_document(conn: psycopg.Connection, newsletter: dict[str, Any]) -> dict[str, Any]:
    """Working content: current version snapshot, else document_json, else {}."""
    if newsletter.get("current_version_id"):
        row = conn.execute(
            "SELECT snapshot_json FROM newsletter_versions WHERE id = %s",
            (newsletter["current_version_id"],),
        ).fetchone()
        if row is not None and row[0] is not None:
            return dict(row[0])
    return dict(newsletter.get("document_json") or {})


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _append_version(
    conn: psycopg.Connection,
    newsletter_id: str,
    snapshot: dict[str, Any],
    user_id: str | None,
    change_summary: str | None,
) -> NewsletterVersion:
    """Insert version latest+1 and move the pointer.  Newsletter row must be locked."""
    next_number = latest_version_number(conn, newsletter_id) + 1
    row = conn.execute(
        f"""
        INSERT INTO newsletter_versions
            (newsletter_id, version_number, snapshot_json, created_by_id, change_summary)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING {_VERSION_COLS}
        """,
        (newsletter_id, next_number, Jsonb(snapshot), user_id, change_summary),
    ).fetchone()
    version = NewsletterVersion.from_row(row)
    conn.execute(
        """
        UPDATE newsletters
        SET document_json = %s,
            current_version_id = %s,
            last_edited_by_id = COALESCE(%s, last_edited_by_id),
            last_edited_at = now(),
            updated_at = now()
        WHERE id = %s
        """,
        (Jsonb(snapshot), version.id, user_id, newsletter_id),
    )
    log.debug("newsletter %s -> v%d (%s)", newsletter_id, next_number, change_summary)
    return version


def create_newsletter(
    conn: psycopg.Connection,
    client_id: str,
    title: str,
    expected_send_date: date,
    document: dict[str, Any] | None = None,
    created_by: str | None = None,
    invoice_id: str | None = None,
    subscription_id: str | None = None,
) -> dict[str, Any]:
    """Insert a draft newsletter with version 1 as its current version."""
    row = conn.execute(
        """
        INSERT INTO newsletters
            (client_id, title, status, expected_send_date, document_json,
             invoice_id, subscription_id)
        VALUES (%s, %s, 'draft', %s, %s, %s, %s)
        RETURNING id
        """,
        (client_id, title, expected_send_date, Jsonb(document or {}),
         invoice_id, subscription_id),
    ).fetchone()
    newsletter_id = str(row[0])
    get_newsletter(conn, newsletter_id, for_update=True)
    _append_version(conn, newsletter_id, document or {}, created_by, INITIAL_CHANGE_SUMMARY)
    return get_newsletter(conn, newsletter_id)


def commit_document(
    conn: psycopg.Connection,
    newsletter_id: str,
    document_patch: dict[str, Any],
    user_id: str | None = None,
    change_summary: str | None = "Manual edit",
) -> NewsletterVersion:
    """Shallow-merge document_patch over the working content and snapshot it."""
    newsletter = get_newsletter(conn, newsletter_id, for_update=True)
    new_doc = {**current_document(conn, newsletter), **document_patch}
    return _append_version(conn, newsletter_id, new_doc, user_id, change_summary)


def restore_version(
    conn: psycopg.Connection,
    newsletter_id: str,
    version_id: str,
    user_id: str | None = None,
) -> NewsletterVersion:
    """Copy an old snapshot forward as a new version.

    Raises:
        NewsletterNotFoundError: unknown newsletter.
        VersionNotFoundError: version_id is not one of this newsletter's versions.
    """
    get_newsletter(conn, newsletter_id, for_update=True)
    target = get_version(conn, newsletter_id, version_id)
    version = _append_version(
        conn,
        newsletter_id,
        target.content_snapshot,
        user_id,
        f"Restored from v{target.version_number}",
    )
    log.info(
        "newsletter %s restored v%d as v%d",
        newsletter_id, target.version_number, version.version_number,
    )
    return version
