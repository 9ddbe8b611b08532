"""newsletter_flow.review

Client review links for newsletters.

send_for_review() moves a newsletter to client_review and issues a review
token: a random, single-use link valid for REVIEW_TOKEN_TTL.  The client acts
through the token alone:

    approve_review(token)       -> approved   (consumes a single-use token)
    request_changes(token)      -> revisions  (records a review comment)
    add_review_comment(token)   -> revisions  (records a review comment)

A token is valid while expires_at is in the future and, for single-use
tokens, used_at is still NULL.  Feedback leaves the token usable, so a
client can comment several times before approving.

Status moves go through campaign_status.update_status, so the generic
guards apply.  Caller manages the transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from newsletter_flow.campaign_status import update_status
from newsletter_flow.shared import NotFoundError

log = logging.getLogger(__name__)

REVIEW_TOKEN_TTL = timedelta(days=7)
COMMENT_TYPES = ("change", "addition", "removal", "general")
DEFAULT_CHANGE_REQUEST = "Change requested"

_TOKEN_COLS = "id, newsletter_id, token, expires_at, single_use, used_at, created_at"
_COMMENT_COLS = (
    "id, newsletter_id, review_token_id, section_id, comment_type, content, "
    "attachments, is_completed, completed_at, completed_by_id, created_at"
)


class ReviewTokenError(NotFoundError):
    """Raised when a review token is unknown, expired, or already used."""


class ReviewCommentNotFoundError(NotFoundError):
    pass


@dataclass(frozen=True)
class ReviewToken:
    id: str
    newsletter_id: str
    token: str
    expires_at: datetime
    single_use: bool
    used_at: datetime | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> "ReviewToken":
        return cls(
            id=str(row[0]),
            newsletter_id=str(row[1]),
            token=row[2],
            expires_at=row[3],
            single_use=bool(row[4]),
            used_at=row[5],
            created_at=row[6],
        )


@dataclass(frozen=True)
class ReviewComment:
    id: str
    newsletter_id: str
    review_token_id: str | None
    section_id: str | None
    comment_type: str
    content: str
    attachments: list[str] = field(default_factory=list)
    is_completed: bool = False
    completed_at: datetime | None = None
    completed_by_id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> "ReviewComment":
        return cls(
            id=str(row[0]),
            newsletter_id=str(row[1]),
            review_token_id=str(row[2]) if row[2] is not None else None,
            section_id=row[3],
            comment_type=row[4],
            content=row[5],
            attachments=list(row[6] or []),
            is_completed=bool(row[7]),
            completed_at=row[8],
            completed_by_id=row[9],
            created_at=row[10],
        )


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

def send_for_review(
    conn: psycopg.Connection,
    newsletter_id: str,
    now: datetime | None = None,
    ttl: timedelta = REVIEW_TOKEN_TTL,
) -> ReviewToken:
    """Move the newsletter to client_review and issue a single-use token."""
    update_status(conn, newsletter_id, "client_review")
    row = conn.execute(
        f"""
        INSERT INTO review_tokens (newsletter_id, token, expires_at, single_use)
        VALUES (%s, %s, %s, true)
        RETURNING {_TOKEN_COLS}
        """,
        (newsletter_id, str(uuid.uuid4()), _now(now) + ttl),
    ).fetchone()
    token = ReviewToken.from_row(row)
    log.info("newsletter %s sent for review; token expires %s", newsletter_id, token.expires_at)
    return token


def get_valid_review_token(
    conn: psycopg.Connection,
    token: str,
    now: datetime | None = None,
    for_update: bool = False,
) -> ReviewToken:
    """Return the token if it is still usable.

    Raises:
        ReviewTokenError: unknown, expired, or a used single-use token.
    """
    lock = " FOR UPDATE" if for_update else ""
    row = conn.execute(
        f"""
        SELECT {_TOKEN_COLS} FROM review_tokens
        WHERE token = %s
          AND expires_at > %s
          AND (NOT single_use OR used_at IS NULL){lock}
        """,
        (token, _now(now)),
    ).fetchone()
    if row is None:
        raise ReviewTokenError("Invalid or expired token")
    return ReviewToken.from_row(row)


def approve_review(
    conn: psycopg.Connection,
    token: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Approve through a review link.  Returns the updated newsletter."""
    review_token = get_valid_review_token(conn, token, now, for_update=True)
    if review_token.single_use:
        conn.execute(
            "UPDATE review_tokens SET used_at = %s WHERE id = %s",
            (_now(now), review_token.id),
        )
    return update_status(conn, review_token.newsletter_id, "approved")


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

def _insert_comment(
    conn: psycopg.Connection,
    review_token: ReviewToken,
    content: str,
    section_id: str | None,
    comment_type: str,
    attachments: list[str] | None,
) -> ReviewComment:
    if comment_type not in COMMENT_TYPES:
        raise ValueError(f"Unknown comment type {comment_type!r}; expected one of {COMMENT_TYPES}")
    row = conn.execute(
        f"""
        INSERT INTO review_comments
            (newsletter_id, review_token_id, section_id, comment_type, content, attachments)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING {_COMMENT_COLS}
        """,
        (
            review_token.newsletter_id,
            review_token.id,
            section_id or None,
            comment_type,
            content,
            Jsonb(list(attachments or [])),
        ),
    ).fetchone()
    return ReviewComment.from_row(row)


def request_changes(
    conn: psycopg.Connection,
    token: str,
    comment: str | None = None,
    section_id: str | None = None,
    comment_type: str = "general",
    now: datetime | None = None,
) -> ReviewComment:
    """Record the client's change request and move the newsletter to revisions."""
    review_token = get_valid_review_token(conn, token, now)
    content = (comment or "").strip() or DEFAULT_CHANGE_REQUEST
    created = _insert_comment(conn, review_token, content, section_id, comment_type, None)
    update_status(conn, review_token.newsletter_id, "revisions")
    return created


def add_review_comment(
    conn: psycopg.Connection,
    token: str,
    content: str,
    section_id: str | None = None,
    comment_type: str = "general",
    attachments: list[str] | None = None,
    now: datetime | None = None,
) -> ReviewComment:
    """Leave a comment through a review link; moves the newsletter to revisions."""
    if not (content or "").strip():
        raise ValueError("Comment content must not be blank")
    review_token = get_valid_review_token(conn, token, now)
    created = _insert_comment(
        conn, review_token, content.strip(), section_id, comment_type, attachments,
    )
    update_status(conn, review_token.newsletter_id, "revisions")
    return created


def list_review_comments(conn: psycopg.Connection, newsletter_id: str) -> list[ReviewComment]:
    """All review comments for a newsletter, oldest first."""
    rows = conn.execute(
        f"""
        SELECT {_COMMENT_COLS} FROM review_comments
        WHERE newsletter_id = %s
        ORDER BY created_at, id
        """,
        (newsletter_id,),
    ).fetchall()
    return [ReviewComment.from_row(r) for r in rows]


def toggle_review_comment_complete(
    conn: psycopg.Connection,
    comment_id: str,
    user_id: str | None = None,
) -> ReviewComment:
    """Flip a comment between open and completed.

    Completing stamps completed_at and completed_by_id; reopening clears them.
    """
    row = conn.execute(
        f"""
        UPDATE review_comments SET
            is_completed    = NOT is_completed,
            completed_at    = CASE WHEN is_completed THEN NULL ELSE now() END,
            completed_by_id = CASE WHEN is_completed THEN NULL ELSE %s END,
            updated_at      = now()
        WHERE id = %s
        RETURNING {_COMMENT_COLS}
        """,
        (user_id, comment_id),
    ).fetchone()
    if row is None:
        raise ReviewCommentNotFoundError(f"Review comment {comment_id} not found")
    return ReviewComment.from_row(row)
