"""newsletter_flow.contact_lifecycle

Contact lifecycle state machine and the guarded contact operations built on it.

States:
    active    -- archived_at IS NULL; shown in the "all" listing
    archived  -- archived_at set; hidden from "all", still deduplicates imports
    deleted   -- terminal; the row no longer exists

Transitions:
    active   --archive--> archived
    archived --restore--> active
    archived --delete-->  deleted
    active   --delete-->  (rejected: archive first)

Every DB transition is one conditional statement (compare-and-set on
archived_at), so two concurrent deletes cannot both observe "archived" and
both succeed.  Tags, names and is_active are orthogonal to lifecycle state
and may be edited in any non-deleted state.

Caller manages the transaction.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg

from newsletter_flow.normalize import is_likely_email, normalize_email, split_tags, trim
from newsletter_flow.shared import GuardError, NotFoundError

log = logging.getLogger(__name__)

_CONTACT_COLS = (
    "id, client_id, email, first_name, last_name, tags, is_active, archived_at"
)

VALID_VIEWS = frozenset({"all", "archived"})
VALID_BULK_ACTIONS = frozenset({"activate", "deactivate", "archive", "restore", "delete"})

DELETE_REQUIRES_ARCHIVE_MESSAGE = (
    "Contact must be archived before it can be permanently deleted. "
    "Archive the contact first."
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LifecycleGuardError(GuardError):
    """Raised when a lifecycle action is not legal from the current state."""


class ContactNotFoundError(NotFoundError):
    """Raised when a contact id does not exist (never created or deleted)."""


# ---------------------------------------------------------------------------
# States + pure transition function
# ---------------------------------------------------------------------------

class ContactState(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class LifecycleAction(str, enum.Enum):
    ARCHIVE = "archive"
    RESTORE = "restore"
    DELETE = "delete"


def next_lifecycle_state(current: ContactState, action: LifecycleAction | str) -> ContactState:
    """Return the state reached by applying action to current.

    Archiving an archived contact and restoring an active one are no-ops.

    Raises:
        ContactNotFoundError: current is DELETED.
        LifecycleGuardError: delete requested on an active contact.
        ValueError: unknown action.
    """
    action = LifecycleAction(action)
    if current is ContactState.DELETED:
        raise ContactNotFoundError("Contact not found")
    if action is LifecycleAction.ARCHIVE:
        return ContactState.ARCHIVED
    if action is LifecycleAction.RESTORE:
        return ContactState.ACTIVE
    if current is not ContactState.ARCHIVED:
        raise LifecycleGuardError(DELETE_REQUIRES_ARCHIVE_MESSAGE)
    return ContactState.DELETED


# ---------------------------------------------------------------------------
# Contact record
# ---------------------------------------------------------------------------

@dataclass
class Contact:
    id: str
    client_id: str
    email: str
    first_name: str | None
    last_name: str | None
    tags: list[str]
    is_active: bool
    archived_at: datetime | None

    @property
    def state(self) -> ContactState:
        return ContactState.ARCHIVED if self.archived_at is not None else ContactState.ACTIVE

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> "Contact":
        return cls(
            id=str(row[0]),
            client_id=str(row[1]),
            email=row[2],
            first_name=row[3],
            last_name=row[4],
            tags=list(row[5] or []),
            is_active=bool(row[6]),
            archived_at=row[7],
        )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_contact(conn: psycopg.Connection, contact_id: str) -> Contact:
    row = conn.execute(
        f"SELECT {_CONTACT_COLS} FROM contacts WHERE id = %s",
        (contact_id,),
    ).fetchone()
    if row is None:
        raise ContactNotFoundError(f"Contact {contact_id} not found")
    return Contact.from_row(row)


def contact_state(conn: psycopg.Connection, contact_id: str) -> ContactState:
    """Current lifecycle state; DELETED when the row does not exist."""
    row = conn.execute(
        "SELECT archived_at FROM contacts WHERE id = %s",
        (contact_id,),
    ).fetchone()
    if row is None:
        return ContactState.DELETED
    return ContactState.ARCHIVED if row[0] is not None else ContactState.ACTIVE


def list_contacts(
    conn: psycopg.Connection,
    client_id: str,
    view: str = "all",
) -> list[Contact]:
    """List a client's contacts.

    view='all' is the default listing and excludes archived contacts;
    view='archived' lists only archived ones.
    """
    if view not in VALID_VIEWS:
        raise ValueError(f"unknown contact view {view!r}; expected one of {sorted(VALID_VIEWS)}")
    archived_clause = "archived_at IS NULL" if view == "all" else "archived_at IS NOT NULL"
    rows = conn.execute(
        f"""
        SELECT {_CONTACT_COLS} FROM contacts
        WHERE client_id = %s AND {archived_clause}
        ORDER BY email ASC
        """,
        (client_id,),
    ).fetchall()
    return [Contact.from_row(r) for r in rows]


def fetch_existing_emails(conn: psycopg.Connection, client_id: str) -> set[str]:
    """Every stored email for the client, archived contacts included."""
    rows = conn.execute(
        "SELECT email FROM contacts WHERE client_id = %s",
        (client_id,),
    ).fetchall()
    return {r[0] for r in rows}


# ---------------------------------------------------------------------------
# Create / update (orthogonal to lifecycle state)
# ---------------------------------------------------------------------------

def create_contact(
    conn: psycopg.Connection,
    client_id: str,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    tags: list[str] | None = None,
    is_active: bool = True,
) -> Contact:
    """Manual add.  Tags default to ['all'] when none are given."""
    email_norm = normalize_email(email)
    if not email_norm:
        raise ValueError("email is required")
    if not is_likely_email(email_norm):
        raise ValueError(f"invalid email address: {email_norm!r}")
    tag_list = split_tags(",".join(tags or [])) or ["all"]
    row = conn.execute(
        f"""
        INSERT INTO contacts (client_id, email, first_name, last_name, tags, is_active)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING {_CONTACT_COLS}
        """,
        (client_id, email_norm, trim(first_name), trim(last_name), tag_list, is_active),
    ).fetchone()
    return Contact.from_row(row)


def update_contact(
    conn: psycopg.Connection,
    contact_id: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    tags: list[str] | None = None,
    is_active: bool | None = None,
) -> Contact:
    """Edit names, tags or is_active.  Legal in any non-deleted state.

    Only arguments that are not None are written.
    """
    sets: list[str] = []
    params: list[Any] = []
    if first_name is not None:
        sets.append("first_name = %s")
        params.append(trim(first_name))
    if last_name is not None:
        sets.append("last_name = %s")
        params.append(trim(last_name))
    if tags is not None:
        sets.append("tags = %s")
        params.append(split_tags(",".join(tags)))
    if is_active is not None:
        sets.append("is_active = %s")
        params.append(is_active)
    if not sets:
        return get_contact(conn, contact_id)
    sets.append("updated_at = now()")
    row = conn.execute(
        f"UPDATE contacts SET {', '.join(sets)} WHERE id = %s RETURNING {_CONTACT_COLS}",
        (*params, contact_id),
    ).fetchone()
    if row is None:
        raise ContactNotFoundError(f"Contact {contact_id} not found")
    return Contact.from_row(row)


# ---------------------------------------------------------------------------
# Guarded lifecycle transitions
# ---------------------------------------------------------------------------

def archive_contact(conn: psycopg.Connection, contact_id: str) -> Contact:
    """active -> archived.  Archiving an archived contact is a no-op."""
    row = conn.execute(
        f"""
        UPDATE contacts
        SET archived_at = now(), updated_at = now()
        WHERE id = %s AND archived_at IS NULL
        RETURNING {_CONTACT_COLS}
        """,
        (contact_id,),
    ).fetchone()
    if row is not None:
        log.info("contact %s archived", contact_id)
        return Contact.from_row(row)
    next_lifecycle_state(contact_state(conn, contact_id), LifecycleAction.ARCHIVE)
    return get_contact(conn, contact_id)


def restore_contact(conn: psycopg.Connection, contact_id: str) -> Contact:
    """archived -> active.  Restoring an active contact is a no-op."""
    row = conn.execute(
        f"""
        UPDATE contacts
        SET archived_at = NULL, updated_at = now()
        WHERE id = %s AND archived_at IS NOT NULL
        RETURNING {_CONTACT_COLS}
        """,
        (contact_id,),
    ).fetchone()
    if row is not None:
        log.info("contact %s restored", contact_id)
        return Contact.from_row(row)
    next_lifecycle_state(contact_state(conn, contact_id), LifecycleAction.RESTORE)
    return get_contact(conn, contact_id)


def delete_contact(conn: psycopg.Connection, contact_id: str) -> None:
    """archived -> deleted (row removed).

    Raises:
        LifecycleGuardError: the contact is still active.
        ContactNotFoundError: the contact does not exist (or was already
            deleted by a concurrent caller).
    """
    row = conn.execute(
        "DELETE FROM contacts WHERE id = %s AND archived_at IS NOT NULL RETURNING id",
        (contact_id,),
    ).fetchone()
    if row is not None:
        log.info("contact %s permanently deleted", contact_id)
        return
    # Zero rows: either missing or still active.  The pure guard raises the
    # matching error for whichever state we observe now.
    next_lifecycle_state(contact_state(conn, contact_id), LifecycleAction.DELETE)
    raise ContactNotFoundError(f"Contact {contact_id} not found")


# ---------------------------------------------------------------------------
# Bulk actions
# ---------------------------------------------------------------------------

@dataclass
class BulkActionResult:
    applied: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"contactCount": self.applied, "skippedCount": self.skipped}


def bulk_contact_action(
    conn: psycopg.Connection,
    client_id: str,
    action: str,
    contact_ids: list[str],
) -> BulkActionResult:
    """Apply one action to many contacts of a client.

    Each id goes through the single-contact guarded path inside its own
    SAVEPOINT.  Ids belonging to another client, missing ids and guard
    violations (delete of an active contact) are skipped, never coerced.
    """
    if action not in VALID_BULK_ACTIONS:
        raise ValueError(f"unknown bulk action {action!r}; expected one of {sorted(VALID_BULK_ACTIONS)}")

    result = BulkActionResult()
    for idx, contact_id in enumerate(contact_ids):
        sp = f"bulk_{action}_{idx}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            owner = conn.execute(
                "SELECT client_id FROM contacts WHERE id = %s",
                (contact_id,),
            ).fetchone()
            if owner is None or str(owner[0]) != str(client_id):
                raise ContactNotFoundError(f"Contact {contact_id} not found")
            if action == "activate":
                update_contact(conn, contact_id, is_active=True)
            elif action == "deactivate":
                update_contact(conn, contact_id, is_active=False)
            elif action == "archive":
                archive_contact(conn, contact_id)
            elif action == "restore":
                restore_contact(conn, contact_id)
            else:
                delete_contact(conn, contact_id)
            conn.execute(f"RELEASE SAVEPOINT {sp}")
            result.applied += 1
        except (GuardError, NotFoundError) as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            log.warning("bulk %s skipped contact %s: %s", action, contact_id, exc)
            result.skipped += 1
    return result
