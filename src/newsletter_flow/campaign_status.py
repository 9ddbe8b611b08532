"""newsletter_flow.campaign_status

Newsletter workflow status machine and the actions that move a campaign
through it.

Statuses (workflow order, not strictly linear):
    draft -> in_review -> client_review -> revisions -> approved -> scheduled -> sent

Generic updates go through next_status(), a pure function consulted before
any write.  Only two targets are forbidden there:

    sent       -- reached only when deliver_newsletter() completes
    scheduled  -- reached only through schedule_newsletter()

Every other status is accepted from any status, so revision loops such as
approved -> in_review stay legal.

send_test_email() never writes the newsletter row, whether the test send
succeeds or fails upstream.

Caller manages the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg

from newsletter_flow.delivery import (
    DeliveryClient,
    DeliveryError,
    ReadinessCheck,
    basic_send_readiness,
)
from newsletter_flow.shared import GuardError
from newsletter_flow.versions import get_newsletter

log = logging.getLogger(__name__)

NEWSLETTER_STATUSES = (
    "draft",
    "in_review",
    "client_review",
    "revisions",
    "approved",
    "scheduled",
    "sent",
)
SYSTEM_ONLY_STATUSES = frozenset({"scheduled", "sent"})

SENT_IS_AUTOMATIC_MESSAGE = (
    'Newsletter status becomes "sent" automatically when delivery completes; '
    "it cannot be set directly."
)
USE_SCHEDULE_ACTION_MESSAGE = (
    "Use the schedule action to schedule a newsletter; "
    'the status cannot be set to "scheduled" directly.'
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StatusGuardError(GuardError):
    """Raised when a requested status change is not allowed."""

    http_status = 400


class InvalidStatusError(StatusGuardError):
    """Raised for a status value outside NEWSLETTER_STATUSES."""

    http_status = 422


# ---------------------------------------------------------------------------
# Pure transition function
# ---------------------------------------------------------------------------

def next_status(current: str, requested: str) -> str:
    """Return the status a generic update from current to requested yields.

    Raises:
        InvalidStatusError: either value is not a known status.
        StatusGuardError: requested is a system-only status.
    """
    if current not in NEWSLETTER_STATUSES:
        raise InvalidStatusError(f"Invalid status: {current!r}")
    if requested not in NEWSLETTER_STATUSES:
        raise InvalidStatusError(f"Invalid status: {requested!r}")
    if requested in SYSTEM_ONLY_STATUSES:
        if requested == "sent":
            raise StatusGuardError(SENT_IS_AUTOMATIC_MESSAGE)
        raise StatusGuardError(USE_SCHEDULE_ACTION_MESSAGE)
    return requested


def _write_status(conn: psycopg.Connection, newsletter_id: str, status: str, **extra: Any) -> None:
    sets = ["status = %s", "updated_at = now()"]
    params: list[Any] = [status]
    for col, value in extra.items():
        sets.append(f"{col} = %s")
        params.append(value)
    conn.execute(
        f"UPDATE newsletters SET {', '.join(sets)} WHERE id = %s",
        (*params, newsletter_id),
    )


# ---------------------------------------------------------------------------
# Generic update
# ---------------------------------------------------------------------------

def update_status(conn: psycopg.Connection, newsletter_id: str, requested: str) -> dict[str, Any]:
    """Generic status update.  Returns the updated newsletter."""
    newsletter = get_newsletter(conn, newsletter_id, for_update=True)
    status = next_status(newsletter["status"], requested)
    if status != newsletter["status"]:
        _write_status(conn, newsletter_id, status)
        log.info("newsletter %s: %s -> %s", newsletter_id, newsletter["status"], status)
    return get_newsletter(conn, newsletter_id)


# ---------------------------------------------------------------------------
# System-only transitions
# ---------------------------------------------------------------------------

def _raise_blockers(newsletter: dict[str, Any], readiness: ReadinessCheck) -> None:
    blockers = readiness(newsletter)
    if blockers:
        raise StatusGuardError("Send blockers: " + " ".join(blockers))


def schedule_newsletter(
    conn: psycopg.Connection,
    newsletter_id: str,
    send_at: datetime,
    readiness: ReadinessCheck = basic_send_readiness,
) -> dict[str, Any]:
    """Move a newsletter to scheduled with scheduled_for = send_at.

    Raises:
        StatusGuardError: already sent, or readiness reports blockers.
    """
    newsletter = get_newsletter(conn, newsletter_id, for_update=True)
    if newsletter["status"] == "sent":
        raise StatusGuardError("Newsletter has already been sent.")
    _raise_blockers(newsletter, readiness)
    _write_status(conn, newsletter_id, "scheduled", scheduled_for=send_at)
    log.info("newsletter %s scheduled for %s", newsletter_id, send_at.isoformat())
    return get_newsletter(conn, newsletter_id)


def unschedule_newsletter(conn: psycopg.Connection, newsletter_id: str) -> dict[str, Any]:
    """scheduled -> approved; clears scheduled_for."""
    newsletter = get_newsletter(conn, newsletter_id, for_update=True)
    if newsletter["status"] != "scheduled":
        raise StatusGuardError("Only a scheduled newsletter can be unscheduled.")
    _write_status(conn, newsletter_id, "approved", scheduled_for=None)
    log.info("newsletter %s unscheduled", newsletter_id)
    return get_newsletter(conn, newsletter_id)


def _active_recipients(conn: psycopg.Connection, client_id: str) -> list[str]:
    rows = conn.execute(
        """
        SELECT email FROM contacts
        WHERE client_id = %s AND archived_at IS NULL AND is_active
        ORDER BY email
        """,
        (client_id,),
    ).fetchall()
    return [r[0] for r in rows]


def _subject(newsletter: dict[str, Any]) -> str:
    document = newsletter.get("document_json") or {}
    return (document.get("subject") or newsletter.get("title") or "").strip()


def deliver_newsletter(
    conn: psycopg.Connection,
    newsletter_id: str,
    client: DeliveryClient,
    recipients: list[str] | None = None,
    readiness: ReadinessCheck = basic_send_readiness,
) -> int:
    """Send the newsletter, then mark it sent.

    recipients defaults to the client's active, non-archived contacts.
    Returns the number of messages the provider accepted.

    Raises:
        StatusGuardError: readiness blockers or no recipients.
        DeliveryError: the provider failed or accepted no recipients; status
            is left untouched.
    """
    newsletter = get_newsletter(conn, newsletter_id, for_update=True)
    _raise_blockers(newsletter, readiness)
    if recipients is None:
        recipients = _active_recipients(conn, newsletter["client_id"])
    if not recipients:
        raise StatusGuardError("Newsletter has no active recipients.")

    document = newsletter.get("document_json") or {}
    accepted = client.send_batch(recipients, _subject(newsletter), document.get("html") or "")
    if accepted == 0:
        raise DeliveryError(
            f"Provider accepted none of {len(recipients)} recipients; newsletter not marked sent."
        )
    _write_status(conn, newsletter_id, "sent", sent_at=datetime.now().astimezone())
    log.info(
        "newsletter %s sent: %d/%d accepted", newsletter_id, accepted, len(recipients)
    )
    return accepted


# ---------------------------------------------------------------------------
# Test send (read-only)
# ---------------------------------------------------------------------------

@dataclass
class TestSendResult:
    __test__ = False

    success: bool
    message_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "messageId": self.message_id, "error": self.error}


def send_test_email(
    conn: psycopg.Connection,
    newsletter_id: str,
    to: str,
    client: DeliveryClient,
    readiness: ReadinessCheck = basic_send_readiness,
) -> TestSendResult:
    """Send one test copy to `to`.  Never writes the newsletter row."""
    newsletter = get_newsletter(conn, newsletter_id)
    blockers = [b for b in readiness(newsletter) if b != "Newsletter has already been sent."]
    if blockers:
        return TestSendResult(False, error="Send blockers: " + " ".join(blockers))
    document = newsletter.get("document_json") or {}
    try:
        message_id = client.send(to, f"[TEST] {_subject(newsletter)}", document.get("html") or "")
    except DeliveryError as exc:
        log.warning("test send for newsletter %s failed: %s", newsletter_id, exc)
        return TestSendResult(False, error=str(exc))
    return TestSendResult(True, message_id=message_id)
