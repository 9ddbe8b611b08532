"""Integration tests for newsletter status actions."""

from __future__ import annotations

from datetime import datetime, timezone

import psycopg
import pytest

from newsletter_flow.campaign_status import (
    InvalidStatusError,
    StatusGuardError,
    deliver_newsletter,
    schedule_newsletter,
    send_test_email,
    unschedule_newsletter,
    update_status,
)
from newsletter_flow.contact_lifecycle import archive_contact, create_contact, update_contact
from newsletter_flow.delivery import DeliveryError, NullDeliveryClient
from newsletter_flow.shared import NewsletterNotFoundError
from newsletter_flow.versions import commit_document, get_newsletter

SEND_AT = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


class _RejectingClient(NullDeliveryClient):
    """Provider that answers every batch but accepts no recipient."""

    def send_batch(self, recipients, subject, html):
        return 0


def _status(conn, newsletter_id) -> str:
    return get_newsletter(conn, newsletter_id)["status"]


class TestUpdateStatus:
    def test_fresh_draft_rejects_sent_and_scheduled(self, db_conn, newsletter):
        conn, _ = db_conn
        with pytest.raises(StatusGuardError, match="automatically"):
            update_status(conn, newsletter["id"], "sent")
        with pytest.raises(StatusGuardError, match="schedule"):
            update_status(conn, newsletter["id"], "scheduled")
        assert _status(conn, newsletter["id"]) == "draft"

    def test_in_review_then_approved(self, db_conn, newsletter):
        conn, _ = db_conn
        assert update_status(conn, newsletter["id"], "in_review")["status"] == "in_review"
        assert update_status(conn, newsletter["id"], "approved")["status"] == "approved"
        conn.commit()
        assert _status(conn, newsletter["id"]) == "approved"

    def test_invalid_status(self, db_conn, newsletter):
        conn, _ = db_conn
        with pytest.raises(InvalidStatusError):
            update_status(conn, newsletter["id"], "published")

    def test_missing_newsletter(self, db_conn):
        conn, _ = db_conn
        with pytest.raises(NewsletterNotFoundError):
            update_status(conn, "00000000-0000-0000-0000-000000000000", "approved")

    def test_db_check_rejects_unknown_status(self, db_conn, newsletter):
        conn, _ = db_conn
        with pytest.raises(psycopg.errors.CheckViolation):
            conn.execute(
                "UPDATE newsletters SET status = 'published' WHERE id = %s", (newsletter["id"],)
            )


class TestSchedule:
    def test_schedule_and_unschedule(self, db_conn, newsletter):
        conn, _ = db_conn
        nid = newsletter["id"]
        scheduled = schedule_newsletter(conn, nid, SEND_AT)
        assert scheduled["status"] == "scheduled"
        assert scheduled["scheduled_for"] == SEND_AT

        back = unschedule_newsletter(conn, nid)
        assert back["status"] == "approved"
        assert back["scheduled_for"] is None

    def test_blockers_prevent_scheduling(self, db_conn, newsletter):
        conn, _ = db_conn
        nid = newsletter["id"]
        commit_document(conn, nid, {"html": "  "})
        with pytest.raises(StatusGuardError, match="no HTML content"):
            schedule_newsletter(conn, nid, SEND_AT)
        assert _status(conn, nid) == "draft"

    def test_custom_readiness(self, db_conn, newsletter):
        conn, _ = db_conn
        with pytest.raises(StatusGuardError, match="invoice unpaid"):
            schedule_newsletter(conn, newsletter["id"], SEND_AT, readiness=lambda nl: ["invoice unpaid"])

    def test_unschedule_requires_scheduled(self, db_conn, newsletter):
        conn, _ = db_conn
        with pytest.raises(StatusGuardError):
            unschedule_newsletter(conn, newsletter["id"])


class TestDeliver:
    def test_deliver_marks_sent(self, db_conn, client_id, newsletter):
        conn, _ = db_conn
        create_contact(conn, client_id, "a@example.com")
        gone = create_contact(conn, client_id, "b@example.com")
        archive_contact(conn, gone.id)
        paused = create_contact(conn, client_id, "c@example.com")
        update_contact(conn, paused.id, is_active=False)

        client = NullDeliveryClient()
        accepted = deliver_newsletter(conn, newsletter["id"], client)

        assert accepted == 1
        assert client.sent == [("a@example.com", "March update")]
        nl = get_newsletter(conn, newsletter["id"])
        assert nl["status"] == "sent"
        assert nl["sent_at"] is not None

    def test_delivery_failure_leaves_status(self, db_conn, newsletter):
        conn, _ = db_conn
        update_status(conn, newsletter["id"], "approved")
        with pytest.raises(DeliveryError):
            deliver_newsletter(
                conn, newsletter["id"], NullDeliveryClient(fail_with="provider down"),
                recipients=["a@example.com"],
            )
        assert _status(conn, newsletter["id"]) == "approved"

    def test_all_recipients_rejected_leaves_status(self, db_conn, newsletter):
        conn, _ = db_conn
        update_status(conn, newsletter["id"], "approved")
        with pytest.raises(DeliveryError, match="accepted none of 2"):
            deliver_newsletter(
                conn, newsletter["id"], _RejectingClient(),
                recipients=["a@example.com", "b@example.com"],
            )
        nl = get_newsletter(conn, newsletter["id"])
        assert nl["status"] == "approved"
        assert nl["sent_at"] is None

    def test_no_recipients(self, db_conn, newsletter):
        conn, _ = db_conn
        with pytest.raises(StatusGuardError, match="no active recipients"):
            deliver_newsletter(conn, newsletter["id"], NullDeliveryClient())

    def test_sent_cannot_be_scheduled_or_resent(self, db_conn, newsletter):
        conn, _ = db_conn
        nid = newsletter["id"]
        deliver_newsletter(conn, nid, NullDeliveryClient(), recipients=["a@example.com"])
        with pytest.raises(StatusGuardError, match="already been sent"):
            schedule_newsletter(conn, nid, SEND_AT)
        with pytest.raises(StatusGuardError, match="already been sent"):
            deliver_newsletter(conn, nid, NullDeliveryClient(), recipients=["a@example.com"])


class TestSendTest:
    def test_success_leaves_status(self, db_conn, newsletter):
        conn, _ = db_conn
        update_status(conn, newsletter["id"], "approved")
        client = NullDeliveryClient()
        result = send_test_email(conn, newsletter["id"], "qa@example.com", client)
        assert result.success is True
        assert result.message_id == "null-1"
        assert client.sent == [("qa@example.com", "[TEST] March update")]
        assert _status(conn, newsletter["id"]) == "approved"

    def test_failure_captured_and_status_unchanged(self, db_conn, newsletter):
        conn, _ = db_conn
        update_status(conn, newsletter["id"], "approved")
        result = send_test_email(
            conn, newsletter["id"], "qa@example.com",
            NullDeliveryClient(fail_with="Postmark returned HTTP 422"),
        )
        assert result.success is False
        assert "postmark" in result.error.lower()
        assert _status(conn, newsletter["id"]) == "approved"

    def test_blockers_reported_not_raised(self, db_conn, newsletter):
        conn, _ = db_conn
        commit_document(conn, newsletter["id"], {"html": ""})
        result = send_test_email(conn, newsletter["id"], "qa@example.com", NullDeliveryClient())
        assert result.success is False
        assert "blocker" in result.error.lower()
        assert _status(conn, newsletter["id"]) == "draft"
