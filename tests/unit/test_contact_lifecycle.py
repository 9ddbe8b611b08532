"""Unit tests for the pure contact lifecycle guard."""

from __future__ import annotations

import pytest

from newsletter_flow.contact_lifecycle import (
    DELETE_REQUIRES_ARCHIVE_MESSAGE,
    BulkActionResult,
    Contact,
    ContactNotFoundError,
    ContactState,
    LifecycleAction,
    LifecycleGuardError,
    next_lifecycle_state,
)
from newsletter_flow.shared import GuardError, NotFoundError


class TestNextLifecycleState:
    def test_archive_active(self):
        assert next_lifecycle_state(ContactState.ACTIVE, "archive") is ContactState.ARCHIVED

    def test_archive_archived_is_noop(self):
        assert next_lifecycle_state(ContactState.ARCHIVED, "archive") is ContactState.ARCHIVED

    def test_restore_archived(self):
        assert next_lifecycle_state(ContactState.ARCHIVED, "restore") is ContactState.ACTIVE

    def test_restore_active_is_noop(self):
        assert next_lifecycle_state(ContactState.ACTIVE, LifecycleAction.RESTORE) is ContactState.ACTIVE

    def test_delete_archived(self):
        assert next_lifecycle_state(ContactState.ARCHIVED, "delete") is ContactState.DELETED

    def test_delete_active_rejected(self):
        with pytest.raises(LifecycleGuardError, match="archived before it can be permanently deleted"):
            next_lifecycle_state(ContactState.ACTIVE, "delete")

    def test_guard_message_is_exact(self):
        with pytest.raises(LifecycleGuardError) as excinfo:
            next_lifecycle_state(ContactState.ACTIVE, "delete")
        assert str(excinfo.value) == DELETE_REQUIRES_ARCHIVE_MESSAGE

    @pytest.mark.parametrize("action", ["archive", "restore", "delete"])
    def test_deleted_is_terminal(self, action):
        with pytest.raises(ContactNotFoundError):
            next_lifecycle_state(ContactState.DELETED, action)

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            next_lifecycle_state(ContactState.ACTIVE, "purge")


class TestErrorHierarchy:
    def test_guard_is_conflict(self):
        assert issubclass(LifecycleGuardError, GuardError)
        assert LifecycleGuardError.http_status == 409

    def test_not_found(self):
        assert issubclass(ContactNotFoundError, NotFoundError)
        assert ContactNotFoundError.http_status == 404


class TestContactState:
    def _contact(self, archived_at):
        return Contact.from_row(
            ("c1", "cl1", "a@x.com", None, None, ["all"], True, archived_at)
        )

    def test_active_when_not_archived(self):
        assert self._contact(None).state is ContactState.ACTIVE

    def test_archived_when_timestamp_set(self):
        assert self._contact("2026-01-01T00:00:00Z").state is ContactState.ARCHIVED


class TestBulkActionResult:
    def test_to_dict(self):
        assert BulkActionResult(applied=3, skipped=1).to_dict() == {
            "contactCount": 3,
            "skippedCount": 1,
        }
