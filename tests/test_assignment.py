"""Tests for the single-active-partner check."""

from datetime import datetime, timezone

import pytest

from bondmate.core.errors import ConflictError
from bondmate.db.models import User
from bondmate.services.assignment import check_assignment, ensure_assignable


def _user(user_id: int, partner_id: int | None = None, status: str = "active") -> User:
    partners = []
    if partner_id is not None:
        partners.append(
            {
                "partnership_id": "p1",
                "partner_id": partner_id,
                "partner_name": "Someone",
                "partner_email": "someone@example.com",
                "started_at": datetime(2026, 1, 1, tzinfo=timezone.utc).isoformat(),
                "status": status,
            }
        )
    return User(id=user_id, name=f"User {user_id}", email=f"u{user_id}@example.com", partners=partners)


class TestCheckAssignment:
    def test_both_free(self):
        result = check_assignment(_user(1), _user(2))
        assert result.ok
        assert result.reason is None

    def test_sender_partnered(self):
        result = check_assignment(_user(1, partner_id=9), _user(2))
        assert not result.ok
        assert "already has an active partner" in result.reason
        assert result.previous_partner == 9

    def test_recipient_partnered(self):
        result = check_assignment(_user(1), _user(2, partner_id=7))
        assert not result.ok
        assert result.reason == "Recipient already has an active partner"
        assert result.previous_partner == 7

    def test_inactive_entry_does_not_block(self):
        """Only entries with status=active occupy the partner slot."""
        assert check_assignment(_user(1, partner_id=9, status="inactive"), _user(2)).ok


class TestEnsureAssignable:
    def test_raises_conflict(self):
        with pytest.raises(ConflictError) as exc:
            ensure_assignable(_user(1), _user(2, partner_id=3))
        assert exc.value.status_code == 409
        assert exc.value.details["previous_partner"] == 3

    def test_passes_when_free(self):
        ensure_assignable(_user(1), _user(2))
