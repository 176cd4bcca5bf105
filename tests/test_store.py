"""Tests for transaction handling and the per-user cache helpers."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, text

pytestmark = pytest.mark.integration

from bondmate.core.errors import ConflictError, InfrastructureError, NotFoundError, ValidationError
from bondmate.db.models import PartnerRequest, User
from bondmate.schemas.partner import PartnerEntry
from bondmate.services.store import (
    active_partner,
    add_active_partner,
    as_utc,
    lock_users,
    move_partner_to_ex,
    pair_key,
    remove_pending_requests,
    update_ex_partners,
    with_transaction,
)

STARTED = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _user(user_id, name):
    return User(id=user_id, name=name, email=f"{name.lower()}@example.com", partners=[], ex_partners=[], pending_requests=[])


def _entry(partner_id):
    return PartnerEntry(
        partnership_id="abc",
        partner_id=partner_id,
        partner_name="Bob",
        partner_email="bob@example.com",
        started_at=STARTED,
    )


class TestWithTransaction:
    async def test_commits_on_success(self, db, users):
        alice, bob, _ = users
        alice_id, bob_id = alice.id, bob.id

        async def _insert(db):
            db.add(PartnerRequest(from_user_id=alice_id, to_user_id=bob_id, pair_key=pair_key(alice_id, bob_id)))
            return "done"

        assert await with_transaction(db, _insert) == "done"
        assert await db.scalar(select(func.count()).select_from(PartnerRequest)) == 1

    async def test_unique_violation_becomes_conflict(self, db, users):
        """Two pending requests for one pair trip the partial unique index."""
        alice, bob, _ = users
        alice_id, bob_id = alice.id, bob.id

        async def _duplicate(db):
            for _ in range(2):
                db.add(PartnerRequest(from_user_id=alice_id, to_user_id=bob_id, pair_key=pair_key(alice_id, bob_id)))
            await db.flush()

        with pytest.raises(ConflictError):
            await with_transaction(db, _duplicate)
        assert await db.scalar(select(func.count()).select_from(PartnerRequest)) == 0

    async def test_database_failure_becomes_infrastructure_error(self, db):
        async def _broken(db):
            await db.execute(text("SELECT * FROM no_such_table"))

        with pytest.raises(InfrastructureError) as exc:
            await with_transaction(db, _broken)
        assert exc.value.status_code == 500

    async def test_domain_errors_roll_back(self, db, users):
        alice, bob, _ = users
        alice_id, bob_id = alice.id, bob.id

        async def _fail(db):
            db.add(PartnerRequest(from_user_id=alice_id, to_user_id=bob_id, pair_key=pair_key(alice_id, bob_id)))
            await db.flush()
            raise ValidationError("nope")

        with pytest.raises(ValidationError):
            await with_transaction(db, _fail)
        assert await db.scalar(select(func.count()).select_from(PartnerRequest)) == 0

    async def test_user_email_required(self, db, users):
        async def _insert(db):
            db.add(User(name="Dora"))
            await db.flush()

        with pytest.raises(ConflictError):
            await with_transaction(db, _insert)
        assert User.__table__.c.email.nullable is False
        assert await db.scalar(select(func.count()).select_from(User)) == 3

    async def test_lock_users_reports_missing(self, db, users):
        alice, _, _ = users
        with pytest.raises(NotFoundError) as exc:
            await lock_users(db, alice.id, 404)
        assert exc.value.details["user_ids"] == [404]


class TestHelpers:
    def test_pair_key_is_order_independent(self):
        assert pair_key(7, 3) == pair_key(3, 7) == "3:7"

    def test_as_utc(self):
        naive = datetime(2026, 1, 1, 12, 0)
        assert as_utc(naive).tzinfo is timezone.utc
        assert as_utc(None) is None

    def test_move_partner_to_ex(self):
        alice = _user(1, "Alice")
        add_active_partner(alice, _entry(2))
        assert active_partner(alice).partner_id == 2

        ended = datetime(2026, 2, 1, tzinfo=timezone.utc)
        moved = move_partner_to_ex(alice, 2, ended, 2, "Mutual breakup")

        assert moved.breakup_date == ended
        assert alice.partners == []
        assert active_partner(alice) is None
        assert alice.ex_partners[0]["partner_id"] == 2
        assert alice.ex_partners[0]["ended_reason"] == "Mutual breakup"

    def test_move_without_active_entry(self):
        alice = _user(1, "Alice")
        assert move_partner_to_ex(alice, 2, STARTED, 1, "x") is None
        assert alice.ex_partners == []

    def test_update_ex_partners_reassigns_list(self):
        alice = _user(1, "Alice")
        add_active_partner(alice, _entry(2))
        move_partner_to_ex(alice, 2, STARTED, 1, "x")
        before = alice.ex_partners

        assert update_ex_partners(alice, lambda e: e.partner_id == 2, data_archived=True) == 1
        assert alice.ex_partners is not before
        assert alice.ex_partners[0]["data_archived"] is True
        # already archived, nothing changes
        assert update_ex_partners(alice, lambda e: True, data_archived=True) == 0

    def test_remove_pending_requests(self):
        bob = _user(2, "Bob")
        bob.pending_requests = [{"request_id": "r1"}, {"request_id": "r2"}]
        assert remove_pending_requests(bob, "r1") == 1
        assert bob.pending_requests == [{"request_id": "r2"}]
        assert remove_pending_requests(bob, {"r9"}) == 0
