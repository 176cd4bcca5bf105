"""Tests for the breakup flow."""

import pytest
from sqlalchemy import select

pytestmark = pytest.mark.integration

from bondmate.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from bondmate.db.models import ActivityLog, BreakupRequest, Notification, Partner, PartnerHistory, PartnerRequest
from bondmate.services import audit
from bondmate.services.breakup import (
    DEFAULT_BREAKUP_REASON,
    accept_breakup,
    get_breakup_status,
    initiate_breakup,
    reject_breakup,
)
from bondmate.services.partner_requests import get_current_partner, send_partner_request


class TestInitiateBreakup:
    async def test_creates_pending_request(self, db, users, pair_up, realtime_events):
        alice, bob, _ = users
        await pair_up(alice, bob)

        breakup = await initiate_breakup(db, alice.id, "  Moving abroad  ")

        assert breakup.status == "pending"
        assert breakup.from_user_id == alice.id
        assert breakup.to_user_id == bob.id
        assert breakup.reason == "Moving abroad"
        assert (bob.id, "breakup_request_received") in [(u, e) for u, e, _ in realtime_events]
        # still partners until the other side agrees
        assert (await get_current_partner(db, alice.id)).partner_id == bob.id

    async def test_default_reason(self, db, users, pair_up):
        alice, bob, _ = users
        await pair_up(alice, bob)
        breakup = await initiate_breakup(db, alice.id)
        assert breakup.reason == DEFAULT_BREAKUP_REASON

    async def test_requires_active_partner(self, db, users):
        _, _, carol = users
        with pytest.raises(NotFoundError):
            await initiate_breakup(db, carol.id)

    async def test_reason_too_long(self, db, users, pair_up):
        alice, bob, _ = users
        await pair_up(alice, bob)
        with pytest.raises(ValidationError):
            await initiate_breakup(db, alice.id, "x" * 501)

    async def test_one_pending_breakup_per_pair(self, db, users, pair_up):
        alice, bob, _ = users
        alice_id, bob_id = alice.id, bob.id
        await pair_up(alice, bob)
        await initiate_breakup(db, alice_id)

        with pytest.raises(ConflictError):
            await initiate_breakup(db, alice_id)
        with pytest.raises(ConflictError):
            await initiate_breakup(db, bob_id)

        rows = (await db.execute(select(BreakupRequest))).scalars().all()
        assert len(rows) == 1


class TestAcceptBreakup:
    async def test_ends_relationship_on_both_sides(self, db, users, pair_up, dispatcher, realtime_events):
        """A and B partnered, A requests breakup, B accepts."""
        alice, bob, _ = users
        partner = await pair_up(alice, bob)
        partner_id = partner.id
        breakup = await initiate_breakup(db, alice.id)

        accepted = await accept_breakup(db, breakup.id, bob.id)
        await dispatcher.drain()

        assert accepted.status == "accepted"
        assert alice.partners == []
        assert bob.partners == []
        assert [e["partner_id"] for e in alice.ex_partners] == [bob.id]
        assert [e["partner_id"] for e in bob.ex_partners] == [alice.id]
        for entry in alice.ex_partners + bob.ex_partners:
            assert entry["ended_by"] == bob.id
            assert entry["ended_reason"] == DEFAULT_BREAKUP_REASON
            assert entry["partnership_id"] == partner_id
            assert entry["breakup_date"] is not None
            assert entry["data_archived"] is False

        row = await db.get(Partner, partner_id)
        await db.refresh(row)
        assert row.status == "ended"
        assert row.ended_by == bob.id
        assert row.ended_at is not None

        request = (await db.execute(select(PartnerRequest))).scalars().one()
        await db.refresh(request)
        assert request.status == "superseded"

        ended = (
            await db.execute(select(PartnerHistory).where(PartnerHistory.action == "relationship_ended"))
        ).scalars().all()
        assert {h.user_id for h in ended} == {alice.id, bob.id}

        notes = (await db.execute(select(Notification).where(Notification.type == "breakup_accepted"))).scalars().all()
        assert {n.user_id for n in notes} == {alice.id, bob.id}
        events = [(u, e) for u, e, _ in realtime_events]
        assert (alice.id, "breakup_request_accepted") in events
        assert (bob.id, "breakup_request_accepted") in events

    async def test_audits_breakup(self, db, users, pair_up, break_up):
        alice, bob, _ = users
        await pair_up(alice, bob)
        await break_up(alice, bob, "Different goals")

        ended = (
            await db.execute(select(ActivityLog).where(ActivityLog.action == audit.RELATIONSHIP_ENDED))
        ).scalars().one()
        assert ended.user_id == bob.id
        assert ended.target_user_id == alice.id
        assert ended.meta["reason"] == "Different goals"
        assert ended.meta["superseded_requests"] == 1

    async def test_only_addressee_may_accept(self, db, users, pair_up):
        alice, bob, carol = users
        alice_id, carol_id = alice.id, carol.id
        await pair_up(alice, bob)
        breakup = await initiate_breakup(db, alice_id)
        breakup_id = breakup.id

        for actor in (alice_id, carol_id):
            with pytest.raises(AuthorizationError):
                await accept_breakup(db, breakup_id, actor)

        await db.refresh(alice)
        assert alice.partners[0]["status"] == "active"
        denied = (
            await db.execute(select(ActivityLog).where(ActivityLog.action == audit.AUTHORIZATION_FAILED))
        ).scalars().all()
        assert len(denied) == 2

    async def test_accept_twice_conflicts(self, db, users, pair_up):
        alice, bob, _ = users
        bob_id = bob.id
        await pair_up(alice, bob)
        breakup = await initiate_breakup(db, alice.id)
        breakup_id = breakup.id
        await accept_breakup(db, breakup_id, bob_id)

        with pytest.raises(ConflictError):
            await accept_breakup(db, breakup_id, bob_id)

    async def test_unknown_breakup(self, db, users):
        alice, _, _ = users
        with pytest.raises(NotFoundError):
            await accept_breakup(db, "missing", alice.id)

    async def test_both_free_to_pair_again(self, db, users, pair_up, break_up):
        alice, bob, carol = users
        await pair_up(alice, bob)
        await break_up(alice, bob)

        request = await send_partner_request(db, carol.id, alice.id)
        assert request.status == "pending"


class TestRejectBreakup:
    async def test_reject_keeps_relationship(self, db, users, pair_up, realtime_events):
        alice, bob, _ = users
        await pair_up(alice, bob)
        breakup = await initiate_breakup(db, alice.id)

        rejected = await reject_breakup(db, breakup.id, bob.id)

        assert rejected.status == "rejected"
        assert (await get_current_partner(db, alice.id)).partner_id == bob.id
        assert (await get_current_partner(db, bob.id)).partner_id == alice.id
        history = {
            (h.user_id, h.action)
            for h in (await db.execute(select(PartnerHistory))).scalars()
        }
        assert (alice.id, "breakup_rejected") in history
        assert (bob.id, "breakup_rejected") in history
        assert (alice.id, "breakup_request_rejected") in [(u, e) for u, e, _ in realtime_events]

    async def test_initiator_cannot_reject(self, db, users, pair_up):
        alice, bob, _ = users
        await pair_up(alice, bob)
        breakup = await initiate_breakup(db, alice.id)
        with pytest.raises(AuthorizationError):
            await reject_breakup(db, breakup.id, alice.id)

    async def test_can_ask_again_after_rejection(self, db, users, pair_up):
        alice, bob, _ = users
        await pair_up(alice, bob)
        first = await initiate_breakup(db, alice.id)
        await reject_breakup(db, first.id, bob.id)

        second = await initiate_breakup(db, bob.id)
        assert second.id != first.id
        assert second.to_user_id == alice.id


class TestBreakupStatus:
    async def test_reports_pending_request(self, db, users, pair_up):
        alice, bob, carol = users
        await pair_up(alice, bob)
        breakup = await initiate_breakup(db, alice.id)

        mine = await get_breakup_status(db, alice.id)
        theirs = await get_breakup_status(db, bob.id)

        assert mine.has_breakup_request is True
        assert mine.request.id == breakup.id
        assert mine.is_from_current_user is True
        assert theirs.is_from_current_user is False
        assert (await get_breakup_status(db, carol.id)).has_breakup_request is False

    async def test_no_request(self, db, users, pair_up):
        alice, bob, _ = users
        await pair_up(alice, bob)
        status = await get_breakup_status(db, alice.id)
        assert status.has_breakup_request is False
        assert status.request is None
