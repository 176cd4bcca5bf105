"""Tests for the 30-day restoration window."""

from datetime import timedelta

import pytest
from sqlalchemy import select

pytestmark = pytest.mark.integration

from bondmate.db.models import ActivityLog, Partner
from bondmate.schemas.partner import ExPartnerEntry
from bondmate.services import audit
from bondmate.services.partner_requests import accept_partner_request, get_current_partner, send_partner_request
from bondmate.services.restoration import check_restoration, latest_ex_entry
from bondmate.services.store import as_utc, utcnow


async def _age_breakup(db, users, days: int) -> None:
    """Move the pair's breakup ``days`` into the past."""
    shift = timedelta(days=days)
    for user in users:
        aged = []
        for raw in user.ex_partners:
            entry = ExPartnerEntry.model_validate(raw)
            aged.append(
                entry.model_copy(
                    update={"ended_at": entry.ended_at - shift, "breakup_date": entry.breakup_date - shift}
                ).model_dump(mode="json")
            )
        user.ex_partners = aged
    for row in (await db.execute(select(Partner).where(Partner.status == "ended"))).scalars():
        row.ended_at = as_utc(row.ended_at) - shift
    await db.commit()


async def _reunite(db, sender, recipient) -> Partner:
    request = await send_partner_request(db, sender.id, recipient.id)
    return await accept_partner_request(db, request.id, recipient.id)


class TestRestoreWithinWindow:
    async def test_reunion_after_ten_days_keeps_start_date(self, db, users, pair_up, break_up):
        """A and B broke up 10 days ago and pair again: the original start date comes back."""
        alice, bob, _ = users
        original = await pair_up(alice, bob)
        original_id, original_start = original.id, as_utc(original.started_at)
        await break_up(alice, bob)
        await _age_breakup(db, (alice, bob), 10)

        restored = await _reunite(db, bob, alice)

        assert restored.restored is True
        assert as_utc(restored.started_at) == original_start
        for user_id in (alice.id, bob.id):
            entry = await get_current_partner(db, user_id)
            assert as_utc(entry.started_at) == original_start

        for entry in alice.ex_partners + bob.ex_partners:
            assert entry["restored_at"] is not None
            assert entry["data_archived"] is False

        previous = await db.get(Partner, original_id)
        await db.refresh(previous)
        assert previous.restored_into_id == restored.id

        logs = (await db.execute(select(ActivityLog).where(ActivityLog.action == audit.DATA_RESTORED))).scalars().all()
        assert len(logs) == 1
        assert logs[0].meta["days_since_breakup"] == 10

    async def test_thirty_days_is_still_inside(self, db, users, pair_up, break_up):
        alice, bob, _ = users
        original = await pair_up(alice, bob)
        original_start = as_utc(original.started_at)
        await break_up(alice, bob)
        await _age_breakup(db, (alice, bob), 30)

        restored = await _reunite(db, alice, bob)

        assert restored.restored is True
        assert as_utc(restored.started_at) == original_start

    async def test_restored_entry_is_not_reused(self, db, users, pair_up, break_up):
        """Once restored, an ex-partner entry no longer counts as the previous relationship."""
        alice, bob, _ = users
        await pair_up(alice, bob)
        await break_up(alice, bob)
        await _age_breakup(db, (alice, bob), 5)
        await _reunite(db, alice, bob)

        restored_entries = [ExPartnerEntry.model_validate(raw) for raw in alice.ex_partners]
        assert all(e.restored_at is not None for e in restored_entries)
        assert latest_ex_entry(alice, bob) is None


class TestFreshStart:
    async def test_reunion_after_window_starts_fresh(self, db, users, pair_up, break_up):
        alice, bob, _ = users
        original = await pair_up(alice, bob)
        original_id, original_start = original.id, as_utc(original.started_at)
        await break_up(alice, bob)
        await _age_breakup(db, (alice, bob), 31)

        fresh = await _reunite(db, alice, bob)

        assert fresh.restored is False
        assert as_utc(fresh.started_at) > original_start
        for entry in alice.ex_partners + bob.ex_partners:
            assert entry["data_archived"] is True
            assert entry["restored_at"] is None

        previous = await db.get(Partner, original_id)
        await db.refresh(previous)
        assert previous.data_archived is True
        assert previous.restored_into_id is None

        actions = {
            r.action for r in (await db.execute(select(ActivityLog))).scalars()
        }
        assert audit.DATA_ARCHIVED in actions
        assert audit.DATA_RESTORED not in actions

    async def test_strangers_have_nothing_to_restore(self, db, users):
        alice, bob, _ = users
        result = await check_restoration(db, alice, bob)
        assert result.restore is False
        assert result.days_since_breakup is None
        assert "No previous relationship" in result.reason

    async def test_window_measured_from_breakup(self, db, users, pair_up, break_up):
        """The day count uses the breakup date, not the start of the relationship."""
        alice, bob, _ = users
        await pair_up(alice, bob)
        await break_up(alice, bob)

        result = await check_restoration(db, alice, bob, now=utcnow() + timedelta(days=12))
        assert result.restore is True
        assert result.days_since_breakup == 12

        # discard the restoration marks so the same entries are evaluated again
        await db.rollback()
        await db.refresh(alice)
        await db.refresh(bob)
        later = await check_restoration(db, alice, bob, now=utcnow() + timedelta(days=45))
        assert later.restore is False
        assert later.days_since_breakup == 45
