"""Tests for the audit log."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

pytestmark = pytest.mark.integration

from bondmate.db.models import ActivityLog
from bondmate.services import audit


class TestClassification:
    @pytest.mark.parametrize(
        "action, severity",
        [
            (audit.SECURITY_VIOLATION, "critical"),
            (audit.AUTHENTICATION_FAILED, "critical"),
            (audit.AUTHORIZATION_FAILED, "high"),
            (audit.RATE_LIMIT_EXCEEDED, "high"),
            (audit.NOTIFICATION_FAILED, "high"),
            (audit.RELATIONSHIP_STARTED, "medium"),
            (audit.DATA_RESTORED, "medium"),
            (audit.NOTIFICATION_SENT, "low"),
        ],
    )
    def test_severity_from_action(self, action, severity):
        assert audit.classify_severity(action) == severity


class TestBuildEntry:
    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError):
            audit.build_entry(1, "made_up_action", "nope")

    def test_unknown_severity_rejected(self):
        with pytest.raises(ValueError):
            audit.build_entry(1, audit.RELATIONSHIP_STARTED, "x", severity="urgent")

    def test_fields(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        entry = audit.build_entry(
            1, audit.RELATIONSHIP_ENDED, "d" * 1500, target_user_id=2, metadata={"k": "v"}, now=now
        )
        assert len(entry.details) == audit.MAX_DETAILS_LENGTH
        assert entry.severity == "medium"
        assert entry.timestamp == now
        assert entry.expires_at == now + timedelta(days=365)
        assert entry.meta == {"k": "v"}

    def test_explicit_severity_wins(self):
        entry = audit.build_entry(None, audit.NOTIFICATION_SENT, "x", severity="high")
        assert entry.severity == "high"


class TestLogActivity:
    async def test_joins_caller_transaction(self, db, users):
        alice, _, _ = users
        await audit.log_activity(db, alice.id, audit.RELATIONSHIP_STARTED, "started")
        await db.rollback()

        assert (await db.execute(select(ActivityLog))).scalars().all() == []

    async def test_standalone_write(self, db, users):
        alice, _, _ = users
        entry = await audit.log_activity(None, alice.id, audit.SECURITY_VIOLATION, "token reuse")

        assert entry is not None
        rows = (await db.execute(select(ActivityLog))).scalars().all()
        assert [(r.action, r.severity) for r in rows] == [(audit.SECURITY_VIOLATION, "critical")]

    async def test_standalone_unknown_action_raises(self):
        with pytest.raises(ValueError):
            await audit.log_activity(None, 1, "bogus", "x")


class TestQueries:
    async def _seed(self, db, user_id):
        now = datetime.now(timezone.utc)
        for i, action in enumerate(
            [audit.PARTNER_REQUEST_SENT, audit.RELATIONSHIP_STARTED, audit.AUTHORIZATION_FAILED]
        ):
            db.add(audit.build_entry(user_id, action, action, now=now + timedelta(seconds=i)))
        db.add(audit.build_entry(None, audit.SECURITY_VIOLATION, "system", now=now))
        await db.commit()

    async def test_user_logs_newest_first(self, db, users):
        alice, _, _ = users
        await self._seed(db, alice.id)

        items, total = await audit.get_user_activity_logs(db, alice.id, limit=2)
        assert total == 3
        assert [i.action for i in items] == [audit.AUTHORIZATION_FAILED, audit.RELATIONSHIP_STARTED]

        filtered, total = await audit.get_user_activity_logs(db, alice.id, action=audit.PARTNER_REQUEST_SENT)
        assert total == 1
        assert filtered[0].action == audit.PARTNER_REQUEST_SENT

    async def test_security_events(self, db, users):
        alice, _, _ = users
        await self._seed(db, alice.id)

        events = await audit.get_security_events(db)
        assert {e.severity for e in events} == {"high", "critical"}
        assert len(events) == 2


class TestCleanup:
    async def test_retention_rules(self, db):
        now = datetime(2026, 6, 1, tzinfo=timezone.utc)
        db.add_all(
            [
                audit.build_entry(1, audit.NOTIFICATION_SENT, "old low", now=now - timedelta(days=100)),
                audit.build_entry(1, audit.RELATIONSHIP_STARTED, "old medium", now=now - timedelta(days=100)),
                audit.build_entry(1, audit.AUTHORIZATION_FAILED, "old high", now=now - timedelta(days=100)),
                audit.build_entry(1, audit.SECURITY_VIOLATION, "expired", now=now - timedelta(days=400)),
                audit.build_entry(1, audit.RELATIONSHIP_ENDED, "recent", now=now - timedelta(days=3)),
            ]
        )
        await db.commit()

        assert await audit.cleanup_old_logs(db, now=now) == 3
        remaining = {r.details for r in (await db.execute(select(ActivityLog))).scalars()}
        assert remaining == {"old high", "recent"}

        assert await audit.cleanup_old_logs(db, now=now) == 0
