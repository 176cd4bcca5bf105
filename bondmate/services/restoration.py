"""
Restoration Engine
==================
Decides whether a new pairing restores a previous relationship between the
same two users. A breakup no older than ``RESTORATION_WINDOW_DAYS`` keeps the
original start date; anything older starts fresh and archives the old
history on both sides.

All writes made here (cache flags, ``Partner`` bookkeeping, audit entries)
are added to the caller's session so they commit or roll back together with
the acceptance that triggered them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.core.config import settings
from bondmate.db.models import Partner, User
from bondmate.db.models.partner import PARTNER_ENDED
from bondmate.schemas.partner import ExPartnerEntry
from bondmate.services import audit
from bondmate.services.store import as_utc, pair_key, update_ex_partners, utcnow

log = logging.getLogger(__name__)


@dataclass
class RestorationResult:
    restore: bool
    reason: str
    restored_from_date: datetime | None = None
    days_since_breakup: int | None = None
    previous_partnership_id: str | None = None


def _open_entries(user: User, partner_id: int) -> list[ExPartnerEntry]:
    return [
        ExPartnerEntry.model_validate(raw)
        for raw in user.ex_partners or []
        if raw.get("partner_id") == partner_id and raw.get("restored_at") is None
    ]


def latest_ex_entry(from_user: User, to_user: User) -> ExPartnerEntry | None:
    """Most recent unrestored ex-partner entry for the pair, looking at both sides."""
    candidates = _open_entries(from_user, to_user.id) + _open_entries(to_user, from_user.id)
    if not candidates:
        return None
    return max(candidates, key=lambda e: as_utc(e.breakup_date or e.ended_at))


def _same_relationship(entry: ExPartnerEntry, target: ExPartnerEntry) -> bool:
    if entry.restored_at is not None:
        return False
    if target.partnership_id and entry.partnership_id:
        return entry.partnership_id == target.partnership_id
    return as_utc(entry.started_at) == as_utc(target.started_at)


async def _previous_partner_row(db: AsyncSession, entry: ExPartnerEntry, key: str) -> Partner | None:
    if entry.partnership_id:
        row = await db.get(Partner, entry.partnership_id)
        if row is not None:
            return row
    result = await db.execute(
        select(Partner)
        .where(
            Partner.pair_key == key,
            Partner.status == PARTNER_ENDED,
            Partner.restored_into_id.is_(None),
        )
        .order_by(Partner.ended_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def check_restoration(
    db: AsyncSession,
    from_user: User,
    to_user: User,
    now: datetime | None = None,
) -> RestorationResult:
    now = now or utcnow()
    entry = latest_ex_entry(from_user, to_user)

    if entry is None:
        return RestorationResult(restore=False, reason="No previous relationship between these users")
    if entry.breakup_date is None:
        return RestorationResult(restore=False, reason="Previous relationship has no breakup date")

    days = (now - as_utc(entry.breakup_date)) // timedelta(days=1)
    key = pair_key(from_user.id, to_user.id)
    previous = await _previous_partner_row(db, entry, key)

    if days <= settings.RESTORATION_WINDOW_DAYS:
        marked = 0
        for user, other_id in ((from_user, to_user.id), (to_user, from_user.id)):
            marked += update_ex_partners(
                user,
                lambda e, other_id=other_id: e.partner_id == other_id and _same_relationship(e, entry),
                restored_at=now,
            )

        await audit.log_activity(
            db,
            from_user.id,
            audit.DATA_RESTORED,
            f"Relationship restored after {days} days apart",
            target_user_id=to_user.id,
            metadata={
                "days_since_breakup": days,
                "restored_from_date": as_utc(entry.started_at).isoformat(),
                "previous_partnership_id": previous.id if previous else entry.partnership_id,
                "entries_marked": marked,
            },
        )
        log.info(
            "Restoring relationship %s after %s days (users %s, %s)",
            key, days, from_user.id, to_user.id,
        )
        return RestorationResult(
            restore=True,
            reason=f"Breakup was {days} days ago, within the restoration window",
            restored_from_date=as_utc(entry.started_at),
            days_since_breakup=days,
            previous_partnership_id=previous.id if previous else None,
        )

    archived = 0
    for user, other_id in ((from_user, to_user.id), (to_user, from_user.id)):
        archived += update_ex_partners(
            user,
            lambda e, other_id=other_id: e.partner_id == other_id and e.restored_at is None,
            data_archived=True,
        )
    if previous is not None and not previous.data_archived:
        previous.data_archived = True

    await audit.log_activity(
        db,
        from_user.id,
        audit.DATA_ARCHIVED,
        f"Previous relationship archived, breakup was {days} days ago",
        target_user_id=to_user.id,
        metadata={"days_since_breakup": days, "entries_archived": archived},
    )
    return RestorationResult(
        restore=False,
        reason=f"Breakup was {days} days ago, outside the restoration window",
        days_since_breakup=days,
    )


async def link_restored_partnership(db: AsyncSession, result: RestorationResult, new_partner: Partner) -> None:
    """Point the ended ``Partner`` row at the partnership that restored it."""
    if not result.restore or not result.previous_partnership_id:
        return
    previous = await db.get(Partner, result.previous_partnership_id)
    if previous is not None:
        previous.restored_into_id = new_partner.id
