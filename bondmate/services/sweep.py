"""
Background sweep jobs.

Each job takes a session and an optional ``now`` and selects its work with
age-based predicates only, so a second run over the same data finds nothing
left to do.
"""

import logging
import resource
from datetime import datetime, timedelta

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.core.config import settings
from bondmate.db.models import Partner, PartnerRequest
from bondmate.db.models.partner import PARTNER_ENDED, REQUEST_PENDING
from bondmate.schemas.partner import ExPartnerEntry
from bondmate.services import audit
from bondmate.services.store import as_utc, lock_users, remove_pending_requests, update_ex_partners, utcnow, with_transaction

log = logging.getLogger(__name__)


async def expire_stale_requests(db: AsyncSession, now: datetime | None = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.REQUEST_EXPIRY_DAYS)

    async def _expire(db: AsyncSession) -> int:
        result = await db.execute(
            select(PartnerRequest)
            .where(PartnerRequest.status == REQUEST_PENDING, PartnerRequest.created_at < cutoff)
            .with_for_update(skip_locked=True)
        )
        stale = list(result.scalars().all())
        if not stale:
            return 0

        user_ids = {r.from_user_id for r in stale} | {r.to_user_id for r in stale}
        users = await lock_users(db, *user_ids)
        for request in stale:
            remove_pending_requests(users[request.from_user_id], request.id)
            remove_pending_requests(users[request.to_user_id], request.id)
            await db.delete(request)

        await audit.log_activity(
            db,
            None,
            audit.PARTNER_REQUESTS_EXPIRED,
            f"Expired {len(stale)} stale partner requests",
            metadata={"count": len(stale), "cutoff": cutoff.isoformat()},
        )
        return len(stale)

    expired = await with_transaction(db, _expire, operation="expire_stale_requests")
    if expired:
        log.info("[SWEEP] Expired %s pending requests older than %s days", expired, settings.REQUEST_EXPIRY_DAYS)
    return expired


def _belongs_to(partnership: Partner, cutoff: datetime):
    def predicate(entry: ExPartnerEntry) -> bool:
        if entry.data_archived or entry.restored_at is not None:
            return False
        if entry.partnership_id:
            return entry.partnership_id == partnership.id
        breakup_date = entry.breakup_date or entry.ended_at
        return breakup_date is not None and as_utc(breakup_date) <= cutoff

    return predicate


async def archive_ex_partners(db: AsyncSession, now: datetime | None = None) -> int:
    """Flag ex-partner history whose restoration window has fully elapsed."""
    now = now or utcnow()
    # restoration allows up to RESTORATION_WINDOW_DAYS whole days
    cutoff = now - timedelta(days=settings.RESTORATION_WINDOW_DAYS + 1)

    async def _archive(db: AsyncSession) -> int:
        result = await db.execute(
            select(Partner)
            .where(
                Partner.status == PARTNER_ENDED,
                Partner.data_archived.is_(False),
                Partner.restored_into_id.is_(None),
                Partner.ended_at <= cutoff,
            )
            .with_for_update(skip_locked=True)
        )
        partnerships = list(result.scalars().all())
        if not partnerships:
            return 0

        user_ids = {p.user1_id for p in partnerships} | {p.user2_id for p in partnerships}
        users = await lock_users(db, *user_ids)
        entries = 0
        for partnership in partnerships:
            for user_id in (partnership.user1_id, partnership.user2_id):
                other_id = partnership.other_user_id(user_id)
                belongs = _belongs_to(partnership, cutoff)
                entries += update_ex_partners(
                    users[user_id],
                    lambda e, other_id=other_id, belongs=belongs: e.partner_id == other_id and belongs(e),
                    data_archived=True,
                )
            partnership.data_archived = True

        await audit.log_activity(
            db,
            None,
            audit.DATA_ARCHIVED,
            f"Archived {len(partnerships)} ex-partner relationships",
            metadata={"partnerships": len(partnerships), "entries": entries, "cutoff": cutoff.isoformat()},
        )
        return len(partnerships)

    archived = await with_transaction(db, _archive, operation="archive_ex_partners")
    if archived:
        log.info("[SWEEP] Archived %s ex-partner relationships", archived)
    return archived


async def purge_audit_logs(db: AsyncSession, now: datetime | None = None) -> int:
    return await audit.cleanup_old_logs(db, now=now)


async def health_heartbeat(db: AsyncSession, now: datetime | None = None) -> dict:
    now = now or utcnow()
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        log.error("[SWEEP] Database unreachable: %s", e)
        database = "unreachable"

    usage = resource.getrusage(resource.RUSAGE_SELF)
    status = {
        "timestamp": now.isoformat(),
        "database": database,
        "max_rss_kb": usage.ru_maxrss,
        "cpu_user_seconds": round(usage.ru_utime, 2),
        "cpu_system_seconds": round(usage.ru_stime, 2),
    }
    log.info(
        "[SWEEP] Heartbeat: database=%s max_rss=%sKB cpu=%.2fs",
        database, usage.ru_maxrss, usage.ru_utime + usage.ru_stime,
    )
    return status
