import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.core.config import settings
from bondmate.db.models import ActivityLog

log = logging.getLogger("audit")

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"
SEVERITIES = (SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL)

# Closed action taxonomy
PARTNER_REQUEST_SENT = "partner_request_sent"
PARTNER_REQUEST_RECEIVED = "partner_request_received"
PARTNER_REQUEST_ACCEPTED = "partner_request_accepted"
PARTNER_REQUEST_REJECTED = "partner_request_rejected"
PARTNER_REQUEST_CANCELLED = "partner_request_cancelled"
PARTNER_REQUESTS_EXPIRED = "partner_requests_expired"
RELATIONSHIP_STARTED = "relationship_started"
RELATIONSHIP_ENDED = "relationship_ended"
BREAKUP_REQUEST_SENT = "breakup_request_sent"
BREAKUP_REQUEST_ACCEPTED = "breakup_request_accepted"
BREAKUP_REQUEST_REJECTED = "breakup_request_rejected"
DATA_RESTORED = "data_restored"
DATA_ARCHIVED = "data_archived"
NOTIFICATION_SENT = "notification_sent"
NOTIFICATION_FAILED = "notification_failed"
SECURITY_VIOLATION = "security_violation"
RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
AUTHENTICATION_FAILED = "authentication_failed"
AUTHORIZATION_FAILED = "authorization_failed"

_CRITICAL_ACTIONS = {SECURITY_VIOLATION, AUTHENTICATION_FAILED}
_HIGH_ACTIONS = {RATE_LIMIT_EXCEEDED, AUTHORIZATION_FAILED, NOTIFICATION_FAILED}
_MEDIUM_ACTIONS = {
    PARTNER_REQUEST_SENT,
    PARTNER_REQUEST_RECEIVED,
    PARTNER_REQUEST_ACCEPTED,
    PARTNER_REQUEST_REJECTED,
    PARTNER_REQUEST_CANCELLED,
    PARTNER_REQUESTS_EXPIRED,
    RELATIONSHIP_STARTED,
    RELATIONSHIP_ENDED,
    BREAKUP_REQUEST_SENT,
    BREAKUP_REQUEST_ACCEPTED,
    BREAKUP_REQUEST_REJECTED,
    DATA_RESTORED,
    DATA_ARCHIVED,
}
ACTIONS = _CRITICAL_ACTIONS | _HIGH_ACTIONS | _MEDIUM_ACTIONS | {NOTIFICATION_SENT}

MAX_DETAILS_LENGTH = 1000


def classify_severity(action: str) -> str:
    if action in _CRITICAL_ACTIONS:
        return SEVERITY_CRITICAL
    if action in _HIGH_ACTIONS:
        return SEVERITY_HIGH
    if action in _MEDIUM_ACTIONS:
        return SEVERITY_MEDIUM
    return SEVERITY_LOW


def build_entry(
    user_id: int | None,
    action: str,
    details: str,
    severity: str | None = None,
    target_user_id: int | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> ActivityLog:
    if action not in ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    if severity is not None and severity not in SEVERITIES:
        raise ValueError(f"Unknown audit severity: {severity}")

    timestamp = now or datetime.now(timezone.utc)
    return ActivityLog(
        user_id=user_id,
        target_user_id=target_user_id,
        action=action,
        details=(details or "")[:MAX_DETAILS_LENGTH],
        meta=metadata or {},
        severity=severity or classify_severity(action),
        timestamp=timestamp,
        expires_at=timestamp + timedelta(days=settings.AUDIT_RETENTION_DAYS),
    )


async def log_activity(
    db: AsyncSession | None,
    user_id: int | None,
    action: str,
    details: str,
    severity: str | None = None,
    target_user_id: int | None = None,
    metadata: dict | None = None,
) -> ActivityLog | None:
    """Record an audit entry.

    With a session the entry joins the caller's transaction and is committed
    (or discarded) with it. Without one it is written in a short-lived
    session of its own; failures there are logged and never reach the
    caller, because auditing must not break the operation being audited.
    """
    entry = build_entry(user_id, action, details, severity, target_user_id, metadata)

    if db is not None:
        db.add(entry)
        log.info("Activity logged: user=%s action=%s severity=%s", user_id, action, entry.severity)
        return entry

    from bondmate.db.session import SessionLocal

    try:
        async with SessionLocal() as session:
            session.add(entry)
            await session.commit()
    except Exception as e:
        log.error("Failed to log activity %s for user %s: %s", action, user_id, e, exc_info=True)
        return None

    log.info("Activity logged: user=%s action=%s severity=%s", user_id, action, entry.severity)
    return entry


async def get_user_activity_logs(
    db: AsyncSession,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    action: str | None = None,
) -> tuple[list[ActivityLog], int]:
    conditions = [ActivityLog.user_id == user_id]
    if action:
        conditions.append(ActivityLog.action == action)

    total = await db.scalar(select(func.count(ActivityLog.id)).where(*conditions)) or 0
    result = await db.execute(
        select(ActivityLog)
        .where(*conditions)
        .order_by(ActivityLog.timestamp.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_security_events(db: AsyncSession, limit: int = 100) -> list[ActivityLog]:
    result = await db.execute(
        select(ActivityLog)
        .where(ActivityLog.severity.in_((SEVERITY_HIGH, SEVERITY_CRITICAL)))
        .order_by(ActivityLog.timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def cleanup_old_logs(
    db: AsyncSession,
    now: datetime | None = None,
    low_severity_days: int | None = None,
) -> int:
    """Delete expired entries plus low/medium entries past the shorter window.

    High and critical entries live until their own ``expires_at``. The
    predicates are purely age based, so running twice deletes nothing new.
    """
    now = now or datetime.now(timezone.utc)
    days = low_severity_days if low_severity_days is not None else settings.AUDIT_LOW_SEVERITY_RETENTION_DAYS
    cutoff = now - timedelta(days=days)

    result = await db.execute(
        delete(ActivityLog).where(
            or_(
                ActivityLog.expires_at < now,
                and_(
                    ActivityLog.timestamp < cutoff,
                    ActivityLog.severity.in_((SEVERITY_LOW, SEVERITY_MEDIUM)),
                ),
            )
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    deleted = result.rowcount or 0
    log.info("Cleaned up old activity logs: deleted=%s cutoff=%s", deleted, cutoff.isoformat())
    return deleted
