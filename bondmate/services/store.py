"""
Relationship Store
==================
Transaction orchestration and cache projection helpers shared by the
request, breakup and restoration services.

Every multi-row change runs through ``with_transaction``: the callback
performs its re-checks and writes on the session, and the helper commits or
rolls the whole set back. Per-user JSON caches (``partners``,
``ex_partners``, ``pending_requests``) are always rewritten inside the same
transaction as the normalized rows they mirror.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.core.errors import ConflictError, InfrastructureError, NotFoundError, PartnerError
from bondmate.db.models import PartnerHistory, User
from bondmate.schemas.partner import ExPartnerEntry, PartnerEntry, PendingRequestEntry

log = logging.getLogger(__name__)

T = TypeVar("T")

# PartnerHistory actions
HISTORY_REQUEST_SENT = "request_sent"
HISTORY_REQUEST_RECEIVED = "request_received"
HISTORY_REQUEST_ACCEPTED = "request_accepted"
HISTORY_REQUEST_REJECTED = "request_rejected"
HISTORY_REQUEST_CANCELLED = "request_cancelled"
HISTORY_RELATIONSHIP_STARTED = "relationship_started"
HISTORY_RELATIONSHIP_ENDED = "relationship_ended"
HISTORY_BREAKUP_REQUESTED = "breakup_requested"
HISTORY_BREAKUP_REJECTED = "breakup_rejected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def pair_key(user_a: int, user_b: int) -> str:
    low, high = sorted((int(user_a), int(user_b)))
    return f"{low}:{high}"


async def with_transaction(
    db: AsyncSession,
    fn: Callable[[AsyncSession], Awaitable[T]],
    operation: str = "transaction",
) -> T:
    """Run ``fn`` and commit, or roll everything back.

    Domain errors propagate unchanged. Constraint violations (a concurrent
    writer won the race on a unique index) become ``ConflictError`` so the
    client re-reads state instead of blindly resubmitting. Any other
    database failure is logged with context and surfaced as a generic
    ``InfrastructureError``.
    """
    try:
        result = await fn(db)
        await db.commit()
        return result
    except PartnerError:
        await db.rollback()
        raise
    except IntegrityError as e:
        await db.rollback()
        log.warning("[STORE] %s aborted by constraint: %s", operation, e.orig)
        raise ConflictError("Conflicting concurrent update, please retry") from e
    except SQLAlchemyError as e:
        await db.rollback()
        log.exception("[STORE] %s failed: %s", operation, e)
        raise InfrastructureError("Could not complete the operation") from e
    except Exception:
        await db.rollback()
        raise


async def lock_users(db: AsyncSession, *user_ids: int) -> dict[int, User]:
    """Load and row-lock users in id order so concurrent writers queue instead of deadlocking."""
    ids = sorted(set(int(u) for u in user_ids))
    result = await db.execute(
        select(User)
        .where(User.id.in_(ids))
        .order_by(User.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    users = {user.id: user for user in result.scalars().all()}
    missing = [user_id for user_id in ids if user_id not in users]
    if missing:
        raise NotFoundError("User not found", {"user_ids": missing})
    return users


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", {"user_id": user_id})
    return user


def calculate_age(date_of_birth: datetime | None, now: datetime | None = None) -> int | None:
    if date_of_birth is None:
        return None
    now = now or utcnow()
    dob = as_utc(date_of_birth)
    return int((now - dob) / timedelta(days=365.25))


def add_history(db: AsyncSession, user_id: int, partner_id: int, action: str, details: str) -> PartnerHistory:
    entry = PartnerHistory(user_id=user_id, partner_id=partner_id, action=action, details=details)
    db.add(entry)
    return entry


# ---- cache projections ----

def active_partner(user: User) -> PartnerEntry | None:
    for raw in user.partners or []:
        if raw.get("status") == "active":
            return PartnerEntry.model_validate(raw)
    return None


def partner_entry_for(user: User, partner: User, partnership_id: str, started_at: datetime) -> PartnerEntry:
    """Snapshot of ``partner`` as stored in ``user``'s cache."""
    return PartnerEntry(
        partnership_id=partnership_id,
        partner_id=partner.id,
        partner_name=partner.name,
        partner_email=partner.email,
        partner_avatar=partner.avatar,
        partner_age=calculate_age(partner.date_of_birth),
        partner_gender=partner.gender,
        started_at=started_at,
        status="active",
    )


def add_active_partner(user: User, entry: PartnerEntry) -> None:
    user.partners = [*(user.partners or []), entry.model_dump(mode="json")]


def move_partner_to_ex(
    user: User,
    partner_id: int,
    ended_at: datetime,
    ended_by: int,
    ended_reason: str,
) -> ExPartnerEntry | None:
    """Move the active entry for ``partner_id`` into ``ex_partners`` and clear ``partners``."""
    moved = None
    for raw in user.partners or []:
        if raw.get("partner_id") == partner_id and raw.get("status") == "active":
            current = PartnerEntry.model_validate(raw)
            moved = ExPartnerEntry(
                partnership_id=current.partnership_id,
                partner_id=current.partner_id,
                partner_name=current.partner_name,
                partner_email=current.partner_email,
                partner_avatar=current.partner_avatar,
                partner_age=current.partner_age,
                partner_gender=current.partner_gender,
                started_at=current.started_at,
                ended_at=ended_at,
                ended_by=ended_by,
                ended_reason=ended_reason,
                breakup_date=ended_at,
                data_archived=False,
            )
            break
    if moved is None:
        return None
    user.ex_partners = [*(user.ex_partners or []), moved.model_dump(mode="json")]
    user.partners = []
    return moved


def update_ex_partners(user: User, predicate: Callable[[ExPartnerEntry], bool], **changes) -> int:
    """Apply ``changes`` to every ex-partner entry matching ``predicate``; returns how many changed."""
    changed = 0
    updated = []
    for raw in user.ex_partners or []:
        entry = ExPartnerEntry.model_validate(raw)
        if predicate(entry):
            new_entry = entry.model_copy(update=changes)
            if new_entry != entry:
                changed += 1
            updated.append(new_entry.model_dump(mode="json"))
        else:
            updated.append(raw)
    if changed:
        user.ex_partners = updated
    return changed


def pending_entry_for(request_id: str, sender: User, created_at: datetime) -> PendingRequestEntry:
    return PendingRequestEntry(
        request_id=request_id,
        from_user_id=sender.id,
        from_user_name=sender.name,
        from_user_email=sender.email,
        from_user_avatar=sender.avatar,
        from_user_age=calculate_age(sender.date_of_birth),
        from_user_gender=sender.gender,
        status="pending",
        created_at=created_at,
    )


def add_pending_request(user: User, entry: PendingRequestEntry) -> None:
    user.pending_requests = [*(user.pending_requests or []), entry.model_dump(mode="json")]


def remove_pending_requests(user: User, request_ids: set[str] | list[str] | str) -> int:
    if isinstance(request_ids, str):
        request_ids = {request_ids}
    ids = set(request_ids)
    current = user.pending_requests or []
    kept = [raw for raw in current if raw.get("request_id") not in ids]
    removed = len(current) - len(kept)
    if removed:
        user.pending_requests = kept
    return removed
