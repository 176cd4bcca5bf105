"""
Partner Request State Machine
=============================
pending -> accepted | rejected | cancelled. An accepted request becomes
``superseded`` when the partnership it created ends (see ``breakup``).

Each mutation re-reads and locks the involved rows, re-checks its
preconditions and writes normalized rows, caches, history and audit entries
in one transaction. Notifications and real-time events go out only after
the commit and never affect the result.
"""

import logging
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.core.config import settings
from bondmate.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from bondmate.db.models import Partner, PartnerHistory, PartnerRequest, User
from bondmate.db.models.partner import REQUEST_ACCEPTED, REQUEST_CANCELLED, REQUEST_PENDING, REQUEST_REJECTED
from bondmate.schemas.partner import PartnerEntry, PendingRequestEntry
from bondmate.services import audit, notifications
from bondmate.services.assignment import ensure_assignable
from bondmate.services.restoration import check_restoration, link_restored_partnership
from bondmate.services.store import (
    HISTORY_RELATIONSHIP_STARTED,
    HISTORY_REQUEST_CANCELLED,
    HISTORY_REQUEST_RECEIVED,
    HISTORY_REQUEST_REJECTED,
    HISTORY_REQUEST_SENT,
    active_partner,
    add_active_partner,
    add_history,
    add_pending_request,
    as_utc,
    get_user,
    lock_users,
    pair_key,
    partner_entry_for,
    pending_entry_for,
    remove_pending_requests,
    utcnow,
    with_transaction,
)
from bondmate.utils.messaging.realtime import emit_to_user

log = logging.getLogger(__name__)


def _validate_user_id(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"Invalid {field}")
    return value


def _validate_request_id(request_id) -> str:
    if not isinstance(request_id, str) or not request_id.strip():
        raise ValidationError("Invalid request id")
    return request_id.strip()


async def _load_request(db: AsyncSession, request_id: str) -> PartnerRequest:
    request = await db.get(PartnerRequest, request_id, with_for_update=True, populate_existing=True)
    if request is None:
        raise NotFoundError("Partner request not found", {"request_id": request_id})
    return request


async def record_denied(db: AsyncSession, acting_user_id: int, operation: str, resource_id: str, err: AuthorizationError):
    """Audit an actor touching a request they are not a party to."""
    try:
        await audit.log_activity(
            db,
            acting_user_id,
            audit.AUTHORIZATION_FAILED,
            f"Not allowed to {operation}: {err.message}",
            metadata={"operation": operation, "resource_id": resource_id},
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Could not audit denied %s by user %s: %s", operation, acting_user_id, e)


async def send_partner_request(
    db: AsyncSession,
    from_user_id: int,
    to_user_id: int,
    message: str | None = None,
) -> PartnerRequest:
    from_user_id = _validate_user_id(from_user_id, "sender id")
    to_user_id = _validate_user_id(to_user_id, "recipient id")
    if from_user_id == to_user_id:
        raise ValidationError("You cannot send a partner request to yourself")

    message = (message or "").strip() or None
    if message and len(message) > settings.MAX_REQUEST_MESSAGE_LENGTH:
        raise ValidationError(f"Message cannot exceed {settings.MAX_REQUEST_MESSAGE_LENGTH} characters")

    async def _send(db: AsyncSession):
        users = await lock_users(db, from_user_id, to_user_id)
        sender, recipient = users[from_user_id], users[to_user_id]
        if not recipient.is_active:
            raise NotFoundError("User not found", {"user_id": to_user_id})

        ensure_assignable(sender, recipient)

        key = pair_key(from_user_id, to_user_id)
        existing = await db.scalar(
            select(PartnerRequest.id).where(
                PartnerRequest.pair_key == key,
                PartnerRequest.status == REQUEST_PENDING,
            )
        )
        if existing:
            raise ConflictError("A pending partner request already exists between these users", {"request_id": existing})

        now = utcnow()
        request = PartnerRequest(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            pair_key=key,
            status=REQUEST_PENDING,
            message=message,
            created_at=now,
            updated_at=now,
        )
        db.add(request)
        await db.flush()

        add_pending_request(recipient, pending_entry_for(request.id, sender, now))
        add_history(db, sender.id, recipient.id, HISTORY_REQUEST_SENT, f"Partner request sent to {recipient.name}")
        add_history(db, recipient.id, sender.id, HISTORY_REQUEST_RECEIVED, f"Partner request received from {sender.name}")
        await audit.log_activity(
            db,
            sender.id,
            audit.PARTNER_REQUEST_SENT,
            f"Partner request sent to {recipient.name}",
            target_user_id=recipient.id,
            metadata={"request_id": request.id, "has_message": message is not None},
        )
        return request, sender

    request, sender = await with_transaction(db, _send, operation="send_partner_request")
    log.info("Partner request %s sent: %s -> %s", request.id, from_user_id, to_user_id)

    notifications.get_dispatcher().dispatch(to_user_id, notifications.partner_request_payload(request, sender))
    emit_to_user(
        to_user_id,
        "partner_request_received",
        {
            "request_id": request.id,
            "from_user_id": sender.id,
            "from_user_name": sender.name,
            "from_user_avatar": sender.avatar,
            "message": request.message,
        },
    )
    return request


async def accept_partner_request(db: AsyncSession, request_id: str, acting_user_id: int) -> Partner:
    request_id = _validate_request_id(request_id)

    async def _accept(db: AsyncSession):
        request = await _load_request(db, request_id)
        if request.to_user_id != acting_user_id:
            raise AuthorizationError("Only the recipient can accept this request")
        if request.status != REQUEST_PENDING:
            raise ConflictError(f"Request is already {request.status}", {"status": request.status})

        users = await lock_users(db, request.from_user_id, request.to_user_id)
        sender, recipient = users[request.from_user_id], users[request.to_user_id]
        ensure_assignable(sender, recipient)

        now = utcnow()
        restoration = await check_restoration(db, sender, recipient, now=now)
        started_at = restoration.restored_from_date if restoration.restore else now

        partner = Partner(
            user1_id=sender.id,
            user2_id=recipient.id,
            pair_key=request.pair_key,
            request_id=request.id,
            started_at=started_at,
            restored=restoration.restore,
        )
        db.add(partner)
        await db.flush()
        await link_restored_partnership(db, restoration, partner)

        add_active_partner(sender, partner_entry_for(sender, recipient, partner.id, started_at))
        add_active_partner(recipient, partner_entry_for(recipient, sender, partner.id, started_at))
        for user in (sender, recipient):
            remove_pending_requests(user, request.id)

        verb = "Restored relationship" if restoration.restore else "Started a relationship"
        add_history(db, sender.id, recipient.id, HISTORY_RELATIONSHIP_STARTED, f"{verb} with {recipient.name}")
        add_history(db, recipient.id, sender.id, HISTORY_RELATIONSHIP_STARTED, f"{verb} with {sender.name}")

        request.status = REQUEST_ACCEPTED
        request.responded_at = now

        await audit.log_activity(
            db,
            recipient.id,
            audit.PARTNER_REQUEST_ACCEPTED,
            f"Accepted partner request from {sender.name}",
            target_user_id=sender.id,
            metadata={"request_id": request.id},
        )
        await audit.log_activity(
            db,
            recipient.id,
            audit.RELATIONSHIP_STARTED,
            f"{verb} with {sender.name}",
            target_user_id=sender.id,
            metadata={
                "partnership_id": partner.id,
                "restored": restoration.restore,
                "started_at": as_utc(started_at).isoformat(),
                "restoration_reason": restoration.reason,
            },
        )
        return partner, sender, recipient

    try:
        partner, sender, recipient = await with_transaction(db, _accept, operation="accept_partner_request")
    except AuthorizationError as e:
        await record_denied(db, acting_user_id, "accept partner request", request_id, e)
        raise

    log.info(
        "Partner request %s accepted: partnership %s (restored=%s)",
        request_id, partner.id, partner.restored,
    )

    notifications.get_dispatcher().dispatch(sender.id, notifications.partner_accepted_payload(partner, recipient))
    emit_to_user(
        sender.id,
        "partner_request_accepted",
        {"request_id": request_id, "partnership_id": partner.id, "accepted_by": recipient.id},
    )
    for user in (sender, recipient):
        entry = active_partner(user)
        emit_to_user(
            user.id,
            "partner_added",
            {"partnership_id": partner.id, "partner": entry.model_dump(mode="json") if entry else None},
        )
    return partner


async def _close_request(
    db: AsyncSession,
    request_id: str,
    acting_user_id: int,
    new_status: str,
) -> tuple[PartnerRequest, User, User]:
    """Shared reject/cancel transition: status change, cache cleanup, history, audit."""
    rejecting = new_status == REQUEST_REJECTED

    async def _close(db: AsyncSession):
        request = await _load_request(db, request_id)
        allowed_actor = request.to_user_id if rejecting else request.from_user_id
        if acting_user_id != allowed_actor:
            if rejecting:
                raise AuthorizationError("Only the recipient can reject this request")
            raise AuthorizationError("Only the sender can cancel this request")
        if request.status != REQUEST_PENDING:
            raise ConflictError(f"Request is already {request.status}", {"status": request.status})

        users = await lock_users(db, request.from_user_id, request.to_user_id)
        sender, recipient = users[request.from_user_id], users[request.to_user_id]
        for user in (sender, recipient):
            remove_pending_requests(user, request.id)

        request.status = new_status
        request.responded_at = utcnow()

        if rejecting:
            add_history(db, recipient.id, sender.id, HISTORY_REQUEST_REJECTED, f"Rejected partner request from {sender.name}")
            add_history(db, sender.id, recipient.id, HISTORY_REQUEST_REJECTED, f"Partner request rejected by {recipient.name}")
            await audit.log_activity(
                db,
                recipient.id,
                audit.PARTNER_REQUEST_REJECTED,
                f"Rejected partner request from {sender.name}",
                target_user_id=sender.id,
                metadata={"request_id": request.id},
            )
        else:
            add_history(db, sender.id, recipient.id, HISTORY_REQUEST_CANCELLED, f"Cancelled partner request to {recipient.name}")
            add_history(db, recipient.id, sender.id, HISTORY_REQUEST_CANCELLED, f"Partner request cancelled by {sender.name}")
            await audit.log_activity(
                db,
                sender.id,
                audit.PARTNER_REQUEST_CANCELLED,
                f"Cancelled partner request to {recipient.name}",
                target_user_id=recipient.id,
                metadata={"request_id": request.id},
            )
        return request, sender, recipient

    operation = "reject partner request" if rejecting else "cancel partner request"
    try:
        return await with_transaction(db, _close, operation=operation.replace(" ", "_"))
    except AuthorizationError as e:
        await record_denied(db, acting_user_id, operation, request_id, e)
        raise


async def reject_partner_request(db: AsyncSession, request_id: str, acting_user_id: int) -> PartnerRequest:
    request_id = _validate_request_id(request_id)
    request, sender, recipient = await _close_request(db, request_id, acting_user_id, REQUEST_REJECTED)
    log.info("Partner request %s rejected by %s", request.id, recipient.id)

    notifications.get_dispatcher().dispatch(sender.id, notifications.partner_rejected_payload(request, recipient))
    emit_to_user(sender.id, "partner_request_rejected", {"request_id": request.id, "rejected_by": recipient.id})
    return request


async def cancel_partner_request(db: AsyncSession, request_id: str, acting_user_id: int) -> PartnerRequest:
    request_id = _validate_request_id(request_id)
    request, sender, recipient = await _close_request(db, request_id, acting_user_id, REQUEST_CANCELLED)
    log.info("Partner request %s cancelled by %s", request.id, sender.id)

    notifications.get_dispatcher().dispatch(recipient.id, notifications.partner_cancelled_payload(request, sender))
    emit_to_user(recipient.id, "partner_request_cancelled", {"request_id": request.id, "cancelled_by": sender.id})
    return request


# ---- reads ----

async def get_pending_requests(db: AsyncSession, user_id: int) -> list[PendingRequestEntry]:
    user = await get_user(db, user_id)
    entries = [
        PendingRequestEntry.model_validate(raw)
        for raw in user.pending_requests or []
        if raw.get("status", REQUEST_PENDING) == REQUEST_PENDING
    ]
    return sorted(entries, key=lambda e: as_utc(e.created_at), reverse=True)


async def get_current_partner(db: AsyncSession, user_id: int) -> PartnerEntry | None:
    user = await get_user(db, user_id)
    return active_partner(user)


async def get_partner_history(
    db: AsyncSession,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[PartnerHistory], int]:
    await get_user(db, user_id)
    total = await db.scalar(select(func.count(PartnerHistory.id)).where(PartnerHistory.user_id == user_id)) or 0
    result = await db.execute(
        select(PartnerHistory)
        .where(PartnerHistory.user_id == user_id)
        .order_by(PartnerHistory.created_at.desc(), PartnerHistory.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_partner_statistics(db: AsyncSession, user_id: int, now: datetime | None = None) -> dict:
    now = now or utcnow()
    user = await get_user(db, user_id)
    current = active_partner(user)

    relationships = await db.scalar(
        select(func.count(Partner.id)).where(or_(Partner.user1_id == user_id, Partner.user2_id == user_id))
    ) or 0
    sent = await db.scalar(select(func.count(PartnerRequest.id)).where(PartnerRequest.from_user_id == user_id)) or 0
    received = await db.scalar(select(func.count(PartnerRequest.id)).where(PartnerRequest.to_user_id == user_id)) or 0
    outgoing_pending = await db.scalar(
        select(func.count(PartnerRequest.id)).where(
            PartnerRequest.from_user_id == user_id,
            PartnerRequest.status == REQUEST_PENDING,
        )
    ) or 0

    return {
        "has_partner": current is not None,
        "current_partner_id": current.partner_id if current else None,
        "days_together": (now - as_utc(current.started_at)).days if current else None,
        "total_relationships": relationships,
        "ex_partner_count": len(user.ex_partners or []),
        "pending_incoming": len(user.pending_requests or []),
        "pending_outgoing": outgoing_pending,
        "requests_sent": sent,
        "requests_received": received,
    }
