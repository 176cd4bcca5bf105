import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.core.config import settings
from bondmate.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from bondmate.db.models import BreakupRequest, Partner, PartnerRequest
from bondmate.db.models.partner import (
    BREAKUP_ACCEPTED,
    BREAKUP_PENDING,
    BREAKUP_REJECTED,
    PARTNER_ACTIVE,
    PARTNER_ENDED,
    REQUEST_ACCEPTED,
    REQUEST_SUPERSEDED,
)
from bondmate.schemas.partner import BreakupRequestOut, BreakupStatus
from bondmate.services import audit, notifications
from bondmate.services.partner_requests import record_denied
from bondmate.services.store import (
    HISTORY_BREAKUP_REJECTED,
    HISTORY_BREAKUP_REQUESTED,
    HISTORY_RELATIONSHIP_ENDED,
    active_partner,
    add_history,
    get_user,
    lock_users,
    move_partner_to_ex,
    pair_key,
    utcnow,
    with_transaction,
)
from bondmate.utils.messaging.realtime import emit_to_user

log = logging.getLogger(__name__)

DEFAULT_BREAKUP_REASON = "Wants to end the relationship"
MUTUAL_BREAKUP_REASON = "Mutual breakup"


async def _load_breakup(db: AsyncSession, request_id: str) -> BreakupRequest:
    if not isinstance(request_id, str) or not request_id.strip():
        raise ValidationError("Invalid breakup request id")
    breakup = await db.get(BreakupRequest, request_id.strip(), with_for_update=True, populate_existing=True)
    if breakup is None:
        raise NotFoundError("Breakup request not found", {"request_id": request_id})
    return breakup


async def initiate_breakup(db: AsyncSession, acting_user_id: int, reason: str | None = None) -> BreakupRequest:
    reason = (reason or "").strip() or DEFAULT_BREAKUP_REASON
    if len(reason) > settings.MAX_BREAKUP_REASON_LENGTH:
        raise ValidationError(f"Reason cannot exceed {settings.MAX_BREAKUP_REASON_LENGTH} characters")

    # Find the partner first so both rows can be locked in id order
    current = active_partner(await get_user(db, acting_user_id))
    if current is None:
        raise NotFoundError("You don't have an active partner")
    partner_id = current.partner_id

    async def _initiate(db: AsyncSession):
        users = await lock_users(db, acting_user_id, partner_id)
        user, partner = users[acting_user_id], users[partner_id]
        entry = active_partner(user)
        if entry is None or entry.partner_id != partner_id:
            raise NotFoundError("You don't have an active partner")

        key = pair_key(acting_user_id, partner_id)
        existing = await db.scalar(
            select(BreakupRequest.id).where(
                BreakupRequest.pair_key == key,
                BreakupRequest.status == BREAKUP_PENDING,
            )
        )
        if existing:
            raise ConflictError("A breakup request is already pending", {"request_id": existing})

        breakup = BreakupRequest(
            from_user_id=acting_user_id,
            to_user_id=partner_id,
            pair_key=key,
            status=BREAKUP_PENDING,
            reason=reason,
        )
        db.add(breakup)
        await db.flush()

        add_history(db, user.id, partner.id, HISTORY_BREAKUP_REQUESTED, f"Requested breakup with {partner.name}")
        await audit.log_activity(
            db,
            user.id,
            audit.BREAKUP_REQUEST_SENT,
            f"Breakup requested with {partner.name}",
            target_user_id=partner.id,
            metadata={"breakup_request_id": breakup.id, "reason": reason},
        )
        return breakup, user

    breakup, user = await with_transaction(db, _initiate, operation="initiate_breakup")
    log.info("Breakup %s requested: %s -> %s", breakup.id, acting_user_id, partner_id)

    notifications.get_dispatcher().dispatch(partner_id, notifications.breakup_request_payload(breakup, user))
    emit_to_user(
        partner_id,
        "breakup_request_received",
        {
            "breakup_request_id": breakup.id,
            "from_user_id": user.id,
            "from_user_name": user.name,
            "reason": breakup.reason,
        },
    )
    return breakup


async def accept_breakup(db: AsyncSession, request_id: str, acting_user_id: int) -> BreakupRequest:
    async def _accept(db: AsyncSession):
        breakup = await _load_breakup(db, request_id)
        if breakup.to_user_id != acting_user_id:
            raise AuthorizationError("Only the recipient can accept this breakup request")
        if breakup.status != BREAKUP_PENDING:
            raise ConflictError(f"Breakup request is already {breakup.status}", {"status": breakup.status})

        users = await lock_users(db, breakup.from_user_id, breakup.to_user_id)
        initiator, accepter = users[breakup.from_user_id], users[breakup.to_user_id]
        entry = active_partner(accepter)
        if entry is None or entry.partner_id != initiator.id:
            raise ConflictError("These users are no longer partners")

        now = utcnow()
        ended_reason = breakup.reason or MUTUAL_BREAKUP_REASON
        move_partner_to_ex(initiator, accepter.id, now, acting_user_id, ended_reason)
        move_partner_to_ex(accepter, initiator.id, now, acting_user_id, ended_reason)

        result = await db.execute(
            select(Partner)
            .where(Partner.pair_key == breakup.pair_key, Partner.status == PARTNER_ACTIVE)
            .with_for_update()
        )
        for partnership in result.scalars().all():
            partnership.status = PARTNER_ENDED
            partnership.ended_at = now
            partnership.ended_by = acting_user_id
            partnership.ended_reason = ended_reason

        superseded = await db.execute(
            update(PartnerRequest)
            .where(PartnerRequest.pair_key == breakup.pair_key, PartnerRequest.status == REQUEST_ACCEPTED)
            .values(status=REQUEST_SUPERSEDED, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )

        breakup.status = BREAKUP_ACCEPTED

        add_history(db, initiator.id, accepter.id, HISTORY_RELATIONSHIP_ENDED, f"Relationship with {accepter.name} ended")
        add_history(db, accepter.id, initiator.id, HISTORY_RELATIONSHIP_ENDED, f"Relationship with {initiator.name} ended")

        await audit.log_activity(
            db,
            accepter.id,
            audit.BREAKUP_REQUEST_ACCEPTED,
            f"Accepted breakup request from {initiator.name}",
            target_user_id=initiator.id,
            metadata={"breakup_request_id": breakup.id},
        )
        await audit.log_activity(
            db,
            accepter.id,
            audit.RELATIONSHIP_ENDED,
            f"Relationship with {initiator.name} ended",
            target_user_id=initiator.id,
            metadata={
                "breakup_request_id": breakup.id,
                "reason": ended_reason,
                "superseded_requests": superseded.rowcount or 0,
            },
        )
        return breakup, initiator, accepter

    try:
        breakup, initiator, accepter = await with_transaction(db, _accept, operation="accept_breakup")
    except AuthorizationError as e:
        await record_denied(db, acting_user_id, "accept breakup request", str(request_id), e)
        raise

    log.info("Breakup %s accepted: relationship %s ended", breakup.id, breakup.pair_key)

    dispatcher = notifications.get_dispatcher()
    dispatcher.dispatch(initiator.id, notifications.breakup_accepted_payload(breakup, accepter))
    dispatcher.dispatch(accepter.id, notifications.breakup_accepted_payload(breakup, initiator))
    for user in (initiator, accepter):
        emit_to_user(
            user.id,
            "breakup_request_accepted",
            {"breakup_request_id": breakup.id, "ended_by": acting_user_id},
        )
    return breakup


async def reject_breakup(db: AsyncSession, request_id: str, acting_user_id: int) -> BreakupRequest:
    async def _reject(db: AsyncSession):
        breakup = await _load_breakup(db, request_id)
        if breakup.to_user_id != acting_user_id:
            raise AuthorizationError("Only the recipient can reject this breakup request")
        if breakup.status != BREAKUP_PENDING:
            raise ConflictError(f"Breakup request is already {breakup.status}", {"status": breakup.status})

        users = await lock_users(db, breakup.from_user_id, breakup.to_user_id)
        initiator, rejecter = users[breakup.from_user_id], users[breakup.to_user_id]

        breakup.status = BREAKUP_REJECTED
        add_history(db, rejecter.id, initiator.id, HISTORY_BREAKUP_REJECTED, f"Rejected breakup request from {initiator.name}")
        add_history(db, initiator.id, rejecter.id, HISTORY_BREAKUP_REJECTED, f"Breakup request rejected by {rejecter.name}")
        await audit.log_activity(
            db,
            rejecter.id,
            audit.BREAKUP_REQUEST_REJECTED,
            f"Rejected breakup request from {initiator.name}",
            target_user_id=initiator.id,
            metadata={"breakup_request_id": breakup.id},
        )
        return breakup, initiator, rejecter

    try:
        breakup, initiator, rejecter = await with_transaction(db, _reject, operation="reject_breakup")
    except AuthorizationError as e:
        await record_denied(db, acting_user_id, "reject breakup request", str(request_id), e)
        raise

    log.info("Breakup %s rejected by %s", breakup.id, rejecter.id)

    dispatcher = notifications.get_dispatcher()
    for user in (initiator, rejecter):
        dispatcher.dispatch(user.id, notifications.breakup_rejected_payload(breakup, rejecter, user))
        emit_to_user(
            user.id,
            "breakup_request_rejected",
            {"breakup_request_id": breakup.id, "rejected_by": rejecter.id},
        )
    return breakup


async def get_breakup_status(db: AsyncSession, user_id: int) -> BreakupStatus:
    user = await get_user(db, user_id)
    current = active_partner(user)
    if current is None:
        return BreakupStatus(has_breakup_request=False)

    result = await db.execute(
        select(BreakupRequest).where(
            BreakupRequest.pair_key == pair_key(user_id, current.partner_id),
            BreakupRequest.status == BREAKUP_PENDING,
        )
    )
    breakup = result.scalars().first()
    if breakup is None:
        return BreakupStatus(has_breakup_request=False)

    return BreakupStatus(
        has_breakup_request=True,
        request=BreakupRequestOut.model_validate(breakup),
        is_from_current_user=breakup.from_user_id == user_id,
    )
