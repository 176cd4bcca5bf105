from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.db.models import User
from bondmate.db.session import get_db
from bondmate.schemas.activity import ActivityLogList, ActivityLogOut
from bondmate.schemas.partner import (
    CurrentPartnerResponse,
    PartnerHistoryItem,
    PartnerHistoryList,
    PartnerOut,
    PartnerRequestCreate,
    PartnerRequestOut,
    PartnerStatistics,
    PendingRequestList,
)
from bondmate.services import audit, partner_requests
from bondmate.utils.deps import get_current_user
from bondmate.utils.idempotency import idempotent

router = APIRouter(prefix="/partners", tags=["partners"])


@router.post("/requests")
@idempotent(key_prefix="partner_request")
async def send_request(
    request: Request,
    body: PartnerRequestCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    partner_request = await partner_requests.send_partner_request(db, user.id, body.to_user_id, body.message)
    return {
        "ok": True,
        "request": PartnerRequestOut.model_validate(partner_request).model_dump(mode="json"),
    }


@router.get("/requests/pending", response_model=PendingRequestList)
async def list_pending_requests(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    items = await partner_requests.get_pending_requests(db, user.id)
    return PendingRequestList(count=len(items), items=items)


@router.post("/requests/{request_id}/accept")
async def accept_request(
    request_id: str = Path(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    partner = await partner_requests.accept_partner_request(db, request_id, user.id)
    return {"ok": True, "partner": PartnerOut.model_validate(partner).model_dump(mode="json")}


@router.post("/requests/{request_id}/reject")
async def reject_request(
    request_id: str = Path(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    partner_request = await partner_requests.reject_partner_request(db, request_id, user.id)
    return {"ok": True, "request": PartnerRequestOut.model_validate(partner_request).model_dump(mode="json")}


@router.post("/requests/{request_id}/cancel")
async def cancel_request(
    request_id: str = Path(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    partner_request = await partner_requests.cancel_partner_request(db, request_id, user.id)
    return {"ok": True, "request": PartnerRequestOut.model_validate(partner_request).model_dump(mode="json")}


@router.get("/current", response_model=CurrentPartnerResponse)
async def current_partner(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return CurrentPartnerResponse(partner=await partner_requests.get_current_partner(db, user.id))


@router.get("/history", response_model=PartnerHistoryList)
async def partner_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    items, total = await partner_requests.get_partner_history(db, user.id, limit=limit, offset=offset)
    return PartnerHistoryList(count=total, items=[PartnerHistoryItem.model_validate(i) for i in items])


@router.get("/statistics", response_model=PartnerStatistics)
async def partner_statistics(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return PartnerStatistics(**await partner_requests.get_partner_statistics(db, user.id))


@router.get("/activity", response_model=ActivityLogList)
async def activity_log(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    action: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    items, total = await audit.get_user_activity_logs(db, user.id, limit=limit, offset=offset, action=action)
    return ActivityLogList(total=total, items=[ActivityLogOut.model_validate(i) for i in items])
