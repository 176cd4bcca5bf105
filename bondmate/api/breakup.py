from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.db.models import User
from bondmate.db.session import get_db
from bondmate.schemas.partner import BreakupCreate, BreakupRequestOut, BreakupStatus
from bondmate.services import breakup
from bondmate.utils.deps import get_current_user

router = APIRouter(prefix="/breakup", tags=["breakup"])


@router.post("")
async def initiate(
    body: BreakupCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    request = await breakup.initiate_breakup(db, user.id, body.reason)
    return {"ok": True, "request": BreakupRequestOut.model_validate(request).model_dump(mode="json")}


@router.get("/status", response_model=BreakupStatus)
async def status(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await breakup.get_breakup_status(db, user.id)


@router.post("/{request_id}/accept")
async def accept(
    request_id: str = Path(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    request = await breakup.accept_breakup(db, request_id, user.id)
    return {"ok": True, "request": BreakupRequestOut.model_validate(request).model_dump(mode="json")}


@router.post("/{request_id}/reject")
async def reject(
    request_id: str = Path(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    request = await breakup.reject_breakup(db, request_id, user.id)
    return {"ok": True, "request": BreakupRequestOut.model_validate(request).model_dump(mode="json")}
