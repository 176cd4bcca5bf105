from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.db.models import User
from bondmate.db.session import get_db
from bondmate.schemas.push import SubscriptionRequest, SubscriptionResponse
from bondmate.services.notifications import register_push_subscription
from bondmate.utils.deps import get_current_user

router = APIRouter(tags=["push"])


@router.post("/push/subscribe", response_model=SubscriptionResponse)
async def push_subscribe(
    body: SubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    await register_push_subscription(db, user.id, body.model_dump())
    return SubscriptionResponse(ok=True)
