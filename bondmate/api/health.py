from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.db.session import get_db
from bondmate.services.sweep import health_heartbeat

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    status = await health_heartbeat(db)
    return {"ok": status["database"] == "ok", **status}
