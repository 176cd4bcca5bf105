import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bondmate.api.breakup import router as breakup_router
from bondmate.api.health import router as health_router
from bondmate.api.notify_ws import router as notify_ws_router
from bondmate.api.partner import router as partner_router
from bondmate.api.push import router as push_router
from bondmate.core.config import settings
from bondmate.core.errors import InfrastructureError, PartnerError
from bondmate.scheduler import start_scheduler, stop_scheduler
from bondmate.services.notifications import get_dispatcher
from bondmate.utils.messaging.realtime import hub
from bondmate.utils.redis_pool import close_redis

log = logging.getLogger("bondmate")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_scheduler()
    yield
    stop_scheduler()
    await hub.drain()
    await get_dispatcher().shutdown()
    await close_redis()


app = FastAPI(title="BondMate", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PartnerError)
async def partner_error_handler(request: Request, exc: PartnerError):
    if isinstance(exc, InfrastructureError):
        log.error("Infrastructure failure on %s %s: %s", request.method, request.url.path, exc.__cause__ or exc)
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": "Internal server error"})
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.message, "details": exc.details or None},
    )


app.include_router(partner_router)
app.include_router(breakup_router)
app.include_router(push_router)
app.include_router(notify_ws_router)
app.include_router(health_router)
