from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from bondmate.core.config import settings
from bondmate.utils.deps import decode_user_id
from bondmate.utils.messaging.realtime import hub

router = APIRouter()


@router.websocket("/ws/notifications")
async def websocket_notifications(ws: WebSocket):
    await ws.accept()
    token = ws.query_params.get("token") or ws.cookies.get(settings.ACCESS_TOKEN_COOKIE_NAME)
    if not token:
        await ws.close(code=4001)
        return

    user_id = decode_user_id(token)
    if user_id is None:
        await ws.close(code=4002)
        return

    hub.connect(user_id, ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(user_id, ws)
