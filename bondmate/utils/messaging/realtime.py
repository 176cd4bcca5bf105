import asyncio
import logging

log = logging.getLogger(__name__)


class RealtimeHub:
    """In-process registry of notification WebSockets, keyed by user id.

    Emission is fire-and-forget: a socket that fails to receive is dropped
    and nothing is reported back to the caller.
    """

    def __init__(self):
        self.sockets: dict[int, set] = {}
        self._tasks: set[asyncio.Task] = set()

    def connect(self, user_id: int, ws) -> None:
        self.sockets.setdefault(user_id, set()).add(ws)

    def disconnect(self, user_id: int, ws) -> None:
        user_sockets = self.sockets.get(user_id)
        if not user_sockets:
            return
        user_sockets.discard(ws)
        if not user_sockets:
            self.sockets.pop(user_id, None)

    async def emit_to_user(self, user_id: int, event: str, payload: dict) -> int:
        delivered = 0
        for ws in list(self.sockets.get(user_id, ())):
            try:
                await ws.send_json({"type": event, "data": payload})
                delivered += 1
            except Exception as e:
                log.debug("Dropping socket for user %s after send failure: %s", user_id, e)
                self.disconnect(user_id, ws)
        return delivered

    def emit(self, user_id: int, event: str, payload: dict) -> None:
        """Schedule ``emit_to_user`` without waiting for it."""
        task = asyncio.create_task(self.emit_to_user(user_id, event, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


hub = RealtimeHub()


def emit_to_user(user_id: int, event: str, payload: dict) -> None:
    hub.emit(user_id, event, payload)
