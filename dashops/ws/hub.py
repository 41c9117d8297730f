import asyncio
from typing import Any

from fastapi import WebSocket

from dashops.core.logging import get_logger

ALL_OPERATIONS = "*"


class OperationHub:
    """
    Fan-out of operation transitions to subscribed sockets.

    Sockets subscribe to one operation key (``"software:7/install"``) or to
    ``ALL_OPERATIONS``. Channel bookkeeping is synchronous and runs on the
    event loop only, so membership never changes mid-update.
    """

    def __init__(self) -> None:
        self._channels: dict[str, set[WebSocket]] = {}
        self._logger = get_logger("dashops.ws")

    def subscribers(self, operation_key: str) -> set[WebSocket]:
        return self._channels.get(operation_key, set()) | self._channels.get(ALL_OPERATIONS, set())

    async def connect(self, websocket: WebSocket, operation_key: str = ALL_OPERATIONS) -> None:
        await websocket.accept()
        self._channels.setdefault(operation_key, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, operation_key: str | None = None) -> None:
        keys = [operation_key] if operation_key is not None else list(self._channels)
        for key in keys:
            members = self._channels.get(key)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self._channels[key]

    async def broadcast(self, operation_key: str, payload: dict[str, Any]) -> int:
        targets = list(self.subscribers(operation_key))
        if not targets:
            return 0
        results = await asyncio.gather(*(socket.send_json(payload) for socket in targets), return_exceptions=True)
        delivered = 0
        for socket, result in zip(targets, results):
            if isinstance(result, Exception):
                self._logger.info(
                    "ws_subscriber_dropped",
                    extra={"operation": operation_key, "error": str(result), "event": "ws.dropped"},
                )
                self.disconnect(socket)
            else:
                delivered += 1
        return delivered
