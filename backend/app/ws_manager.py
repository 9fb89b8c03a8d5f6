from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

from fastapi import WebSocket
from pydantic import BaseModel

from app.services.notification_hub import HubEvent, NotificationHub, Unsubscribe

logger = logging.getLogger(__name__)

INSTRUMENTS_CHANNEL = "instruments"

WIRE_EVENT_NAMES = {
    HubEvent.INSTRUMENT_UPDATED: "instrument:update",
    HubEvent.INSTRUMENT_LIST_REPLACED: "instrument:list",
    HubEvent.ALERT_TRIGGERED: "alert:triggered",
}


def _to_wire(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if isinstance(payload, (list, tuple)):
        return [_to_wire(item) for item in payload]
    return payload


class WSManager:
    """Channel-based WebSocket fan-out.

    Hub events are queued in one outbox and sent by a single task, so clients
    see them in publish order while publishers never wait on a socket. A send
    that takes longer than ``send_timeout`` drops that client.
    """

    def __init__(self, send_timeout: float = 5.0, max_pending: int = 1000) -> None:
        self.send_timeout = send_timeout
        self.max_pending = max_pending
        self._connections: Set[WebSocket] = set()
        self._channel_connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._outbox: asyncio.Queue | None = None
        self._sender: asyncio.Task | None = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket, channels: set[str] | None = None) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.add(websocket)
            for channel in channels or {"global"}:
                self._channel_connections[channel].add(websocket)
        logger.info("WebSocket client connected (%d open)", len(self._connections))

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            was_open = websocket in self._connections
            self._connections.discard(websocket)
            for subscribers in self._channel_connections.values():
                subscribers.discard(websocket)
        if was_open:
            logger.info("WebSocket client disconnected (%d open)", len(self._connections))

    async def broadcast(self, event: Dict[str, Any], channel: str = "global") -> None:
        payload = json.dumps(event)
        async with self._lock:
            targets = list(self._channel_connections.get(channel, set()) | self._channel_connections.get("global", set()))

        stale: list[WebSocket] = []
        for socket in targets:
            try:
                await asyncio.wait_for(socket.send_text(payload), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning("Dropping WebSocket client that did not accept a message within %.1fs", self.send_timeout)
                stale.append(socket)
            except Exception:
                logger.debug("Dropping WebSocket client after failed send", exc_info=True)
                stale.append(socket)

        for socket in stale:
            await self.disconnect(socket)

    def _enqueue(self, event: Dict[str, Any]) -> None:
        if self._outbox is None:
            self._outbox = asyncio.Queue(maxsize=self.max_pending)
        if self._sender is None or self._sender.done():
            self._sender = asyncio.get_running_loop().create_task(self._send_forever(self._outbox), name="ws-sender")
        try:
            self._outbox.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("WebSocket outbox is full; dropping %s", event.get("type"))

    async def _send_forever(self, outbox: asyncio.Queue) -> None:
        try:
            while True:
                event = await outbox.get()
                try:
                    await self.broadcast(event, channel=event.get("channel", "global"))
                except Exception:
                    logger.exception("Failed to broadcast %s", event.get("type"))
                finally:
                    outbox.task_done()
        finally:
            while not outbox.empty():
                outbox.get_nowait()
                outbox.task_done()

    async def flush(self) -> None:
        """Wait until everything queued so far has been sent."""
        if self._outbox is not None:
            await self._outbox.join()

    async def close(self) -> None:
        sender, self._sender = self._sender, None
        if sender is not None and not sender.done():
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
        self._outbox = None

    def attach_hub(self, hub: NotificationHub) -> List[Unsubscribe]:
        """Forward every hub event to clients on the instruments channel."""

        def forwarder(kind: HubEvent):
            def forward(payload: Any) -> None:
                self._enqueue(
                    {
                        "channel": INSTRUMENTS_CHANNEL,
                        "type": WIRE_EVENT_NAMES[kind],
                        "data": _to_wire(payload),
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    }
                )

            return forward

        return [hub.subscribe(kind, forwarder(kind)) for kind in HubEvent]
