"""WebSocket fan-out, the connected-clients directory, and the message log."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from collections import deque
from datetime import datetime

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from vigil.core.scheduler import Clock, SystemClock

logger = logging.getLogger("vigil.broadcast")

QUEUE_LIMIT = 10_000

_UNSAFE_FRAGMENTS = re.compile(
    r"[<>]|javascript:|vbscript:|data:|\bon\w+\s*=", re.IGNORECASE
)


class InvalidMessageError(ValueError):
    """Client input rejected at the HTTP or WebSocket boundary."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def validate_message_text(raw: object, max_length: int = 1000) -> str:
    """Sanitise free-form client text; raise ``InvalidMessageError`` if unusable."""
    if not isinstance(raw, str):
        raise InvalidMessageError("INVALID_PAYLOAD", "Message text must be a string")
    text = _UNSAFE_FRAGMENTS.sub("", raw).strip()
    if not text:
        raise InvalidMessageError("EMPTY_MESSAGE", "Message text is empty")
    if len(text) > max_length:
        raise InvalidMessageError(
            "MESSAGE_TOO_LONG", f"Message text exceeds {max_length} characters"
        )
    return text


def encode_frame(message: dict) -> str:
    return json.dumps(jsonable_encoder(message))


class ConnectionManager:
    """Subscribers keyed by connection id, fed from a single outgoing queue.

    ``broadcast`` and ``relay`` only enqueue; a background task delivers
    frames in arrival order and drops subscribers whose send fails.
    """

    def __init__(self, maxsize: int = QUEUE_LIMIT) -> None:
        self._connections: dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[tuple[dict, str | None]] = asyncio.Queue(maxsize=maxsize)
        self._broadcast_task: asyncio.Task | None = None
        self._running = False

    async def connect(self, websocket: WebSocket) -> str:
        """Accept the socket and assign it a connection id."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        async with self._lock:
            self._connections[connection_id] = websocket
        logger.info("WebSocket %s connected (%d total)", connection_id, len(self._connections))
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            self._connections.pop(connection_id, None)
        logger.info("WebSocket %s gone (%d total)", connection_id, len(self._connections))

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """Send one frame straight to a single subscriber, bypassing the queue."""
        websocket = self._connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(encode_frame(message))
        except Exception:
            logger.debug("Direct send to %s failed", connection_id, exc_info=True)
            await self.disconnect(connection_id)
            return False
        return True

    def broadcast(self, message: dict) -> bool:
        return self._enqueue(message, None)

    def relay(self, message: dict, exclude: str | None) -> bool:
        """Queue a frame for every subscriber except ``exclude``."""
        return self._enqueue(message, exclude)

    def _enqueue(self, message: dict, exclude: str | None) -> bool:
        try:
            self._queue.put_nowait((message, exclude))
        except asyncio.QueueFull:
            logger.warning("Broadcast queue full, dropping %s frame", message.get("type"))
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connection_ids(self) -> list[str]:
        return list(self._connections)

    async def start_broadcaster(self) -> None:
        if self._running:
            return
        self._running = True
        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        logger.info("WebSocket broadcaster started")

    async def stop_broadcaster(self) -> None:
        self._running = False
        if self._broadcast_task:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None
        logger.info("WebSocket broadcaster stopped")

    async def drain(self) -> int:
        """Deliver everything queued right now. Returns frames delivered."""
        delivered = 0
        while not self._queue.empty():
            message, exclude = self._queue.get_nowait()
            await self._deliver(message, exclude)
            delivered += 1
        return delivered

    async def _broadcast_loop(self) -> None:
        while self._running:
            try:
                try:
                    message, exclude = await asyncio.wait_for(self._queue.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue
                await self._deliver(message, exclude)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Broadcast loop error")
                await asyncio.sleep(0.1)

    async def _deliver(self, message: dict, exclude: str | None) -> None:
        async with self._lock:
            targets = [(cid, ws) for cid, ws in self._connections.items() if cid != exclude]
        if not targets:
            return

        frame = encode_frame(message)
        dead = []
        for connection_id, websocket in targets:
            try:
                await websocket.send_text(frame)
            except Exception:
                logger.debug("Send to %s failed; dropping it", connection_id, exc_info=True)
                dead.append(connection_id)

        if dead:
            async with self._lock:
                for connection_id in dead:
                    self._connections.pop(connection_id, None)


class ClientDirectory:
    """Connected clients and whatever they told us when registering."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._clients: dict[str, dict] = {}

    def register(self, connection_id: str, info: dict | None = None) -> dict:
        now = self._clock.utcnow()
        entry = self._clients.get(connection_id)
        if entry is None:
            entry = self._clients[connection_id] = {
                "connection_id": connection_id,
                "info": {},
                "connected_at": now,
                "last_seen": now,
            }
        if info:
            entry["info"] = {**entry["info"], **info}
            entry["registered_at"] = now
        entry["last_seen"] = now
        return dict(entry)

    def touch(self, connection_id: str) -> bool:
        entry = self._clients.get(connection_id)
        if entry is None:
            return False
        entry["last_seen"] = self._clock.utcnow()
        return True

    def remove(self, connection_id: str) -> bool:
        return self._clients.pop(connection_id, None) is not None

    def entries(self) -> list[dict]:
        return [{**e, "info": dict(e["info"])} for e in self._clients.values()]

    def __len__(self) -> int:
        return len(self._clients)


class MessageLog:
    """Most recent client messages, stamped on arrival."""

    def __init__(self, limit: int = 50, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._messages: deque[dict] = deque(maxlen=max(1, limit))

    def append(self, text: str, sender: str | None = None) -> dict:
        stamped_at: datetime = self._clock.utcnow()
        message = {
            "id": uuid.uuid4().hex,
            "text": text,
            "sender": sender,
            "timestamp": stamped_at.isoformat(),
        }
        self._messages.append(message)
        return dict(message)

    def recent(self, limit: int = 50) -> list[dict]:
        if limit <= 0:
            return []
        return [dict(m) for m in list(self._messages)[-limit:]]

    def __len__(self) -> int:
        return len(self._messages)
