"""WebSocket snapshot streaming with rate limiting and keepalive."""
import asyncio
import time
from typing import Callable

import orjson
import structlog
from fastapi import WebSocket, WebSocketDisconnect

from ..services.care_service import CareService
from ..services.ledger import Snapshot

log = structlog.get_logger()


def snapshot_message(owner_id: str, version: int, snapshot: Snapshot) -> bytes:
    return orjson.dumps({
        "type": "snapshot",
        "owner_id": owner_id,
        "version": version,
        "events": [event.to_record() for event in snapshot],
    })


class SnapshotStreamManager:
    """
    Pushes ledger snapshots to WebSocket clients, grouped by owner.

    Each client receives every snapshot version at most once and never an
    older version after a newer one.
    """

    def __init__(self):
        self._connections: dict[str, set[WebSocket]] = {}
        self._sent_version: dict[WebSocket, int] = {}
        self._detach: dict[str, Callable[[], None]] = {}
        self._pending: set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket, owner_id: str):
        await websocket.accept()
        self._connections.setdefault(owner_id, set()).add(websocket)
        self._sent_version[websocket] = -1
        log.info("websocket.connected", owner_id=owner_id, total_connections=self.connection_count)

    def disconnect(self, websocket: WebSocket, owner_id: str):
        connections = self._connections.get(owner_id)
        if connections is not None:
            connections.discard(websocket)
            if not connections:
                del self._connections[owner_id]
                detach = self._detach.pop(owner_id, None)
                if detach is not None:
                    detach()
        self._sent_version.pop(websocket, None)
        log.info("websocket.disconnected", owner_id=owner_id, total_connections=self.connection_count)

    def watch(self, owner_id: str, store) -> None:
        """Start forwarding an owner's snapshot changes (once per owner)."""
        if owner_id in self._detach:
            return

        def on_snapshot(owner: str, version: int, snapshot: Snapshot) -> None:
            task = asyncio.ensure_future(self.broadcast(owner, version, snapshot))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        self._detach[owner_id] = store.add_listener(on_snapshot)

    async def send_snapshot(self, websocket: WebSocket, owner_id: str, version: int, snapshot: Snapshot) -> bool:
        """Send one snapshot unless the client already has this or a newer version."""
        if self._sent_version.get(websocket, -1) >= version:
            return True
        self._sent_version[websocket] = version
        try:
            await websocket.send_bytes(snapshot_message(owner_id, version, snapshot))
            return True
        except Exception as e:
            log.warning("websocket.send_failed", owner_id=owner_id, error=str(e))
            return False

    async def broadcast(self, owner_id: str, version: int, snapshot: Snapshot):
        disconnected = set()
        for connection in list(self._connections.get(owner_id, ())):
            if not await self.send_snapshot(connection, owner_id, version, snapshot):
                disconnected.add(connection)
        for conn in disconnected:
            self.disconnect(conn, owner_id)

    async def send_ping(self, websocket: WebSocket):
        try:
            await websocket.send_json({"type": "ping", "ts": time.time()})
        except Exception as e:
            log.warning("websocket.ping_failed", error=str(e))

    @property
    def connection_count(self) -> int:
        return sum(len(c) for c in self._connections.values())


stream_manager = SnapshotStreamManager()


class RateLimiter:
    """Sliding-window limit on client messages."""

    def __init__(self, max_messages: int = 100, window_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self._clock = clock
        self._message_times: list[float] = []

    def _trim(self) -> float:
        now = self._clock()
        cutoff = now - self.window_seconds
        self._message_times = [t for t in self._message_times if t > cutoff]
        return now

    def check_limit(self) -> bool:
        """Record a message; False if it exceeds the limit."""
        now = self._trim()
        if len(self._message_times) >= self.max_messages:
            return False
        self._message_times.append(now)
        return True

    def remaining(self) -> int:
        self._trim()
        return max(0, self.max_messages - len(self._message_times))


async def handle_snapshot_stream(
    websocket: WebSocket,
    owner_id: str,
    care: CareService,
    ping_interval: int = 30,
    rate_limit_messages: int = 100,
    rate_limit_window: int = 60,
    metrics=None,
):
    """
    Serve one client: current snapshot on connect, then every change.

    Clients may send "ping" (answered with "pong") and "refresh" (forces a
    refetch of the owner's ledger).
    """
    rate_limiter = RateLimiter(rate_limit_messages, rate_limit_window)

    store = await care.open_owner(owner_id)
    await stream_manager.connect(websocket, owner_id)
    stream_manager.watch(owner_id, store)
    if metrics is not None:
        metrics.stream_connections.set(stream_manager.connection_count)

    try:
        await websocket.send_json({
            "type": "welcome",
            "owner_id": owner_id,
            "rate_limit": {
                "max_messages": rate_limit_messages,
                "window_seconds": rate_limit_window
            }
        })
        await stream_manager.send_snapshot(websocket, owner_id, store.version, store.current_snapshot())

        last_ping = time.monotonic()
        while True:
            if time.monotonic() - last_ping > ping_interval:
                await stream_manager.send_ping(websocket)
                last_ping = time.monotonic()

            try:
                message = await asyncio.wait_for(websocket.receive_text(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            if not rate_limiter.check_limit():
                await websocket.send_json({
                    "type": "error",
                    "message": "Rate limit exceeded",
                    "retry_after": rate_limit_window
                })
                continue

            if message == "ping":
                await websocket.send_text("pong")
            elif message == "pong":
                log.debug("websocket.pong_received")
            elif message == "refresh":
                try:
                    await store.invalidate()
                except Exception as e:
                    await websocket.send_json({"type": "error", "message": f"refresh failed: {e}"})

    except WebSocketDisconnect:
        log.info("websocket.client_disconnected", owner_id=owner_id)
    except Exception as e:
        log.error("websocket.error", owner_id=owner_id, error=str(e), exc_info=True)
    finally:
        stream_manager.disconnect(websocket, owner_id)
        if metrics is not None:
            metrics.stream_connections.set(stream_manager.connection_count)
        await care.close_owner(owner_id)
