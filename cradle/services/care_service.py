"""Care ledger service wiring adapters, ledgers, realtime sync and prediction."""
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncIterator

import structlog

from ..adapters.base import ChangeFeedAdapter, EventStoreAdapter
from ..adapters.memory import InMemoryChangeFeed, InMemoryEventStore
from ..adapters.redis_stream import RedisChangeFeed, RedisEventStore
from ..clock import Clock
from ..config import get_settings
from ..event_models import CareEvent, CareEventDraft
from ..prediction import SleepPrediction, SleepPredictor
from .ledger import LedgerRegistry, LedgerStore, Snapshot
from .sync_bridge import RealtimeSyncBridge

log = structlog.get_logger()
settings = get_settings()


class _OwnerSession:
    def __init__(self, stack: AsyncExitStack, store: LedgerStore):
        self.stack = stack
        self.store = store
        self.refs = 0


class CareService:
    """
    Entry point for consumers of the care ledger.

    Adapters are selected from the STORE_ADAPTER / FEED_ADAPTER settings
    unless passed in.
    """

    def __init__(
        self,
        event_store: EventStoreAdapter | None = None,
        change_feed: ChangeFeedAdapter | None = None,
        clock: Clock | None = None,
        metrics: Any = None,
    ):
        """
        Initialize the service.

        Args:
            event_store: Remote event store (defaults to configured adapter)
            change_feed: Realtime change feed (defaults to configured adapter)
            clock: Source of "now" for predictions
            metrics: Optional Metrics instance
        """
        if change_feed is None:
            change_feed = _create_default_feed()
        if event_store is None:
            event_store = _create_default_store(change_feed)
        _check_adapter_pairing(event_store, change_feed)
        self.event_store = event_store
        self.change_feed = change_feed
        self.metrics = metrics
        self.registry = LedgerRegistry(event_store, metrics=metrics)
        self.bridge = RealtimeSyncBridge(self.registry, change_feed, metrics=metrics)
        self.predictor = SleepPredictor(clock, metrics=metrics)
        self._sessions: dict[str, _OwnerSession] = {}
        self._lock = asyncio.Lock()

    async def open_owner(self, owner_id: str) -> LedgerStore:
        """Take a reference on an owner's synced ledger, opening it on first use."""
        async with self._lock:
            return await self._open_locked(owner_id)

    async def _open_locked(self, owner_id: str) -> LedgerStore:
        session = self._sessions.get(owner_id)
        if session is None:
            stack = AsyncExitStack()
            store = await stack.enter_async_context(self.bridge.session(owner_id))
            session = self._sessions[owner_id] = _OwnerSession(stack, store)
        session.refs += 1
        return session.store

    async def close_owner(self, owner_id: str) -> None:
        """Drop a reference taken by open_owner; the last one closes the session."""
        async with self._lock:
            session = self._sessions.get(owner_id)
            if session is None:
                return
            session.refs -= 1
            if session.refs > 0:
                return
            del self._sessions[owner_id]
        await session.stack.aclose()

    @asynccontextmanager
    async def ledger(self, owner_id: str) -> AsyncIterator[LedgerStore]:
        """
        Hold an owner's synced ledger for the duration of the block.

        Request/response consumers use one block per request, so the ledger
        and its change feed subscription go away once no request or stream
        needs them.
        """
        store = await self.open_owner(owner_id)
        try:
            yield store
        finally:
            await self.close_owner(owner_id)

    async def append(self, owner_id: str, draft: CareEventDraft | dict[str, Any]) -> CareEvent:
        async with self.ledger(owner_id) as store:
            return await store.append(draft)

    async def snapshot(self, owner_id: str) -> tuple[int, Snapshot]:
        async with self.ledger(owner_id) as store:
            return store.version, store.current_snapshot()

    async def invalidate(self, owner_id: str) -> None:
        async with self.ledger(owner_id) as store:
            await store.invalidate()

    async def predict(
        self,
        owner_id: str,
        birth_date: date | datetime | str,
        last_wake_time: datetime | str | None = None,
    ) -> SleepPrediction | None:
        """
        Predict the next sleep window.

        Uses last_wake_time when given, otherwise the latest SLEEP event in
        the owner's snapshot. Returns None when there is no sleep history.
        """
        if last_wake_time is not None:
            return self.predictor.predict(birth_date, last_wake_time)
        async with self.ledger(owner_id) as store:
            return self.predictor.predict_from_events(birth_date, store.current_snapshot())

    async def health_check(self) -> dict[str, bool]:
        return {
            "event_store": await self.event_store.health_check(),
            "change_feed": await self.change_feed.health_check(),
        }

    async def shutdown(self) -> None:
        """Close every owner session, then the adapters."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.stack.aclose()
        await self.change_feed.close()
        await self.event_store.close()
        log.info("care_service.stopped", owners=len(sessions))


def _redis_available(requested: str) -> bool:
    if settings.REDIS_URL:
        return True
    log.warning(
        "adapter.fallback",
        component=requested,
        requested="redis",
        actual="memory",
        reason="REDIS_URL not configured"
    )
    return False


def _create_default_feed() -> ChangeFeedAdapter:
    """Create the change feed selected by FEED_ADAPTER."""
    if settings.FEED_ADAPTER == "redis" and _redis_available("change_feed"):
        log.info("adapter.selected", component="change_feed", type="redis", url=str(settings.REDIS_URL))
        return RedisChangeFeed()
    log.info("adapter.selected", component="change_feed", type="memory")
    return InMemoryChangeFeed()


def _create_default_store(change_feed: ChangeFeedAdapter) -> EventStoreAdapter:
    """Create the event store selected by STORE_ADAPTER."""
    if settings.STORE_ADAPTER == "redis" and _redis_available("event_store"):
        log.info("adapter.selected", component="event_store", type="redis", url=str(settings.REDIS_URL))
        return RedisEventStore()
    log.info("adapter.selected", component="event_store", type="memory")
    return InMemoryEventStore(change_feed=change_feed)


def _check_adapter_pairing(event_store: EventStoreAdapter, change_feed: ChangeFeedAdapter) -> None:
    # The Redis store announces inserts on Redis pub/sub, which a process-local feed never hears.
    if isinstance(event_store, RedisEventStore) and isinstance(change_feed, InMemoryChangeFeed):
        log.warning(
            "adapter.mismatch",
            event_store="redis",
            change_feed="memory",
            reason="realtime invalidation disabled; set FEED_ADAPTER=redis",
        )


_service: CareService | None = None


def get_care_service() -> CareService:
    """Process-wide service, created from settings on first use."""
    global _service
    if _service is None:
        _service = CareService()
    return _service


def set_care_service(service: CareService | None) -> None:
    """Install a preconfigured service (app startup, tests)."""
    global _service
    _service = service
