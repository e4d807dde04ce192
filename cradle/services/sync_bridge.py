"""Bridge from the realtime change feed to ledger invalidation."""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog

from ..adapters.base import ChangeFeedAdapter, ChangeFilter, ChangeNotification, Subscription
from .ledger import LedgerRegistry, LedgerStore

log = structlog.get_logger()


class SyncSubscription:
    """Cancellable handle for one owner's change feed subscription."""

    def __init__(self, owner_id: str, bridge: "RealtimeSyncBridge"):
        self.owner_id = owner_id
        self._bridge = bridge
        self._feed_subscription: Subscription | None = None
        self.active = True

    async def close(self) -> None:
        await self._bridge.unsubscribe(self)

    async def __aenter__(self) -> "SyncSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class RealtimeSyncBridge:
    """
    Turns change notifications into ledger refetches.

    The bridge keeps no state that needs recovering after a disconnect; the
    feed adapter reconnects on its own and the next notification (or an
    explicit invalidate) brings the ledger back in line.
    """

    def __init__(self, registry: LedgerRegistry, change_feed: ChangeFeedAdapter, metrics: Any = None):
        self._registry = registry
        self._feed = change_feed
        self._metrics = metrics

    async def subscribe(self, owner_id: str) -> SyncSubscription:
        """Open a feed channel for owner_id; every notification invalidates that owner's ledger."""
        subscription = SyncSubscription(owner_id, self)

        async def on_change(notification: ChangeNotification) -> None:
            await self._on_change(subscription, notification)

        subscription._feed_subscription = await self._feed.subscribe(ChangeFilter(owner_id=owner_id), on_change)
        log.info("sync.subscribed", owner_id=owner_id)
        return subscription

    async def unsubscribe(self, subscription: SyncSubscription) -> None:
        """Close the channel. No invalidations are delivered afterwards."""
        if not subscription.active:
            return
        subscription.active = False
        if subscription._feed_subscription is not None:
            await self._feed.unsubscribe(subscription._feed_subscription)
        log.info("sync.unsubscribed", owner_id=subscription.owner_id)

    @asynccontextmanager
    async def session(self, owner_id: str) -> AsyncIterator[LedgerStore]:
        """
        Acquire an owner's ledger with live sync for the duration of the block.

        Subscribes, performs the initial fetch, and always unsubscribes and
        releases the ledger on exit.
        """
        store = self._registry.acquire(owner_id)
        subscription: SyncSubscription | None = None
        try:
            subscription = await self.subscribe(owner_id)
            try:
                await store.invalidate()
            except Exception as e:
                # Serve the last-known snapshot; the next notification retries.
                log.warning("sync.initial_refetch_failed", owner_id=owner_id, error=str(e))
            yield store
        finally:
            if subscription is not None:
                await self.unsubscribe(subscription)
            self._registry.release(owner_id)

    async def _on_change(self, subscription: SyncSubscription, notification: ChangeNotification) -> None:
        if not subscription.active:
            return
        if self._metrics is not None:
            self._metrics.record_sync_notification(notification.kind.value)

        store = self._registry.get(subscription.owner_id)
        if store is None:
            log.debug("sync.no_ledger", owner_id=subscription.owner_id)
            return

        log.debug(
            "sync.change_received",
            owner_id=subscription.owner_id,
            kind=notification.kind.value,
            event_id=notification.event_id,
        )
        try:
            await store.invalidate()
        except Exception as e:
            log.warning("sync.invalidate_failed", owner_id=subscription.owner_id, error=str(e))
