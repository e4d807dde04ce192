"""In-memory event store and change feed."""
import uuid
import structlog

from .base import (
    ChangeFeedAdapter,
    ChangeFilter,
    ChangeHandler,
    ChangeKind,
    ChangeNotification,
    EventStoreAdapter,
    Subscription,
)
from ..clock import Clock, SystemClock
from ..event_models import CareEvent, CareEventDraft

log = structlog.get_logger()


class InMemoryChangeFeed(ChangeFeedAdapter):
    """Process-local change feed. Notifications are delivered before publish returns."""

    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}

    async def subscribe(self, filter: ChangeFilter, handler: ChangeHandler) -> Subscription:
        subscription = Subscription(filter, handler)
        self._subscriptions[subscription.id] = subscription
        log.info("feed.subscribed", owner_id=filter.owner_id, subscription_id=subscription.id, adapter="memory")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        if self._subscriptions.pop(subscription.id, None) is not None:
            log.info("feed.unsubscribed", owner_id=subscription.filter.owner_id, subscription_id=subscription.id)

    async def publish(self, notification: ChangeNotification) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.active or not subscription.filter.matches(notification):
                continue
            try:
                await subscription.handler(notification)
            except Exception as e:
                # One failing subscriber must not stop delivery to the rest
                log.error(
                    "feed.delivery_failed",
                    owner_id=notification.owner_id,
                    subscription_id=subscription.id,
                    error=str(e),
                )

    async def health_check(self) -> bool:
        """In-memory feed is always healthy."""
        return True

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


class InMemoryEventStore(EventStoreAdapter):
    """In-memory care event store, optionally announcing inserts on a change feed."""

    def __init__(self, change_feed: ChangeFeedAdapter | None = None, clock: Clock | None = None):
        self._rows: dict[str, list[CareEvent]] = {}
        self._by_correlation: dict[tuple[str, str], CareEvent] = {}
        self._change_feed = change_feed
        self._clock = clock or SystemClock()

    async def insert(self, draft: CareEventDraft) -> CareEvent:
        """Insert a draft; a repeated correlation_id returns the existing row."""
        key = (draft.owner_id, draft.correlation_id)
        existing = self._by_correlation.get(key)
        if existing is not None:
            log.info(
                "event.insert_deduplicated",
                owner_id=draft.owner_id,
                correlation_id=draft.correlation_id,
                id=existing.id,
                adapter="memory",
            )
            return existing

        stored = CareEvent.confirmed(draft, id=str(uuid.uuid4()), created_at=self._clock.now())
        self._rows.setdefault(draft.owner_id, []).append(stored)
        self._by_correlation[key] = stored
        log.info(
            "event.inserted",
            id=stored.id,
            owner_id=stored.owner_id,
            event_type=stored.event_type.value,
            correlation_id=stored.correlation_id,
            adapter="memory",
        )

        if self._change_feed is not None:
            await self._change_feed.publish(
                ChangeNotification(
                    owner_id=stored.owner_id,
                    kind=ChangeKind.INSERT,
                    event_id=stored.id,
                    correlation_id=stored.correlation_id,
                )
            )
        return stored

    async def list(self, owner_id: str) -> list[CareEvent]:
        return list(self._rows.get(owner_id, []))

    async def health_check(self) -> bool:
        """In-memory adapter is always healthy."""
        return True
