"""Redis-backed event store (Streams) and change feed (Pub/Sub)."""
import asyncio
import uuid

import orjson
import structlog
from redis import Redis
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .base import (
    ChangeFeedAdapter,
    ChangeFilter,
    ChangeHandler,
    ChangeKind,
    ChangeNotification,
    EventStoreAdapter,
    Subscription,
)
from ..clock import utc_now
from ..config import get_settings
from ..errors import SyncChannelError
from ..event_models import CareEvent, CareEventDraft

log = structlog.get_logger()
settings = get_settings()

KEY_PREFIX = "cradle"

# KEYS: correlation index, owner stream. ARGV: correlation_id, record.
# Returns the stored record when the correlation_id is already known, else nil.
# The index is written only after XADD succeeds, so a failed append leaves no trace.
INSERT_SCRIPT = """
local existing = redis.call('HGET', KEYS[1], ARGV[1])
if existing then
    return existing
end
redis.call('XADD', KEYS[2], '*', 'data', ARGV[2])
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
return false
"""


def stream_key(owner_id: str) -> str:
    return f"{KEY_PREFIX}:events:{owner_id}"


def index_key(owner_id: str) -> str:
    return f"{KEY_PREFIX}:correlation:{owner_id}"


def channel_name(owner_id: str) -> str:
    return f"{KEY_PREFIX}:changes:{owner_id}"


class RedisEventStore(EventStoreAdapter):
    """Redis Streams implementation of the care event store.

    Each owner's ledger is one stream, read back in insertion order. A hash
    keyed by correlation_id makes inserts idempotent; it is only written once
    the stream entry exists. Every insert is announced on the owner's Pub/Sub
    channel.
    """

    def __init__(self, redis_url: str | None = None):
        """
        Initialize Redis event store.

        Args:
            redis_url: Redis connection URL (defaults to settings.REDIS_URL)
        """
        self.redis_url = redis_url or str(settings.REDIS_URL)
        self._client: Redis | None = None
        self._script = None

    def _get_client(self) -> Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=False,  # We'll handle encoding ourselves
                socket_connect_timeout=5,
                socket_timeout=5
            )
        return self._client

    def _insert_script(self, client: Redis):
        if self._script is None:
            self._script = client.register_script(INSERT_SCRIPT)
        return self._script

    async def insert(self, draft: CareEventDraft) -> CareEvent:
        """
        Append a draft to the owner's stream.

        Raises:
            RedisError: If unable to write to Redis
        """
        stored = CareEvent.confirmed(draft, id=str(uuid.uuid4()), created_at=utc_now())
        data = orjson.dumps(stored.to_record())

        try:
            client = self._get_client()

            # Dedup check, stream append and index write run as one script
            existing = self._insert_script(client)(
                keys=[index_key(draft.owner_id), stream_key(draft.owner_id)],
                args=[draft.correlation_id, data],
            )
            if existing is not None:
                log.info(
                    "event.insert_deduplicated",
                    owner_id=draft.owner_id,
                    correlation_id=draft.correlation_id,
                    adapter="redis_stream",
                )
                return CareEvent.model_validate(orjson.loads(existing))

            client.publish(
                channel_name(draft.owner_id),
                ChangeNotification(
                    owner_id=draft.owner_id,
                    kind=ChangeKind.INSERT,
                    event_id=stored.id,
                    correlation_id=stored.correlation_id,
                ).model_dump_json(),
            )

            log.info(
                "event.inserted",
                id=stored.id,
                owner_id=stored.owner_id,
                event_type=stored.event_type.value,
                correlation_id=stored.correlation_id,
                adapter="redis_stream"
            )
            return stored

        except RedisError as e:
            log.error("redis.insert_failed", error=str(e), correlation_id=draft.correlation_id)
            raise

    async def list(self, owner_id: str) -> list[CareEvent]:
        """
        Read an owner's whole stream, oldest first.

        Raises:
            RedisError: If Redis is unreachable
        """
        try:
            entries = self._get_client().xrange(stream_key(owner_id))
        except RedisError as e:
            log.error("redis.list_failed", error=str(e), owner_id=owner_id)
            raise

        events = []
        for _entry_id, entry_data in entries:
            if b"data" in entry_data:
                events.append(CareEvent.model_validate(orjson.loads(entry_data[b"data"])))
        return events

    async def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            True if Redis is accessible, False otherwise
        """
        try:
            return bool(self._get_client().ping())
        except Exception as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._script = None


class RedisChangeFeed(ChangeFeedAdapter):
    """Redis Pub/Sub change feed, one channel per owner.

    Each subscription runs a listener task that reconnects with capped
    exponential backoff after a transport failure.
    """

    def __init__(self, redis_url: str | None = None, reconnect_max_seconds: float | None = None):
        self.redis_url = redis_url or str(settings.REDIS_URL)
        self.reconnect_max_seconds = reconnect_max_seconds or settings.FEED_RECONNECT_MAX_SECONDS
        self._client: aioredis.Redis | None = None
        self._listeners: dict[str, asyncio.Task] = {}

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.Redis.from_url(self.redis_url, decode_responses=False)
        return self._client

    async def subscribe(self, filter: ChangeFilter, handler: ChangeHandler) -> Subscription:
        subscription = Subscription(filter, handler)
        self._listeners[subscription.id] = asyncio.create_task(self._listen(subscription))
        log.info("feed.subscribed", owner_id=filter.owner_id, subscription_id=subscription.id, adapter="redis")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        task = self._listeners.pop(subscription.id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("feed.unsubscribed", owner_id=subscription.filter.owner_id, subscription_id=subscription.id)

    async def publish(self, notification: ChangeNotification) -> None:
        try:
            await self._get_client().publish(
                channel_name(notification.owner_id), notification.model_dump_json()
            )
        except RedisError as e:
            raise SyncChannelError(f"publish to {notification.owner_id} failed") from e

    async def _listen(self, subscription: Subscription) -> None:
        delay = 0.5
        while subscription.active:
            try:
                await self._pump(subscription)
            except SyncChannelError as e:
                log.warning(
                    "feed.disconnected",
                    owner_id=subscription.filter.owner_id,
                    error=str(e.__cause__ or e),
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.reconnect_max_seconds)
            else:
                delay = 0.5

    async def _pump(self, subscription: Subscription) -> None:
        owner_id = subscription.filter.owner_id
        pubsub = self._get_client().pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(channel_name(owner_id))
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    notification = ChangeNotification.model_validate(orjson.loads(message["data"]))
                except (orjson.JSONDecodeError, ValueError) as e:
                    log.warning("feed.malformed_message", owner_id=owner_id, error=str(e))
                    continue
                if not subscription.active or not subscription.filter.matches(notification):
                    continue
                try:
                    await subscription.handler(notification)
                except Exception as e:
                    log.error("feed.delivery_failed", owner_id=owner_id, error=str(e))
        except (RedisError, OSError) as e:
            raise SyncChannelError(f"change feed for {owner_id} lost") from e
        finally:
            await pubsub.aclose()

    async def health_check(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except Exception as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        for task in self._listeners.values():
            task.cancel()
        self._listeners.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
