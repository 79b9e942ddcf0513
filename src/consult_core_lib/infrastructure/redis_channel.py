"""
Redis pub/sub notification channel.

Change events are published as JSON on one channel per entity kind
(`<prefix>:case`, `<prefix>:message`). A single listener task reads the
pub/sub connection and fans events out to local subscriptions whose predicate
matches the payload. When the connection drops the listener notifies the
connection listeners, reconnects with backoff (indefinitely, until closed) and
notifies them again once the pub/sub subscription is restored. A handler that
raises is logged and does not stop delivery to other subscriptions. Events
published while disconnected are not replayed; the ChangeReconciler re-fetches
them from the record store.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import redis.exceptions
from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from consult_core_lib.errors import ChannelDisconnect
from consult_core_lib.infrastructure.base import (
    ChannelSubscription,
    ConnectionListener,
    ConnectionState,
    EventHandler,
    NotificationChannel,
)
from consult_core_lib.models.events import ChangeEvent, EntityKind, Predicate
from consult_core_lib.utils.resilience import create_custom_retry

logger = logging.getLogger(__name__)

CONNECTION_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)


class RedisNotificationChannel(NotificationChannel):
    """Change feed over Redis pub/sub.

    Usage:
        redis_client = await get_redis_client()
        channel = RedisNotificationChannel(redis_client, prefix="consult")
        await channel.start()
        ...
        await channel.close()
    """

    def __init__(
        self,
        redis_client: Redis,
        prefix: str = "consult",
        poll_timeout: float = 1.0,
        reconnect_attempts: int = 10,
        reconnect_min_wait: float = 0.5,
        reconnect_max_wait: float = 10.0,
    ):
        """
        Args:
            redis_client: Connected async Redis client
            prefix: Channel name prefix
            poll_timeout: Seconds to wait for a message per poll
            reconnect_attempts: Attempts per backoff cycle; after a failed cycle the
                listener waits reconnect_max_wait and starts another
            reconnect_min_wait: Initial reconnect backoff in seconds
            reconnect_max_wait: Maximum reconnect backoff in seconds
        """
        self._redis = redis_client
        self.prefix = prefix
        self.poll_timeout = poll_timeout
        self.reconnect_max_wait = reconnect_max_wait
        self._subscriptions: Dict[int, ChannelSubscription] = {}
        self._listeners: List[ConnectionListener] = []
        self._pubsub: Optional[PubSub] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._connected = False
        self._reconnect = create_custom_retry(
            max_attempts=reconnect_attempts,
            min_wait=reconnect_min_wait,
            max_wait=reconnect_max_wait,
            exceptions=CONNECTION_ERRORS,
        )(self._open_pubsub)

    @property
    def connected(self) -> bool:
        return self._connected

    def channel_name(self, kind: EntityKind) -> str:
        return f"{self.prefix}:{kind.value}"

    # ============================================================
    # Connection lifecycle
    # ============================================================
    async def start(self) -> None:
        """Subscribe to every kind channel and start the listener task."""
        if self._listener_task is not None:
            return
        await self._open_pubsub()
        self._connected = True
        self._listener_task = asyncio.create_task(self._listen())
        logger.info(f"Redis notification channel started (prefix={self.prefix})")

    async def _open_pubsub(self) -> None:
        await self._close_pubsub()
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(*(self.channel_name(kind) for kind in EntityKind))
        self._pubsub = pubsub

    async def _close_pubsub(self) -> None:
        if self._pubsub is None:
            return
        pubsub, self._pubsub = self._pubsub, None
        try:
            await pubsub.aclose()
        except CONNECTION_ERRORS as e:
            logger.debug(f"Ignoring error while closing pub/sub: {e}")

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
            except CONNECTION_ERRORS as e:
                logger.warning(f"Redis notification channel disconnected: {e}")
                self._set_connected(False)
                await self._restore()
                continue

            if message is not None:
                self._handle_message(message)

    async def _restore(self) -> None:
        """Reopen the pub/sub connection, retrying until it succeeds or the task is cancelled."""
        while True:
            try:
                await self._reconnect()
            except CONNECTION_ERRORS as e:
                logger.error(
                    f"Redis notification channel could not reconnect, "
                    f"retrying in {self.reconnect_max_wait}s: {e}"
                )
                await asyncio.sleep(self.reconnect_max_wait)
                continue
            logger.info("Redis notification channel reconnected")
            self._set_connected(True)
            return

    def _set_connected(self, connected: bool) -> None:
        if self._connected == connected:
            return
        self._connected = connected
        state = ConnectionState.CONNECTED if connected else ConnectionState.DISCONNECTED
        for listener in list(self._listeners):
            listener(state)

    def _handle_message(self, message: Dict[str, Any]) -> int:
        """Decode one pub/sub message and deliver it to matching subscriptions.

        Returns:
            Number of subscriptions the event was delivered to
        """
        if message.get("type") != "message":
            return 0

        try:
            event = ChangeEvent.model_validate_json(message["data"])
        except PydanticValidationError as e:
            logger.warning(f"Discarding malformed change event on {message.get('channel')}: {e}")
            return 0

        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.kind != event.kind:
                continue
            if not subscription.predicate.matches(event.payload):
                continue
            # Unsubscribed by an earlier handler in this loop
            if subscription.id not in self._subscriptions:
                continue
            try:
                subscription.on_event(event.matched(subscription.predicate))
            except Exception:
                logger.exception(
                    f"Subscription {subscription.id} failed to handle "
                    f"{event.kind.value} {event.record_id}"
                )
                continue
            delivered += 1
        return delivered

    # ============================================================
    # NotificationChannel
    # ============================================================
    def subscribe(
        self, kind: EntityKind, predicate: Predicate, on_event: EventHandler
    ) -> ChannelSubscription:
        subscription = ChannelSubscription(kind=kind, predicate=predicate, on_event=on_event)
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Redis subscription {subscription.id} added: {kind.value} {predicate}")
        return subscription

    def unsubscribe(self, subscription: ChannelSubscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    def add_connection_listener(self, listener: ConnectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def publish(self, event: ChangeEvent) -> int:
        """Publish `event` on its kind channel.

        Returns:
            Number of Redis clients that received the message

        Raises:
            ChannelDisconnect: If Redis cannot be reached
        """
        try:
            return await self._redis.publish(
                self.channel_name(event.kind), event.model_dump_json()
            )
        except CONNECTION_ERRORS as e:
            logger.error(f"Failed to publish {event.kind.value} {event.operation.value}: {e}")
            raise ChannelDisconnect(str(e)) from e

    async def close(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        await self._close_pubsub()
        self._subscriptions.clear()
        self._listeners.clear()
        self._connected = False
        logger.info("Redis notification channel closed")
