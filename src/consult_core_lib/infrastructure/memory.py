"""
In-process record store and notification channel.

Used for local development and tests. The store publishes a ChangeEvent to
the channel after every committed write, the way a database change feed
would. The channel delivers asynchronously (on a later event-loop turn), can
duplicate deliveries to mimic at-least-once semantics, and can be
disconnected/reconnected to simulate a dropped stream: events published while
disconnected are lost.
"""

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from consult_core_lib.errors import (
    ConcurrentUpdateError,
    ConsultError,
    NotFoundError,
    StoreError,
    TransientStoreError,
)
from consult_core_lib.infrastructure.base import (
    ORDER_DESC,
    ChannelSubscription,
    ConnectionListener,
    ConnectionState,
    EventHandler,
    NotificationChannel,
    OrderBy,
    RecordStore,
)
from consult_core_lib.models.common import parse_utc_timestamp
from consult_core_lib.models.events import ChangeEvent, ChangeOperation, EntityKind, Predicate

logger = logging.getLogger(__name__)


class InMemoryNotificationChannel(NotificationChannel):
    """Change feed backed by event-loop callbacks."""

    def __init__(self, duplicate_delivery: bool = False):
        """
        Args:
            duplicate_delivery: Deliver every event twice to each subscriber
        """
        self.duplicate_delivery = duplicate_delivery
        self._subscriptions: Dict[int, ChannelSubscription] = {}
        self._listeners: List[ConnectionListener] = []
        self._connected = True
        self._in_flight = 0
        self.dropped_events = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self, kind: EntityKind, predicate: Predicate, on_event: EventHandler
    ) -> ChannelSubscription:
        subscription = ChannelSubscription(kind=kind, predicate=predicate, on_event=on_event)
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Channel subscription {subscription.id} added: {kind.value} {predicate}")
        return subscription

    def unsubscribe(self, subscription: ChannelSubscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    def add_connection_listener(self, listener: ConnectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def publish(self, event: ChangeEvent) -> None:
        """Queue `event` for every matching subscription.

        Must be called from within a running event loop.
        """
        if not self._connected:
            self.dropped_events += 1
            logger.debug(f"Channel disconnected, dropping {event.kind.value} {event.operation.value}")
            return

        loop = asyncio.get_running_loop()
        copies = 2 if self.duplicate_delivery else 1

        for subscription in list(self._subscriptions.values()):
            if subscription.kind != event.kind:
                continue
            if not subscription.predicate.matches(event.payload):
                continue
            tagged = event.matched(subscription.predicate)
            for _ in range(copies):
                self._in_flight += 1
                loop.call_soon(self._deliver, subscription.id, tagged)

    def _deliver(self, subscription_id: int, event: ChangeEvent) -> None:
        self._in_flight -= 1
        subscription = self._subscriptions.get(subscription_id)
        # Released while in flight, or the stream dropped before delivery
        if subscription is None or not self._connected:
            return
        subscription.on_event(event)

    async def flush(self) -> None:
        """Wait until every queued delivery has run."""
        while self._in_flight:
            await asyncio.sleep(0)

    def disconnect(self) -> None:
        """Simulate a dropped stream."""
        if not self._connected:
            return
        self._connected = False
        logger.warning("In-memory channel disconnected")
        self._notify(ConnectionState.DISCONNECTED)

    def reconnect(self) -> None:
        """Simulate the stream coming back."""
        if self._connected:
            return
        self._connected = True
        logger.info("In-memory channel reconnected")
        self._notify(ConnectionState.CONNECTED)

    def _notify(self, state: ConnectionState) -> None:
        for listener in list(self._listeners):
            listener(state)

    async def close(self) -> None:
        self._subscriptions.clear()
        self._listeners.clear()


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed record store publishing writes to a channel."""

    def __init__(self, channel: Optional[InMemoryNotificationChannel] = None):
        """
        Args:
            channel: Channel receiving a ChangeEvent after each committed write
        """
        self._channel = channel
        self._tables: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {
            kind: {} for kind in EntityKind
        }
        self._failures: List[ConsultError] = []
        self.write_count = 0

    def fail_next(self, error: Optional[ConsultError] = None, times: int = 1) -> None:
        """Make the next `times` calls raise `error` (default TransientStoreError)."""
        for _ in range(times):
            self._failures.append(error or TransientStoreError("simulated store outage"))

    def records(self, kind: EntityKind) -> List[Dict[str, Any]]:
        """Snapshot of every stored record of `kind`."""
        return [copy.deepcopy(r) for r in self._tables[kind].values()]

    async def _round_trip(self) -> None:
        # Suspend like a network call so concurrent callers interleave
        await asyncio.sleep(0)
        if self._failures:
            raise self._failures.pop(0)

    async def insert(self, kind: EntityKind, record: Dict[str, Any]) -> str:
        await self._round_trip()
        table = self._tables[kind]

        stored = copy.deepcopy(record)
        record_id = stored.get("id") or str(uuid4())
        if record_id in table:
            raise StoreError(f"Duplicate {kind.value} id {record_id}")
        stored["id"] = record_id

        table[record_id] = stored
        self.write_count += 1
        self._emit(kind, ChangeOperation.INSERT, stored)
        return record_id

    async def select_one(self, kind: EntityKind, record_id: str) -> Dict[str, Any]:
        await self._round_trip()
        record = self._tables[kind].get(record_id)
        if record is None:
            raise NotFoundError(kind, record_id)
        return copy.deepcopy(record)

    async def select_many(
        self,
        kind: EntityKind,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[Dict[str, Any]]:
        await self._round_trip()
        filters = filters or {}

        rows = [
            copy.deepcopy(r)
            for r in self._tables[kind].values()
            if all(r.get(k) == v for k, v in filters.items())
        ]

        # Stable sort from least to most significant key
        for field, direction in reversed(list(order_by or ())):
            rows.sort(
                key=lambda r, f=field: _sort_value(f, r.get(f)),
                reverse=direction == ORDER_DESC,
            )
        return rows

    async def update(
        self,
        kind: EntityKind,
        record_id: str,
        patch: Dict[str, Any],
        match: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        await self._round_trip()
        table = self._tables[kind]

        existing = table.get(record_id)
        if existing is None:
            raise NotFoundError(kind, record_id)
        if match and any(existing.get(k) != v for k, v in match.items()):
            raise ConcurrentUpdateError(kind, record_id, match)

        updated = {**existing, **copy.deepcopy(patch), "id": existing["id"]}
        table[record_id] = updated
        self.write_count += 1
        self._emit(kind, ChangeOperation.UPDATE, updated)
        return copy.deepcopy(updated)

    def _emit(self, kind: EntityKind, operation: ChangeOperation, record: Dict[str, Any]) -> None:
        if self._channel is None:
            return
        self._channel.publish(
            ChangeEvent(kind=kind, operation=operation, payload=copy.deepcopy(record))
        )


def _sort_value(field: str, value: Any) -> Any:
    if value is not None and (field == "timestamp" or field.endswith("_at")):
        return parse_utc_timestamp(value)
    return value
