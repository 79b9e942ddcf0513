"""Change reconciliation between the notification channel and local views.

The ChangeReconciler is the only consumer of the notification channel. It
hands channel events to subscription handlers and, when the channel drops,
marks every subscription stale and re-fetches each subscribed predicate from
the record store once the channel is back. The re-fetch is the correctness
backstop for missed or duplicated events: handlers receive the current
records as resync events and merge them idempotently.
"""

import asyncio
import itertools
import logging
from typing import Callable, Dict, List, Optional

from consult_core_lib.errors import ConsultError
from consult_core_lib.infrastructure.base import (
    DEFAULT_ORDER,
    ChannelSubscription,
    ConnectionState,
    EventHandler,
    NotificationChannel,
    RecordStore,
)
from consult_core_lib.models.events import (
    ChangeEvent,
    ChangeOperation,
    EntityKind,
    Predicate,
)

logger = logging.getLogger(__name__)

StaleListener = Callable[[bool], None]

_handle_ids = itertools.count(1)


class SubscriptionHandle:
    """Scoped subscription created by ChangeReconciler.subscribe().

    The owner must pass the handle to ChangeReconciler.release() before
    discarding it. After release the handler is never invoked again.
    """

    def __init__(
        self,
        kind: EntityKind,
        predicate: Predicate,
        handler: EventHandler,
        on_stale: Optional[StaleListener] = None,
    ):
        self.id = next(_handle_ids)
        self.kind = kind
        self.predicate = predicate
        self.handler = handler
        self.on_stale = on_stale
        self.active = True
        self.stale = False
        self._channel_subscription: Optional[ChannelSubscription] = None

    def _set_stale(self, stale: bool) -> None:
        if self.stale == stale:
            return
        self.stale = stale
        if self.on_stale is not None and self.active:
            self.on_stale(stale)

    def __repr__(self) -> str:
        state = "active" if self.active else "released"
        return f"SubscriptionHandle({self.id}, {self.kind.value}, {self.predicate}, {state})"


class ChangeReconciler:
    """Routes change events to subscribers and restores convergence after gaps.

    Usage:
        reconciler = ChangeReconciler(store, channel)
        handle = reconciler.subscribe(EntityKind.CASE, Predicate.eq("id", case_id), on_case)
        try:
            ...
        finally:
            reconciler.release(handle)
    """

    def __init__(self, store: RecordStore, channel: NotificationChannel):
        self._store = store
        self._channel = channel
        self._handles: Dict[int, SubscriptionHandle] = {}
        self._resync_task: Optional[asyncio.Task] = None
        self._connected = True
        self._remove_listener = channel.add_connection_listener(self._on_connection_change)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def subscriptions(self) -> List[SubscriptionHandle]:
        return list(self._handles.values())

    # ============================================================
    # Subscription lifecycle
    # ============================================================
    def subscribe(
        self,
        kind: EntityKind,
        predicate: Predicate,
        handler: EventHandler,
        on_stale: Optional[StaleListener] = None,
    ) -> SubscriptionHandle:
        """Deliver events of `kind` matching `predicate` to `handler`.

        Args:
            kind: Entity kind to watch
            predicate: Equality filter on the record
            handler: Called synchronously with each ChangeEvent (possibly duplicated)
            on_stale: Called with True when the channel drops and False once
                the subscription has been reconciled

        Returns:
            SubscriptionHandle to pass to release()
        """
        handle = SubscriptionHandle(kind, predicate, handler, on_stale)
        handle._channel_subscription = self._channel.subscribe(
            kind, predicate, lambda event: self._dispatch(handle, event)
        )
        self._handles[handle.id] = handle

        if not self._connected:
            handle._set_stale(True)

        logger.info(f"Subscribed {handle!r}")
        return handle

    def release(self, handle: SubscriptionHandle) -> None:
        """Stop all deliveries to `handle`. Safe to call more than once."""
        if not handle.active:
            return

        handle.active = False
        self._handles.pop(handle.id, None)
        if handle._channel_subscription is not None:
            self._channel.unsubscribe(handle._channel_subscription)
            handle._channel_subscription = None

        logger.info(f"Released {handle!r}")

    def _dispatch(self, handle: SubscriptionHandle, event: ChangeEvent) -> None:
        if not handle.active:
            logger.debug(f"Dropping event for released {handle!r}")
            return
        handle.handler(event)

    # ============================================================
    # Reconnect-driven reconciliation
    # ============================================================
    def _on_connection_change(self, state: ConnectionState) -> None:
        if state == ConnectionState.DISCONNECTED:
            self._connected = False
            logger.warning(
                f"Notification channel disconnected; marking {len(self._handles)} "
                f"subscription(s) stale"
            )
            for handle in list(self._handles.values()):
                handle._set_stale(True)
            return

        self._connected = True
        logger.info("Notification channel reconnected; reconciling subscriptions")
        if self._resync_task is not None and not self._resync_task.done():
            self._resync_task.cancel()
        self._resync_task = asyncio.get_running_loop().create_task(self._resync_after_reconnect())

    async def _resync_after_reconnect(self) -> None:
        try:
            await self.resync_all()
        except ConsultError as e:
            # Subscriptions stay stale; the next reconnect or an explicit
            # resync_all() retries.
            logger.error(f"Reconciliation after reconnect failed: {e}")

    async def resync_all(self) -> None:
        """Re-fetch every active subscription from the record store.

        Raises:
            TransientStoreError: If the store cannot be reached
        """
        for handle in list(self._handles.values()):
            await self.resync(handle)

    async def resync(self, handle: SubscriptionHandle) -> int:
        """Re-fetch one subscription's predicate and feed the records to its handler.

        Returns:
            Number of records delivered (0 if the handle was released meanwhile)
        """
        if not handle.active:
            return 0

        records = await self._store.select_many(
            handle.kind,
            handle.predicate.as_filter(),
            order_by=DEFAULT_ORDER.get(handle.kind),
        )

        # Released while the fetch was in flight
        if not handle.active:
            return 0

        operation = (
            ChangeOperation.INSERT if handle.kind == EntityKind.MESSAGE else ChangeOperation.UPDATE
        )
        delivered = 0
        for record in records:
            if not handle.active:
                break
            handle.handler(ChangeEvent(
                kind=handle.kind,
                operation=operation,
                payload=record,
                predicate=handle.predicate,
                resync=True,
            ))
            delivered += 1

        if self._connected:
            handle._set_stale(False)

        logger.debug(f"Reconciled {handle!r}: {delivered} record(s)")
        return delivered

    async def close(self) -> None:
        """Release every subscription and stop listening to the channel."""
        for handle in list(self._handles.values()):
            self.release(handle)
        self._remove_listener()

        if self._resync_task is not None and not self._resync_task.done():
            self._resync_task.cancel()
            try:
                await self._resync_task
            except asyncio.CancelledError:
                pass
        self._resync_task = None
