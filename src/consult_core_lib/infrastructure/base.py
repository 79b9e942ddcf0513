"""
Interfaces for the external collaborators of the consultation core.

RecordStore: durable per-entity CRUD with ordered range queries.
NotificationChannel: at-least-once, predicate-filtered change events that may
disconnect and reconnect.

Concrete adapters:
- infrastructure.memory: in-process store and channel
- clients.postgrest_store: REST record store
- infrastructure.redis_channel: Redis pub/sub change feed
"""

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from consult_core_lib.models.events import ChangeEvent, EntityKind, Predicate

ORDER_ASC = "asc"
ORDER_DESC = "desc"

OrderBy = Sequence[Tuple[str, str]]
"""Sequence of (field, ORDER_ASC | ORDER_DESC) pairs, most significant first."""

EventHandler = Callable[[ChangeEvent], None]


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


ConnectionListener = Callable[[ConnectionState], None]

# Default ordering used when re-fetching each entity kind
DEFAULT_ORDER: Dict[EntityKind, OrderBy] = {
    EntityKind.CASE: (("created_at", ORDER_DESC), ("id", ORDER_ASC)),
    EntityKind.MESSAGE: (("timestamp", ORDER_ASC), ("id", ORDER_ASC)),
}

_subscription_ids = itertools.count(1)


@dataclass
class ChannelSubscription:
    """Handle returned by NotificationChannel.subscribe()."""

    kind: EntityKind
    predicate: Predicate
    on_event: EventHandler
    id: int = 0

    def __post_init__(self):
        if not self.id:
            self.id = next(_subscription_ids)


class RecordStore(ABC):
    """Abstract record store consumed by the core."""

    @abstractmethod
    async def insert(self, kind: EntityKind, record: Dict[str, Any]) -> str:
        """Persist a new record and return its id.

        Raises:
            StoreError: If the store rejects the record
            TransientStoreError: On network/store failure
        """

    @abstractmethod
    async def select_one(self, kind: EntityKind, record_id: str) -> Dict[str, Any]:
        """Fetch one record by id.

        Raises:
            NotFoundError: If no record has this id
            TransientStoreError: On network/store failure
        """

    @abstractmethod
    async def select_many(
        self,
        kind: EntityKind,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch records matching all equality `filters`, ordered by `order_by`."""

    @abstractmethod
    async def update(
        self,
        kind: EntityKind,
        record_id: str,
        patch: Dict[str, Any],
        match: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Apply `patch` to a record and return the updated record.

        Args:
            kind: Entity kind
            record_id: Record to update
            patch: Fields to overwrite
            match: Extra equality guards; the update only applies when the
                stored record still has these values

        Raises:
            NotFoundError: If no record has this id
            ConcurrentUpdateError: If `match` guards fail
            TransientStoreError: On network/store failure
        """

    async def close(self) -> None:
        """Release any persistent connections."""


class NotificationChannel(ABC):
    """Abstract change feed consumed by the ChangeReconciler."""

    @abstractmethod
    def subscribe(
        self, kind: EntityKind, predicate: Predicate, on_event: EventHandler
    ) -> ChannelSubscription:
        """Start delivering events of `kind` matching `predicate` to `on_event`."""

    @abstractmethod
    def unsubscribe(self, subscription: ChannelSubscription) -> None:
        """Stop delivery. No callback for `subscription` runs after this returns."""

    @abstractmethod
    def add_connection_listener(self, listener: ConnectionListener) -> Callable[[], None]:
        """Register a disconnect/reconnect listener; returns a function removing it."""

    async def close(self) -> None:
        """Tear down the underlying connection."""
