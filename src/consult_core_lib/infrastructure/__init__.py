"""
Record store and notification channel interfaces with their adapters.

Redis adapters are imported from their modules directly so that the in-memory
adapters stay usable without a Redis server.
"""

from consult_core_lib.infrastructure.base import (
    DEFAULT_ORDER,
    ORDER_ASC,
    ORDER_DESC,
    ChannelSubscription,
    ConnectionState,
    NotificationChannel,
    RecordStore,
)
from consult_core_lib.infrastructure.memory import (
    InMemoryNotificationChannel,
    InMemoryRecordStore,
)

__all__ = [
    # Interfaces
    "RecordStore", "NotificationChannel", "ChannelSubscription", "ConnectionState",
    # Ordering
    "DEFAULT_ORDER", "ORDER_ASC", "ORDER_DESC",
    # In-memory adapters
    "InMemoryRecordStore", "InMemoryNotificationChannel",
]
