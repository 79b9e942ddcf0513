"""Ordered, de-duplicated message log for one case."""

import bisect
import logging
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from consult_core_lib.models.message import Message

logger = logging.getLogger(__name__)


class MessageThread:
    """Append-only message log sorted by (timestamp, id).

    A message id is stored at most once no matter how often it is delivered
    (direct-write echo plus channel event plus resync). Messages are never
    removed; a late delivery with an earlier timestamp is inserted at its
    sorted position.
    """

    def __init__(self, case_id: Optional[str] = None):
        self.case_id = case_id
        self._keys: List[Tuple[datetime, str]] = []
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}

    def add(self, message: Message) -> bool:
        """Insert `message` unless its id is already present.

        Returns:
            True if the message was inserted, False for a duplicate

        Raises:
            ValueError: If the message belongs to another case
        """
        if self.case_id is not None and message.case_id != self.case_id:
            raise ValueError(
                f"Message {message.id} belongs to case {message.case_id}, not {self.case_id}"
            )

        if message.id in self._by_id:
            logger.debug(f"Ignoring duplicate message {message.id}")
            return False

        key = message.ordering_key
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._by_id[message.id] = message
        return True

    def extend(self, messages: Iterable[Message]) -> int:
        """Add several messages; returns how many were new."""
        return sum(1 for message in messages if self.add(message))

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    @property
    def messages(self) -> List[Message]:
        """Copy of the ordered message list."""
        return list(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)
