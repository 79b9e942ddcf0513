"""Change feed models.

ChangeEvent is the unit delivered by a notification channel. Events are
transient: the core never persists them, and consumers must tolerate the same
event arriving more than once.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from consult_core_lib.models.common import utc_now


class EntityKind(str, Enum):
    """Entity families exposed by the record store."""

    CASE = "case"
    MESSAGE = "message"


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


class Predicate(BaseModel):
    """
    Equality filter over one record field.

    A predicate with no field matches every record of its kind (used by the
    clinician board to watch all cases).
    """

    field: Optional[str] = None
    value: Optional[Any] = None

    @classmethod
    def all(cls) -> 'Predicate':
        return cls()

    @classmethod
    def eq(cls, field: str, value: Any) -> 'Predicate':
        return cls(field=field, value=getattr(value, "value", value))

    @property
    def is_wildcard(self) -> bool:
        return self.field is None

    def matches(self, record: Dict[str, Any]) -> bool:
        if self.field is None:
            return True
        return record.get(self.field) == self.value

    def as_filter(self) -> Dict[str, Any]:
        """Filter mapping understood by RecordStore.select_many()."""
        if self.field is None:
            return {}
        return {self.field: self.value}

    def __str__(self) -> str:
        if self.field is None:
            return "*"
        return f"{self.field}=eq.{self.value}"

    class Config:
        frozen = True


class ChangeEvent(BaseModel):
    """One mutation observed on the change feed."""

    kind: EntityKind
    operation: ChangeOperation
    payload: Dict[str, Any] = Field(description="Full record after the change")
    predicate: Optional[Predicate] = Field(
        default=None,
        description="Subscription predicate that matched this event"
    )
    resync: bool = Field(
        default=False,
        description="True when produced by a reconciliation re-fetch rather than the channel"
    )
    observed_at: datetime = Field(default_factory=utc_now)

    @property
    def record_id(self) -> Optional[str]:
        return self.payload.get("id")

    def matched(self, predicate: Predicate) -> 'ChangeEvent':
        """Copy of this event tagged with the subscription predicate it matched."""
        return self.model_copy(update={"predicate": predicate})

    class Config:
        frozen = True
