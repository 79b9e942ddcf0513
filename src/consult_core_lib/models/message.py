"""Consultation message model.

Messages are append-only: once created they are never mutated or deleted.
Threads order them by (timestamp, id) so ties resolve deterministically.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from consult_core_lib.models.common import parse_utc_timestamp, utc_now


class SenderRole(str, Enum):
    """Who wrote a message."""

    PATIENT = "patient"
    RESPONDER = "responder"


class Message(BaseModel):
    """One immutable entry in a case's consultation thread."""

    id: str = Field(default_factory=lambda: str(uuid4()), min_length=1)
    case_id: str = Field(min_length=1, description="Owning case (immutable)")
    sender: SenderRole
    text: str = Field(description="Message body, never blank")
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator('sender', mode='before')
    @classmethod
    def legacy_sender(cls, v):
        # Older records label clinician messages as "doctor"
        return SenderRole.RESPONDER if v == "doctor" else v

    @field_validator('text')
    @classmethod
    def text_not_blank(cls, v):
        """Ensure text is not just whitespace"""
        if not v or not v.strip():
            raise ValueError("Message text cannot be empty")
        return v.strip()

    @field_validator('timestamp', mode='before')
    @classmethod
    def aware_timestamp(cls, v):
        return parse_utc_timestamp(v)

    @property
    def ordering_key(self) -> Tuple[datetime, str]:
        return (self.timestamp, self.id)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Message':
        return cls.model_validate(record)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

    class Config:
        frozen = True
