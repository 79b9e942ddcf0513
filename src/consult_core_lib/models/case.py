"""Case data models - patient intake and consultation lifecycle.

Key Models:
- Case: Root case entity (intake attributes + lifecycle status)
- CaseStatus: Lifecycle status (WAITING → RESPONDER_AVAILABLE ⇄ IN_SESSION → CLOSED)
- CaseIntake: Validated intake submission used to create a case
- UrgencyLevel: Patient-reported urgency

Architecture:
- Status transitions are governed by is_valid_transition()
- Cases are immutable snapshots; every write produces a new Case
- Snapshots are ordered by (updated_at, version) for last-write-wins merging
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from consult_core_lib.models.common import parse_utc_timestamp, utc_now


# ============================================================
# Status & Lifecycle
# ============================================================

class CaseStatus(str, Enum):
    """
    Case lifecycle status.

    Lifecycle Flow:
      WAITING → RESPONDER_AVAILABLE ⇄ IN_SESSION
      RESPONDER_AVAILABLE | IN_SESSION → WAITING (reset)
      WAITING | RESPONDER_AVAILABLE | IN_SESSION → CLOSED (terminal)

    Terminal States: CLOSED (no further transitions)
    """

    WAITING = "waiting"
    """Submitted by the patient, no clinician has picked it up yet."""

    RESPONDER_AVAILABLE = "responder_available"
    """A clinician has reviewed the case and is ready to talk."""

    IN_SESSION = "in_session"
    """Clinician and patient are in an active consultation."""

    CLOSED = "closed"
    """
    TERMINAL STATE: Consultation finished.

    Pending synthetic replies for the case are cancelled when this status
    is observed.
    """

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal"""
        return self == CaseStatus.CLOSED

    @property
    def is_active(self) -> bool:
        """Check if case is active (not terminal)"""
        return not self.is_terminal


VALID_TRANSITIONS: Dict[CaseStatus, FrozenSet[CaseStatus]] = {
    CaseStatus.WAITING: frozenset({
        CaseStatus.RESPONDER_AVAILABLE,
        CaseStatus.CLOSED,
    }),
    CaseStatus.RESPONDER_AVAILABLE: frozenset({
        CaseStatus.IN_SESSION,
        CaseStatus.WAITING,
        CaseStatus.CLOSED,
    }),
    CaseStatus.IN_SESSION: frozenset({
        CaseStatus.RESPONDER_AVAILABLE,
        CaseStatus.WAITING,
        CaseStatus.CLOSED,
    }),
    CaseStatus.CLOSED: frozenset(),  # Terminal
}


def is_valid_transition(from_status: CaseStatus, to_status: CaseStatus) -> bool:
    """
    Validate status transition.

    Valid Transitions:
    - WAITING → RESPONDER_AVAILABLE
    - RESPONDER_AVAILABLE → IN_SESSION
    - IN_SESSION → RESPONDER_AVAILABLE
    - RESPONDER_AVAILABLE | IN_SESSION → WAITING (reset)
    - any non-terminal → CLOSED

    Invalid:
    - CLOSED → * (terminal)
    - X → X (no self transitions)
    - WAITING → IN_SESSION (a responder must become available first)
    """
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


class UrgencyLevel(str, Enum):
    """Patient-reported urgency of the intake."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


COMMON_SYMPTOMS: List[str] = [
    "Fever",
    "Headache",
    "Cough",
    "Sore throat",
    "Fatigue",
    "Nausea",
    "Body aches",
    "Dizziness",
    "Chest pain",
    "Shortness of breath",
]
"""Symptoms offered as quick picks on the intake form."""


# ============================================================
# Intake
# ============================================================

class CaseIntake(BaseModel):
    """
    Intake submission from a patient.

    Requires name, age and gender, plus at least one of the common symptom
    set or the free-text symptom detail.
    """

    name: str = Field(description="Patient name", min_length=1, max_length=200)

    age: int = Field(description="Patient age in years", ge=0, le=150)

    gender: str = Field(description="Patient gender", min_length=1, max_length=50)

    common_symptoms: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Quick-pick symptoms; unordered"
    )

    additional_symptoms: Optional[str] = Field(
        default=None,
        description="Free-text symptom detail",
        max_length=5000
    )

    urgency_level: UrgencyLevel = Field(default=UrgencyLevel.MEDIUM)

    @field_validator('name', 'gender', mode='before')
    @classmethod
    def strip_required_text(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator('common_symptoms', mode='before')
    @classmethod
    def normalize_symptoms(cls, v):
        """Drop blank entries; duplicates collapse in the set"""
        if v is None:
            return frozenset()
        return frozenset(s.strip() for s in v if isinstance(s, str) and s.strip())

    @field_validator('additional_symptoms')
    @classmethod
    def blank_detail_is_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v

    @model_validator(mode='after')
    def symptoms_required(self):
        """Ensure at least one symptom source is provided"""
        if not self.common_symptoms and not self.additional_symptoms:
            raise ValueError(
                "At least one common symptom or a symptom description is required"
            )
        return self


# ============================================================
# Case
# ============================================================

class Case(BaseModel):
    """
    Root case entity.
    One patient intake and its consultation lifecycle.
    """

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique case identifier (immutable)",
        min_length=1
    )

    name: str = Field(description="Patient name")
    age: int = Field(description="Patient age in years", ge=0)
    gender: str = Field(description="Patient gender")

    common_symptoms: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Quick-pick symptoms; equality ignores insertion order"
    )

    additional_symptoms: Optional[str] = Field(default=None)

    urgency_level: UrgencyLevel = Field(default=UrgencyLevel.MEDIUM)

    status: CaseStatus = Field(
        default=CaseStatus.WAITING,
        description="Current lifecycle status"
    )

    version: int = Field(
        default=1,
        ge=1,
        description="Incremented on every status write"
    )

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('common_symptoms', mode='before')
    @classmethod
    def null_symptoms(cls, v):
        return frozenset() if v is None else v

    @field_validator('created_at', 'updated_at', mode='before')
    @classmethod
    def aware_timestamps(cls, v):
        return parse_utc_timestamp(v)

    @field_serializer('common_symptoms')
    def serialize_symptoms(self, v: FrozenSet[str]) -> List[str]:
        return sorted(v)

    @model_validator(mode='after')
    def validate_timestamp_ordering(self) -> 'Case':
        """created_at <= updated_at"""
        if self.created_at > self.updated_at:
            raise ValueError(
                f"created_at ({self.created_at}) cannot be after updated_at ({self.updated_at})"
            )
        return self

    # ============================================================
    # Construction & Serialization
    # ============================================================
    @classmethod
    def from_intake(cls, intake: CaseIntake, now: datetime) -> 'Case':
        """Build a fresh WAITING case from a validated intake."""
        return cls(
            name=intake.name,
            age=intake.age,
            gender=intake.gender,
            common_symptoms=intake.common_symptoms,
            additional_symptoms=intake.additional_symptoms,
            urgency_level=intake.urgency_level,
            status=CaseStatus.WAITING,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Case':
        return cls.model_validate(record)

    def to_record(self) -> Dict[str, Any]:
        """Wire representation persisted in the record store."""
        return self.model_dump(mode='json')

    # ============================================================
    # Merging
    # ============================================================
    @property
    def freshness(self):
        """Ordering key for last-write-wins merges."""
        return (self.updated_at, self.version)

    def supersedes(self, other: Optional['Case']) -> bool:
        """True when this snapshot should replace `other` in a materialized view.

        Newer (updated_at, version) wins. Two different snapshots with the same
        freshness come from racing last-write-wins writers; the one delivered
        later reflects the later commit, so it replaces the cached one. An
        identical snapshot (a duplicate delivery) never does.
        """
        if other is None:
            return True
        if self.freshness == other.freshness:
            return self != other
        return self.freshness > other.freshness

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    class Config:
        frozen = True
