"""
Shared data models for the consultation core.

This package provides the Pydantic models persisted in the record store and
carried on the change feed.
"""

from consult_core_lib.models.case import (
    # Core case model
    Case,
    CaseIntake,
    CaseStatus,
    UrgencyLevel,

    # Lifecycle
    VALID_TRANSITIONS,
    is_valid_transition,

    # Intake catalogue
    COMMON_SYMPTOMS,
)
from consult_core_lib.models.message import Message, SenderRole
from consult_core_lib.models.events import (
    ChangeEvent,
    ChangeOperation,
    EntityKind,
    Predicate,
)
from consult_core_lib.models.common import Clock, parse_utc_timestamp, utc_now

__all__ = [
    # Core case
    "Case", "CaseIntake", "CaseStatus", "UrgencyLevel",
    # Lifecycle
    "VALID_TRANSITIONS", "is_valid_transition",
    # Intake
    "COMMON_SYMPTOMS",
    # Messages
    "Message", "SenderRole",
    # Change feed
    "ChangeEvent", "ChangeOperation", "EntityKind", "Predicate",
    # Time
    "Clock", "parse_utc_timestamp", "utc_now",
]
