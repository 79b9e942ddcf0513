"""Consultation Core Library

Case lifecycle, change reconciliation, consultation threads and session views
for patient/clinician consultation clients.
"""

__version__ = "0.1.0"

# Export shared models first (no dependencies)
from consult_core_lib.models import (
    Case, CaseIntake, CaseStatus, UrgencyLevel, Message, SenderRole,
    ChangeEvent, EntityKind, Predicate, COMMON_SYMPTOMS,
)

# Errors, actor context and settings
from consult_core_lib.errors import (
    ConsultError,
    ValidationError,
    Unauthorized,
    InvalidTransition,
    NotFoundError,
    ConcurrentUpdateError,
    StoreError,
    TransientStoreError,
    ChannelDisconnect,
)
from consult_core_lib.auth import ActorRole, SessionContext
from consult_core_lib.config import ConsultSettings, get_settings, reset_settings


# Lazy import for the session facade and REST store
# They pull in httpx and the core components, so import them on first use
def __getattr__(name):
    """Lazy import for ConsultationSession and PostgrestRecordStore."""
    if name == "ConsultationSession":
        from consult_core_lib.core import ConsultationSession
        return ConsultationSession
    if name == "PostgrestRecordStore":
        from consult_core_lib.clients import PostgrestRecordStore
        return PostgrestRecordStore
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Models
    "Case", "CaseIntake", "CaseStatus", "UrgencyLevel", "Message", "SenderRole",
    "ChangeEvent", "EntityKind", "Predicate", "COMMON_SYMPTOMS",
    # Errors
    "ConsultError", "ValidationError", "Unauthorized", "InvalidTransition",
    "NotFoundError", "ConcurrentUpdateError", "StoreError", "TransientStoreError",
    "ChannelDisconnect",
    # Actor context
    "ActorRole", "SessionContext",
    # Settings
    "ConsultSettings", "get_settings", "reset_settings",
    # Lazy loaded
    "ConsultationSession", "PostgrestRecordStore",
]
