"""Actor context for consultation core operations.

This module provides the explicit session context passed into every core
operation, and its extraction from API Gateway headers.
"""

from consult_core_lib.auth.request_context import (
    ActorRole,
    SessionContext,
    get_session_context,
)

__all__ = [
    "ActorRole",
    "SessionContext",
    "get_session_context",
]
