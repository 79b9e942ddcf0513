"""Session context for core operations.

Every core operation receives an explicit SessionContext describing the actor
(user id, role) and, for patients, the one case they own. The context can be
built from the X-User-* headers an upstream gateway adds after authenticating
the caller; the core trusts the role it is given and does not authenticate.
"""

import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from fastapi import HTTPException, Request, status

from consult_core_lib.errors import Unauthorized

logger = logging.getLogger(__name__)

CLINICIAN_ROLE_NAMES = {"clinician", "doctor", "responder"}


class ActorRole(str, Enum):
    """Capability classes recognised by the core."""

    PATIENT = "patient"
    CLINICIAN = "clinician"


@dataclass(frozen=True)
class SessionContext:
    """Actor on whose behalf a core operation runs.

    Attributes:
        user_id: Authenticated user identifier
        role: Actor role (patient or clinician)
        case_id: Case owned by a patient session (None until intake is submitted)
        correlation_id: Optional correlation ID for request tracing
    """

    user_id: str
    role: ActorRole = ActorRole.PATIENT
    case_id: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def is_clinician(self) -> bool:
        return self.role == ActorRole.CLINICIAN

    def with_case(self, case_id: str) -> "SessionContext":
        """Copy of this context bound to `case_id` (after intake submission)."""
        return replace(self, case_id=case_id)

    def can_access_case(self, case_id: str) -> bool:
        return self.is_clinician or (self.case_id is not None and self.case_id == case_id)

    def require_case_access(self, case_id: str) -> None:
        """Raise Unauthorized unless this actor may read/write `case_id`."""
        if not self.can_access_case(case_id):
            logger.warning(
                f"Denied case access: user={self.user_id} role={self.role.value} case={case_id}"
            )
            raise Unauthorized(f"access case {case_id}", self.role.value)

    def require_clinician(self, action: str) -> None:
        """Raise Unauthorized unless this actor has the clinician capability."""
        if not self.is_clinician:
            logger.warning(f"Denied {action}: user={self.user_id} role={self.role.value}")
            raise Unauthorized(action, self.role.value)


def get_session_context(request: Request) -> SessionContext:
    """Extract the session context from API Gateway headers.

    Headers:
        X-User-ID: required user identifier
        X-User-Roles: JSON array of role names; any clinician role grants
            the clinician capability
        X-Case-ID: case owned by a patient session (optional)
        X-Correlation-ID: request tracing id (optional)

    Args:
        request: FastAPI request object

    Returns:
        SessionContext for the caller

    Raises:
        HTTPException: If required X-User-ID header is missing
    """
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        logger.error("Missing X-User-ID header in request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header required (should be added by API Gateway)",
        )

    # Parse roles from JSON array
    roles = []
    roles_header = request.headers.get("X-User-Roles")
    if roles_header:
        try:
            roles = json.loads(roles_header)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse X-User-Roles header: {roles_header}")
    if not isinstance(roles, list):
        roles = [roles]

    is_clinician = any(str(r).lower() in CLINICIAN_ROLE_NAMES for r in roles)

    return SessionContext(
        user_id=user_id,
        role=ActorRole.CLINICIAN if is_clinician else ActorRole.PATIENT,
        case_id=request.headers.get("X-Case-ID"),
        correlation_id=request.headers.get("X-Correlation-ID"),
    )
