"""Error taxonomy for the consultation core.

Every error raised by the core derives from ConsultError so callers can catch
the whole family in one place.

Terminal errors (state unchanged, surfaced to the caller):
- ValidationError: missing or invalid intake fields
- Unauthorized: actor lacks the capability required for an operation
- InvalidTransition: target status unreachable from the current status
- NotFoundError: case or message id absent from the record store
- ConcurrentUpdateError: a guarded (compare-and-swap) update lost a race

Infrastructure errors:
- StoreError / TransientStoreError: record store failures
- ChannelDisconnect: notification stream dropped
"""

from typing import Any, Dict, List, Optional


class ConsultError(Exception):
    """Base class for all consultation core errors."""


class ValidationError(ConsultError):
    """Intake fields are missing or invalid."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class Unauthorized(ConsultError):
    """Actor lacks the capability required for the requested operation."""

    def __init__(self, action: str, role: Optional[str] = None):
        super().__init__(f"Role '{role}' is not allowed to {action}")
        self.action = action
        self.role = role


class InvalidTransition(ConsultError):
    """Requested status is not reachable from the current status."""

    def __init__(self, case_id: str, from_status: Any, to_status: Any):
        super().__init__(
            f"Invalid transition for case {case_id}: {_value(from_status)} → {_value(to_status)}"
        )
        self.case_id = case_id
        self.from_status = from_status
        self.to_status = to_status


class NotFoundError(ConsultError):
    """Record with the given id does not exist."""

    def __init__(self, kind: Any, record_id: str):
        super().__init__(f"{_value(kind)} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class ConcurrentUpdateError(ConsultError):
    """Guarded update failed because the record changed since it was read."""

    def __init__(self, kind: Any, record_id: str, expected: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"{_value(kind)} {record_id} was modified concurrently (expected {expected})"
        )
        self.kind = kind
        self.record_id = record_id
        self.expected = expected or {}


class StoreError(ConsultError):
    """Record store rejected the operation."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientStoreError(StoreError):
    """Network or store failure that may succeed if retried."""


class ChannelDisconnect(ConsultError):
    """Notification channel connection was lost."""


def _value(item: Any) -> Any:
    return getattr(item, "value", item)
