"""Case state machine.

Owns case creation and every status change. Creation is performed by the
submitting patient and always yields WAITING; all other transitions require
the clinician capability and must follow VALID_TRANSITIONS.

Status writes are last-write-wins by default. With
`optimistic_status_updates` enabled the write is guarded by the version that
was read, so a concurrent clinician write is detected instead of silently
overwritten.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from consult_core_lib.auth.request_context import ActorRole, SessionContext
from consult_core_lib.config import ConsultSettings, get_settings
from consult_core_lib.errors import InvalidTransition, Unauthorized, ValidationError
from consult_core_lib.infrastructure.base import DEFAULT_ORDER, RecordStore
from consult_core_lib.models.case import Case, CaseIntake, CaseStatus, is_valid_transition
from consult_core_lib.models.common import Clock, utc_now
from consult_core_lib.models.events import EntityKind
from consult_core_lib.utils.resilience import store_retry

logger = logging.getLogger(__name__)


class CaseStateMachine:
    """Authorizes and persists case lifecycle changes.

    Args:
        store: Record store holding cases
        settings: Concurrency and retry configuration
        clock: Time source for created_at/updated_at
    """

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[ConsultSettings] = None,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock

        retrying = store_retry(self._settings.store_retry_attempts)
        self._insert = retrying(store.insert)
        self._select_one = retrying(store.select_one)
        self._select_many = retrying(store.select_many)
        self._update = retrying(store.update)

    async def create_case(
        self, ctx: SessionContext, intake: Union[CaseIntake, Dict[str, Any]]
    ) -> str:
        """Validate an intake and persist a new WAITING case.

        Args:
            ctx: Submitting patient session
            intake: CaseIntake or a mapping with the intake fields

        Returns:
            The new case id

        Raises:
            Unauthorized: If the session is not a patient session
            ValidationError: If required intake fields are missing or invalid
            TransientStoreError: If the store write fails
        """
        if ctx.role != ActorRole.PATIENT:
            raise Unauthorized("submit an intake case", ctx.role.value)

        if not isinstance(intake, CaseIntake):
            try:
                intake = CaseIntake.model_validate(intake)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid intake submission", errors=e.errors(include_url=False)
                ) from e

        case = Case.from_intake(intake, now=self._clock())
        case_id = await self._insert(EntityKind.CASE, case.to_record())

        logger.info(
            f"Created case {case_id} (urgency={case.urgency_level.value}) for user {ctx.user_id}"
        )
        return case_id

    async def get_case(self, ctx: SessionContext, case_id: str) -> Case:
        """Fetch one case.

        Raises:
            Unauthorized: If a patient asks for a case that is not theirs
            NotFoundError: If the case does not exist
        """
        ctx.require_case_access(case_id)
        record = await self._select_one(EntityKind.CASE, case_id)
        return Case.from_record(record)

    async def list_cases(self, ctx: SessionContext) -> List[Case]:
        """All cases, newest first (clinician only)."""
        ctx.require_clinician("list cases")
        records = await self._select_many(
            EntityKind.CASE, order_by=DEFAULT_ORDER[EntityKind.CASE]
        )
        return [Case.from_record(r) for r in records]

    async def transition(
        self,
        ctx: SessionContext,
        case_id: str,
        target: Union[CaseStatus, str],
    ) -> Case:
        """Move a case to `target` status on behalf of the acting clinician.

        Args:
            ctx: Acting session; must have the clinician capability
            case_id: Case to transition
            target: Desired status

        Returns:
            The updated Case

        Raises:
            Unauthorized: If the actor lacks the clinician capability
            ValidationError: If `target` is not a known status
            NotFoundError: If the case does not exist
            InvalidTransition: If (current, target) is not an allowed edge
            ConcurrentUpdateError: If optimistic updates are enabled and the
                case changed since it was read
        """
        ctx.require_clinician(f"transition case {case_id}")

        try:
            target = CaseStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown case status: {target}") from None

        current = Case.from_record(await self._select_one(EntityKind.CASE, case_id))
        if not is_valid_transition(current.status, target):
            logger.warning(
                f"Rejected transition for case {case_id}: "
                f"{current.status.value} → {target.value} by {ctx.user_id}"
            )
            raise InvalidTransition(case_id, current.status, target)

        # updated_at never moves backwards even if clocks disagree
        now = max(self._clock(), current.updated_at)
        patch = {
            "status": target.value,
            "updated_at": now.isoformat(),
            "version": current.version + 1,
        }
        match = {"version": current.version} if self._settings.optimistic_status_updates else None

        record = await self._update(EntityKind.CASE, case_id, patch, match=match)
        updated = Case.from_record(record)

        logger.info(
            f"Case {case_id} transitioned {current.status.value} → {target.value} "
            f"by {ctx.user_id} (version {updated.version})"
        )
        return updated
