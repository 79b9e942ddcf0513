"""Clinician board: live list of every case.

Clinicians watch all cases at once, split into the waiting queue and
everything else. Any case insert or update delivered by the change feed is
merged by id with the same last-updated-wins rule as SessionCache; a
reconnect re-fetches the full list through the reconciler, and re-fetched rows
replace whatever the board holds.
"""

import logging
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from consult_core_lib.auth.request_context import SessionContext
from consult_core_lib.core.reconciler import ChangeReconciler, SubscriptionHandle
from consult_core_lib.core.thread_manager import ConsultationThreadManager
from consult_core_lib.errors import ConsultError
from consult_core_lib.infrastructure.base import DEFAULT_ORDER, RecordStore
from consult_core_lib.models.case import Case, CaseStatus
from consult_core_lib.models.events import ChangeEvent, EntityKind, Predicate

logger = logging.getLogger(__name__)


class CaseBoard:
    """Clinician-only live view of all cases, newest first."""

    def __init__(
        self,
        ctx: SessionContext,
        store: RecordStore,
        reconciler: ChangeReconciler,
        threads: Optional[ConsultationThreadManager] = None,
    ):
        self.ctx = ctx
        self._store = store
        self._reconciler = reconciler
        self._threads = threads
        self._cases: Dict[str, Case] = {}
        self._handle: Optional[SubscriptionHandle] = None

        self.loading = False
        self.error: Optional[ConsultError] = None

    @property
    def cases(self) -> List[Case]:
        """All known cases ordered by created_at descending."""
        ordered = sorted(self._cases.values(), key=lambda c: c.id)
        return sorted(ordered, key=lambda c: c.created_at, reverse=True)

    @property
    def waiting(self) -> List[Case]:
        return [c for c in self.cases if c.status == CaseStatus.WAITING]

    @property
    def others(self) -> List[Case]:
        return [c for c in self.cases if c.status != CaseStatus.WAITING]

    @property
    def stale(self) -> bool:
        return self._handle is not None and self._handle.stale

    def get(self, case_id: str) -> Optional[Case]:
        return self._cases.get(case_id)

    async def open(self) -> "CaseBoard":
        """Subscribe to every case change and load the current list.

        Raises:
            Unauthorized: If the session lacks the clinician capability
        """
        self.ctx.require_clinician("list cases")
        if self._handle is None:
            self._handle = self._reconciler.subscribe(
                EntityKind.CASE, Predicate.all(), self._on_case_event
            )
        await self.refresh()
        return self

    async def refresh(self) -> None:
        self.loading = True
        try:
            records = await self._store.select_many(
                EntityKind.CASE, order_by=DEFAULT_ORDER[EntityKind.CASE]
            )
            for record in records:
                self.merge_case(Case.from_record(record), authoritative=True)
            self.error = None
        except ConsultError as e:
            logger.error(f"Failed to load case board: {e}")
            self.error = e
        finally:
            self.loading = False

    async def close(self) -> None:
        if self._handle is not None:
            self._reconciler.release(self._handle)
            self._handle = None

    async def __aenter__(self) -> "CaseBoard":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def merge_case(self, case: Case, authoritative: bool = False) -> bool:
        """Merge one case; store re-reads (`authoritative`) replace any differing snapshot."""
        current = self._cases.get(case.id)
        if authoritative:
            if case == current:
                return False
        elif not case.supersedes(current):
            return False
        self._cases[case.id] = case
        if self._threads is not None:
            self._threads.observe_case(case)
        return True

    def _on_case_event(self, event: ChangeEvent) -> None:
        try:
            case = Case.from_record(event.payload)
        except PydanticValidationError as e:
            logger.warning(f"Discarding malformed case event: {e}")
            return
        self.merge_case(case, authoritative=event.resync)
