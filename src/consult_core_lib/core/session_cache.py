"""Per-client read model for one case.

A SessionCache combines the results of this client's own writes (merged
immediately) with remote changes delivered by the ChangeReconciler. Both paths
merge idempotently:

- Case snapshots: last updated_at wins (version breaks ties); no field merge
- Messages: inserted if the id is new, otherwise ignored

The cache is scoped: open() subscribes and loads, close() releases the
subscriptions and detaches from the thread manager, which cancels any pending
synthetic reply for the case.
"""

import logging
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from consult_core_lib.auth.request_context import SessionContext
from consult_core_lib.core.reconciler import ChangeReconciler, SubscriptionHandle
from consult_core_lib.core.thread import MessageThread
from consult_core_lib.core.thread_manager import ConsultationThreadManager
from consult_core_lib.errors import ConsultError
from consult_core_lib.infrastructure.base import DEFAULT_ORDER, RecordStore
from consult_core_lib.models.case import Case
from consult_core_lib.models.events import ChangeEvent, EntityKind, Predicate
from consult_core_lib.models.message import Message, SenderRole

logger = logging.getLogger(__name__)


class SessionCache:
    """Live view of one case and its consultation thread.

    Usage:
        async with SessionCache(ctx, case_id, store, reconciler, threads) as view:
            view.case, view.messages, view.composing
            await view.send("I have a fever")
    """

    def __init__(
        self,
        ctx: SessionContext,
        case_id: str,
        store: RecordStore,
        reconciler: ChangeReconciler,
        threads: ConsultationThreadManager,
    ):
        self.ctx = ctx
        self.case_id = case_id
        self._store = store
        self._reconciler = reconciler
        self._threads = threads

        self._case: Optional[Case] = None
        self._thread = MessageThread(case_id)
        self._handles: List[SubscriptionHandle] = []
        self._detach: Optional[Callable[[], None]] = None

        self.loading = False
        self.error: Optional[ConsultError] = None
        self.is_open = False

    # ============================================================
    # Read path
    # ============================================================
    @property
    def case(self) -> Optional[Case]:
        return self._case

    @property
    def messages(self) -> List[Message]:
        """Messages ordered by (timestamp, id)."""
        return self._thread.messages

    @property
    def stale(self) -> bool:
        """True while the change feed is down and this view has not been reconciled."""
        return any(handle.stale for handle in self._handles)

    @property
    def composing(self) -> bool:
        """True while a synthetic responder reply is pending for this case."""
        return self._threads.is_composing(self.case_id)

    # ============================================================
    # Lifecycle
    # ============================================================
    async def open(self) -> "SessionCache":
        """Subscribe to case and message changes, then load current state.

        Subscriptions are taken before the initial fetch so nothing committed
        in between is missed. Load failures are recorded in `error`.

        Raises:
            Unauthorized: If the session may not read this case
        """
        if self.is_open:
            return self

        self.ctx.require_case_access(self.case_id)
        self.is_open = True

        self._handles = [
            self._reconciler.subscribe(
                EntityKind.CASE, Predicate.eq("id", self.case_id), self._on_case_event
            ),
            self._reconciler.subscribe(
                EntityKind.MESSAGE, Predicate.eq("case_id", self.case_id), self._on_message_event
            ),
        ]
        self._detach = self._threads.attach(self.case_id, self.merge_message)

        await self.refresh()
        return self

    async def refresh(self) -> None:
        """Re-read the case and its thread from the record store."""
        self.loading = True
        try:
            record = await self._store.select_one(EntityKind.CASE, self.case_id)
            self.merge_case(Case.from_record(record), authoritative=True)

            records = await self._store.select_many(
                EntityKind.MESSAGE,
                {"case_id": self.case_id},
                order_by=DEFAULT_ORDER[EntityKind.MESSAGE],
            )
            for r in records:
                self.merge_message(Message.from_record(r))
            self.error = None
        except ConsultError as e:
            logger.error(f"Failed to load case {self.case_id}: {e}")
            self.error = e
        finally:
            self.loading = False

    async def close(self) -> None:
        """Release subscriptions and cancel pending synthetic replies."""
        if not self.is_open:
            return
        self.is_open = False

        for handle in self._handles:
            self._reconciler.release(handle)
        if self._detach is not None:
            self._detach()
            self._detach = None

        logger.debug(f"Closed view of case {self.case_id}")

    async def __aenter__(self) -> "SessionCache":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ============================================================
    # Writes
    # ============================================================
    async def send(self, text: str) -> Optional[Message]:
        """Post a message as this session's role."""
        role = SenderRole.RESPONDER if self.ctx.is_clinician else SenderRole.PATIENT
        return await self._threads.send(self.ctx, self.case_id, role, text)

    # ============================================================
    # Merging
    # ============================================================
    def merge_case(self, case: Case, authoritative: bool = False) -> bool:
        """Apply a case snapshot if it is newer than the cached one.

        Args:
            case: Incoming snapshot
            authoritative: The snapshot was just re-read from the record store.
                It replaces the cached case whenever they differ, even when
                its (updated_at, version) is older: racing last-write-wins
                writers with skewed clocks can commit the older stamp last.

        Returns:
            True if the cached case changed
        """
        if case.id != self.case_id:
            return False
        if authoritative:
            if case == self._case:
                return False
        elif not case.supersedes(self._case):
            return False

        self._case = case
        self._threads.observe_case(case)
        return True

    def merge_message(self, message: Message) -> bool:
        """Insert a message unless its id is already present.

        Returns:
            True if the message was new
        """
        if message.case_id != self.case_id:
            return False
        if not self._thread.add(message):
            return False

        self._threads.observe_message(message)
        return True

    def _on_case_event(self, event: ChangeEvent) -> None:
        try:
            case = Case.from_record(event.payload)
        except PydanticValidationError as e:
            logger.warning(f"Discarding malformed case event for {self.case_id}: {e}")
            return
        self.merge_case(case, authoritative=event.resync)

    def _on_message_event(self, event: ChangeEvent) -> None:
        try:
            message = Message.from_record(event.payload)
        except PydanticValidationError as e:
            logger.warning(f"Discarding malformed message event for {self.case_id}: {e}")
            return
        self.merge_message(message)
