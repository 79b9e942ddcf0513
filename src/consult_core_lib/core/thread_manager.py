"""Consultation thread manager.

Owns the append path for case messages and the synthetic responder: after a
patient message is stored, a reply from a fixed template corpus is scheduled
after a random delay. While the reply is pending the case shows a `composing`
indicator for the responder role.

Pending replies are asyncio tasks owned by the manager. They are cancelled
when the last view attached to the case detaches, when the case is observed
in a terminal status, when the manager closes, and (if configured) when a
real responder message arrives first. A cancelled reply never writes.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from consult_core_lib.auth.request_context import SessionContext
from consult_core_lib.config import ConsultSettings, get_settings
from consult_core_lib.errors import Unauthorized
from consult_core_lib.infrastructure.base import DEFAULT_ORDER, RecordStore
from consult_core_lib.core.thread import MessageThread
from consult_core_lib.models.case import Case
from consult_core_lib.models.common import Clock, utc_now
from consult_core_lib.models.events import EntityKind
from consult_core_lib.models.message import Message, SenderRole
from consult_core_lib.utils.resilience import store_retry

logger = logging.getLogger(__name__)

RESPONDER_TEMPLATES: Sequence[str] = (
    "Thank you for sharing that information. Can you tell me more about when these symptoms started?",
    "I understand. Have you experienced any similar symptoms before?",
    "That's helpful information. Are there any activities that make the symptoms better or worse?",
    "I see. On a scale of 1-10, how would you rate your current discomfort level?",
    "Thank you for the details. Based on what you've shared, I'd like to ask a few follow-up questions.",
    "I appreciate you being thorough. Are you currently taking any medications?",
    "That gives me a good understanding. Have you noticed any patterns with these symptoms?",
)

Sleeper = Callable[[float], Awaitable[None]]
MessageListener = Callable[[Message], None]


class ConsultationThreadManager:
    """Append-only message log per case plus the synthetic responder.

    Args:
        store: Record store holding messages
        settings: Reply delay interval, suppression flag and retry policy
        rng: Random source for reply delay and template choice
        clock: Time source for message timestamps
        sleep: Awaitable delay used by pending replies
        templates: Synthetic reply corpus
    """

    def __init__(
        self,
        store: RecordStore,
        settings: Optional[ConsultSettings] = None,
        rng: Optional[random.Random] = None,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
        templates: Sequence[str] = RESPONDER_TEMPLATES,
    ):
        if not templates:
            raise ValueError("templates must not be empty")

        self._store = store
        self._settings = settings or get_settings()
        self._rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep
        self._templates = list(templates)

        self._pending: Dict[str, Set[asyncio.Task]] = {}
        self._listeners: Dict[str, List[MessageListener]] = {}
        self._closed_cases: Set[str] = set()
        self._synthetic_ids: Dict[str, Set[str]] = {}
        self._closed = False

        retrying = store_retry(self._settings.store_retry_attempts)
        self._insert = retrying(store.insert)
        self._select_many = retrying(store.select_many)

    # ============================================================
    # Views
    # ============================================================
    def attach(self, case_id: str, listener: MessageListener) -> Callable[[], None]:
        """Register a view for direct-write messages of `case_id`.

        Returns:
            A detach function. When the last view of a case detaches, its
            pending synthetic replies are cancelled and the per-case
            bookkeeping is dropped; the next view reloads it from snapshots.
        """
        self._listeners.setdefault(case_id, []).append(listener)

        def detach() -> None:
            listeners = self._listeners.get(case_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(case_id, None)
                self.cancel_pending(case_id, reason="view released")
                self._forget(case_id)

        return detach

    def is_composing(self, case_id: str) -> bool:
        """True while a synthetic responder reply is pending for the case."""
        return bool(self._pending.get(case_id))

    def pending_count(self, case_id: str) -> int:
        return len(self._pending.get(case_id, ()))

    # ============================================================
    # Append path
    # ============================================================
    async def send(
        self,
        ctx: SessionContext,
        case_id: str,
        sender_role: SenderRole,
        text: str,
    ) -> Optional[Message]:
        """Append a message to a case thread.

        Whitespace-only text is a silent no-op. A patient message schedules a
        synthetic responder reply.

        Args:
            ctx: Acting session; patients may only post to their own case
            case_id: Target case
            sender_role: PATIENT for patient sessions, RESPONDER for clinicians
            text: Message body (trimmed)

        Returns:
            The stored Message, or None when the text was blank

        Raises:
            Unauthorized: If the actor may not post to this case or as this role
            TransientStoreError: If the store write fails
        """
        sender_role = SenderRole(sender_role)
        ctx.require_case_access(case_id)
        self._check_sender(ctx, sender_role)

        body = (text or "").strip()
        if not body:
            logger.debug(f"Ignoring blank message for case {case_id}")
            return None

        message = await self._append(case_id, sender_role, body)

        if sender_role == SenderRole.PATIENT:
            self._schedule_reply(case_id)
        else:
            self.observe_message(message)

        return message

    async def load_thread(self, ctx: SessionContext, case_id: str) -> List[Message]:
        """Fetch a case's messages from the store in thread order."""
        ctx.require_case_access(case_id)
        records = await self._select_many(
            EntityKind.MESSAGE,
            {"case_id": case_id},
            order_by=DEFAULT_ORDER[EntityKind.MESSAGE],
        )
        thread = MessageThread(case_id)
        thread.extend(Message.from_record(r) for r in records)
        return thread.messages

    def _check_sender(self, ctx: SessionContext, sender_role: SenderRole) -> None:
        expected = SenderRole.RESPONDER if ctx.is_clinician else SenderRole.PATIENT
        if sender_role != expected:
            raise Unauthorized(f"send as {sender_role.value}", ctx.role.value)

    async def _append(
        self, case_id: str, sender: SenderRole, text: str, synthetic: bool = False
    ) -> Message:
        message = Message(case_id=case_id, sender=sender, text=text, timestamp=self._clock())
        if synthetic:
            self._synthetic_ids.setdefault(case_id, set()).add(message.id)
        await self._insert(EntityKind.MESSAGE, message.to_record())

        for listener in list(self._listeners.get(case_id, ())):
            listener(message)

        return message

    # ============================================================
    # Synthetic responder
    # ============================================================
    def _schedule_reply(self, case_id: str) -> None:
        if self._closed or case_id in self._closed_cases:
            return

        delay = self._rng.uniform(
            self._settings.reply_delay_min_ms, self._settings.reply_delay_max_ms
        ) / 1000.0

        task = asyncio.get_running_loop().create_task(self._reply_after(case_id, delay))
        self._pending.setdefault(case_id, set()).add(task)
        task.add_done_callback(lambda t: self._on_reply_done(case_id, t))

        logger.debug(f"Synthetic reply for case {case_id} scheduled in {delay:.2f}s")

    async def _reply_after(self, case_id: str, delay: float) -> None:
        await self._sleep(delay)

        # Composing ends once the timer fires; a cancel after this point is a no-op
        self._discard(case_id, asyncio.current_task())
        if case_id in self._closed_cases:
            return

        await self._append(
            case_id, SenderRole.RESPONDER, self._rng.choice(self._templates), synthetic=True
        )

    def _discard(self, case_id: str, task: Optional[asyncio.Task]) -> None:
        tasks = self._pending.get(case_id)
        if not tasks or task is None:
            return
        tasks.discard(task)
        if not tasks:
            self._pending.pop(case_id, None)

    def _on_reply_done(self, case_id: str, task: asyncio.Task) -> None:
        self._discard(case_id, task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Synthetic reply for case {case_id} failed: {error}")

    def cancel_pending(self, case_id: str, reason: str = "cancelled") -> int:
        """Cancel every pending synthetic reply for a case.

        Returns:
            Number of replies cancelled
        """
        tasks = self._pending.pop(case_id, set())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} synthetic reply(ies) for case {case_id}: {reason}")
        return len(tasks)

    def observe_message(self, message: Message) -> None:
        """React to a message merged into a view of the case.

        With suppress_synthetic_on_real_reply enabled, a real responder
        message cancels pending synthetic replies for its case.
        """
        if message.sender != SenderRole.RESPONDER:
            return
        if message.id in self._synthetic_ids.get(message.case_id, ()):
            return
        if self._settings.suppress_synthetic_on_real_reply and self.is_composing(message.case_id):
            self.cancel_pending(message.case_id, reason="real responder reply")

    def observe_case(self, case: Case) -> None:
        """React to a case snapshot; terminal cases cancel pending replies."""
        if case.status.is_terminal and case.id not in self._closed_cases:
            self._closed_cases.add(case.id)
            self.cancel_pending(case.id, reason=f"case {case.status.value}")
            # No further replies can be scheduled, so their ids are no longer needed
            self._synthetic_ids.pop(case.id, None)

    def _forget(self, case_id: str) -> None:
        self._synthetic_ids.pop(case_id, None)
        self._closed_cases.discard(case_id)

    async def close(self) -> None:
        """Cancel all pending replies and wait for them to finish."""
        self._closed = True
        tasks = [task for tasks in self._pending.values() for task in tasks]
        for case_id in list(self._pending):
            self.cancel_pending(case_id, reason="manager closed")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()
        self._synthetic_ids.clear()
        self._closed_cases.clear()
