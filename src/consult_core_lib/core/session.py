"""Consultation session facade.

Wires the record store, notification channel, reconciler, state machine and
thread manager for one client, and opens scoped views on top of them.
"""

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Set, Union

from consult_core_lib.auth.request_context import SessionContext
from consult_core_lib.config import ConsultSettings, get_settings
from consult_core_lib.core.board import CaseBoard
from consult_core_lib.core.reconciler import ChangeReconciler
from consult_core_lib.core.session_cache import SessionCache
from consult_core_lib.core.state_machine import CaseStateMachine
from consult_core_lib.core.thread_manager import ConsultationThreadManager, Sleeper
from consult_core_lib.infrastructure.base import NotificationChannel, RecordStore
from consult_core_lib.models.case import Case, CaseIntake, CaseStatus
from consult_core_lib.models.common import Clock, utc_now
from consult_core_lib.models.message import Message, SenderRole

logger = logging.getLogger(__name__)


class ConsultationSession:
    """All core components for one client.

    Usage:
        async with ConsultationSession(store, channel) as session:
            case_id = await session.create_case(patient_ctx, intake)
            patient_ctx = patient_ctx.with_case(case_id)
            async with session.case_view(patient_ctx, case_id) as view:
                await view.send("I have a fever")
    """

    def __init__(
        self,
        store: RecordStore,
        channel: NotificationChannel,
        settings: Optional[ConsultSettings] = None,
        rng: Optional[random.Random] = None,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.channel = channel
        self.reconciler = ChangeReconciler(store, channel)
        self.state_machine = CaseStateMachine(store, self.settings, clock=clock)
        self.threads = ConsultationThreadManager(
            store, self.settings, rng=rng, clock=clock, sleep=sleep
        )
        self._views: Set[SessionCache] = set()
        self._boards: Set[CaseBoard] = set()
        self._owns_transports = False

    @classmethod
    async def connect(cls, settings: Optional[ConsultSettings] = None) -> "ConsultationSession":
        """Build a session over the REST record store and the Redis change feed.

        Redis connection settings come from the REDIS_* environment variables.
        """
        from consult_core_lib.clients.postgrest_store import PostgrestRecordStore
        from consult_core_lib.infrastructure.redis_channel import RedisNotificationChannel
        from consult_core_lib.infrastructure.redis_setup import get_redis_client

        settings = settings or get_settings()
        redis_client = await get_redis_client()
        channel = RedisNotificationChannel(redis_client, prefix=settings.channel_prefix)
        await channel.start()
        store = PostgrestRecordStore(
            base_url=settings.store_url,
            api_key=settings.store_api_key,
            timeout=settings.store_timeout,
            publisher=channel.publish,
        )
        session = cls(store, channel, settings)
        session._owns_transports = True
        return session

    # ============================================================
    # Operations
    # ============================================================
    async def create_case(
        self, ctx: SessionContext, intake: Union[CaseIntake, Dict[str, Any]]
    ) -> str:
        return await self.state_machine.create_case(ctx, intake)

    async def transition(
        self, ctx: SessionContext, case_id: str, target: Union[CaseStatus, str]
    ) -> Case:
        """Transition a case and merge the result into this client's open views."""
        case = await self.state_machine.transition(ctx, case_id, target)
        for view in list(self._views):
            view.merge_case(case)
        for board in list(self._boards):
            board.merge_case(case)
        self.threads.observe_case(case)
        return case

    async def join_session(self, ctx: SessionContext, case_id: str) -> Case:
        """Clinician joins the consultation (moves the case to IN_SESSION)."""
        return await self.transition(ctx, case_id, CaseStatus.IN_SESSION)

    async def send(self, ctx: SessionContext, case_id: str, text: str) -> Optional[Message]:
        """Post a message as the session's role."""
        role = SenderRole.RESPONDER if ctx.is_clinician else SenderRole.PATIENT
        return await self.threads.send(ctx, case_id, role, text)

    # ============================================================
    # Views
    # ============================================================
    @asynccontextmanager
    async def case_view(self, ctx: SessionContext, case_id: str) -> AsyncIterator[SessionCache]:
        """Open a SessionCache for the duration of the block."""
        view = SessionCache(ctx, case_id, self.store, self.reconciler, self.threads)
        await view.open()
        self._views.add(view)
        try:
            yield view
        finally:
            self._views.discard(view)
            await view.close()

    @asynccontextmanager
    async def board(self, ctx: SessionContext) -> AsyncIterator[CaseBoard]:
        """Open the clinician CaseBoard for the duration of the block."""
        board = CaseBoard(ctx, self.store, self.reconciler, self.threads)
        await board.open()
        self._boards.add(board)
        try:
            yield board
        finally:
            self._boards.discard(board)
            await board.close()

    # ============================================================
    # Lifecycle
    # ============================================================
    async def close(self) -> None:
        for view in list(self._views):
            await view.close()
        for board in list(self._boards):
            await board.close()
        self._views.clear()
        self._boards.clear()

        await self.threads.close()
        await self.reconciler.close()
        if self._owns_transports:
            await self.channel.close()
            await self.store.close()
        logger.info("Consultation session closed")

    async def __aenter__(self) -> "ConsultationSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
