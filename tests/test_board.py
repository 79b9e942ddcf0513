"""Tests for the clinician CaseBoard."""

import asyncio
from datetime import timedelta

import pytest

from consult_core_lib.core import CaseBoard, CaseStateMachine
from consult_core_lib.errors import Unauthorized
from consult_core_lib.models import CaseStatus, EntityKind


@pytest.fixture
def board_factory(store, session):
    def _make(ctx):
        return CaseBoard(ctx, store, session.reconciler, session.threads)

    return _make


class TestCaseBoard:
    @pytest.mark.asyncio
    async def test_patient_cannot_open(self, board_factory, patient_ctx):
        with pytest.raises(Unauthorized):
            await board_factory(patient_ctx).open()

    @pytest.mark.asyncio
    async def test_lists_newest_first(self, board_factory, session, patient_ctx, other_patient_ctx, intake, clinician_ctx, clock):
        first = await session.create_case(patient_ctx, intake)
        clock.advance(60)
        second = await session.create_case(other_patient_ctx, intake)

        async with board_factory(clinician_ctx) as board:
            assert [c.id for c in board.cases] == [second, first]
            assert [c.id for c in board.waiting] == [second, first]
            assert board.others == []

    @pytest.mark.asyncio
    async def test_new_case_appears_live(self, board_factory, session, patient_ctx, intake, clinician_ctx, settle):
        async with board_factory(clinician_ctx) as board:
            assert board.cases == []

            case_id = await session.create_case(patient_ctx, intake)
            await settle()

            assert board.get(case_id) is not None
            assert board.get(case_id).name == "Jane Doe"

    @pytest.mark.asyncio
    async def test_status_change_moves_case_out_of_waiting(
        self, board_factory, session, case_id, clinician_ctx, second_clinician_ctx, settle
    ):
        async with board_factory(second_clinician_ctx) as board:
            assert [c.id for c in board.waiting] == [case_id]

            # Another clinician's write reaches this board through the change feed
            await session.state_machine.transition(
                clinician_ctx, case_id, CaseStatus.RESPONDER_AVAILABLE
            )
            await settle()

            assert board.waiting == []
            assert [c.status for c in board.others] == [CaseStatus.RESPONDER_AVAILABLE]

    @pytest.mark.asyncio
    async def test_reconnect_catches_up(
        self, board_factory, session, channel, patient_ctx, intake, clinician_ctx, settle
    ):
        async with board_factory(clinician_ctx) as board:
            channel.disconnect()
            case_id = await session.create_case(patient_ctx, intake)
            await settle()
            assert board.stale
            assert board.get(case_id) is None

            channel.reconnect()
            await settle()

            assert not board.stale
            assert board.get(case_id) is not None

    @pytest.mark.asyncio
    async def test_reconnect_replaces_skewed_snapshot(
        self, board_factory, session, store, channel, settings, case_id, clinician_ctx,
        second_clinician_ctx, settle, clock
    ):
        ahead = CaseStateMachine(store, settings, clock=lambda: clock() + timedelta(seconds=5))
        behind = CaseStateMachine(store, settings, clock=clock)

        async with board_factory(clinician_ctx) as board:
            await asyncio.gather(
                ahead.transition(clinician_ctx, case_id, CaseStatus.RESPONDER_AVAILABLE),
                behind.transition(second_clinician_ctx, case_id, CaseStatus.CLOSED),
            )
            await settle()

            channel.disconnect()
            channel.reconnect()
            await settle()

            stored = store.records(EntityKind.CASE)[0]
            assert stored["status"] == CaseStatus.CLOSED.value
            assert board.get(case_id).status == CaseStatus.CLOSED

    @pytest.mark.asyncio
    async def test_refresh_overrides_newer_cached_case(self, board_factory, case_id, clinician_ctx, clock):
        async with board_factory(clinician_ctx) as board:
            stored = board.get(case_id)
            clock.advance(30)
            board.merge_case(stored.model_copy(
                update={"status": CaseStatus.IN_SESSION, "updated_at": clock(), "version": 9}
            ))

            await board.refresh()

            assert board.get(case_id) == stored
            assert [c.id for c in board.waiting] == [case_id]

    @pytest.mark.asyncio
    async def test_close_releases_subscription(self, board_factory, channel, clinician_ctx):
        board = board_factory(clinician_ctx)
        await board.open()
        assert channel.subscription_count == 1

        await board.close()
        assert channel.subscription_count == 0
