"""Tests for ConsultationThreadManager: append path and synthetic responder."""

import pytest
import pytest_asyncio

from consult_core_lib.config import ConsultSettings
from consult_core_lib.core import RESPONDER_TEMPLATES, ConsultationThreadManager
from consult_core_lib.errors import TransientStoreError, Unauthorized
from consult_core_lib.models import (
    Case,
    CaseStatus,
    EntityKind,
    Message,
    SenderRole,
    parse_utc_timestamp,
)

CASE_ID = "case-1"


@pytest_asyncio.fixture
async def threads(store, settings, rng, clock, sleeper):
    manager = ConsultationThreadManager(store, settings, rng=rng, clock=clock, sleep=sleeper)
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def suppressing_threads(store, rng, clock, sleeper):
    settings = ConsultSettings(suppress_synthetic_on_real_reply=True)
    manager = ConsultationThreadManager(store, settings, rng=rng, clock=clock, sleep=sleeper)
    yield manager
    await manager.close()


@pytest.fixture
def owner_ctx(patient_ctx):
    return patient_ctx.with_case(CASE_ID)


def _stored_messages(store):
    return sorted(
        store.records(EntityKind.MESSAGE),
        key=lambda r: (parse_utc_timestamp(r["timestamp"]), r["id"]),
    )


def _closed_case() -> Case:
    return Case(id=CASE_ID, name="Jane Doe", age=34, gender="female",
                common_symptoms={"Fever"}, status=CaseStatus.CLOSED)


class TestSend:
    @pytest.mark.asyncio
    async def test_patient_message_is_stored_trimmed(self, threads, store, owner_ctx):
        message = await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "  I have a fever  ")

        assert message.text == "I have a fever"
        assert message.sender == SenderRole.PATIENT
        assert [r["id"] for r in store.records(EntityKind.MESSAGE)] == [message.id]

    @pytest.mark.asyncio
    async def test_blank_text_is_a_no_op(self, threads, store, owner_ctx, sleeper):
        assert await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "   \n\t") is None
        assert await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "") is None

        assert store.write_count == 0
        assert not threads.is_composing(CASE_ID)
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_patient_cannot_post_to_another_case(self, threads, patient_ctx):
        with pytest.raises(Unauthorized):
            await threads.send(patient_ctx.with_case("other"), CASE_ID, SenderRole.PATIENT, "hi")

    @pytest.mark.asyncio
    async def test_sender_must_match_role(self, threads, owner_ctx, clinician_ctx):
        with pytest.raises(Unauthorized):
            await threads.send(owner_ctx, CASE_ID, SenderRole.RESPONDER, "pretending")
        with pytest.raises(Unauthorized):
            await threads.send(clinician_ctx, CASE_ID, SenderRole.PATIENT, "pretending")

    @pytest.mark.asyncio
    async def test_store_failure_propagates_without_reply(self, threads, store, owner_ctx):
        store.fail_next()
        with pytest.raises(TransientStoreError):
            await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")

        assert store.records(EntityKind.MESSAGE) == []
        assert not threads.is_composing(CASE_ID)

    @pytest.mark.asyncio
    async def test_attached_views_see_direct_writes(self, threads, owner_ctx):
        seen = []
        threads.attach(CASE_ID, seen.append)

        message = await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")

        assert seen == [message]

    @pytest.mark.asyncio
    async def test_load_thread_orders_messages(self, threads, owner_ctx, clock, sleeper):
        first = await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "first")
        clock.advance(1)
        second = await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "second")
        await threads.close()

        messages = await threads.load_thread(owner_ctx, CASE_ID)
        assert [m.id for m in messages] == [first.id, second.id]


class TestSyntheticResponder:
    @pytest.mark.asyncio
    async def test_reply_after_delay_in_window(self, threads, store, owner_ctx, sleeper, clock):
        sent = await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "I have a fever")
        await sleeper.release()

        assert len(sleeper.delays) == 1
        assert 2.0 <= sleeper.delays[0] <= 4.0

        messages = _stored_messages(store)
        assert len(messages) == 2
        reply = messages[1]
        assert reply["sender"] == SenderRole.RESPONDER.value
        assert reply["text"] in RESPONDER_TEMPLATES
        assert parse_utc_timestamp(reply["timestamp"]) > sent.timestamp
        assert messages[0]["id"] == sent.id

    @pytest.mark.asyncio
    async def test_delays_stay_in_window(self, threads, owner_ctx, sleeper, settle):
        for i in range(20):
            await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, f"message {i}")
        await settle()

        assert len(sleeper.delays) == 20
        assert all(2.0 <= d <= 4.0 for d in sleeper.delays)
        await threads.close()

    @pytest.mark.asyncio
    async def test_composing_while_pending(self, threads, owner_ctx, sleeper):
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")
        assert threads.is_composing(CASE_ID)
        assert threads.pending_count(CASE_ID) == 1

        await sleeper.release()

        assert not threads.is_composing(CASE_ID)

    @pytest.mark.asyncio
    async def test_each_patient_message_gets_a_reply(self, threads, store, owner_ctx, sleeper):
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "one")
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "two")
        assert threads.pending_count(CASE_ID) == 2

        await sleeper.release()

        senders = [r["sender"] for r in store.records(EntityKind.MESSAGE)]
        assert senders.count("responder") == 2

    @pytest.mark.asyncio
    async def test_responder_message_schedules_nothing(self, threads, clinician_ctx, sleeper):
        await threads.send(clinician_ctx, CASE_ID, SenderRole.RESPONDER, "How are you feeling?")
        assert sleeper.delays == []
        assert not threads.is_composing(CASE_ID)

    @pytest.mark.asyncio
    async def test_custom_delay_window(self, store, owner_ctx, rng, clock, sleeper, settle):
        settings = ConsultSettings(reply_delay_min_ms=100, reply_delay_max_ms=100)
        threads = ConsultationThreadManager(store, settings, rng=rng, clock=clock, sleep=sleeper)

        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")
        await settle()

        assert sleeper.delays == [pytest.approx(0.1)]
        await threads.close()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_last_detach_cancels_pending_reply(self, threads, store, owner_ctx, sleeper):
        detach_a = threads.attach(CASE_ID, lambda m: None)
        detach_b = threads.attach(CASE_ID, lambda m: None)
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")

        detach_a()
        assert threads.is_composing(CASE_ID)

        detach_b()
        assert not threads.is_composing(CASE_ID)

        await sleeper.release()
        assert [r["sender"] for r in store.records(EntityKind.MESSAGE)] == ["patient"]

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self, threads, store, owner_ctx, sleeper):
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")
        await threads.close()

        await sleeper.release()

        assert len(store.records(EntityKind.MESSAGE)) == 1
        # Closed managers schedule no new replies
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "again")
        assert not threads.is_composing(CASE_ID)

    @pytest.mark.asyncio
    async def test_closed_case_cancels_and_blocks_replies(self, threads, store, owner_ctx, sleeper):
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")

        threads.observe_case(_closed_case())
        await sleeper.release()

        assert len(store.records(EntityKind.MESSAGE)) == 1
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "anyone there?")
        assert not threads.is_composing(CASE_ID)

    @pytest.mark.asyncio
    async def test_cancel_pending_reports_count(self, threads, owner_ctx):
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "one")
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "two")

        assert threads.cancel_pending(CASE_ID) == 2
        assert threads.cancel_pending(CASE_ID) == 0

    @pytest.mark.asyncio
    async def test_case_bookkeeping_is_dropped_with_last_view(self, threads, owner_ctx, sleeper):
        detach_first = threads.attach(CASE_ID, lambda m: None)
        detach_second = threads.attach(CASE_ID, lambda m: None)
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")
        await sleeper.release()
        assert len(threads._synthetic_ids[CASE_ID]) == 1

        detach_first()
        assert CASE_ID in threads._synthetic_ids

        detach_second()
        assert CASE_ID not in threads._synthetic_ids

    @pytest.mark.asyncio
    async def test_closing_case_drops_synthetic_ids(self, threads, owner_ctx, sleeper):
        detach = threads.attach(CASE_ID, lambda m: None)
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")
        await sleeper.release()

        threads.observe_case(_closed_case())
        assert CASE_ID not in threads._synthetic_ids
        assert CASE_ID in threads._closed_cases

        detach()
        assert CASE_ID not in threads._closed_cases


class TestSuppression:
    @pytest.mark.asyncio
    async def test_real_reply_does_not_cancel_by_default(
        self, threads, store, owner_ctx, clinician_ctx, sleeper
    ):
        await threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")
        await threads.send(clinician_ctx, CASE_ID, SenderRole.RESPONDER, "Hi, I'm Dr. Smith")

        await sleeper.release()

        senders = sorted(r["sender"] for r in store.records(EntityKind.MESSAGE))
        assert senders == ["patient", "responder", "responder"]

    @pytest.mark.asyncio
    async def test_real_reply_cancels_when_enabled(
        self, suppressing_threads, store, owner_ctx, clinician_ctx, sleeper
    ):
        await suppressing_threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "hello")
        await suppressing_threads.send(clinician_ctx, CASE_ID, SenderRole.RESPONDER, "Hi")
        assert not suppressing_threads.is_composing(CASE_ID)

        await sleeper.release()

        texts = [r["text"] for r in store.records(EntityKind.MESSAGE)]
        assert sorted(texts) == ["Hi", "hello"]

    @pytest.mark.asyncio
    async def test_synthetic_reply_does_not_suppress_others(
        self, suppressing_threads, store, owner_ctx, sleeper
    ):
        await suppressing_threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "one")
        await sleeper.release()
        await suppressing_threads.send(owner_ctx, CASE_ID, SenderRole.PATIENT, "two")

        # The first synthetic reply echoing back must not cancel the second
        first_reply = next(
            r for r in store.records(EntityKind.MESSAGE) if r["sender"] == "responder"
        )
        suppressing_threads.observe_message(Message.from_record(first_reply))

        assert suppressing_threads.is_composing(CASE_ID)
        await suppressing_threads.close()
