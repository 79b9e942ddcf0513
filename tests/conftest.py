"""Shared fixtures for the consultation core tests.

Time is fully controlled: FakeClock supplies timestamps and ManualSleeper
stands in for asyncio.sleep so synthetic replies fire only when a test
releases them.
"""

import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from consult_core_lib.auth import ActorRole, SessionContext
from consult_core_lib.config import ConsultSettings
from consult_core_lib.core import ConsultationSession
from consult_core_lib.infrastructure import InMemoryNotificationChannel, InMemoryRecordStore
from consult_core_lib.models import CaseIntake, UrgencyLevel

START = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic time source; each call returns the current fake time."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualSleeper:
    """Replacement for asyncio.sleep whose sleepers wake on release()."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays = []
        self._waiting = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        future = asyncio.get_running_loop().create_future()
        self._waiting.append((delay, future))
        await future

    @property
    def waiting(self) -> int:
        return sum(1 for _, future in self._waiting if not future.done())

    async def release(self) -> None:
        """Wake every sleeper (advancing the clock past its delay) and let it finish."""
        # Let freshly scheduled tasks reach their sleep first
        await _drain()
        waiting, self._waiting = self._waiting, []
        for delay, future in waiting:
            if not future.done():
                self.clock.advance(delay)
                future.set_result(None)
        await _drain()


async def _drain() -> None:
    for _ in range(50):
        await asyncio.sleep(0)


# ── Time ──


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return ManualSleeper(clock)


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def settings():
    return ConsultSettings()


# ── Actors ──


@pytest.fixture
def patient_ctx():
    return SessionContext(user_id="patient-1", role=ActorRole.PATIENT)


@pytest.fixture
def other_patient_ctx():
    return SessionContext(user_id="patient-2", role=ActorRole.PATIENT)


@pytest.fixture
def clinician_ctx():
    return SessionContext(user_id="dr-smith", role=ActorRole.CLINICIAN)


@pytest.fixture
def second_clinician_ctx():
    return SessionContext(user_id="dr-jones", role=ActorRole.CLINICIAN)


@pytest.fixture
def intake():
    return CaseIntake(
        name="Jane Doe",
        age=34,
        gender="female",
        common_symptoms={"Fever", "Headache"},
        additional_symptoms="Since yesterday",
        urgency_level=UrgencyLevel.HIGH,
    )


# ── Infrastructure ──


@pytest.fixture
def channel():
    return InMemoryNotificationChannel()


@pytest.fixture
def store(channel):
    return InMemoryRecordStore(channel)


@pytest.fixture
def settle(channel):
    """Coroutine running the event loop until queued work and deliveries are done."""

    async def _settle() -> None:
        await _drain()
        await channel.flush()
        await _drain()

    return _settle


@pytest_asyncio.fixture
async def session(store, channel, settings, rng, clock, sleeper):
    consultation = ConsultationSession(
        store, channel, settings, rng=rng, clock=clock, sleep=sleeper
    )
    yield consultation
    await consultation.close()


@pytest_asyncio.fixture
async def case_id(session, patient_ctx, intake):
    return await session.create_case(patient_ctx, intake)
