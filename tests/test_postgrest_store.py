"""Tests for PostgrestRecordStore using httpx.MockTransport."""

import json

import httpx
import pytest

from consult_core_lib.clients import PostgrestRecordStore
from consult_core_lib.errors import (
    ChannelDisconnect,
    ConcurrentUpdateError,
    NotFoundError,
    StoreError,
    TransientStoreError,
)
from consult_core_lib.infrastructure import ORDER_ASC, ORDER_DESC
from consult_core_lib.models import ChangeOperation, EntityKind

BASE_URL = "http://store.test"

CASE_ROW = {
    "id": "c1",
    "name": "Jane Doe",
    "age": 34,
    "gender": "female",
    "common_symptoms": ["Fever"],
    "additional_symptoms": None,
    "urgency_level": "high",
    "status": "waiting",
    "version": 1,
    "created_at": "2024-01-15T10:00:00Z",
    "updated_at": "2024-01-15T10:00:00Z",
}


class Recorder:
    """MockTransport handler returning queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _store(recorder, **kwargs) -> PostgrestRecordStore:
    return PostgrestRecordStore(
        base_url=BASE_URL,
        api_key="secret",
        transport=httpx.MockTransport(recorder),
        **kwargs,
    )


class TestReads:
    @pytest.mark.asyncio
    async def test_select_one_filters_by_id(self):
        recorder = Recorder(httpx.Response(200, json=[CASE_ROW]))
        store = _store(recorder)

        record = await store.select_one(EntityKind.CASE, "c1")

        assert record == CASE_ROW
        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/cases"
        assert request.url.params["id"] == "eq.c1"
        assert request.headers["apikey"] == "secret"
        assert request.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_select_one_empty_is_not_found(self):
        store = _store(Recorder(httpx.Response(200, json=[])))
        with pytest.raises(NotFoundError):
            await store.select_one(EntityKind.CASE, "missing")

    @pytest.mark.asyncio
    async def test_select_many_builds_filters_and_order(self):
        recorder = Recorder(httpx.Response(200, json=[]))
        store = _store(recorder)

        await store.select_many(
            EntityKind.MESSAGE,
            {"case_id": "c1"},
            order_by=[("timestamp", ORDER_ASC), ("id", ORDER_DESC)],
        )

        params = recorder.requests[0].url.params
        assert recorder.requests[0].url.path == "/messages"
        assert params["case_id"] == "eq.c1"
        assert params["order"] == "timestamp.asc,id.desc"

    @pytest.mark.asyncio
    async def test_custom_table_names(self):
        recorder = Recorder(httpx.Response(200, json=[]))
        store = _store(recorder, tables={EntityKind.CASE: "patient_cases"})

        await store.select_many(EntityKind.CASE)

        assert recorder.requests[0].url.path == "/patient_cases"


class TestWrites:
    @pytest.mark.asyncio
    async def test_insert_returns_id_and_publishes(self):
        published = []

        async def publisher(event):
            published.append(event)

        recorder = Recorder(httpx.Response(201, json=[CASE_ROW]))
        store = _store(recorder, publisher=publisher)

        case_id = await store.insert(EntityKind.CASE, CASE_ROW)

        assert case_id == "c1"
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == CASE_ROW
        assert [(e.kind, e.operation, e.record_id) for e in published] == [
            (EntityKind.CASE, ChangeOperation.INSERT, "c1")
        ]

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_committed_writes(self):
        async def publisher(event):
            raise ChannelDisconnect("redis down")

        updated = {**CASE_ROW, "status": "responder_available", "version": 2}
        recorder = Recorder(httpx.Response(201, json=[CASE_ROW]), httpx.Response(200, json=[updated]))
        store = _store(recorder, publisher=publisher)

        assert await store.insert(EntityKind.CASE, CASE_ROW) == "c1"
        assert await store.update(EntityKind.CASE, "c1", {"status": "responder_available"}) == updated
        assert [r.method for r in recorder.requests] == ["POST", "PATCH"]

    @pytest.mark.asyncio
    async def test_update_sends_patch_and_guards(self):
        updated = {**CASE_ROW, "status": "responder_available", "version": 2}
        recorder = Recorder(httpx.Response(200, json=[updated]))
        store = _store(recorder)

        record = await store.update(
            EntityKind.CASE, "c1", {"status": "responder_available", "version": 2},
            match={"version": 1},
        )

        assert record == updated
        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.c1"
        assert request.url.params["version"] == "eq.1"

    @pytest.mark.asyncio
    async def test_update_of_missing_row_is_not_found(self):
        store = _store(Recorder(httpx.Response(200, json=[])))
        with pytest.raises(NotFoundError):
            await store.update(EntityKind.CASE, "missing", {"status": "waiting"})

    @pytest.mark.asyncio
    async def test_failed_guard_is_concurrent_update(self):
        # Guarded PATCH matched nothing, but the row exists
        recorder = Recorder(httpx.Response(200, json=[]), httpx.Response(200, json=[CASE_ROW]))
        store = _store(recorder)

        with pytest.raises(ConcurrentUpdateError):
            await store.update(EntityKind.CASE, "c1", {"version": 3}, match={"version": 2})

        assert [r.method for r in recorder.requests] == ["PATCH", "GET"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [409, 412])
    async def test_conflict_on_guarded_update(self, status_code):
        store = _store(Recorder(httpx.Response(status_code, json={"message": "conflict"})))
        with pytest.raises(ConcurrentUpdateError):
            await store.update(EntityKind.CASE, "c1", {"version": 3}, match={"version": 2})


class TestErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 503, 429])
    async def test_server_errors_are_transient(self, status_code):
        store = _store(Recorder(httpx.Response(status_code, text="unavailable")))
        with pytest.raises(TransientStoreError):
            await store.select_many(EntityKind.CASE)

    @pytest.mark.asyncio
    async def test_client_errors_keep_status(self):
        store = _store(Recorder(httpx.Response(400, json={"message": "bad column"})))

        with pytest.raises(StoreError) as exc_info:
            await store.insert(EntityKind.CASE, CASE_ROW)

        assert exc_info.value.status_code == 400
        assert not isinstance(exc_info.value, TransientStoreError)

    @pytest.mark.asyncio
    async def test_transport_errors_are_transient(self):
        store = _store(Recorder(httpx.ConnectError("connection refused")))
        with pytest.raises(TransientStoreError):
            await store.select_one(EntityKind.CASE, "c1")

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_result(self):
        store = _store(Recorder(httpx.Response(204)))
        assert await store.select_many(EntityKind.CASE) == []
