"""Record store over a PostgREST-style REST API.

Each entity kind maps to one table endpoint. Filters use `eq.` operators,
ordering uses the `order` query parameter and writes ask for the stored
representation back (`Prefer: return=representation`).

Error mapping:
- empty result on select/update → NotFoundError
- empty result on a guarded update of an existing row → ConcurrentUpdateError
- 409 Conflict / 412 Precondition Failed → ConcurrentUpdateError on a guarded
  update, StoreError otherwise
- transport errors and 5xx/429 → TransientStoreError
- other 4xx → StoreError

When a publisher is given (for example RedisNotificationChannel.publish), every
committed write is published as a ChangeEvent so other clients observe it. A
publish that fails with ChannelDisconnect is logged and does not fail the
write.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from consult_core_lib.clients.base import BaseServiceClient
from consult_core_lib.errors import (
    ChannelDisconnect,
    ConcurrentUpdateError,
    NotFoundError,
    StoreError,
    TransientStoreError,
)
from consult_core_lib.infrastructure.base import OrderBy, RecordStore
from consult_core_lib.models.events import ChangeEvent, ChangeOperation, EntityKind

logger = logging.getLogger(__name__)

DEFAULT_TABLES: Dict[EntityKind, str] = {
    EntityKind.CASE: "cases",
    EntityKind.MESSAGE: "messages",
}

RETURN_REPRESENTATION = "return=representation"

CONFLICT_STATUSES = (httpx.codes.CONFLICT, httpx.codes.PRECONDITION_FAILED)

EventPublisher = Callable[[ChangeEvent], Awaitable[Any]]


class PostgrestRecordStore(BaseServiceClient, RecordStore):
    """Async RecordStore backed by a PostgREST endpoint.

    Usage:
        store = PostgrestRecordStore(base_url="http://localhost:3000", api_key="...")
        case_id = await store.insert(EntityKind.CASE, case.to_record())
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        tables: Optional[Dict[EntityKind, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        """Initialize store.

        Args:
            base_url: PostgREST base URL (default: http://localhost:3000)
            timeout: Request timeout in seconds (default: 10.0)
            api_key: Optional API key
            tables: Entity kind → table name overrides
            transport: Optional httpx transport
            publisher: Coroutine called with a ChangeEvent after each committed write
        """
        super().__init__(base_url=base_url, timeout=timeout, api_key=api_key, transport=transport)
        self.tables = {**DEFAULT_TABLES, **(tables or {})}
        self._publisher = publisher

    def _url(self, kind: EntityKind) -> str:
        return f"{self.base_url}/{self.tables[kind]}"

    async def insert(self, kind: EntityKind, record: Dict[str, Any]) -> str:
        rows = await self._request(
            "POST",
            kind,
            json=record,
            prefer=RETURN_REPRESENTATION,
        )
        if not rows:
            raise StoreError(f"Insert into {self.tables[kind]} returned no row")
        await self._publish(kind, ChangeOperation.INSERT, rows[0])
        return str(rows[0]["id"])

    async def select_one(self, kind: EntityKind, record_id: str) -> Dict[str, Any]:
        rows = await self._request("GET", kind, params={"id": _eq(record_id)})
        if not rows:
            raise NotFoundError(kind, record_id)
        return rows[0]

    async def select_many(
        self,
        kind: EntityKind,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[Dict[str, Any]]:
        params = {field: _eq(value) for field, value in (filters or {}).items()}
        if order_by:
            params["order"] = ",".join(f"{field}.{direction}" for field, direction in order_by)
        return await self._request("GET", kind, params=params)

    async def update(
        self,
        kind: EntityKind,
        record_id: str,
        patch: Dict[str, Any],
        match: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        params = {"id": _eq(record_id)}
        for field, value in (match or {}).items():
            params[field] = _eq(value)

        try:
            rows = await self._request(
                "PATCH",
                kind,
                params=params,
                json=patch,
                prefer=RETURN_REPRESENTATION,
            )
        except StoreError as e:
            if match and e.status_code in CONFLICT_STATUSES:
                raise ConcurrentUpdateError(kind, record_id, match) from e
            raise

        if rows:
            await self._publish(kind, ChangeOperation.UPDATE, rows[0])
            return rows[0]

        # No row matched: either the record is gone or a guard failed
        if match:
            await self.select_one(kind, record_id)
            raise ConcurrentUpdateError(kind, record_id, match)
        raise NotFoundError(kind, record_id)

    async def _publish(
        self, kind: EntityKind, operation: ChangeOperation, record: Dict[str, Any]
    ) -> None:
        if self._publisher is None:
            return
        event = ChangeEvent(kind=kind, operation=operation, payload=record)
        try:
            await self._publisher(event)
        except ChannelDisconnect as e:
            # The row is committed; subscribers catch up on their next resync
            logger.warning(
                f"Committed {kind.value} {record.get('id')} but could not publish {operation.value}: {e}"
            )

    async def _request(
        self,
        method: str,
        kind: EntityKind,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        prefer: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        url = self._url(kind)
        try:
            async with self._get_client() as client:
                response = await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=self._headers(prefer=prefer),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"{method} {url} failed with HTTP {status_code}: {e.response.text}")
            if status_code >= 500 or status_code == httpx.codes.TOO_MANY_REQUESTS:
                raise TransientStoreError(f"{method} {url}: HTTP {status_code}") from e
            raise StoreError(f"{method} {url}: HTTP {status_code}", status_code=status_code) from e
        except httpx.TransportError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise TransientStoreError(f"{method} {url}: {e}") from e

        if not response.content:
            return []
        body = response.json()
        return body if isinstance(body, list) else [body]


def _eq(value: Any) -> str:
    value = getattr(value, "value", value)
    if isinstance(value, bool):
        value = "true" if value else "false"
    return f"eq.{value}"
