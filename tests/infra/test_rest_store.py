# tests/infra/test_rest_store.py
"""
Тесты HttpRemoteStore: формирование запросов и перевод ошибок httpx.
"""

from __future__ import annotations

import json
from typing import Callable
from unittest.mock import AsyncMock

import httpx
import pytest

from rider_app.common.constants import RideStatus
from rider_app.common.exceptions import MalformedResponseError, TransportError
from rider_app.infra.remote_store import Filter, Query
from rider_app.infra.rest_store import HttpRemoteStore

BASE_URL = "https://db.example.com/rest/v1"


def make_store(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[HttpRemoteStore, list[httpx.Request]]:
    """HttpRemoteStore, чей клиент отвечает через handler. Возвращает и список запросов."""
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    store = HttpRemoteStore(AsyncMock(), base_url=BASE_URL, api_key="anon-key", timeout=5.0)
    store.client = httpx.AsyncClient(
        base_url=BASE_URL,
        headers=store.client.headers,
        transport=httpx.MockTransport(_record),
    )
    return store, requests


class TestRequests:
    """Тесты формирования запросов."""

    @pytest.mark.asyncio
    async def test_insert(self) -> None:
        store, requests = make_store(lambda r: httpx.Response(201, json=[{"id": "ride-1", "status": "pending"}]))

        row = await store.insert("ride_requests", {"user_id": "user-1", "status": RideStatus.PENDING})

        request = requests[0]
        assert row == {"id": "ride-1", "status": "pending"}
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/ride_requests"
        assert request.headers["Prefer"] == "return=representation"
        assert request.headers["apikey"] == "anon-key"
        assert json.loads(request.content) == {"user_id": "user-1", "status": "pending"}
        await store.close()

    @pytest.mark.asyncio
    async def test_select_params(self) -> None:
        store, requests = make_store(lambda r: httpx.Response(200, json=[]))

        await store.select(
            "ride_requests",
            Query(
                filters=[
                    Filter.eq("user_id", "user-1"),
                    Filter.in_("status", (RideStatus.PENDING, RideStatus.MATCHED)),
                    Filter.is_null("provider_id"),
                ],
                order_by="created_at",
                descending=True,
                limit=1,
            ),
        )

        assert requests[0].url.params.multi_items() == [
            ("select", "*"),
            ("user_id", "eq.user-1"),
            ("status", "in.(pending,matched)"),
            ("provider_id", "is.null"),
            ("order", "created_at.desc"),
            ("limit", "1"),
        ]
        await store.close()

    @pytest.mark.asyncio
    async def test_boolean_filter_lowercase(self) -> None:
        store, requests = make_store(lambda r: httpx.Response(200, json=[]))

        await store.select(
            "vehicle_types",
            Query(filters=[Filter.eq("is_active", True)], columns="id, name", order_by="sort_order"),
        )

        assert requests[0].url.params.multi_items() == [
            ("select", "id, name"),
            ("is_active", "eq.true"),
            ("order", "sort_order.asc"),
        ]
        assert Filter.eq("is_active", True).matches({"is_active": True})
        assert not Filter.eq("is_active", True).matches({"is_active": False})
        await store.close()

    @pytest.mark.asyncio
    async def test_conditional_update_miss(self) -> None:
        """Условие не выполнилось: сервер вернул пустой список."""
        store, requests = make_store(lambda r: httpx.Response(200, json=[]))

        rows = await store.update(
            "ride_requests",
            {"provider_id": "drv-1"},
            [Filter.eq("id", "ride-1"), Filter.eq("status", RideStatus.PENDING)],
        )

        assert rows == []
        assert requests[0].method == "PATCH"
        assert ("status", "eq.pending") in requests[0].url.params.multi_items()
        await store.close()

    @pytest.mark.asyncio
    async def test_update_without_filters_rejected(self) -> None:
        store, requests = make_store(lambda r: httpx.Response(200, json=[]))

        with pytest.raises(ValueError):
            await store.update("ride_requests", {"status": "cancelled"}, [])
        assert requests == []
        await store.close()

    @pytest.mark.asyncio
    async def test_rpc(self) -> None:
        store, requests = make_store(lambda r: httpx.Response(200, json=[{"provider_id": "drv-1"}]))

        result = await store.rpc("find_nearby_providers", {"lat": 13.75, "lng": 100.5})

        assert result == [{"provider_id": "drv-1"}]
        assert requests[0].url.path == "/rest/v1/rpc/find_nearby_providers"
        await store.close()

    @pytest.mark.asyncio
    async def test_access_token(self) -> None:
        store, requests = make_store(lambda r: httpx.Response(200, json=[]))

        store.set_access_token("session-token")
        await store.select("ride_requests")

        assert requests[0].headers["Authorization"] == "Bearer session-token"
        await store.close()

    @pytest.mark.asyncio
    async def test_subscribe_delegates_to_feed(self) -> None:
        feed = AsyncMock()
        store = HttpRemoteStore(feed, base_url=BASE_URL, api_key="k", timeout=5.0)
        on_event = AsyncMock()

        await store.subscribe("ride_requests", Filter.eq("id", "ride-1"), on_event)

        feed.subscribe.assert_awaited_once_with("ride_requests", Filter.eq("id", "ride-1"), on_event, None)
        await store.close()


class TestErrors:
    """Тесты перевода ошибок транспорта."""

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        store, _ = make_store(lambda r: httpx.Response(503, text="maintenance"))

        with pytest.raises(TransportError, match="503"):
            await store.select("ride_requests")
        await store.close()

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        store, _ = make_store(handler)

        with pytest.raises(TransportError):
            await store.rpc("get_customer_wallet", {"p_user_id": "user-1"})
        await store.close()

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        store, _ = make_store(lambda r: httpx.Response(200, text="<html>"))

        with pytest.raises(MalformedResponseError):
            await store.select("ride_requests")
        await store.close()

    @pytest.mark.asyncio
    async def test_unexpected_shape(self) -> None:
        store, _ = make_store(lambda r: httpx.Response(200, json=[1, 2, 3]))

        with pytest.raises(MalformedResponseError):
            await store.select("ride_requests")
        await store.close()

    @pytest.mark.asyncio
    async def test_empty_body(self) -> None:
        store, _ = make_store(lambda r: httpx.Response(204))

        assert await store.rpc("noop", {}) is None
        assert await store.select("ride_requests") == []
        await store.close()

    @pytest.mark.asyncio
    async def test_insert_without_representation(self) -> None:
        store, _ = make_store(lambda r: httpx.Response(201))

        with pytest.raises(MalformedResponseError):
            await store.insert("ride_requests", {"user_id": "user-1"})
        await store.close()
