# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("BACKEND_API_KEY", "test_api_key")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "")

from rider_app.common.constants import ChangeEventType, SubscriptionStatus
from rider_app.common.exceptions import RideError
from rider_app.core.geo.location import FixedPositionSource, LocationProvider
from rider_app.core.rides.controller import RideRequestController
from rider_app.core.rides.models import GeoLocation
from rider_app.core.rides.repository import RideRepository
from rider_app.core.rides.store import RideStore
from rider_app.infra.remote_store import (
    ChangeEvent,
    ChangeHandler,
    Filter,
    Query,
    RemoteStore,
    Row,
    StatusHandler,
    Subscription,
)

RIDES = "ride_requests"
PROVIDERS = "service_providers"
RATINGS = "ride_ratings"
NEARBY_RPC = "find_nearby_providers"
WALLET_RPC = "get_customer_wallet"
VEHICLE_TYPES = "vehicle_types"
SAVED_PLACES = "saved_places"
RECENT_PLACES = "recent_places"

USER_ID = "user-1"

# Точки в Бангкоке
PICKUP = GeoLocation(lat=13.7563, lng=100.5018, address="Sanam Luang")
DESTINATION = GeoLocation(lat=13.7466, lng=100.5393, address="Siam Paragon")
DEFAULT_CITY = GeoLocation(lat=13.7563, lng=100.5018, address="Bangkok", is_approximate=True)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# IN-MEMORY ХРАНИЛИЩЕ
# =============================================================================

class FakeSubscription(Subscription):
    """Подписка на события FakeRemoteStore."""

    def __init__(
        self,
        table: str,
        row_filter: Filter,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler],
    ) -> None:
        self.table = table
        self.row_filter = row_filter
        self.on_event = on_event
        self.on_status = on_status
        self.status = SubscriptionStatus.CLOSED

    async def unsubscribe(self) -> None:
        self.status = SubscriptionStatus.CLOSED


class FakeRemoteStore(RemoteStore):
    """
    RemoteStore в памяти.

    fail_on: операция -> исключение (insert/select/update/rpc)
    fail_on_table: таблица или RPC -> исключение
    gates: операция -> asyncio.Event, которого операция ждёт перед выполнением
    fail_subscribe: таблица -> статус, с которым подписка не открывается
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[Row]] = defaultdict(list)
        self.rpc_results: dict[str, Any] = {}
        self.rpc_calls: list[tuple[str, Row]] = []
        self.calls: list[tuple[str, str]] = []
        self.subscriptions: list[FakeSubscription] = []
        self.fail_on: dict[str, RideError] = {}
        self.fail_on_table: dict[str, RideError] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.fail_subscribe: dict[str, SubscriptionStatus] = {}
        self._ids = itertools.count(1)

    async def _enter(self, op: str, target: str) -> None:
        self.calls.append((op, target))
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        error = self.fail_on.get(op) or self.fail_on_table.get(target)
        if error is not None:
            raise error

    async def insert(self, table: str, values: Row) -> Row:
        await self._enter("insert", table)
        row = dict(values)
        row.setdefault("id", f"{table}-{next(self._ids)}")
        row.setdefault("created_at", _now_iso())
        row.setdefault("updated_at", row["created_at"])
        self.tables[table].append(row)
        return dict(row)

    async def select(self, table: str, query: Optional[Query] = None) -> list[Row]:
        await self._enter("select", table)
        query = query or Query()
        rows = [dict(r) for r in self.tables[table] if all(f.matches(r) for f in query.filters)]
        if query.order_by:
            rows.sort(key=lambda r: str(r.get(query.order_by) or ""), reverse=query.descending)
        if query.limit:
            rows = rows[: query.limit]
        return rows

    async def update(self, table: str, values: Row, filters: Sequence[Filter]) -> list[Row]:
        await self._enter("update", table)
        updated = []
        for row in self.tables[table]:
            if all(f.matches(row) for f in filters):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def rpc(self, name: str, params: Row) -> Any:
        await self._enter("rpc", name)
        self.rpc_calls.append((name, params))
        return self.rpc_results.get(name)

    async def subscribe(
        self,
        table: str,
        row_filter: Filter,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        self.calls.append(("subscribe", table))
        subscription = FakeSubscription(table, row_filter, on_event, on_status)
        self.subscriptions.append(subscription)
        subscription.status = self.fail_subscribe.get(table, SubscriptionStatus.SUBSCRIBED)
        if on_status is not None:
            await on_status(subscription.status)
        return subscription

    # --- управление со стороны теста ---

    def active_subscriptions(self, table: str) -> list[FakeSubscription]:
        return [s for s in self.subscriptions if s.table == table and s.is_active]

    def row(self, table: str, row_id: str) -> Row:
        return next(r for r in self.tables[table] if r["id"] == row_id)

    def server_update(self, table: str, row_id: str, **values: Any) -> Row:
        """Изменение строки на сервере без рассылки события."""
        row = self.row(table, row_id)
        values.setdefault("updated_at", _now_iso())
        row.update({k: getattr(v, "value", v) for k, v in values.items()})
        return dict(row)

    async def emit(self, table: str, row: Row, event: ChangeEventType = ChangeEventType.UPDATE) -> None:
        """Доставляет событие активным подпискам, чей фильтр подходит к строке."""
        for subscription in list(self.subscriptions):
            if subscription.table == table and subscription.is_active and subscription.row_filter.matches(row):
                await subscription.on_event(ChangeEvent(event, table, dict(row)))

    async def push(self, table: str, row_id: str, **values: Any) -> Row:
        """Изменение строки на сервере с рассылкой события."""
        row = self.server_update(table, row_id, **values)
        await self.emit(table, row)
        return row


def make_provider_row(
    provider_id: str,
    name: str = "Somchai",
    lat: Optional[float] = 13.7600,
    lng: Optional[float] = 100.5050,
) -> Row:
    return {
        "id": provider_id,
        "user_id": f"u-{provider_id}",
        "provider_type": "driver",
        "vehicle_type": "car",
        "vehicle_color": "white",
        "vehicle_plate": "กข 1234",
        "rating": 4.9,
        "total_trips": 120,
        "current_lat": lat,
        "current_lng": lng,
        "users": {"name": name, "phone": "+66000000000", "avatar_url": None},
    }


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture(scope="session")
def lang_dict_path(project_root: Path) -> Path:
    """Путь к файлу локализации."""
    return project_root / "config" / "lang_dict.json"


@pytest.fixture
def mock_lang_dict() -> dict[str, dict[str, str]]:
    """Мок словаря локализации для тестов."""
    return {
        "GREETING": {
            "th": "สวัสดี {name}",
            "en": "Hello, {name}!",
            "ru": "Привет, {name}!",
        },
        "ONLY_RU": {
            "ru": "Только по-русски",
        },
        "STATUS_PENDING": {
            "th": "กำลังค้นหาคนขับ",
            "en": "Looking for a driver",
        },
    }


# =============================================================================
# ФИКСТУРЫ ДОМЕНА
# =============================================================================

@pytest.fixture
def fake_store() -> FakeRemoteStore:
    store = FakeRemoteStore()
    store.rpc_results[WALLET_RPC] = [{"balance": 1000}]
    return store


@pytest.fixture
def repository(fake_store: FakeRemoteStore) -> RideRepository:
    return RideRepository(
        fake_store, RIDES, PROVIDERS, RATINGS, NEARBY_RPC, WALLET_RPC,
        VEHICLE_TYPES, SAVED_PLACES, RECENT_PLACES,
    )


@pytest.fixture
def ride_store(repository: RideRepository) -> RideStore:
    return RideStore(
        repository, search_radius_km=5.0, provider_type="driver", nearby_cache_ttl=30, history_limit=20,
        recent_places_limit=5,
    )


@pytest.fixture
def location_provider() -> LocationProvider:
    return LocationProvider(FixedPositionSource(PICKUP.lat, PICKUP.lng), timeout=1.0, default_location=DEFAULT_CITY)


@pytest.fixture
def make_controller(
    ride_store: RideStore,
    location_provider: LocationProvider,
) -> Callable[..., RideRequestController]:
    """Фабрика контроллера с короткими таймерами."""

    def _factory(**overrides: Any) -> RideRequestController:
        params: dict[str, Any] = {
            "user_id": USER_ID,
            "balance_provider": AsyncMock(return_value=1000.0),
            "lang": "en",
            "search_tick_interval": 0.01,
            "search_timeout": 300,
            "completion_grace": 0.05,
            "location_poll_interval": 60,
            "retry_delay": 0.01,
        }
        params.update(overrides)
        return RideRequestController(ride_store, location_provider, **params)

    return _factory


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Ожидание условия, которое выполнится в фоновой задаче."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("условие не выполнилось за отведённое время")
            await asyncio.sleep(0.005)

    return _wait


def ride_row(
    ride_id: str = "ride-1",
    status: str = "pending",
    provider_id: Optional[str] = None,
    **extra: Any,
) -> Row:
    """Строка ride_requests для заполнения хранилища напрямую."""
    row: Row = {
        "id": ride_id,
        "user_id": USER_ID,
        "tracking_id": "RID-TEST",
        "pickup_lat": PICKUP.lat,
        "pickup_lng": PICKUP.lng,
        "pickup_address": PICKUP.address,
        "destination_lat": DESTINATION.lat,
        "destination_lng": DESTINATION.lng,
        "destination_address": DESTINATION.address,
        "ride_type": "standard",
        "estimated_fare": 76,
        "status": status,
        "provider_id": provider_id,
        "payment_method": "wallet",
        "passenger_count": 1,
        "created_at": _now_iso(),
        "updated_at": _now_iso(),
    }
    row.update(extra)
    return row


def vehicle_row(vehicle_id: str, name: str, sort_order: int, **extra: Any) -> Row:
    """Строка vehicle_types."""
    row: Row = {
        "id": vehicle_id,
        "name": name,
        "ride_type": "standard",
        "icon": "directions_car",
        "price_multiplier": 1.0,
        "estimated_eta_minutes": 5,
        "is_active": True,
        "sort_order": sort_order,
    }
    row.update(extra)
    return row


def place_row(place_id: str, name: str, lat: float, lng: float, **extra: Any) -> Row:
    """Строка saved_places / recent_places."""
    row: Row = {
        "id": place_id,
        "user_id": USER_ID,
        "name": name,
        "address": f"{name}, Bangkok",
        "lat": lat,
        "lng": lng,
        "place_type": "other",
        "last_used_at": _now_iso(),
    }
    row.update(extra)
    return row
