# tests/core/test_ride_repository.py
"""
Тесты RideRepository поверх in-memory хранилища.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import (
    DESTINATION,
    NEARBY_RPC,
    PICKUP,
    PROVIDERS,
    RATINGS,
    RECENT_PLACES,
    RIDES,
    SAVED_PLACES,
    USER_ID,
    VEHICLE_TYPES,
    WALLET_RPC,
    FakeRemoteStore,
    make_provider_row,
    place_row,
    ride_row,
    vehicle_row,
)
from rider_app.common.constants import PaymentMethod, PlaceSource, RideStatus, RideType
from rider_app.common.exceptions import MalformedResponseError, TransportError
from rider_app.core.rides.models import RideRating
from rider_app.core.rides.repository import RideRepository, location_from_row
from rider_app.infra.remote_store import Filter


class TestRowMapping:
    """Тесты отображения строк."""

    def test_ride_to_row_flattens_locations(self) -> None:
        scheduled = datetime(2026, 1, 1, 9, 30, tzinfo=timezone.utc)
        row = RideRepository.ride_to_row(
            USER_ID, PICKUP, DESTINATION,
            ride_type=RideType.PREMIUM,
            payment_method=PaymentMethod.CASH,
            scheduled_time=scheduled,
        )

        assert row["pickup_lat"] == PICKUP.lat
        assert row["destination_address"] == DESTINATION.address
        assert row["ride_type"] == "premium"
        assert row["payment_method"] == "cash"
        assert row["scheduled_time"] == scheduled.isoformat()

    def test_row_to_ride(self) -> None:
        ride = RideRepository.row_to_ride(ride_row(status="matched", provider_id="drv-1"))

        assert ride.id == "ride-1"
        assert ride.status == RideStatus.MATCHED
        assert ride.provider_id == "drv-1"
        assert ride.pickup.address == PICKUP.address
        assert ride.is_active

    def test_row_to_ride_missing_column(self) -> None:
        row = ride_row()
        del row["pickup_lat"]

        with pytest.raises(MalformedResponseError):
            RideRepository.row_to_ride(row)

    def test_row_to_ride_unknown_status(self) -> None:
        with pytest.raises(MalformedResponseError):
            RideRepository.row_to_ride(ride_row(status="teleported"))

    def test_row_to_driver_with_nested_user(self) -> None:
        driver = RideRepository.row_to_driver(make_provider_row("drv-1", name="Somchai"))

        assert driver.id == "drv-1"
        assert driver.name == "Somchai"
        assert driver.vehicle.plate == "กข 1234"
        assert driver.has_location

    def test_row_to_driver_user_as_list(self) -> None:
        row = make_provider_row("drv-1")
        row["users"] = [{"name": "Niran"}]
        row["rating"] = None

        driver = RideRepository.row_to_driver(row)

        assert driver.name == "Niran"
        assert driver.rating == 4.8

    def test_location_from_row(self) -> None:
        assert location_from_row({"current_lat": "13.7", "current_lng": 100.5}) == (13.7, 100.5)
        assert location_from_row({"current_lat": None, "current_lng": 100.5}) is None
        assert location_from_row({"current_lat": "x", "current_lng": 1}) is None


class TestRides:
    """Тесты операций с заказами."""

    @pytest.mark.asyncio
    async def test_get_active_ride_ignores_terminal(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.tables[RIDES].extend([
            ride_row("old", status="completed", created_at="2026-01-01T00:00:00+00:00"),
            ride_row("live", status="arriving", created_at="2026-01-02T00:00:00+00:00"),
        ])

        ride = await repository.get_active_ride(USER_ID)

        assert ride is not None and ride.id == "live"

    @pytest.mark.asyncio
    async def test_get_active_ride_none(self, repository: RideRepository) -> None:
        assert await repository.get_active_ride(USER_ID) is None

    @pytest.mark.asyncio
    async def test_history_newest_first(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.tables[RIDES].extend([
            ride_row("a", status="completed", created_at="2026-01-01T00:00:00+00:00"),
            ride_row("b", status="cancelled", created_at="2026-01-03T00:00:00+00:00"),
            ride_row("c", status="pending", created_at="2026-01-04T00:00:00+00:00"),
        ])

        history = await repository.get_ride_history(USER_ID, limit=20)

        assert [r.id for r in history] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_assign_provider_only_when_pending_and_free(
        self, fake_store: FakeRemoteStore, repository: RideRepository
    ) -> None:
        fake_store.tables[RIDES].append(ride_row("ride-1"))

        first = await repository.assign_provider("ride-1", "drv-1")
        second = await repository.assign_provider("ride-1", "drv-2")

        assert first is not None and first.provider_id == "drv-1"
        assert first.status == RideStatus.MATCHED
        assert second is None
        assert fake_store.row(RIDES, "ride-1")["provider_id"] == "drv-1"

    @pytest.mark.asyncio
    async def test_assign_provider_filters(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.tables[RIDES].append(ride_row("ride-1"))
        calls = []
        original = fake_store.update

        async def spy(table, values, filters):
            calls.append(list(filters))
            return await original(table, values, filters)

        fake_store.update = spy
        await repository.assign_provider("ride-1", "drv-1")

        assert Filter.eq("status", RideStatus.PENDING) in calls[0]
        assert Filter.is_null("provider_id") in calls[0]

    @pytest.mark.asyncio
    async def test_cancel_terminal_ride_returns_none(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.tables[RIDES].append(ride_row("ride-1", status="completed"))

        assert await repository.cancel_ride("ride-1") is None
        assert fake_store.row(RIDES, "ride-1")["status"] == "completed"

    @pytest.mark.asyncio
    async def test_cancel_scheduled_ride(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.tables[RIDES].append(ride_row("ride-1", status="scheduled"))

        cancelled = await repository.cancel_ride("ride-1")

        assert cancelled is not None and cancelled.status == RideStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.fail_on["select"] = TransportError("down")

        with pytest.raises(TransportError):
            await repository.get_ride("ride-1")


class TestProviders:
    """Тесты водителей, кошелька и оценок."""

    @pytest.mark.asyncio
    async def test_find_nearby_providers_params(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.rpc_results[NEARBY_RPC] = [
            {"provider_id": "drv-1", "distance_km": 0.8},
            {"provider_id": "drv-2", "distance_km": 1.9},
        ]

        candidates = await repository.find_nearby_providers(13.75, 100.50, 5.0, "driver")

        assert [c.provider_id for c in candidates] == ["drv-1", "drv-2"]
        name, params = fake_store.rpc_calls[-1]
        assert name == NEARBY_RPC
        assert params == {"lat": 13.75, "lng": 100.50, "radius_km": 5.0, "provider_type_filter": "driver"}

    @pytest.mark.asyncio
    async def test_find_nearby_providers_malformed(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.rpc_results[NEARBY_RPC] = {"oops": True}

        with pytest.raises(MalformedResponseError):
            await repository.find_nearby_providers(13.75, 100.50, 5.0)

    @pytest.mark.asyncio
    async def test_find_nearby_providers_empty(self, repository: RideRepository) -> None:
        assert await repository.find_nearby_providers(13.75, 100.50, 5.0) == []

    @pytest.mark.asyncio
    async def test_get_provider(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.tables[PROVIDERS].append(make_provider_row("drv-1"))

        driver = await repository.get_provider("drv-1")

        assert driver is not None and driver.id == "drv-1"
        assert await repository.get_provider("missing") is None

    @pytest.mark.asyncio
    async def test_wallet_balance_from_list(self, repository: RideRepository) -> None:
        assert await repository.get_wallet_balance(USER_ID) == 1000.0

    @pytest.mark.asyncio
    async def test_wallet_balance_missing(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.rpc_results[WALLET_RPC] = []
        assert await repository.get_wallet_balance(USER_ID) == 0.0

    @pytest.mark.asyncio
    async def test_insert_rating(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        await repository.insert_rating(RideRating(
            ride_id="ride-1", user_id=USER_ID, provider_id="drv-1", rating=5, tip_amount=20,
        ))

        stored = fake_store.tables[RATINGS][0]
        assert stored["rating"] == 5
        assert stored["tip_amount"] == 20


class TestCatalogs:
    """Тесты справочников экрана выбора."""

    def test_row_to_vehicle_defaults(self) -> None:
        vehicle = RideRepository.row_to_vehicle({"id": 7, "name": "Sedan", "ride_type": "premium"})

        assert vehicle.id == "7"
        assert vehicle.ride_type == RideType.PREMIUM
        assert vehicle.multiplier == 1.0
        assert vehicle.eta_minutes == 5
        assert vehicle.icon == "directions_car"
        assert vehicle.name_key is None

    def test_row_to_vehicle_malformed(self) -> None:
        with pytest.raises(MalformedResponseError):
            RideRepository.row_to_vehicle({"id": "x", "ride_type": "spaceship"})

    def test_row_to_place_missing_coordinates(self) -> None:
        with pytest.raises(MalformedResponseError):
            RideRepository.row_to_place({"id": "p", "name": "Home"}, PlaceSource.SAVED)

    @pytest.mark.asyncio
    async def test_only_active_vehicle_types(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.tables[VEHICLE_TYPES].extend([
            vehicle_row("premium", "Premium", 3, ride_type="premium", price_multiplier=1.5),
            vehicle_row("old", "Old", 2, is_active=False),
            vehicle_row("car", "Car", 1),
        ])

        vehicles = await repository.get_vehicle_types()

        assert [v.id for v in vehicles] == ["car", "premium"]
        assert vehicles[1].multiplier == 1.5

    @pytest.mark.asyncio
    async def test_saved_places_for_user(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        fake_store.tables[SAVED_PLACES].extend([
            place_row("work", "Office", 13.72, 100.53, place_type="work"),
            place_row("home", "Home", 13.73, 100.52, place_type="home"),
            place_row("foreign", "Home", 13.70, 100.50, user_id="other"),
        ])

        places = await repository.get_saved_places(USER_ID)

        assert [p.id for p in places] == ["home", "work"]
        assert all(p.source == PlaceSource.SAVED for p in places)

    @pytest.mark.asyncio
    async def test_recent_places_newest_first(self, fake_store: FakeRemoteStore, repository: RideRepository) -> None:
        for day in range(1, 5):
            fake_store.tables[RECENT_PLACES].append(place_row(
                f"r-{day}", f"Place {day}", 13.7 + day / 100, 100.5,
                last_used_at=f"2026-03-0{day}T10:00:00+00:00",
            ))

        places = await repository.get_recent_places(USER_ID, limit=2)

        assert [p.id for p in places] == ["r-4", "r-3"]
        assert places[0].source == PlaceSource.RECENT
