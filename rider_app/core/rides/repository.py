# rider_app/core/rides/repository.py
"""
Репозиторий поездок поверх RemoteStore.

Отвечает за отображение строк ride_requests / service_providers / ride_ratings
в модели и обратно, а также читает справочники экрана выбора: vehicle_types,
saved_places и recent_places. Транспортные ошибки (TransportError) пробрасываются
вызывающему коду, ответы неожиданной формы превращаются в MalformedResponseError.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from rider_app.common.constants import (
    ACTIVE_RIDE_STATUSES,
    TERMINAL_RIDE_STATUSES,
    PlaceSource,
    RideStatus,
    RideType,
)
from rider_app.common.exceptions import MalformedResponseError
from rider_app.core.rides.models import (
    GeoLocation,
    MatchedDriver,
    Place,
    ProviderCandidate,
    RideRating,
    RideRequest,
    VehicleInfo,
    VehicleOption,
)
from rider_app.infra.remote_store import (
    ChangeHandler,
    Filter,
    Query,
    RemoteStore,
    Row,
    StatusHandler,
    Subscription,
)

PROVIDER_COLUMNS = (
    "id, user_id, provider_type, vehicle_type, vehicle_color, vehicle_plate, "
    "rating, total_trips, current_lat, current_lng, "
    "users:user_id(name, phone, avatar_url)"
)

VEHICLE_TYPE_COLUMNS = "id, name, ride_type, price_multiplier, estimated_eta_minutes, icon"

DEFAULT_VEHICLE_ETA_MINUTES = 5


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class RideRepository:
    """Репозиторий заказов поездки."""

    def __init__(
        self,
        store: RemoteStore,
        rides_table: str | None = None,
        providers_table: str | None = None,
        ratings_table: str | None = None,
        nearby_rpc: str | None = None,
        wallet_rpc: str | None = None,
        vehicle_types_table: str | None = None,
        saved_places_table: str | None = None,
        recent_places_table: str | None = None,
    ) -> None:
        """
        Args:
            store: Удалённое хранилище (Dependency Injection)
        """
        tables = (
            rides_table, providers_table, ratings_table, nearby_rpc, wallet_rpc,
            vehicle_types_table, saved_places_table, recent_places_table,
        )
        if None in tables:
            from rider_app.config import settings
            rides_table = rides_table or settings.backend.RIDES_TABLE
            providers_table = providers_table or settings.backend.PROVIDERS_TABLE
            ratings_table = ratings_table or settings.backend.RATINGS_TABLE
            nearby_rpc = nearby_rpc or settings.backend.NEARBY_PROVIDERS_RPC
            wallet_rpc = wallet_rpc or settings.backend.WALLET_RPC
            vehicle_types_table = vehicle_types_table or settings.backend.VEHICLE_TYPES_TABLE
            saved_places_table = saved_places_table or settings.backend.SAVED_PLACES_TABLE
            recent_places_table = recent_places_table or settings.backend.RECENT_PLACES_TABLE

        self._store = store
        self.rides_table = rides_table
        self.providers_table = providers_table
        self.ratings_table = ratings_table
        self.nearby_rpc = nearby_rpc
        self.wallet_rpc = wallet_rpc
        self.vehicle_types_table = vehicle_types_table
        self.saved_places_table = saved_places_table
        self.recent_places_table = recent_places_table

    # =========================================================================
    # ЗАКАЗЫ
    # =========================================================================

    async def insert_ride(self, values: Row) -> RideRequest:
        """Создаёт строку заказа и возвращает серверное представление."""
        row = await self._store.insert(self.rides_table, values)
        return self.row_to_ride(row)

    async def get_ride(self, ride_id: str) -> Optional[RideRequest]:
        row = await self._store.select_one(
            self.rides_table,
            Query(filters=[Filter.eq("id", ride_id)]),
        )
        return self.row_to_ride(row) if row else None

    async def get_active_ride(self, user_id: str) -> Optional[RideRequest]:
        """Самая свежая незавершённая поездка пассажира."""
        row = await self._store.select_one(
            self.rides_table,
            Query(
                filters=[
                    Filter.eq("user_id", user_id),
                    Filter.in_("status", ACTIVE_RIDE_STATUSES),
                ],
                order_by="created_at",
                descending=True,
            ),
        )
        return self.row_to_ride(row) if row else None

    async def get_ride_history(self, user_id: str, limit: int = 20) -> list[RideRequest]:
        rows = await self._store.select(
            self.rides_table,
            Query(
                filters=[
                    Filter.eq("user_id", user_id),
                    Filter.in_("status", TERMINAL_RIDE_STATUSES),
                ],
                order_by="created_at",
                descending=True,
                limit=limit,
            ),
        )
        return [self.row_to_ride(row) for row in rows]

    async def assign_provider(self, ride_id: str, provider_id: str) -> Optional[RideRequest]:
        """
        Назначает водителя, только если заказ всё ещё ждёт и никем не занят.

        Returns:
            Обновлённый заказ или None, если гонку выиграл кто-то другой
        """
        rows = await self._store.update(
            self.rides_table,
            {
                "provider_id": provider_id,
                "status": RideStatus.MATCHED.value,
                "updated_at": _iso(datetime.now(timezone.utc)),
            },
            [
                Filter.eq("id", ride_id),
                Filter.eq("status", RideStatus.PENDING),
                Filter.is_null("provider_id"),
            ],
        )
        return self.row_to_ride(rows[0]) if rows else None

    async def cancel_ride(self, ride_id: str) -> Optional[RideRequest]:
        """
        Отменяет незавершённый заказ.

        Returns:
            Отменённый заказ или None, если заказ уже был завершён или отменён
        """
        rows = await self._store.update(
            self.rides_table,
            {
                "status": RideStatus.CANCELLED.value,
                "updated_at": _iso(datetime.now(timezone.utc)),
            },
            [
                Filter.eq("id", ride_id),
                Filter.in_("status", (*ACTIVE_RIDE_STATUSES, RideStatus.SCHEDULED)),
            ],
        )
        return self.row_to_ride(rows[0]) if rows else None

    async def subscribe_ride(
        self,
        ride_id: str,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        return await self._store.subscribe(self.rides_table, Filter.eq("id", ride_id), on_event, on_status)

    # =========================================================================
    # ВОДИТЕЛИ
    # =========================================================================

    async def find_nearby_providers(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        provider_type: str = "driver",
    ) -> list[ProviderCandidate]:
        """Ранжированный сервером список свободных водителей рядом."""
        result = await self._store.rpc(
            self.nearby_rpc,
            {
                "lat": lat,
                "lng": lng,
                "radius_km": radius_km,
                "provider_type_filter": provider_type,
            },
        )
        if result is None:
            return []
        if not isinstance(result, list):
            raise MalformedResponseError(f"{self.nearby_rpc}: ожидался список")
        try:
            return [ProviderCandidate.model_validate(item) for item in result]
        except ValidationError as e:
            raise MalformedResponseError(f"{self.nearby_rpc}: {e}") from e

    async def get_provider(self, provider_id: str) -> Optional[MatchedDriver]:
        row = await self._store.select_one(
            self.providers_table,
            Query(filters=[Filter.eq("id", provider_id)], columns=PROVIDER_COLUMNS),
        )
        return self.row_to_driver(row) if row else None

    async def subscribe_provider(
        self,
        provider_id: str,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        return await self._store.subscribe(
            self.providers_table, Filter.eq("id", provider_id), on_event, on_status
        )

    # =========================================================================
    # КОШЕЛЁК
    # =========================================================================

    async def get_wallet_balance(self, user_id: str) -> float:
        """Баланс кошелька пассажира. RPC может вернуть объект или список из одного объекта."""
        result = await self._store.rpc(self.wallet_rpc, {"p_user_id": user_id})
        if isinstance(result, list):
            result = result[0] if result else None
        if result is None:
            return 0.0
        if not isinstance(result, dict):
            raise MalformedResponseError(f"{self.wallet_rpc}: ожидался объект")
        try:
            return float(result.get("balance") or 0)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"{self.wallet_rpc}: {e}") from e

    # =========================================================================
    # ОЦЕНКИ
    # =========================================================================

    async def insert_rating(self, rating: RideRating) -> None:
        await self._store.insert(self.ratings_table, rating.model_dump())

    # =========================================================================
    # СПРАВОЧНИКИ ЭКРАНА ВЫБОРА
    # =========================================================================

    async def get_vehicle_types(self) -> list[VehicleOption]:
        """Активные варианты транспорта в порядке sort_order."""
        rows = await self._store.select(
            self.vehicle_types_table,
            Query(
                filters=[Filter.eq("is_active", True)],
                columns=VEHICLE_TYPE_COLUMNS,
                order_by="sort_order",
            ),
        )
        return [self.row_to_vehicle(row) for row in rows]

    async def get_saved_places(self, user_id: str) -> list[Place]:
        rows = await self._store.select(
            self.saved_places_table,
            Query(filters=[Filter.eq("user_id", user_id)], order_by="place_type"),
        )
        return [self.row_to_place(row, PlaceSource.SAVED) for row in rows]

    async def get_recent_places(self, user_id: str, limit: int = 5) -> list[Place]:
        """Последние использованные места, свежие первыми."""
        rows = await self._store.select(
            self.recent_places_table,
            Query(
                filters=[Filter.eq("user_id", user_id)],
                order_by="last_used_at",
                descending=True,
                limit=limit,
            ),
        )
        return [self.row_to_place(row, PlaceSource.RECENT) for row in rows]

    # =========================================================================
    # ОТОБРАЖЕНИЕ СТРОК
    # =========================================================================

    @staticmethod
    def ride_to_row(
        user_id: str,
        pickup: GeoLocation,
        destination: GeoLocation,
        **fields: Any,
    ) -> Row:
        """Строка для вставки нового заказа."""
        row: Row = {
            "user_id": user_id,
            "pickup_lat": pickup.lat,
            "pickup_lng": pickup.lng,
            "pickup_address": pickup.address,
            "destination_lat": destination.lat,
            "destination_lng": destination.lng,
            "destination_address": destination.address,
        }
        for key, value in fields.items():
            if isinstance(value, datetime):
                value = _iso(value)
            row[key] = getattr(value, "value", value)
        return row

    @staticmethod
    def row_to_ride(row: Row) -> RideRequest:
        """Конвертирует строку ride_requests в RideRequest."""
        try:
            return RideRequest(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                tracking_id=row.get("tracking_id"),
                pickup=GeoLocation(
                    lat=row["pickup_lat"],
                    lng=row["pickup_lng"],
                    address=row.get("pickup_address") or "",
                ),
                destination=GeoLocation(
                    lat=row["destination_lat"],
                    lng=row["destination_lng"],
                    address=row.get("destination_address") or "",
                ),
                ride_type=row.get("ride_type") or "standard",
                estimated_fare=row.get("estimated_fare") or 0,
                final_fare=row.get("final_fare"),
                status=row["status"],
                provider_id=row.get("provider_id"),
                payment_method=row.get("payment_method") or "wallet",
                passenger_count=row.get("passenger_count") or 1,
                special_requests=row.get("special_requests"),
                scheduled_time=row.get("scheduled_time"),
                created_at=row.get("created_at"),
                updated_at=row.get("updated_at"),
                completed_at=row.get("completed_at"),
            )
        except (KeyError, TypeError, ValidationError) as e:
            raise MalformedResponseError(f"Некорректная строка заказа: {e}") from e

    @staticmethod
    def row_to_driver(row: Row) -> MatchedDriver:
        """Конвертирует строку service_providers (с вложенным users) в MatchedDriver."""
        user = row.get("users") or {}
        if isinstance(user, list):
            user = user[0] if user else {}
        try:
            return MatchedDriver(
                id=str(row["id"]),
                name=user.get("name") or "",
                phone=user.get("phone"),
                avatar_url=user.get("avatar_url"),
                rating=row.get("rating") or 4.8,
                total_trips=row.get("total_trips") or 0,
                vehicle=VehicleInfo(
                    type=row.get("vehicle_type") or "car",
                    color=row.get("vehicle_color") or "",
                    plate=row.get("vehicle_plate") or "",
                ),
                current_lat=row.get("current_lat"),
                current_lng=row.get("current_lng"),
            )
        except (KeyError, TypeError, ValidationError) as e:
            raise MalformedResponseError(f"Некорректная строка водителя: {e}") from e

    @staticmethod
    def row_to_vehicle(row: Row) -> VehicleOption:
        try:
            return VehicleOption(
                id=str(row["id"]),
                name=row.get("name") or "",
                ride_type=row.get("ride_type") or RideType.STANDARD,
                multiplier=row.get("price_multiplier") or 1.0,
                eta_minutes=row.get("estimated_eta_minutes") or DEFAULT_VEHICLE_ETA_MINUTES,
                icon=row.get("icon") or "directions_car",
            )
        except (KeyError, TypeError, ValidationError) as e:
            raise MalformedResponseError(f"Некорректная строка vehicle_types: {e}") from e

    @staticmethod
    def row_to_place(row: Row, source: PlaceSource) -> Place:
        try:
            return Place(
                id=str(row["id"]),
                name=row.get("name") or "",
                address=row.get("address") or "",
                lat=row["lat"],
                lng=row["lng"],
                place_type=row.get("place_type"),
                source=source,
            )
        except (KeyError, TypeError, ValidationError) as e:
            raise MalformedResponseError(f"Некорректная строка места: {e}") from e


def location_from_row(row: Row) -> Optional[tuple[float, float]]:
    """Координаты водителя из строки service_providers, если они есть."""
    lat, lng = row.get("current_lat"), row.get("current_lng")
    if lat is None or lng is None:
        return None
    try:
        return float(lat), float(lng)
    except (TypeError, ValueError):
        return None


