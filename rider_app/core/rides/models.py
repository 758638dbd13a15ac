# rider_app/core/rides/models.py
"""
Модели данных поездки.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from rider_app.common.constants import (
    ACTIVE_RIDE_STATUSES,
    TERMINAL_RIDE_STATUSES,
    PaymentMethod,
    PlaceSource,
    RideStatus,
    RideType,
)


class GeoLocation(BaseModel):
    """Точка на карте. Авторитетны только координаты, адрес служит подписью."""

    lat: float = Field(..., ge=-90.0, le=90.0, description="Широта")
    lng: float = Field(..., ge=-180.0, le=180.0, description="Долгота")
    address: str = Field("", description="Адрес для отображения")
    is_approximate: bool = Field(False, description="Город по умолчанию вместо реальной позиции")

    class Config:
        frozen = True


class RideRequest(BaseModel):
    """Заказ поездки (проекция строки ride_requests)."""

    id: str = Field(..., description="ID, назначенный сервером")
    user_id: str = Field(..., description="ID пассажира")
    tracking_id: Optional[str] = Field(None, description="Публичный номер RID-...")

    pickup: GeoLocation = Field(..., description="Точка посадки")
    destination: GeoLocation = Field(..., description="Точка назначения")

    ride_type: RideType = Field(RideType.STANDARD, description="Тариф")
    estimated_fare: float = Field(0.0, ge=0.0, description="Стоимость, рассчитанная при создании")
    final_fare: Optional[float] = Field(None, description="Итоговая стоимость от сервера")

    status: RideStatus = Field(RideStatus.PENDING, description="Статус")
    provider_id: Optional[str] = Field(None, description="Назначенный водитель")

    payment_method: PaymentMethod = Field(PaymentMethod.WALLET, description="Способ оплаты")
    passenger_count: int = Field(1, ge=1, description="Число пассажиров")
    special_requests: Optional[str] = Field(None, description="Пожелания пассажира")
    scheduled_time: Optional[datetime] = Field(None, description="Время запланированной подачи")

    created_at: Optional[datetime] = Field(None, description="Время создания")
    updated_at: Optional[datetime] = Field(None, description="Время последнего изменения")
    completed_at: Optional[datetime] = Field(None, description="Время завершения")

    class Config:
        from_attributes = True

    @property
    def is_active(self) -> bool:
        """Незавершённая поездка."""
        return self.status in ACTIVE_RIDE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RIDE_STATUSES

    @property
    def fare(self) -> float:
        """Итоговая стоимость, если есть, иначе расчётная."""
        return self.final_fare if self.final_fare is not None else self.estimated_fare


class RideSnapshot(BaseModel):
    """Последнее известное состояние строки, по которому считаются изменения."""

    provider_id: Optional[str] = None
    status: RideStatus
    updated_at: Optional[datetime] = None

    @classmethod
    def of(cls, ride: RideRequest) -> "RideSnapshot":
        return cls(provider_id=ride.provider_id, status=ride.status, updated_at=ride.updated_at)


class VehicleInfo(BaseModel):
    """Машина водителя."""

    type: str = "car"
    color: str = ""
    plate: str = ""


class MatchedDriver(BaseModel):
    """Назначенный водитель. Всегда строится по provider_id заказа."""

    id: str = Field(..., description="ID водителя (service_providers.id)")
    name: str = Field("", description="Имя")
    phone: Optional[str] = Field(None, description="Телефон")
    rating: float = Field(4.8, ge=0.0, le=5.0, description="Средняя оценка")
    total_trips: int = Field(0, ge=0, description="Число поездок")
    vehicle: VehicleInfo = Field(default_factory=VehicleInfo)
    avatar_url: Optional[str] = None
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    eta_minutes: Optional[int] = Field(None, description="Минут до точки посадки")

    @property
    def has_location(self) -> bool:
        return self.current_lat is not None and self.current_lng is not None


class ProviderCandidate(BaseModel):
    """Водитель из выдачи find_nearby_providers (уже отсортирован сервером)."""

    provider_id: str
    distance_km: float = 0.0


class RideRating(BaseModel):
    """Оценка поездки пассажиром."""

    ride_id: str
    user_id: str
    provider_id: str
    rating: int = Field(..., ge=1, le=5)
    tip_amount: float = Field(0.0, ge=0.0)
    comment: Optional[str] = None


class VehicleOption(BaseModel):
    """
    Вариант транспорта на экране выбора.

    Встроенные варианты подписываются через name_key, варианты из таблицы
    vehicle_types приходят с готовым name.
    """

    id: str
    name: str = Field("", description="Название из таблицы vehicle_types")
    name_key: Optional[str] = Field(None, description="Ключ названия в lang_dict.json")
    ride_type: RideType
    multiplier: float = Field(1.0, gt=0.0, description="Коэффициент к тарифу")
    eta_minutes: int = 0
    icon: str = ""


DEFAULT_VEHICLES: tuple[VehicleOption, ...] = (
    VehicleOption(id="bike", name_key="VEHICLE_BIKE", ride_type=RideType.STANDARD, multiplier=0.7, eta_minutes=3, icon="two_wheeler"),
    VehicleOption(id="car", name_key="VEHICLE_CAR", ride_type=RideType.STANDARD, multiplier=1.0, eta_minutes=5, icon="directions_car"),
    VehicleOption(id="premium", name_key="VEHICLE_PREMIUM", ride_type=RideType.PREMIUM, multiplier=1.5, eta_minutes=8, icon="local_taxi"),
)


class BookingOptions(BaseModel):
    """Параметры бронирования из формы."""

    payment_method: PaymentMethod = PaymentMethod.WALLET
    scheduled_time: Optional[datetime] = None
    passenger_count: int = Field(1, ge=1)
    special_requests: Optional[str] = None
    promo_code: Optional[str] = None
    promo_discount: float = Field(0.0, ge=0.0)
    final_amount: Optional[float] = Field(None, description="Сумма после промокода, если применён")


class SearchSession(BaseModel):
    """Состояние поиска водителя на клиенте."""

    ride_id: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    elapsed_seconds: int = 0
    timed_out: bool = False


class Place(BaseModel):
    """Место для быстрого выбора точки назначения."""

    id: str
    name: str = ""
    address: str = ""
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    place_type: Optional[str] = Field(None, description="home / work / other для сохранённых мест")
    source: PlaceSource = PlaceSource.SEARCH

    @property
    def label(self) -> str:
        return self.name or self.address

    def matches(self, query: str) -> bool:
        """Подстрока без учёта регистра в названии или адресе."""
        needle = query.lower()
        return needle in self.name.lower() or needle in self.address.lower()

    def to_location(self) -> GeoLocation:
        return GeoLocation(lat=self.lat, lng=self.lng, address=self.label)
