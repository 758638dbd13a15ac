# rider_app/core/geo/utils.py
"""
Расстояния, тарифы и оценка времени в пути.

Формула тарифа должна совпадать с серверной до рубля: любые изменения
таблицы FARE_TIERS применяются одновременно на клиенте и сервере.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from rider_app.common.constants import RideType

EARTH_RADIUS_KM = 6371.0

# Эвристика для отображения: примерно 3 минуты на километр
MINUTES_PER_KM = 3.0


@dataclass(frozen=True)
class FareTier:
    """Параметры тарифа: посадка, цена километра, минимальная стоимость."""
    base_fare: float
    per_km: float
    minimum_fare: float


FARE_TIERS: dict[RideType, FareTier] = {
    RideType.STANDARD: FareTier(base_fare=35, per_km=10, minimum_fare=50),
    RideType.PREMIUM: FareTier(base_fare=35, per_km=15, minimum_fare=80),
    RideType.SHARED: FareTier(base_fare=35, per_km=8, minimum_fare=40),
}


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Вычисляет расстояние между двумя точками (в км) по формуле Haversine.
    """
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def round_half_up(value: float) -> int:
    """Округление до целого, .5 вверх (как на сервере)."""
    return int(math.floor(value + 0.5))


def get_fare_tier(ride_type: RideType | str) -> FareTier:
    """Возвращает тариф. Неизвестный тип считается стандартным."""
    try:
        return FARE_TIERS[RideType(ride_type)]
    except ValueError:
        return FARE_TIERS[RideType.STANDARD]


def calculate_fare(distance_km: float, ride_type: RideType | str = RideType.STANDARD) -> int:
    """
    fare = round(max(base + distance * per_km, minimum)).

    Raises:
        ValueError: отрицательное расстояние
    """
    if distance_km < 0:
        raise ValueError(f"Отрицательное расстояние: {distance_km}")

    tier = get_fare_tier(ride_type)
    raw = tier.base_fare + distance_km * tier.per_km
    return round_half_up(max(raw, tier.minimum_fare))


def quote_fare(
    distance_km: float,
    ride_type: RideType | str = RideType.STANDARD,
    multiplier: float = 1.0,
) -> int:
    """
    Цена для выбранного транспорта: тариф с коэффициентом машины.
    Одна и та же функция считает превью и estimated_fare при создании заказа.
    """
    fare = calculate_fare(distance_km, ride_type)
    if multiplier == 1.0:
        return fare
    return round_half_up(fare * multiplier)


def estimate_travel_time(distance_km: float) -> int:
    """Время в пути, минуты (не меньше 1 для ненулевого расстояния)."""
    if distance_km <= 0:
        return 0
    return max(1, math.ceil(distance_km * MINUTES_PER_KM))


def estimate_driver_eta(
    driver_lat: float | None,
    driver_lng: float | None,
    pickup_lat: float,
    pickup_lng: float,
) -> int | None:
    """ETA водителя до точки посадки по его текущей позиции."""
    if driver_lat is None or driver_lng is None:
        return None
    return estimate_travel_time(calculate_distance(driver_lat, driver_lng, pickup_lat, pickup_lng))


def format_coordinates(lat: float, lng: float) -> str:
    """Подпись точки без адреса: '13.7563, 100.5018'."""
    return f"{lat:.4f}, {lng:.4f}"
