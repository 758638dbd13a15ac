# rider_app/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RideStatus(str, Enum):
    """Статусы заказа поездки (значения совпадают с удалённым хранилищем)."""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    MATCHED = "matched"
    ARRIVING = "arriving"
    ARRIVED = "arrived"
    PICKUP = "pickup"
    PICKED_UP = "picked_up"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Незавершённые статусы: у пассажира может быть только одна такая поездка
ACTIVE_RIDE_STATUSES: tuple[RideStatus, ...] = (
    RideStatus.PENDING,
    RideStatus.MATCHED,
    RideStatus.ARRIVING,
    RideStatus.ARRIVED,
    RideStatus.PICKUP,
    RideStatus.PICKED_UP,
    RideStatus.IN_PROGRESS,
)

TERMINAL_RIDE_STATUSES: tuple[RideStatus, ...] = (
    RideStatus.COMPLETED,
    RideStatus.CANCELLED,
)


class RideStep(str, Enum):
    """Шаги экрана заказа."""
    SELECT = "select"
    SEARCHING = "searching"
    TRACKING = "tracking"
    RATING = "rating"


class RideType(str, Enum):
    """Тарифы."""
    STANDARD = "standard"
    PREMIUM = "premium"
    SHARED = "shared"


class PaymentMethod(str, Enum):
    """Способы оплаты."""
    WALLET = "wallet"
    CASH = "cash"
    CARD = "card"


class SubscriptionStatus(str, Enum):
    """Состояние подписки на change feed."""
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeEventType(str, Enum):
    """Тип события изменения строки."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class GeocodeSource(str, Enum):
    """Источник адреса при обратном геокодировании."""
    GOOGLE = "google"
    PHOTON = "photon"
    NOMINATIM = "nominatim"
    COORDINATES = "coordinates"


class PlaceSource(str, Enum):
    """Откуда взято место в подсказках точки назначения."""
    SAVED = "saved"
    RECENT = "recent"
    SEARCH = "search"
