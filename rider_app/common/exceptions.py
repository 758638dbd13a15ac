# rider_app/common/exceptions.py
"""
Иерархия ошибок клиента поездок.

Инфраструктурный слой переводит исключения httpx/redis в эти классы,
поэтому конечный автомат заказа никогда не видит «сырые» транспортные ошибки.
Проигрыш гонки при назначении водителя ошибкой не считается и возвращается как None.
"""

from __future__ import annotations


class RideError(Exception):
    """Базовая ошибка. message_key указывает на текст в lang_dict.json."""

    message_key: str = "ERROR_GENERIC"

    def __init__(self, message: str = "", **params: object) -> None:
        super().__init__(message or self.message_key)
        self.params = params


# =============================================================================
# ОШИБКИ ВАЛИДАЦИИ (синхронные, без повторов)
# =============================================================================

class RideValidationError(RideError):
    """Некорректный запрос пассажира."""
    message_key = "ERROR_MISSING_LOCATION"


class NotAuthenticatedError(RideValidationError):
    """Пассажир не определён."""
    message_key = "ERROR_NOT_AUTHENTICATED"


class InsufficientBalanceError(RideValidationError):
    """Баланса кошелька не хватает на поездку."""
    message_key = "ERROR_INSUFFICIENT_BALANCE"

    def __init__(self, fare: float, balance: float) -> None:
        super().__init__(f"fare {fare} exceeds balance {balance}", fare=fare, balance=balance)
        self.fare = fare
        self.balance = balance


class ActiveRideExistsError(RideValidationError):
    """У пассажира уже есть незавершённая поездка."""
    message_key = "ERROR_ACTIVE_RIDE"


class InvalidRatingError(RideValidationError):
    """Оценка вне диапазона 1..5."""
    message_key = "ERROR_RATING"


# =============================================================================
# ТРАНСПОРТНЫЕ И ФАТАЛЬНЫЕ ОШИБКИ
# =============================================================================

class TransportError(RideError):
    """Сеть или удалённое хранилище недоступны. Операцию можно повторить."""
    message_key = "ERROR_GENERIC"


class MalformedResponseError(RideError):
    """Ответ хранилища не соответствует ожидаемой схеме."""
    message_key = "ERROR_GENERIC"


class LocationUnavailableError(RideError):
    """Источник позиции не смог определить местоположение."""
    message_key = "LABEL_LOCATION_APPROXIMATE"
