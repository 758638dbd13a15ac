# rider_app/core/geo/location.py
"""
Местоположение пассажира.

LocationProvider получает позицию от PositionSource с таймаутом и при отказе
или таймауте подставляет центр города по умолчанию с пометкой is_approximate.
Адрес для точки определяется отдельно через ReverseGeocoder.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from rider_app.common.constants import TypeMsg
from rider_app.common.exceptions import LocationUnavailableError
from rider_app.common.logger import log_info
from rider_app.common.tasks import RepeatingTask
from rider_app.core.geo.geocoder import ReverseGeocoder
from rider_app.core.geo.utils import format_coordinates
from rider_app.core.rides.models import GeoLocation


class PositionSource(ABC):
    """Источник координат устройства."""

    @abstractmethod
    async def get_position(self) -> tuple[float, float]:
        """
        Returns:
            (lat, lng)

        Raises:
            LocationUnavailableError: доступ запрещён или позиция не определена
        """


class FixedPositionSource(PositionSource):
    """Фиксированная точка (режим разработки, клиенты без геолокации)."""

    def __init__(self, lat: float, lng: float) -> None:
        self._position = (lat, lng)

    async def get_position(self) -> tuple[float, float]:
        return self._position


class LocationProvider:
    """Позиция пассажира с таймаутом и городом по умолчанию."""

    def __init__(
        self,
        source: PositionSource,
        geocoder: ReverseGeocoder | None = None,
        timeout: float | None = None,
        default_location: GeoLocation | None = None,
    ) -> None:
        if timeout is None or default_location is None:
            from rider_app.config import settings
            timeout = timeout if timeout is not None else settings.timeouts.GEOLOCATION_TIMEOUT
            default_location = default_location or GeoLocation(
                lat=settings.domain.DEFAULT_LATITUDE,
                lng=settings.domain.DEFAULT_LONGITUDE,
                address=settings.domain.DEFAULT_CITY,
                is_approximate=True,
            )

        self._source = source
        self._geocoder = geocoder
        self._timeout = timeout
        self.default_location = default_location
        self.last_location: Optional[GeoLocation] = None

    async def get_current_location(self) -> GeoLocation:
        """
        Текущая позиция без адреса (адрес: подпись координат).
        Никогда не бросает исключений: при сбое возвращает город по умолчанию.
        """
        try:
            lat, lng = await asyncio.wait_for(self._source.get_position(), timeout=self._timeout)
        except asyncio.TimeoutError:
            await log_info(
                f"Геолокация не ответила за {self._timeout} с, используем город по умолчанию",
                type_msg=TypeMsg.WARNING,
            )
            self.last_location = self.default_location
            return self.default_location
        except LocationUnavailableError as e:
            await log_info(f"Геолокация недоступна: {e}", type_msg=TypeMsg.WARNING)
            self.last_location = self.default_location
            return self.default_location

        location = GeoLocation(lat=lat, lng=lng, address=format_coordinates(lat, lng))
        self.last_location = location
        return location

    async def resolve_address(self, location: GeoLocation) -> GeoLocation:
        """Возвращает копию точки с адресом от геокодера."""
        if self._geocoder is None or location.is_approximate:
            return location
        result = await self._geocoder.reverse(location.lat, location.lng)
        return location.model_copy(update={"address": result.address or result.name})

    def watch(
        self,
        on_location: Callable[[GeoLocation], Awaitable[None]],
        interval: float | None = None,
    ) -> RepeatingTask:
        """
        Периодически запрашивает позицию и передаёт её в on_location.
        Владелец обязан отменить возвращённую задачу.
        """
        if interval is None:
            from rider_app.config import settings
            interval = settings.timeouts.LOCATION_POLL_INTERVAL

        async def _poll() -> None:
            await on_location(await self.get_current_location())

        task = RepeatingTask(interval, _poll, name="location-watch")
        task.start()
        return task
