# rider_app/core/rides/store.py
"""
RideStore: единственный источник истины об активной поездке.

Хранит текущий RideRequest и MatchedDriver, выполняет операции над ними
(создание, назначение водителя, отмена, завершение, оценка) и уведомляет
подписчиков об изменениях. Здесь же лежат справочники экрана выбора:
варианты транспорта, сохранённые и недавние места, история поездок. Изменять заказ может только этот класс.
Экземпляр создаётся оболочкой приложения и передаётся контроллеру явно.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, Optional

from rider_app.common.constants import PaymentMethod, RideStatus, RideType, TypeMsg
from rider_app.common.exceptions import (
    ActiveRideExistsError,
    InvalidRatingError,
    NotAuthenticatedError,
    RideError,
    TransportError,
)
from rider_app.common.logger import log_debug, log_error, log_info
from rider_app.core.geo.utils import calculate_distance, estimate_driver_eta, quote_fare
from rider_app.core.rides.models import (
    DEFAULT_VEHICLES,
    GeoLocation,
    MatchedDriver,
    Place,
    ProviderCandidate,
    RideRating,
    RideRequest,
    VehicleOption,
)
from rider_app.core.rides.repository import RideRepository

StoreListener = Callable[[], None]

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def make_tracking_id(timestamp_ms: int | None = None) -> str:
    """Публичный номер заказа: RID- и время в миллисекундах в base36."""
    value = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    digits = ""
    while True:
        value, rem = divmod(value, 36)
        digits = _BASE36[rem] + digits
        if value == 0:
            break
    return f"RID-{digits.upper()}"


class RideStore:
    """Состояние активной поездки пассажира."""

    def __init__(
        self,
        repository: RideRepository,
        search_radius_km: float | None = None,
        provider_type: str | None = None,
        nearby_cache_ttl: float | None = None,
        history_limit: int | None = None,
        recent_places_limit: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if None in (search_radius_km, provider_type, nearby_cache_ttl, history_limit, recent_places_limit):
            from rider_app.config import settings
            search_radius_km = search_radius_km or settings.search.DRIVER_SEARCH_RADIUS_KM
            provider_type = provider_type or settings.search.PROVIDER_TYPE
            nearby_cache_ttl = nearby_cache_ttl if nearby_cache_ttl is not None else settings.search.NEARBY_CACHE_TTL
            history_limit = history_limit or settings.search.RIDE_HISTORY_LIMIT
            recent_places_limit = recent_places_limit or settings.search.RECENT_PLACES_LIMIT

        self.repository = repository
        self._search_radius_km = search_radius_km
        self._provider_type = provider_type
        self._nearby_cache_ttl = nearby_cache_ttl
        self._history_limit = history_limit
        self._recent_places_limit = recent_places_limit
        self._clock = clock

        self.current_ride: Optional[RideRequest] = None
        self.matched_driver: Optional[MatchedDriver] = None
        self.ride_history: list[RideRequest] = []
        self.vehicles: tuple[VehicleOption, ...] = DEFAULT_VEHICLES
        self.saved_places: list[Place] = []
        self.recent_places: list[Place] = []
        self.pending_destination: Optional[GeoLocation] = None
        self.error: Optional[RideError] = None

        self._nearby_cache: dict[str, tuple[float, list[ProviderCandidate]]] = {}
        self._listeners: list[StoreListener] = []

    # =========================================================================
    # ПОДПИСЧИКИ
    # =========================================================================

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """Регистрирует колбэк изменений. Возвращает функцию отписки."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    # =========================================================================
    # СОСТОЯНИЕ
    # =========================================================================

    @property
    def has_active_ride(self) -> bool:
        return self.current_ride is not None and self.current_ride.is_active

    def is_current(self, ride_id: str) -> bool:
        """Совпадает ли ride_id с текущим заказом (проверка после каждого await)."""
        return self.current_ride is not None and self.current_ride.id == ride_id

    def apply_ride_update(self, ride: RideRequest) -> Optional[RideRequest]:
        """
        Применяет серверное состояние текущего заказа.

        Маршрут и estimated_fare не меняются после создания, поэтому
        берутся из локальной копии. Возвращает предыдущее состояние или None,
        если ride относится к другому заказу.
        """
        previous = self.current_ride
        if previous is None or previous.id != ride.id:
            return None

        self.current_ride = ride.model_copy(update={
            "pickup": previous.pickup,
            "destination": previous.destination,
            "estimated_fare": previous.estimated_fare,
        })
        self._changed()
        return previous

    def set_matched_driver(self, driver: MatchedDriver) -> None:
        """Заменяет проекцию водителя целиком."""
        if self.current_ride is not None:
            eta = estimate_driver_eta(
                driver.current_lat,
                driver.current_lng,
                self.current_ride.pickup.lat,
                self.current_ride.pickup.lng,
            )
            if eta is not None:
                driver = driver.model_copy(update={"eta_minutes": eta})
        self.matched_driver = driver
        self._changed()

    def drop_matched_driver(self) -> None:
        if self.matched_driver is not None:
            self.matched_driver = None
            self._changed()

    def update_driver_location(self, provider_id: str, lat: float, lng: float) -> bool:
        """
        Обновляет координаты водителя.

        Returns:
            False, если provider_id уже не соответствует назначенному водителю
        """
        driver = self.matched_driver
        if driver is None or driver.id != provider_id:
            return False

        update: dict[str, object] = {"current_lat": lat, "current_lng": lng}
        if self.current_ride is not None:
            update["eta_minutes"] = estimate_driver_eta(
                lat, lng, self.current_ride.pickup.lat, self.current_ride.pickup.lng
            )
        self.matched_driver = driver.model_copy(update=update)
        self._changed()
        return True

    def clear(self) -> None:
        """Сбрасывает активную поездку и водителя."""
        self.current_ride = None
        self.matched_driver = None
        self.error = None
        self._changed()

    # =========================================================================
    # ВОССТАНОВЛЕНИЕ
    # =========================================================================

    async def initialize(self, user_id: str) -> Optional[RideRequest]:
        """
        Загружает активную поездку пассажира (после перезагрузки страницы).
        Повторный вызов с той же поездкой ничего не меняет.
        """
        try:
            ride = await self.repository.get_active_ride(user_id)
        except RideError as e:
            await log_error(f"Не удалось восстановить поездку пассажира {user_id}: {e}")
            self.error = e
            return self.current_ride

        if ride is None:
            if self.current_ride is not None and self.current_ride.is_active:
                # Заказ завершился, пока клиент был отключён
                self.clear()
            return None

        if self.current_ride is not None and self.current_ride.id == ride.id:
            self.apply_ride_update(ride)
        else:
            self.current_ride = ride
            self.matched_driver = None
            self._changed()

        if ride.provider_id and (self.matched_driver is None or self.matched_driver.id != ride.provider_id):
            try:
                await self.load_driver(ride.id, ride.provider_id)
            except RideError as e:
                # Заказ восстанавливается и без карточки водителя
                await log_error(f"Не удалось загрузить водителя {ride.provider_id} заказа {ride.id}: {e}")
                self.error = e

        await log_info(f"Восстановлена поездка {ride.id} ({ride.status.value})", type_msg=TypeMsg.INFO)
        return self.current_ride

    # =========================================================================
    # СОЗДАНИЕ ЗАКАЗА
    # =========================================================================

    async def create_ride_request(
        self,
        user_id: str,
        pickup: GeoLocation,
        destination: GeoLocation,
        ride_type: RideType = RideType.STANDARD,
        multiplier: float = 1.0,
        payment_method: PaymentMethod = PaymentMethod.WALLET,
        passenger_count: int = 1,
        special_requests: Optional[str] = None,
        scheduled_time: Optional[datetime] = None,
    ) -> RideRequest:
        """
        Создаёт заказ со статусом pending (или scheduled для брони на будущее).

        Raises:
            NotAuthenticatedError: пассажир не определён
            ActiveRideExistsError: у пассажира уже есть активная поездка
            TransportError / MalformedResponseError: сбой хранилища
        """
        if not user_id:
            raise NotAuthenticatedError()
        if self.has_active_ride:
            raise ActiveRideExistsError(f"Активная поездка {self.current_ride.id}")

        existing = await self.repository.get_active_ride(user_id)
        if existing is not None:
            raise ActiveRideExistsError(f"Активная поездка {existing.id}")

        distance = calculate_distance(pickup.lat, pickup.lng, destination.lat, destination.lng)
        values = RideRepository.ride_to_row(
            user_id,
            pickup,
            destination,
            tracking_id=make_tracking_id(),
            ride_type=ride_type,
            estimated_fare=quote_fare(distance, ride_type, multiplier),
            payment_method=payment_method,
            passenger_count=passenger_count,
            special_requests=special_requests,
            status=RideStatus.SCHEDULED if scheduled_time else RideStatus.PENDING,
            scheduled_time=scheduled_time,
        )

        ride = await self.repository.insert_ride(values)
        await log_info(
            f"Создан заказ {ride.id} ({ride.tracking_id}), {ride.estimated_fare:.0f} ฿",
            type_msg=TypeMsg.INFO,
            extra={"ride_id": ride.id, "status": ride.status.value},
        )

        if ride.is_active:
            self.current_ride = ride
            self.matched_driver = None
            self.error = None
            self._changed()
        return ride

    # =========================================================================
    # ПОИСК ВОДИТЕЛЯ
    # =========================================================================

    async def find_nearby_providers(self, lat: float, lng: float) -> list[ProviderCandidate]:
        """Свободные водители рядом. Повторные запросы по той же точке берутся из кэша."""
        key = f"nearby_{lat:.3f}_{lng:.3f}_{self._search_radius_km}"
        cached = self._nearby_cache.get(key)
        if cached is not None and self._clock() - cached[0] <= self._nearby_cache_ttl:
            return cached[1]

        candidates = await self.repository.find_nearby_providers(
            lat, lng, self._search_radius_km, self._provider_type
        )
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._nearby_cache.items() if now - stored_at > self._nearby_cache_ttl]
        for k in expired:
            del self._nearby_cache[k]
        self._nearby_cache[key] = (now, candidates)
        return candidates

    async def find_and_match_driver(self, ride_id: str) -> Optional[MatchedDriver]:
        """
        Пытается назначить ближайшего водителя.

        Назначение условное: только если заказ ещё pending и без водителя.
        Проигрыш гонки, отсутствие водителей и смена текущего заказа за время
        ожидания дают None без исключения. Окончательное состояние придёт
        через change feed.
        """
        ride = self.current_ride
        if ride is None or ride.id != ride_id or ride.status != RideStatus.PENDING:
            return None

        candidates = await self.find_nearby_providers(ride.pickup.lat, ride.pickup.lng)
        if not candidates:
            await log_debug(f"Рядом с заказом {ride_id} нет свободных водителей")
            return None

        candidate = candidates[0]
        driver = await self.repository.get_provider(candidate.provider_id)
        if driver is None:
            await log_info(f"Водитель {candidate.provider_id} не найден", type_msg=TypeMsg.WARNING)
            return None

        updated = await self.repository.assign_provider(ride_id, candidate.provider_id)
        if updated is None:
            await log_debug(f"Заказ {ride_id} уже назначен или отменён, пропускаем")
            return None

        # Пока шли запросы, заказ могли отменить или заменить
        if not self.is_current(ride_id) or not self.current_ride.is_active:
            await log_debug(f"Назначение для {ride_id} устарело и отброшено")
            return None

        self.apply_ride_update(updated)
        self.set_matched_driver(driver)
        await log_info(f"Заказу {ride_id} назначен водитель {driver.id}", type_msg=TypeMsg.INFO)
        return self.matched_driver

    async def load_driver(self, ride_id: str, provider_id: str) -> Optional[MatchedDriver]:
        """
        Загружает водителя и ставит его в проекцию, если заказ всё ещё
        текущий и назначен именно этому водителю.
        """
        driver = await self.repository.get_provider(provider_id)
        if driver is None:
            return None
        if not self.is_current(ride_id) or self.current_ride.provider_id != provider_id:
            return None
        self.set_matched_driver(driver)
        return self.matched_driver

    # =========================================================================
    # ОТМЕНА И ЗАВЕРШЕНИЕ
    # =========================================================================

    async def cancel_ride(self, ride_id: Optional[str] = None) -> bool:
        """
        Отменяет заказ на сервере и очищает локальное состояние.

        Уже завершённый или отменённый заказ ошибкой не считается.
        При транспортной ошибке локальный заказ сохраняется, чтобы отмену
        можно было повторить.
        """
        ride_id = ride_id or (self.current_ride.id if self.current_ride else None)
        if ride_id is None:
            return True

        try:
            cancelled = await self.repository.cancel_ride(ride_id)
        except TransportError as e:
            await log_error(f"Не удалось отменить заказ {ride_id}: {e}")
            self.error = e
            return False

        if cancelled is None:
            await log_debug(f"Заказ {ride_id} уже был завершён или отменён")
        else:
            await log_info(f"Заказ {ride_id} отменён", type_msg=TypeMsg.INFO)

        if self.is_current(ride_id):
            self.clear()
        return True

    def complete_ride(self) -> Optional[RideRequest]:
        """Закрывает завершённую поездку локально (после оценки или пропуска)."""
        ride = self.current_ride
        if ride is not None:
            self.ride_history.insert(0, ride)
        self.clear()
        return ride

    async def submit_rating(
        self,
        user_id: str,
        rating: int,
        tip_amount: float = 0.0,
        comment: Optional[str] = None,
    ) -> bool:
        """
        Сохраняет оценку поездки и закрывает её локально.

        Сбой записи оценки не мешает завершению поездки на клиенте.

        Raises:
            InvalidRatingError: оценка вне диапазона 1..5
        """
        if not 1 <= rating <= 5:
            raise InvalidRatingError(f"rating={rating}")

        ride = self.current_ride
        driver_id = (self.matched_driver.id if self.matched_driver else None) or (ride.provider_id if ride else None)
        if ride is None or driver_id is None:
            self.complete_ride()
            return False

        try:
            await self.repository.insert_rating(RideRating(
                ride_id=ride.id,
                user_id=user_id,
                provider_id=driver_id,
                rating=rating,
                tip_amount=tip_amount,
                comment=comment or None,
            ))
        except RideError as e:
            await log_error(f"Не удалось сохранить оценку поездки {ride.id}: {e}")
            self.complete_ride()
            return False

        await log_info(f"Поездка {ride.id} оценена на {rating}", type_msg=TypeMsg.INFO)
        self.complete_ride()
        return True

    # =========================================================================
    # СПРАВОЧНИКИ, ИСТОРИЯ И ОТЛОЖЕННОЕ НАЗНАЧЕНИЕ
    # =========================================================================

    async def fetch_vehicle_types(self) -> tuple[VehicleOption, ...]:
        """Варианты транспорта из vehicle_types. Пустая таблица или сбой дают встроенный набор."""
        try:
            vehicles = await self.repository.get_vehicle_types()
        except RideError as e:
            await log_info(f"Варианты транспорта недоступны, используем встроенные: {e}", type_msg=TypeMsg.WARNING)
            vehicles = []
        self.vehicles = tuple(vehicles) or DEFAULT_VEHICLES
        self._changed()
        return self.vehicles

    async def fetch_places(self, user_id: str) -> list[Place]:
        """Сохранённые и недавние места пассажира. Сбой оставляет список пустым."""
        try:
            self.saved_places = await self.repository.get_saved_places(user_id)
        except RideError as e:
            await log_error(f"Не удалось загрузить сохранённые места: {e}")
            self.saved_places = []
        try:
            self.recent_places = await self.repository.get_recent_places(user_id, self._recent_places_limit)
        except RideError as e:
            await log_error(f"Не удалось загрузить недавние места: {e}")
            self.recent_places = []
        self._changed()
        return [*self.saved_places, *self.recent_places]

    async def fetch_ride_history(self, user_id: str) -> list[RideRequest]:
        """Последние завершённые и отменённые поездки."""
        try:
            self.ride_history = await self.repository.get_ride_history(user_id, self._history_limit)
        except RideError as e:
            await log_error(f"Не удалось загрузить историю поездок: {e}")
            self.error = e
        self._changed()
        return self.ride_history

    def set_pending_destination(self, destination: GeoLocation) -> None:
        """Запоминает точку назначения, выбранную на другом экране."""
        self.pending_destination = destination

    def consume_pending_destination(self) -> Optional[GeoLocation]:
        destination, self.pending_destination = self.pending_destination, None
        return destination
