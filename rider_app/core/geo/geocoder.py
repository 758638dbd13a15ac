# rider_app/core/geo/geocoder.py
"""
Геокодирование для экрана заказа.

Обратное геокодирование идёт по цепочке провайдеров:
Google (только при наличии ключа) -> Photon -> Nominatim.
Побеждает первый ответ, имя которого отличается от подписи координат.
Удачные ответы кэшируются по координатам, округлённым до 5 знаков.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from rider_app.common.constants import GeocodeSource, TypeMsg
from rider_app.common.logger import log_info
from rider_app.core.geo.utils import format_coordinates


@dataclass
class GeocodeResult:
    """Результат геокодирования."""
    name: str
    address: str
    lat: float
    lng: float
    source: GeocodeSource


class ReverseGeocoder:
    """
    Геокодер с цепочкой провайдеров и TTL-кэшем.

    Ошибки отдельных провайдеров не пробрасываются: следующий провайдер
    пробуется автоматически, в худшем случае возвращается подпись координат.
    """

    GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

    def __init__(
        self,
        google_api_key: str | None = None,
        language: str | None = None,
        photon_url: str | None = None,
        nominatim_url: str | None = None,
        timeout: float | None = None,
        cache_ttl: float | None = None,
        user_agent: str | None = None,
        country_codes: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        from rider_app.config import settings

        self._api_key = google_api_key if google_api_key is not None else settings.google_maps.GOOGLE_MAPS_API_KEY
        self._language = language or settings.google_maps.GEOCODING_LANGUAGE
        self._photon_url = (photon_url or settings.geocoding.PHOTON_URL).rstrip("/")
        self._nominatim_url = (nominatim_url or settings.geocoding.NOMINATIM_URL).rstrip("/")
        self._cache_ttl = cache_ttl if cache_ttl is not None else settings.geocoding.GEOCODE_CACHE_TTL
        self._country_codes = country_codes or settings.geocoding.SEARCH_COUNTRY_CODES
        self._clock = clock
        self._cache: dict[str, tuple[float, GeocodeResult]] = {}

        self._client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.geocoding.GEOCODING_TIMEOUT,
            headers={
                "Accept": "application/json",
                "User-Agent": user_agent or settings.geocoding.GEOCODING_USER_AGENT,
            },
        )

    async def close(self) -> None:
        """Закрывает HTTP клиент."""
        await self._client.aclose()

    # =========================================================================
    # КЭШ
    # =========================================================================

    @staticmethod
    def cache_key(lat: float, lng: float) -> str:
        return f"{lat:.5f}_{lng:.5f}"

    def _get_cached(self, lat: float, lng: float) -> Optional[GeocodeResult]:
        key = self.cache_key(lat, lng)
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at > self._cache_ttl:
            del self._cache[key]
            return None
        return result

    def _set_cached(self, lat: float, lng: float, result: GeocodeResult) -> None:
        now = self._clock()
        expired = [key for key, (stored_at, _) in self._cache.items() if now - stored_at > self._cache_ttl]
        for key in expired:
            del self._cache[key]
        self._cache[self.cache_key(lat, lng)] = (now, result)

    def clear_cache(self) -> None:
        self._cache.clear()

    # =========================================================================
    # ОБРАТНОЕ ГЕОКОДИРОВАНИЕ
    # =========================================================================

    async def reverse(self, lat: float, lng: float) -> GeocodeResult:
        """
        Координаты -> адрес.

        Returns:
            Результат первого удачного провайдера или подпись координат
        """
        cached = self._get_cached(lat, lng)
        if cached is not None:
            return cached

        coordinates_label = format_coordinates(lat, lng)
        providers: list[tuple[GeocodeSource, Callable[[float, float], Awaitable[Optional[GeocodeResult]]]]] = [
            (GeocodeSource.GOOGLE, self._reverse_google),
            (GeocodeSource.PHOTON, self._reverse_photon),
            (GeocodeSource.NOMINATIM, self._reverse_nominatim),
        ]

        for source, provider in providers:
            try:
                result = await provider(lat, lng)
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                await log_info(
                    f"Геокодер {source.value} недоступен: {e}",
                    type_msg=TypeMsg.DEBUG,
                )
                continue

            if result is not None and result.name != coordinates_label:
                self._set_cached(lat, lng, result)
                return result

        await log_info(
            f"Адрес для {coordinates_label} не найден, используем координаты",
            type_msg=TypeMsg.WARNING,
        )
        return GeocodeResult(
            name=coordinates_label,
            address=coordinates_label,
            lat=lat,
            lng=lng,
            source=GeocodeSource.COORDINATES,
        )

    async def _reverse_google(self, lat: float, lng: float) -> Optional[GeocodeResult]:
        if not self._api_key:
            return None

        response = await self._client.get(
            self.GOOGLE_GEOCODE_URL,
            params={"latlng": f"{lat},{lng}", "key": self._api_key, "language": self._language},
        )
        response.raise_for_status()
        data = response.json()

        if data.get("status") != "OK" or not data.get("results"):
            return None

        result = data["results"][0]
        components = {
            kind: component["long_name"]
            for component in result.get("address_components", [])
            for kind in component.get("types", [])
        }
        formatted = result.get("formatted_address", "")
        name = (
            components.get("route")
            or components.get("sublocality")
            or components.get("locality")
            or formatted.split(",")[0]
            or format_coordinates(lat, lng)
        )
        return GeocodeResult(
            name=name,
            address=formatted or name,
            lat=lat,
            lng=lng,
            source=GeocodeSource.GOOGLE,
        )

    async def _reverse_photon(self, lat: float, lng: float) -> Optional[GeocodeResult]:
        response = await self._client.get(
            f"{self._photon_url}/reverse",
            params={"lat": lat, "lon": lng, "lang": "en"},
        )
        response.raise_for_status()
        features = response.json().get("features") or []
        if not features:
            return None

        props: dict[str, Any] = features[0].get("properties") or {}
        name = (
            props.get("name")
            or props.get("street")
            or props.get("district")
            or props.get("city")
            or format_coordinates(lat, lng)
        )

        parts: list[str] = []
        if props.get("housenumber") and props.get("street"):
            parts.append(f"{props['housenumber']} {props['street']}")
        elif props.get("street"):
            parts.append(props["street"])
        elif props.get("name"):
            parts.append(props["name"])
        for key in ("district", "city"):
            if props.get(key):
                parts.append(props[key])

        return GeocodeResult(
            name=name,
            address=", ".join(parts[:3]) if parts else name,
            lat=lat,
            lng=lng,
            source=GeocodeSource.PHOTON,
        )

    async def _reverse_nominatim(self, lat: float, lng: float) -> Optional[GeocodeResult]:
        response = await self._client.get(
            f"{self._nominatim_url}/reverse",
            params={
                "lat": lat,
                "lon": lng,
                "format": "json",
                "addressdetails": 1,
                "accept-language": f"{self._language},en",
            },
        )
        response.raise_for_status()
        data = response.json()
        if not data or data.get("error"):
            return None

        addr: dict[str, Any] = data.get("address") or {}
        if addr.get("road"):
            road = f"{addr['house_number']} {addr['road']}" if addr.get("house_number") else addr["road"]
        else:
            road = None
        name = (
            addr.get("amenity")
            or addr.get("shop")
            or addr.get("building")
            or road
            or addr.get("suburb")
            or addr.get("subdistrict")
            or addr.get("district")
            or (data.get("display_name") or "").split(",")[0]
            or format_coordinates(lat, lng)
        )

        parts = [name]
        area = addr.get("suburb") or addr.get("subdistrict")
        if area and area != name:
            parts.append(area)
        city = addr.get("city") or addr.get("state")
        if city:
            parts.append(city)

        return GeocodeResult(
            name=name,
            address=", ".join(parts[:3]),
            lat=lat,
            lng=lng,
            source=GeocodeSource.NOMINATIM,
        )

    # =========================================================================
    # ПОИСК МЕСТ
    # =========================================================================

    async def search(self, query: str, limit: int = 5) -> list[GeocodeResult]:
        """
        Поиск места по тексту (Nominatim).

        Returns:
            Список найденных мест, пустой при ошибке
        """
        query = query.strip()
        if not query:
            return []

        try:
            response = await self._client.get(
                f"{self._nominatim_url}/search",
                params={
                    "q": query,
                    "format": "json",
                    "limit": limit,
                    "countrycodes": self._country_codes,
                    "accept-language": f"{self._language},en",
                },
            )
            response.raise_for_status()
            items = response.json()
        except (httpx.HTTPError, ValueError) as e:
            await log_info(f"Поиск места '{query}' не удался: {e}", type_msg=TypeMsg.WARNING)
            return []

        results: list[GeocodeResult] = []
        for item in items or []:
            try:
                lat, lng = float(item["lat"]), float(item["lon"])
            except (KeyError, TypeError, ValueError):
                continue
            display_name = item.get("display_name") or format_coordinates(lat, lng)
            results.append(GeocodeResult(
                name=item.get("name") or display_name.split(",")[0],
                address=display_name,
                lat=lat,
                lng=lng,
                source=GeocodeSource.NOMINATIM,
            ))
        return results
