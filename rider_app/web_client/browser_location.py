# rider_app/web_client/browser_location.py
"""
Позиция пассажира из браузера (navigator.geolocation).
"""

from __future__ import annotations

from nicegui import Client

from rider_app.common.exceptions import LocationUnavailableError
from rider_app.core.geo.location import PositionSource

_GEOLOCATION_JS = """
return new Promise((resolve) => {
    if (!navigator.geolocation) {
        resolve({error: "unsupported"});
        return;
    }
    navigator.geolocation.getCurrentPosition(
        (pos) => resolve({lat: pos.coords.latitude, lng: pos.coords.longitude}),
        (err) => resolve({error: err.message || String(err.code)}),
        {enableHighAccuracy: true, timeout: %d, maximumAge: 10000}
    );
});
"""


class BrowserPositionSource(PositionSource):
    """Запрашивает координаты у браузера конкретного клиента."""

    def __init__(self, client: Client, timeout: float = 15.0) -> None:
        self._client = client
        self._timeout = timeout

    async def get_position(self) -> tuple[float, float]:
        try:
            result = await self._client.run_javascript(
                _GEOLOCATION_JS % int(self._timeout * 1000),
                timeout=self._timeout + 1,
            )
        except TimeoutError as e:
            raise LocationUnavailableError("браузер не ответил") from e

        if not isinstance(result, dict) or "error" in result:
            reason = result.get("error") if isinstance(result, dict) else result
            raise LocationUnavailableError(f"геолокация отклонена: {reason}")
        try:
            return float(result["lat"]), float(result["lng"])
        except (KeyError, TypeError, ValueError) as e:
            raise LocationUnavailableError(f"некорректный ответ браузера: {result}") from e
