# rider_app/infra/rest_store.py
"""
HTTP-реализация RemoteStore поверх REST API в стиле PostgREST.

    insert  -> POST   /rest/v1/<table>        (Prefer: return=representation)
    select  -> GET    /rest/v1/<table>?select=...&col=eq.v&order=...&limit=...
    update  -> PATCH  /rest/v1/<table>?col=eq.v  (пустой список, если условие не выполнилось)
    rpc     -> POST   /rest/v1/rpc/<name>

Подписки делегируются переданному ChangeFeed.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import httpx

from rider_app.common.constants import TypeMsg
from rider_app.common.exceptions import MalformedResponseError, TransportError
from rider_app.common.logger import log_error, log_info
from rider_app.infra.remote_store import (
    ChangeFeed,
    ChangeHandler,
    Filter,
    Query,
    RemoteStore,
    Row,
    StatusHandler,
    Subscription,
)


class HttpRemoteStore(RemoteStore):
    """REST-клиент удалённого хранилища."""

    def __init__(
        self,
        change_feed: ChangeFeed,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """
        Args:
            change_feed: Источник событий для subscribe()
            base_url: URL вида https://host/rest/v1 (из конфига, если None)
            api_key: Ключ API (из конфига, если None)
            timeout: Таймаут запроса в секундах
        """
        if base_url is None or api_key is None or timeout is None:
            from rider_app.config import settings
            base_url = base_url or settings.backend.rest_url
            api_key = api_key if api_key is not None else settings.backend.BACKEND_API_KEY
            timeout = timeout or settings.backend.BACKEND_REQUEST_TIMEOUT

        self._change_feed = change_feed
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def close(self) -> None:
        await self.client.aclose()

    def set_access_token(self, token: str) -> None:
        """Подставляет токен сессии пассажира вместо анонимного ключа."""
        self.client.headers["Authorization"] = f"Bearer {token}"

    # =========================================================================
    # ТРАНСПОРТ
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[list[tuple[str, str]]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        """
        Выполняет запрос и возвращает разобранный JSON.

        Raises:
            TransportError: сеть недоступна или сервер вернул ошибку
            MalformedResponseError: тело ответа не JSON
        """
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self.client.request(method, path, params=params, json=json, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            await log_error(
                f"Хранилище ответило {e.response.status_code} на {method} {path}",
                extra={"body": e.response.text[:500]},
            )
            raise TransportError(f"{method} {path}: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            await log_info(f"Хранилище недоступно ({method} {path}): {e}", type_msg=TypeMsg.WARNING)
            raise TransportError(f"{method} {path}: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{method} {path}: тело ответа не JSON") from e

    @staticmethod
    def _rows(payload: Any, context: str) -> list[Row]:
        if payload is None:
            return []
        if isinstance(payload, dict):
            return [payload]
        if isinstance(payload, list) and all(isinstance(item, dict) for item in payload):
            return payload
        raise MalformedResponseError(f"{context}: ожидался список строк")

    # =========================================================================
    # CRUD
    # =========================================================================

    async def insert(self, table: str, values: Row) -> Row:
        payload = await self._request("POST", f"/{table}", json=values, prefer="return=representation")
        rows = self._rows(payload, f"insert {table}")
        if not rows:
            raise MalformedResponseError(f"insert {table}: сервер не вернул строку")
        return rows[0]

    async def select(self, table: str, query: Optional[Query] = None) -> list[Row]:
        query = query or Query()
        params: list[tuple[str, str]] = [("select", query.columns)]
        params.extend(f.to_param() for f in query.filters)
        if query.order_by:
            params.append(("order", f"{query.order_by}.{'desc' if query.descending else 'asc'}"))
        if query.limit is not None:
            params.append(("limit", str(query.limit)))

        payload = await self._request("GET", f"/{table}", params=params)
        return self._rows(payload, f"select {table}")

    async def update(self, table: str, values: Row, filters: Sequence[Filter]) -> list[Row]:
        if not filters:
            raise ValueError("update без фильтров запрещён")
        params = [f.to_param() for f in filters]
        payload = await self._request(
            "PATCH", f"/{table}", params=params, json=values, prefer="return=representation"
        )
        return self._rows(payload, f"update {table}")

    async def rpc(self, name: str, params: Row) -> Any:
        return await self._request("POST", f"/rpc/{name}", json=params)

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    async def subscribe(
        self,
        table: str,
        row_filter: Filter,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        return await self._change_feed.subscribe(table, row_filter, on_event, on_status)
