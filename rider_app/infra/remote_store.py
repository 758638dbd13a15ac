# rider_app/infra/remote_store.py
"""
Граница с удалённым хранилищем.

RemoteStore: CRUD по строкам с условными фильтрами, вызов процедур и
подписка на change feed. Реализации обязаны переводить свои транспортные
исключения в TransportError / MalformedResponseError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from rider_app.common.constants import ChangeEventType, SubscriptionStatus

Row = dict[str, Any]


@dataclass(frozen=True)
class Filter:
    """
    Условие на колонку в стиле PostgREST.

    op: eq, neq, in, is. Для is поддерживается только null.
    """
    column: str
    op: str
    value: Any

    @classmethod
    def eq(cls, column: str, value: Any) -> "Filter":
        return cls(column, "eq", value)

    @classmethod
    def neq(cls, column: str, value: Any) -> "Filter":
        return cls(column, "neq", value)

    @classmethod
    def in_(cls, column: str, values: Sequence[Any]) -> "Filter":
        return cls(column, "in", tuple(values))

    @classmethod
    def is_null(cls, column: str) -> "Filter":
        return cls(column, "is", None)

    def to_param(self) -> tuple[str, str]:
        """Пара (колонка, выражение) для query string: ('status', 'eq.pending')."""
        if self.op == "in":
            return self.column, f"in.({','.join(_plain(v) for v in self.value)})"
        if self.op == "is":
            return self.column, "is.null"
        return self.column, f"{self.op}.{_plain(self.value)}"

    def matches(self, row: Row) -> bool:
        """Проверяет строку локально (для change feed и тестовых хранилищ)."""
        actual = row.get(self.column)
        if self.op == "eq":
            return _plain(actual) == _plain(self.value)
        if self.op == "neq":
            return _plain(actual) != _plain(self.value)
        if self.op == "in":
            return _plain(actual) in {_plain(v) for v in self.value}
        if self.op == "is":
            return actual is None
        raise ValueError(f"Неподдерживаемый оператор фильтра: {self.op}")


def _plain(value: Any) -> str:
    # Enum(str) и числа сравниваются по строковому представлению
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(getattr(value, "value", value))


@dataclass
class ChangeEvent:
    """Событие изменения строки из change feed."""
    event: ChangeEventType
    table: str
    row: Row
    old: Optional[Row] = None


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]
StatusHandler = Callable[[SubscriptionStatus], Awaitable[None]]


class Subscription(ABC):
    """Подписка на события одной таблицы по одному фильтру."""

    status: SubscriptionStatus = SubscriptionStatus.CLOSED

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.SUBSCRIBED

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Закрывает подписку. После возврата обработчики больше не вызываются."""


class ChangeFeed(ABC):
    """Источник событий изменения строк."""

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        row_filter: Filter,
        on_event: ChangeHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        """
        Подписывается на изменения.

        Транспортные сбои не пробрасываются: они приходят в on_status как
        CHANNEL_ERROR/TIMED_OUT, а возвращённая подписка неактивна.
        """


@dataclass
class Query:
    """Параметры выборки."""
    filters: list[Filter] = field(default_factory=list)
    columns: str = "*"
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None


class RemoteStore(ChangeFeed):
    """Удалённое хранилище строк."""

    @abstractmethod
    async def insert(self, table: str, values: Row) -> Row:
        """Вставляет строку и возвращает её в представлении сервера."""

    @abstractmethod
    async def select(self, table: str, query: Optional[Query] = None) -> list[Row]:
        """Возвращает строки, удовлетворяющие всем фильтрам."""

    @abstractmethod
    async def update(self, table: str, values: Row, filters: Sequence[Filter]) -> list[Row]:
        """
        Условное обновление.

        Returns:
            Обновлённые строки. Пустой список, если условие не выполнилось.
        """

    @abstractmethod
    async def rpc(self, name: str, params: Row) -> Any:
        """Вызывает серверную процедуру."""

    async def select_one(self, table: str, query: Optional[Query] = None) -> Optional[Row]:
        """Первая строка выборки или None."""
        query = query or Query()
        query.limit = 1
        rows = await self.select(table, query)
        return rows[0] if rows else None
