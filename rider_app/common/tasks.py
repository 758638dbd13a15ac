# rider_app/common/tasks.py
"""
Отменяемые фоновые задачи с единственным владельцем.

RepeatingTask: периодический вызов (таймер поиска, опрос геолокации).
DelayedTask: однократный отложенный вызов (переподписка, окно после завершения).
У каждой задачи один дескриптор отмены. После cancel() колбэк больше не вызывается.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Union

from rider_app.common.logger import log_error

Callback = Callable[[], Union[Awaitable[Any], Any]]


async def _invoke(callback: Callback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class RepeatingTask:
    """Вызывает callback каждые interval секунд до отмены."""

    def __init__(self, interval: float, callback: Callback, name: str = "repeating") -> None:
        self.interval = interval
        self.name = name
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def start(self) -> None:
        """Запускает задачу. Повторный вызов у работающей задачи ничего не делает."""
        if self.is_running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            if not self._running:
                break
            try:
                await _invoke(self._callback)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(f"Ошибка в задаче {self.name}: {e}", exc_info=True)


class DelayedTask:
    """Однократно вызывает callback через delay секунд, если не отменена раньше."""

    def __init__(self, delay: float, callback: Callback, name: str = "delayed") -> None:
        self.delay = delay
        self.name = name
        self._callback = callback
        self._task: asyncio.Task | None = None

    @property
    def is_pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Планирует вызов. Пока предыдущий вызов ожидает, повторный start() игнорируется."""
        if self.is_pending:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        # Колбэк уже не отменяем: дескриптор освобождён до вызова
        self._task = None
        try:
            await _invoke(self._callback)
        except Exception as e:
            await log_error(f"Ошибка в задаче {self.name}: {e}", exc_info=True)
