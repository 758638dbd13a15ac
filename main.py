#!/usr/bin/env python3
# main.py
"""
Главная точка входа клиента пассажира.
Запускает веб-клиент или проверку инфраструктуры в зависимости от аргументов.
"""

from __future__ import annotations

import asyncio
import sys

from redis.exceptions import RedisError

from rider_app.config import settings
from rider_app.common.constants import TypeMsg
from rider_app.common.exceptions import RideError
from rider_app.common.logger import log_error, log_info, setup_logging
from rider_app.infra.redis_client import close_redis, get_redis, init_redis
from rider_app.infra.remote_store import Query
from rider_app.infra.change_feed import RedisChangeFeed
from rider_app.infra.rest_store import HttpRemoteStore


async def check_infrastructure() -> bool:
    """Проверяет доступность Redis и удалённого хранилища."""
    await log_info(f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: проверка инфраструктуры",
                   type_msg=TypeMsg.INFO)
    ok = True

    try:
        await init_redis()
        ok = await get_redis().health_check() and ok
    except (RedisError, OSError) as e:
        await log_error(f"❌ Redis недоступен: {e}")
        ok = False
    finally:
        await close_redis()

    store = HttpRemoteStore(RedisChangeFeed())
    try:
        await store.select(settings.backend.RIDES_TABLE, Query(columns="id", limit=1))
        await log_info("✅ Удалённое хранилище доступно", type_msg=TypeMsg.INFO)
    except RideError as e:
        await log_error(f"❌ Удалённое хранилище недоступно: {e}")
        ok = False
    finally:
        await store.close()

    return ok


def print_usage() -> None:
    print("""
Использование: python main.py [режим]

Режимы:
    web_client  : веб-клиент пассажира (по умолчанию)
    check       : проверка подключения к Redis и хранилищу
""")


def main(argv: list[str]) -> int:
    mode = argv[1] if len(argv) > 1 else "web_client"
    setup_logging()

    if mode == "web_client":
        from rider_app.web_client.app import run_web_client
        run_web_client(reload=False)
        return 0
    if mode == "check":
        return 0 if asyncio.run(check_infrastructure()) else 1

    print_usage()
    return 2


if __name__ in {"__main__", "__mp_main__"}:
    sys.exit(main(sys.argv))
