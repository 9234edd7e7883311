#!/usr/bin/env python3
# main.py
"""
Главная точка входа ядра бронирований и кошелька.
Поднимает инфраструктуру и запускает воркеры либо только применяет схему БД.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import init_db, close_db
from src.infra.redis_client import init_redis, close_redis
from src.infra.event_bus import init_event_bus, close_event_bus
from src.worker.runner import run_workers

MODES = ("workers", "migrate")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def init_infrastructure() -> None:
    """Инициализирует все подключения к инфраструктуре."""
    await log_info("Инициализация инфраструктуры...", type_msg=TypeMsg.INFO)

    # init_db также применяет migrations/init.sql
    await init_db()
    await log_info("PostgreSQL подключён", type_msg=TypeMsg.DEBUG)

    await init_redis()
    await log_info("Redis подключён", type_msg=TypeMsg.DEBUG)

    await init_event_bus()
    await log_info("RabbitMQ подключён", type_msg=TypeMsg.DEBUG)

    await log_info("Инфраструктура инициализирована", type_msg=TypeMsg.INFO)


async def close_infrastructure() -> None:
    """Закрывает все подключения."""
    await log_info("Закрытие подключений...", type_msg=TypeMsg.INFO)

    await close_event_bus()
    await close_redis()
    await close_db()

    await log_info("Подключения закрыты", type_msg=TypeMsg.INFO)


async def run_migrate() -> None:
    """Применяет схему БД и завершает работу."""
    await init_db()
    await log_info("Схема БД применена", type_msg=TypeMsg.INFO)
    await close_db()


async def main(mode: str = "workers") -> None:
    """
    Главная функция запуска.

    Args:
        mode: workers (по умолчанию) или migrate
    """
    setup_logging()

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    if mode == "migrate":
        await run_migrate()
        return

    setup_signal_handlers()

    try:
        await init_infrastructure()

        task = asyncio.create_task(run_workers(init_infra=False))
        _running_tasks.append(task)
        await asyncio.gather(*_running_tasks, return_exceptions=True)

    except Exception as e:
        await log_error(f"Критическая ошибка при запуске: {e}", exc_info=True)
    finally:
        await close_infrastructure()


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Использование: python main.py [режим]

Режимы:
    workers   : воркеры платежей и компенсаций (по умолчанию)
    migrate   : применить migrations/init.sql и выйти
    """)


if __name__ == "__main__":
    mode = "workers"

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
