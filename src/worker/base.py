# src/worker/base.py
"""
Базовый класс для воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

from src.common.constants import TypeMsg
from src.common.exceptions import EscrowError
from src.common.logger import log_error, log_info, log_warning
from src.infra.database import DatabaseManager, get_db
from src.infra.event_bus import DomainEvent, EventBus, get_event_bus
from src.infra.redis_client import RedisClient, get_redis


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Подписывается на события и обрабатывает их.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        db: Optional[DatabaseManager] = None,
        redis: Optional[RedisClient] = None,
    ) -> None:
        """
        Args:
            event_bus: Шина событий
            db: Менеджер БД
            redis: Redis клиент
        """
        self.event_bus = event_bus or get_event_bus()
        self.db = db or get_db()
        self.redis = redis or get_redis()
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @property
    def subscriptions(self) -> List[str]:
        """Список типов событий для подписки."""
        return []

    async def handle_event(self, event: DomainEvent) -> None:
        """Обрабатывает событие."""

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        await log_info(f"Воркер {self.name} запускается...", type_msg=TypeMsg.INFO)

        for event_type in self.subscriptions:
            await self.event_bus.subscribe(
                event_type=event_type,
                handler=self._on_event,
                queue_name=f"ridepool.{self.name}.{event_type}",
            )
            await log_info(f"Воркер {self.name} подписан на {event_type}", type_msg=TypeMsg.DEBUG)

        await log_info(f"Воркер {self.name} запущен", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def _on_event(self, event: DomainEvent) -> None:
        """
        Обработчик события.

        Бизнес-отказы логируются, и событие считается обработанным.
        Прочие ошибки пробрасываются в шину для повторной доставки.
        """
        if not self._running:
            return

        await log_info(
            f"Воркер {self.name} получил событие {event.event_type}",
            type_msg=TypeMsg.DEBUG,
        )
        try:
            await self.handle_event(event)
        except EscrowError as e:
            await log_warning(
                f"Воркер {self.name}: событие {event.event_id} отклонено: {e.code}: {e.message}",
                extra={"event_type": event.event_type, "payload": event.payload},
            )
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                extra={"event_type": event.event_type, "payload": event.payload},
            )
            raise
