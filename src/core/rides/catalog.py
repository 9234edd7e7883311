# src/core/rides/catalog.py
"""
Каталог поездок.
Чтение снимка поездки с кэшированием в Redis (Cache-Aside).
"""

from __future__ import annotations

from typing import Optional

from redis.exceptions import RedisError

from src.common.ids import is_uuid
from src.common.logger import log_warning
from src.core.rides.models import RideSnapshot
from src.infra.database import DatabaseManager
from src.infra.redis_client import RedisClient


class RideCatalog:
    """
    Каталог поездок.

    Кэшированный снимок годится только для предварительных проверок:
    окончательное решение по местам принимает SeatInventory в PostgreSQL.
    """

    def __init__(
        self,
        db: DatabaseManager,
        redis: RedisClient,
        snapshot_ttl: int | None = None,
    ) -> None:
        """
        Args:
            db: Менеджер базы данных
            redis: Клиент Redis
            snapshot_ttl: Время жизни снимка в кэше (по умолчанию из конфига)
        """
        if snapshot_ttl is None:
            from src.config import settings
            snapshot_ttl = settings.redis_ttl.RIDE_SNAPSHOT_TTL

        self._db = db
        self._redis = redis
        self._ttl = snapshot_ttl

    @staticmethod
    def _cache_key(ride_id: str) -> str:
        return f"ride:{ride_id}"

    async def get_ride(self, ride_id: str, fresh: bool = False) -> Optional[RideSnapshot]:
        """
        Получает снимок поездки.

        Args:
            ride_id: UUID поездки
            fresh: Читать из PostgreSQL мимо кэша (проверка мест перед бронированием)

        Returns:
            Снимок или None, если поездки нет
        """
        if not is_uuid(ride_id):
            return None

        cache_key = self._cache_key(ride_id)
        if not fresh:
            try:
                cached = await self._redis.get_model(cache_key, RideSnapshot)
            except RedisError as e:
                await log_warning(f"Кэш поездок недоступен: {e}")
                cached = None
            if cached is not None:
                return cached

        row = await self._db.fetchrow(
            """
            SELECT id, driver_id, seats_total, seats_available, price_per_seat,
                   ride_type, allow_auto_confirm, status
            FROM rides_schema.rides
            WHERE id = $1
            """,
            ride_id,
        )
        if row is None:
            return None

        ride = self._row_to_ride(row)

        try:
            await self._redis.set_model(cache_key, ride, ttl=self._ttl)
        except RedisError as e:
            await log_warning(f"Не удалось закэшировать поездку {ride_id}: {e}")

        return ride

    async def invalidate(self, ride_id: str) -> None:
        """Сбрасывает кэшированный снимок после изменения мест."""
        try:
            await self._redis.delete(self._cache_key(ride_id))
        except RedisError as e:
            await log_warning(f"Не удалось сбросить кэш поездки {ride_id}: {e}")

    @staticmethod
    def _row_to_ride(row) -> RideSnapshot:
        return RideSnapshot(
            id=str(row["id"]),
            driver_id=row["driver_id"],
            seats_total=row["seats_total"],
            seats_available=row["seats_available"],
            price_per_seat=row["price_per_seat"],
            ride_type=row["ride_type"],
            allow_auto_confirm=row["allow_auto_confirm"],
            status=row["status"],
        )
