# src/core/rides/inventory.py
"""
Счётчик свободных мест поездки.

Резерв мест выполняется одним условным UPDATE: проверка остатка
и списание происходят в одной атомарной операции PostgreSQL.

Если указан booking_id, списание оформляется удержанием (seat_holds):
одно удержание на бронирование, возврат снимает удержание ровно один раз.
Повтор любой из операций с тем же booking_id ничего не меняет.
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Connection

from src.common.constants import TypeMsg
from src.common.exceptions import InvalidAmount, RideNotFound
from src.common.logger import log_info
from src.infra.database import DatabaseManager, retry_on_transient_error


class _SeatsUnavailable(Exception):
    """Откат транзакции резерва при нехватке мест."""


class SeatInventory:
    """Атомарные операции над seats_available."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    @retry_on_transient_error()
    async def try_reserve_seats(
        self,
        ride_id: str,
        seats: int,
        booking_id: Optional[str] = None,
    ) -> tuple[bool, int]:
        """
        Списывает места, если их достаточно (compare-and-swap).

        Args:
            ride_id: UUID поездки
            seats: Количество мест
            booking_id: Бронирование, за которым закрепляются места

        Returns:
            (успех, остаток мест после операции)

        Raises:
            RideNotFound: поездки нет
        """
        _check_seats(seats)

        try:
            async with self._db.transaction() as conn:
                if booking_id is not None:
                    existing = await self._claim_hold(conn, ride_id, seats, booking_id)
                    if existing is not None:
                        return existing

                new_available = await conn.fetchval(
                    """
                    UPDATE rides_schema.rides
                    SET seats_available = seats_available - $2, updated_at = NOW()
                    WHERE id = $1 AND seats_available >= $2
                    RETURNING seats_available
                    """,
                    ride_id,
                    seats,
                )
                if new_available is None:
                    raise _SeatsUnavailable()
        except _SeatsUnavailable:
            current = await self._current_available(ride_id)
            await log_info(
                f"Поездка {ride_id}: недостаточно мест ({current} < {seats})",
                type_msg=TypeMsg.DEBUG,
            )
            return False, current

        await log_info(
            f"Поездка {ride_id}: списано мест {seats}, осталось {new_available}",
            type_msg=TypeMsg.DEBUG,
        )
        return True, new_available

    async def _claim_hold(
        self,
        conn: Connection,
        ride_id: str,
        seats: int,
        booking_id: str,
    ) -> Optional[tuple[bool, int]]:
        """
        Создаёт удержание. Если удержание уже было, возвращает итог без списания.
        """
        created = await conn.fetchval(
            """
            INSERT INTO rides_schema.seat_holds (booking_id, ride_id, seats)
            VALUES ($1, $2, $3)
            ON CONFLICT (booking_id) DO NOTHING
            RETURNING booking_id
            """,
            booking_id,
            ride_id,
            seats,
        )
        if created is not None:
            return None

        active = await conn.fetchval(
            "SELECT released_at IS NULL FROM rides_schema.seat_holds WHERE booking_id = $1",
            booking_id,
        )
        current = await conn.fetchval(
            "SELECT seats_available FROM rides_schema.rides WHERE id = $1",
            ride_id,
        )
        if current is None:
            raise RideNotFound(f"Поездка {ride_id} не найдена", ride_id=ride_id)

        await log_info(
            f"Поездка {ride_id}: удержание бронирования {booking_id} уже существует",
            type_msg=TypeMsg.DEBUG,
        )
        return bool(active), current

    @retry_on_transient_error()
    async def release_seats(
        self,
        ride_id: str,
        seats: int,
        booking_id: Optional[str] = None,
    ) -> int:
        """
        Возвращает места, не превышая seats_total.

        С booking_id места возвращаются, только если у бронирования есть
        неснятое удержание; иначе вызов ничего не меняет.

        Returns:
            Остаток мест после операции

        Raises:
            RideNotFound: поездки нет
        """
        _check_seats(seats)

        async with self._db.transaction() as conn:
            if booking_id is not None:
                held = await conn.fetchval(
                    """
                    UPDATE rides_schema.seat_holds
                    SET released_at = NOW()
                    WHERE booking_id = $1 AND released_at IS NULL
                    RETURNING seats
                    """,
                    booking_id,
                )
                if held is None:
                    current = await conn.fetchval(
                        "SELECT seats_available FROM rides_schema.rides WHERE id = $1",
                        ride_id,
                    )
                    if current is None:
                        raise RideNotFound(f"Поездка {ride_id} не найдена", ride_id=ride_id)
                    await log_info(
                        f"Поездка {ride_id}: у бронирования {booking_id} нет удержания",
                        type_msg=TypeMsg.DEBUG,
                    )
                    return current
                seats = held

            new_available = await conn.fetchval(
                """
                UPDATE rides_schema.rides
                SET seats_available = LEAST(seats_total, seats_available + $2), updated_at = NOW()
                WHERE id = $1
                RETURNING seats_available
                """,
                ride_id,
                seats,
            )
            if new_available is None:
                raise RideNotFound(f"Поездка {ride_id} не найдена", ride_id=ride_id)

        await log_info(
            f"Поездка {ride_id}: возвращено мест {seats}, свободно {new_available}",
            type_msg=TypeMsg.DEBUG,
        )
        return new_available

    async def _current_available(self, ride_id: str) -> int:
        current = await self._db.fetchval(
            "SELECT seats_available FROM rides_schema.rides WHERE id = $1",
            ride_id,
        )
        if current is None:
            raise RideNotFound(f"Поездка {ride_id} не найдена", ride_id=ride_id)
        return current


def _check_seats(seats: int) -> None:
    if not isinstance(seats, int) or isinstance(seats, bool) or seats < 1:
        raise InvalidAmount("Количество мест должно быть положительным целым", seats=seats)
