# src/core/bookings/repository.py
"""
Репозитории бронирований и журнала компенсаций.
"""

from __future__ import annotations

from typing import Optional

from src.common.constants import BookingStatus, CompensationAction, CompensationStatus, TypeMsg
from src.common.ids import is_uuid
from src.common.logger import log_info
from src.core.bookings.models import Booking, Compensation
from src.infra.database import DatabaseManager


class BookingRepository:
    """Репозиторий бронирований."""

    _COLUMNS = "id, ride_id, rider_id, seats, fare_total, deposit, status, created_at, updated_at"

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    async def create(self, booking: Booking) -> Booking:
        """Сохраняет новое бронирование."""
        row = await self._db.fetchrow(
            f"""
            INSERT INTO booking_schema.bookings
                (id, ride_id, rider_id, seats, fare_total, deposit, status, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING {self._COLUMNS}
            """,
            booking.id,
            booking.ride_id,
            booking.rider_id,
            booking.seats,
            booking.fare_total,
            booking.deposit,
            booking.status.value,
            booking.created_at,
            booking.updated_at,
        )
        await log_info(f"Бронирование {booking.id} сохранено ({booking.status.value})", type_msg=TypeMsg.DEBUG)
        return self._row_to_booking(row)

    async def get(self, booking_id: str) -> Optional[Booking]:
        """
        Получает бронирование по ID.

        Returns:
            Бронирование или None
        """
        if not is_uuid(booking_id):
            return None

        row = await self._db.fetchrow(
            f"SELECT {self._COLUMNS} FROM booking_schema.bookings WHERE id = $1",
            booking_id,
        )
        return self._row_to_booking(row) if row is not None else None

    async def transition(
        self,
        booking_id: str,
        expected: BookingStatus,
        target: BookingStatus,
    ) -> Optional[Booking]:
        """
        Меняет статус, только если текущий равен expected (compare-and-swap).

        Returns:
            Обновлённое бронирование или None, если статус уже другой
        """
        row = await self._db.fetchrow(
            f"""
            UPDATE booking_schema.bookings
            SET status = $3, updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING {self._COLUMNS}
            """,
            booking_id,
            expected.value,
            target.value,
        )
        return self._row_to_booking(row) if row is not None else None

    async def list_for_rider(self, rider_id: str, limit: int, offset: int) -> list[Booking]:
        rows = await self._db.fetch(
            f"""
            SELECT {self._COLUMNS}
            FROM booking_schema.bookings
            WHERE rider_id = $1
            ORDER BY created_at DESC, id
            LIMIT $2 OFFSET $3
            """,
            rider_id,
            limit,
            offset,
        )
        return [self._row_to_booking(row) for row in rows]

    async def count_for_rider(self, rider_id: str) -> int:
        return await self._db.fetchval(
            "SELECT COUNT(*) FROM booking_schema.bookings WHERE rider_id = $1",
            rider_id,
        )

    async def list_for_ride(self, ride_id: str, status: Optional[BookingStatus] = None) -> list[Booking]:
        """Бронирования поездки, старые первыми (входящие заявки водителя)."""
        if status is None:
            rows = await self._db.fetch(
                f"""
                SELECT {self._COLUMNS}
                FROM booking_schema.bookings
                WHERE ride_id = $1
                ORDER BY created_at, id
                """,
                ride_id,
            )
        else:
            rows = await self._db.fetch(
                f"""
                SELECT {self._COLUMNS}
                FROM booking_schema.bookings
                WHERE ride_id = $1 AND status = $2
                ORDER BY created_at, id
                """,
                ride_id,
                status.value,
            )
        return [self._row_to_booking(row) for row in rows]

    @staticmethod
    def _row_to_booking(row) -> Booking:
        """Конвертирует строку БД в модель Booking."""
        return Booking(
            id=str(row["id"]),
            ride_id=str(row["ride_id"]),
            rider_id=row["rider_id"],
            seats=row["seats"],
            fare_total=row["fare_total"],
            deposit=row["deposit"],
            status=BookingStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class CompensationRepository:
    """Журнал невыполненных компенсаций."""

    _COLUMNS = (
        "id, booking_id, action, user_id, ride_id, amount, seats, "
        "status, attempts, last_error, created_at, updated_at"
    )

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def create(self, compensation: Compensation) -> Compensation:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO booking_schema.compensations
                (id, booking_id, action, user_id, ride_id, amount, seats, status, attempts, last_error)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING {self._COLUMNS}
            """,
            compensation.id,
            compensation.booking_id,
            compensation.action.value,
            compensation.user_id,
            compensation.ride_id,
            compensation.amount,
            compensation.seats,
            compensation.status.value,
            compensation.attempts,
            compensation.last_error,
        )
        return self._row_to_compensation(row)

    async def claim_pending(self, limit: int, stale_after: int) -> list[Compensation]:
        """
        Забирает записи в работу: pending → in_progress.
        Записи, зависшие в in_progress дольше stale_after секунд, забираются повторно.
        """
        rows = await self._db.fetch(
            f"""
            UPDATE booking_schema.compensations
            SET status = $2, updated_at = NOW()
            WHERE id IN (
                SELECT id FROM booking_schema.compensations
                WHERE status = $1
                   OR (status = $2 AND updated_at < NOW() - make_interval(secs => $4))
                ORDER BY created_at
                LIMIT $3
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {self._COLUMNS}
            """,
            CompensationStatus.PENDING.value,
            CompensationStatus.IN_PROGRESS.value,
            limit,
            float(stale_after),
        )
        return [self._row_to_compensation(row) for row in rows]

    async def resolve(self, compensation_id: str) -> None:
        await self._db.execute(
            """
            UPDATE booking_schema.compensations
            SET status = $2, attempts = attempts + 1, last_error = NULL, updated_at = NOW()
            WHERE id = $1
            """,
            compensation_id,
            CompensationStatus.RESOLVED.value,
        )

    async def retry_later(self, compensation_id: str, error: str) -> None:
        await self._db.execute(
            """
            UPDATE booking_schema.compensations
            SET status = $2, attempts = attempts + 1, last_error = $3, updated_at = NOW()
            WHERE id = $1
            """,
            compensation_id,
            CompensationStatus.PENDING.value,
            error,
        )

    @staticmethod
    def _row_to_compensation(row) -> Compensation:
        ride_id = row["ride_id"]
        return Compensation(
            id=str(row["id"]),
            booking_id=str(row["booking_id"]),
            action=CompensationAction(row["action"]),
            user_id=row["user_id"],
            ride_id=str(ride_id) if ride_id is not None else None,
            amount=row["amount"],
            seats=row["seats"],
            status=CompensationStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
