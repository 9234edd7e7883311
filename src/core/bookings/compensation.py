# src/core/bookings/compensation.py
"""
Компенсирующие действия оркестратора.

Возврат мест и возврат депозита привязаны к бронированию и безопасны
при повторе. Действие повторяется с нарастающей паузой; если попытки
исчерпаны, оно записывается в журнал компенсаций для воркера,
логируется как CRITICAL и поднимается CompensationFailure.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from src.common.constants import CompensationAction, TypeMsg
from src.common.exceptions import CompensationFailure
from src.common.logger import log_critical, log_info, log_warning
from src.core.bookings.models import Booking, Compensation
from src.core.bookings.repository import CompensationRepository
from src.core.rides.catalog import RideCatalog
from src.core.rides.inventory import SeatInventory
from src.core.wallet.ledger import LedgerStore
from src.infra.event_bus import DomainEvent, EventBus, EventTypes


class Compensator:
    """Выполнение компенсаций с повторами и эскалацией."""

    def __init__(
        self,
        inventory: SeatInventory,
        ledger: LedgerStore,
        compensations: CompensationRepository,
        event_bus: EventBus,
        catalog: Optional[RideCatalog] = None,
        attempts: Optional[int] = None,
        delay: Optional[float] = None,
        step_timeout: Optional[float] = None,
    ) -> None:
        from src.config import settings

        self._inventory = inventory
        self._ledger = ledger
        self._compensations = compensations
        self._event_bus = event_bus
        self._catalog = catalog
        self._attempts = attempts if attempts is not None else settings.escrow.COMPENSATION_RETRY_ATTEMPTS
        self._delay = delay if delay is not None else settings.escrow.COMPENSATION_RETRY_DELAY
        self._step_timeout = step_timeout if step_timeout is not None else settings.escrow.STEP_TIMEOUT

    # =========================================================================
    # ДЕЙСТВИЯ
    # =========================================================================

    async def release_seats(self, booking: Booking) -> None:
        """Возвращает удержанные бронированием места."""
        record = Compensation(
            booking_id=booking.id,
            action=CompensationAction.RELEASE_SEATS,
            ride_id=booking.ride_id,
            seats=booking.seats,
        )
        await self._run(record)

    async def release_deposit(self, booking: Booking) -> None:
        """Возвращает депозит бронирования в available."""
        if booking.deposit <= 0:
            return
        record = Compensation(
            booking_id=booking.id,
            action=CompensationAction.RELEASE_DEPOSIT,
            user_id=booking.rider_id,
            amount=booking.deposit,
        )
        await self._run(record)

    async def execute(self, record: Compensation) -> None:
        """Одна попытка выполнить записанное действие (для воркера)."""
        await asyncio.wait_for(self._action(record)(), timeout=self._step_timeout)

    def _action(self, record: Compensation) -> Callable[[], Awaitable[None]]:
        if record.action == CompensationAction.RELEASE_SEATS:
            async def release_seats() -> None:
                await self._inventory.release_seats(record.ride_id, record.seats, booking_id=record.booking_id)
                if self._catalog is not None:
                    await self._catalog.invalidate(record.ride_id)
            return release_seats

        async def release_deposit() -> None:
            await self._ledger.release(record.user_id, record.amount, ref_booking_id=record.booking_id)
        return release_deposit

    # =========================================================================
    # ПОВТОРЫ И ЭСКАЛАЦИЯ
    # =========================================================================

    async def _run(self, record: Compensation) -> None:
        last_error: Optional[Exception] = None

        for attempt in range(1, self._attempts + 1):
            try:
                await self.execute(record)
                await log_info(
                    f"Компенсация {record.action.value} для бронирования {record.booking_id} выполнена",
                    type_msg=TypeMsg.INFO,
                )
                return
            except Exception as e:
                last_error = e
                await log_warning(
                    f"Компенсация {record.action.value} для {record.booking_id} "
                    f"не удалась (попытка {attempt}/{self._attempts}): {type(e).__name__}: {e}"
                )
                if attempt < self._attempts:
                    await asyncio.sleep(self._delay * attempt)

        await self._escalate(record, last_error)

    async def _escalate(self, record: Compensation, error: Optional[Exception]) -> None:
        record.attempts = self._attempts
        record.last_error = f"{type(error).__name__}: {error}" if error else None

        recorded = True
        try:
            record = await self._compensations.create(record)
        except Exception as e:
            recorded = False
            await log_critical(
                f"Не удалось записать компенсацию {record.action.value} для {record.booking_id}: {e}",
                extra=record.model_dump(mode="json"),
            )

        await log_critical(
            f"Компенсация {record.action.value} для бронирования {record.booking_id} "
            f"не выполнена после {self._attempts} попыток, требуется разбор",
            extra=record.model_dump(mode="json"),
        )
        await self._event_bus.publish(DomainEvent(
            event_type=EventTypes.BOOKING_COMPENSATION_PENDING,
            payload={**record.model_dump(mode="json"), "recorded": recorded},
        ))

        raise CompensationFailure(
            f"Компенсация {record.action.value} для бронирования {record.booking_id} не выполнена",
            booking_id=record.booking_id,
            action=record.action.value,
            compensation_id=record.id if recorded else None,
        ) from error
