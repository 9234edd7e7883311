# src/worker/compensation.py
"""
Воркер отложенных компенсаций.
Периодически повторяет компенсации, которые оркестратор не смог выполнить сразу.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info, log_warning
from src.core.bookings.compensation import Compensator
from src.core.bookings.repository import CompensationRepository
from src.core.rides.catalog import RideCatalog
from src.core.rides.inventory import SeatInventory
from src.core.wallet.ledger import LedgerStore
from src.worker.base import BaseWorker


class CompensationWorker(BaseWorker):
    """Обходит журнал компенсаций раз в COMPENSATION_SWEEP_INTERVAL секунд."""

    def __init__(
        self,
        *args,
        compensations: Optional[CompensationRepository] = None,
        compensator: Optional[Compensator] = None,
        **kwargs,
    ) -> None:
        from src.config import settings

        super().__init__(*args, **kwargs)
        self._compensations = compensations or CompensationRepository(self.db)
        self._compensator = compensator or Compensator(
            SeatInventory(self.db),
            LedgerStore(self.db),
            self._compensations,
            self.event_bus,
            catalog=RideCatalog(self.db, self.redis),
        )
        self._interval = settings.escrow.COMPENSATION_SWEEP_INTERVAL
        self._batch = settings.escrow.COMPENSATION_SWEEP_BATCH
        self._stale_after = settings.escrow.COMPENSATION_STALE_AFTER

    @property
    def name(self) -> str:
        return "CompensationWorker"

    async def start(self) -> None:
        if self._running:
            return
        await super().start()
        self._tasks.append(asyncio.create_task(self._loop()))

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                await log_error(f"Ошибка обхода журнала компенсаций: {e}", exc_info=True)
            await asyncio.sleep(self._interval)

    async def sweep(self) -> int:
        """
        Один проход по журналу.

        Returns:
            Количество выполненных компенсаций
        """
        records = await self._compensations.claim_pending(self._batch, self._stale_after)
        resolved = 0

        for record in records:
            try:
                await self._compensator.execute(record)
            except Exception as e:
                await log_warning(
                    f"Компенсация {record.id} ({record.action.value}, бронирование {record.booking_id}) "
                    f"снова не удалась, попытка {record.attempts + 1}: {e}"
                )
                await self._compensations.retry_later(record.id, f"{type(e).__name__}: {e}")
                continue

            await self._compensations.resolve(record.id)
            resolved += 1
            await log_info(
                f"Компенсация {record.id} ({record.action.value}, бронирование {record.booking_id}) выполнена",
                type_msg=TypeMsg.INFO,
            )

        return resolved
