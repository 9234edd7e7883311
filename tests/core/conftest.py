# tests/core/conftest.py
"""
Хранилища в памяти для сценарных тестов оркестратора.

Повторяют контракты PostgreSQL-реализаций: CAS мест с удержаниями
по бронированию, условное изменение баланса с журналом и ключами
идемпотентности, CAS статуса бронирования.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.common.constants import (
    BookingStatus,
    CompensationStatus,
    RideStatus,
    RideType,
    TransactionKind,
)
from src.common.exceptions import InsufficientFunds, InvalidAmount, InvalidState, RideNotFound
from src.common.ids import new_id
from src.core.bookings.compensation import Compensator
from src.core.bookings.models import Booking, Compensation
from src.core.bookings.orchestrator import EscrowOrchestrator
from src.core.rides.models import RideSnapshot
from src.core.wallet.models import WalletBalance, WalletTransaction


class FakeInventory:
    """Места поездок с удержаниями по booking_id."""

    def __init__(self) -> None:
        self.total: dict[str, int] = {}
        self.available: dict[str, int] = {}
        self.holds: dict[str, dict[str, Any]] = {}
        self.release_failures = 0
        self._lock = asyncio.Lock()

    async def try_reserve_seats(self, ride_id: str, seats: int, booking_id: Optional[str] = None) -> tuple[bool, int]:
        await asyncio.sleep(0)
        async with self._lock:
            if ride_id not in self.available:
                raise RideNotFound(ride_id=ride_id)
            if booking_id is not None and booking_id in self.holds:
                return self.holds[booking_id]["active"], self.available[ride_id]
            if self.available[ride_id] < seats:
                return False, self.available[ride_id]
            self.available[ride_id] -= seats
            if booking_id is not None:
                self.holds[booking_id] = {"ride_id": ride_id, "seats": seats, "active": True}
            return True, self.available[ride_id]

    async def release_seats(self, ride_id: str, seats: int, booking_id: Optional[str] = None) -> int:
        await asyncio.sleep(0)
        if self.release_failures > 0:
            self.release_failures -= 1
            raise ConnectionRefusedError("inventory unavailable")
        async with self._lock:
            if booking_id is not None:
                hold = self.holds.get(booking_id)
                if hold is None or not hold["active"]:
                    return self.available[ride_id]
                hold["active"] = False
                seats = hold["seats"]
            self.available[ride_id] = min(self.total[ride_id], self.available[ride_id] + seats)
            return self.available[ride_id]


class FakeCatalog:
    """Каталог, читающий места из FakeInventory."""

    def __init__(self, inventory: FakeInventory) -> None:
        self._inventory = inventory
        self.rides: dict[str, RideSnapshot] = {}
        self.stale: dict[str, RideSnapshot] = {}
        self.invalidated: list[str] = []

    def add(self, ride: RideSnapshot) -> RideSnapshot:
        self.rides[ride.id] = ride
        self._inventory.total[ride.id] = ride.seats_total
        self._inventory.available[ride.id] = ride.seats_available
        return ride

    async def get_ride(self, ride_id: str, fresh: bool = False) -> Optional[RideSnapshot]:
        await asyncio.sleep(0)
        ride = self.rides.get(ride_id)
        if ride is None:
            return None
        if not fresh and ride_id in self.stale:
            return self.stale[ride_id]
        return ride.model_copy(update={"seats_available": self._inventory.available[ride_id]})

    async def invalidate(self, ride_id: str) -> None:
        self.invalidated.append(ride_id)


class FakeLedger:
    """Балансы и журнал с теми же ключами идемпотентности, что у LedgerStore."""

    def __init__(self) -> None:
        self.balances: dict[str, list[int]] = {}
        self.journal: list[WalletTransaction] = []
        self.release_failures = 0
        self._lock = asyncio.Lock()

    def fund(self, user_id: str, amount: int) -> None:
        self.balances.setdefault(user_id, [0, 0])[0] += amount
        self.journal.append(WalletTransaction(
            id=new_id(), user_id=user_id, kind=TransactionKind.DEPOSIT, amount=amount,
        ))

    def balance(self, user_id: str) -> tuple[int, int]:
        available, reserved = self.balances.get(user_id, [0, 0])
        return available, reserved

    async def reserve(self, user_id, amount, *, ref_booking_id=None, reference=None, conn=None):
        return await self._mutate(TransactionKind.RESERVE, user_id, amount, ref_booking_id, reference)

    async def release(self, user_id, amount, *, ref_booking_id=None, reference=None, conn=None):
        if self.release_failures > 0:
            self.release_failures -= 1
            raise ConnectionRefusedError("ledger unavailable")
        return await self._mutate(TransactionKind.RELEASE, user_id, amount, ref_booking_id, reference)

    async def capture(self, user_id, amount, *, ref_booking_id=None, reference=None, conn=None):
        return await self._mutate(TransactionKind.CAPTURE, user_id, amount, ref_booking_id, reference)

    async def credit(self, user_id, amount, *, reference=None, conn=None):
        return await self._mutate(TransactionKind.DEPOSIT, user_id, amount, None, reference)

    async def refund(self, user_id, amount, *, reference=None, conn=None):
        return await self._mutate(TransactionKind.REFUND, user_id, amount, None, reference)

    async def get_balance(self, user_id: str, conn=None) -> WalletBalance:
        available, reserved = self.balance(user_id)
        return WalletBalance(user_id=user_id, available=available, reserved=reserved)

    async def all_transactions(self, user_id: str) -> list[WalletTransaction]:
        return [tx for tx in self.journal if tx.user_id == user_id]

    def _recorded(self, kind: TransactionKind, ref_booking_id: Optional[str], reference: Optional[str]) -> bool:
        for tx in self.journal:
            if tx.kind != kind:
                continue
            if ref_booking_id is not None and tx.ref_booking_id == ref_booking_id:
                return True
            if reference is not None and tx.reference == reference:
                return True
        return False

    async def _mutate(self, kind, user_id, amount, ref_booking_id, reference) -> WalletBalance:
        if not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(amount=amount)
        await asyncio.sleep(0)
        async with self._lock:
            if self._recorded(kind, ref_booking_id, reference):
                return await self.get_balance(user_id)
            if (
                ref_booking_id is not None
                and kind in (TransactionKind.RELEASE, TransactionKind.CAPTURE)
                and not self._recorded(TransactionKind.RESERVE, ref_booking_id, None)
            ):
                return await self.get_balance(user_id)

            balance = self.balances.setdefault(user_id, [0, 0])
            available, reserved = balance
            if kind == TransactionKind.RESERVE:
                if available < amount:
                    raise InsufficientFunds(available=available, required=amount)
                balance[:] = [available - amount, reserved + amount]
            elif kind == TransactionKind.RELEASE:
                if reserved < amount:
                    raise InvalidState(reserved=reserved, required=amount)
                balance[:] = [available + amount, reserved - amount]
            elif kind == TransactionKind.CAPTURE:
                if reserved < amount:
                    raise InvalidState(reserved=reserved, required=amount)
                balance[:] = [available, reserved - amount]
            else:
                balance[:] = [available + amount, reserved]

            self.journal.append(WalletTransaction(
                id=new_id(),
                user_id=user_id,
                kind=kind,
                amount=amount,
                ref_booking_id=ref_booking_id,
                reference=reference,
            ))
            return WalletBalance(user_id=user_id, available=balance[0], reserved=balance[1])


class FakeBookingRepo:
    """Бронирования с CAS статуса."""

    def __init__(self) -> None:
        self.rows: dict[str, Booking] = {}
        self.create_failures = 0

    async def create(self, booking: Booking) -> Booking:
        await asyncio.sleep(0)
        if self.create_failures > 0:
            self.create_failures -= 1
            raise ConnectionRefusedError("bookings unavailable")
        self.rows[booking.id] = booking.model_copy()
        return booking.model_copy()

    async def get(self, booking_id: str) -> Optional[Booking]:
        await asyncio.sleep(0)
        booking = self.rows.get(booking_id)
        return booking.model_copy() if booking is not None else None

    async def transition(self, booking_id: str, expected: BookingStatus, target: BookingStatus) -> Optional[Booking]:
        await asyncio.sleep(0)
        booking = self.rows.get(booking_id)
        if booking is None or booking.status != expected:
            return None
        booking.status = target
        return booking.model_copy()

    async def list_for_rider(self, rider_id: str, limit: int, offset: int) -> list[Booking]:
        items = [b for b in self.rows.values() if b.rider_id == rider_id]
        items.sort(key=lambda b: b.created_at, reverse=True)
        return items[offset:offset + limit]

    async def count_for_rider(self, rider_id: str) -> int:
        return sum(1 for b in self.rows.values() if b.rider_id == rider_id)

    async def list_for_ride(self, ride_id: str, status: Optional[BookingStatus] = None) -> list[Booking]:
        return [
            b for b in self.rows.values()
            if b.ride_id == ride_id and (status is None or b.status == status)
        ]


class FakeCompensationRepo:
    """Журнал компенсаций."""

    def __init__(self) -> None:
        self.records: list[Compensation] = []

    async def create(self, compensation: Compensation) -> Compensation:
        self.records.append(compensation)
        return compensation

    async def claim_pending(self, limit: int, stale_after: int) -> list[Compensation]:
        claimed = [r for r in self.records if r.status == CompensationStatus.PENDING][:limit]
        for record in claimed:
            record.status = CompensationStatus.IN_PROGRESS
        return claimed

    async def resolve(self, compensation_id: str) -> None:
        for record in self.records:
            if record.id == compensation_id:
                record.status = CompensationStatus.RESOLVED
                record.attempts += 1

    async def retry_later(self, compensation_id: str, error: str) -> None:
        for record in self.records:
            if record.id == compensation_id:
                record.status = CompensationStatus.PENDING
                record.attempts += 1
                record.last_error = error


class FakeRedis:
    """Строковые ключи с SET NX."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self.data[key] = str(value)
        return True

    async def set_nx(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if key in self.data:
            return False
        self.data[key] = str(value)
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.data.pop(key, None) is not None else 0


class EscrowWorld:
    """Оркестратор поверх хранилищ в памяти."""

    DRIVER = "driver-1"

    def __init__(self) -> None:
        self.inventory = FakeInventory()
        self.catalog = FakeCatalog(self.inventory)
        self.ledger = FakeLedger()
        self.bookings = FakeBookingRepo()
        self.compensations = FakeCompensationRepo()
        self.redis = FakeRedis()
        self.event_bus = AsyncMock()
        self.compensator = Compensator(
            self.inventory,
            self.ledger,
            self.compensations,
            self.event_bus,
            catalog=self.catalog,
            attempts=3,
            delay=0,
            step_timeout=1.0,
        )
        self.orchestrator = EscrowOrchestrator(
            MagicMock(),
            self.redis,
            self.event_bus,
            catalog=self.catalog,
            inventory=self.inventory,
            ledger=self.ledger,
            bookings=self.bookings,
            compensations=self.compensations,
            compensator=self.compensator,
        )

    def add_ride(
        self,
        *,
        seats_total: int = 4,
        seats_available: Optional[int] = None,
        price_per_seat: int = 100,
        ride_type: RideType = RideType.PRIVATE_POOL,
        allow_auto_confirm: bool = True,
        status: RideStatus = RideStatus.PUBLISHED,
    ) -> RideSnapshot:
        return self.catalog.add(RideSnapshot(
            id=new_id(),
            driver_id=self.DRIVER,
            seats_total=seats_total,
            seats_available=seats_total if seats_available is None else seats_available,
            price_per_seat=price_per_seat,
            ride_type=ride_type,
            allow_auto_confirm=allow_auto_confirm,
            status=status,
        ))

    def seats(self, ride: RideSnapshot) -> int:
        return self.inventory.available[ride.id]

    def confirmed_seats(self, ride: RideSnapshot) -> int:
        return sum(
            b.seats for b in self.bookings.rows.values()
            if b.ride_id == ride.id and b.status == BookingStatus.CONFIRMED
        )

    def published(self, event_type: str) -> list[Any]:
        return [
            call.args[0] for call in self.event_bus.publish.call_args_list
            if call.args[0].event_type == event_type
        ]


@pytest.fixture
def world() -> EscrowWorld:
    return EscrowWorld()
