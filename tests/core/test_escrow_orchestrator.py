# tests/core/test_escrow_orchestrator.py
"""
Сценарные тесты оркестратора бронирований на хранилищах в памяти.
"""

from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.common.constants import BookingStatus, CompensationAction, RideStatus, RideType, TransactionKind
from src.common.exceptions import (
    BookingNotFound,
    CompensationFailure,
    DuplicateRequest,
    InsufficientFunds,
    InsufficientSeats,
    InvalidAmount,
    InvalidTransition,
    NotAuthorized,
    RideNotFound,
    RideNotPublished,
    SelfBookingForbidden,
)
from src.common.ids import new_id
from src.core.bookings.models import Booking
from src.core.wallet.service import replay_balance
from src.infra.event_bus import EventTypes


class TestCreateBooking:
    """Создание бронирования."""

    @pytest.mark.asyncio
    async def test_auto_confirm_happy_path(self, world) -> None:
        """Автоподтверждение: места и депозит списываются сразу."""
        # Arrange
        ride = world.add_ride(seats_total=4, price_per_seat=100, ride_type=RideType.PRIVATE_POOL)
        world.ledger.fund("rider-1", 50)

        # Act
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 2)

        # Assert
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.fare_total == 200
        assert booking.deposit == 20
        assert world.seats(ride) == 2
        assert world.ledger.balance("rider-1") == (30, 20)
        assert ride.id in world.catalog.invalidated
        assert len(world.published(EventTypes.BOOKING_CREATED)) == 1
        assert len(world.published(EventTypes.BOOKING_CONFIRMED)) == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_trace(self, world) -> None:
        """Нехватка средств: места не тронуты, транзакций резерва нет."""
        # Arrange
        ride = world.add_ride(seats_total=4, price_per_seat=100, ride_type=RideType.PRIVATE_POOL)
        world.ledger.fund("rider-1", 5)

        # Act
        with pytest.raises(InsufficientFunds):
            await world.orchestrator.create_booking(ride.id, "rider-1", 2)

        # Assert
        assert world.seats(ride) == 4
        assert world.ledger.balance("rider-1") == (5, 0)
        kinds = [tx.kind for tx in world.ledger.journal if tx.user_id == "rider-1"]
        assert kinds == [TransactionKind.DEPOSIT]
        assert world.bookings.rows == {}
        world.event_bus.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_manual_ride_creates_requested_without_seats(self, world) -> None:
        """Без автоподтверждения удерживается только депозит."""
        # Arrange
        ride = world.add_ride(allow_auto_confirm=False)
        world.ledger.fund("rider-1", 50)

        # Act
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 2)

        # Assert
        assert booking.status == BookingStatus.REQUESTED
        assert world.seats(ride) == 4
        assert world.ledger.balance("rider-1") == (30, 20)
        assert world.published(EventTypes.BOOKING_CONFIRMED) == []

    @pytest.mark.asyncio
    async def test_commercial_deposit_rounds_up(self, world) -> None:
        # Arrange
        ride = world.add_ride(price_per_seat=99, ride_type=RideType.COMMERCIAL_FULL)
        world.ledger.fund("rider-1", 100)

        # Act
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 1)

        # Assert
        assert booking.deposit == 30  # ceil(99 * 0.3) = ceil(29.7)
        assert world.ledger.balance("rider-1") == (70, 30)

    @pytest.mark.asyncio
    async def test_free_ride_skips_deposit(self, world) -> None:
        """Нулевой депозит не создаёт транзакций."""
        # Arrange
        ride = world.add_ride(price_per_seat=0)

        # Act
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 1)

        # Assert
        assert booking.deposit == 0
        assert booking.status == BookingStatus.CONFIRMED
        assert world.ledger.journal == []

    @pytest.mark.asyncio
    async def test_unknown_ride(self, world) -> None:
        with pytest.raises(RideNotFound):
            await world.orchestrator.create_booking(new_id(), "rider-1", 1)

    @pytest.mark.asyncio
    async def test_closed_ride(self, world) -> None:
        ride = world.add_ride(status=RideStatus.CLOSED)
        world.ledger.fund("rider-1", 50)

        with pytest.raises(RideNotPublished):
            await world.orchestrator.create_booking(ride.id, "rider-1", 1)

        assert world.ledger.balance("rider-1") == (50, 0)

    @pytest.mark.asyncio
    async def test_driver_cannot_book_own_ride(self, world) -> None:
        ride = world.add_ride()
        world.ledger.fund(world.DRIVER, 50)

        with pytest.raises(SelfBookingForbidden):
            await world.orchestrator.create_booking(ride.id, world.DRIVER, 1)

    @pytest.mark.asyncio
    async def test_precheck_rejects_too_many_seats(self, world) -> None:
        """Предварительная проверка мест до резерва депозита."""
        # Arrange
        ride = world.add_ride(seats_total=4)
        world.ledger.fund("rider-1", 500)

        # Act
        with pytest.raises(InsufficientSeats) as exc_info:
            await world.orchestrator.create_booking(ride.id, "rider-1", 5)

        # Assert
        assert exc_info.value.details["available"] == 4
        assert world.ledger.balance("rider-1") == (500, 0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seats", [0, -1, True])
    async def test_invalid_seat_count(self, world, seats) -> None:
        ride = world.add_ride()

        with pytest.raises(InvalidAmount):
            await world.orchestrator.create_booking(ride.id, "rider-1", seats)

    @pytest.mark.asyncio
    async def test_lost_seat_race_releases_deposit(self, world) -> None:
        """CAS мест проиграл после резерва: депозит возвращается."""
        # Arrange
        ride = world.add_ride(seats_total=2)
        world.ledger.fund("rider-1", 50)
        world.inventory.available[ride.id] = 2
        original = world.inventory.try_reserve_seats

        async def drained(ride_id, seats, booking_id=None):
            world.inventory.available[ride_id] = 0
            return await original(ride_id, seats, booking_id=booking_id)

        world.inventory.try_reserve_seats = drained

        # Act
        with pytest.raises(InsufficientSeats):
            await world.orchestrator.create_booking(ride.id, "rider-1", 2)

        # Assert
        assert world.ledger.balance("rider-1") == (50, 0)
        kinds = [tx.kind for tx in world.ledger.journal if tx.user_id == "rider-1"]
        assert kinds == [TransactionKind.DEPOSIT, TransactionKind.RESERVE, TransactionKind.RELEASE]
        assert world.bookings.rows == {}

    @pytest.mark.asyncio
    async def test_persist_failure_compensates_seats_and_deposit(self, world) -> None:
        """Бронирование не сохранилось: места и депозит возвращаются."""
        # Arrange
        ride = world.add_ride(seats_total=4)
        world.ledger.fund("rider-1", 50)
        world.bookings.create_failures = 1

        # Act
        with pytest.raises(ConnectionRefusedError):
            await world.orchestrator.create_booking(ride.id, "rider-1", 2)

        # Assert
        assert world.seats(ride) == 4
        assert world.ledger.balance("rider-1") == (50, 0)
        assert world.compensations.records == []

    @pytest.mark.asyncio
    async def test_unrecoverable_compensation_is_recorded(self, world) -> None:
        """Компенсация не удалась после всех повторов: запись в журнал и CompensationFailure."""
        # Arrange
        ride = world.add_ride(allow_auto_confirm=False)
        world.ledger.fund("rider-1", 50)
        world.bookings.create_failures = 1
        world.ledger.release_failures = 10

        # Act
        with pytest.raises(CompensationFailure) as exc_info:
            await world.orchestrator.create_booking(ride.id, "rider-1", 2)

        # Assert
        assert exc_info.value.details["action"] == CompensationAction.RELEASE_DEPOSIT.value
        assert len(world.compensations.records) == 1
        record = world.compensations.records[0]
        assert record.user_id == "rider-1"
        assert record.amount == 20
        assert world.ledger.balance("rider-1") == (30, 20)
        assert len(world.published(EventTypes.BOOKING_COMPENSATION_PENDING)) == 1

    @pytest.mark.asyncio
    async def test_precheck_ignores_stale_cache(self, world) -> None:
        """Устаревший снимок в кэше без мест не мешает бронированию."""
        # Arrange
        ride = world.add_ride()
        world.ledger.fund("rider-1", 50)
        world.catalog.stale[ride.id] = ride.model_copy(update={"seats_available": 0})

        # Act
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 2)

        # Assert
        assert booking.status == BookingStatus.CONFIRMED
        assert world.seats(ride) == 2

    @pytest.mark.asyncio
    async def test_hanging_step_times_out(self, world) -> None:
        """Шаг без ответа прерывается по таймауту, депозит не остаётся в резерве."""
        # Arrange
        ride = world.add_ride()
        world.ledger.fund("rider-1", 50)
        world.orchestrator._step_timeout = 0.05

        async def hanging_reserve(*args, **kwargs):
            await asyncio.sleep(1)

        world.ledger.reserve = hanging_reserve

        # Act
        with pytest.raises(asyncio.TimeoutError):
            await world.orchestrator.create_booking(ride.id, "rider-1", 1)

        # Assert
        assert world.ledger.balance("rider-1") == (50, 0)
        assert world.seats(ride) == 4


class TestIdempotentCreate:
    """Повтор создания с ключом идемпотентности."""

    @pytest.mark.asyncio
    async def test_same_key_returns_same_booking(self, world) -> None:
        # Arrange
        ride = world.add_ride()
        world.ledger.fund("rider-1", 100)

        # Act
        first = await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="k-1")
        second = await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="k-1")

        # Assert
        assert first.id == second.id
        assert world.seats(ride) == 3
        assert world.ledger.balance("rider-1") == (90, 10)
        assert world.redis.data["idempotency:booking:rider-1:k-1"] == first.id

    @pytest.mark.asyncio
    async def test_in_flight_key_is_rejected(self, world) -> None:
        # Arrange
        ride = world.add_ride()
        world.redis.data["idempotency:booking:rider-1:k-1"] = "pending"

        # Act / Assert
        with pytest.raises(DuplicateRequest):
            await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="k-1")

    @pytest.mark.asyncio
    async def test_failed_attempt_frees_key(self, world) -> None:
        """После отказа тот же ключ можно использовать снова."""
        # Arrange
        ride = world.add_ride()

        with pytest.raises(InsufficientFunds):
            await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="k-1")
        world.ledger.fund("rider-1", 100)

        # Act
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="k-1")

        # Assert
        assert booking.status == BookingStatus.CONFIRMED
        assert "idempotency:booking:rider-1:k-1" in world.redis.data

    @pytest.mark.asyncio
    async def test_redis_failure_after_commit_returns_booking(self, world) -> None:
        """Сбой записи ключа не отменяет уже созданное бронирование."""
        # Arrange
        ride = world.add_ride()
        world.ledger.fund("rider-1", 100)

        async def broken_set(*args, **kwargs):
            raise RedisConnectionError("redis down")

        world.redis.set = broken_set

        # Act
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="k-1")

        # Assert
        assert booking.status == BookingStatus.CONFIRMED
        assert (await world.orchestrator.get_booking(booking.id)).status == BookingStatus.CONFIRMED
        assert world.seats(ride) == 3
        assert world.ledger.balance("rider-1") == (90, 10)
        with pytest.raises(DuplicateRequest):
            await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="k-1")
        assert world.seats(ride) == 3

    @pytest.mark.asyncio
    async def test_redis_failure_keeps_business_error(self, world) -> None:
        # Arrange
        ride = world.add_ride()

        async def broken_delete(*args, **kwargs):
            raise RedisConnectionError("redis down")

        world.redis.delete = broken_delete

        # Act / Assert
        with pytest.raises(InsufficientFunds):
            await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="k-1")
        assert world.seats(ride) == 4

    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_rider(self, world) -> None:
        ride = world.add_ride()
        world.ledger.fund("rider-1", 100)
        world.ledger.fund("rider-2", 100)

        first = await world.orchestrator.create_booking(ride.id, "rider-1", 1, idempotency_key="same")
        second = await world.orchestrator.create_booking(ride.id, "rider-2", 1, idempotency_key="same")

        assert first.id != second.id


class TestTransitions:
    """Подтверждение, отклонение и отмена."""

    async def _requested(self, world, seats: int = 2, **ride_kwargs) -> tuple:
        ride = world.add_ride(allow_auto_confirm=False, **ride_kwargs)
        world.ledger.fund("rider-1", 100)
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", seats)
        return ride, booking

    @pytest.mark.asyncio
    async def test_reject_returns_deposit(self, world) -> None:
        """Водитель отклоняет: депозит полностью возвращается, места не меняются."""
        # Arrange
        ride, booking = await self._requested(world)

        # Act
        rejected = await world.orchestrator.reject(booking.id, world.DRIVER)

        # Assert
        assert rejected.status == BookingStatus.REJECTED
        assert world.ledger.balance("rider-1") == (100, 0)
        assert world.seats(ride) == 4
        assert len(world.published(EventTypes.BOOKING_REJECTED)) == 1

    @pytest.mark.asyncio
    async def test_reject_twice_fails(self, world) -> None:
        ride, booking = await self._requested(world)
        await world.orchestrator.reject(booking.id, world.DRIVER)

        with pytest.raises(InvalidTransition):
            await world.orchestrator.reject(booking.id, world.DRIVER)

        assert world.ledger.balance("rider-1") == (100, 0)

    @pytest.mark.asyncio
    async def test_approve_reserves_seats(self, world) -> None:
        # Arrange
        ride, booking = await self._requested(world)

        # Act
        confirmed = await world.orchestrator.approve(booking.id, world.DRIVER)

        # Assert
        assert confirmed.status == BookingStatus.CONFIRMED
        assert world.seats(ride) == 2
        assert world.ledger.balance("rider-1") == (80, 20)
        assert len(world.published(EventTypes.BOOKING_CONFIRMED)) == 1

    @pytest.mark.asyncio
    async def test_approve_twice_fails(self, world) -> None:
        ride, booking = await self._requested(world)
        await world.orchestrator.approve(booking.id, world.DRIVER)

        with pytest.raises(InvalidTransition):
            await world.orchestrator.approve(booking.id, world.DRIVER)

        assert world.seats(ride) == 2

    @pytest.mark.asyncio
    async def test_only_ride_driver_can_approve_or_reject(self, world) -> None:
        ride, booking = await self._requested(world)

        with pytest.raises(NotAuthorized):
            await world.orchestrator.approve(booking.id, "someone-else")
        with pytest.raises(NotAuthorized):
            await world.orchestrator.reject(booking.id, "rider-1")

        assert (await world.orchestrator.get_booking(booking.id)).status == BookingStatus.REQUESTED

    @pytest.mark.asyncio
    async def test_approve_without_seats_keeps_requested(self, world) -> None:
        """Мест на момент подтверждения нет: бронирование остаётся requested."""
        # Arrange
        ride = world.add_ride(seats_total=2, allow_auto_confirm=False)
        world.ledger.fund("rider-1", 100)
        world.ledger.fund("rider-2", 100)
        first = await world.orchestrator.create_booking(ride.id, "rider-1", 2)
        second = await world.orchestrator.create_booking(ride.id, "rider-2", 2)
        await world.orchestrator.approve(first.id, world.DRIVER)

        # Act
        with pytest.raises(InsufficientSeats):
            await world.orchestrator.approve(second.id, world.DRIVER)

        # Assert
        assert (await world.orchestrator.get_booking(second.id)).status == BookingStatus.REQUESTED
        assert world.seats(ride) == 0

        cancelled = await world.orchestrator.cancel(second.id, "rider-2")
        assert cancelled.status == BookingStatus.CANCELLED
        assert world.seats(ride) == 0
        assert world.ledger.balance("rider-2") == (100, 0)

    @pytest.mark.asyncio
    async def test_approve_timeout_after_hold_returns_seats(self, world) -> None:
        """Места заняты, но ответ не пришёл: удержание снимается, бронирование остаётся requested."""
        # Arrange
        ride, booking = await self._requested(world)
        world.orchestrator._step_timeout = 0.05
        reserve = world.inventory.try_reserve_seats

        async def slow_reserve(*args, **kwargs):
            result = await reserve(*args, **kwargs)
            await asyncio.sleep(1)
            return result

        world.inventory.try_reserve_seats = slow_reserve

        # Act
        with pytest.raises(asyncio.TimeoutError):
            await world.orchestrator.approve(booking.id, world.DRIVER)

        # Assert
        assert (await world.orchestrator.get_booking(booking.id)).status == BookingStatus.REQUESTED
        assert world.seats(ride) == 4
        assert world.ledger.balance("rider-1") == (80, 20)

    @pytest.mark.asyncio
    async def test_approve_error_after_hold_returns_seats(self, world) -> None:
        # Arrange
        ride, booking = await self._requested(world)
        reserve = world.inventory.try_reserve_seats

        async def broken_reserve(*args, **kwargs):
            await reserve(*args, **kwargs)
            raise ConnectionResetError("connection lost")

        world.inventory.try_reserve_seats = broken_reserve

        # Act
        with pytest.raises(ConnectionResetError):
            await world.orchestrator.approve(booking.id, world.DRIVER)

        # Assert
        assert world.seats(ride) == 4
        assert world.inventory.holds[booking.id]["active"] is False

    @pytest.mark.asyncio
    async def test_cancel_after_confirm(self, world) -> None:
        """Отмена подтверждённого: места и депозит возвращаются, повтор запрещён."""
        # Arrange
        ride = world.add_ride(price_per_seat=50, ride_type=RideType.COMMERCIAL_POOL)
        world.ledger.fund("rider-1", 100)
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 2)
        assert booking.deposit == 30
        assert world.seats(ride) == 2

        # Act
        cancelled = await world.orchestrator.cancel(booking.id, "rider-1")

        # Assert
        assert cancelled.status == BookingStatus.CANCELLED
        assert world.seats(ride) == 4
        assert world.ledger.balance("rider-1") == (100, 0)
        with pytest.raises(InvalidTransition):
            await world.orchestrator.cancel(booking.id, "rider-1")
        assert world.seats(ride) == 4

    @pytest.mark.asyncio
    async def test_driver_can_cancel(self, world) -> None:
        ride = world.add_ride()
        world.ledger.fund("rider-1", 100)
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 1)

        cancelled = await world.orchestrator.cancel(booking.id, world.DRIVER)

        assert cancelled.status == BookingStatus.CANCELLED
        assert world.seats(ride) == 4

    @pytest.mark.asyncio
    async def test_cancel_requested_returns_deposit_only(self, world) -> None:
        ride, booking = await self._requested(world)

        cancelled = await world.orchestrator.cancel(booking.id, "rider-1")

        assert cancelled.status == BookingStatus.CANCELLED
        assert world.seats(ride) == 4
        assert world.ledger.balance("rider-1") == (100, 0)

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, world) -> None:
        ride, booking = await self._requested(world)

        with pytest.raises(NotAuthorized):
            await world.orchestrator.cancel(booking.id, "stranger")

    @pytest.mark.asyncio
    async def test_reject_confirmed_is_invalid(self, world) -> None:
        ride = world.add_ride()
        world.ledger.fund("rider-1", 100)
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 1)

        with pytest.raises(InvalidTransition):
            await world.orchestrator.reject(booking.id, world.DRIVER)

    @pytest.mark.asyncio
    async def test_unknown_booking(self, world) -> None:
        with pytest.raises(BookingNotFound):
            await world.orchestrator.cancel(new_id(), "rider-1")

    @pytest.mark.asyncio
    async def test_release_retried_within_budget(self, world) -> None:
        """Временный сбой возврата депозита закрывается повтором."""
        # Arrange
        ride, booking = await self._requested(world)
        world.ledger.release_failures = 2

        # Act
        await world.orchestrator.reject(booking.id, world.DRIVER)

        # Assert
        assert world.ledger.balance("rider-1") == (100, 0)
        assert world.compensations.records == []

    @pytest.mark.asyncio
    async def test_seat_failure_still_returns_deposit(self, world) -> None:
        """Возврат мест не удался, но депозит всё равно возвращается."""
        # Arrange
        ride = world.add_ride()
        world.ledger.fund("rider-1", 100)
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 2)
        world.inventory.release_failures = 10

        # Act
        with pytest.raises(CompensationFailure):
            await world.orchestrator.cancel(booking.id, "rider-1")

        # Assert
        assert world.ledger.balance("rider-1") == (100, 0)
        assert world.seats(ride) == 2
        assert (await world.orchestrator.get_booking(booking.id)).status == BookingStatus.CANCELLED
        assert [r.action for r in world.compensations.records] == [CompensationAction.RELEASE_SEATS]


class TestConcurrency:
    """Гонки между бронированиями одной поездки."""

    @pytest.mark.asyncio
    async def test_race_on_last_seat(self, world) -> None:
        """Два пассажира на последнее место: успех ровно у одного."""
        # Arrange
        ride = world.add_ride(seats_total=1)
        world.ledger.fund("rider-1", 100)
        world.ledger.fund("rider-2", 100)

        # Act
        results = await asyncio.gather(
            world.orchestrator.create_booking(ride.id, "rider-1", 1),
            world.orchestrator.create_booking(ride.id, "rider-2", 1),
            return_exceptions=True,
        )

        # Assert
        winners = [r for r in results if isinstance(r, Booking)]
        losers = [r for r in results if isinstance(r, InsufficientSeats)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert winners[0].status == BookingStatus.CONFIRMED
        assert world.seats(ride) == 0

        loser_id = "rider-2" if winners[0].rider_id == "rider-1" else "rider-1"
        assert world.ledger.balance(loser_id) == (100, 0)
        assert world.ledger.balance(winners[0].rider_id) == (90, 10)

    @pytest.mark.asyncio
    async def test_no_oversell_under_load(self, world) -> None:
        # Arrange
        ride = world.add_ride(seats_total=3)
        riders = [f"rider-{i}" for i in range(8)]
        for rider in riders:
            world.ledger.fund(rider, 100)

        # Act
        results = await asyncio.gather(
            *(world.orchestrator.create_booking(ride.id, rider, 1) for rider in riders),
            return_exceptions=True,
        )

        # Assert
        assert sum(isinstance(r, Booking) for r in results) == 3
        assert all(isinstance(r, (Booking, InsufficientSeats)) for r in results)
        assert world.confirmed_seats(ride) == 3
        assert world.seats(ride) == 0

    @pytest.mark.asyncio
    async def test_concurrent_approvals_respect_capacity(self, world) -> None:
        # Arrange
        ride = world.add_ride(seats_total=2, allow_auto_confirm=False)
        bookings = []
        for i in range(4):
            world.ledger.fund(f"rider-{i}", 100)
            bookings.append(await world.orchestrator.create_booking(ride.id, f"rider-{i}", 1))

        # Act
        results = await asyncio.gather(
            *(world.orchestrator.approve(b.id, world.DRIVER) for b in bookings),
            return_exceptions=True,
        )

        # Assert
        assert sum(isinstance(r, Booking) for r in results) == 2
        assert sum(isinstance(r, InsufficientSeats) for r in results) == 2
        assert world.confirmed_seats(ride) == 2
        assert world.seats(ride) == 0

    @pytest.mark.asyncio
    async def test_approve_racing_cancel_stays_consistent(self, world) -> None:
        """Подтверждение и отмена одновременно: места и депозит согласованы со статусом."""
        # Arrange
        ride = world.add_ride(seats_total=4, allow_auto_confirm=False)
        world.ledger.fund("rider-1", 100)
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 2)

        # Act
        await asyncio.gather(
            world.orchestrator.approve(booking.id, world.DRIVER),
            world.orchestrator.cancel(booking.id, "rider-1"),
            return_exceptions=True,
        )

        # Assert
        final = await world.orchestrator.get_booking(booking.id)
        if final.status == BookingStatus.CONFIRMED:
            assert world.seats(ride) == 2
            assert world.ledger.balance("rider-1") == (80, 20)
        else:
            assert final.status == BookingStatus.CANCELLED
            assert world.seats(ride) == 4
            assert world.ledger.balance("rider-1") == (100, 0)

    @pytest.mark.asyncio
    async def test_same_rider_two_devices(self, world) -> None:
        """Два устройства одного пассажира не тратят больше, чем есть в кошельке."""
        # Arrange
        ride = world.add_ride(seats_total=4, price_per_seat=100)
        world.ledger.fund("rider-1", 15)

        # Act
        results = await asyncio.gather(
            world.orchestrator.create_booking(ride.id, "rider-1", 1),
            world.orchestrator.create_booking(ride.id, "rider-1", 1),
            return_exceptions=True,
        )

        # Assert
        assert sum(isinstance(r, Booking) for r in results) == 1
        assert sum(isinstance(r, InsufficientFunds) for r in results) == 1
        assert world.ledger.balance("rider-1") == (5, 10)
        assert world.seats(ride) == 3

    @pytest.mark.asyncio
    async def test_journal_replays_to_balance(self, world) -> None:
        """После смешанной нагрузки журнал каждого пользователя воспроизводит баланс."""
        # Arrange
        ride = world.add_ride(seats_total=3)
        manual = world.add_ride(seats_total=2, allow_auto_confirm=False, ride_type=RideType.COMMERCIAL_POOL)
        riders = [f"rider-{i}" for i in range(5)]
        for rider in riders:
            world.ledger.fund(rider, 200)

        # Act
        created = await asyncio.gather(
            *(world.orchestrator.create_booking(ride.id, rider, 1) for rider in riders),
            *(world.orchestrator.create_booking(manual.id, rider, 1) for rider in riders),
            return_exceptions=True,
        )
        bookings = [b for b in created if isinstance(b, Booking)]
        await asyncio.gather(
            *(world.orchestrator.cancel(b.id, b.rider_id) for b in bookings[::2]),
            *(world.orchestrator.approve(b.id, world.DRIVER) for b in bookings[1::2]),
            return_exceptions=True,
        )

        # Assert
        for rider in riders:
            transactions = await world.ledger.all_transactions(rider)
            assert replay_balance(transactions) == world.ledger.balance(rider)
            available, reserved = world.ledger.balance(rider)
            assert available >= 0 and reserved >= 0
        assert world.confirmed_seats(ride) <= 3
        assert world.confirmed_seats(manual) <= 2


class TestReads:
    """Чтение бронирований."""

    @pytest.mark.asyncio
    async def test_rider_bookings_page(self, world) -> None:
        ride = world.add_ride()
        world.ledger.fund("rider-1", 100)
        for _ in range(3):
            await world.orchestrator.create_booking(ride.id, "rider-1", 1)

        page = await world.orchestrator.list_bookings_for_rider("rider-1", page=1, limit=2)

        assert page.total == 3
        assert page.limit == 2
        assert len(page.items) == 2

    @pytest.mark.asyncio
    async def test_ride_bookings_for_driver_only(self, world) -> None:
        ride = world.add_ride(allow_auto_confirm=False)
        world.ledger.fund("rider-1", 100)
        booking = await world.orchestrator.create_booking(ride.id, "rider-1", 1)

        items = await world.orchestrator.list_bookings_for_ride(ride.id, world.DRIVER, BookingStatus.REQUESTED)

        assert [b.id for b in items] == [booking.id]
        with pytest.raises(NotAuthorized):
            await world.orchestrator.list_bookings_for_ride(ride.id, "rider-1")
