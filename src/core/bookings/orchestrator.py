# src/core/bookings/orchestrator.py
"""
Оркестратор бронирований (сага).

Места и кошелёк меняются отдельными атомарными операциями своих
хранилищ. Общей блокировки на весь сценарий нет: если шаг не удался
после уже выполненных шагов, выполненные шаги компенсируются.

Места бронирования оформляются удержанием по booking_id. Удержание
снимается, когда бронирование попадает в конечный статус или когда
создание бронирования отменяется.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from redis.exceptions import RedisError

from src.common.constants import BookingStatus, TypeMsg
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
from src.common.logger import log_error, log_info, log_warning
from src.common.pagination import page_params
from src.core.bookings.compensation import Compensator
from src.core.bookings.models import Booking, BookingPage
from src.core.bookings.repository import BookingRepository, CompensationRepository
from src.core.bookings.state_machine import ensure_transition
from src.core.escrow.calculator import compute_deposit
from src.core.rides.catalog import RideCatalog
from src.core.rides.inventory import SeatInventory
from src.core.rides.models import RideSnapshot
from src.core.wallet.ledger import LedgerStore
from src.infra.database import DatabaseManager
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.infra.redis_client import RedisClient

T = TypeVar("T")

_IDEMPOTENCY_PENDING = "pending"


class EscrowOrchestrator:
    """
    Создание, подтверждение, отклонение и отмена бронирований
    с резервированием депозита и мест.
    """

    def __init__(
        self,
        db: DatabaseManager,
        redis: RedisClient,
        event_bus: EventBus,
        *,
        catalog: Optional[RideCatalog] = None,
        inventory: Optional[SeatInventory] = None,
        ledger: Optional[LedgerStore] = None,
        bookings: Optional[BookingRepository] = None,
        compensations: Optional[CompensationRepository] = None,
        compensator: Optional[Compensator] = None,
    ) -> None:
        """
        Args:
            db: Менеджер базы данных
            redis: Клиент Redis (кэш поездок, ключи идемпотентности)
            event_bus: Шина событий
            catalog, inventory, ledger, bookings, compensations, compensator:
                Компоненты (по умолчанию реализации поверх db и redis)
        """
        from src.config import settings

        self._redis = redis
        self._event_bus = event_bus
        self._catalog = catalog or RideCatalog(db, redis)
        self._inventory = inventory or SeatInventory(db)
        self._ledger = ledger or LedgerStore(db)
        self._bookings = bookings or BookingRepository(db)
        self._compensator = compensator or Compensator(
            self._inventory,
            self._ledger,
            compensations or CompensationRepository(db),
            event_bus,
            catalog=self._catalog,
        )
        self._step_timeout = settings.escrow.STEP_TIMEOUT
        self._idempotency_ttl = settings.redis_ttl.IDEMPOTENCY_KEY_TTL
        self._page_size = settings.escrow.BOOKINGS_PAGE_SIZE
        self._max_page_size = settings.escrow.BOOKINGS_MAX_PAGE_SIZE

    async def _step(self, awaitable: Awaitable[T]) -> T:
        """Один шаг саги с ограничением по времени."""
        return await asyncio.wait_for(awaitable, timeout=self._step_timeout)

    # =========================================================================
    # СОЗДАНИЕ
    # =========================================================================

    async def create_booking(
        self,
        ride_id: str,
        rider_id: str,
        seats: int,
        idempotency_key: Optional[str] = None,
    ) -> Booking:
        """
        Создаёт бронирование.

        Args:
            ride_id: UUID поездки
            rider_id: ID пассажира
            seats: Количество мест
            idempotency_key: Ключ клиента; повтор с тем же ключом вернёт то же бронирование

        Returns:
            Бронирование в статусе confirmed (автоподтверждение) или requested

        Raises:
            RideNotFound, RideNotPublished, SelfBookingForbidden,
            InsufficientSeats, InsufficientFunds, DuplicateRequest
        """
        if not isinstance(seats, int) or isinstance(seats, bool) or seats < 1:
            raise InvalidAmount("Количество мест должно быть положительным целым", seats=seats)

        if idempotency_key is None:
            return await self._create_booking(ride_id, rider_id, seats)

        key = f"idempotency:booking:{rider_id}:{idempotency_key}"
        existing = await self._claim_idempotency_key(key)
        if existing is not None:
            return existing

        try:
            booking = await self._create_booking(ride_id, rider_id, seats)
        except BaseException:
            await self._free_idempotency_key(key)
            raise

        try:
            await self._redis.set(key, booking.id, ttl=self._idempotency_ttl)
        except RedisError as e:
            # Ключ остаётся pending до истечения TTL, повтор получит DuplicateRequest
            await log_warning(f"Ключ идемпотентности {key} не записан, бронирование {booking.id} создано: {e}")
        return booking

    async def _free_idempotency_key(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as e:
            await log_warning(f"Ключ идемпотентности {key} не освобождён, истечёт по TTL: {e}")

    async def _claim_idempotency_key(self, key: str) -> Optional[Booking]:
        """
        Захватывает ключ идемпотентности.

        Returns:
            None, если ключ захвачен этим вызовом, иначе ранее созданное бронирование

        Raises:
            DuplicateRequest: запрос с этим ключом ещё выполняется
        """
        if await self._redis.set_nx(key, _IDEMPOTENCY_PENDING, ttl=self._idempotency_ttl):
            return None

        value = await self._redis.get(key)
        if value is None:
            # Ключ истёк между SET NX и GET
            if await self._redis.set_nx(key, _IDEMPOTENCY_PENDING, ttl=self._idempotency_ttl):
                return None
            value = await self._redis.get(key)

        if value is None or value == _IDEMPOTENCY_PENDING:
            raise DuplicateRequest("Запрос с этим ключом уже выполняется", key=key)

        booking = await self._bookings.get(value)
        if booking is None:
            raise DuplicateRequest("Запрос с этим ключом уже выполнялся", key=key)

        await log_info(f"Повтор запроса: возвращаем бронирование {booking.id}", type_msg=TypeMsg.DEBUG)
        return booking

    async def _create_booking(self, ride_id: str, rider_id: str, seats: int) -> Booking:
        ride = await self._catalog.get_ride(ride_id, fresh=True)
        if ride is None:
            raise RideNotFound(f"Поездка {ride_id} не найдена", ride_id=ride_id)
        if not ride.is_published:
            raise RideNotPublished(f"Поездка {ride_id} не опубликована", ride_id=ride_id)
        if ride.driver_id == rider_id:
            raise SelfBookingForbidden("Нельзя бронировать собственную поездку", ride_id=ride_id)
        if seats > ride.seats_available:
            raise InsufficientSeats(
                f"Свободно мест {ride.seats_available}, запрошено {seats}",
                ride_id=ride_id,
                available=ride.seats_available,
                requested=seats,
            )

        fare_total = ride.fare_for(seats)
        booking = Booking(
            ride_id=ride.id,
            rider_id=rider_id,
            seats=seats,
            fare_total=fare_total,
            deposit=compute_deposit(ride.ride_type, fare_total),
        )

        await self._reserve_deposit(booking)

        if ride.allow_auto_confirm:
            await self._hold_seats_for_new_booking(ride, booking)
            booking.status = BookingStatus.CONFIRMED

        booking = await self._persist_new_booking(booking)

        await log_info(
            f"Бронирование {booking.id} создано: поездка {ride.id}, пассажир {rider_id}, "
            f"мест {seats}, депозит {booking.deposit}, статус {booking.status.value}",
            type_msg=TypeMsg.INFO,
        )
        await self._publish(EventTypes.BOOKING_CREATED, booking)
        if booking.status == BookingStatus.CONFIRMED:
            await self._publish(EventTypes.BOOKING_CONFIRMED, booking)
        return booking

    async def _reserve_deposit(self, booking: Booking) -> None:
        if booking.deposit <= 0:
            return
        try:
            await self._step(self._ledger.reserve(
                booking.rider_id,
                booking.deposit,
                ref_booking_id=booking.id,
            ))
        except InsufficientFunds:
            await log_info(
                f"Пассажиру {booking.rider_id} не хватает средств на депозит {booking.deposit}",
                type_msg=TypeMsg.DEBUG,
            )
            raise
        except Exception as e:
            # Исход резерва неизвестен: возврат по бронированию без резерва ничего не делает
            await log_warning(f"Резерв депозита для {booking.id} не подтверждён: {e}")
            await self._compensate(booking, seats=False, deposit=True)
            raise

    async def _hold_seats_for_new_booking(self, ride: RideSnapshot, booking: Booking) -> None:
        try:
            ok, available = await self._step(self._inventory.try_reserve_seats(
                ride.id,
                booking.seats,
                booking_id=booking.id,
            ))
        except Exception as e:
            await log_warning(f"Резерв мест для {booking.id} не подтверждён: {e}")
            await self._compensate(booking, seats=True, deposit=True)
            raise

        if not ok:
            await log_info(
                f"Поездка {ride.id}: места закончились, депозит {booking.id} возвращается",
                type_msg=TypeMsg.INFO,
            )
            await self._compensate(booking, seats=False, deposit=True)
            raise InsufficientSeats(
                f"Свободно мест {available}, запрошено {booking.seats}",
                ride_id=ride.id,
                available=available,
                requested=booking.seats,
            )

        await self._catalog.invalidate(ride.id)

    async def _persist_new_booking(self, booking: Booking) -> Booking:
        try:
            return await self._step(self._bookings.create(booking))
        except Exception as e:
            await log_error(f"Не удалось сохранить бронирование {booking.id}: {e}")
            try:
                saved = await self._bookings.get(booking.id)
            except Exception as lookup_error:
                await log_warning(f"Не удалось проверить бронирование {booking.id}: {lookup_error}")
                saved = None
            if saved is not None:
                return saved
            await self._compensate(booking, seats=booking.status == BookingStatus.CONFIRMED, deposit=True)
            raise

    # =========================================================================
    # ПЕРЕХОДЫ
    # =========================================================================

    async def approve(self, booking_id: str, driver_id: str) -> Booking:
        """
        Водитель подтверждает бронирование: requested → confirmed.

        Raises:
            BookingNotFound, NotAuthorized, InvalidTransition,
            InsufficientSeats (бронирование остаётся requested)
        """
        booking = await self._load(booking_id)
        ride = await self._authorize_driver(booking, driver_id)
        ensure_transition(booking.id, booking.status, BookingStatus.CONFIRMED)

        try:
            ok, available = await self._step(self._inventory.try_reserve_seats(
                ride.id,
                booking.seats,
                booking_id=booking.id,
            ))
        except Exception as e:
            await log_warning(f"Резерв мест при подтверждении {booking.id} не подтверждён: {e}")
            current = await self._load(booking.id)
            if current.status != BookingStatus.CONFIRMED:
                # Удержание могло быть записано до сбоя
                await self._compensator.release_seats(current)
            raise
        if not ok:
            raise InsufficientSeats(
                f"Свободно мест {available}, запрошено {booking.seats}",
                booking_id=booking.id,
                available=available,
                requested=booking.seats,
            )
        await self._catalog.invalidate(ride.id)

        confirmed = await self._bookings.transition(booking.id, BookingStatus.REQUESTED, BookingStatus.CONFIRMED)
        if confirmed is None:
            current = await self._load(booking.id)
            if current.status != BookingStatus.CONFIRMED:
                # Бронирование успели отклонить или отменить: удержание не нужно
                await self._compensator.release_seats(current)
            raise InvalidTransition(
                f"Бронирование {booking.id} уже в статусе {current.status.value}",
                booking_id=booking.id,
                status=current.status.value,
            )

        await log_info(f"Бронирование {booking.id} подтверждено водителем {driver_id}", type_msg=TypeMsg.INFO)
        await self._publish(EventTypes.BOOKING_CONFIRMED, confirmed)
        return confirmed

    async def reject(self, booking_id: str, driver_id: str) -> Booking:
        """
        Водитель отклоняет бронирование: requested → rejected, депозит возвращается.

        Raises:
            BookingNotFound, NotAuthorized, InvalidTransition, CompensationFailure
        """
        booking = await self._load(booking_id)
        await self._authorize_driver(booking, driver_id)
        ensure_transition(booking.id, booking.status, BookingStatus.REJECTED)

        rejected = await self._cas(booking, BookingStatus.REQUESTED, BookingStatus.REJECTED)
        await self._compensate(rejected, seats=True, deposit=True)

        await log_info(f"Бронирование {booking.id} отклонено водителем {driver_id}", type_msg=TypeMsg.INFO)
        await self._publish(EventTypes.BOOKING_REJECTED, rejected)
        return rejected

    async def cancel(self, booking_id: str, actor_id: str) -> Booking:
        """
        Пассажир или водитель отменяет бронирование.
        Из confirmed возвращаются места и депозит, из requested только депозит.

        Raises:
            BookingNotFound, NotAuthorized, InvalidTransition, CompensationFailure
        """
        booking = await self._load(booking_id)
        ride = await self._catalog.get_ride(booking.ride_id)
        driver_id = ride.driver_id if ride is not None else None
        if actor_id not in (booking.rider_id, driver_id):
            raise NotAuthorized("Отменить бронирование может пассажир или водитель", booking_id=booking.id)

        ensure_transition(booking.id, booking.status, BookingStatus.CANCELLED)

        cancelled = await self._cas(booking, booking.status, BookingStatus.CANCELLED)
        await self._compensate(cancelled, seats=True, deposit=True)

        await log_info(
            f"Бронирование {booking.id} отменено ({booking.status.value} → cancelled), инициатор {actor_id}",
            type_msg=TypeMsg.INFO,
        )
        await self._publish(EventTypes.BOOKING_CANCELLED, cancelled)
        return cancelled

    async def _cas(self, booking: Booking, expected: BookingStatus, target: BookingStatus) -> Booking:
        updated = await self._bookings.transition(booking.id, expected, target)
        if updated is None:
            current = await self._load(booking.id)
            raise InvalidTransition(
                f"Бронирование {booking.id}: переход {current.status.value} → {target.value} запрещён",
                booking_id=booking.id,
                status=current.status.value,
                target=target.value,
            )
        return updated

    async def _compensate(self, booking: Booking, *, seats: bool, deposit: bool) -> None:
        """
        Возвращает места и депозит бронирования.
        Оба действия выполняются, даже если первое не удалось.
        """
        failure: Optional[CompensationFailure] = None
        if seats:
            try:
                await self._compensator.release_seats(booking)
            except CompensationFailure as e:
                failure = e
        if deposit:
            try:
                await self._compensator.release_deposit(booking)
            except CompensationFailure as e:
                failure = failure or e
        if failure is not None:
            raise failure

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_booking(self, booking_id: str) -> Booking:
        """
        Raises:
            BookingNotFound
        """
        return await self._load(booking_id)

    async def list_bookings_for_rider(
        self,
        rider_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> BookingPage:
        """Бронирования пассажира, новые первыми."""
        params = page_params(page, limit, self._page_size, self._max_page_size)
        items = await self._bookings.list_for_rider(rider_id, params.limit, params.offset)
        total = await self._bookings.count_for_rider(rider_id)
        return BookingPage(items=items, page=params.page, limit=params.limit, total=total)

    async def list_bookings_for_ride(
        self,
        ride_id: str,
        driver_id: str,
        status: Optional[BookingStatus] = None,
    ) -> list[Booking]:
        """
        Бронирования поездки для её водителя.

        Raises:
            RideNotFound, NotAuthorized
        """
        ride = await self._catalog.get_ride(ride_id)
        if ride is None:
            raise RideNotFound(f"Поездка {ride_id} не найдена", ride_id=ride_id)
        if ride.driver_id != driver_id:
            raise NotAuthorized("Бронирования поездки доступны только водителю", ride_id=ride_id)
        return await self._bookings.list_for_ride(ride.id, status)

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _load(self, booking_id: str) -> Booking:
        booking = await self._bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(f"Бронирование {booking_id} не найдено", booking_id=booking_id)
        return booking

    async def _authorize_driver(self, booking: Booking, driver_id: str) -> RideSnapshot:
        ride = await self._catalog.get_ride(booking.ride_id)
        if ride is None:
            raise RideNotFound(f"Поездка {booking.ride_id} не найдена", ride_id=booking.ride_id)
        if ride.driver_id != driver_id:
            raise NotAuthorized("Действие доступно только водителю поездки", booking_id=booking.id)
        return ride

    async def _publish(self, event_type: str, booking: Booking) -> None:
        await self._event_bus.publish(DomainEvent(
            event_type=event_type,
            payload=booking.model_dump(mode="json"),
        ))
