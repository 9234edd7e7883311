# src/core/bookings/state_machine.py
"""
Машина состояний бронирования.

    requested ──► confirmed ──► cancelled
        │
        ├──────► rejected
        └──────► cancelled

rejected и cancelled конечные.
"""

from __future__ import annotations

from src.common.constants import BookingStatus
from src.common.exceptions import InvalidTransition


TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.REQUESTED: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED}),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(booking_id: str, current: BookingStatus, target: BookingStatus) -> None:
    """
    Raises:
        InvalidTransition: переход запрещён
    """
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Бронирование {booking_id}: переход {current.value} → {target.value} запрещён",
            booking_id=booking_id,
            status=current.value,
            target=target.value,
        )
