# src/common/exceptions.py
"""
Типизированные ошибки ядра бронирования и кошелька.

Клиентские ошибки (RideNotFound, RideNotPublished, SelfBookingForbidden),
бизнес-отказы (InsufficientSeats, InsufficientFunds) и ошибки гонок
(InvalidTransition) возвращаются вызывающему как есть и автоматически
не повторяются. CompensationFailure означает рассинхронизацию кошелька
и мест и требует разбора.
"""

from __future__ import annotations

from typing import Any


class EscrowError(Exception):
    """Базовая ошибка ядра."""

    code: str = "escrow_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        self.message = message or self.__class__.__name__
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Представление ошибки для транспортного слоя."""
        return {"error": self.code, "message": self.message, **self.details}


# =============================================================================
# ОШИБКИ ВВОДА КЛИЕНТА
# =============================================================================

class RideNotFound(EscrowError):
    code = "ride_not_found"


class RideNotPublished(EscrowError):
    code = "ride_not_published"


class SelfBookingForbidden(EscrowError):
    code = "self_booking_forbidden"


class BookingNotFound(EscrowError):
    code = "booking_not_found"


class NotAuthorized(EscrowError):
    code = "not_authorized"


class InvalidAmount(EscrowError):
    code = "invalid_amount"


class DuplicateRequest(EscrowError):
    code = "duplicate_request"


class DepositIntentNotFound(EscrowError):
    code = "deposit_intent_not_found"


class SettlementNotFound(EscrowError):
    code = "settlement_not_found"


# =============================================================================
# БИЗНЕС-ОТКАЗЫ
# =============================================================================

class InsufficientSeats(EscrowError):
    code = "insufficient_seats"


class InsufficientFunds(EscrowError):
    code = "insufficient_funds"


# =============================================================================
# ОШИБКИ СОСТОЯНИЯ
# =============================================================================

class InvalidTransition(EscrowError):
    code = "invalid_transition"


class InvalidState(EscrowError):
    code = "invalid_state"


class CompensationFailure(EscrowError):
    """Компенсация не выполнена после всех повторов. Фатально до разбора."""

    code = "compensation_failure"
