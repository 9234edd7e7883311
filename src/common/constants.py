# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RideType(str, Enum):
    """Типы поездок."""
    PRIVATE_POOL = "private_pool"
    COMMERCIAL_POOL = "commercial_pool"
    COMMERCIAL_FULL = "commercial_full"


class RideStatus(str, Enum):
    """Статусы поездки."""
    PUBLISHED = "published"
    CLOSED = "closed"


class BookingStatus(str, Enum):
    """Статусы бронирования."""
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class TransactionKind(str, Enum):
    """Типы транзакций кошелька."""
    DEPOSIT = "deposit"
    RESERVE = "reserve"
    RELEASE = "release"
    CAPTURE = "capture"
    REFUND = "refund"


class DepositIntentStatus(str, Enum):
    """Статусы намерения пополнения."""
    CREATED = "created"
    PAID = "paid"


class SettlementStatus(str, Enum):
    """Статусы заявки на вывод средств."""
    REQUESTED = "requested"
    PAID = "paid"
    REJECTED = "rejected"
    RETURNED = "returned"


class CompensationAction(str, Enum):
    """Компенсирующие действия."""
    RELEASE_SEATS = "release_seats"
    RELEASE_DEPOSIT = "release_deposit"


class CompensationStatus(str, Enum):
    """Статусы записи о компенсации."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


# Процент депозита от стоимости поездки по типу поездки
DEPOSIT_PERCENT_BY_RIDE_TYPE: dict[RideType, int] = {
    RideType.PRIVATE_POOL: 10,
    RideType.COMMERCIAL_POOL: 30,
    RideType.COMMERCIAL_FULL: 30,
}
