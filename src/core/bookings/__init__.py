# src/core/bookings/__init__.py
"""
Бронирования: модели, машина состояний, оркестратор.
"""

from src.core.bookings.compensation import Compensator
from src.core.bookings.models import Booking, BookingPage, Compensation
from src.core.bookings.orchestrator import EscrowOrchestrator
from src.core.bookings.repository import BookingRepository, CompensationRepository

__all__ = [
    "Booking",
    "BookingPage",
    "BookingRepository",
    "Compensation",
    "CompensationRepository",
    "Compensator",
    "EscrowOrchestrator",
]
