# src/core/__init__.py
"""
Доменный слой (Core Domain).
Бронирования, поездки, кошелёк и расчёт депозита.
"""

from src.core.bookings import Booking, EscrowOrchestrator
from src.core.escrow import compute_deposit
from src.core.rides import RideCatalog, RideSnapshot, SeatInventory
from src.core.wallet import LedgerStore, WalletService

__all__ = [
    "Booking",
    "EscrowOrchestrator",
    "LedgerStore",
    "RideCatalog",
    "RideSnapshot",
    "SeatInventory",
    "WalletService",
    "compute_deposit",
]
