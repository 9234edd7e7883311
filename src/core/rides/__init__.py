# src/core/rides/__init__.py
"""
Поездки: снимок поездки из каталога и атомарный счётчик мест.
"""

from src.core.rides.catalog import RideCatalog
from src.core.rides.inventory import SeatInventory
from src.core.rides.models import RideSnapshot

__all__ = ["RideCatalog", "RideSnapshot", "SeatInventory"]
