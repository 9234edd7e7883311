# src/core/escrow/__init__.py
"""
Расчёт депозита бронирования.
"""

from src.core.escrow.calculator import compute_deposit, deposit_percent

__all__ = ["compute_deposit", "deposit_percent"]
