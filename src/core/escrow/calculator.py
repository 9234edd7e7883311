# src/core/escrow/calculator.py
"""
Калькулятор депозита.
Чистые функции без ввода-вывода.
"""

from __future__ import annotations

from src.common.constants import DEPOSIT_PERCENT_BY_RIDE_TYPE, RideType
from src.common.exceptions import InvalidAmount


def deposit_percent(ride_type: RideType | str) -> int:
    """
    Процент депозита для типа поездки.

    Raises:
        ValueError: неизвестный тип поездки
    """
    return DEPOSIT_PERCENT_BY_RIDE_TYPE[RideType(ride_type)]


def compute_deposit(ride_type: RideType | str, fare_total: int) -> int:
    """
    Депозит, который резервируется в кошельке пассажира.

    Округление вверх до целой рупии: ceil(fare_total * percent / 100).

    Args:
        ride_type: Тип поездки
        fare_total: Стоимость бронирования (цена места * количество мест)

    Returns:
        Сумма депозита, INR
    """
    if fare_total < 0:
        raise InvalidAmount("Стоимость не может быть отрицательной", fare_total=fare_total)

    percent = deposit_percent(ride_type)
    return -(-fare_total * percent // 100)
