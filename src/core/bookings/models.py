# src/core/bookings/models.py
"""
Модели данных бронирований.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from src.common.constants import BookingStatus, CompensationAction, CompensationStatus
from src.common.ids import new_id


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Booking(BaseModel):
    """Модель бронирования."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id, description="UUID бронирования")
    ride_id: str = Field(..., description="UUID поездки")
    rider_id: str = Field(..., description="ID пассажира")
    seats: int = Field(..., ge=1, description="Количество мест")
    fare_total: int = Field(..., ge=0, description="Стоимость, INR")
    deposit: int = Field(..., ge=0, description="Депозит, INR")
    status: BookingStatus = Field(BookingStatus.REQUESTED, description="Статус")
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class BookingPage(BaseModel):
    """Страница бронирований."""

    items: list[Booking]
    page: int
    limit: int
    total: int


class Compensation(BaseModel):
    """
    Компенсирующее действие, которое не удалось выполнить сразу.
    Выполняется повторно воркером компенсаций.
    """

    id: str = Field(default_factory=new_id)
    booking_id: str
    action: CompensationAction
    user_id: Optional[str] = None
    ride_id: Optional[str] = None
    amount: int = 0
    seats: int = 0
    status: CompensationStatus = CompensationStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
