# src/core/rides/models.py
"""
Модели данных поездки.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.common.constants import RideStatus, RideType


class RideSnapshot(BaseModel):
    """Снимок поездки, как его отдаёт каталог."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="UUID поездки")
    driver_id: str = Field(..., description="ID водителя")
    seats_total: int = Field(..., ge=0, description="Всего мест")
    seats_available: int = Field(..., ge=0, description="Свободно мест")
    price_per_seat: int = Field(..., ge=0, description="Цена за место, INR")
    ride_type: RideType = Field(..., description="Тип поездки")
    allow_auto_confirm: bool = Field(False, description="Бронирования подтверждаются без водителя")
    status: RideStatus = Field(RideStatus.PUBLISHED, description="Статус поездки")

    @model_validator(mode="after")
    def check_seats(self) -> "RideSnapshot":
        if self.seats_available > self.seats_total:
            raise ValueError("seats_available не может превышать seats_total")
        return self

    @property
    def is_published(self) -> bool:
        return self.status == RideStatus.PUBLISHED

    def fare_for(self, seats: int) -> int:
        """Стоимость указанного числа мест."""
        return self.price_per_seat * seats
