# src/core/wallet/models.py
"""
Модели данных кошелька.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from src.common.constants import DepositIntentStatus, SettlementStatus, TransactionKind


class WalletBalance(BaseModel):
    """Баланс кошелька."""

    user_id: str
    available: int = Field(0, ge=0, description="Доступно, INR")
    reserved: int = Field(0, ge=0, description="Зарезервировано, INR")

    @property
    def total(self) -> int:
        return self.available + self.reserved


class WalletSummary(BaseModel):
    """Сводка по кошельку для клиента."""

    user_id: str
    available: int
    reserved: int
    currency: str = "INR"


class WalletTransaction(BaseModel):
    """Запись журнала кошелька. Не изменяется после записи."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    kind: TransactionKind
    amount: int = Field(..., gt=0)
    ref_booking_id: Optional[str] = None
    reference: Optional[str] = None
    created_at: Optional[datetime] = None


class TransactionPage(BaseModel):
    """Страница журнала, новые записи первыми."""

    items: list[WalletTransaction]
    page: int
    limit: int
    total: int


class DepositIntent(BaseModel):
    """Намерение пополнить кошелёк."""

    id: str
    user_id: str
    amount: int = Field(..., gt=0)
    method: str = "upi"
    status: DepositIntentStatus = DepositIntentStatus.CREATED
    payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class Settlement(BaseModel):
    """Заявка на вывод средств."""

    id: str
    user_id: str
    amount: int = Field(..., gt=0)
    status: SettlementStatus = SettlementStatus.REQUESTED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SettlementPage(BaseModel):
    """Страница заявок на вывод."""

    items: list[Settlement]
    page: int
    limit: int
    total: int
