# src/worker/payments.py
"""
Воркер подтверждённых платежей.
Зачисляет оплаченные пополнения в кошелёк.
"""

from __future__ import annotations

from typing import List, Optional

from src.common.constants import TypeMsg
from src.common.exceptions import InvalidAmount
from src.common.logger import log_info
from src.core.wallet.service import WalletService
from src.infra.event_bus import DomainEvent, EventTypes
from src.worker.base import BaseWorker


class PaymentConfirmedWorker(BaseWorker):
    """
    Подписывается на payment.confirmed.

    Payload события:
        user_id: ID пользователя
        amount: Сумма, INR
        payment_id: ID платежа в шлюзе
        intent_id: ID намерения пополнения (опционально)
    """

    def __init__(self, *args, wallet: Optional[WalletService] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._wallet = wallet or WalletService(self.db, self.event_bus)

    @property
    def name(self) -> str:
        return "PaymentConfirmedWorker"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.PAYMENT_CONFIRMED]

    async def handle_event(self, event: DomainEvent) -> None:
        payload = event.payload
        user_id = payload.get("user_id")
        amount = payload.get("amount")
        payment_id = payload.get("payment_id")
        intent_id = payload.get("intent_id")

        if not user_id or not payment_id or not isinstance(amount, int) or isinstance(amount, bool):
            raise InvalidAmount("Неполные данные платежа", event_id=event.event_id)

        balance = await self._wallet.handle_payment_confirmed(
            user_id=str(user_id),
            amount=amount,
            payment_id=str(payment_id),
            intent_id=str(intent_id) if intent_id else None,
        )
        await log_info(
            f"Платёж {payment_id} зачислен пользователю {user_id}: available={balance.available}",
            type_msg=TypeMsg.INFO,
        )
