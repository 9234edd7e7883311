# src/core/wallet/service.py
"""
Сервис кошелька.
Сводка и журнал, пополнения через платёжный шлюз, заявки на вывод, аудит.
"""

from __future__ import annotations

from typing import Iterable, Optional

from src.common.constants import (
    DepositIntentStatus,
    SettlementStatus,
    TransactionKind,
    TypeMsg,
)
from src.common.exceptions import (
    DepositIntentNotFound,
    InvalidAmount,
    InvalidTransition,
    SettlementNotFound,
)
from src.common.ids import is_uuid, new_id
from src.common.logger import log_error, log_info, log_warning
from src.common.pagination import page_params
from src.core.wallet.ledger import LedgerStore
from src.core.wallet.models import (
    DepositIntent,
    Settlement,
    SettlementPage,
    TransactionPage,
    WalletBalance,
    WalletSummary,
    WalletTransaction,
)
from src.core.wallet.repository import DepositIntentRepository, SettlementRepository
from src.infra.database import DatabaseManager
from src.infra.event_bus import DomainEvent, EventBus, EventTypes


# Влияние транзакции на (available, reserved) на единицу суммы
_EFFECTS: dict[TransactionKind, tuple[int, int]] = {
    TransactionKind.DEPOSIT: (1, 0),
    TransactionKind.RESERVE: (-1, 1),
    TransactionKind.RELEASE: (1, -1),
    TransactionKind.CAPTURE: (0, -1),
    TransactionKind.REFUND: (1, 0),
}


def replay_balance(transactions: Iterable[WalletTransaction]) -> tuple[int, int]:
    """
    Восстанавливает (available, reserved) по журналу, начиная с нуля.
    """
    available = reserved = 0
    for tx in transactions:
        d_available, d_reserved = _EFFECTS[tx.kind]
        available += d_available * tx.amount
        reserved += d_reserved * tx.amount
    return available, reserved


def _payment_reference(payment_id: str) -> str:
    return f"payment:{payment_id}"


def _settlement_reference(settlement_id: str) -> str:
    return f"settlement:{settlement_id}"


class WalletService:
    """
    Сервис кошелька.
    Все изменения баланса проходят через LedgerStore.
    """

    def __init__(
        self,
        db: DatabaseManager,
        event_bus: EventBus,
        ledger: Optional[LedgerStore] = None,
    ) -> None:
        """
        Args:
            db: Менеджер базы данных
            event_bus: Шина событий
            ledger: Хранилище балансов (по умолчанию создаётся на том же db)
        """
        from src.config import settings

        self._db = db
        self._event_bus = event_bus
        self._ledger = ledger or LedgerStore(db)
        self._intents = DepositIntentRepository(db)
        self._settlements = SettlementRepository(db)
        self._config = settings.wallet

    @property
    def ledger(self) -> LedgerStore:
        return self._ledger

    # =========================================================================
    # СВОДКА И ЖУРНАЛ
    # =========================================================================

    async def get_summary(self, user_id: str) -> WalletSummary:
        """Баланс кошелька. Кошелёк при чтении не создаётся."""
        balance = await self._ledger.get_balance(user_id)
        return WalletSummary(
            user_id=user_id,
            available=balance.available,
            reserved=balance.reserved,
            currency=self._config.CURRENCY,
        )

    async def list_transactions(
        self,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> TransactionPage:
        """
        Журнал транзакций пользователя, новые первыми.

        Args:
            user_id: ID пользователя
            page: Номер страницы (с 1)
            limit: Размер страницы (ограничен TRANSACTIONS_MAX_PAGE_SIZE)
        """
        params = page_params(
            page,
            limit,
            self._config.TRANSACTIONS_PAGE_SIZE,
            self._config.TRANSACTIONS_MAX_PAGE_SIZE,
        )
        items = await self._ledger.list_transactions(user_id, params.limit, params.offset)
        total = await self._ledger.count_transactions(user_id)
        return TransactionPage(items=items, page=params.page, limit=params.limit, total=total)

    async def audit_wallet(self, user_id: str) -> bool:
        """
        Сверяет сохранённый баланс с восстановленным по журналу.

        Returns:
            True если баланс и журнал согласованы
        """
        transactions = await self._ledger.all_transactions(user_id)
        balance = await self._ledger.get_balance(user_id)
        replayed = replay_balance(transactions)

        if replayed != (balance.available, balance.reserved):
            await log_error(
                f"Кошелёк {user_id} расходится с журналом: "
                f"баланс=({balance.available}, {balance.reserved}), журнал={replayed}"
            )
            return False
        return True

    # =========================================================================
    # ПОПОЛНЕНИЕ
    # =========================================================================

    async def create_deposit_intent(self, user_id: str, amount: int, method: str = "upi") -> DepositIntent:
        """
        Создаёт намерение пополнения, которое оплачивается через шлюз.

        Raises:
            InvalidAmount: сумма меньше MIN_DEPOSIT_INTENT
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < self._config.MIN_DEPOSIT_INTENT:
            raise InvalidAmount(
                f"Минимальная сумма пополнения {self._config.MIN_DEPOSIT_INTENT}",
                amount=amount,
            )

        intent = await self._intents.create(
            DepositIntent(id=new_id(), user_id=user_id, amount=amount, method=method)
        )
        await log_info(f"Намерение пополнения {intent.id}: {user_id} на {amount}", type_msg=TypeMsg.INFO)
        return intent

    async def confirm_deposit(self, intent_id: str, payment_id: str) -> DepositIntent:
        """
        Отмечает намерение оплаченным и зачисляет сумму в одной транзакции БД.
        Повторное подтверждение оплаченного намерения ничего не меняет.

        Raises:
            DepositIntentNotFound: намерения нет
        """
        if not is_uuid(intent_id):
            raise DepositIntentNotFound(f"Намерение {intent_id} не найдено", intent_id=intent_id)

        async with self._db.transaction() as conn:
            intent = await self._intents.mark_paid(conn, intent_id, payment_id)
            if intent is None:
                existing = await self._intents.get(intent_id, conn=conn)
                if existing is None:
                    raise DepositIntentNotFound(f"Намерение {intent_id} не найдено", intent_id=intent_id)
                await log_info(f"Намерение {intent_id} уже оплачено", type_msg=TypeMsg.DEBUG)
                return existing

            balance = await self._ledger.credit(
                intent.user_id,
                intent.amount,
                reference=_payment_reference(payment_id),
                conn=conn,
            )

        await self._publish_credited(balance, intent.amount, payment_id)
        return intent

    async def handle_payment_confirmed(
        self,
        user_id: str,
        amount: int,
        payment_id: str,
        intent_id: Optional[str] = None,
    ) -> WalletBalance:
        """
        Обрабатывает подтверждение платежа от шлюза.
        Повторная доставка того же платежа не зачисляет деньги дважды.

        Raises:
            InvalidAmount: сумма платежа не совпадает с намерением
        """
        if intent_id:
            intent = await self._intents.get(intent_id) if is_uuid(intent_id) else None
            if intent is None:
                raise DepositIntentNotFound(f"Намерение {intent_id} не найдено", intent_id=intent_id)
            if intent.user_id != user_id or intent.amount != amount:
                await log_warning(
                    f"Платёж {payment_id} не совпадает с намерением {intent_id}: "
                    f"{user_id}/{amount} против {intent.user_id}/{intent.amount}"
                )
                raise InvalidAmount(
                    "Платёж не совпадает с намерением пополнения",
                    intent_id=intent_id,
                    payment_id=payment_id,
                )
            await self.confirm_deposit(intent_id, payment_id)
            return await self._ledger.get_balance(user_id)

        balance = await self._ledger.credit(user_id, amount, reference=_payment_reference(payment_id))
        await self._publish_credited(balance, amount, payment_id)
        return balance

    async def _publish_credited(self, balance: WalletBalance, amount: int, payment_id: str) -> None:
        await self._event_bus.publish(DomainEvent(
            event_type=EventTypes.WALLET_CREDITED,
            payload={
                "user_id": balance.user_id,
                "amount": amount,
                "payment_id": payment_id,
                "available": balance.available,
                "reserved": balance.reserved,
            },
        ))

    # =========================================================================
    # ВЫВОД СРЕДСТВ
    # =========================================================================

    async def request_settlement(self, user_id: str, amount: int) -> Settlement:
        """
        Создаёт заявку на вывод и резервирует сумму.

        Raises:
            InvalidAmount: сумма меньше MIN_SETTLEMENT
            InsufficientFunds: недостаточно доступных средств
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < self._config.MIN_SETTLEMENT:
            raise InvalidAmount(f"Минимальная сумма вывода {self._config.MIN_SETTLEMENT}", amount=amount)

        settlement_id = new_id()
        async with self._db.transaction() as conn:
            settlement = await self._settlements.create(
                conn,
                Settlement(id=settlement_id, user_id=user_id, amount=amount),
            )
            await self._ledger.reserve(
                user_id,
                amount,
                reference=_settlement_reference(settlement_id),
                conn=conn,
            )

        await log_info(f"Заявка на вывод {settlement_id}: {user_id} на {amount}", type_msg=TypeMsg.INFO)
        await self._event_bus.publish(DomainEvent(
            event_type=EventTypes.SETTLEMENT_REQUESTED,
            payload={"settlement_id": settlement_id, "user_id": user_id, "amount": amount},
        ))
        return settlement

    async def complete_settlement(self, settlement_id: str) -> Settlement:
        """Выплата проведена: requested → paid, резерв списывается."""
        return await self._transition_settlement(
            settlement_id, SettlementStatus.REQUESTED, SettlementStatus.PAID, TransactionKind.CAPTURE
        )

    async def reject_settlement(self, settlement_id: str) -> Settlement:
        """Выплата отклонена: requested → rejected, резерв возвращается."""
        return await self._transition_settlement(
            settlement_id, SettlementStatus.REQUESTED, SettlementStatus.REJECTED, TransactionKind.RELEASE
        )

    async def return_settlement(self, settlement_id: str) -> Settlement:
        """Проведённая выплата вернулась: paid → returned, сумма снова доступна."""
        return await self._transition_settlement(
            settlement_id, SettlementStatus.PAID, SettlementStatus.RETURNED, TransactionKind.REFUND
        )

    async def _transition_settlement(
        self,
        settlement_id: str,
        expected: SettlementStatus,
        new_status: SettlementStatus,
        kind: TransactionKind,
    ) -> Settlement:
        if not is_uuid(settlement_id):
            raise SettlementNotFound(f"Заявка {settlement_id} не найдена", settlement_id=settlement_id)

        async with self._db.transaction() as conn:
            settlement = await self._settlements.transition(conn, settlement_id, expected, new_status)
            if settlement is None:
                current = await self._settlements.get(settlement_id, conn=conn)
                if current is None:
                    raise SettlementNotFound(f"Заявка {settlement_id} не найдена", settlement_id=settlement_id)
                if current.status == new_status:
                    return current
                raise InvalidTransition(
                    f"Заявка {settlement_id}: переход {current.status.value} → {new_status.value} запрещён",
                    settlement_id=settlement_id,
                    status=current.status.value,
                )

            reference = _settlement_reference(settlement_id)
            if kind == TransactionKind.CAPTURE:
                await self._ledger.capture(settlement.user_id, settlement.amount, reference=reference, conn=conn)
            elif kind == TransactionKind.RELEASE:
                await self._ledger.release(settlement.user_id, settlement.amount, reference=reference, conn=conn)
            else:
                await self._ledger.refund(settlement.user_id, settlement.amount, reference=reference, conn=conn)

        await log_info(
            f"Заявка на вывод {settlement_id}: {expected.value} → {new_status.value}",
            type_msg=TypeMsg.INFO,
        )
        return settlement

    async def get_settlement(self, settlement_id: str) -> Settlement:
        settlement = await self._settlements.get(settlement_id) if is_uuid(settlement_id) else None
        if settlement is None:
            raise SettlementNotFound(f"Заявка {settlement_id} не найдена", settlement_id=settlement_id)
        return settlement

    async def list_settlements(
        self,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> SettlementPage:
        params = page_params(
            page,
            limit,
            self._config.TRANSACTIONS_PAGE_SIZE,
            self._config.TRANSACTIONS_MAX_PAGE_SIZE,
        )
        items = await self._settlements.list_for_user(user_id, params.limit, params.offset)
        total = await self._settlements.count_for_user(user_id)
        return SettlementPage(items=items, page=params.page, limit=params.limit, total=total)
