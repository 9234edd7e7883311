# src/core/wallet/ledger.py
"""
Хранилище балансов и журнала транзакций кошелька.

Каждая операция в одной транзакции БД:
1. Записывает строку журнала (повтор с тем же ключом ничего не делает)
2. Условно меняет баланс (UPDATE ... WHERE хватает средств)
Если баланс изменить нельзя, транзакция откатывается вместе с записью журнала.
Возврат и списание по бронированию без его резерва ничего не делают.
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Connection

from src.common.constants import TransactionKind, TypeMsg
from src.common.exceptions import InsufficientFunds, InvalidAmount, InvalidState
from src.common.ids import new_id
from src.common.logger import log_info
from src.core.wallet.models import WalletBalance, WalletTransaction
from src.infra.database import DatabaseManager, retry_on_transient_error


# =============================================================================
# SQL ИЗМЕНЕНИЯ БАЛАНСА ПО ТИПУ ТРАНЗАКЦИИ
# =============================================================================

_CREDIT_SQL = """
    INSERT INTO wallet_schema.wallets (user_id, available, reserved)
    VALUES ($1, $2, 0)
    ON CONFLICT (user_id) DO UPDATE
    SET available = wallet_schema.wallets.available + EXCLUDED.available,
        updated_at = NOW()
    RETURNING available, reserved
"""

_BALANCE_SQL: dict[TransactionKind, str] = {
    TransactionKind.DEPOSIT: _CREDIT_SQL,
    TransactionKind.REFUND: _CREDIT_SQL,
    TransactionKind.RESERVE: """
        UPDATE wallet_schema.wallets
        SET available = available - $2, reserved = reserved + $2, updated_at = NOW()
        WHERE user_id = $1 AND available >= $2
        RETURNING available, reserved
    """,
    TransactionKind.RELEASE: """
        UPDATE wallet_schema.wallets
        SET available = available + $2, reserved = reserved - $2, updated_at = NOW()
        WHERE user_id = $1 AND reserved >= $2
        RETURNING available, reserved
    """,
    TransactionKind.CAPTURE: """
        UPDATE wallet_schema.wallets
        SET reserved = reserved - $2, updated_at = NOW()
        WHERE user_id = $1 AND reserved >= $2
        RETURNING available, reserved
    """,
}

_INSERT_SQL = """
    INSERT INTO wallet_schema.transactions
        (id, user_id, kind, amount, ref_booking_id, reference)
    VALUES ($1, $2, $3, $4, $5, $6)
    ON CONFLICT DO NOTHING
    RETURNING id
"""

# Возврат и списание по бронированию возможны только после его резерва
_GUARDED_INSERT_SQL = """
    INSERT INTO wallet_schema.transactions
        (id, user_id, kind, amount, ref_booking_id, reference)
    SELECT $1::uuid, $2::text, $3::text, $4::bigint, $5::uuid, $6::text
    WHERE EXISTS (
        SELECT 1 FROM wallet_schema.transactions
        WHERE ref_booking_id = $5::uuid AND kind = 'reserve'
    )
    ON CONFLICT DO NOTHING
    RETURNING id
"""

_NEEDS_BOOKING_RESERVE = frozenset({TransactionKind.RELEASE, TransactionKind.CAPTURE})

_TRANSACTION_COLUMNS = "id, user_id, kind, amount, ref_booking_id, reference, created_at"


class LedgerStore:
    """
    Балансы кошельков и неизменяемый журнал транзакций.

    Ключи идемпотентности:
    - ref_booking_id: не больше одной транзакции каждого типа на бронирование
    - reference: не больше одной транзакции каждого типа на внешний ключ
      (платёж, заявка на вывод)
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # =========================================================================
    # ИЗМЕНЕНИЕ БАЛАНСА
    # =========================================================================

    async def reserve(
        self,
        user_id: str,
        amount: int,
        *,
        ref_booking_id: Optional[str] = None,
        reference: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> WalletBalance:
        """
        Переводит сумму из available в reserved.

        Raises:
            InsufficientFunds: available < amount
        """
        return await self._mutate(TransactionKind.RESERVE, user_id, amount, ref_booking_id, reference, conn)

    async def release(
        self,
        user_id: str,
        amount: int,
        *,
        ref_booking_id: Optional[str] = None,
        reference: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> WalletBalance:
        """
        Возвращает сумму из reserved в available.

        Raises:
            InvalidState: reserved < amount
        """
        return await self._mutate(TransactionKind.RELEASE, user_id, amount, ref_booking_id, reference, conn)

    async def capture(
        self,
        user_id: str,
        amount: int,
        *,
        ref_booking_id: Optional[str] = None,
        reference: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> WalletBalance:
        """
        Окончательно списывает сумму из reserved.

        Raises:
            InvalidState: reserved < amount
        """
        return await self._mutate(TransactionKind.CAPTURE, user_id, amount, ref_booking_id, reference, conn)

    async def credit(
        self,
        user_id: str,
        amount: int,
        *,
        reference: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> WalletBalance:
        """Зачисляет подтверждённый платёж в available."""
        return await self._mutate(TransactionKind.DEPOSIT, user_id, amount, None, reference, conn)

    async def refund(
        self,
        user_id: str,
        amount: int,
        *,
        reference: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> WalletBalance:
        """Возвращает в available деньги, ранее выведенные из кошелька."""
        return await self._mutate(TransactionKind.REFUND, user_id, amount, None, reference, conn)

    async def _mutate(
        self,
        kind: TransactionKind,
        user_id: str,
        amount: int,
        ref_booking_id: Optional[str],
        reference: Optional[str],
        conn: Optional[Connection],
    ) -> WalletBalance:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmount("Сумма должна быть положительным целым", amount=amount)

        if conn is not None:
            # Внутри чужой транзакции повторять бессмысленно
            return await self._apply(kind, user_id, amount, ref_booking_id, reference, conn)
        return await self._apply_standalone(kind, user_id, amount, ref_booking_id, reference)

    @retry_on_transient_error()
    async def _apply_standalone(
        self,
        kind: TransactionKind,
        user_id: str,
        amount: int,
        ref_booking_id: Optional[str],
        reference: Optional[str],
    ) -> WalletBalance:
        return await self._apply(kind, user_id, amount, ref_booking_id, reference, None)

    async def _apply(
        self,
        kind: TransactionKind,
        user_id: str,
        amount: int,
        ref_booking_id: Optional[str],
        reference: Optional[str],
        conn: Optional[Connection],
    ) -> WalletBalance:
        transaction_id = new_id()

        async with self._db.transaction(conn) as tx:
            guarded = ref_booking_id is not None and kind in _NEEDS_BOOKING_RESERVE
            recorded = await tx.fetchval(
                _GUARDED_INSERT_SQL if guarded else _INSERT_SQL,
                transaction_id,
                user_id,
                kind.value,
                amount,
                ref_booking_id,
                reference,
            )

            if recorded is None:
                await log_info(
                    f"Кошелёк {user_id}: {kind.value} {amount} "
                    f"(booking={ref_booking_id}, ref={reference}) уже проведён или нет резерва",
                    type_msg=TypeMsg.DEBUG,
                )
                return await self._get_balance(tx, user_id)

            row = await tx.fetchrow(_BALANCE_SQL[kind], user_id, amount)
            if row is None:
                # Исключение откатывает и запись журнала
                balance = await self._get_balance(tx, user_id)
                raise self._rejection(kind, balance, amount)

        await log_info(
            f"Кошелёк {user_id}: {kind.value} {amount} → "
            f"available={row['available']}, reserved={row['reserved']}",
            type_msg=TypeMsg.INFO,
        )
        return WalletBalance(user_id=user_id, available=row["available"], reserved=row["reserved"])

    @staticmethod
    def _rejection(kind: TransactionKind, balance: WalletBalance, amount: int) -> Exception:
        if kind == TransactionKind.RESERVE:
            return InsufficientFunds(
                f"Недостаточно средств: доступно {balance.available}, требуется {amount}",
                user_id=balance.user_id,
                available=balance.available,
                required=amount,
            )
        return InvalidState(
            f"Недостаточно зарезервированных средств: {balance.reserved}, требуется {amount}",
            user_id=balance.user_id,
            reserved=balance.reserved,
            required=amount,
        )

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_balance(self, user_id: str, conn: Optional[Connection] = None) -> WalletBalance:
        """Баланс пользователя (нули, если кошелька ещё нет)."""
        if conn is not None:
            return await self._get_balance(conn, user_id)
        async with self._db.acquire() as acquired:
            return await self._get_balance(acquired, user_id)

    @staticmethod
    async def _get_balance(conn: Connection, user_id: str) -> WalletBalance:
        row = await conn.fetchrow(
            "SELECT available, reserved FROM wallet_schema.wallets WHERE user_id = $1",
            user_id,
        )
        if row is None:
            return WalletBalance(user_id=user_id)
        return WalletBalance(user_id=user_id, available=row["available"], reserved=row["reserved"])

    async def list_transactions(self, user_id: str, limit: int, offset: int) -> list[WalletTransaction]:
        """Страница журнала, новые записи первыми."""
        rows = await self._db.fetch(
            f"""
            SELECT {_TRANSACTION_COLUMNS}
            FROM wallet_schema.transactions
            WHERE user_id = $1
            ORDER BY seq DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        return [self._row_to_transaction(row) for row in rows]

    async def count_transactions(self, user_id: str) -> int:
        return await self._db.fetchval(
            "SELECT COUNT(*) FROM wallet_schema.transactions WHERE user_id = $1",
            user_id,
        )

    async def all_transactions(self, user_id: str) -> list[WalletTransaction]:
        """Весь журнал пользователя в порядке записи."""
        rows = await self._db.fetch(
            f"""
            SELECT {_TRANSACTION_COLUMNS}
            FROM wallet_schema.transactions
            WHERE user_id = $1
            ORDER BY seq
            """,
            user_id,
        )
        return [self._row_to_transaction(row) for row in rows]

    @staticmethod
    def _row_to_transaction(row) -> WalletTransaction:
        ref_booking_id = row["ref_booking_id"]
        return WalletTransaction(
            id=str(row["id"]),
            user_id=row["user_id"],
            kind=TransactionKind(row["kind"]),
            amount=row["amount"],
            ref_booking_id=str(ref_booking_id) if ref_booking_id is not None else None,
            reference=row["reference"],
            created_at=row["created_at"],
        )
