# src/core/wallet/repository.py
"""
Репозитории пополнений и заявок на вывод.
Смена статуса выполняется условным UPDATE по ожидаемому статусу.
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Connection

from src.common.constants import DepositIntentStatus, SettlementStatus
from src.core.wallet.models import DepositIntent, Settlement
from src.infra.database import DatabaseManager


class DepositIntentRepository:
    """Репозиторий намерений пополнения."""

    _COLUMNS = "id, user_id, amount, method, status, payment_id, created_at, paid_at"

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def create(self, intent: DepositIntent) -> DepositIntent:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO wallet_schema.deposit_intents (id, user_id, amount, method, status)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING {self._COLUMNS}
            """,
            intent.id,
            intent.user_id,
            intent.amount,
            intent.method,
            intent.status.value,
        )
        return self._row_to_intent(row)

    async def get(self, intent_id: str, conn: Optional[Connection] = None) -> Optional[DepositIntent]:
        query = f"SELECT {self._COLUMNS} FROM wallet_schema.deposit_intents WHERE id = $1"
        row = await (conn.fetchrow(query, intent_id) if conn is not None else self._db.fetchrow(query, intent_id))
        return self._row_to_intent(row) if row is not None else None

    async def mark_paid(self, conn: Connection, intent_id: str, payment_id: str) -> Optional[DepositIntent]:
        """
        Переводит намерение created → paid.

        Returns:
            Обновлённое намерение или None, если оно не в статусе created
        """
        row = await conn.fetchrow(
            f"""
            UPDATE wallet_schema.deposit_intents
            SET status = $3, payment_id = $4, paid_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING {self._COLUMNS}
            """,
            intent_id,
            DepositIntentStatus.CREATED.value,
            DepositIntentStatus.PAID.value,
            payment_id,
        )
        return self._row_to_intent(row) if row is not None else None

    @staticmethod
    def _row_to_intent(row) -> DepositIntent:
        return DepositIntent(
            id=str(row["id"]),
            user_id=row["user_id"],
            amount=row["amount"],
            method=row["method"],
            status=DepositIntentStatus(row["status"]),
            payment_id=row["payment_id"],
            created_at=row["created_at"],
            paid_at=row["paid_at"],
        )


class SettlementRepository:
    """Репозиторий заявок на вывод средств."""

    _COLUMNS = "id, user_id, amount, status, created_at, updated_at"

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def create(self, conn: Connection, settlement: Settlement) -> Settlement:
        row = await conn.fetchrow(
            f"""
            INSERT INTO wallet_schema.settlements (id, user_id, amount, status)
            VALUES ($1, $2, $3, $4)
            RETURNING {self._COLUMNS}
            """,
            settlement.id,
            settlement.user_id,
            settlement.amount,
            settlement.status.value,
        )
        return self._row_to_settlement(row)

    async def get(self, settlement_id: str, conn: Optional[Connection] = None) -> Optional[Settlement]:
        query = f"SELECT {self._COLUMNS} FROM wallet_schema.settlements WHERE id = $1"
        row = await (
            conn.fetchrow(query, settlement_id) if conn is not None else self._db.fetchrow(query, settlement_id)
        )
        return self._row_to_settlement(row) if row is not None else None

    async def transition(
        self,
        conn: Connection,
        settlement_id: str,
        expected: SettlementStatus,
        new_status: SettlementStatus,
    ) -> Optional[Settlement]:
        """
        Меняет статус, только если текущий равен expected.

        Returns:
            Обновлённая заявка или None
        """
        row = await conn.fetchrow(
            f"""
            UPDATE wallet_schema.settlements
            SET status = $3, updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING {self._COLUMNS}
            """,
            settlement_id,
            expected.value,
            new_status.value,
        )
        return self._row_to_settlement(row) if row is not None else None

    async def list_for_user(self, user_id: str, limit: int, offset: int) -> list[Settlement]:
        rows = await self._db.fetch(
            f"""
            SELECT {self._COLUMNS}
            FROM wallet_schema.settlements
            WHERE user_id = $1
            ORDER BY created_at DESC, id
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        return [self._row_to_settlement(row) for row in rows]

    async def count_for_user(self, user_id: str) -> int:
        return await self._db.fetchval(
            "SELECT COUNT(*) FROM wallet_schema.settlements WHERE user_id = $1",
            user_id,
        )

    @staticmethod
    def _row_to_settlement(row) -> Settlement:
        return Settlement(
            id=str(row["id"]),
            user_id=row["user_id"],
            amount=row["amount"],
            status=SettlementStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
