# src/core/wallet/__init__.py
"""
Кошелёк пользователя: баланс, журнал транзакций, пополнения и выводы.
"""

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
from src.core.wallet.service import WalletService, replay_balance

__all__ = [
    "DepositIntent",
    "LedgerStore",
    "Settlement",
    "SettlementPage",
    "TransactionPage",
    "WalletBalance",
    "WalletService",
    "WalletSummary",
    "WalletTransaction",
    "replay_balance",
]
