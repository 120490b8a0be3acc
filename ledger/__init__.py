"""
Balance Ledger System

This module provides:
- Per-user balances with an append-only, immutable ledger
- Recharge, consume, refund, admin adjust, reward and freeze/unfreeze flows
- Recharge promotion resolution applied in the same unit as the ledger write
- Per-user serialization with bounded lock waits and version checks
- Advisory alert thresholds on committed transactions
"""

from .models import (
    EntryType,
    AccountStatus,
    OperatorType,
    TransactionState,
    Balance,
    LedgerEntry,
    TransactionRequest,
    TransactionResult,
    AlertEvent,
)
from .config import BalanceConfig, BalanceConfigStore
from .store import LedgerStore
from .monitor import ThresholdMonitor
from .service import LedgerService

__all__ = [
    "EntryType",
    "AccountStatus",
    "OperatorType",
    "TransactionState",
    "Balance",
    "LedgerEntry",
    "TransactionRequest",
    "TransactionResult",
    "AlertEvent",
    "BalanceConfig",
    "BalanceConfigStore",
    "LedgerStore",
    "ThresholdMonitor",
    "LedgerService",
]
