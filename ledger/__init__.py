"""
Balance Ledger for the Mining Platform

This module provides:
- Per-user, per-currency wallets with available and locked funds
- A transaction journal with a strict status lifecycle
- Idempotent event recording
- Deposit and withdrawal flows
"""

from .db import Database
from .errors import (
    LedgerError,
    InvalidAmount,
    InsufficientFunds,
    OverUnlock,
    InvalidTransition,
    DuplicateEvent,
    NotFound,
    DependencyUnavailable,
    WalletInactive,
)
from .journal import TransactionJournal
from .models import (
    WalletStatus,
    TransactionType,
    TransactionStatus,
    Wallet,
    Transaction,
)
from .service import LedgerService

__all__ = [
    "Database",
    "LedgerError",
    "InvalidAmount",
    "InsufficientFunds",
    "OverUnlock",
    "InvalidTransition",
    "DuplicateEvent",
    "NotFound",
    "DependencyUnavailable",
    "WalletInactive",
    "TransactionJournal",
    "WalletStatus",
    "TransactionType",
    "TransactionStatus",
    "Wallet",
    "Transaction",
    "LedgerService",
]
