"""
FinBank Ledger — accounts, cards, transactions and investment settlement

Architecture:
- LedgerStore: per-owner JSON documents, single writer per owner, atomic commit
- LedgerEngine: every balance mutation (postings, transfers, buy, sell)
- LedgerError: error taxonomy mapped to HTTP responses at the API boundary
"""

from ledger.models import (
    TRACKING_ACCOUNT_NAME,
    Account,
    AssetType,
    Card,
    CardKind,
    CardStatus,
    Investment,
    LedgerState,
    PositionState,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from ledger.errors import (
    CardFrozen,
    InsufficientFunds,
    InvalidInput,
    LedgerError,
    LimitExceeded,
    NotFound,
    Unauthorized,
)
from ledger.store import LedgerStore
from ledger.core import LedgerEngine

__all__ = [
    "TRACKING_ACCOUNT_NAME",
    "Account",
    "AssetType",
    "Card",
    "CardKind",
    "CardStatus",
    "Investment",
    "LedgerState",
    "PositionState",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "LedgerError",
    "Unauthorized",
    "InvalidInput",
    "InsufficientFunds",
    "CardFrozen",
    "LimitExceeded",
    "NotFound",
    "LedgerStore",
    "LedgerEngine",
]
