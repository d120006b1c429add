"""
FinBank Ledger — Data Models

Records persisted per owner:
1. Account (cash, savings, the synthetic "Investment Portfolio" tracker)
2. Card (spends against a linked account, never holds a balance)
3. Transaction (signed amount: + income, - expense)
4. Investment (an open position at a recorded cost basis)

All amounts are USD regardless of the currency shown to the user.
"""

import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


TRACKING_ACCOUNT_NAME = "Investment Portfolio"


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"


class CardStatus(str, Enum):
    ACTIVE = "Active"
    FROZEN = "Frozen"


class CardKind(str, Enum):
    VIRTUAL = "virtual"
    PHYSICAL = "physical"


class AssetType(str, Enum):
    STOCK = "Stock"
    ETF = "ETF"
    CRYPTO = "Crypto"


class PositionState(str, Enum):
    """Lifecycle of a position. CLOSED positions are deleted from the ledger."""
    OPEN = "Open"
    PARTIALLY_REDUCED = "PartiallyReduced"
    CLOSED = "Closed"


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(6)}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value: float) -> float:
    """Round to whole cents, half-up."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


# ─────────────────────────────────────────────
# Records
# ─────────────────────────────────────────────

class Account(BaseModel):
    id: str = Field(default_factory=lambda: new_id("acc"))
    user_id: str
    name: str
    type: str  # free text: Checking, Savings, Investment, Crypto
    balance: float = 0.0
    created_at: datetime = Field(default_factory=utc_now)


class Card(BaseModel):
    id: str = Field(default_factory=lambda: new_id("crd"))
    user_id: str
    account_id: str
    kind: CardKind = CardKind.VIRTUAL
    brand: str = "VISA"
    card_number: str
    expiry: str
    monthly_limit: float
    status: CardStatus = CardStatus.ACTIVE
    color: str = "blue"
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def last4(self) -> str:
        return self.card_number[-4:]


class Transaction(BaseModel):
    id: str = Field(default_factory=lambda: new_id("txn"))
    user_id: str
    account_id: str
    card_id: Optional[str] = None
    name: str
    amount: float  # signed
    type: TransactionType
    category: str = "Other"
    status: TransactionStatus = TransactionStatus.COMPLETED
    payment_method: Optional[str] = None
    date: datetime = Field(default_factory=utc_now)

    @property
    def magnitude(self) -> float:
        return abs(self.amount)


class Investment(BaseModel):
    id: str = Field(default_factory=lambda: new_id("inv"))
    user_id: str
    symbol: str
    name: str
    type: AssetType
    quantity: float
    price_per_share: float  # cost basis per unit, USD
    avg_cost: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def cost_basis(self) -> float:
        return (self.avg_cost or self.price_per_share) * self.quantity


class LedgerState(BaseModel):
    """Everything one owner has. Loaded, mutated and committed as a unit."""
    user_id: str
    accounts: List[Account] = Field(default_factory=list)
    cards: List[Card] = Field(default_factory=list)
    transactions: List[Transaction] = Field(default_factory=list)
    investments: List[Investment] = Field(default_factory=list)

    def find_account(self, account_id: Optional[str]) -> Optional[Account]:
        return next((a for a in self.accounts if a.id == account_id), None)

    def find_card(self, card_id: Optional[str]) -> Optional[Card]:
        return next((c for c in self.cards if c.id == card_id), None)

    def find_investment(self, investment_id: Optional[str]) -> Optional[Investment]:
        return next((i for i in self.investments if i.id == investment_id), None)

    def tracking_account(self) -> Optional[Account]:
        return next((a for a in self.accounts if a.name == TRACKING_ACCOUNT_NAME), None)
