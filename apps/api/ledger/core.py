"""
FinBank Ledger — Core engine

LedgerEngine is the single entry point for anything that moves money:
1. Posting income / expenses, with card freeze and monthly-limit checks
2. Wire and internal transfers
3. Investment buy and sell settlement against the tracking account

Each compound operation runs inside one `LedgerStore.transaction`, so the
debit, the credit and the position change commit together or not at all.
Quote lookups happen before the transaction is opened so a slow upstream
never holds the owner's lock.
"""

import logging
import math
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from fx import RateService
from ledger.errors import (
    CardFrozen,
    InsufficientFunds,
    InvalidInput,
    LimitExceeded,
    NotFound,
)
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
    TransactionType,
    to_money,
    utc_now,
)
from ledger.store import LedgerStore
from market_data import PriceQuote, QuoteProvider


logger = logging.getLogger(__name__)


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def month_start(now: datetime) -> datetime:
    now = as_utc(now)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def card_spending(state: LedgerState, since: datetime) -> Dict[str, float]:
    """Total posted against each card on or after `since`."""
    totals: Dict[str, float] = {c.id: 0.0 for c in state.cards}
    for t in state.transactions:
        if t.card_id and t.card_id in totals and as_utc(t.date) >= since:
            totals[t.card_id] += t.magnitude
    return totals


@dataclass
class CardView:
    card: Card
    account_name: str
    spent: float
    remaining: float


@dataclass
class PositionValuation:
    investment: Investment
    current_price: float
    current_value: float
    cost_basis: float
    gain_loss: float
    gain_loss_percent: float
    daily_change_percent: float
    quote: PriceQuote


@dataclass
class SellResult:
    symbol: str
    quantity_sold: float
    price_per_share: float
    payout: float
    cost_basis_removed: float
    remaining_quantity: float
    position_state: PositionState
    quote: PriceQuote


class LedgerEngine:
    def __init__(
        self,
        store: LedgerStore,
        quotes: QuoteProvider,
        rates: Optional[RateService] = None,
        clock: Callable[[], datetime] = utc_now,
        spending_cache_size: int = 1024,
    ):
        self.store = store
        self.quotes = quotes
        self.rates = rates or quotes.rates
        self.clock = clock
        # user_id -> (revision, month start, spent per card), least recently used first
        self._spending_cache: "OrderedDict[str, Tuple[int, datetime, Dict[str, float]]]" = OrderedDict()
        self._cache_lock = threading.Lock()
        self.spending_cache_size = spending_cache_size

    # ----------------------------
    # Accounts
    # ----------------------------
    def list_accounts(self, user_id: str) -> List[Account]:
        return self.store.read(user_id).accounts

    def create_account(self, user_id: str, name: str, account_type: str, balance: float = 0.0) -> Account:
        if not name or not name.strip():
            raise InvalidInput("Account name is required")
        account = Account(user_id=user_id, name=name.strip(), type=account_type, balance=to_money(balance))
        with self.store.transaction(user_id) as state:
            state.accounts.append(account)
        return account

    def reset_financial_data(self, user_id: str) -> None:
        with self.store.transaction(user_id) as state:
            state.accounts.clear()
            state.transactions.clear()
            state.investments.clear()
        logger.info("Financial data reset for %s", user_id)

    # ----------------------------
    # Cards
    # ----------------------------
    def _spending_this_month(self, user_id: str) -> Tuple[LedgerState, Dict[str, float]]:
        since = month_start(self.clock())
        # snapshot and revision must come from the same commit
        with self.store.lock_for(user_id):
            state = self.store.read(user_id)
            revision = self.store.revision(user_id)
        with self._cache_lock:
            cached = self._spending_cache.get(user_id)
            if cached and cached[0] == revision and cached[1] == since:
                self._spending_cache.move_to_end(user_id)
                return state, cached[2]
        totals = card_spending(state, since)
        with self._cache_lock:
            self._spending_cache[user_id] = (revision, since, totals)
            self._spending_cache.move_to_end(user_id)
            while len(self._spending_cache) > self.spending_cache_size:
                self._spending_cache.popitem(last=False)
        return state, totals

    def card_spent_this_month(self, user_id: str, card_id: str) -> float:
        _, totals = self._spending_this_month(user_id)
        if card_id not in totals:
            raise NotFound("Card not found")
        return totals[card_id]

    def list_cards(self, user_id: str) -> List[CardView]:
        state, totals = self._spending_this_month(user_id)
        views = []
        for card in sorted(state.cards, key=lambda c: c.created_at, reverse=True):
            account = state.find_account(card.account_id)
            spent = totals.get(card.id, 0.0)
            views.append(CardView(
                card=card,
                account_name=account.name if account else "Unlinked",
                spent=to_money(spent),
                remaining=to_money(max(0.0, card.monthly_limit - spent)),
            ))
        return views

    def create_card(
        self,
        user_id: str,
        account_id: str,
        last4: str,
        expiry: str,
        monthly_limit: float,
        brand: str = "VISA",
        kind: CardKind = CardKind.VIRTUAL,
    ) -> Card:
        if monthly_limit < 0:
            raise InvalidInput("Monthly limit must not be negative")
        with self.store.transaction(user_id) as state:
            if not state.find_account(account_id):
                raise NotFound("Account not found")
            brand = (brand or "VISA").upper()
            card = Card(
                user_id=user_id,
                account_id=account_id,
                kind=kind,
                brand=brand,
                card_number=f"**** **** **** {last4}",
                expiry=expiry,
                monthly_limit=to_money(monthly_limit),
                color="orange" if brand == "MASTERCARD" else "blue",
            )
            state.cards.append(card)
        return card

    def set_card_status(self, user_id: str, card_id: str, status: Optional[CardStatus] = None) -> Card:
        """Set a card's status, or flip it when `status` is None."""
        with self.store.transaction(user_id) as state:
            card = state.find_card(card_id)
            if not card:
                raise NotFound("Card not found")
            if status is None:
                status = CardStatus.FROZEN if card.status == CardStatus.ACTIVE else CardStatus.ACTIVE
            card.status = status
        logger.info("Card %s is now %s", card_id, status.value)
        return card

    def reset_cards(self, user_id: str) -> None:
        with self.store.transaction(user_id) as state:
            state.cards.clear()

    # ----------------------------
    # Transactions
    # ----------------------------
    def list_transactions(self, user_id: str) -> Tuple[LedgerState, List[Transaction]]:
        state = self.store.read(user_id)
        return state, sorted(state.transactions, key=lambda t: as_utc(t.date), reverse=True)

    def _authorize_card(self, state: LedgerState, card_id: str, amount: float) -> Card:
        card = state.find_card(card_id)
        if not card:
            raise NotFound("Card not found")
        if card.status == CardStatus.FROZEN:
            raise CardFrozen("Declined: Card is Frozen")

        spent = card_spending(state, month_start(self.clock())).get(card.id, 0.0)
        if spent + amount > card.monthly_limit + 1e-9:
            raise LimitExceeded(remaining=to_money(max(0.0, card.monthly_limit - spent)))

        if not card.account_id:
            raise InvalidInput("This card is not linked to any account.")
        return card

    def post_transaction(
        self,
        user_id: str,
        name: str,
        amount: float,
        txn_type: TransactionType,
        category: str = "Other",
        account_id: Optional[str] = None,
        card_id: Optional[str] = None,
        date: Optional[datetime] = None,
    ) -> Transaction:
        if amount is None or amount <= 0:
            raise InvalidInput("Amount must be positive")
        amount = to_money(amount)

        with self.store.transaction(user_id) as state:
            final_account_id = account_id
            if card_id:
                card = self._authorize_card(state, card_id, amount)
                final_account_id = card.account_id

            if not name or not final_account_id:
                raise InvalidInput("Missing required fields")

            account = state.find_account(final_account_id)
            if not account:
                raise NotFound("Account not found")

            signed = amount if txn_type == TransactionType.INCOME else -amount
            txn = Transaction(
                user_id=user_id,
                account_id=account.id,
                card_id=card_id or None,
                name=name,
                amount=signed,
                type=txn_type,
                category=category or "Other",
                date=as_utc(date) if date else self.clock(),
            )
            state.transactions.append(txn)
            account.balance = to_money(account.balance + signed)

        logger.info("Posted %s %.2f to %s for %s", txn_type.value, amount, final_account_id, user_id)
        return txn

    def transfer(
        self,
        user_id: str,
        from_account_id: str,
        amount: float,
        recipient_name: str,
        currency: str = "USD",
        bank_name: Optional[str] = None,
        account_number: Optional[str] = None,
        to_account_id: Optional[str] = None,
    ) -> List[Transaction]:
        """Move money out of an account.

        With `to_account_id` the money lands in another account of the same
        owner and both legs are recorded. Otherwise it is an outbound wire.
        """
        if amount is None or amount <= 0:
            raise InvalidInput("Invalid Amount")
        try:
            amount_usd = to_money(self.rates.to_usd(amount, currency))
        except ValueError as e:
            raise InvalidInput(str(e))

        now = self.clock()
        with self.store.transaction(user_id) as state:
            source = state.find_account(from_account_id)
            if not source:
                raise NotFound("Account not found")
            if source.balance < amount_usd:
                raise InsufficientFunds("Insufficient Balance", required=amount_usd, available=source.balance)

            target = None
            if to_account_id:
                if to_account_id == from_account_id:
                    raise InvalidInput("Cannot transfer to the same account")
                target = state.find_account(to_account_id)
                if not target:
                    raise NotFound("Destination account not found")

            source.balance = to_money(source.balance - amount_usd)
            if target:
                payment_method = f"Internal transfer to {target.name}"
            else:
                safe_number = account_number[-4:] if account_number else "XXXX"
                payment_method = f"Wire to {bank_name or 'Bank Transfer'} ({safe_number})"

            legs = [Transaction(
                user_id=user_id,
                account_id=source.id,
                name=f"Transfer to {recipient_name}",
                amount=-amount_usd,
                type=TransactionType.EXPENSE,
                category="Transfer",
                payment_method=payment_method,
                date=now,
            )]
            if target:
                target.balance = to_money(target.balance + amount_usd)
                legs.append(Transaction(
                    user_id=user_id,
                    account_id=target.id,
                    name=f"Transfer from {source.name}",
                    amount=amount_usd,
                    type=TransactionType.INCOME,
                    category="Transfer",
                    payment_method=payment_method,
                    date=now,
                ))
            state.transactions.extend(legs)

        logger.info("Transfer of $%.2f from %s (%s)", amount_usd, from_account_id, payment_method)
        return legs

    # ----------------------------
    # Investments
    # ----------------------------
    @staticmethod
    def _tracking_account(state: LedgerState, user_id: str) -> Account:
        account = state.tracking_account()
        if account is None:
            account = Account(user_id=user_id, name=TRACKING_ACCOUNT_NAME, type="Investment", balance=0.0)
            state.accounts.append(account)
        return account

    def buy(
        self,
        user_id: str,
        symbol: str,
        name: str,
        asset_type: AssetType,
        quantity: float,
        price_per_share: float,
        account_id: str,
    ) -> Investment:
        if not account_id:
            raise InvalidInput("Select an account")
        if quantity <= 0 or price_per_share <= 0:
            raise InvalidInput("Quantity and price must be positive")
        symbol = (symbol or "").strip().upper()
        if not symbol:
            raise InvalidInput("Symbol is required")
        cost = quantity * price_per_share
        total_cost = to_money(cost)

        with self.store.transaction(user_id) as state:
            funding = state.find_account(account_id)
            if not funding:
                raise NotFound("Funding account not found")
            if funding.balance < cost:
                raise InsufficientFunds("Insufficient funds", required=cost, available=funding.balance)

            funding.balance = to_money(funding.balance - total_cost)
            tracking = self._tracking_account(state, user_id)
            tracking.balance = to_money(tracking.balance + total_cost)

            position = Investment(
                user_id=user_id,
                symbol=symbol,
                name=name or symbol,
                type=asset_type,
                quantity=quantity,
                price_per_share=price_per_share,
                avg_cost=price_per_share,
            )
            state.investments.append(position)

        logger.info("Bought %s x%s @ $%.2f (total $%.2f)", symbol, quantity, price_per_share, total_cost)
        return position

    def sell(self, user_id: str, investment_id: str, quantity_to_sell: float, account_id: str) -> SellResult:
        if quantity_to_sell is None or quantity_to_sell <= 0:
            raise InvalidInput("Quantity to sell must be positive")

        snapshot = self.store.read(user_id)
        held = snapshot.find_investment(investment_id)
        if not held:
            raise NotFound("Investment not found")
        if quantity_to_sell > held.quantity + 1e-9:
            raise InvalidInput("Cannot sell more than you own")
        if not snapshot.find_account(account_id):
            raise NotFound("Deposit account not found")

        quote = self.quotes.resolve_usd_price(held.symbol, held.type.value, fallback=held.price_per_share)

        with self.store.transaction(user_id) as state:
            # Re-check under the lock; another sell may have landed since the snapshot.
            position = state.find_investment(investment_id)
            if not position:
                raise NotFound("Investment not found")
            if quantity_to_sell > position.quantity + 1e-9:
                raise InvalidInput("Cannot sell more than you own")
            deposit = state.find_account(account_id)
            if not deposit:
                raise NotFound("Deposit account not found")

            payout = to_money(quote.price * quantity_to_sell)
            cost_removed = to_money(position.price_per_share * quantity_to_sell)

            deposit.balance = to_money(deposit.balance + payout)
            tracking = state.tracking_account()
            if tracking is not None:
                tracking.balance = to_money(tracking.balance - cost_removed)
            else:
                logger.warning("No %s account for %s; skipping cost basis removal", TRACKING_ACCOUNT_NAME, user_id)

            remaining = position.quantity - quantity_to_sell
            if math.isclose(remaining, 0.0, abs_tol=1e-9):
                remaining = 0.0
                state.investments.remove(position)
                position_state = PositionState.CLOSED
            else:
                position.quantity = remaining
                position.updated_at = self.clock()
                position_state = PositionState.PARTIALLY_REDUCED

        logger.info(
            "Sold %s x%s @ $%.2f (%s): payout $%.2f, cost basis removed $%.2f",
            held.symbol, quantity_to_sell, quote.price, quote.source, payout, cost_removed,
        )
        return SellResult(
            symbol=held.symbol,
            quantity_sold=quantity_to_sell,
            price_per_share=quote.price,
            payout=payout,
            cost_basis_removed=cost_removed,
            remaining_quantity=remaining,
            position_state=position_state,
            quote=quote,
        )

    def _value_position(self, inv: Investment) -> PositionValuation:
        quote = self.quotes.resolve_usd_price(inv.symbol, inv.type.value, fallback=inv.price_per_share)
        daily = self.quotes.get_daily_change_percent(inv.symbol) if quote.live else 0.0
        current_value = quote.price * inv.quantity
        cost_basis = inv.price_per_share * inv.quantity
        gain = current_value - cost_basis
        return PositionValuation(
            investment=inv,
            current_price=quote.price,
            current_value=current_value,
            cost_basis=cost_basis,
            gain_loss=gain,
            gain_loss_percent=(gain / cost_basis * 100) if cost_basis > 0 else 0.0,
            daily_change_percent=daily,
            quote=quote,
        )

    def value_portfolio(self, user_id: str) -> List[PositionValuation]:
        investments = sorted(self.store.read(user_id).investments, key=lambda i: i.created_at, reverse=True)
        if not investments:
            return []
        with ThreadPoolExecutor(max_workers=min(8, len(investments))) as pool:
            return list(pool.map(self._value_position, investments))
