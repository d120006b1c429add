import os
import logging
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

import analytics
from advisor import AdvisorClient, build_context
from auth import AuthError, AuthService, bearer_token
from financial_health import HealthInputs, generate_health_report, portfolio_return_percent
from fx import RateService, native_currency_for_symbol
from ledger import (
    AssetType,
    CardKind,
    CardStatus,
    LedgerEngine,
    InvalidInput,
    LedgerError,
    LedgerStore,
    NotFound,
    TransactionType,
    Unauthorized,
)
from ledger.core import CardView, PositionValuation, month_start
from ledger.models import Account, Investment, LedgerState, Transaction
from market_data import QuoteProvider

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DATA_DIR = os.getenv("DATA_DIR", os.path.join(os.path.dirname(__file__), "..", "..", "data"))
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev_secret_change_me")
TOKEN_MAX_AGE_SECONDS = int(os.getenv("TOKEN_MAX_AGE_SECONDS", str(60 * 60 * 24 * 7)))  # 7 days
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
INR_PER_USD = float(os.getenv("INR_PER_USD", "86.5"))
QUOTE_TIMEOUT_SECONDS = float(os.getenv("QUOTE_TIMEOUT_SECONDS", "4.0"))
FINNHUB_API_KEY = os.getenv("FINNHUB_API_KEY", "").strip()
ENABLE_YFINANCE_LIVE_FALLBACK = os.getenv("ENABLE_YFINANCE_LIVE_FALLBACK", "false").strip().lower() in {"1", "true", "yes"}
GROQ_API_KEY = os.getenv("GROQ_API_KEY", "").strip()
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile").strip()
OLLAMA_URL = os.getenv("OLLAMA_URL", "http://127.0.0.1:11434/api/generate").strip()
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "finbank").strip()

_rates = RateService({"INR": INR_PER_USD})
_quotes = QuoteProvider(
    rates=_rates,
    timeout_s=QUOTE_TIMEOUT_SECONDS,
    finnhub_api_key=FINNHUB_API_KEY,
    enable_yfinance=ENABLE_YFINANCE_LIVE_FALLBACK,
)
_engine = LedgerEngine(LedgerStore(DATA_DIR), _quotes, rates=_rates)
_auth = AuthService(SESSION_SECRET, DATA_DIR, max_age_seconds=TOKEN_MAX_AGE_SECONDS)
_advisor = AdvisorClient(
    groq_api_key=GROQ_API_KEY,
    groq_model=GROQ_MODEL,
    ollama_url=OLLAMA_URL,
    ollama_model=OLLAMA_MODEL,
)

app = FastAPI(title="FinBank API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------
# Dependencies
# ----------------------------
def get_engine() -> LedgerEngine:
    return _engine


def get_auth() -> AuthService:
    return _auth


def get_advisor() -> AdvisorClient:
    return _advisor


def current_user(request: Request, auth: AuthService = Depends(get_auth)) -> str:
    token = bearer_token(request.headers.get("Authorization"))
    if not token:
        raise Unauthorized("Unauthorized")
    try:
        return auth.verify_token(token)
    except AuthError as e:
        raise Unauthorized(e.message)


# ----------------------------
# Error handlers
# ----------------------------
@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if any(e.get("type") == "missing" for e in errors):
        message = "Missing required fields"
    else:
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "request"
        message = f"Invalid {field}: {first.get('msg', 'invalid value')}"
    return JSONResponse(status_code=400, content=InvalidInput(message).to_payload())


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "Server Error"})


# ----------------------------
# Models
# ----------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    email: str = Field(..., min_length=3, max_length=200)
    password: str = Field(..., min_length=6, max_length=72)


class LoginIn(BaseModel):
    email: str
    password: str


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    type: str = Field(default="Checking", min_length=1, max_length=30)
    balance: float = Field(default=0.0, ge=0.0)


class CardIn(CamelModel):
    account_id: str = Field(..., alias="accountId")
    brand: str = Field(default="VISA", max_length=20)
    type: CardKind = CardKind.VIRTUAL
    last4: str = Field(..., pattern=r"^\d{4}$")
    expiry: str = Field(..., min_length=4, max_length=7)
    monthly_limit: float = Field(..., ge=0.0, alias="monthlyLimit")


class CardToggleIn(CamelModel):
    card_id: str = Field(..., alias="cardId")


class TransactionIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount: float = Field(..., gt=0)
    type: TransactionType
    category: str = Field(default="Other", max_length=60)
    account_id: Optional[str] = Field(default=None, alias="accountId")
    card_id: Optional[str] = Field(default=None, alias="cardId")
    date: Optional[datetime] = None


class TransferIn(CamelModel):
    from_account_id: str = Field(..., alias="fromAccountId")
    amount: float = Field(..., gt=0)
    currency: Literal["USD", "INR"] = "USD"
    recipient_name: str = Field(..., min_length=1, max_length=120, alias="recipientName")
    bank_name: Optional[str] = Field(default=None, alias="bankName")
    account_number: Optional[str] = Field(default=None, alias="accountNumber")
    to_account_id: Optional[str] = Field(default=None, alias="toAccountId")


class BuyIn(CamelModel):
    symbol: str = Field(..., min_length=1, max_length=20)
    name: Optional[str] = Field(default=None, max_length=120)
    type: AssetType = AssetType.STOCK
    quantity: float = Field(..., gt=0)
    price_per_share: float = Field(..., gt=0, alias="pricePerShare")
    account_id: str = Field(..., alias="accountId")

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("Symbol required")
        if not all(c.isalnum() or c in ".-_:" for c in v):
            raise ValueError("Symbol must be alphanumeric with optional exchange suffix (e.g., .NS, .BO)")
        return v


class SellIn(CamelModel):
    investment_id: str = Field(..., alias="investmentId")
    quantity_to_sell: float = Field(..., gt=0, alias="quantityToSell")
    account_id: str = Field(..., alias="accountId")


class AdvisorIn(BaseModel):
    message: Optional[str] = Field(default=None, max_length=2000)


# ----------------------------
# Serializers
# ----------------------------
def account_out(a: Account) -> Dict[str, Any]:
    return {"id": a.id, "name": a.name, "type": a.type, "balance": a.balance, "createdAt": a.created_at}


def card_out(view: CardView) -> Dict[str, Any]:
    c = view.card
    return {
        "id": c.id,
        "accountId": c.account_id,
        "accountName": view.account_name,
        "brand": c.brand,
        "type": c.kind.value,
        "cardNumber": c.card_number,
        "last4": c.last4,
        "expiry": c.expiry,
        "monthlyLimit": c.monthly_limit,
        "status": c.status.value,
        "color": c.color,
        "spent": view.spent,
        "remaining": view.remaining,
        "createdAt": c.created_at,
    }


def transaction_out(t: Transaction, state: Optional[LedgerState] = None) -> Dict[str, Any]:
    out = {
        "id": t.id,
        "accountId": t.account_id,
        "cardId": t.card_id,
        "name": t.name,
        "amount": t.amount,
        "type": t.type.value,
        "category": t.category,
        "status": t.status.value,
        "paymentMethod": t.payment_method,
        "date": t.date,
    }
    if state is not None:
        account = state.find_account(t.account_id)
        card = state.find_card(t.card_id)
        out["accountName"] = account.name if account else None
        out["card"] = {"brand": card.brand, "last4": card.last4} if card else None
    return out


def investment_out(inv: Investment) -> Dict[str, Any]:
    return {
        "id": inv.id,
        "symbol": inv.symbol,
        "name": inv.name,
        "type": inv.type.value,
        "quantity": inv.quantity,
        "pricePerShare": inv.price_per_share,
        "avgCost": inv.avg_cost,
        "totalValue": round(inv.price_per_share * inv.quantity, 2),
        "createdAt": inv.created_at,
        "updatedAt": inv.updated_at,
    }


def valuation_out(v: PositionValuation) -> Dict[str, Any]:
    out = investment_out(v.investment)
    out.update({
        "currentPrice": round(v.current_price, 4),
        "currentValue": round(v.current_value, 2),
        "positionGainLoss": round(v.gain_loss, 2),
        "positionGainLossPercent": round(v.gain_loss_percent, 2),
        "dailyChangePercent": round(v.daily_change_percent, 2),
        "usingLiveData": v.quote.live,
        "priceSource": v.quote.source,
    })
    return out


# ----------------------------
# Auth routes
# ----------------------------
@app.post("/api/v1/auth/register", status_code=201)
def register(body: RegisterIn, auth: AuthService = Depends(get_auth)):
    user = auth.register(body.name, body.email, body.password)
    return {
        "message": "Account created successfully",
        "token": auth.issue_token(user["id"]),
        "user": auth.public_user(user),
    }


@app.post("/api/v1/auth/login")
def login(body: LoginIn, auth: AuthService = Depends(get_auth)):
    user = auth.login(body.email, body.password)
    return {"token": auth.issue_token(user["id"]), "user": auth.public_user(user)}


@app.get("/api/v1/auth/me")
def me(user_id: str = Depends(current_user), auth: AuthService = Depends(get_auth)):
    user = auth.get_user(user_id)
    if not user:
        raise NotFound("User not found")
    return {"user": auth.public_user(user)}


# ----------------------------
# Account routes
# ----------------------------
@app.get("/api/v1/accounts")
def accounts_list(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    return [account_out(a) for a in engine.list_accounts(user_id)]


@app.post("/api/v1/accounts", status_code=201)
def accounts_create(body: AccountIn, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    return account_out(engine.create_account(user_id, body.name, body.type, body.balance))


@app.delete("/api/v1/accounts/reset")
def accounts_reset(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    engine.reset_financial_data(user_id)
    return {"message": "All financial data reset"}


# ----------------------------
# Card routes
# ----------------------------
@app.get("/api/v1/cards")
def cards_list(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    return [card_out(v) for v in engine.list_cards(user_id)]


@app.post("/api/v1/cards", status_code=201)
def cards_create(body: CardIn, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    card = engine.create_card(
        user_id,
        account_id=body.account_id,
        last4=body.last4,
        expiry=body.expiry,
        monthly_limit=body.monthly_limit,
        brand=body.brand,
        kind=body.type,
    )
    account = next((a for a in engine.list_accounts(user_id) if a.id == card.account_id), None)
    return card_out(CardView(card=card, account_name=account.name if account else "Unlinked", spent=0.0, remaining=card.monthly_limit))


def _status_response(card_id: str, status: CardStatus) -> Dict[str, Any]:
    verb = "unlocked" if status == CardStatus.ACTIVE else "frozen"
    return {"message": f"Card {verb}", "cardId": card_id, "status": status.value}


@app.post("/api/v1/cards/toggle")
def cards_toggle(body: CardToggleIn, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    card = engine.set_card_status(user_id, body.card_id)
    return _status_response(card.id, card.status)


@app.post("/api/v1/cards/{card_id}/freeze")
def cards_freeze(card_id: str, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    card = engine.set_card_status(user_id, card_id, CardStatus.FROZEN)
    return _status_response(card.id, card.status)


@app.post("/api/v1/cards/{card_id}/unfreeze")
def cards_unfreeze(card_id: str, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    card = engine.set_card_status(user_id, card_id, CardStatus.ACTIVE)
    return _status_response(card.id, card.status)


@app.delete("/api/v1/cards/reset")
def cards_reset(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    engine.reset_cards(user_id)
    return {"message": "Cards reset"}


# ----------------------------
# Transaction routes
# ----------------------------
@app.get("/api/v1/transactions")
def transactions_list(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    state, transactions = engine.list_transactions(user_id)
    return [transaction_out(t, state) for t in transactions]


@app.post("/api/v1/transactions", status_code=201)
def transactions_create(body: TransactionIn, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    txn = engine.post_transaction(
        user_id,
        name=body.name,
        amount=body.amount,
        txn_type=body.type,
        category=body.category,
        account_id=body.account_id,
        card_id=body.card_id,
        date=body.date,
    )
    return transaction_out(txn)


@app.post("/api/v1/transactions/transfer")
def transactions_transfer(body: TransferIn, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    legs = engine.transfer(
        user_id,
        from_account_id=body.from_account_id,
        amount=body.amount,
        recipient_name=body.recipient_name,
        currency=body.currency,
        bank_name=body.bank_name,
        account_number=body.account_number,
        to_account_id=body.to_account_id,
    )
    return {"success": True, "transaction": transaction_out(legs[0]), "legs": [transaction_out(t) for t in legs]}


# ----------------------------
# Investment routes
# ----------------------------
@app.get("/api/v1/investments")
def investments_list(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    return [valuation_out(v) for v in engine.value_portfolio(user_id)]


@app.post("/api/v1/investments", status_code=201)
def investments_buy(body: BuyIn, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    position = engine.buy(
        user_id,
        symbol=body.symbol,
        name=body.name or body.symbol,
        asset_type=body.type,
        quantity=body.quantity,
        price_per_share=body.price_per_share,
        account_id=body.account_id,
    )
    return investment_out(position)


@app.post("/api/v1/investments/sell")
def investments_sell(body: SellIn, user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    result = engine.sell(user_id, body.investment_id, body.quantity_to_sell, body.account_id)
    return {
        "message": "Sold successfully",
        "payout": result.payout,
        "usingLiveData": result.quote.live,
        "priceSource": result.quote.source,
        "positionState": result.position_state.value,
        "details": {
            "symbol": result.symbol,
            "quantitySold": result.quantity_sold,
            "pricePerShare": round(result.price_per_share, 4),
            "totalPayout": result.payout,
            "costBasisRemoved": result.cost_basis_removed,
            "remainingQuantity": result.remaining_quantity,
        },
    }


# ----------------------------
# Market routes
# ----------------------------
@app.get("/api/v1/quote")
def quote(symbol: str, type: AssetType = AssetType.STOCK, engine: LedgerEngine = Depends(get_engine)):
    s = symbol.strip().upper()
    if not s:
        raise InvalidInput("Symbol required")
    price = engine.quotes.get_price(s, type.value)
    if not price:
        return JSONResponse(status_code=503, content={"error": "Price unavailable", "symbol": s, "fallbackPrice": 0})
    return {
        "symbol": s,
        "shortName": s,
        "price": price,
        "currency": native_currency_for_symbol(s),
        "priceUSD": round(engine.rates.quote_to_usd(s, price), 4),
        "source": "Multi-API",
    }


# ----------------------------
# Analytics + reports
# ----------------------------
@app.get("/api/v1/analytics")
def analytics_summary(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    _, transactions = engine.list_transactions(user_id)
    return analytics.summarize(transactions)


@app.get("/api/v1/dashboard")
def dashboard(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    state, transactions = engine.list_transactions(user_id)
    monthly = analytics.totals_since(transactions, month_start(engine.clock()))
    valuations = engine.value_portfolio(user_id)
    return {
        "accounts": [account_out(a) for a in state.accounts],
        "totalBalance": round(sum(a.balance for a in state.accounts), 2),
        "monthlyIncome": monthly["income"],
        "monthlyExpenses": monthly["expenses"],
        "portfolioValue": round(sum(v.current_value for v in valuations), 2),
        "recentTransactions": [transaction_out(t, state) for t in transactions[:5]],
        "chartData": analytics.chart_data(transactions),
    }


@app.post("/api/v1/financial-health")
def financial_health(user_id: str = Depends(current_user), engine: LedgerEngine = Depends(get_engine)):
    state, transactions = engine.list_transactions(user_id)
    valuations = engine.value_portfolio(user_id)
    invested = sum(v.investment.cost_basis for v in valuations)
    current = sum(v.current_value for v in valuations)
    cash_flow = analytics.health_inputs(transactions, engine.clock())
    return generate_health_report(HealthInputs(
        monthly_income=cash_flow["monthly_income"],
        monthly_expense=cash_flow["monthly_expense"],
        total_balance=sum(a.balance for a in state.accounts),
        portfolio_value=current,
        portfolio_return=portfolio_return_percent(invested, current),
        top_categories=cash_flow["top_categories"],
    ))


@app.post("/api/v1/advisor")
def advisor_chat(
    body: AdvisorIn,
    user_id: str = Depends(current_user),
    engine: LedgerEngine = Depends(get_engine),
    advisor: AdvisorClient = Depends(get_advisor),
):
    state = engine.store.read(user_id)
    ctx = build_context(state.accounts, state.investments, state.transactions)
    return {"advice": advisor.advise(ctx, body.message)}
