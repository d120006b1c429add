import os
import sys
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

# ensure local app modules are importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from auth import AuthService
from advisor import AdvisorClient
from fx import RateService
from ledger import LedgerEngine, LedgerStore
from market_data import QuoteProvider


FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeQuotes(QuoteProvider):
    """Deterministic quotes; a symbol missing from `prices` behaves like a failed lookup."""

    def __init__(self, prices=None, daily_change=0.0):
        super().__init__(rates=RateService({"INR": 86.5}))
        self.prices = dict(prices or {})
        self.daily_change = daily_change
        self.calls = []

    def get_price(self, symbol, asset_type):
        self.calls.append((symbol.upper(), asset_type))
        return self.prices.get(symbol.upper())

    def get_daily_change_percent(self, symbol):
        return self.daily_change


class FakeAdvisor(AdvisorClient):
    def __init__(self, answer="| Asset | Allocation % |"):
        super().__init__(groq_api_key="", ollama_url="")
        self.answer = answer
        self.seen = []

    def advise(self, ctx, message):
        self.seen.append((ctx, message))
        return self.answer


@pytest.fixture
def store(tmp_path):
    return LedgerStore(str(tmp_path))


@pytest.fixture
def quotes():
    return FakeQuotes()


@pytest.fixture
def engine(store, quotes):
    return LedgerEngine(store, quotes, clock=lambda: FIXED_NOW)


@pytest.fixture
def user_id():
    return "usr_test"


@pytest.fixture
def auth(tmp_path):
    return AuthService("test-secret", str(tmp_path))


@pytest.fixture
def advisor():
    return FakeAdvisor()


@pytest.fixture
def client(engine, auth, advisor):
    from main import app, get_advisor, get_auth, get_engine

    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_auth] = lambda: auth
    app.dependency_overrides[get_advisor] = lambda: advisor
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def registered(auth):
    user = auth.register("Test User", "test@example.com", "secret123")
    return user


@pytest.fixture
def auth_headers(auth, registered):
    return {"Authorization": f"Bearer {auth.issue_token(registered['id'])}"}
