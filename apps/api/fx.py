"""
Currency rates used to normalise everything the ledger stores to USD.

Quotes for NSE / BSE listings come back in INR. The rate is a fixed
constant by default; tests and deployments can inject their own table.
"""

from typing import Dict, Optional


DEFAULT_INR_PER_USD = 86.5

INDIAN_SUFFIXES = (".NS", ".BO")


def is_indian_symbol(symbol: str) -> bool:
    s = (symbol or "").strip().upper()
    return s.endswith(INDIAN_SUFFIXES)


def native_currency_for_symbol(symbol: str) -> str:
    return "INR" if is_indian_symbol(symbol) else "USD"


class RateService:
    """Units of a currency per one USD."""

    def __init__(self, units_per_usd: Optional[Dict[str, float]] = None):
        self.units_per_usd = {"USD": 1.0, "INR": DEFAULT_INR_PER_USD}
        if units_per_usd:
            self.units_per_usd.update({k.upper(): float(v) for k, v in units_per_usd.items()})

    def rate(self, currency: str) -> float:
        ccy = (currency or "USD").upper()
        if ccy not in self.units_per_usd:
            raise ValueError(f"Unsupported currency: {ccy}")
        return self.units_per_usd[ccy]

    def to_usd(self, amount: float, currency: str) -> float:
        return float(amount) / self.rate(currency)

    def quote_to_usd(self, symbol: str, price: float) -> float:
        return self.to_usd(price, native_currency_for_symbol(symbol))
