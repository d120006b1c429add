"""
Spending and income aggregation over an owner's transactions.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List

import pandas as pd

from ledger.models import Transaction


CATEGORY_COLORS = {
    "Food & Dining": "#ef4444",
    "Transport": "#f97316",
    "Shopping": "#8b5cf6",
    "Bills": "#3b82f6",
    "Entertainment": "#ec4899",
    "Healthcare": "#10b981",
    "Education": "#eab308",
}
DEFAULT_COLOR = "#6b7280"

_COLUMNS = ["date", "amount", "magnitude", "type", "category", "account_id", "card_id"]


def transactions_frame(transactions: Iterable[Transaction]) -> pd.DataFrame:
    rows = [
        {
            "date": t.date,
            "amount": float(t.amount),
            "magnitude": abs(float(t.amount)),
            "type": t.type.value,
            "category": t.category or "Other",
            "account_id": t.account_id,
            "card_id": t.card_id,
        }
        for t in transactions
    ]
    df = pd.DataFrame(rows, columns=_COLUMNS)
    df["date"] = pd.to_datetime(df["date"], utc=True, errors="coerce")
    return df


def _expenses(df: pd.DataFrame) -> pd.DataFrame:
    return df[df["type"] == "expense"]


def _income(df: pd.DataFrame) -> pd.DataFrame:
    return df[df["type"] == "income"]


def category_breakdown(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Expense totals per category, largest first."""
    exp = _expenses(df)
    if exp.empty:
        return []
    total = float(exp["magnitude"].sum())
    grouped = exp.groupby("category")["magnitude"].sum().sort_values(ascending=False, kind="mergesort")
    return [
        {
            "name": str(name),
            "value": round(float(value), 2),
            "percent": round(float(value) / total * 100, 2) if total > 0 else 0.0,
        }
        for name, value in grouped.items()
    ]


def monthly_trends(df: pd.DataFrame) -> List[Dict[str, Any]]:
    if df.empty:
        return []
    frame = df.dropna(subset=["date"]).assign(month=lambda d: d["date"].dt.strftime("%Y-%m"))
    if frame.empty:
        return []
    pivot = frame.pivot_table(index="month", columns="type", values="magnitude", aggfunc="sum", fill_value=0.0)
    out = []
    for month in sorted(pivot.index):
        row = pivot.loc[month]
        out.append({
            "month": str(month),
            "income": round(float(row.get("income", 0.0)), 2),
            "expense": round(float(row.get("expense", 0.0)), 2),
        })
    return out


def summarize(transactions: Iterable[Transaction]) -> Dict[str, Any]:
    df = transactions_frame(transactions)
    total_income = float(_income(df)["magnitude"].sum())
    total_expenses = float(_expenses(df)["magnitude"].sum())
    net = total_income - total_expenses
    return {
        "totalIncome": round(total_income, 2),
        "totalExpenses": round(total_expenses, 2),
        "netSavings": round(net, 2),
        "savingsRate": round(net / total_income * 100, 2) if total_income > 0 else 0.0,
        "spendingByCategory": category_breakdown(df),
        "monthlyTrends": monthly_trends(df),
    }


def totals_since(transactions: Iterable[Transaction], since: datetime) -> Dict[str, float]:
    df = transactions_frame(transactions)
    recent = df[df["date"] >= _ts(since)]
    return {
        "income": round(float(_income(recent)["magnitude"].sum()), 2),
        "expenses": round(float(_expenses(recent)["magnitude"].sum()), 2),
    }


def chart_data(transactions: Iterable[Transaction], limit: int = 5) -> List[Dict[str, Any]]:
    return [
        {"label": c["name"], "value": c["value"], "color": CATEGORY_COLORS.get(c["name"], DEFAULT_COLOR)}
        for c in category_breakdown(transactions_frame(transactions))[:limit]
    ]


def recent_window(transactions: List[Transaction], now: datetime, days: int = 30, fallback: int = 50) -> List[Transaction]:
    """Transactions from the last `days`; the latest `fallback` if none."""
    ordered = sorted(transactions, key=lambda t: _ts(t.date), reverse=True)
    cutoff = _ts(now) - timedelta(days=days)
    recent = [t for t in ordered if _ts(t.date) >= cutoff]
    return recent if recent else ordered[:fallback]


def _ts(value: datetime) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    return ts.tz_localize("UTC") if ts.tzinfo is None else ts


def health_inputs(transactions: List[Transaction], now: datetime) -> Dict[str, Any]:
    df = transactions_frame(recent_window(transactions, now))
    return {
        "monthly_income": round(float(_income(df)["magnitude"].sum()), 2),
        "monthly_expense": round(float(_expenses(df)["magnitude"].sum()), 2),
        "top_categories": [{"name": c["name"], "amount": c["value"]} for c in category_breakdown(df)],
    }
