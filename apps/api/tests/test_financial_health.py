import pytest

from financial_health import (
    HealthInputs,
    generate_health_report,
    health_score,
    portfolio_return_percent,
    recommended_budget,
)


def _inputs(**kw):
    base = dict(
        monthly_income=5000.0,
        monthly_expense=2000.0,
        total_balance=20000.0,
        portfolio_value=10000.0,
        portfolio_return=4.0,
        top_categories=[{"name": "Food & Dining", "amount": 800.0}],
    )
    base.update(kw)
    return HealthInputs(**base)


def test_portfolio_return_percent():
    assert portfolio_return_percent(0, 100) == 0.0
    assert portfolio_return_percent(200, 150) == pytest.approx(-25.0)


def test_healthy_profile_scores_full_marks():
    assert health_score(_inputs(), savings_rate=60.0) == 100


def test_penalties_stack_and_clamp():
    inputs = _inputs(total_balance=0.0, portfolio_value=0.0, portfolio_return=-20.0)
    # -15 -25 -10 -5 -10
    assert health_score(inputs, savings_rate=-50.0) == 35


def test_report_flags_drawdown():
    report = generate_health_report(_inputs(portfolio_return=-8.0))
    assert "drawdown of 8.00%" in report["investmentStrategy"]
    assert report["actionItems"][0].startswith("Review your portfolio")
    assert "Dining out" in report["spendingAnalysis"]


def test_report_without_expenses_or_investments():
    report = generate_health_report(_inputs(monthly_expense=0.0, portfolio_value=0.0, top_categories=[]))
    assert report["healthScore"] == 90
    assert "haven't detected" in report["spendingAnalysis"]
    assert "no active investments" in report["investmentStrategy"]
    assert "General" in report["actionItems"][1]


def test_budget_adds_debt_line_only_when_overspending():
    assert recommended_budget(4000.0, 500.0)["Debt Repayment"] == 0
    budget = recommended_budget(4000.0, -300.0)
    assert budget["Debt Repayment"] == 300
    assert budget["Savings & Investments"] == 800
    assert budget["Bills & Utilities"] == 800
