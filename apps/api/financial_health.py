"""
Financial health report

A fixed set of heuristics over last-month cash flow, cash buffer and
portfolio return. Produces a 0-100 score plus canned guidance text.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class HealthInputs:
    monthly_income: float
    monthly_expense: float
    total_balance: float
    portfolio_value: float
    portfolio_return: float  # percent
    top_categories: List[Dict[str, Any]] = field(default_factory=list)  # [{"name", "amount"}], largest first


def portfolio_return_percent(total_invested: float, current_value: float) -> float:
    if total_invested <= 0:
        return 0.0
    return (current_value - total_invested) / total_invested * 100


def health_score(inputs: HealthInputs, savings_rate: float) -> int:
    score = 100
    if savings_rate < 20:
        score -= 15
    if savings_rate < 0:
        score -= 25
    if inputs.portfolio_value == 0:
        score -= 10
    if inputs.portfolio_return < -5:
        score -= 5
    if inputs.total_balance < inputs.monthly_expense * 3:
        score -= 10
    return max(0, min(100, score))


def _summary(score: int, savings_rate: float) -> str:
    if score >= 80:
        return (
            f"Your financial health is highly resilient. You're maintaining a strong savings rate of "
            f"{savings_rate:.1f}% and have a solid cash buffer. Focus on optimizing your asset allocation."
        )
    if score >= 60:
        return (
            f"You are financially stable, but there is room for growth. Your savings rate is {savings_rate:.1f}%. "
            "Focus on managing top expenses and monitoring portfolio volatility."
        )
    return (
        "Immediate attention needed. Your outflows are high relative to your income. "
        "Focus on stabilizing your cash flow before making aggressive investments."
    )


def _spending_analysis(inputs: HealthInputs, top_name: str, top_amount: float, savings_rate: float) -> str:
    if inputs.monthly_expense == 0:
        return (
            "We haven't detected significant expenses in the last 30 days. This might mean you rely on cash "
            "or a different account. Ensure all your accounts are synced for an accurate picture."
        )

    share = top_amount / inputs.monthly_expense * 100
    text = f"Your spending is primarily concentrated in {top_name}, making up {share:.1f}% of your total outflow. "
    lowered = top_name.lower()
    if "food" in lowered or "dining" in lowered:
        text += (
            "Dining out frequently is a silent wealth killer. Planning meals just two extra days a week "
            "could save you significant capital over a year."
        )
    elif "shopping" in lowered:
        text += (
            "Discretionary shopping seems high this month. Consider implementing a '48-hour rule' "
            "before making non-essential purchases."
        )
    elif "transfer" in lowered or "investment" in lowered:
        text += "This is excellent! High transfer volumes usually indicate you are moving money to savings or investments."
    elif savings_rate > 20:
        text += "However, since your overall savings rate is healthy, this spending level is perfectly sustainable for your lifestyle."
    else:
        text += (
            "Reducing costs in this single category by just 10-15% would immediately turn your cash flow "
            "positive and boost your financial resilience."
        )
    return text


def _investment_strategy(inputs: HealthInputs) -> str:
    ret = inputs.portfolio_return
    if inputs.portfolio_value == 0:
        return (
            "You currently have no active investments. Inflation is effectively eroding your cash holdings. "
            "Start small: Open a brokerage account and consider a low-cost, broad-market Index Fund."
        )
    if ret < 0:
        return (
            f"Your portfolio is currently experiencing a drawdown of {abs(ret):.2f}%. Do not panic sell. "
            "Market corrections are normal. Since you have cash reserves, this is technically a 'discount' "
            "period. Consider averaging down on your highest conviction assets."
        )
    if ret > 15:
        return (
            f"Your portfolio is performing exceptionally well with a {ret:.2f}% return. Beware of market "
            "euphoria. Consider rebalancing: trim profits from high-flyers and move them into stable assets "
            "to lock in gains."
        )
    return (
        f"Your portfolio is relatively stable with a {ret:.2f}% return. Ensure you are well-diversified "
        "across sectors (Tech, Finance, Healthcare) to hedge against future volatility."
    )


def recommended_budget(monthly_income: float, savings: float) -> Dict[str, int]:
    """50/30/20 split of income."""
    needs = monthly_income * 0.5
    wants = monthly_income * 0.3
    return {
        "Bills & Utilities": round(needs * 0.4),
        "Food & Dining": round(needs * 0.3),
        "Healthcare": round(needs * 0.2),
        "Transport": round(needs * 0.1),
        "Shopping": round(wants * 0.5),
        "Entertainment": round(wants * 0.5),
        "Savings & Investments": round(monthly_income * 0.2),
        "Debt Repayment": round(abs(savings)) if savings < 0 else 0,
    }


def generate_health_report(inputs: HealthInputs) -> Dict[str, Any]:
    savings = inputs.monthly_income - inputs.monthly_expense
    savings_rate = savings / inputs.monthly_income * 100 if inputs.monthly_income > 0 else 0.0
    score = health_score(inputs, savings_rate)

    top = inputs.top_categories[0] if inputs.top_categories else {}
    top_name = top.get("name") or "General"
    top_amount = float(top.get("amount") or 0.0)
    portfolio_down = inputs.portfolio_return < 0

    action_items = [
        "Review your portfolio: Ensure you aren't holding fundamentally broken assets. Hold the strong ones."
        if portfolio_down
        else "Check your asset allocation: Ensure you aren't over-exposed to a single volatile sector.",
        f"Audit your {top_name} expenses from the last 30 days.",
        "Automate a transfer of 10% of your income to a separate, high-yield savings account.",
    ]

    return {
        "metrics": {
            "totalBalance": round(inputs.total_balance, 2),
            "monthlyIncome": round(inputs.monthly_income, 2),
            "monthlyExpense": round(inputs.monthly_expense, 2),
            "portfolioValue": round(inputs.portfolio_value, 2),
            "portfolioReturn": round(inputs.portfolio_return, 2),
            "savingsRate": round(savings_rate, 2),
        },
        "healthScore": score,
        "summary": _summary(score, savings_rate),
        "spendingAnalysis": _spending_analysis(inputs, top_name, top_amount, savings_rate),
        "investmentStrategy": _investment_strategy(inputs),
        "savingsRecommendations": [
            "Avoid liquidating investments during this downturn unless absolutely necessary."
            if portfolio_down
            else "Consider setting up an automatic sweep to move excess cash into investments.",
            f"Evaluate fixed expenses like {top_name} for potential negotiation.",
        ],
        "recommendedBudget": recommended_budget(inputs.monthly_income, savings),
        "actionItems": action_items,
    }
