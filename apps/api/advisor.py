"""
Advisor chat

Summarises the owner's cash, holdings and recent spending into a short
context block and asks an LLM for advice. Groq's OpenAI-compatible endpoint
is tried first, then a local Ollama model. If both fail the caller gets an
offline notice instead of an error.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from ledger.models import Account, Investment, Transaction


logger = logging.getLogger(__name__)

OFFLINE_MESSAGE = "System: AI services are currently offline. Please check your API Key."
GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"


@dataclass
class AdvisorContext:
    total_cash: float
    total_invested: float
    recent_spending: float
    holdings: List[str]

    @property
    def net_worth(self) -> float:
        return self.total_cash + self.total_invested


def build_context(accounts: List[Account], investments: List[Investment], transactions: List[Transaction]) -> AdvisorContext:
    recent = sorted(transactions, key=lambda t: t.date, reverse=True)[:20]
    return AdvisorContext(
        total_cash=sum(a.balance for a in accounts),
        total_invested=sum(i.price_per_share * i.quantity for i in investments),
        recent_spending=sum(t.magnitude for t in recent if t.type.value == "expense"),
        holdings=[f"{i.symbol} ({i.quantity:g})" for i in investments],
    )


def system_prompt(ctx: AdvisorContext) -> str:
    return (
        "You are FinBank Pro, a portfolio manager focused on data-driven strategies.\n\n"
        "USER FINANCIAL DATA:\n"
        f"- Net Worth: ${ctx.net_worth:,.2f} (Cash: ${ctx.total_cash:,.2f}, Invested: ${ctx.total_invested:,.2f})\n"
        f"- Recent Spending: ${ctx.recent_spending:,.2f}\n"
        f"- Current Portfolio: {', '.join(ctx.holdings) or 'None'}\n\n"
        "INSTRUCTIONS:\n"
        "1. Analyze the user's financial position.\n"
        "2. Suggest an allocation in dollar amounts and percentages only, never share counts.\n"
        "3. Output the allocation as a Markdown table: Asset, Allocation %, Amount ($), Rationale.\n"
        "4. Keep the text brief and professional."
    )


class AdvisorClient:
    def __init__(
        self,
        groq_api_key: str = "",
        groq_model: str = "llama-3.3-70b-versatile",
        ollama_url: str = "http://127.0.0.1:11434/api/generate",
        ollama_model: str = "finbank",
        timeout_s: float = 30.0,
    ):
        self.groq_api_key = (groq_api_key or "").strip()
        self.groq_model = groq_model
        self.ollama_url = ollama_url
        self.ollama_model = ollama_model
        self.timeout_s = timeout_s

    def _ask_groq(self, prompt: str, message: str) -> Optional[str]:
        if not self.groq_api_key:
            return None
        try:
            res = httpx.post(
                GROQ_URL,
                json={
                    "model": self.groq_model,
                    "messages": [
                        {"role": "system", "content": prompt},
                        {"role": "user", "content": message},
                    ],
                    "temperature": 0.5,
                },
                headers={"Authorization": f"Bearer {self.groq_api_key}"},
                timeout=self.timeout_s,
            )
            res.raise_for_status()
            return ((res.json().get("choices") or [{}])[0].get("message") or {}).get("content")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("Groq advisor request failed: %s", e)
            return None

    def _ask_ollama(self, prompt: str, message: str) -> Optional[str]:
        if not self.ollama_url:
            return None
        try:
            res = httpx.post(
                self.ollama_url,
                json={
                    "model": self.ollama_model,
                    "prompt": f"{prompt}\n\nUSER: {message}",
                    "stream": False,
                    "options": {"num_ctx": 2048},
                },
                timeout=self.timeout_s,
            )
            res.raise_for_status()
            return res.json().get("response")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("Local advisor model failed: %s", e)
            return None

    def advise(self, ctx: AdvisorContext, message: Optional[str]) -> str:
        prompt = system_prompt(ctx)
        question = (message or "").strip() or "Financial advice"
        for ask in (self._ask_groq, self._ask_ollama):
            answer = ask(prompt, question)
            if answer:
                return answer
        return OFFLINE_MESSAGE
