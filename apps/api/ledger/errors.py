"""
FinBank Ledger — Error taxonomy

Every failure a ledger operation can report. Handlers at the HTTP boundary
turn these into a status code plus a JSON body built by `to_payload`.
"""

from typing import Any, Dict


class LedgerError(Exception):
    kind = "ServerError"
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_payload(self) -> Dict[str, Any]:
        payload = {"message": self.message, "error": self.kind}
        payload.update(self.extra)
        return payload


class Unauthorized(LedgerError):
    kind = "Unauthorized"
    status_code = 401


class InvalidInput(LedgerError):
    kind = "InvalidInput"
    status_code = 400


class InsufficientFunds(LedgerError):
    kind = "InsufficientFunds"
    status_code = 400


class CardFrozen(LedgerError):
    kind = "CardFrozen"
    status_code = 403


class LimitExceeded(LedgerError):
    kind = "LimitExceeded"
    status_code = 403

    def __init__(self, remaining: float):
        super().__init__(
            f"Declined: Exceeds monthly limit. You only have ${remaining:.2f} left.",
            remaining=remaining,
        )
        self.remaining = remaining


class NotFound(LedgerError):
    kind = "NotFound"
    status_code = 404
