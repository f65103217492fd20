"""Typed credit and enhancement errors rendered by the API error handler."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CreditError(Exception):
    """Base class for every business error the credits API can return."""

    code = "CREDIT_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


class InvalidInput(CreditError):
    code = "INVALID_INPUT"
    status_code = 400


class InsufficientCredits(CreditError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}.",
            {"required": required, "available": available},
        )
        self.required = required
        self.available = available


class AccountNotFound(CreditError):
    code = "ACCOUNT_NOT_FOUND"
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__(f"No credit account for user {user_id}.", {"user_id": user_id})
        self.user_id = user_id


class InsufficientBalance(CreditError):
    """Raised by the ledger store when a debit would take a balance below zero."""

    code = "INSUFFICIENT_BALANCE"
    status_code = 402

    def __init__(self, user_id: str, balance: int, amount: int):
        super().__init__(
            f"Debit of {-amount} exceeds balance {balance} for user {user_id}.",
            {"balance": balance, "amount": amount},
        )
        self.user_id = user_id
        self.balance = balance
        self.amount = amount


class InvalidRefund(CreditError):
    code = "INVALID_REFUND"
    status_code = 422


class DuplicateRequest(CreditError):
    code = "DUPLICATE_REQUEST"
    status_code = 409


class LedgerUnavailable(CreditError):
    code = "LEDGER_UNAVAILABLE"
    status_code = 503


class LedgerConflict(LedgerUnavailable):
    """Optimistic write kept losing to concurrent writers for the same account."""

    code = "LEDGER_CONFLICT"


class EnhancementFailed(CreditError):
    code = "ENHANCEMENT_FAILED"
    status_code = 502

    def __init__(self, message: str, *, refunded: bool, details: Optional[Dict[str, Any]] = None):
        payload = dict(details or {})
        payload["refunded"] = refunded
        super().__init__(message, payload)
        self.refunded = refunded


class RefundFailed(EnhancementFailed):
    """Enhancement failed and the compensating refund did not complete."""

    code = "REFUND_FAILED"
    status_code = 500

    def __init__(self, original_error: str, refund_error: str, *, spend_transaction_id: str):
        super().__init__(
            "Enhancement failed and your credits could not be restored automatically. "
            "Please contact support with the reference below.",
            refunded=False,
            details={
                "original_error": original_error,
                "refund_error": refund_error,
                "spend_transaction_id": spend_transaction_id,
            },
        )
        self.original_error = original_error
        self.refund_error = refund_error
        self.spend_transaction_id = spend_transaction_id
