"""Credit ledger service: the only entry point for balance-affecting business actions."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, timedelta
import logging
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_account import CreditAccount
from models.credit_transaction import TRANSACTION_KINDS, CreditTransaction
from services import ledger_store
from services.errors import (
    InsufficientBalance,
    InsufficientCredits,
    InvalidInput,
    InvalidRefund,
    LedgerUnavailable,
)
from services.ledger_store import LedgerWrite, RefreshWrite
from services.quota_refresher import ensure_fresh, refresh_account, refresh_date


logger = logging.getLogger(__name__)

PROMPT_ENHANCEMENT_REASON = "prompt_enhancement"
REFUND_FAILED_ENHANCEMENT_REASON = "refund_failed_enhancement"


@contextmanager
def _ledger_errors(operation: str, user_id: str) -> Iterator[None]:
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Ledger %s failed for user %s: %s", operation, user_id, exc)
        raise LedgerUnavailable(
            f"Credit ledger is unavailable ({operation}). Please try again shortly.",
            {"operation": operation},
        ) from exc


def _positive_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInput("amount must be a whole number of credits", {"amount": amount})
    if amount <= 0:
        raise InvalidInput("amount must be greater than 0", {"amount": amount})
    return amount


def refund_key_for(spend_transaction_id: str) -> str:
    return f"refund:{spend_transaction_id}"


def scoped_idempotency_key(scope: str, key: Optional[str]) -> Optional[str]:
    """Prefix a caller-supplied key so it can never collide with a ledger-issued one."""
    if not key:
        return None
    return f"{scope}:{key}"


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "reason": entry.reason,
        "related_transaction_id": entry.related_transaction_id,
        "idempotency_key": entry.idempotency_key,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def open_account(db: AsyncSession, user_id: str, today: Optional[date] = None) -> CreditAccount:
    with _ledger_errors("open_account", user_id):
        return await ledger_store.open_account(
            db,
            user_id,
            today=today or refresh_date(),
            daily_quota=max(int(settings.DAILY_CREDIT_QUOTA), 1),
        )


async def balance(db: AsyncSession, user_id: str, today: Optional[date] = None) -> int:
    """Current balance after any due daily refresh."""
    with _ledger_errors("balance", user_id):
        account = await ensure_fresh(db, user_id, today)
        return int(account.balance)


async def refresh(db: AsyncSession, user_id: str, today: Optional[date] = None) -> RefreshWrite:
    """Apply today's refresh if it is due; ``applied`` is False when it already ran."""
    with _ledger_errors("refresh", user_id):
        return await refresh_account(db, user_id, today)


async def spend(
    db: AsyncSession,
    user_id: str,
    amount: int,
    reason: str = PROMPT_ENHANCEMENT_REASON,
    *,
    idempotency_key: Optional[str] = None,
    today: Optional[date] = None,
) -> LedgerWrite:
    debit = _positive_amount(amount)
    with _ledger_errors("spend", user_id):
        await ensure_fresh(db, user_id, today)
        try:
            return await ledger_store.apply_delta(
                db,
                user_id,
                -debit,
                "spend",
                reason,
                idempotency_key=idempotency_key,
            )
        except InsufficientBalance as exc:
            raise InsufficientCredits(required=debit, available=exc.balance) from exc


async def refund(
    db: AsyncSession,
    user_id: str,
    amount: int,
    reason: str,
    related_transaction_id: str,
) -> LedgerWrite:
    """Reverse (part of) a spend. A spend is refunded at most once.

    The refund's idempotency key is derived from the spend id, so repeating a
    refund for the same spend returns the first refund with ``replayed=True``.
    """
    credit = _positive_amount(amount)
    if not related_transaction_id:
        raise InvalidRefund("related_transaction_id is required for refunds")

    with _ledger_errors("refund", user_id):
        original = await ledger_store.get_transaction(db, user_id, related_transaction_id)
        if original is None or original.kind != "spend":
            raise InvalidRefund(
                "Refunds must reference a spend transaction owned by the same user.",
                {"related_transaction_id": related_transaction_id},
            )
        if credit > -int(original.amount):
            raise InvalidRefund(
                f"Refund of {credit} exceeds the {-int(original.amount)} credits spent.",
                {"related_transaction_id": related_transaction_id},
            )
        write = await ledger_store.apply_delta(
            db,
            user_id,
            credit,
            "refund",
            reason,
            related_transaction_id=related_transaction_id,
            idempotency_key=refund_key_for(related_transaction_id),
        )
    if write.replayed:
        logger.warning(
            "Duplicate refund ignored for user %s spend %s (existing refund %s)",
            user_id,
            related_transaction_id,
            write.transaction_id,
        )
    return write


async def add(
    db: AsyncSession,
    user_id: str,
    amount: int,
    reason: str = "bonus",
    *,
    idempotency_key: Optional[str] = None,
) -> LedgerWrite:
    """Grant credits (welcome, referral or streak bonus)."""
    credit = _positive_amount(amount)
    with _ledger_errors("add", user_id):
        return await ledger_store.apply_delta(
            db,
            user_id,
            credit,
            "bonus",
            reason,
            idempotency_key=idempotency_key,
        )


async def find_spend_by_key(db: AsyncSession, user_id: str, idempotency_key: str) -> Optional[CreditTransaction]:
    with _ledger_errors("lookup", user_id):
        entry = await ledger_store.find_transaction_by_key(db, user_id, idempotency_key)
    if entry is not None and entry.kind != "spend":
        return None
    return entry


async def get_credit_history(
    db: AsyncSession,
    user_id: str,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    resolved_limit = int(limit or settings.CREDIT_HISTORY_LIMIT)
    with _ledger_errors("history", user_id):
        entries = await ledger_store.list_transactions(db, user_id, limit=resolved_limit)
    return [serialize_transaction(entry) for entry in entries]


async def get_credit_summary(db: AsyncSession, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
    with _ledger_errors("summary", user_id):
        account = await ensure_fresh(db, user_id, today)
        entries = await ledger_store.list_transactions(db, user_id, limit=10)
    last_refresh = account.last_refresh_date
    return {
        "balance": int(account.balance),
        "daily_quota": int(account.daily_quota),
        "last_refresh_date": last_refresh.isoformat(),
        "next_refresh_date": (last_refresh + timedelta(days=1)).isoformat(),
        "refresh_timezone": settings.CREDIT_REFRESH_TIMEZONE,
        "costs": {
            PROMPT_ENHANCEMENT_REASON: max(int(settings.ENHANCEMENT_CREDIT_COST), 1),
        },
        "recent_entries": [serialize_transaction(entry) for entry in entries],
    }


async def audit_transactions(
    db: AsyncSession,
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Per-kind totals for a window plus a whole-ledger conservation check."""
    with _ledger_errors("audit", user_id):
        account = await ledger_store.get_account(db, user_id)
        entries = await ledger_store.list_transactions(db, user_id, start=start, end=end)
        ledger_sum = await ledger_store.transaction_sum(db, user_id)

    totals = {kind: 0 for kind in TRANSACTION_KINDS}
    for entry in entries:
        totals[entry.kind] = totals.get(entry.kind, 0) + int(entry.amount)

    return {
        "user_id": user_id,
        "transaction_count": len(entries),
        "totals": {
            "spent": -totals["spend"],
            "refunded": totals["refund"],
            "bonus": totals["bonus"],
            "daily_refresh": totals["daily_refresh"],
        },
        "net_change": sum(totals.values()),
        "balance": int(account.balance),
        "ledger_sum": ledger_sum,
        "consistent": ledger_sum == int(account.balance),
    }
