"""Credit ledger storage: account rows plus the append-only transaction log.

Every mutation is a read, version compare-and-set and transaction insert
committed together. A writer that loses the version race re-reads and tries
again, so two writers on the same account are serialized while different
accounts never touch the same row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, List, Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.credit_transaction import TRANSACTION_KINDS, CreditTransaction
from services.errors import AccountNotFound, DuplicateRequest, InsufficientBalance, LedgerConflict


logger = logging.getLogger(__name__)

ACCOUNT_OPENED_REASON = "account_opened"


@dataclass(frozen=True)
class LedgerWrite:
    new_balance: int
    transaction_id: str
    replayed: bool = False


@dataclass(frozen=True)
class RefreshWrite:
    applied: bool
    new_balance: int
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class _AccountState:
    balance: int
    version: int
    last_refresh_date: date


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _max_attempts() -> int:
    return max(int(settings.LEDGER_MAX_WRITE_ATTEMPTS), 1)


async def _load_account(db: AsyncSession, user_id: str) -> Optional[CreditAccount]:
    result = await db.execute(
        select(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _read_state(db: AsyncSession, user_id: str) -> _AccountState:
    result = await db.execute(
        select(
            CreditAccount.balance,
            CreditAccount.version,
            CreditAccount.last_refresh_date,
        ).where(CreditAccount.user_id == user_id)
    )
    row = result.one_or_none()
    if row is None:
        raise AccountNotFound(user_id)
    return _AccountState(balance=int(row.balance), version=int(row.version), last_refresh_date=row.last_refresh_date)


async def _compare_and_set(
    db: AsyncSession,
    user_id: str,
    expected_version: int,
    *conditions: Any,
    **values: Any,
) -> bool:
    result = await db.execute(
        update(CreditAccount)
        .where(
            CreditAccount.user_id == user_id,
            CreditAccount.version == expected_version,
            *conditions,
        )
        .values(version=expected_version + 1, updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _append_transaction(
    db: AsyncSession,
    *,
    user_id: str,
    kind: str,
    amount: int,
    balance_after: int,
    reason: Optional[str],
    related_transaction_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> CreditTransaction:
    if kind not in TRANSACTION_KINDS:
        raise ValueError(f"Unknown transaction kind: {kind}")
    entry = CreditTransaction(
        user_id=user_id,
        kind=kind,
        amount=int(amount),
        balance_after=int(balance_after),
        reason=reason,
        related_transaction_id=related_transaction_id,
        idempotency_key=idempotency_key,
        created_at=_utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def open_account(
    db: AsyncSession,
    user_id: str,
    *,
    today: date,
    daily_quota: int,
) -> CreditAccount:
    """Return the user's account, creating it funded to the quota on first contact."""
    existing = await _load_account(db, user_id)
    if existing is not None:
        return existing

    account = CreditAccount(
        user_id=user_id,
        balance=int(daily_quota),
        daily_quota=int(daily_quota),
        last_refresh_date=today,
        version=1,
        created_at=_utcnow(),
    )
    db.add(account)
    try:
        await db.flush()
        await _append_transaction(
            db,
            user_id=user_id,
            kind="daily_refresh",
            amount=int(daily_quota),
            balance_after=int(daily_quota),
            reason=ACCOUNT_OPENED_REASON,
            idempotency_key=ACCOUNT_OPENED_REASON,
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _load_account(db, user_id)
        if existing is None:
            raise
        return existing
    except Exception:
        await db.rollback()
        raise

    logger.info("credit_account_opened user=%s quota=%s", user_id, daily_quota)
    return account


async def get_account(db: AsyncSession, user_id: str) -> CreditAccount:
    account = await _load_account(db, user_id)
    if account is None:
        raise AccountNotFound(user_id)
    return account


async def find_transaction_by_key(
    db: AsyncSession,
    user_id: str,
    idempotency_key: str,
) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def get_transaction(
    db: AsyncSession,
    user_id: str,
    transaction_id: str,
) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.id == transaction_id,
        )
    )
    return result.scalar_one_or_none()


async def find_refund_for(
    db: AsyncSession,
    user_id: str,
    spend_transaction_id: str,
) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.kind == "refund",
            CreditTransaction.related_transaction_id == spend_transaction_id,
        )
    )
    return result.scalars().first()


async def list_transactions(
    db: AsyncSession,
    user_id: str,
    *,
    limit: Optional[int] = None,
    kinds: Optional[Sequence[str]] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[CreditTransaction]:
    """Newest-first transactions for one user."""
    query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    if kinds:
        query = query.where(CreditTransaction.kind.in_(list(kinds)))
    if start is not None:
        query = query.where(CreditTransaction.created_at >= start)
    if end is not None:
        query = query.where(CreditTransaction.created_at <= end)
    query = query.order_by(CreditTransaction.created_at.desc())
    if limit is not None:
        query = query.limit(max(int(limit), 1))
    result = await db.execute(query)
    return list(result.scalars().all())


async def transaction_sum(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def list_account_ids(db: AsyncSession) -> List[str]:
    result = await db.execute(select(CreditAccount.user_id).order_by(CreditAccount.user_id))
    return [str(user_id) for user_id in result.scalars().all()]


def _replay(
    existing: CreditTransaction,
    kind: str,
    related_transaction_id: Optional[str],
) -> LedgerWrite:
    if existing.kind != kind or existing.related_transaction_id != related_transaction_id:
        raise DuplicateRequest(
            "Idempotency key was already used by a different transaction.",
            {"idempotency_key": existing.idempotency_key, "transaction_id": existing.id, "kind": existing.kind},
        )
    return LedgerWrite(new_balance=existing.balance_after, transaction_id=existing.id, replayed=True)


async def _apply_delta_once(
    db: AsyncSession,
    user_id: str,
    amount: int,
    kind: str,
    reason: Optional[str],
    related_transaction_id: Optional[str],
    idempotency_key: Optional[str],
) -> LedgerWrite:
    for attempt in range(_max_attempts()):
        state = await _read_state(db, user_id)
        next_balance = state.balance + amount
        if amount < 0 and next_balance < 0:
            raise InsufficientBalance(user_id, state.balance, amount)
        if not await _compare_and_set(db, user_id, state.version, balance=next_balance):
            logger.debug("ledger_version_conflict user=%s attempt=%s", user_id, attempt + 1)
            continue
        entry = await _append_transaction(
            db,
            user_id=user_id,
            kind=kind,
            amount=amount,
            balance_after=next_balance,
            reason=reason,
            related_transaction_id=related_transaction_id,
            idempotency_key=idempotency_key,
        )
        await db.commit()
        return LedgerWrite(new_balance=next_balance, transaction_id=entry.id)

    raise LedgerConflict(
        f"Could not apply {kind} for user {user_id} after {_max_attempts()} attempts.",
        {"user_id": user_id, "kind": kind},
    )


async def apply_delta(
    db: AsyncSession,
    user_id: str,
    amount: int,
    kind: str,
    reason: Optional[str],
    related_transaction_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> LedgerWrite:
    """Atomically move a balance by ``amount`` and append the matching transaction.

    A debit that would take the balance below zero raises
    ``InsufficientBalance`` and writes nothing. When ``idempotency_key`` was
    already used by this user for the same kind of write, the original
    transaction is returned with ``replayed=True`` and nothing is written; a
    key held by a different kind of write raises ``DuplicateRequest``.
    """
    amount = int(amount)
    if idempotency_key:
        existing = await find_transaction_by_key(db, user_id, idempotency_key)
        if existing is not None:
            return _replay(existing, kind, related_transaction_id)

    try:
        write = await _apply_delta_once(
            db, user_id, amount, kind, reason, related_transaction_id, idempotency_key
        )
    except IntegrityError:
        await db.rollback()
        if idempotency_key:
            existing = await find_transaction_by_key(db, user_id, idempotency_key)
            if existing is not None:
                logger.info("ledger_duplicate_resolved user=%s key=%s", user_id, idempotency_key)
                return _replay(existing, kind, related_transaction_id)
        raise
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "ledger_write user=%s kind=%s amount=%s balance_after=%s tx=%s",
        user_id,
        kind,
        amount,
        write.new_balance,
        write.transaction_id,
    )
    return write


async def set_balance_if_stale(
    db: AsyncSession,
    user_id: str,
    target_balance: int,
    as_of_date: date,
    kind: str = "daily_refresh",
    reason: str = "daily_refresh",
) -> RefreshWrite:
    """Set the balance to ``target_balance`` once per ``as_of_date``.

    The write is guarded by both ``last_refresh_date < as_of_date`` and the row
    version, so of several concurrent callers for the same date exactly one
    applies. The appended transaction records the signed difference from the
    previous balance, keeping the log sum equal to the balance.
    """
    target_balance = int(target_balance)
    if target_balance < 0:
        raise ValueError("target_balance must be non-negative")

    try:
        for _ in range(_max_attempts()):
            state = await _read_state(db, user_id)
            if state.last_refresh_date >= as_of_date:
                await db.commit()
                return RefreshWrite(applied=False, new_balance=state.balance)
            swapped = await _compare_and_set(
                db,
                user_id,
                state.version,
                CreditAccount.last_refresh_date < as_of_date,
                balance=target_balance,
                last_refresh_date=as_of_date,
            )
            if not swapped:
                continue
            entry = await _append_transaction(
                db,
                user_id=user_id,
                kind=kind,
                amount=target_balance - state.balance,
                balance_after=target_balance,
                reason=reason,
            )
            await db.commit()
            logger.info(
                "ledger_refresh user=%s date=%s previous=%s balance=%s",
                user_id,
                as_of_date.isoformat(),
                state.balance,
                target_balance,
            )
            return RefreshWrite(applied=True, new_balance=target_balance, transaction_id=entry.id)
        raise LedgerConflict(
            f"Could not refresh user {user_id} after {_max_attempts()} attempts.",
            {"user_id": user_id, "kind": kind},
        )
    except Exception:
        await db.rollback()
        raise
