"""Daily quota refresh: lazy per-request top-up and the all-accounts sweep."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import async_session_maker
from models.credit_account import CreditAccount
from services.ledger_store import RefreshWrite, get_account, list_account_ids, set_balance_if_stale


logger = logging.getLogger(__name__)

DAILY_REFRESH_REASON = "daily_refresh"


def refresh_date(now: Optional[datetime] = None) -> date:
    """Calendar date that governs refreshes, in the configured timezone."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(ZoneInfo(settings.CREDIT_REFRESH_TIMEZONE)).date()


async def refresh_account(db: AsyncSession, user_id: str, today: Optional[date] = None) -> RefreshWrite:
    """Reset the balance to the daily quota if it has not been reset today.

    The balance is set to the quota, not topped up by it: credits left over
    from an earlier day are forfeited.
    """
    as_of = today or refresh_date()
    account = await get_account(db, user_id)
    return await set_balance_if_stale(
        db,
        user_id,
        target_balance=int(account.daily_quota),
        as_of_date=as_of,
        kind="daily_refresh",
        reason=DAILY_REFRESH_REASON,
    )


async def ensure_fresh(db: AsyncSession, user_id: str, today: Optional[date] = None) -> CreditAccount:
    await refresh_account(db, user_id, today)
    return await get_account(db, user_id)


async def refresh_all(
    session_maker: Optional[async_sessionmaker] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Refresh every known account once for ``today``.

    Each account is refreshed in its own session. A failing account is
    counted and skipped; it will be refreshed lazily on its next spend.
    """
    maker = session_maker or async_session_maker
    as_of = today or refresh_date()
    refreshed = 0
    skipped = 0
    errors = 0
    error_details: List[str] = []

    async with maker() as session:
        user_ids = await list_account_ids(session)

    for user_id in user_ids:
        try:
            async with maker() as session:
                account = await get_account(session, user_id)
                result = await set_balance_if_stale(
                    session,
                    user_id,
                    target_balance=int(account.daily_quota),
                    as_of_date=as_of,
                    kind="daily_refresh",
                    reason=DAILY_REFRESH_REASON,
                )
        except Exception as exc:
            errors += 1
            error_details.append(f"{user_id}:{exc}")
            logger.warning("Daily refresh failed for user %s: %s", user_id, exc)
            continue
        if result.applied:
            refreshed += 1
        else:
            skipped += 1

    logger.info(
        "daily_refresh_sweep date=%s accounts=%s refreshed=%s skipped=%s errors=%s",
        as_of.isoformat(),
        len(user_ids),
        refreshed,
        skipped,
        errors,
    )
    return {
        "date": as_of.isoformat(),
        "refreshed": refreshed,
        "skipped": skipped,
        "errors": errors,
        "error_details": error_details[:20],
    }
