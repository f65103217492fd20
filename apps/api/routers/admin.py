"""Operator and scheduler endpoints guarded by the cron secret."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import get_db, get_session_maker
from routers.auth_scope import require_cron_secret
from services import credits
from services.quota_refresher import refresh_all

router = APIRouter(dependencies=[Depends(require_cron_secret)])
logger = logging.getLogger(__name__)


class GrantRequest(BaseModel):
    amount: int = Field(ge=1, le=10000)
    reason: str = Field(default="bonus", min_length=1, max_length=120)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class RefundRequest(BaseModel):
    amount: int = Field(ge=1, le=10000)
    reason: str = Field(default="operator_reconciliation", min_length=1, max_length=120)
    related_transaction_id: str = Field(min_length=1)


@router.post("/credits/refresh-all")
async def refresh_all_accounts(
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """Daily sweep; safe to call more than once per day."""
    logger.info("Starting daily credit refresh for all accounts")
    result = await refresh_all(session_maker)
    return {
        "success": True,
        **result,
        "message": f"Refreshed {result['refreshed']} accounts with {result['errors']} errors",
    }


@router.post("/credits/{user_id}/add")
async def grant_credits(
    user_id: str,
    request: GrantRequest,
    db: AsyncSession = Depends(get_db),
):
    await credits.open_account(db, user_id)
    write = await credits.add(
        db,
        user_id,
        request.amount,
        request.reason,
        idempotency_key=credits.scoped_idempotency_key("operator", request.idempotency_key),
    )
    return {
        "success": True,
        "transaction_id": write.transaction_id,
        "balance": write.new_balance,
        "replayed": write.replayed,
    }


@router.get("/credits/{user_id}/audit")
async def audit_account(
    user_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    return await credits.audit_transactions(db, user_id, start=start, end=end)


@router.post("/credits/{user_id}/refund")
async def refund_spend(
    user_id: str,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
):
    """Operator reconciliation of a spend the automatic refund did not cover."""
    write = await credits.refund(
        db,
        user_id,
        request.amount,
        request.reason,
        request.related_transaction_id,
    )
    logger.warning(
        "Operator refund for user %s spend %s (tx %s, replayed=%s)",
        user_id,
        request.related_transaction_id,
        write.transaction_id,
        write.replayed,
    )
    return {
        "success": True,
        "transaction_id": write.transaction_id,
        "balance": write.new_balance,
        "replayed": write.replayed,
    }
