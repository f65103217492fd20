"""Credit balance, history, refresh and spend endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_account_context
from services import credits

router = APIRouter()
logger = logging.getLogger(__name__)

class SpendRequest(BaseModel):
    user_id: Optional[str] = None
    amount: int = Field(default=1, ge=1, le=10000)
    reason: str = Field(default=credits.PROMPT_ENHANCEMENT_REASON, min_length=1, max_length=120)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)

@router.get("/balance")
async def get_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    summary = await credits.get_credit_summary(db, scoped_user_id)
    return {
        "success": True,
        "balance": summary["balance"],
        "daily_quota": summary["daily_quota"],
        "last_refresh_date": summary["last_refresh_date"],
        "next_refresh_date": summary["next_refresh_date"],
    }

@router.get("/summary")
async def get_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await credits.get_credit_summary(db, scoped_user_id)

@router.get("/history")
async def get_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=settings.CREDIT_HISTORY_LIMIT, ge=1, le=500),
    auth: AuthContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    entries = await credits.get_credit_history(db, scoped_user_id, limit=limit)
    return {"success": True, "transactions": entries}

@router.post("/spend")
async def spend_credits(
    request: SpendRequest,
    auth: AuthContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    write = await credits.spend(
        db,
        scoped_user_id,
        request.amount,
        request.reason,
        idempotency_key=credits.scoped_idempotency_key("client", request.idempotency_key),
    )
    return {
        "success": True,
        "transaction_id": write.transaction_id,
        "balance": write.new_balance,
        "replayed": write.replayed,
    }

@router.post("/refresh")
async def refresh_credits(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    result = await credits.refresh(db, scoped_user_id)
    return {
        "success": True,
        "applied": result.applied,
        "balance": result.new_balance,
        "transaction_id": result.transaction_id,
    }
