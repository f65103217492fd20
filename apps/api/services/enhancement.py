"""Paid prompt enhancement: validate, charge, invoke the provider, refund on failure."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional
import uuid

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from services import credits
from services.enhancer import EnhancementError, EnhancementResult, PromptEnhancer
from services.errors import (
    DuplicateRequest,
    EnhancementFailed,
    InsufficientCredits,
    InvalidInput,
    LedgerUnavailable,
    RefundFailed,
)
from services.ledger_store import LedgerWrite


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnhancementAttempt:
    """Pairs one request with the single spend it may be refunded against."""

    user_id: str
    prompt: str
    request_id: str
    spend_transaction_id: str
    cost: int


def enhancement_cost() -> int:
    return max(int(settings.ENHANCEMENT_CREDIT_COST), 1)


def spend_key_for(request_id: str) -> str:
    return f"enhance:{request_id}"


def validate_prompt(prompt: Any) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidInput("Prompt is required and must be a non-empty string.")
    max_length = int(settings.MAX_PROMPT_LENGTH)
    if len(prompt) > max_length:
        raise InvalidInput(
            f"Prompt is too long ({len(prompt)} characters, maximum {max_length}).",
            {"length": len(prompt), "max_length": max_length},
        )
    return prompt.strip()


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "enhancement provider timed out"
    return str(exc) or exc.__class__.__name__


async def _recover_unknown_spend(
    session_maker: async_sessionmaker,
    user_id: str,
    spend_key: str,
    failure: LedgerUnavailable,
) -> LedgerWrite:
    """Decide whether a spend whose commit could not be confirmed actually landed.

    The spend is never re-issued here; the ledger is only queried for it.
    """
    try:
        async with session_maker() as db:
            entry = await credits.find_spend_by_key(db, user_id, spend_key)
    except LedgerUnavailable:
        raise failure
    if entry is None:
        raise failure
    logger.warning("Spend for user %s confirmed after ledger error (tx %s)", user_id, entry.id)
    return LedgerWrite(new_balance=entry.balance_after, transaction_id=entry.id)


async def _charge(
    session_maker: async_sessionmaker,
    user_id: str,
    cost: int,
    request_id: str,
) -> LedgerWrite:
    spend_key = spend_key_for(request_id)
    try:
        async with session_maker() as db:
            write = await credits.spend(
                db,
                user_id,
                cost,
                credits.PROMPT_ENHANCEMENT_REASON,
                idempotency_key=spend_key,
            )
    except InsufficientCredits:
        logger.warning("Spend race lost for user %s (request %s)", user_id, request_id)
        raise
    except LedgerUnavailable as exc:
        return await _recover_unknown_spend(session_maker, user_id, spend_key, exc)

    if write.replayed:
        raise DuplicateRequest(
            "This enhancement request was already charged.",
            {"request_id": request_id, "spend_transaction_id": write.transaction_id},
        )
    return write


async def _compensate(
    session_maker: async_sessionmaker,
    attempt: EnhancementAttempt,
    failure: BaseException,
) -> None:
    reason = _describe_failure(failure)
    try:
        async with session_maker() as db:
            refund_write = await credits.refund(
                db,
                attempt.user_id,
                attempt.cost,
                credits.REFUND_FAILED_ENHANCEMENT_REASON,
                attempt.spend_transaction_id,
            )
    except Exception as refund_exc:
        logger.critical(
            "REFUND FAILED user=%s request=%s spend=%s cost=%s original_error=%s refund_error=%s",
            attempt.user_id,
            attempt.request_id,
            attempt.spend_transaction_id,
            attempt.cost,
            reason,
            refund_exc,
        )
        raise RefundFailed(
            reason,
            _describe_failure(refund_exc),
            spend_transaction_id=attempt.spend_transaction_id,
        ) from failure

    logger.warning(
        "Enhancement failed for user %s (request %s): %s; refunded spend %s with %s",
        attempt.user_id,
        attempt.request_id,
        reason,
        attempt.spend_transaction_id,
        refund_write.transaction_id,
    )
    raise EnhancementFailed(
        f"Prompt enhancement failed: {reason}",
        refunded=True,
        details={
            "request_id": attempt.request_id,
            "spend_transaction_id": attempt.spend_transaction_id,
            "refund_transaction_id": refund_write.transaction_id,
            "balance_after": refund_write.new_balance,
        },
    ) from failure


async def _charge_invoke_reconcile(
    session_maker: async_sessionmaker,
    user_id: str,
    prompt: str,
    options: Dict[str, Any],
    enhancer: PromptEnhancer,
    request_id: str,
    cost: int,
) -> Dict[str, Any]:
    spend_write = await _charge(session_maker, user_id, cost, request_id)
    attempt = EnhancementAttempt(
        user_id=user_id,
        prompt=prompt,
        request_id=request_id,
        spend_transaction_id=spend_write.transaction_id,
        cost=cost,
    )

    try:
        result = await asyncio.wait_for(
            enhancer.enhance(prompt, options),
            timeout=float(settings.ENHANCEMENT_TIMEOUT_SECONDS),
        )
        if not isinstance(result, EnhancementResult) or not (result.text or "").strip():
            raise EnhancementError("Enhancement provider returned an empty result")
    except Exception as exc:
        await _compensate(session_maker, attempt, exc)
        raise

    logger.info(
        "enhancement_completed user=%s request=%s spend=%s balance_after=%s",
        user_id,
        request_id,
        spend_write.transaction_id,
        spend_write.new_balance,
    )
    return {
        "success": True,
        "request_id": request_id,
        "enhanced_text": result.text,
        "quality_score": result.quality_score,
        "metadata": result.metadata,
        "credits": {
            "charged": cost,
            "balance_after": spend_write.new_balance,
            "transaction_id": spend_write.transaction_id,
        },
    }


def _log_detached_outcome(task: "asyncio.Task[Dict[str, Any]]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("Enhancement task finished with %s: %s", exc.__class__.__name__, exc)


async def run_enhancement(
    session_maker: async_sessionmaker,
    user_id: str,
    prompt: Any,
    options: Optional[Dict[str, Any]] = None,
    *,
    enhancer: PromptEnhancer,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Run one paid enhancement for ``user_id``.

    Invalid prompts and insufficient balances are rejected before anything is
    written. Once the spend is attempted the remaining steps run to
    completion even if the caller is cancelled, so a debit is always either
    kept with a delivered result or refunded.
    """
    clean_prompt = validate_prompt(prompt)
    cost = enhancement_cost()
    resolved_request_id = request_id or str(uuid.uuid4())

    async with session_maker() as db:
        available = await credits.balance(db, user_id)
    if available < cost:
        raise InsufficientCredits(required=cost, available=available)

    task = asyncio.ensure_future(
        _charge_invoke_reconcile(
            session_maker,
            user_id,
            clean_prompt,
            dict(options or {}),
            enhancer,
            resolved_request_id,
            cost,
        )
    )
    task.add_done_callback(_log_detached_outcome)
    return await asyncio.shield(task)
