import asyncio
import logging
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from services import credits, enhancement, ledger_store
from services.enhancement import run_enhancement
from services.enhancer import EnhancementError, EnhancementResult
from services.errors import (
    DuplicateRequest,
    EnhancementFailed,
    InsufficientCredits,
    InvalidInput,
    LedgerUnavailable,
    RefundFailed,
)
from services.quota_refresher import refresh_date


USER_ID = "orchestrator-user"


class FakeEnhancer:
    def __init__(
        self,
        *,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        result: Optional[EnhancementResult] = None,
    ):
        self.error = error
        self.delay = delay
        self.result = result
        self.calls: List[str] = []
        self.started = asyncio.Event()

    async def enhance(self, prompt: str, options: Dict[str, Any]) -> EnhancementResult:
        self.calls.append(prompt)
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return EnhancementResult(text=f"Act as an expert. {prompt}", quality_score=0.82, metadata={"domain": "general"})


async def _open_with_balance(session_maker, balance=5):
    async with session_maker() as session:
        await ledger_store.open_account(session, USER_ID, today=refresh_date(), daily_quota=balance)


async def _state(session_maker):
    async with session_maker() as session:
        account = await ledger_store.get_account(session, USER_ID)
        result = await session.execute(
            select(CreditTransaction).where(CreditTransaction.user_id == USER_ID)
        )
        entries = list(result.scalars().all())
    spends = [entry for entry in entries if entry.kind == "spend"]
    refunds = [entry for entry in entries if entry.kind == "refund"]
    return account.balance, spends, refunds, entries


@pytest.mark.asyncio
async def test_successful_enhancement_keeps_the_spend(session_maker):
    await _open_with_balance(session_maker, 5)
    enhancer = FakeEnhancer()

    result = await run_enhancement(session_maker, USER_ID, "hello", {"domain": "general"}, enhancer=enhancer)

    assert result["success"] is True
    assert result["enhanced_text"] == "Act as an expert. hello"
    assert result["quality_score"] == pytest.approx(0.82)
    assert result["credits"]["charged"] == 1
    assert result["credits"]["balance_after"] == 4
    assert enhancer.calls == ["hello"]

    balance, spends, refunds, _ = await _state(session_maker)
    assert balance == 4
    assert len(spends) == 1
    assert spends[0].id == result["credits"]["transaction_id"]
    assert spends[0].reason == credits.PROMPT_ENHANCEMENT_REASON
    assert refunds == []


@pytest.mark.asyncio
async def test_remote_failure_refunds_the_spend(session_maker):
    await _open_with_balance(session_maker, 5)
    enhancer = FakeEnhancer(error=EnhancementError("upstream 500"))

    with pytest.raises(EnhancementFailed) as exc_info:
        await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer)

    assert exc_info.value.refunded is True
    assert not isinstance(exc_info.value, RefundFailed)
    assert "upstream 500" in exc_info.value.message

    balance, spends, refunds, _ = await _state(session_maker)
    assert balance == 5
    assert len(spends) == 1
    assert len(refunds) == 1
    assert refunds[0].related_transaction_id == spends[0].id
    assert refunds[0].amount == 1
    assert refunds[0].reason == credits.REFUND_FAILED_ENHANCEMENT_REASON
    assert exc_info.value.details["refund_transaction_id"] == refunds[0].id


@pytest.mark.asyncio
async def test_timeout_is_treated_as_failure_and_refunded(session_maker, monkeypatch):
    await _open_with_balance(session_maker, 5)
    monkeypatch.setattr(settings, "ENHANCEMENT_TIMEOUT_SECONDS", 0.05)
    enhancer = FakeEnhancer(delay=2.0)

    with pytest.raises(EnhancementFailed) as exc_info:
        await run_enhancement(session_maker, USER_ID, "slow prompt", enhancer=enhancer)

    assert exc_info.value.refunded is True
    assert "timed out" in exc_info.value.message
    balance, spends, refunds, _ = await _state(session_maker)
    assert balance == 5
    assert len(spends) == len(refunds) == 1


@pytest.mark.asyncio
async def test_empty_provider_result_is_refunded(session_maker):
    await _open_with_balance(session_maker, 5)
    enhancer = FakeEnhancer(result=EnhancementResult(text="   ", quality_score=0.0))

    with pytest.raises(EnhancementFailed):
        await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer)

    balance, _, refunds, _ = await _state(session_maker)
    assert balance == 5
    assert len(refunds) == 1


@pytest.mark.asyncio
async def test_failed_refund_is_surfaced_and_logged_critical(session_maker, monkeypatch, caplog):
    await _open_with_balance(session_maker, 5)
    enhancer = FakeEnhancer(error=EnhancementError("upstream 500"))

    async def broken_refund(*args, **kwargs):
        raise LedgerUnavailable("Credit ledger is unavailable (refund).")

    monkeypatch.setattr(enhancement.credits, "refund", broken_refund)

    with caplog.at_level(logging.CRITICAL, logger="services.enhancement"):
        with pytest.raises(RefundFailed) as exc_info:
            await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer)

    error = exc_info.value
    assert error.refunded is False
    assert error.details["refunded"] is False
    assert "upstream 500" in error.original_error
    assert "contact support" in error.message
    assert any(record.levelno == logging.CRITICAL for record in caplog.records)

    balance, spends, refunds, _ = await _state(session_maker)
    assert balance == 4
    assert error.spend_transaction_id == spends[0].id
    assert refunds == []


@pytest.mark.asyncio
async def test_prompt_length_boundary(session_maker):
    await _open_with_balance(session_maker, 5)
    enhancer = FakeEnhancer()

    with pytest.raises(InvalidInput):
        await run_enhancement(session_maker, USER_ID, "x" * 2001, enhancer=enhancer)
    _, spends, _, entries = await _state(session_maker)
    assert spends == []
    assert len(entries) == 1
    assert enhancer.calls == []

    result = await run_enhancement(session_maker, USER_ID, "x" * 2000, enhancer=enhancer)
    assert result["credits"]["balance_after"] == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "   \n", None, 42])
async def test_missing_prompt_is_rejected_before_the_ledger(session_maker, prompt):
    enhancer = FakeEnhancer()
    # no account exists: any ledger access would raise AccountNotFound instead
    with pytest.raises(InvalidInput):
        await run_enhancement(session_maker, USER_ID, prompt, enhancer=enhancer)
    assert enhancer.calls == []


@pytest.mark.asyncio
async def test_insufficient_credits_mutates_nothing(session_maker):
    await _open_with_balance(session_maker, 1)
    async with session_maker() as session:
        await credits.spend(session, USER_ID, 1, "prompt_enhancement")
    enhancer = FakeEnhancer()

    with pytest.raises(InsufficientCredits):
        await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer)

    balance, spends, _, _ = await _state(session_maker)
    assert balance == 0
    assert len(spends) == 1
    assert enhancer.calls == []


@pytest.mark.asyncio
async def test_spend_race_lost_after_balance_check(session_maker, monkeypatch):
    await _open_with_balance(session_maker, 1)
    async with session_maker() as session:
        await credits.spend(session, USER_ID, 1, "prompt_enhancement")

    async def stale_balance(*args, **kwargs):
        return 1

    monkeypatch.setattr(enhancement.credits, "balance", stale_balance)
    enhancer = FakeEnhancer()

    with pytest.raises(InsufficientCredits):
        await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer)
    assert enhancer.calls == []


@pytest.mark.asyncio
async def test_concurrent_enhancements_on_last_credit(session_maker):
    await _open_with_balance(session_maker, 1)
    enhancer = FakeEnhancer(delay=0.05)

    results = await asyncio.gather(
        run_enhancement(session_maker, USER_ID, "first", enhancer=enhancer),
        run_enhancement(session_maker, USER_ID, "second", enhancer=enhancer),
        return_exceptions=True,
    )
    assert sum(1 for result in results if isinstance(result, dict)) == 1
    assert sum(1 for result in results if isinstance(result, InsufficientCredits)) == 1

    balance, spends, _, _ = await _state(session_maker)
    assert balance == 0
    assert len(spends) == 1


@pytest.mark.asyncio
async def test_repeated_request_id_is_charged_once(session_maker):
    await _open_with_balance(session_maker, 5)
    enhancer = FakeEnhancer()

    await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer, request_id="req-0001")
    with pytest.raises(DuplicateRequest):
        await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer, request_id="req-0001")

    balance, spends, _, _ = await _state(session_maker)
    assert balance == 4
    assert len(spends) == 1
    assert len(enhancer.calls) == 1


@pytest.mark.asyncio
async def test_unconfirmed_spend_that_landed_is_not_repeated(session_maker, monkeypatch):
    await _open_with_balance(session_maker, 5)
    real_spend = credits.spend

    async def spend_then_drop_connection(*args, **kwargs):
        await real_spend(*args, **kwargs)
        raise LedgerUnavailable("connection dropped after commit")

    monkeypatch.setattr(enhancement.credits, "spend", spend_then_drop_connection)
    enhancer = FakeEnhancer()

    result = await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer)

    balance, spends, _, _ = await _state(session_maker)
    assert result["credits"]["transaction_id"] == spends[0].id
    assert balance == 4
    assert len(spends) == 1


@pytest.mark.asyncio
async def test_unconfirmed_spend_that_did_not_land_is_reported(session_maker, monkeypatch):
    await _open_with_balance(session_maker, 5)

    async def unreachable_spend(*args, **kwargs):
        raise LedgerUnavailable("Credit ledger is unavailable (spend).") from OperationalError(
            "UPDATE credit_accounts", {}, Exception("timeout")
        )

    monkeypatch.setattr(enhancement.credits, "spend", unreachable_spend)
    enhancer = FakeEnhancer()

    with pytest.raises(LedgerUnavailable):
        await run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer)

    balance, spends, _, _ = await _state(session_maker)
    assert balance == 5
    assert spends == []
    assert enhancer.calls == []


@pytest.mark.asyncio
async def test_caller_cancellation_after_spend_still_reconciles(session_maker):
    await _open_with_balance(session_maker, 5)
    enhancer = FakeEnhancer(error=EnhancementError("upstream 503"), delay=0.2)

    caller = asyncio.create_task(run_enhancement(session_maker, USER_ID, "hello", enhancer=enhancer))
    await asyncio.wait_for(enhancer.started.wait(), timeout=5)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    for _ in range(100):
        _, _, refunds, _ = await _state(session_maker)
        if refunds:
            break
        await asyncio.sleep(0.05)

    balance, spends, refunds, _ = await _state(session_maker)
    assert len(spends) == 1
    assert len(refunds) == 1
    assert balance == 5
