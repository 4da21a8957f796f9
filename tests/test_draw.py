# -*- coding: utf-8 -*-
"""Unit tests for DrawEngine: feasibility, payout retries and resets."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from draw import DrawEngine, pick_winner
from state import RoundStatus
from tests.fakes import PAYOUT, ledger_error


@pytest.fixture
def full_round(state, players):
    for p in players:
        state.add_participant(p)
    return state


def test_pick_winner_returns_a_participant(players) -> None:
    for _ in range(50):
        assert pick_winner(players) in players


def test_pick_winner_rejects_empty_round() -> None:
    with pytest.raises(ValueError):
        pick_winner([])


async def test_successful_draw_pays_winner_once(draw_engine, full_round, fake_ledger, observer, ctx) -> None:
    await ctx.notifier.connect(observer, ctx.view())

    status = await draw_engine.run_locked()

    assert status == RoundStatus.COMPLETE
    winner = full_round.round.winner
    assert winner in full_round.round.participants
    assert fake_ledger.submitted == [(winner, PAYOUT)]
    assert fake_ledger.confirmed == [("payout-sig-1", 250)]
    assert full_round.history.past_winners == [winner]
    statuses = [msg["status"] for msg in observer.received[1:]]
    assert statuses == ["Processing", "Complete"]


async def test_insufficient_funds_moves_round_to_error(draw_engine, full_round, fake_ledger, observer, ctx) -> None:
    fake_ledger.balance = PAYOUT + 4999
    await ctx.notifier.connect(observer, ctx.view())

    status = await draw_engine.run_locked()

    assert status == RoundStatus.ERROR
    assert fake_ledger.submitted == []
    assert "Insufficient funds for payout" in full_round.round.last_error
    assert full_round.round.winner is None
    assert full_round.history.past_winners == []
    last = observer.received[-1]
    assert last["status"] == "Error"
    assert "Insufficient funds for payout" in last["error"]


async def test_fee_estimate_failure_falls_back_to_minimum_fee(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.fee = ledger_error("cannot price message")
    fake_ledger.balance = PAYOUT + 5000

    assert await draw_engine.run_locked() == RoundStatus.COMPLETE


async def test_unpriced_message_uses_minimum_fee(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.fee = None
    fake_ledger.balance = PAYOUT + 4999

    assert await draw_engine.run_locked() == RoundStatus.ERROR
    assert fake_ledger.submitted == []


async def test_balance_failure_at_draw_moves_round_to_error(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.balance = ledger_error()

    assert await draw_engine.run_locked() == RoundStatus.ERROR
    assert full_round.round.last_error.startswith("Error selecting winner:")


async def test_sign_failure_retried_until_success(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.sign_errors = [ledger_error(), ledger_error()]

    assert await draw_engine.run_locked() == RoundStatus.COMPLETE
    assert len(fake_ledger.submitted) == 1
    assert full_round.round.payout_signatures == ["payout-sig-1"]


async def test_exhausted_sign_attempts_move_round_to_error(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.sign_errors = [ledger_error()] * 3

    assert await draw_engine.run_locked() == RoundStatus.ERROR
    assert fake_ledger.submitted == []
    assert "Payout failed after 3 attempts" in full_round.round.last_error


async def test_confirm_passes_last_valid_block_height(draw_engine, full_round, fake_ledger) -> None:
    assert await draw_engine.run_locked() == RoundStatus.COMPLETE
    assert fake_ledger.confirmed == [("payout-sig-1", 250)]


async def test_failed_send_within_validity_is_not_resubmitted(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.submit_errors = [ledger_error("node rejected request")]

    assert await draw_engine.run_locked() == RoundStatus.ERROR
    assert len(fake_ledger.submitted) == 1
    assert full_round.round.payout_signatures == ["payout-sig-1"]
    assert "an earlier payout may still land" in full_round.round.last_error


async def test_confirm_timeout_on_unlanded_transfer_sends_nothing_more(draw_engine, full_round, fake_ledger) -> None:
    # transfer not visible yet but its blockhash is still valid, so it may land later
    fake_ledger.confirm_errors = [ledger_error("httpx.ReadTimeout while confirming")]

    assert await draw_engine.run_locked() == RoundStatus.ERROR
    assert len(fake_ledger.submitted) == 1
    assert full_round.round.payout_signatures == ["payout-sig-1"]
    assert full_round.history.past_winners == []


async def test_expired_unlanded_transfer_is_resubmitted(draw_engine, full_round, fake_ledger) -> None:
    async def _send(signed):
        fake_ledger.submitted.append((signed.recipient, signed.lamports))
        if len(fake_ledger.submitted) == 1:
            # the cluster moves past the transfer's validity window
            fake_ledger.block_height = 300
            raise ledger_error("send timed out")
        return signed.signature

    fake_ledger.send_transfer = AsyncMock(side_effect=_send)

    assert await draw_engine.run_locked() == RoundStatus.COMPLETE
    assert len(fake_ledger.submitted) == 2
    assert full_round.round.payout_signatures == ["payout-sig-1", "payout-sig-2"]


async def test_block_height_failure_blocks_resubmission(draw_engine, full_round, fake_ledger) -> None:
    async def _confirm(signature, last_valid_block_height=None):
        fake_ledger.block_height = ledger_error("height unavailable")
        raise ledger_error("confirmation timed out")

    fake_ledger.confirm = AsyncMock(side_effect=_confirm)

    assert await draw_engine.run_locked() == RoundStatus.ERROR
    assert len(fake_ledger.submitted) == 1


async def test_landed_signature_is_not_paid_twice(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.confirm_errors = [ledger_error("confirmation timed out")]
    fake_ledger.landed["payout-sig-1"] = True

    assert await draw_engine.run_locked() == RoundStatus.COMPLETE
    assert len(fake_ledger.submitted) == 1


async def test_unknown_payout_status_never_resubmits(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.confirm_errors = [ledger_error("confirmation timed out")]
    fake_ledger.landed["payout-sig-1"] = ledger_error("status unavailable")
    fake_ledger.block_height = 1000

    assert await draw_engine.run_locked() == RoundStatus.ERROR
    assert len(fake_ledger.submitted) == 1


async def test_payout_signature_persisted_before_send(draw_engine, full_round, fake_ledger, store) -> None:
    seen = []

    async def _send(signed):
        saved = await store.load()
        seen.append((signed.signature, list(saved.round.payout_signatures), saved.round.status))
        fake_ledger.submitted.append((signed.recipient, signed.lamports))
        return signed.signature

    fake_ledger.send_transfer = AsyncMock(side_effect=_send)

    assert await draw_engine.run_locked() == RoundStatus.COMPLETE
    assert seen == [("payout-sig-1", ["payout-sig-1"], RoundStatus.PROCESSING)]


async def test_reset_keeps_history_and_dedup(draw_engine, full_round, players) -> None:
    full_round.dedup.record("sig-x")
    await draw_engine.run_locked()
    winner = full_round.round.winner

    assert await draw_engine.reset() is True

    assert full_round.status == RoundStatus.ACTIVE
    assert full_round.round.participants == []
    assert full_round.round.pool_total == 0
    assert full_round.round.winner is None
    assert full_round.history.past_winners == [winner]
    assert full_round.history.recent_depositors == list(reversed(players))
    assert "sig-x" in full_round.dedup


async def test_reset_ignores_active_round(draw_engine, state, players) -> None:
    state.add_participant(players[0])

    assert await draw_engine.reset() is False
    assert state.round.participants == [players[0]]


async def test_stale_scheduled_reset_is_ignored(draw_engine, full_round, fake_ledger) -> None:
    fake_ledger.balance = 0
    await draw_engine.run_locked()
    opened_at = full_round.round.opened_at
    await draw_engine.reset()
    full_round.round.status = RoundStatus.ERROR

    assert await draw_engine.reset(expected_opened_at=opened_at) is False


async def test_scheduled_reset_fires_after_delay(ctx, full_round) -> None:
    engine = DrawEngine(ctx, payout_amount=PAYOUT, retry_delay=0, reset_delay_complete=0.01)

    assert await engine.run_locked() == RoundStatus.COMPLETE
    await asyncio.sleep(0.1)

    assert full_round.status == RoundStatus.ACTIVE
    assert full_round.round.participants == []
