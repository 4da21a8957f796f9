# draw.py
"""
Draw engine: Active -> Processing -> {Complete | Error} -> (delay) -> Active.

The round is marked Processing and persisted before anything is written to the
ledger, so a crash mid-draw stays visible. A payout is signed and its signature
persisted before it is sent. A second transfer is only signed once the earlier
one has expired without landing.
"""

from __future__ import annotations

import asyncio
import secrets
from datetime import datetime
from typing import Dict, Optional, Sequence, Tuple

import structlog

from context import LotteryContext
from errors import InsufficientFundsError, LedgerError, PayoutError
from state import TERMINAL_STATUSES, RoundStatus

log = structlog.get_logger(__name__)


def pick_winner(participants: Sequence[str]) -> str:
    """Uniform choice backed by the OS CSPRNG."""
    if not participants:
        raise ValueError("cannot draw from an empty round")
    return participants[secrets.randbelow(len(participants))]


class DrawEngine:
    def __init__(
        self,
        ctx: LotteryContext,
        payout_amount: int,
        minimum_fee: int = 5000,
        attempts: int = 3,
        retry_delay: float = 2.0,
        reset_delay_complete: float = 10.0,
        reset_delay_error: float = 30.0,
    ) -> None:
        self.ctx = ctx
        self.payout_amount = payout_amount
        self.minimum_fee = minimum_fee
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.reset_delay_complete = reset_delay_complete
        self.reset_delay_error = reset_delay_error

    # =========================================================
    # Draw
    # =========================================================
    async def run_locked(self) -> RoundStatus:
        """Run the draw for a full Active round. Caller holds the state lock."""
        state = self.ctx.state
        winner = pick_winner(state.round.participants)
        state.begin_processing(winner)
        log.info("draw_started", participants=len(state.round.participants), pending_winner=winner)
        await self.ctx.commit()

        try:
            await self._check_feasibility(winner)
            signature = await self._pay(winner)
        except Exception as e:
            log.error("draw_failed", pending_winner=winner, error=str(e))
            return await self.fail_locked(f"Error selecting winner: {e}")

        return await self.complete_locked(winner, signature)

    async def complete_locked(self, winner: str, signature: str) -> RoundStatus:
        self.ctx.state.complete(winner)
        log.info("winner_paid", winner=winner, signature=signature, amount=self.payout_amount)
        await self.ctx.commit()
        self.schedule_reset(self.reset_delay_complete)
        return RoundStatus.COMPLETE

    async def fail_locked(self, reason: str) -> RoundStatus:
        self.ctx.state.fail(reason)
        await self.ctx.commit(error=reason)
        self.schedule_reset(self.reset_delay_error)
        return RoundStatus.ERROR

    async def _check_feasibility(self, winner: str) -> None:
        balance = await self.ctx.ledger.get_balance()
        self.ctx.state.set_balance(balance)
        try:
            fee = await self.ctx.ledger.estimate_transfer_fee(winner, self.payout_amount)
        except LedgerError as e:
            log.warning("fee_estimate_failed", error=str(e), fallback=self.minimum_fee)
            fee = None
        if not fee:
            fee = self.minimum_fee

        required = self.payout_amount + fee
        if balance < required:
            raise InsufficientFundsError(balance, required)

    async def _pay(self, winner: str) -> str:
        """
        Pay `winner` once. A new transfer is only signed when no earlier one can
        still land: none landed, and the block height is past every earlier
        transfer's last valid block height.
        """
        state = self.ctx.state
        ledger = self.ctx.ledger
        expiries: Dict[str, int] = {}
        last_error: Optional[Exception] = None

        for attempt in range(1, self.attempts + 1):
            if state.round.payout_signatures:
                landed, may_resubmit = await self._settle_earlier(expiries)
                if landed:
                    return landed
                if not may_resubmit:
                    last_error = PayoutError("an earlier payout may still land")
                    if attempt < self.attempts:
                        await asyncio.sleep(self.retry_delay)
                    continue

            try:
                signed = await ledger.sign_transfer(winner, self.payout_amount)
            except LedgerError as e:
                last_error = e
                log.warning("payout_attempt_failed", attempt=attempt, stage="sign", error=str(e))
                if attempt < self.attempts:
                    await asyncio.sleep(self.retry_delay)
                continue

            # recorded before sending: a send that errors may still have reached the cluster
            state.record_payout_signature(signed.signature)
            expiries[signed.signature] = signed.last_valid_block_height
            await self.ctx.persist()

            try:
                await ledger.send_transfer(signed)
                log.info(
                    "payout_submitted",
                    attempt=attempt,
                    signature=signed.signature,
                    winner=winner,
                    last_valid_block_height=signed.last_valid_block_height,
                )
                await ledger.confirm(signed.signature, signed.last_valid_block_height)
                return signed.signature
            except LedgerError as e:
                last_error = e
                log.warning(
                    "payout_attempt_failed",
                    attempt=attempt,
                    stage=e.operation or "send",
                    signature=signed.signature,
                    error=str(e),
                )

            if attempt < self.attempts:
                await asyncio.sleep(self.retry_delay)

        if state.round.payout_signatures:
            landed, _ = await self.check_submitted()
            if landed:
                return landed
        raise PayoutError(f"Payout failed after {self.attempts} attempts: {last_error}")

    async def _settle_earlier(self, expiries: Dict[str, int]) -> Tuple[Optional[str], bool]:
        """(landed signature, whether a new transfer is safe) for the transfers already signed."""
        landed, unknown = await self.check_submitted()
        if landed or unknown:
            return landed, False

        try:
            height = await self.ctx.ledger.get_block_height()
        except LedgerError as e:
            log.warning("payout_expiry_unknown", error=str(e))
            return None, False

        live = [
            sig for sig in self.ctx.state.round.payout_signatures
            if sig not in expiries or height <= expiries[sig]
        ]
        if live:
            log.warning("payout_in_flight", signatures=live, block_height=height)
            return None, False

        # expired now, so a final status read is authoritative
        landed, unknown = await self.check_submitted()
        if landed or unknown:
            return landed, False
        log.info("payout_expired_unlanded", block_height=height)
        return None, True

    async def check_submitted(self) -> Tuple[Optional[str], bool]:
        """
        Look up every recorded payout signature.
        Returns (landed signature or None, whether any status could not be fetched).
        """
        unknown = False
        for sig in self.ctx.state.round.payout_signatures:
            try:
                if await self.ctx.ledger.signature_landed(sig):
                    return sig, False
            except LedgerError as e:
                log.warning("payout_status_unknown", signature=sig, error=str(e))
                unknown = True
        return None, unknown

    # =========================================================
    # Reset
    # =========================================================
    def schedule_reset(self, delay: float) -> None:
        opened_at = self.ctx.state.round.opened_at

        async def _reset() -> None:
            await self.reset(expected_opened_at=opened_at)

        self.ctx.scheduler.call_later(delay, _reset, name="round-reset")
        log.info("reset_scheduled", delay=delay, status=self.ctx.state.status.value)

    async def reset(self, expected_opened_at: Optional[datetime] = None) -> bool:
        async with self.ctx.state.lock:
            return await self.reset_locked(expected_opened_at)

    async def reset_locked(self, expected_opened_at: Optional[datetime] = None) -> bool:
        """Start a fresh round if the current one is Complete/Error (and is the expected round)."""
        state = self.ctx.state
        if state.status not in TERMINAL_STATUSES:
            return False
        if expected_opened_at is not None and state.round.opened_at != expected_opened_at:
            return False
        previous = state.status
        state.reset()
        log.info("round_reset", previous_status=previous.value)
        await self.ctx.commit()
        return True
