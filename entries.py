# entries.py
"""
Entry processor: turns ledger activity notifications into credited entries.

Order of checks per notification (all under the state lock):
  status/quota guard -> dedup (recorded before validation) -> fetch tx ->
  recipient + exact amount -> duplicate sender -> credit -> draw on quota.
Rejections are silent no-ops.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import structlog

from context import LotteryContext
from errors import LedgerError
from ledger import LedgerTransaction

if TYPE_CHECKING:
    from draw import DrawEngine

log = structlog.get_logger(__name__)


class EntryProcessor:
    def __init__(self, ctx: LotteryContext, draw_engine: "DrawEngine", entry_amount: int) -> None:
        self.ctx = ctx
        self.draw_engine = draw_engine
        self.entry_amount = entry_amount

    async def on_activity(self, signature: str) -> bool:
        """Handle one activity notification; returns True when an entry was credited."""
        async with self.ctx.state.lock:
            return await self._process(signature)

    async def _process(self, signature: str) -> bool:
        state = self.ctx.state

        if not state.accepting_entries():
            return False

        if state.dedup.seen(signature):
            return False
        state.dedup.record(signature)

        try:
            tx = await self.ctx.ledger.get_transaction(signature)
        except LedgerError as e:
            log.error("transaction_fetch_failed", signature=signature, error=str(e))
            return False

        sender = self._qualifying_sender(tx)
        if sender is None:
            return False

        if state.has_participant(sender):
            log.debug("entry_rejected", signature=signature, sender=sender, reason="duplicate_sender")
            return False

        state.add_participant(sender)
        log.info(
            "entry_credited",
            signature=signature,
            sender=sender,
            participants=len(state.round.participants),
            quota=state.round.quota,
        )
        await self.ctx.refresh_balance_locked()
        await self.ctx.commit()

        if state.round.is_full:
            await self.draw_engine.run_locked()
        return True

    def _qualifying_sender(self, tx: Optional[LedgerTransaction]) -> Optional[str]:
        if tx is None:
            log.debug("entry_rejected", reason="transaction_missing")
            return None
        if tx.err is not None:
            log.debug("entry_rejected", signature=tx.signature, reason="transaction_failed")
            return None
        if tx.sender is None or tx.recipient is None:
            return None
        if tx.recipient != self.ctx.wallet:
            log.debug("entry_rejected", signature=tx.signature, reason="wrong_recipient")
            return None
        amount = tx.received(1)
        if amount != self.entry_amount:
            log.debug("entry_rejected", signature=tx.signature, reason="wrong_amount", amount=amount)
            return None
        return tx.sender
