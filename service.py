# service.py
"""
Solana Lottery: service wiring.

LotteryService owns the components (state, store, ledger gateway, notifier,
scheduler, entry processor, draw engine), restores the persisted snapshot on
start and decides what a restart still owes: a draw, a payout verdict or a reset.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from config import Settings, settings
from context import LotteryContext
from db import StateStore
from draw import DrawEngine
from entries import EntryProcessor
from ledger import LedgerGateway, load_keypair
from notifier import Notifier, Observer
from scheduler import TaskScheduler
from state import TERMINAL_STATUSES, RoundState, RoundStatus

log = structlog.get_logger(__name__)

INTERRUPTED_DRAW = "Draw interrupted by restart"


class LotteryService:
    def __init__(
        self,
        ctx: LotteryContext,
        draw: DrawEngine,
        entries: EntryProcessor,
        balance_refresh_interval: float = 30.0,
    ) -> None:
        self.ctx = ctx
        self.draw = draw
        self.entries = entries
        self.balance_refresh_interval = balance_refresh_interval
        self._started = False

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "LotteryService":
        """Build the production wiring. Raises ConfigError without a usable custodial key."""
        keypair = load_keypair(cfg.PRIVATE_KEY_JSON)
        ledger = LedgerGateway(cfg.rpc_url, cfg.ws_url, keypair)
        state = RoundState(
            quota=cfg.MAX_PARTICIPANTS,
            entry_amount=cfg.ENTRY_AMOUNT,
            dedup_capacity=cfg.MAX_TRANSACTIONS_SEEN,
            history_size=cfg.HISTORY_SIZE,
        )
        store = StateStore(
            db_path=cfg.DB_PATH,
            backup_dir=cfg.BACKUP_DIR,
            archive_after=timedelta(days=cfg.ARCHIVE_AFTER_DAYS),
            max_transactions_seen=cfg.MAX_TRANSACTIONS_SEEN,
        )
        ctx = LotteryContext(
            state=state,
            store=store,
            notifier=Notifier(),
            ledger=ledger,
            scheduler=TaskScheduler(),
        )
        draw = DrawEngine(
            ctx,
            payout_amount=cfg.PAYOUT_AMOUNT,
            minimum_fee=cfg.MINIMUM_FEE_LAMPORTS,
            attempts=cfg.PAYOUT_ATTEMPTS,
            retry_delay=cfg.PAYOUT_RETRY_DELAY,
            reset_delay_complete=cfg.RESET_DELAY_COMPLETE,
            reset_delay_error=cfg.RESET_DELAY_ERROR,
        )
        entries = EntryProcessor(ctx, draw, entry_amount=cfg.ENTRY_AMOUNT)
        return cls(ctx, draw, entries, balance_refresh_interval=cfg.BALANCE_REFRESH_INTERVAL)

    @property
    def state(self) -> RoundState:
        return self.ctx.state

    @property
    def wallet(self) -> str:
        return self.ctx.wallet

    # =========================================================
    # Lifecycle
    # =========================================================
    async def start(self) -> None:
        if self._started:
            return
        self._started = True

        await self.ctx.store.open()
        snapshot = await self.ctx.store.load()
        if snapshot is not None:
            async with self.state.lock:
                self.state.restore(snapshot)
        log.info(
            "lottery_starting",
            wallet=self.wallet,
            status=self.state.status.value,
            participants=len(self.state.round.participants),
            quota=self.state.round.quota,
        )

        await self.recover()
        await self.refresh_balance()

        self.ctx.scheduler.spawn(self._subscribe, name="ledger-subscription")
        self.ctx.scheduler.every(self.balance_refresh_interval, self.refresh_balance, name="balance-refresh")

    async def stop(self) -> None:
        await self.ctx.scheduler.shutdown()
        await self.ctx.ledger.close()
        await self.ctx.store.close()
        self._started = False
        log.info("lottery_stopped")

    async def _subscribe(self) -> None:
        await self.ctx.ledger.subscribe_activity(self.on_signature)

    async def on_signature(self, signature: str) -> None:
        """Hand a notification to its own task so the subscription keeps reading."""
        async def _handle() -> None:
            await self.entries.on_activity(signature)

        self.ctx.scheduler.spawn(_handle, name=f"entry:{signature[:12]}")

    # =========================================================
    # Recovery
    # =========================================================
    async def recover(self) -> Optional[RoundStatus]:
        """Finish whatever the persisted status says is owed. Returns the status acted on."""
        async with self.state.lock:
            r = self.state.round
            status = r.status

            if status == RoundStatus.ACTIVE:
                if not r.is_full:
                    return None
                log.warning("recovery_draw_owed", participants=len(r.participants))
                await self.draw.run_locked()
                return status

            if status == RoundStatus.PROCESSING:
                if r.payout_signatures and r.pending_winner:
                    landed, unknown = await self.draw.check_submitted()
                    if landed:
                        log.info("recovery_payout_landed", signature=landed, winner=r.pending_winner)
                        await self.draw.complete_locked(r.pending_winner, landed)
                        return status
                    log.warning(
                        "recovery_payout_not_landed",
                        signatures=list(r.payout_signatures),
                        status_unknown=unknown,
                    )
                else:
                    log.warning("recovery_draw_interrupted", pending_winner=r.pending_winner)
                await self.draw.fail_locked(INTERRUPTED_DRAW)
                return status

            delay = self.draw.reset_delay_complete if status == RoundStatus.COMPLETE else self.draw.reset_delay_error
            self.draw.schedule_reset(delay)
            return status

    # =========================================================
    # Balance / observers
    # =========================================================
    async def refresh_balance(self) -> Optional[int]:
        async with self.state.lock:
            lamports = await self.ctx.refresh_balance_locked()
            if lamports is None:
                return None
            await self.ctx.commit()
            return lamports

    async def apply_balance_update(self, message: Dict[str, Any]) -> None:
        """Republish an observer-supplied balance message; round state is untouched."""
        await self.ctx.notifier.broadcast(message)

    async def connect(self, client: Observer) -> None:
        await self.ctx.notifier.connect(client, self.view())

    def disconnect(self, client: Observer) -> None:
        self.ctx.notifier.disconnect(client)

    def view(self) -> Dict[str, Any]:
        return self.ctx.view()

    # =========================================================
    # Operator
    # =========================================================
    async def reset(self) -> bool:
        """Reset a Complete/Error round now. False when the round is not terminal."""
        async with self.state.lock:
            if self.state.status not in TERMINAL_STATUSES:
                return False
            log.info("operator_reset", status=self.state.status.value)
            return await self.draw.reset_locked()
