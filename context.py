# context.py
"""Shared handle passed to the entry processor and the draw engine."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from db import StateStore
from errors import LedgerError
from ledger import LedgerGateway
from notifier import Notifier
from scheduler import TaskScheduler
from state import RoundState

log = structlog.get_logger(__name__)


@dataclass
class LotteryContext:
    state: RoundState
    store: StateStore
    notifier: Notifier
    ledger: LedgerGateway
    scheduler: TaskScheduler

    @property
    def wallet(self) -> str:
        return self.ledger.address

    def view(self) -> Dict[str, Any]:
        return self.state.view(self.wallet)

    async def persist(self) -> bool:
        """Save the current snapshot. Failures are logged; memory stays authoritative."""
        try:
            await self.store.save(self.state.to_snapshot())
            return True
        except (sqlite3.Error, OSError) as e:
            log.error("state_save_failed", error=str(e))
            return False

    async def broadcast(self, error: Optional[str] = None) -> None:
        payload = self.view()
        if error:
            payload["error"] = error
        await self.notifier.broadcast(payload)

    async def commit(self, error: Optional[str] = None) -> None:
        """Persist, then notify observers. Caller holds the state lock."""
        await self.persist()
        await self.broadcast(error)

    async def refresh_balance_locked(self) -> Optional[int]:
        """Update the balance snapshot; caller holds the state lock."""
        try:
            lamports = await self.ledger.get_balance()
        except LedgerError as e:
            log.error("balance_fetch_failed", error=str(e))
            return None
        self.state.set_balance(lamports)
        return lamports
