# -*- coding: utf-8 -*-
"""Shared pytest fixtures: an in-memory ledger fake, round state and a temp store."""

from __future__ import annotations

from typing import Callable, List

import pytest

from context import LotteryContext
from db import StateStore
from draw import DrawEngine
from entries import EntryProcessor
from notifier import Notifier
from scheduler import TaskScheduler
from state import RoundState
from tests.fakes import ENTRY, PAYOUT, QUOTA, FakeLedger, RecordingObserver


@pytest.fixture
def players() -> List[str]:
    """Five distinct depositor addresses."""
    return [f"Player{i}Address11111111111111111111111111" for i in range(1, 6)]


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def state() -> RoundState:
    return RoundState(quota=QUOTA, entry_amount=ENTRY)


@pytest.fixture
async def store(tmp_path):
    s = StateStore(
        db_path=str(tmp_path / "data" / "lottery.db"),
        backup_dir=str(tmp_path / "backup"),
    )
    await s.open()
    yield s
    await s.close()


@pytest.fixture
async def scheduler():
    sched = TaskScheduler()
    yield sched
    await sched.shutdown()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def ctx(state: RoundState, store: StateStore, fake_ledger: FakeLedger, scheduler: TaskScheduler) -> LotteryContext:
    return LotteryContext(
        state=state,
        store=store,
        notifier=Notifier(),
        ledger=fake_ledger,  # type: ignore[arg-type]
        scheduler=scheduler,
    )


@pytest.fixture
def draw_engine(ctx: LotteryContext) -> DrawEngine:
    """Draw engine with no retry wait and resets far enough out to never fire mid-test."""
    return DrawEngine(
        ctx,
        payout_amount=PAYOUT,
        minimum_fee=5000,
        attempts=3,
        retry_delay=0,
        reset_delay_complete=600,
        reset_delay_error=600,
    )


@pytest.fixture
def processor(ctx: LotteryContext, draw_engine: DrawEngine) -> EntryProcessor:
    return EntryProcessor(ctx, draw_engine, entry_amount=ENTRY)


@pytest.fixture
def fill_round(fake_ledger: FakeLedger, players: List[str]) -> Callable[..., List[str]]:
    """Register one exact deposit per player on the fake ledger; returns the signatures."""

    def _fill(count: int = QUOTA) -> List[str]:
        sigs = []
        for i, player in enumerate(players[:count]):
            sig = f"entry-sig-{i}"
            fake_ledger.deposit(sig, player)
            sigs.append(sig)
        return sigs

    return _fill
