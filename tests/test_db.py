# -*- coding: utf-8 -*-
"""Unit tests for StateStore persistence, archival and recovery from bad files."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

from db import STATE_KEY, StateStore, kv_get, kv_set
from state import RoundState, RoundStatus
from tests.fakes import ENTRY


def _snapshot(players, status=RoundStatus.ACTIVE):
    rs = RoundState(quota=5, entry_amount=ENTRY)
    for p in players:
        rs.add_participant(p)
    if status == RoundStatus.PROCESSING:
        rs.begin_processing(players[0])
        rs.record_payout_signature("payout-sig-1")
    for i in range(3):
        rs.dedup.record(f"sig-{i}")
    return rs.to_snapshot()


async def test_load_without_record_returns_none(store) -> None:
    assert await store.load() is None


async def test_save_then_load(store, players) -> None:
    await store.save(_snapshot(players, RoundStatus.PROCESSING))

    loaded = await store.load()

    assert loaded is not None
    assert loaded.round.status == RoundStatus.PROCESSING
    assert loaded.round.participants == players
    assert loaded.round.pending_winner == players[0]
    assert loaded.round.payout_signatures == ["payout-sig-1"]
    assert loaded.transactions_seen == ["sig-0", "sig-1", "sig-2"]


async def test_saved_dedup_list_is_capped(tmp_path, players) -> None:
    store = StateStore(str(tmp_path / "lottery.db"), backup_dir=str(tmp_path / "backup"), max_transactions_seen=2)
    await store.save(_snapshot(players[:1]))

    loaded = await store.load()
    await store.close()

    assert loaded.transactions_seen == ["sig-1", "sig-2"]


async def test_unreadable_record_is_ignored(store) -> None:
    conn = await store._db()
    await kv_set(conn, STATE_KEY, "{not json")

    assert await store.load() is None


async def test_stale_record_is_archived_before_overwrite(store, players, tmp_path) -> None:
    conn = await store._db()
    old = _snapshot(players[:1]).model_copy(update={"saved_at": datetime.now(timezone.utc) - timedelta(days=8)})
    await kv_set(conn, STATE_KEY, old.model_dump_json())

    await store.save(_snapshot(players[:2]))

    backups = os.listdir(tmp_path / "backup")
    assert len(backups) == 1
    assert backups[0].startswith("lottery-state-") and backups[0].endswith(".json")
    with open(tmp_path / "backup" / backups[0], encoding="utf-8") as f:
        assert players[0] in f.read()
    current = await kv_get(conn, STATE_KEY)
    assert players[1] in current


async def test_fresh_record_is_not_archived(store, players, tmp_path) -> None:
    await store.save(_snapshot(players[:1]))
    await store.save(_snapshot(players[:2]))

    assert not (tmp_path / "backup").exists()


async def test_corrupt_database_file_is_quarantined(tmp_path) -> None:
    db_path = tmp_path / "lottery.db"
    db_path.write_bytes(b"definitely not a sqlite database " * 200)
    store = StateStore(str(db_path), backup_dir=str(tmp_path / "backup"))

    await store.open()
    loaded = await store.load()
    await store.close()

    assert loaded is None
    moved = os.listdir(tmp_path / "backup")
    assert len(moved) == 1
    assert moved[0].startswith("lottery-state-unreadable-")


async def test_store_reopens_after_close(tmp_path, players) -> None:
    store = StateStore(str(tmp_path / "lottery.db"), backup_dir=str(tmp_path / "backup"))
    conn = await store.open()
    assert await store.open() is conn
    await store.close()

    await store.save(_snapshot(players[:2]))
    loaded = await store.load()
    await store.close()

    assert loaded is not None
    assert loaded.round.participants == players[:2]
