# db.py

"""
Solana Lottery: db.py
Key/value schema + async (aiosqlite) helpers, and the StateStore that keeps the
round snapshot durable between restarts.
Target DB path: data/lottery.db
"""

from __future__ import annotations
from typing import Optional
from datetime import datetime, timedelta, timezone
import json
import os
import sqlite3
import time

import aiosqlite
import structlog
from pydantic import ValidationError

from state import StateSnapshot

log = structlog.get_logger(__name__)

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);
""".strip()

STATE_KEY = "lottery:state"
DB_PATH = os.getenv("DB_PATH", "data/lottery.db")


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


# =========================================================
# Connection
# =========================================================
async def connect(db_path: str = DB_PATH) -> aiosqlite.Connection:
    """
    Async connection; ensures schema and sets PRAGMAs.
    """
    _ensure_parent(db_path)
    conn = await aiosqlite.connect(db_path)
    try:
        # Per-connection PRAGMAs to reduce locking and keep WAL fast
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA synchronous=NORMAL")
        await conn.execute("PRAGMA busy_timeout=5000")
        await conn.executescript(SCHEMA)
        await conn.commit()
    except Exception:
        await conn.close()
        raise
    return conn


# =========================================================
# KV Helpers (async)
# =========================================================
async def kv_set(conn: aiosqlite.Connection, k: str, v: str, commit: bool = True) -> None:
    """
    Upsert a key/value pair in the KV table.
    """
    await conn.execute(
        "INSERT INTO kv(k, v) VALUES(?, ?) "
        "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
        (k, v),
    )
    if commit:
        await conn.commit()


async def kv_get(conn: aiosqlite.Connection, k: str) -> Optional[str]:
    """
    Read a value from KV; return None if missing.
    """
    async with conn.execute("SELECT v FROM kv WHERE k=?", (k,)) as cur:
        row = await cur.fetchone()
        return row[0] if row else None


# =========================================================
# StateStore
# =========================================================
class StateStore:
    """
    Durable snapshot of the lottery state (one JSON record under STATE_KEY).

    Before each save the previous record is archived into `backup_dir` when it
    has not been rewritten for `archive_after`.
    """

    def __init__(
        self,
        db_path: str = DB_PATH,
        backup_dir: str = "backup",
        archive_after: timedelta = timedelta(days=7),
        max_transactions_seen: int = 1000,
    ) -> None:
        self.db_path = db_path
        self.backup_dir = backup_dir
        self.archive_after = archive_after
        self.max_transactions_seen = max_transactions_seen
        self._conn: Optional[aiosqlite.Connection] = None

    async def open(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn
        try:
            self._conn = await connect(self.db_path)
        except sqlite3.DatabaseError as exc:
            # Unreadable file: move it aside and start from an empty store.
            moved = self._quarantine()
            log.warning("state_store_unreadable", db_path=self.db_path, moved_to=moved, error=str(exc))
            self._conn = await connect(self.db_path)
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            return await self.open()
        return self._conn

    # -------------------------
    # Load / Save
    # -------------------------
    async def load(self) -> Optional[StateSnapshot]:
        """Return the persisted snapshot, or None when there is no usable prior state."""
        try:
            conn = await self._db()
            raw = await kv_get(conn, STATE_KEY)
        except (sqlite3.Error, OSError) as exc:
            log.warning("state_load_failed", error=str(exc))
            return None
        if not raw:
            log.info("state_not_found", db_path=self.db_path)
            return None
        try:
            snapshot = StateSnapshot.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("state_unreadable", error=str(exc))
            return None
        log.info("state_loaded", status=snapshot.round.status.value, participants=len(snapshot.round.participants))
        return snapshot

    async def save(self, snapshot: StateSnapshot) -> None:
        """Persist `snapshot` (dedup list capped to the newest ids). Raises on write failure."""
        conn = await self._db()
        await self._archive_if_stale(conn)

        record = snapshot.model_copy(
            update={
                "transactions_seen": snapshot.transactions_seen[-self.max_transactions_seen:],
                "saved_at": datetime.now(timezone.utc),
            }
        )
        await kv_set(conn, STATE_KEY, record.model_dump_json())

    # -------------------------
    # Archival (housekeeping)
    # -------------------------
    async def _archive_if_stale(self, conn: aiosqlite.Connection) -> Optional[str]:
        try:
            raw = await kv_get(conn, STATE_KEY)
            if not raw:
                return None
            saved_at = _saved_at(raw)
            if saved_at is None:
                return None
            if datetime.now(timezone.utc) - saved_at <= self.archive_after:
                return None

            os.makedirs(self.backup_dir, exist_ok=True)
            path = os.path.join(self.backup_dir, f"lottery-state-{int(time.time() * 1000)}.json")
            with open(path, "w", encoding="utf-8") as f:
                f.write(raw)
            log.info("state_archived", path=path, saved_at=saved_at.isoformat())
            return path
        except (sqlite3.Error, OSError, ValueError) as exc:
            log.warning("state_archive_failed", error=str(exc))
            return None

    def _quarantine(self) -> Optional[str]:
        if not os.path.exists(self.db_path):
            return None
        os.makedirs(self.backup_dir, exist_ok=True)
        dest = os.path.join(self.backup_dir, f"lottery-state-unreadable-{int(time.time() * 1000)}.db")
        os.replace(self.db_path, dest)
        for suffix in ("-wal", "-shm"):
            if os.path.exists(self.db_path + suffix):
                os.remove(self.db_path + suffix)
        return dest


def _saved_at(raw: str) -> Optional[datetime]:
    """Extract saved_at from a stored record without validating the whole snapshot."""
    data = json.loads(raw)
    value = data.get("saved_at") if isinstance(data, dict) else None
    if not value:
        return None
    s = str(value)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
