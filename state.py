# state.py
"""
Round state: the single owned record of the current round, the dedup window,
the trailing history lists and the last observed wallet balance.

Every mutation happens while holding `RoundState.lock`; the transition methods
below only enforce which status a change is legal from.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from config import LAMPORTS_PER_SOL
from dedup import DEFAULT_CAPACITY, DeduplicationWindow
from errors import InvalidTransitionError

log = structlog.get_logger(__name__)

HISTORY_SIZE = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoundStatus(str, Enum):
    ACTIVE = "Active"
    PROCESSING = "Processing"
    COMPLETE = "Complete"
    ERROR = "Error"


TERMINAL_STATUSES = (RoundStatus.COMPLETE, RoundStatus.ERROR)


# =========================================================
# Models
# =========================================================
class Round(BaseModel):
    quota: int
    participants: List[str] = Field(default_factory=list)
    pool_total: int = 0                       # lamports
    status: RoundStatus = RoundStatus.ACTIVE
    winner: Optional[str] = None              # only set on Complete
    pending_winner: Optional[str] = None      # chosen when the draw starts
    payout_signatures: List[str] = Field(default_factory=list)
    last_error: Optional[str] = None
    opened_at: datetime = Field(default_factory=utcnow)

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.quota


class TrailingHistory(BaseModel):
    """Most-recent-first lists that survive resets."""
    recent_depositors: List[str] = Field(default_factory=list)
    past_winners: List[str] = Field(default_factory=list)

    @staticmethod
    def _push(items: List[str], value: str, limit: int) -> None:
        items.insert(0, value)
        del items[limit:]

    def push_depositor(self, address: str, limit: int = HISTORY_SIZE) -> None:
        self._push(self.recent_depositors, address, limit)

    def push_winner(self, address: str, limit: int = HISTORY_SIZE) -> None:
        self._push(self.past_winners, address, limit)


class BalanceSnapshot(BaseModel):
    """Observational only; never used for round correctness."""
    lamports: Optional[int] = None
    updated_at: Optional[datetime] = None

    @property
    def sol(self) -> Optional[str]:
        if self.lamports is None:
            return None
        return f"{self.lamports / LAMPORTS_PER_SOL:.4f}"


class StateSnapshot(BaseModel):
    """Persisted record (one per store)."""
    round: Round
    transactions_seen: List[str] = Field(default_factory=list)
    recent_depositors: List[str] = Field(default_factory=list)
    past_winners: List[str] = Field(default_factory=list)
    balance: BalanceSnapshot = Field(default_factory=BalanceSnapshot)
    saved_at: datetime = Field(default_factory=utcnow)


# =========================================================
# RoundState
# =========================================================
class RoundState:
    def __init__(
        self,
        quota: int,
        entry_amount: int,
        dedup_capacity: int = DEFAULT_CAPACITY,
        history_size: int = HISTORY_SIZE,
    ) -> None:
        self.quota = quota
        self.entry_amount = entry_amount
        self.history_size = history_size
        self.lock = asyncio.Lock()
        self.round = Round(quota=quota)
        self.dedup = DeduplicationWindow(dedup_capacity)
        self.history = TrailingHistory()
        self.balance = BalanceSnapshot()

    # -------------------------
    # Queries
    # -------------------------
    @property
    def status(self) -> RoundStatus:
        return self.round.status

    def accepting_entries(self) -> bool:
        return self.round.status == RoundStatus.ACTIVE and not self.round.is_full

    def has_participant(self, address: str) -> bool:
        return address in self.round.participants

    # -------------------------
    # Transitions
    # -------------------------
    def _require(self, *allowed: RoundStatus) -> None:
        if self.round.status not in allowed:
            raise InvalidTransitionError(
                f"round is {self.round.status.value}; expected one of {[s.value for s in allowed]}"
            )

    def add_participant(self, address: str) -> None:
        self._require(RoundStatus.ACTIVE)
        if self.round.is_full:
            raise InvalidTransitionError("round is already at quota")
        if self.has_participant(address):
            raise InvalidTransitionError(f"{address} already entered this round")
        self.round.participants.append(address)
        self.round.pool_total += self.entry_amount
        self.history.push_depositor(address, self.history_size)

    def begin_processing(self, pending_winner: str) -> None:
        self._require(RoundStatus.ACTIVE)
        if pending_winner not in self.round.participants:
            raise InvalidTransitionError("pending winner is not a participant")
        self.round.status = RoundStatus.PROCESSING
        self.round.pending_winner = pending_winner

    def record_payout_signature(self, signature: str) -> None:
        self._require(RoundStatus.PROCESSING)
        if signature not in self.round.payout_signatures:
            self.round.payout_signatures.append(signature)

    def complete(self, winner: str) -> None:
        self._require(RoundStatus.PROCESSING)
        if winner not in self.round.participants:
            raise InvalidTransitionError("winner is not a participant")
        self.round.winner = winner
        self.round.status = RoundStatus.COMPLETE
        self.round.last_error = None
        self.history.push_winner(winner, self.history_size)

    def fail(self, reason: str) -> None:
        self._require(RoundStatus.ACTIVE, RoundStatus.PROCESSING)
        self.round.status = RoundStatus.ERROR
        self.round.last_error = reason

    def reset(self) -> None:
        """Fresh empty round; history, balance and dedup window carry over."""
        self._require(*TERMINAL_STATUSES)
        self.round = Round(quota=self.quota)

    def set_balance(self, lamports: int) -> None:
        self.balance = BalanceSnapshot(lamports=int(lamports), updated_at=utcnow())

    # -------------------------
    # Persistence
    # -------------------------
    def to_snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            round=self.round.model_copy(deep=True),
            transactions_seen=self.dedup.to_list(),
            recent_depositors=list(self.history.recent_depositors),
            past_winners=list(self.history.past_winners),
            balance=self.balance.model_copy(),
        )

    def restore(self, snapshot: StateSnapshot) -> None:
        """
        Load a persisted snapshot. The configured quota wins unless the persisted
        round already holds more participants; then that round keeps its size until reset.
        """
        self.round = snapshot.round.model_copy(deep=True)
        entered = len(self.round.participants)
        if entered > self.quota:
            log.warning("restored_round_over_quota", participants=entered, configured_quota=self.quota)
            self.round.quota = entered
        else:
            self.round.quota = self.quota
        self.dedup = DeduplicationWindow.from_iterable(snapshot.transactions_seen, self.dedup.capacity)
        self.history = TrailingHistory(
            recent_depositors=snapshot.recent_depositors[: self.history_size],
            past_winners=snapshot.past_winners[: self.history_size],
        )
        self.balance = snapshot.balance.model_copy()

    # -------------------------
    # Views
    # -------------------------
    def view(self, wallet: str) -> Dict[str, Any]:
        """Full snapshot pushed to observers."""
        r = self.round
        return {
            "participants": list(r.participants),
            "participant_count": len(r.participants),
            "quota": r.quota,
            "pool": r.pool_total,
            "status": r.status.value,
            "winner": r.winner,
            "wallet": wallet,
            "balance": self.balance.lamports,
            "balance_sol": self.balance.sol,
            "recent_depositors": list(self.history.recent_depositors),
            "past_winners": list(self.history.past_winners),
            "last_error": r.last_error,
        }
