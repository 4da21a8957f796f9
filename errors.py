# errors.py
"""Exception hierarchy for the lottery service."""

from __future__ import annotations

from typing import Optional


class LotteryError(Exception):
    """Base exception for lottery errors."""


class ConfigError(LotteryError):
    """Raised when a required configuration value is missing or invalid."""


class LedgerError(LotteryError):
    """Raised when a ledger (RPC) call fails. Always treated as transient."""

    def __init__(self, message: str, *, operation: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class PayoutError(LotteryError):
    """Raised when the winner payout cannot be completed."""


class InsufficientFundsError(PayoutError):
    """Raised when the custodial balance cannot cover payout plus fee."""

    def __init__(self, balance: int, required: int) -> None:
        super().__init__("Insufficient funds for payout")
        self.balance = balance
        self.required = required


class InvalidTransitionError(LotteryError):
    """Raised when a round-state transition is not allowed from the current status."""
