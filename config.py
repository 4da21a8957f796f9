# config.py
"""
Solana Lottery: Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
Values are resolved once at process start and never mutated afterwards.
"""

from __future__ import annotations
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

LAMPORTS_PER_SOL = 1_000_000_000

NETWORK_ENDPOINTS = {
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
}


class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    ADMIN_TOKEN: Optional[str] = None
    STATIC_DIR: str = "public"

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]

    # =========================
    # RPC / Network
    # =========================
    SOLANA_NETWORK: str = "mainnet-beta"
    RPC_URL: Optional[str] = None     # overrides the public cluster endpoint
    WS_URL: Optional[str] = None      # derived from the RPC URL when unset

    @field_validator("SOLANA_NETWORK")
    @classmethod
    def _check_network(cls, v: str) -> str:
        v = (v or "").strip()
        if v not in NETWORK_ENDPOINTS:
            raise ValueError(f"SOLANA_NETWORK must be one of {sorted(NETWORK_ENDPOINTS)}")
        return v

    # =========================
    # Custodial wallet
    # =========================
    # JSON byte array ("[12, 34, ...]") or base58 string; 64-byte secret or 32-byte seed.
    # MUST be set in env before the service can start.
    PRIVATE_KEY_JSON: Optional[str] = None

    # =========================
    # Economics (lamports)
    # =========================
    ENTRY_AMOUNT: int = 10_000_000      # 0.01 SOL
    PAYOUT_AMOUNT: int = 40_000_000     # 0.04 SOL
    MAX_PARTICIPANTS: int = 5
    MINIMUM_FEE_LAMPORTS: int = 5000

    @field_validator("ENTRY_AMOUNT", "PAYOUT_AMOUNT", "MAX_PARTICIPANTS")
    @classmethod
    def _positive(cls, v: int) -> int:
        if int(v) <= 0:
            raise ValueError("must be > 0")
        return int(v)

    # =========================
    # Draw / Timers (seconds)
    # =========================
    PAYOUT_ATTEMPTS: int = 3
    PAYOUT_RETRY_DELAY: float = 2.0
    RESET_DELAY_COMPLETE: float = 10.0
    RESET_DELAY_ERROR: float = 30.0
    BALANCE_REFRESH_INTERVAL: float = 30.0

    @field_validator("PAYOUT_ATTEMPTS")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if int(v) < 1:
            raise ValueError("PAYOUT_ATTEMPTS must be >= 1")
        return int(v)

    # =========================
    # Dedup / History
    # =========================
    MAX_TRANSACTIONS_SEEN: int = 1000
    HISTORY_SIZE: int = 5

    # =========================
    # Storage
    # =========================
    DB_PATH: str = "data/lottery.db"
    BACKUP_DIR: str = "backup"
    ARCHIVE_AFTER_DAYS: int = 7

    # =========================
    # Rate limit (GET /status)
    # =========================
    STATUS_RATE_LIMIT: int = 100
    STATUS_RATE_WINDOW: int = 15 * 60

    # =========================
    # Logging
    # =========================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = "lottery.log"
    LOG_JSON: bool = True

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def rpc_url(self) -> str:
        """HTTP RPC endpoint (explicit RPC_URL wins over the cluster default)."""
        return (self.RPC_URL or "").strip() or NETWORK_ENDPOINTS[self.SOLANA_NETWORK]

    @property
    def ws_url(self) -> str:
        """Websocket endpoint for logsSubscribe."""
        if self.WS_URL:
            return self.WS_URL.strip()
        return self.rpc_url.replace("https://", "wss://").replace("http://", "ws://")


# Instantiate global settings (values resolved from environment)
settings = Settings()
