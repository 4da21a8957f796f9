# main.py
# =========================================================
# Solana Lottery Backend (FastAPI)
# =========================================================
from __future__ import annotations

import hmac
import json
import os
import time
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
import structlog

from config import settings
from errors import LedgerError
from logging_config import configure_logging
from ratelimit import FixedWindowRateLimiter
from service import LotteryService

log = structlog.get_logger(__name__)

SERVICE = "solana-lottery"
VERSION = "0.1.0"
UNSUPPORTED_MESSAGE = {"error": "Messages not supported or invalid"}

ADMIN_TOKEN = getattr(settings, "ADMIN_TOKEN", "") or ""
_auth_scheme = HTTPBearer(auto_error=False)
def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    if not ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if getattr(settings, "DEBUG", False):
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or not hmac.compare_digest(creds.credentials, ADMIN_TOKEN):
        raise HTTPException(401, "Unauthorized")
    return True

# =========================================================
# App Init
# =========================================================
app = FastAPI(title="Solana Lottery Backend", version=VERSION)

BASE_DIR = os.path.dirname(__file__)
STATIC_DIR = os.path.join(BASE_DIR, settings.STATIC_DIR)

# ----------------------------- CORS ---------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = (getattr(settings, "API_PREFIX", "/api") or "/api").rstrip("/")

app.state.status_limiter = FixedWindowRateLimiter(settings.STATUS_RATE_LIMIT, settings.STATUS_RATE_WINDOW)


def get_lottery(request: Request) -> LotteryService:
    lottery = getattr(request.app.state, "lottery", None)
    if lottery is None:
        raise HTTPException(503, "Lottery service not started")
    return lottery


def status_rate_limit(request: Request) -> None:
    limiter: FixedWindowRateLimiter = request.app.state.status_limiter
    key = request.client.host if request.client else "unknown"
    if not limiter.hit(key):
        raise HTTPException(
            429,
            "Too many requests from this IP, please try again later.",
            headers={"Retry-After": str(limiter.retry_after(key))},
        )

# =========================================================
# Lifecycle
# =========================================================
@app.on_event("startup")
async def on_startup():
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE, settings.LOG_JSON)
    if getattr(app.state, "lottery", None) is None:
        app.state.lottery = LotteryService.from_settings(settings)
    await app.state.lottery.start()
    log.info("server_started", host=settings.HOST, port=settings.PORT, network=settings.SOLANA_NETWORK)


@app.on_event("shutdown")
async def on_shutdown():
    lottery = getattr(app.state, "lottery", None)
    if lottery is not None:
        await lottery.stop()

# =========================================================
# Models
# =========================================================
class StatusResp(BaseModel):
    participants: List[str] = Field(default_factory=list)
    participant_count: int
    quota: int
    pool: int
    status: str
    winner: Optional[str] = None
    wallet: str
    balance: Optional[int] = None
    balance_sol: Optional[str] = None
    recent_depositors: List[str] = Field(default_factory=list)
    past_winners: List[str] = Field(default_factory=list)
    last_error: Optional[str] = None


# =========================================================
# Status
# =========================================================
@app.get("/status", response_model=StatusResp, dependencies=[Depends(status_rate_limit)])
async def status(lottery: LotteryService = Depends(get_lottery)):
    return lottery.view()

# =========================================================
# Health
# =========================================================
@app.get(f"{API}/health")
async def health():
    return {"ok": True, "ts": time.time(), "service": SERVICE, "version": VERSION}


@app.get(f"{API}/health/full")
async def health_full(lottery: LotteryService = Depends(get_lottery)):
    try:
        balance = await lottery.ctx.ledger.get_balance()
        ok_rpc = True
    except LedgerError as e:
        log.warning("health_rpc_failed", error=str(e))
        balance = None
        ok_rpc = False
    return {
        "ok": True,
        "service": SERVICE,
        "rpc_ok": ok_rpc,
        "balance": balance,
        "status": lottery.state.status.value,
        "wallet": lottery.wallet,
        "ts": time.time(),
        "version": VERSION,
    }

# =========================================================
# Live updates
# =========================================================
def _balance_update(raw: str) -> Optional[Dict[str, Any]]:
    """Accepted updateBalance message (token stripped), or None."""
    try:
        msg = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(msg, dict) or msg.get("action") != "updateBalance" or "balance" not in msg:
        return None
    if ADMIN_TOKEN:
        token = msg.get("token")
        if not isinstance(token, str) or not hmac.compare_digest(token, ADMIN_TOKEN):
            return None
    return {k: v for k, v in msg.items() if k != "token"}


@app.websocket("/ws")
async def ws_updates(websocket: WebSocket):
    lottery: Optional[LotteryService] = getattr(websocket.app.state, "lottery", None)
    if lottery is None:
        await websocket.close(code=1013)
        return
    await websocket.accept()
    await lottery.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            update = _balance_update(raw) if raw is not None else None
            if update is None:
                await websocket.send_json(UNSUPPORTED_MESSAGE)
                continue
            await lottery.apply_balance_update(update)
    except WebSocketDisconnect:
        pass
    finally:
        lottery.disconnect(websocket)

# =========================================================
# Admin
# =========================================================
@app.post(f"{API}/admin/reset")
async def admin_reset(auth: bool = Depends(admin_guard), lottery: LotteryService = Depends(get_lottery)):
    """Start a fresh round now instead of waiting for the scheduled reset."""
    if not await lottery.reset():
        raise HTTPException(409, f"Round is {lottery.state.status.value}; only Complete or Error rounds can be reset")
    return lottery.view()

# =========================================================
# Static frontend (mounted last so API routes win)
# =========================================================
if os.path.isdir(STATIC_DIR):
    app.mount("/", StaticFiles(directory=STATIC_DIR, html=True), name="static")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
