# ledger.py
"""
Ledger gateway: the narrow capability interface the lottery uses to talk to
Solana (balance, transaction, fee and blockhash reads, signed SOL transfers
and the logsSubscribe activity stream for the custodial wallet).

Every client exception is wrapped in LedgerError so callers only deal with one
failure type.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

import base58 as _b58
import structlog
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solana.rpc.websocket_api import connect as ws_connect
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from errors import ConfigError, LedgerError

log = structlog.get_logger(__name__)

ActivityHandler = Callable[[str], Awaitable[None]]

RECONNECT_MIN_S = 5.0
RECONNECT_MAX_S = 60.0


# =========================================================
# Keys
# =========================================================
def load_keypair(secret: Optional[str]) -> Keypair:
    """
    Build the custodial keypair from a JSON byte array ("[1,2,...]") or a
    base58 string. 64 bytes = full secret key, 32 bytes = seed.
    """
    if not secret or not secret.strip():
        raise ConfigError("PRIVATE_KEY_JSON not set.")
    s = secret.strip()
    try:
        if s.startswith("["):
            raw = bytes(json.loads(s))
        else:
            raw = _b58.b58decode(s)
    except ValueError as e:
        raise ConfigError(f"Could not decode custodial secret key: {e}")

    if len(raw) == 64:
        try:
            return Keypair.from_bytes(raw)
        except ValueError as e:
            raise ConfigError(f"Could not construct Keypair from 64-byte secret: {e}")
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ConfigError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def to_pubkey(addr: Union[str, Pubkey, bytes, bytearray, None]) -> Pubkey:
    if addr is None:
        raise ValueError("Empty public key provided")
    if isinstance(addr, Pubkey):
        return addr
    if isinstance(addr, (bytes, bytearray)):
        return Pubkey.from_bytes(bytes(addr))
    return Pubkey.from_string(str(addr).strip())


# =========================================================
# Transactions
# =========================================================
@dataclass(frozen=True)
class LedgerTransaction:
    signature: str
    account_keys: Tuple[str, ...]
    pre_balances: Tuple[int, ...]
    post_balances: Tuple[int, ...]
    err: Any = None
    block_time: Optional[int] = None

    @property
    def sender(self) -> Optional[str]:
        return self.account_keys[0] if len(self.account_keys) > 0 else None

    @property
    def recipient(self) -> Optional[str]:
        return self.account_keys[1] if len(self.account_keys) > 1 else None

    def received(self, index: int = 1) -> int:
        """Net lamports credited to account `index` by this transaction."""
        if index >= len(self.pre_balances) or index >= len(self.post_balances):
            return 0
        return int(self.post_balances[index]) - int(self.pre_balances[index])


@dataclass(frozen=True)
class SignedTransfer:
    """A signed, not yet submitted SOL transfer."""
    signature: str
    recipient: str
    lamports: int
    last_valid_block_height: int
    transaction: Any = None


def _get(obj: Any, *names: str) -> Any:
    """First present attribute / dict key among `names` (object or JSON shape)."""
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, dict):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def parse_transaction(signature: str, value: Any) -> Optional[LedgerTransaction]:
    """
    Normalize a getTransaction result (solders object or raw JSON dict) into a
    LedgerTransaction. Returns None when the record or its status meta is missing.
    """
    if value is None:
        return None

    # solders: EncodedConfirmedTransactionWithStatusMeta.transaction -> EncodedTransactionWithStatusMeta
    # json:    {"blockTime": ..., "meta": {...}, "transaction": {"message": {...}}}
    outer = _get(value, "transaction")
    meta = _get(value, "meta")
    if meta is None:
        meta = _get(outer, "meta")
        outer = _get(outer, "transaction")
    if meta is None or outer is None:
        return None

    message = _get(outer, "message")
    keys = _get(message, "account_keys", "accountKeys") or []
    account_keys: List[str] = []
    for k in keys:
        # parsed-encoding keys are objects/dicts carrying a pubkey field
        pk = _get(k, "pubkey") if not isinstance(k, (str, Pubkey)) else k
        account_keys.append(str(pk))

    return LedgerTransaction(
        signature=signature,
        account_keys=tuple(account_keys),
        pre_balances=tuple(int(b) for b in (_get(meta, "pre_balances", "preBalances") or [])),
        post_balances=tuple(int(b) for b in (_get(meta, "post_balances", "postBalances") or [])),
        err=_get(meta, "err"),
        block_time=_get(value, "block_time", "blockTime"),
    )


def _signature_str(resp: Any) -> str:
    val = getattr(resp, "value", None)
    if val is None and isinstance(resp, dict):
        val = resp.get("result")
    if val is None:
        raise LedgerError("send_transaction returned no signature", operation="send")
    return str(val)


def _status_landed(status: Any) -> bool:
    """True when a signature status shows a confirmed, error-free transaction."""
    if status is None or _get(status, "err") is not None:
        return False
    level = str(_get(status, "confirmation_status", "confirmationStatus") or "").lower()
    return level.endswith("confirmed") or level.endswith("finalized")


# =========================================================
# Gateway
# =========================================================
class LedgerGateway:
    """Solana access for one custodial keypair."""

    def __init__(self, rpc_url: str, ws_url: str, keypair: Keypair, timeout: float = 30.0) -> None:
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.keypair = keypair
        self._client = AsyncClient(rpc_url, commitment=Confirmed, timeout=timeout)

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    async def close(self) -> None:
        await self._client.close()

    # ---------------- Reads ----------------
    async def get_balance(self) -> int:
        try:
            resp = await self._client.get_balance(self.pubkey, commitment=Confirmed)
            return int(resp.value)
        except Exception as e:
            raise LedgerError(f"Balance fetch failed: {e}", operation="get_balance", cause=e) from e

    async def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        try:
            resp = await self._client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                commitment=Confirmed,
                max_supported_transaction_version=0,
            )
        except Exception as e:
            raise LedgerError(f"Transaction fetch failed: {e}", operation="get_transaction", cause=e) from e
        return parse_transaction(signature, getattr(resp, "value", None))

    async def get_latest_blockhash(self) -> Tuple[Hash, int]:
        """Latest blockhash and the last block height at which it is still accepted."""
        try:
            resp = await self._client.get_latest_blockhash(commitment=Confirmed)
            return resp.value.blockhash, int(resp.value.last_valid_block_height)
        except Exception as e:
            raise LedgerError(f"Could not fetch latest blockhash: {e}", operation="get_latest_blockhash", cause=e) from e

    async def get_block_height(self) -> int:
        try:
            resp = await self._client.get_block_height(commitment=Confirmed)
            return int(resp.value)
        except Exception as e:
            raise LedgerError(f"Block height fetch failed: {e}", operation="get_block_height", cause=e) from e

    async def signature_landed(self, signature: str) -> bool:
        """Has `signature` been confirmed without an execution error?"""
        try:
            resp = await self._client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            )
        except Exception as e:
            raise LedgerError(f"Signature status fetch failed: {e}", operation="get_signature_statuses", cause=e) from e
        statuses = getattr(resp, "value", None) or [None]
        return _status_landed(statuses[0])

    # ---------------- Transfers ----------------
    def build_transfer_message(self, to: str, lamports: int, blockhash: Hash) -> Message:
        ix = transfer(
            TransferParams(
                from_pubkey=self.pubkey,
                to_pubkey=to_pubkey(to),
                lamports=int(lamports),
            )
        )
        return Message.new_with_blockhash([ix], self.pubkey, blockhash)

    async def estimate_transfer_fee(self, to: str, lamports: int) -> Optional[int]:
        """Fee for a payout transfer, or None when the ledger cannot price it."""
        blockhash, _ = await self.get_latest_blockhash()
        msg = self.build_transfer_message(to, lamports, blockhash)
        try:
            resp = await self._client.get_fee_for_message(msg, commitment=Confirmed)
        except Exception as e:
            raise LedgerError(f"Fee estimate failed: {e}", operation="get_fee_for_message", cause=e) from e
        fee = getattr(resp, "value", None)
        return int(fee) if fee is not None else None

    async def sign_transfer(self, to: str, lamports: int) -> SignedTransfer:
        """
        Build and sign a SOL transfer against a freshly fetched blockhash.
        Nothing is sent; the signature is known before the transaction leaves the process.
        """
        if lamports <= 0:
            raise ValueError("lamports must be > 0")
        try:
            recipient = to_pubkey(to)
        except ValueError as e:
            raise LedgerError(f"Invalid recipient {to!r}: {e}", operation="sign_transfer", cause=e) from e

        blockhash, last_valid = await self.get_latest_blockhash()
        msg = self.build_transfer_message(str(recipient), lamports, blockhash)
        tx = Transaction([self.keypair], msg, blockhash)
        return SignedTransfer(
            signature=str(tx.signatures[0]),
            recipient=str(recipient),
            lamports=int(lamports),
            last_valid_block_height=last_valid,
            transaction=tx,
        )

    async def send_transfer(self, signed: SignedTransfer) -> str:
        """Submit a signed transfer. A failure here does not mean the transfer was not received."""
        try:
            resp = await self._client.send_transaction(
                signed.transaction, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
        except Exception as e:
            raise LedgerError(f"Transfer submission failed: {e}", operation="send_transaction", cause=e) from e
        return _signature_str(resp)

    async def confirm(self, signature: str, last_valid_block_height: Optional[int] = None) -> None:
        """
        Wait for confirmation; raise LedgerError on RPC failure, execution error,
        or once the blockhash expired (block height past `last_valid_block_height`).
        """
        try:
            resp = await self._client.confirm_transaction(
                Signature.from_string(signature),
                commitment=Confirmed,
                last_valid_block_height=last_valid_block_height,
            )
        except Exception as e:
            raise LedgerError(f"Confirmation failed: {e}", operation="confirm_transaction", cause=e) from e
        statuses = getattr(resp, "value", None) or [None]
        status = statuses[0]
        if status is not None and _get(status, "err") is not None:
            raise LedgerError(f"Transaction {signature} failed: {_get(status, 'err')}", operation="confirm_transaction")

    # ---------------- Notifications ----------------
    async def subscribe_activity(self, handler: ActivityHandler) -> None:
        """
        Stream logsSubscribe notifications mentioning the custodial address and
        hand each signature to `handler`. Reconnects with backoff until cancelled.
        """
        backoff = RECONNECT_MIN_S
        while True:
            try:
                async with ws_connect(self.ws_url) as websocket:
                    await websocket.logs_subscribe(
                        RpcTransactionLogsFilterMentions(self.pubkey), commitment=Confirmed
                    )
                    log.info("ledger_subscribed", address=self.address, ws_url=self.ws_url)
                    backoff = RECONNECT_MIN_S
                    async for messages in websocket:
                        for sig in _notification_signatures(messages):
                            await handler(sig)
                log.warning("ledger_subscription_closed", address=self.address)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("ledger_subscription_error", error=str(e), retry_in=backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, RECONNECT_MAX_S)


def _notification_signatures(messages: Any) -> List[str]:
    """Signatures carried by a websocket frame (subscription acks are skipped)."""
    if not isinstance(messages, (list, tuple)):
        messages = [messages]
    out: List[str] = []
    for msg in messages:
        value = _get(_get(msg, "result"), "value")
        sig = _get(value, "signature")
        if sig is not None:
            out.append(str(sig))
    return out

