# services/ledger/rpc.py
"""
Async Solana JSON-RPC client covering the calls a split-proof transfer needs.

Errors are classified the way the old subprocess retry wrapper read CLI
stderr: stale blockhash, rate limiting and "already processed" get their own
exception types so the submission engine can act on them.
"""
from __future__ import annotations

import base64
import itertools
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from services.api.logging_config import get_logger
from services.transfer.errors import (
    AlreadyProcessed,
    LedgerError,
    RateLimited,
    RentQueryFailed,
    StaleLifetimeToken,
)

logger = get_logger("ledger.rpc")

_STALE_PATTERNS = (
    "blockhash not found",
    "invalid blockhash",
    "block height exceeded",
    "blockhashnotfound",
)
# "This transaction has already been processed", or the AlreadyProcessed TransactionError in `data`
_ALREADY_PROCESSED_RE = re.compile(r"already (been )?processed|alreadyprocessed")
_RATE_LIMIT_PATTERNS = ("429", "rate limit", "too many requests")


@dataclass(frozen=True)
class LifetimeToken:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureStatus:
    confirmation_status: Optional[str]
    err: Any = None
    slot: Optional[int] = None

    def is_confirmed(self) -> bool:
        return self.confirmation_status in ("confirmed", "finalized")


class Ledger(Protocol):
    async def get_lifetime_token(self) -> LifetimeToken: ...

    async def get_min_rent(self, size: int) -> int: ...

    async def submit(self, raw: bytes) -> str: ...

    async def get_status(self, signature: str) -> Optional[SignatureStatus]: ...

    async def get_block_height(self) -> int: ...


def classify_rpc_error(message: str, code: Optional[int] = None, data: Any = None) -> LedgerError:
    """Map an RPC error object (or transport message) to the matching exception type."""
    haystack = f"{message} {data!r}".lower() if data is not None else message.lower()
    if _ALREADY_PROCESSED_RE.search(haystack):
        return AlreadyProcessed(message, code, data)
    if any(p in haystack for p in _STALE_PATTERNS):
        return StaleLifetimeToken(message, code, data)
    if code == 429 or any(p in haystack for p in _RATE_LIMIT_PATTERNS):
        return RateLimited(message, code, data)
    return LedgerError(message, code, data)


class LedgerClient:
    """
    Thin JSON-RPC wrapper over httpx.AsyncClient.

    Pass `client` to share a connection pool or to inject an httpx.MockTransport.
    """

    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        timeout: float = 30.0,
        skip_preflight: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.skip_preflight = skip_preflight
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, cfg, client: Optional[httpx.AsyncClient] = None) -> "LedgerClient":
        return cls(cfg.rpc_url, cfg.commitment, cfg.rpc_timeout, cfg.skip_preflight, client)

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ---------- transport ----------
    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise LedgerError(f"{method}: connection error: {e}") from e
        if resp.status_code == 429:
            raise RateLimited(f"{method}: rate limited (HTTP 429)", 429)
        if resp.status_code >= 400:
            raise LedgerError(f"{method}: HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code)
        try:
            body = resp.json()
        except ValueError as e:
            raise LedgerError(f"{method}: response is not JSON") from e

        err = body.get("error")
        if err:
            raise classify_rpc_error(str(err.get("message", err)), err.get("code"), err.get("data"))
        if "result" not in body:
            raise LedgerError(f"{method}: response has neither result nor error")
        return body["result"]

    # ---------- calls ----------
    async def get_lifetime_token(self) -> LifetimeToken:
        res = await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = res["value"]
        return LifetimeToken(value["blockhash"], int(value["lastValidBlockHeight"]))

    async def get_min_rent(self, size: int) -> int:
        try:
            return int(await self.call("getMinimumBalanceForRentExemption", [size]))
        except LedgerError as e:
            raise RentQueryFailed(f"rent query for {size} bytes failed: {e}") from e

    async def submit(self, raw: bytes) -> str:
        params = [
            base64.b64encode(raw).decode("ascii"),
            {
                "encoding": "base64",
                "skipPreflight": self.skip_preflight,
                "preflightCommitment": self.commitment,
                "maxRetries": 0,
            },
        ]
        return str(await self.call("sendTransaction", params))

    async def get_status(self, signature: str) -> Optional[SignatureStatus]:
        res = await self.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = (res or {}).get("value") or [None]
        st = values[0]
        if st is None:
            return None
        return SignatureStatus(st.get("confirmationStatus"), st.get("err"), st.get("slot"))

    async def get_block_height(self) -> int:
        return int(await self.call("getBlockHeight", [{"commitment": self.commitment}]))

    async def get_health(self) -> str:
        return str(await self.call("getHealth"))
