# services/transfer/config.py
from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, fields, replace
from typing import Any, Dict

from services.transfer.errors import ConfigError

# ===== Defaults =====
REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[2])
DATA_DIR = os.getenv("DATA_DIR", os.path.join(REPO_ROOT, "data"))

# Solana packet ceiling (PACKET_DATA_SIZE) and proof context-state header
MAX_TRANSACTION_SIZE = 1232
CONTEXT_STATE_META_SIZE = 33  # authority(32) + proof type(1)


@dataclass(frozen=True)
class TransferConfig:
    rpc_url: str = "http://127.0.0.1:8899"
    commitment: str = "confirmed"
    rpc_timeout: float = 30.0

    max_transaction_size: int = MAX_TRANSACTION_SIZE
    context_meta_size: int = CONTEXT_STATE_META_SIZE
    equality_context_payload: int = 128
    validity_context_payload: int = 352
    range_context_payload: int = 264

    cu_equality: int = 150_000
    cu_validity: int = 300_000
    cu_transfer: int = 450_000

    max_stale_attempts: int = 3
    poll_interval: float = 2.0
    confirmation_timeout: float = 60.0
    resend_interval: float = 4.0
    skip_preflight: bool = True

    journal_path: str = os.path.join(DATA_DIR, "transfers.db")

    def __post_init__(self) -> None:
        if not self.rpc_url:
            raise ConfigError("rpc_url must be set")
        if self.commitment not in ("processed", "confirmed", "finalized"):
            raise ConfigError(f"unknown commitment {self.commitment!r}")
        for name in (
            "max_transaction_size", "context_meta_size", "equality_context_payload",
            "validity_context_payload", "range_context_payload",
            "cu_equality", "cu_validity", "cu_transfer", "max_stale_attempts",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        for name in ("poll_interval", "resend_interval"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.confirmation_timeout <= 0 or self.rpc_timeout <= 0:
            raise ConfigError("timeouts must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> "TransferConfig":
        """
        Read CT_* variables (plus SOLANA_RPC_URL); keyword overrides win.
        """
        env: Dict[str, Any] = {}
        rpc = os.getenv("SOLANA_RPC_URL")
        if rpc:
            env["rpc_url"] = rpc
        for f in fields(cls):
            raw = os.getenv(f"CT_{f.name.upper()}")
            if raw is None:
                continue
            try:
                if f.type in ("int", int):
                    env[f.name] = int(raw)
                elif f.type in ("float", float):
                    env[f.name] = float(raw)
                elif f.type in ("bool", bool):
                    env[f.name] = raw.strip().lower() in ("1", "true", "yes")
                else:
                    env[f.name] = raw
            except ValueError as e:
                raise ConfigError(f"CT_{f.name.upper()}={raw!r}: {e}") from e
        env.update(overrides)
        return cls(**env)

    def with_overrides(self, **kw: Any) -> "TransferConfig":
        return replace(self, **kw)
