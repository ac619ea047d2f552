# services/transfer/context_accounts.py
from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Optional

from services.api.logging_config import get_logger
from services.crypto_core.keypairs import Keypair
from services.ledger.rpc import Ledger
from services.transfer.config import TransferConfig
from services.transfer.errors import ContextAccountReuseError, LedgerError, RentQueryFailed
from services.transfer.types import ProofKind

logger = get_logger("transfer.context_accounts")


class LifecycleState(IntEnum):
    UNFUNDED = 0
    CREATED = 1
    VERIFIED = 2
    CONSUMED = 3
    CLOSED = 4


class ContextAccountHandle:
    """
    A fresh scratch account for one proof. Moves strictly forward through
    LifecycleState, one state at a time, and belongs to at most one plan.
    """

    def __init__(self, kind: ProofKind, keypair: Optional[Keypair] = None):
        self.kind = kind
        self.keypair = keypair or Keypair.generate()
        self.state = LifecycleState.UNFUNDED
        self.plan_id: Optional[str] = None

    @property
    def address(self) -> bytes:
        return self.keypair.pubkey

    @property
    def address_b58(self) -> str:
        return self.keypair.address

    def bind(self, plan_id: str) -> None:
        if self.plan_id is not None:
            raise ContextAccountReuseError(
                f"{self.kind.value} context {self.address_b58} already belongs to plan {self.plan_id}"
            )
        if self.state is not LifecycleState.UNFUNDED:
            raise ContextAccountReuseError(f"cannot bind a {self.state.name} context account")
        self.plan_id = plan_id

    def advance(self, target: LifecycleState) -> None:
        if self.state is LifecycleState.CLOSED:
            raise ContextAccountReuseError(f"{self.kind.value} context {self.address_b58} is closed")
        if target != self.state + 1:
            raise ContextAccountReuseError(
                f"{self.kind.value} context: illegal transition {self.state.name} -> {target.name}"
            )
        logger.debug(f"{self.kind.value} context {self.address_b58}: {self.state.name} -> {target.name}")
        self.state = target

    def __repr__(self) -> str:
        return f"ContextAccountHandle({self.kind.value}, {self.address_b58}, {self.state.name})"


def fresh_handles() -> Dict[ProofKind, ContextAccountHandle]:
    return {kind: ContextAccountHandle(kind) for kind in ProofKind}


def context_size(cfg: TransferConfig, kind: ProofKind) -> int:
    """Context-state header plus the proof context payload for `kind`."""
    payload = {
        ProofKind.EQUALITY: cfg.equality_context_payload,
        ProofKind.VALIDITY: cfg.validity_context_payload,
        ProofKind.RANGE: cfg.range_context_payload,
    }[kind]
    return cfg.context_meta_size + payload


@dataclass(frozen=True)
class ContextAccountPlan:
    kind: ProofKind
    byte_size: int
    rent_lamports: int


class ContextAccountPlanner:
    """
    Sizes and rent for the three context accounts. Rent is cached per byte
    size for the lifetime of this planner; create one per transfer run.
    """

    def __init__(self, ledger: Ledger, cfg: TransferConfig):
        self.ledger = ledger
        self.cfg = cfg
        self._rent_cache: Dict[int, int] = {}

    def size_for(self, kind: ProofKind) -> int:
        return context_size(self.cfg, kind)

    async def rent_for_size(self, size: int) -> int:
        if size in self._rent_cache:
            return self._rent_cache[size]
        last: Optional[Exception] = None
        for attempt in (1, 2):
            try:
                lamports = await self.ledger.get_min_rent(size)
            except (RentQueryFailed, LedgerError) as e:
                last = e
                logger.warning(f"rent query for {size} bytes failed (attempt {attempt}/2): {e}")
                continue
            self._rent_cache[size] = lamports
            return lamports
        raise RentQueryFailed(f"rent query for {size} bytes failed twice: {last}") from last

    async def plan(self, kind: ProofKind) -> ContextAccountPlan:
        size = self.size_for(kind)
        return ContextAccountPlan(kind, size, await self.rent_for_size(size))

    async def plan_all(self) -> Dict[ProofKind, ContextAccountPlan]:
        return {kind: await self.plan(kind) for kind in ProofKind}
