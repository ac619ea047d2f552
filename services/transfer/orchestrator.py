# services/transfer/orchestrator.py
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from services.api.logging_config import get_logger
from services.crypto_core.keypairs import pubkey_to_b58
from services.crypto_core.splits import split_transfer
from services.ledger.rpc import Ledger
from services.transfer.config import TransferConfig
from services.transfer.context_accounts import (
    ContextAccountHandle,
    ContextAccountPlan,
    ContextAccountPlanner,
    fresh_handles,
)
from services.transfer.errors import SignerNotFound
from services.transfer.oracle import ProvingOracle
from services.transfer.planner import MessagePlanner
from services.transfer.signing import PrimarySigner
from services.transfer.submission import ProgressCallback, SubmissionEngine
from services.transfer.types import ProofBundle, ProofKind, TransferIntent, TransferResult, TransferStep

logger = get_logger("transfer.orchestrator")


@dataclass
class PreparedTransfer:
    plan_id: str
    bundle: ProofBundle
    handles: Dict[ProofKind, ContextAccountHandle]
    rents: Dict[ProofKind, ContextAccountPlan]
    steps: List[TransferStep]


def describe_steps(steps: List[TransferStep]) -> List[Dict[str, Any]]:
    """JSON-friendly summary of planned steps (labels, signers, sizes)."""
    out = []
    for s in steps:
        out.append({
            "index": s.index,
            "total": s.total,
            "label": s.label,
            "compute_unit_limit": s.compute_unit_limit,
            "extra_signers": [kp.address for kp in s.extra_signers],
            "instruction_data_sizes": [len(ix.data) for ix in s.instructions],
            "serialized_size": s.serialized_size,
        })
    return out


class ConfidentialTransferOrchestrator:
    """
    validate -> split -> proofs (+ derived balance) -> fresh context handles
    -> rent -> five-step plan -> ordered submission.
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: ProvingOracle,
        primary: PrimarySigner,
        cfg: Optional[TransferConfig] = None,
        journal=None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.primary = primary
        self.cfg = cfg or TransferConfig()
        self.journal = journal
        self.on_progress = on_progress

    def _check_intent(self, intent: TransferIntent) -> None:
        intent.validate()
        if self.primary.pubkey != intent.sender_owner:
            raise SignerNotFound(
                f"primary signer {pubkey_to_b58(self.primary.pubkey)} does not own the sender account"
            )

    def plan_with_rents(
        self,
        intent: TransferIntent,
        bundle: ProofBundle,
        rents: Dict[ProofKind, ContextAccountPlan],
        plan_id: Optional[str] = None,
    ) -> PreparedTransfer:
        """Plan from known rents; touches no network."""
        plan_id = plan_id or uuid.uuid4().hex
        handles = fresh_handles()
        steps = MessagePlanner(self.cfg).plan(intent, bundle, handles, rents, plan_id)
        return PreparedTransfer(plan_id, bundle, handles, rents, steps)

    async def prepare(self, intent: TransferIntent) -> PreparedTransfer:
        self._check_intent(intent)
        amount, remaining = split_transfer(intent.amount, intent.available_balance)
        logger.info(
            f"transfer of {intent.amount} (lo={amount.lo}, hi={amount.hi}); "
            f"remaining lo={remaining.lo}, hi={remaining.hi}"
        )
        bundle = self.oracle.generate_proofs(intent, amount)
        # a new planner per run, so rent is re-queried for every transfer
        rents = await ContextAccountPlanner(self.ledger, self.cfg).plan_all()
        return self.plan_with_rents(intent, bundle, rents)

    async def execute(self, prepared: PreparedTransfer, intent: TransferIntent,
                      cancel: Optional[asyncio.Event] = None) -> TransferResult:
        if self.journal is not None:
            await self.journal.record_run(
                prepared.plan_id, intent.sender_owner, intent.mint,
                intent.sender_token_account, intent.recipient_token_account,
            )
            await self.journal.record_contexts(
                prepared.plan_id,
                intent.sender_owner,
                [(prepared.handles[k], prepared.rents[k]) for k in ProofKind],
            )
        engine = SubmissionEngine(
            self.ledger, self.primary, self.cfg, journal=self.journal, on_progress=self.on_progress
        )
        return await engine.run(prepared.steps, cancel=cancel, run_id=prepared.plan_id)

    async def transfer(self, intent: TransferIntent, cancel: Optional[asyncio.Event] = None) -> TransferResult:
        """
        Run a whole confidential transfer.

        Input, encoding and oracle errors are raised before anything is sent.
        Runtime ledger failures come back as a non-ok TransferResult.
        """
        prepared = await self.prepare(intent)
        return await self.execute(prepared, intent, cancel)
