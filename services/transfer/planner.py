# services/transfer/planner.py
"""
Splits one confidential transfer into five transactions that each fit in a
Solana packet:

    1. create equality context  + verify equality proof
    2. create validity context  + verify validity proof
    3. create range context
    4. verify range proof (alone; the proof nearly fills the packet)
    5. transfer reading all three contexts + close them back to the sender
"""
from __future__ import annotations

import uuid
from typing import Dict, List, Optional, Sequence

from services.api.logging_config import get_logger
from services.ledger.message import serialized_size
from services.ledger.wire import (
    ZK_ELGAMAL_PROOF_PROGRAM_ID,
    CloseContextState,
    ConfidentialTransfer,
    CreateAccount,
    Instruction,
    SetComputeUnitLimit,
    VerifyProof,
)
from services.transfer.config import TransferConfig
from services.transfer.context_accounts import ContextAccountHandle, ContextAccountPlan, LifecycleState
from services.transfer.errors import StepTooLarge
from services.transfer.types import ProofBundle, ProofKind, TransferIntent, TransferStep

logger = get_logger("transfer.planner")

TOTAL_STEPS = 5
LABELS = (
    "create+verify equality proof",
    "create+verify validity proof",
    "create range proof context",
    "verify range proof",
    "transfer+close proof contexts",
)


class MessagePlanner:
    def __init__(self, cfg: TransferConfig):
        self.cfg = cfg

    # ---------- helpers ----------
    def _create(self, payer: bytes, handle: ContextAccountHandle, plan: ContextAccountPlan) -> Instruction:
        return CreateAccount(
            payer=payer,
            new_account=handle.address,
            lamports=plan.rent_lamports,
            space=plan.byte_size,
            owner=ZK_ELGAMAL_PROOF_PROGRAM_ID,
        ).encode()

    def _verify(self, bundle: ProofBundle, handle: ContextAccountHandle, authority: bytes) -> Instruction:
        return VerifyProof(
            kind=handle.kind.instruction,
            proof=bundle.proof_for(handle.kind),
            context_account=handle.address,
            context_authority=authority,
        ).encode()

    def _finish(self, payer: bytes, step: TransferStep) -> TransferStep:
        if step.compute_unit_limit is not None:
            step.instructions.insert(0, SetComputeUnitLimit(step.compute_unit_limit).encode())
        size = serialized_size(payer, step.instructions)
        if size > self.cfg.max_transaction_size:
            raise StepTooLarge(step.label, size, self.cfg.max_transaction_size)
        step.serialized_size = size
        logger.debug(f"planned step {step.tag}: {len(step.instructions)} ix, {size} bytes")
        return step

    # ---------- transfer ----------
    def plan(
        self,
        intent: TransferIntent,
        bundle: ProofBundle,
        handles: Dict[ProofKind, ContextAccountHandle],
        rents: Dict[ProofKind, ContextAccountPlan],
        plan_id: Optional[str] = None,
    ) -> List[TransferStep]:
        """
        Build the five ordered steps. Binds every handle to this plan.

        Raises:
            StepTooLarge: a step exceeds max_transaction_size
            ContextAccountReuseError: a handle is already bound or used
        """
        plan_id = plan_id or uuid.uuid4().hex
        for h in handles.values():
            h.bind(plan_id)

        owner = intent.sender_owner
        eq = handles[ProofKind.EQUALITY]
        val = handles[ProofKind.VALIDITY]
        rng = handles[ProofKind.RANGE]
        S = LifecycleState

        def step(i: int, instructions, signers, cu, transitions) -> TransferStep:
            return self._finish(owner, TransferStep(
                index=i,
                total=TOTAL_STEPS,
                label=LABELS[i - 1],
                instructions=list(instructions),
                extra_signers=list(signers),
                compute_unit_limit=cu,
                transitions=list(transitions),
            ))

        steps = [
            step(
                1,
                [self._create(owner, eq, rents[ProofKind.EQUALITY]), self._verify(bundle, eq, owner)],
                [eq.keypair],
                self.cfg.cu_equality,
                [(eq, S.CREATED), (eq, S.VERIFIED)],
            ),
            step(
                2,
                [self._create(owner, val, rents[ProofKind.VALIDITY]), self._verify(bundle, val, owner)],
                [val.keypair],
                self.cfg.cu_validity,
                [(val, S.CREATED), (val, S.VERIFIED)],
            ),
            step(3, [self._create(owner, rng, rents[ProofKind.RANGE])], [rng.keypair], None, [(rng, S.CREATED)]),
            step(4, [self._verify(bundle, rng, owner)], [], None, [(rng, S.VERIFIED)]),
        ]

        transfer = ConfidentialTransfer(
            source=intent.sender_token_account,
            mint=intent.mint,
            destination=intent.recipient_token_account,
            equality_context=eq.address,
            validity_context=val.address,
            range_context=rng.address,
            authority=owner,
            new_decryptable_balance=bundle.new_decryptable_balance,
            auditor_ciphertext_lo=bundle.auditor_ciphertext_lo,
            auditor_ciphertext_hi=bundle.auditor_ciphertext_hi,
        ).encode()
        closes = [CloseContextState(h.address, owner, owner).encode() for h in (eq, val, rng)]
        consume = [(h, S.CONSUMED) for h in (eq, val, rng)]
        close = [(h, S.CLOSED) for h in (eq, val, rng)]
        steps.append(step(5, [transfer] + closes, [], self.cfg.cu_transfer, consume + close))

        logger.info(
            f"plan {plan_id[:8]}: "
            + ", ".join(f"{s.index}:{s.serialized_size}B" for s in steps)
        )
        return steps

    # ---------- recovery ----------
    def plan_reclaim(self, authority: bytes, context_addresses: Sequence[bytes]) -> List[TransferStep]:
        """
        Close-only steps that return stranded context-account rent to `authority`,
        packing as many closes per transaction as fit.
        """
        batches: List[List[Instruction]] = []
        current: List[Instruction] = []
        for addr in context_addresses:
            ix = CloseContextState(addr, authority, authority).encode()
            if current and serialized_size(authority, current + [ix]) > self.cfg.max_transaction_size:
                batches.append(current)
                current = []
            current.append(ix)
        if current:
            batches.append(current)

        total = len(batches)
        return [
            self._finish(authority, TransferStep(
                index=i, total=total, label=f"reclaim {len(batch)} context account(s)", instructions=batch,
            ))
            for i, batch in enumerate(batches, start=1)
        ]
