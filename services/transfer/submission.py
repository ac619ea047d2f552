# services/transfer/submission.py
"""
Runs planned steps against the ledger, strictly in order.

Per step: fetch a fresh lifetime token (blockhash), compile, sign, submit and
poll until confirmed, failed or timed out. A stale token is the one failure
that is retried (bounded by max_stale_attempts), with a new blockhash each
time. Everything else is final; nothing is rolled back.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from typing import Callable, List, Optional, Sequence

from services.api.logging_config import get_logger
from services.ledger.message import Transaction, blockhash_bytes, compile_message
from services.ledger.rpc import Ledger, LifetimeToken
from services.transfer.config import TransferConfig
from services.transfer.errors import AlreadyProcessed, EncodingError, LedgerError, StaleLifetimeToken
from services.transfer.signing import PartialSigningCoordinator, PrimarySigner
from services.transfer.types import OutcomeStatus, SubmissionOutcome, TransferResult, TransferStep

logger = get_logger("transfer.submission")

# (step, status message), called on every attempt and outcome
ProgressCallback = Callable[[TransferStep, str], None]


class SubmissionEngine:
    def __init__(
        self,
        ledger: Ledger,
        primary: PrimarySigner,
        cfg: TransferConfig,
        coordinator: Optional[PartialSigningCoordinator] = None,
        journal=None,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.primary = primary
        self.cfg = cfg
        self.coordinator = coordinator or PartialSigningCoordinator()
        self.journal = journal
        self.on_progress = on_progress
        self._sleep = sleep
        self._clock = clock

    def _report(self, step: TransferStep, msg: str) -> None:
        logger.info(f"[{step.index}/{step.total}] {step.label}: {msg}",
                    extra={"step": step.index, "total": step.total, "label": step.label})
        if self.on_progress:
            self.on_progress(step, msg)

    def build_transaction(self, step: TransferStep, token: LifetimeToken) -> Transaction:
        message = compile_message(self.primary.pubkey, step.instructions, blockhash_bytes(token.blockhash))
        tx = Transaction.unsigned(message)
        return self.coordinator.sign_all(tx, self.primary, step.extra_signers)

    # ---------- one attempt ----------
    async def submit_step(self, step: TransferStep, token: LifetimeToken) -> SubmissionOutcome:
        """
        Sign with `token`, submit, and wait for confirmation.

        A submit that fails without an answer from the node is not final: the
        transaction may have landed, so its status is polled like any other.

        Raises:
            StaleLifetimeToken: the cluster rejected or expired the blockhash
        """
        tx = self.build_transaction(step, token)
        raw = tx.serialize()
        signature = tx.signature

        try:
            returned = await self.ledger.submit(raw)
            if returned and returned != signature:
                logger.warning(f"ledger returned signature {returned}, expected {signature}")
        except AlreadyProcessed:
            logger.info(f"{signature} already processed; waiting for its status")
        except StaleLifetimeToken:
            raise
        except LedgerError as e:
            if e.rejected:
                return SubmissionOutcome.failed(f"submission rejected: {e}", e, signature)
            logger.warning(f"submit of {signature} got no answer ({e}); polling its status")

        return await self._await_confirmation(signature, raw, token)

    async def _await_confirmation(self, signature: str, raw: bytes, token: LifetimeToken) -> SubmissionOutcome:
        deadline = self._clock() + self.cfg.confirmation_timeout
        last_resend = self._clock()

        while True:
            status = None
            try:
                status = await self.ledger.get_status(signature)
            except LedgerError as e:
                logger.warning(f"status poll for {signature} failed: {e}")

            if status is not None:
                if status.err:
                    return SubmissionOutcome.failed(f"transaction failed on chain: {status.err}", None, signature)
                if status.is_confirmed():
                    return SubmissionOutcome.success(signature, 1)
            else:
                try:
                    height = await self.ledger.get_block_height()
                except LedgerError as e:
                    logger.warning(f"block height check failed: {e}")
                    height = None
                if height is not None and height > token.last_valid_block_height:
                    raise StaleLifetimeToken(
                        f"{signature} unseen at block height {height} > {token.last_valid_block_height}"
                    )

            if self._clock() >= deadline:
                return SubmissionOutcome.unconfirmed(signature, 1)

            if self.cfg.resend_interval and self._clock() - last_resend >= self.cfg.resend_interval:
                last_resend = self._clock()
                try:
                    await self.ledger.submit(raw)
                    logger.debug(f"re-sent {signature}")
                except AlreadyProcessed:
                    pass
                except LedgerError as e:
                    logger.warning(f"re-send of {signature} failed: {e}")

            await self._sleep(self.cfg.poll_interval)

    # ---------- bounded stale retry ----------
    async def execute_step(self, step: TransferStep) -> SubmissionOutcome:
        last_error: Optional[StaleLifetimeToken] = None
        n = self.cfg.max_stale_attempts
        for attempt in range(1, n + 1):
            self._report(step, f"attempt {attempt}/{n}")
            try:
                token = await self.ledger.get_lifetime_token()
            except LedgerError as e:
                return SubmissionOutcome.failed(f"could not fetch a blockhash: {e}", e, attempts=attempt)
            try:
                outcome = await self.submit_step(step, token)
            except StaleLifetimeToken as e:
                last_error = e
                logger.warning(f"[{step.index}/{step.total}] stale blockhash ({e}); re-signing with a fresh one")
                continue
            outcome.attempts = attempt
            return outcome
        return SubmissionOutcome.failed(
            f"blockhash went stale {n} times in a row: {last_error}", last_error, attempts=n
        )

    # ---------- the run ----------
    async def run(
        self,
        steps: Sequence[TransferStep],
        cancel: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
    ) -> TransferResult:
        """
        Execute `steps` in order. Each step's confirmation gates the next and
        applies that step's context-account transitions.
        """
        run_id = run_id or uuid.uuid4().hex
        if [s.index for s in steps] != list(range(1, len(steps) + 1)):
            raise EncodingError("steps must be numbered 1..n in execution order")

        signatures: List[str] = []
        outcome = SubmissionOutcome(OutcomeStatus.SUCCESS)
        for step in steps:
            if cancel is not None and cancel.is_set():
                outcome = SubmissionOutcome(OutcomeStatus.CANCELLED, cause="cancelled before this step")
                self._report(step, "cancelled")
                return await self._finish(run_id, outcome, signatures, step)

            outcome = await self.execute_step(step)
            if self.journal is not None:
                await self.journal.record_step(run_id, step, outcome)

            if not outcome.ok:
                self._report(step, f"{outcome.status.value}: {outcome.cause}")
                if outcome.status is OutcomeStatus.UNCONFIRMED and self.journal is not None:
                    await self.journal.mark_uncertain(h for h, _ in step.transitions)
                return await self._finish(run_id, outcome, signatures, step)

            for handle, target in step.transitions:
                handle.advance(target)
                if self.journal is not None:
                    await self.journal.update_context(handle)
            signatures.append(outcome.signature)
            self._report(step, f"confirmed {outcome.signature}")

        return await self._finish(run_id, outcome, signatures, None)

    async def _finish(self, run_id: str, outcome: SubmissionOutcome, signatures: List[str],
                      failed: Optional[TransferStep]) -> TransferResult:
        result = TransferResult(
            run_id=run_id,
            outcome=outcome,
            step_signatures=list(signatures),
            failed_step_index=failed.index if failed else None,
            failed_step_label=failed.label if failed else None,
        )
        if self.journal is not None:
            await self.journal.finish_run(result)
        if result.ok:
            logger.info(result.describe())
        else:
            logger.error(result.describe())
        return result
