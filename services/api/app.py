# services/api/app.py
from __future__ import annotations

import os
import uuid
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Query

from services.api import health_checks
from services.api.eventlog import TransferJournal
from services.api.logging_config import configure_logging, get_logger
from services.ledger.rpc import LedgerClient
from services.transfer.config import TransferConfig
from services.transfer.context_accounts import (
    ContextAccountPlan,
    ContextAccountPlanner,
    context_size,
    fresh_handles,
)
from services.transfer.errors import (
    ConfidentialTransferError,
    EncodingError,
    InvalidTransferIntent,
    LedgerError,
    ProofGenerationFailed,
    RentQueryFailed,
)
from services.transfer.oracle import BundleFileOracle
from services.transfer.orchestrator import describe_steps
from services.transfer.planner import MessagePlanner
from services.transfer.types import ProofKind, intent_from_encoded
from .schemas_api import (
    ContextInfo,
    PlanReq, PlanRes,
    StepInfo,
    StrandedItem, StrandedRes,
)

configure_logging()
logger = get_logger("api")

app = FastAPI(title="Confidential Transfer API", version="0.1.0")

# =========================
# Config
# =========================

SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "http://127.0.0.1:8899")
JOURNAL_ENABLED = os.getenv("JOURNAL_ENABLED", "1").lower() in ("1", "true", "yes")


def get_config() -> TransferConfig:
    return TransferConfig.from_env(rpc_url=SOLANA_RPC_URL)


def _http_error(e: ConfidentialTransferError) -> HTTPException:
    if isinstance(e, InvalidTransferIntent):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, EncodingError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (LedgerError, RentQueryFailed, ProofGenerationFailed)):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# =========================
# Health
# =========================

@app.get("/health")
async def health():
    cfg = get_config()
    journal = cfg.journal_path if JOURNAL_ENABLED and os.path.exists(cfg.journal_path) else None
    return await health_checks.comprehensive_health_check(journal, cfg.rpc_url)


@app.get("/health/live")
async def health_live():
    alive = await health_checks.liveness_check()
    if not alive:
        raise HTTPException(status_code=503, detail="not alive")
    return {"status": "alive"}


# =========================
# Transfers
# =========================

async def _rents(cfg: TransferConfig, given: Optional[Dict[str, int]]) -> Dict[ProofKind, ContextAccountPlan]:
    if given is not None:
        try:
            return {k: ContextAccountPlan(k, context_size(cfg, k), int(given[k.value])) for k in ProofKind}
        except KeyError as e:
            raise HTTPException(status_code=400, detail=f"rent_lamports is missing {e.args[0]}")
    async with LedgerClient.from_config(cfg) as ledger:
        return await ContextAccountPlanner(ledger, cfg).plan_all()


@app.post("/transfers/plan", response_model=PlanRes)
async def plan_transfer(req: PlanReq):
    """
    Dry run: validate the intent, check the supplied proofs against it, and
    lay out the five transactions without signing or sending anything.
    """
    cfg = get_config()
    try:
        intent = intent_from_encoded(
            sender_owner=req.sender_owner,
            sender_token_account=req.sender_token_account,
            recipient_token_account=req.recipient_token_account,
            mint=req.mint,
            recipient_elgamal_pubkey=req.recipient_elgamal_pubkey,
            auditor_elgamal_pubkey=req.auditor_elgamal_pubkey,
            amount=req.amount,
            available_balance=req.available_balance,
            current_available_ciphertext=req.current_available_ciphertext,
        )
        intent.validate()
        try:
            bundle = BundleFileOracle(req.proof_bundle).generate_proofs(intent)
        except ProofGenerationFailed as e:
            # client-supplied bundle that does not decode or does not fit the intent
            raise HTTPException(status_code=422, detail=f"proof_bundle: {e}")
        rents = await _rents(cfg, req.rent_lamports)
        handles = fresh_handles()
        plan_id = uuid.uuid4().hex
        steps = MessagePlanner(cfg).plan(intent, bundle, handles, rents, plan_id)
    except ConfidentialTransferError as e:
        logger.warning(f"plan rejected: {type(e).__name__}: {e}")
        raise _http_error(e)

    return PlanRes(
        plan_id=plan_id,
        steps=[StepInfo(**s) for s in describe_steps(steps)],
        contexts=[
            ContextInfo(kind=k.value, address=handles[k].address_b58,
                        byte_size=rents[k].byte_size, rent_lamports=rents[k].rent_lamports)
            for k in ProofKind
        ],
        total_rent_lamports=sum(p.rent_lamports for p in rents.values()),
        max_transaction_size=cfg.max_transaction_size,
    )


@app.get("/transfers/stranded", response_model=StrandedRes)
async def stranded_accounts(authority: Optional[str] = Query(None, description="Filter by authority (base58)")):
    cfg = get_config()
    if not JOURNAL_ENABLED:
        raise HTTPException(status_code=404, detail="journal disabled")
    async with TransferJournal(cfg.journal_path) as journal:
        rows = await journal.stranded_accounts(authority)
    return StrandedRes(
        accounts=[StrandedItem(**r.as_dict()) for r in rows],
        total_rent_lamports=sum(r.rent_lamports for r in rows),
    )
