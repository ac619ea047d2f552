#!/usr/bin/env python3
# clients/cli/ct_transfer.py
"""
Command line front end for split-proof confidential transfers.

    python -m clients.cli.ct_transfer plan     --intent intent.json --proofs bundle.json
    python -m clients.cli.ct_transfer send     --intent intent.json --proofs bundle.json --keypair id.json
    python -m clients.cli.ct_transfer stranded [--authority <base58>]
    python -m clients.cli.ct_transfer reclaim  --keypair id.json

The intent file holds the same fields as the API's POST /transfers/plan body
(base58 addresses, base64 ElGamal keys and ciphertext, integer amounts).
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
from typing import Any, Dict, Optional

from services.api.eventlog import TransferJournal, dump_stranded
from services.api.logging_config import configure_logging, get_logger
from services.crypto_core.keypairs import load_keypair, pubkey_from_b58, pubkey_to_b58
from services.ledger.rpc import LedgerClient
from services.ledger.wire import CloseContextState, decode_instruction
from services.transfer.config import TransferConfig
from services.transfer.errors import ConfidentialTransferError
from services.transfer.oracle import BundleFileOracle
from services.transfer.orchestrator import ConfidentialTransferOrchestrator, describe_steps
from services.transfer.planner import MessagePlanner
from services.transfer.submission import SubmissionEngine
from services.transfer.types import ProofKind, TransferIntent, TransferStep, intent_from_encoded

logger = get_logger("cli")

# ---------- Constants ----------
DEFAULT_KEYPAIR = os.path.expanduser(os.getenv("SOLANA_KEYPAIR", "~/.config/solana/id.json"))
INTENT_FIELDS = (
    "sender_owner",
    "sender_token_account",
    "recipient_token_account",
    "mint",
    "recipient_elgamal_pubkey",
    "auditor_elgamal_pubkey",
    "amount",
    "available_balance",
    "current_available_ciphertext",
)


# ---------- Helpers ----------
def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def load_intent(path: str) -> TransferIntent:
    with open(path, "r") as f:
        raw: Dict[str, Any] = json.load(f)
    missing = [k for k in INTENT_FIELDS if k != "auditor_elgamal_pubkey" and k not in raw]
    if missing:
        raise ValueError(f"{path}: missing {', '.join(missing)}")
    return intent_from_encoded(**{k: raw.get(k) for k in INTENT_FIELDS})


def _progress(step: TransferStep, msg: str) -> None:
    print(f"[{step.index}/{step.total}] {step.label}: {msg}", file=sys.stderr)


def _cancel_on_sigint() -> asyncio.Event:
    """First Ctrl-C stops before the next step instead of killing a step mid-flight."""
    cancel = asyncio.Event()
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.set)
    except (NotImplementedError, RuntimeError):
        pass
    return cancel


# ---------- Commands ----------
async def cmd_plan(args: argparse.Namespace, cfg: TransferConfig) -> int:
    intent = load_intent(args.intent)
    oracle = BundleFileOracle.from_path(args.proofs)
    # the owner's key is not needed to lay out the steps
    owner = _OwnerOnly(intent.sender_owner)
    async with LedgerClient.from_config(cfg) as ledger:
        prepared = await ConfidentialTransferOrchestrator(ledger, oracle, owner, cfg).prepare(intent)
    _print_json({
        "plan_id": prepared.plan_id,
        "steps": describe_steps(prepared.steps),
        "contexts": {
            k.value: {
                "address": prepared.handles[k].address_b58,
                "byte_size": prepared.rents[k].byte_size,
                "rent_lamports": prepared.rents[k].rent_lamports,
            }
            for k in ProofKind
        },
    })
    return 0


async def cmd_send(args: argparse.Namespace, cfg: TransferConfig) -> int:
    intent = load_intent(args.intent)
    oracle = BundleFileOracle.from_path(args.proofs)
    payer = load_keypair(args.keypair)
    cancel = _cancel_on_sigint()

    async with LedgerClient.from_config(cfg) as ledger, TransferJournal(cfg.journal_path) as journal:
        orch = ConfidentialTransferOrchestrator(ledger, oracle, payer, cfg, journal=journal, on_progress=_progress)
        result = await orch.transfer(intent, cancel)

    _print_json({
        "run_id": result.run_id,
        "ok": result.ok,
        "status": result.outcome.status.value,
        "signature": result.signature,
        "step_signatures": result.step_signatures,
        "failed_step": result.failed_step_index,
        "detail": result.describe(),
    })
    return 0 if result.ok else 1


async def cmd_stranded(args: argparse.Namespace, cfg: TransferConfig) -> int:
    async with TransferJournal(cfg.journal_path) as journal:
        rows = await journal.stranded_accounts(args.authority)
    print(dump_stranded(rows))
    return 0


async def cmd_reclaim(args: argparse.Namespace, cfg: TransferConfig) -> int:
    payer = load_keypair(args.keypair)
    planner = MessagePlanner(cfg)
    closed = []

    async with LedgerClient.from_config(cfg) as ledger, TransferJournal(cfg.journal_path) as journal:
        engine = SubmissionEngine(ledger, payer, cfg, on_progress=_progress)
        while True:
            step = await journal.build_reclaim_step(planner, payer.pubkey)
            if step is None:
                break
            addresses = [
                pubkey_to_b58(d.context_account)
                for d in map(decode_instruction, step.instructions) if isinstance(d, CloseContextState)
            ]
            result = await engine.run([step])
            if not result.ok:
                print(result.describe(), file=sys.stderr)
                _print_json({"closed": closed, "ok": False})
                return 1
            await journal.mark_closed(addresses)
            closed.extend(addresses)

    _print_json({"closed": closed, "ok": True})
    return 0


class _OwnerOnly:
    """Stand-in primary signer for dry runs; refuses to sign."""

    def __init__(self, pubkey: bytes):
        self.pubkey = pubkey

    def sign(self, message: bytes) -> bytes:
        raise ConfidentialTransferError("dry-run signer cannot sign")


# ---------- Main ----------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ct_transfer", description="Split-proof confidential transfers")
    parser.add_argument("--rpc-url", default=None, help="Solana RPC endpoint (default: SOLANA_RPC_URL or localnet)")
    parser.add_argument("--journal", default=None, help="Transfer journal path (default: CT_JOURNAL_PATH or data/)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING...")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("plan", help="Validate and lay out the five transactions without sending")
    p.add_argument("--intent", required=True, help="Transfer intent JSON")
    p.add_argument("--proofs", required=True, help="Proof bundle JSON from the external prover")
    p.set_defaults(func=cmd_plan)

    p = sub.add_parser("send", help="Run the whole transfer")
    p.add_argument("--intent", required=True, help="Transfer intent JSON")
    p.add_argument("--proofs", required=True, help="Proof bundle JSON from the external prover")
    p.add_argument("--keypair", default=DEFAULT_KEYPAIR, help="Sender owner keyfile (fee payer)")
    p.set_defaults(func=cmd_send)

    p = sub.add_parser("stranded", help="List funded context accounts that were never closed")
    p.add_argument("--authority", default=None, help="Only accounts owned by this authority (base58)")
    p.set_defaults(func=cmd_stranded)

    p = sub.add_parser("reclaim", help="Close stranded context accounts and recover their rent")
    p.add_argument("--keypair", default=DEFAULT_KEYPAIR, help="Context authority keyfile")
    p.set_defaults(func=cmd_reclaim)
    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    overrides: Dict[str, Any] = {}
    if args.rpc_url:
        overrides["rpc_url"] = args.rpc_url
    if args.journal:
        overrides["journal_path"] = args.journal
    if getattr(args, "authority", None):
        pubkey_from_b58(args.authority)

    cfg = TransferConfig.from_env(**overrides)
    return asyncio.run(args.func(args, cfg))


if __name__ == "__main__":
    try:
        sys.exit(main())
    except (ConfidentialTransferError, ValueError, OSError) as e:
        print("\nERROR:", e, file=sys.stderr)
        sys.exit(2)
