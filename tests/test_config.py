import base64
import json

import pytest

from clients.cli.ct_transfer import build_parser, load_intent
from services.crypto_core.keypairs import pubkey_to_b58
from services.transfer.config import TransferConfig
from services.transfer.errors import ConfigError, InvalidTransferIntent, MalformedCiphertext
from services.transfer.types import intent_from_encoded


def test_defaults():
    cfg = TransferConfig()
    assert cfg.max_transaction_size == 1232
    assert (cfg.cu_equality, cfg.cu_validity, cfg.cu_transfer) == (150_000, 300_000, 450_000)
    assert cfg.skip_preflight is True


def test_from_env(monkeypatch):
    monkeypatch.setenv("SOLANA_RPC_URL", "http://rpc.example:8899")
    monkeypatch.setenv("CT_MAX_STALE_ATTEMPTS", "5")
    monkeypatch.setenv("CT_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("CT_SKIP_PREFLIGHT", "false")

    cfg = TransferConfig.from_env(commitment="finalized")

    assert cfg.rpc_url == "http://rpc.example:8899"
    assert cfg.max_stale_attempts == 5
    assert cfg.poll_interval == 0.5
    assert cfg.skip_preflight is False
    assert cfg.commitment == "finalized"


def test_from_env_rejects_garbage(monkeypatch):
    monkeypatch.setenv("CT_CU_TRANSFER", "lots")
    with pytest.raises(ConfigError):
        TransferConfig.from_env()


@pytest.mark.parametrize(
    "kw",
    [
        {"commitment": "eventually"},
        {"max_transaction_size": 0},
        {"max_stale_attempts": 0},
        {"poll_interval": -1.0},
        {"confirmation_timeout": 0},
        {"rpc_url": ""},
    ],
)
def test_validation(kw):
    with pytest.raises(ConfigError):
        TransferConfig(**kw)


def test_with_overrides_keeps_the_rest():
    cfg = TransferConfig(cu_transfer=500_000).with_overrides(max_transaction_size=1000)
    assert cfg.cu_transfer == 500_000 and cfg.max_transaction_size == 1000


# ---------- encoded intents (API body / CLI intent file) ----------
def _encoded(intent):
    return {
        "sender_owner": pubkey_to_b58(intent.sender_owner),
        "sender_token_account": pubkey_to_b58(intent.sender_token_account),
        "recipient_token_account": pubkey_to_b58(intent.recipient_token_account),
        "mint": pubkey_to_b58(intent.mint),
        "recipient_elgamal_pubkey": base64.b64encode(intent.recipient_elgamal_pubkey).decode(),
        "amount": intent.amount,
        "available_balance": intent.available_balance,
        "current_available_ciphertext": base64.b64encode(intent.current_available_ciphertext).decode(),
    }


def test_intent_file_roundtrip(tmp_path, intent):
    path = tmp_path / "intent.json"
    path.write_text(json.dumps(_encoded(intent)))

    loaded = load_intent(str(path))

    assert loaded.sender_owner == intent.sender_owner
    assert loaded.current_available_ciphertext == intent.current_available_ciphertext
    assert loaded.auditor_elgamal_pubkey is None
    loaded.validate()


def test_intent_file_missing_field(tmp_path, intent):
    raw = _encoded(intent)
    del raw["mint"]
    path = tmp_path / "intent.json"
    path.write_text(json.dumps(raw))
    with pytest.raises(ValueError):
        load_intent(str(path))


def test_encoded_intent_errors(intent):
    raw = _encoded(intent)
    with pytest.raises(InvalidTransferIntent):
        intent_from_encoded(**{**raw, "sender_owner": "0OIl"})
    with pytest.raises(MalformedCiphertext):
        intent_from_encoded(**{**raw, "current_available_ciphertext": "***"})


def test_cli_parser():
    args = build_parser().parse_args(["--rpc-url", "http://x", "send", "--intent", "i.json", "--proofs", "p.json"])
    assert args.command == "send" and args.rpc_url == "http://x" and args.intent == "i.json"
    args = build_parser().parse_args(["stranded"])
    assert args.authority is None
