from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import base58
import pytest

from services.crypto_core.elgamal import ElGamalKeypair, encrypt_grouped_3
from services.crypto_core.keypairs import Keypair
from services.crypto_core.messages import AeKey
from services.crypto_core.splits import AmountSplit
from services.ledger.message import Transaction
from services.ledger.rpc import LifetimeToken, SignatureStatus
from services.ledger.wire import proof_data_len
from services.transfer.config import TransferConfig
from services.transfer.errors import AlreadyProcessed
from services.transfer.oracle import EqualityArtifacts, ProvingOracle, ValidityArtifacts
from services.transfer.types import ProofKind, SenderKeyMaterial, TransferIntent


# ---------- ledger ----------
class FakeLedger:
    """
    In-memory ledger. Every submitted transaction confirms on its first status
    poll unless a script says otherwise.

    submit_errors:  raised by successive submit() calls
    lost_replies:   raised by successive submit() calls after the transaction
                    has landed
    rent_errors:    raised by successive get_min_rent() calls
    status_script:  consumed by successive get_status() calls; None means
                    "not seen yet", an exception is raised
    failing:        ordinal of a distinct submitted signature (1-based) -> err
    """

    RENT_PER_BYTE_YEAR = 3480
    EXEMPTION_YEARS = 2

    def __init__(self, block_height: int = 50, last_valid_block_height: int = 100):
        self.calls: List[tuple] = []
        self.submitted: List[bytes] = []
        self.signatures: List[str] = []
        self.submit_errors: List[Exception] = []
        self.lost_replies: List[Exception] = []
        self.rent_errors: List[Exception] = []
        self.status_script: List[Any] = []
        self.failing: Dict[int, Any] = {}
        self.block_height = block_height
        self.last_valid_block_height = last_valid_block_height
        self._blockhashes = 0

    def _seen(self, sig: str) -> None:
        if sig not in self.signatures:
            self.signatures.append(sig)

    async def get_lifetime_token(self) -> LifetimeToken:
        self.calls.append(("get_lifetime_token",))
        self._blockhashes += 1
        blockhash = base58.b58encode(bytes([self._blockhashes]) * 32).decode("ascii")
        return LifetimeToken(blockhash, self.last_valid_block_height)

    async def get_min_rent(self, size: int) -> int:
        self.calls.append(("get_min_rent", size))
        if self.rent_errors:
            raise self.rent_errors.pop(0)
        return (128 + size) * self.RENT_PER_BYTE_YEAR * self.EXEMPTION_YEARS

    async def submit(self, raw: bytes) -> str:
        self.calls.append(("submit",))
        self.submitted.append(raw)
        sig = Transaction.deserialize(raw).signature
        if self.lost_replies:
            self._seen(sig)
            raise self.lost_replies.pop(0)
        if self.submit_errors:
            err = self.submit_errors.pop(0)
            if isinstance(err, AlreadyProcessed):
                self._seen(sig)
            raise err
        self._seen(sig)
        return sig

    async def get_status(self, signature: str) -> Optional[SignatureStatus]:
        self.calls.append(("get_status", signature))
        if self.status_script:
            item = self.status_script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if signature not in self.signatures:
            return None
        ordinal = self.signatures.index(signature) + 1
        if ordinal in self.failing:
            return SignatureStatus("processed", err=self.failing[ordinal], slot=ordinal)
        return SignatureStatus("confirmed", slot=ordinal)

    async def get_block_height(self) -> int:
        self.calls.append(("get_block_height",))
        return self.block_height

    def method_calls(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


class FakeClock:
    """Monotonic clock driven by the engine's own sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds or 1.0


# ---------- oracle ----------
class ElGamalOracle(ProvingOracle):
    """
    Real grouped ciphertexts and AE balance; proof bytes are placeholders of
    the right length (nothing here verifies proofs).
    """

    def __init__(self):
        self.calls: List[str] = []

    def _pubkeys(self, intent: TransferIntent):
        return [
            intent.sender_keys.elgamal.public,
            intent.recipient_elgamal_pubkey,
            intent.auditor_pubkey_or_zero,
        ]

    def prove_validity(self, intent: TransferIntent, amount: AmountSplit) -> ValidityArtifacts:
        self.calls.append("validity")
        lo = encrypt_grouped_3(self._pubkeys(intent), amount.lo)
        hi = encrypt_grouped_3(self._pubkeys(intent), amount.hi)
        return ValidityArtifacts(
            bytes([0xAA]) * proof_data_len(ProofKind.VALIDITY.instruction),
            lo.to_bytes(),
            hi.to_bytes(),
        )

    def prove_equality(self, intent: TransferIntent, new_balance_ciphertext: bytes,
                       new_balance: int) -> EqualityArtifacts:
        self.calls.append("equality")
        return EqualityArtifacts(bytes([0xBB]) * proof_data_len(ProofKind.EQUALITY.instruction))

    def prove_range(self, intent, new_balance, amount, validity, equality) -> bytes:
        self.calls.append("range")
        return bytes([0xCC]) * proof_data_len(ProofKind.RANGE.instruction)

    def encrypt_decryptable_balance(self, intent: TransferIntent, new_balance: int) -> bytes:
        self.calls.append("ae")
        return intent.sender_keys.ae_key.encrypt(new_balance)


class BrokenOracle(ElGamalOracle):
    def prove_range(self, intent, new_balance, amount, validity, equality) -> bytes:
        raise RuntimeError("prover crashed")


# ---------- fixtures ----------
@pytest.fixture
def cfg(tmp_path) -> TransferConfig:
    return TransferConfig(
        poll_interval=1.0,
        resend_interval=4.0,
        confirmation_timeout=10.0,
        journal_path=str(tmp_path / "transfers.db"),
    )


@pytest.fixture
def fast_cfg(cfg) -> TransferConfig:
    return cfg.with_overrides(poll_interval=0.0, resend_interval=0.0)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oracle() -> ElGamalOracle:
    return ElGamalOracle()


@pytest.fixture
def broken_oracle() -> BrokenOracle:
    return BrokenOracle()


@pytest.fixture
def owner() -> Keypair:
    return Keypair.generate()


@pytest.fixture
def sender_elgamal() -> ElGamalKeypair:
    return ElGamalKeypair.generate()


@pytest.fixture
def recipient_elgamal() -> ElGamalKeypair:
    return ElGamalKeypair.generate()


@pytest.fixture
def ae_key() -> AeKey:
    return AeKey(os.urandom(16))


@pytest.fixture
def make_intent(owner, sender_elgamal, recipient_elgamal, ae_key):
    accounts = {name: os.urandom(32) for name in ("source", "destination", "mint")}

    def _make(amount: int = 100, balance: int = 1000, auditor: Optional[bytes] = None,
              **overrides: Any) -> TransferIntent:
        fields = dict(
            sender_owner=owner.pubkey,
            sender_token_account=accounts["source"],
            recipient_token_account=accounts["destination"],
            mint=accounts["mint"],
            recipient_elgamal_pubkey=recipient_elgamal.public,
            amount=amount,
            available_balance=balance,
            current_available_ciphertext=sender_elgamal.encrypt(balance).to_bytes(),
            auditor_elgamal_pubkey=auditor,
            sender_keys=SenderKeyMaterial(sender_elgamal, ae_key),
        )
        fields.update(overrides)
        return TransferIntent(**fields)

    return _make


@pytest.fixture
def intent(make_intent) -> TransferIntent:
    return make_intent()
