# services/transfer/types.py
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional, Tuple

from services.crypto_core.elgamal import (
    CIPHERTEXT_LEN,
    GROUPED_3_HANDLES_LEN,
    ZERO_POINT,
    GroupedCiphertext3Handles,
    is_valid_pubkey,
)
from services.crypto_core.keypairs import Keypair, pubkey_from_b58
from services.crypto_core.messages import AE_CIPHERTEXT_LEN
from services.crypto_core.splits import MAX_TRANSFER_AMOUNT, U64_MAX
from services.ledger.wire import Instruction, ProofInstruction, proof_data_len
from services.transfer.errors import (
    AmountTooLarge,
    InsufficientBalance,
    InvalidTransferIntent,
    MalformedCiphertext,
    MalformedPublicKey,
    NonPositiveAmount,
    ProofGenerationFailed,
)

if TYPE_CHECKING:
    from services.transfer.context_accounts import ContextAccountHandle, LifecycleState


class ProofKind(str, Enum):
    EQUALITY = "equality"
    VALIDITY = "validity"
    RANGE = "range"

    @property
    def instruction(self) -> ProofInstruction:
        return _PROOF_INSTRUCTIONS[self]


_PROOF_INSTRUCTIONS = {
    ProofKind.EQUALITY: ProofInstruction.VERIFY_CIPHERTEXT_COMMITMENT_EQUALITY,
    ProofKind.VALIDITY: ProofInstruction.VERIFY_BATCHED_GROUPED_CIPHERTEXT_3_HANDLES_VALIDITY,
    ProofKind.RANGE: ProofInstruction.VERIFY_BATCHED_RANGE_PROOF_U128,
}


# ===== Intent =====
@dataclass(frozen=True)
class SenderKeyMaterial:
    """Opaque to the pipeline; only the proving oracle looks inside."""
    elgamal: Any = None
    ae_key: Any = None


@dataclass(frozen=True)
class TransferIntent:
    sender_owner: bytes
    sender_token_account: bytes
    recipient_token_account: bytes
    mint: bytes
    recipient_elgamal_pubkey: bytes
    amount: int
    available_balance: int
    current_available_ciphertext: bytes
    auditor_elgamal_pubkey: Optional[bytes] = None
    sender_keys: SenderKeyMaterial = field(default_factory=SenderKeyMaterial, repr=False)

    @property
    def new_balance(self) -> int:
        return self.available_balance - self.amount

    @property
    def auditor_pubkey_or_zero(self) -> bytes:
        return self.auditor_elgamal_pubkey or ZERO_POINT

    def validate(self) -> None:
        """
        Raises an InvalidTransferIntent subclass for the first violated rule.
        Touches no network.
        """
        for name in ("sender_owner", "sender_token_account", "recipient_token_account", "mint"):
            value = getattr(self, name)
            if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
                raise InvalidTransferIntent(f"{name} must be a 32-byte address")
        for name in ("amount", "available_balance"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0 or value > U64_MAX:
                raise InvalidTransferIntent(f"{name} must be a u64")
        if self.amount <= 0:
            raise NonPositiveAmount("amount must be greater than zero")
        if self.amount > self.available_balance:
            raise InsufficientBalance(
                f"amount {self.amount} exceeds available balance {self.available_balance}"
            )
        if self.amount > MAX_TRANSFER_AMOUNT:
            raise AmountTooLarge(f"amount {self.amount} needs more than 48 bits")
        if not is_valid_pubkey(self.recipient_elgamal_pubkey):
            raise MalformedPublicKey("recipient ElGamal pubkey is not a valid Ristretto point")
        if self.auditor_elgamal_pubkey is not None and not is_valid_pubkey(
            self.auditor_elgamal_pubkey, allow_zero=True
        ):
            raise MalformedPublicKey("auditor ElGamal pubkey is not a valid Ristretto point")
        ct = self.current_available_ciphertext
        if len(ct) != CIPHERTEXT_LEN or not all(
            is_valid_pubkey(ct[i:i + 32], allow_zero=True) for i in (0, 32)
        ):
            raise MalformedCiphertext("current available-balance ciphertext is malformed")


# ===== Proofs =====
@dataclass(frozen=True)
class ProofBundle:
    equality_proof: bytes
    validity_proof: bytes
    range_proof: bytes
    grouped_ciphertext_lo: bytes
    grouped_ciphertext_hi: bytes
    new_balance_ciphertext: bytes
    new_decryptable_balance: bytes
    auditor_enabled: bool = False

    def __post_init__(self) -> None:
        expected = (
            ("equality_proof", proof_data_len(ProofKind.EQUALITY.instruction)),
            ("validity_proof", proof_data_len(ProofKind.VALIDITY.instruction)),
            ("range_proof", proof_data_len(ProofKind.RANGE.instruction)),
            ("grouped_ciphertext_lo", GROUPED_3_HANDLES_LEN),
            ("grouped_ciphertext_hi", GROUPED_3_HANDLES_LEN),
            ("new_balance_ciphertext", CIPHERTEXT_LEN),
            ("new_decryptable_balance", AE_CIPHERTEXT_LEN),
        )
        for name, n in expected:
            got = len(getattr(self, name))
            if got != n:
                raise ProofGenerationFailed(f"{name} must be {n} bytes, got {got}")

    def proof_for(self, kind: ProofKind) -> bytes:
        return {
            ProofKind.EQUALITY: self.equality_proof,
            ProofKind.VALIDITY: self.validity_proof,
            ProofKind.RANGE: self.range_proof,
        }[kind]

    @property
    def auditor_ciphertext_lo(self) -> bytes:
        return GroupedCiphertext3Handles.from_bytes(self.grouped_ciphertext_lo).auditor.to_bytes()

    @property
    def auditor_ciphertext_hi(self) -> bytes:
        return GroupedCiphertext3Handles.from_bytes(self.grouped_ciphertext_hi).auditor.to_bytes()


# ===== Steps and outcomes =====
@dataclass
class TransferStep:
    index: int
    total: int
    label: str
    instructions: List[Instruction]
    extra_signers: List[Keypair] = field(default_factory=list)
    compute_unit_limit: Optional[int] = None
    transitions: List[Tuple["ContextAccountHandle", "LifecycleState"]] = field(default_factory=list)
    serialized_size: int = 0

    @property
    def tag(self) -> str:
        return f"{self.index}/{self.total} {self.label}"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"
    CANCELLED = "cancelled"


@dataclass
class SubmissionOutcome:
    status: OutcomeStatus
    signature: Optional[str] = None
    cause: Optional[str] = None
    error: Optional[BaseException] = field(default=None, repr=False)
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @classmethod
    def success(cls, signature: str, attempts: int) -> "SubmissionOutcome":
        return cls(OutcomeStatus.SUCCESS, signature=signature, attempts=attempts)

    @classmethod
    def failed(cls, cause: str, error: Optional[BaseException] = None,
               signature: Optional[str] = None, attempts: int = 0) -> "SubmissionOutcome":
        return cls(OutcomeStatus.FAILED, signature=signature, cause=cause, error=error, attempts=attempts)

    @classmethod
    def unconfirmed(cls, signature: str, attempts: int) -> "SubmissionOutcome":
        return cls(
            OutcomeStatus.UNCONFIRMED,
            signature=signature,
            cause="confirmation timed out; the transaction may still land",
            attempts=attempts,
        )


@dataclass
class TransferResult:
    run_id: str
    outcome: SubmissionOutcome
    step_signatures: List[str] = field(default_factory=list)
    failed_step_index: Optional[int] = None
    failed_step_label: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome.ok and self.failed_step_index is None

    @property
    def signature(self) -> Optional[str]:
        """Signature of the final transfer step on success."""
        return self.step_signatures[-1] if self.ok and self.step_signatures else None

    @property
    def last_confirmed_signature(self) -> Optional[str]:
        return self.step_signatures[-1] if self.step_signatures else None

    def describe(self) -> str:
        if self.ok:
            return f"transfer confirmed: {self.signature}"
        where = f"step {self.failed_step_index} ({self.failed_step_label})"
        last = self.last_confirmed_signature or "none"
        return f"{self.outcome.status.value} at {where}: {self.outcome.cause}; last confirmed signature: {last}"


def intent_from_encoded(
    *,
    sender_owner: str,
    sender_token_account: str,
    recipient_token_account: str,
    mint: str,
    recipient_elgamal_pubkey: str,
    amount: int,
    available_balance: int,
    current_available_ciphertext: str,
    auditor_elgamal_pubkey: Optional[str] = None,
    sender_keys: Optional[SenderKeyMaterial] = None,
) -> TransferIntent:
    """Build an intent from base58 addresses and base64 ciphertexts / ElGamal keys."""
    def addr(name: str, value: str) -> bytes:
        try:
            return pubkey_from_b58(value)
        except ValueError as e:
            raise InvalidTransferIntent(f"{name}: {e}") from e

    def b64(name: str, value: str, exc=InvalidTransferIntent) -> bytes:
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise exc(f"{name} is not valid base64") from e

    return TransferIntent(
        sender_owner=addr("sender_owner", sender_owner),
        sender_token_account=addr("sender_token_account", sender_token_account),
        recipient_token_account=addr("recipient_token_account", recipient_token_account),
        mint=addr("mint", mint),
        recipient_elgamal_pubkey=b64("recipient_elgamal_pubkey", recipient_elgamal_pubkey, MalformedPublicKey),
        auditor_elgamal_pubkey=(
            b64("auditor_elgamal_pubkey", auditor_elgamal_pubkey, MalformedPublicKey)
            if auditor_elgamal_pubkey else None
        ),
        amount=amount,
        available_balance=available_balance,
        current_available_ciphertext=b64(
            "current_available_ciphertext", current_available_ciphertext, MalformedCiphertext
        ),
        sender_keys=sender_keys or SenderKeyMaterial(),
    )
