# services/transfer/oracle.py
"""
Proof generation boundary.

The pipeline never does proof math itself. A ProvingOracle produces the three
proofs, the grouped ciphertexts and the new decryptable balance;
`generate_proofs` fixes the order they are produced in, since the equality
proof is over the ciphertext derived from the validity step's outputs and the
range proof reuses the openings of both.
"""
from __future__ import annotations

import base64
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from services.api.logging_config import get_logger
from services.crypto_core.elgamal import GroupedCiphertext3Handles, derive_new_balance
from services.crypto_core.ristretto import MalformedGroupElement
from services.crypto_core.splits import AmountSplit, split_amount
from services.transfer.errors import ProofGenerationFailed
from services.transfer.types import ProofBundle, TransferIntent

logger = get_logger("transfer.oracle")


@dataclass(frozen=True)
class ValidityArtifacts:
    proof: bytes
    grouped_ciphertext_lo: bytes
    grouped_ciphertext_hi: bytes
    # oracle-private state (openings) carried to prove_range
    witness: Any = None


@dataclass(frozen=True)
class EqualityArtifacts:
    proof: bytes
    witness: Any = None


class ProvingOracle(ABC):
    @abstractmethod
    def prove_validity(self, intent: TransferIntent, amount: AmountSplit) -> ValidityArtifacts:
        """Grouped 3-handle ciphertexts of lo/hi plus their batched validity proof."""

    @abstractmethod
    def prove_equality(self, intent: TransferIntent, new_balance_ciphertext: bytes,
                       new_balance: int) -> EqualityArtifacts:
        """Ciphertext-commitment equality proof over the derived balance ciphertext."""

    @abstractmethod
    def prove_range(self, intent: TransferIntent, new_balance: int, amount: AmountSplit,
                    validity: ValidityArtifacts, equality: EqualityArtifacts) -> bytes:
        """Batched U128 range proof over (new balance, lo, hi, padding) with bits 64/16/32/16."""

    @abstractmethod
    def encrypt_decryptable_balance(self, intent: TransferIntent, new_balance: int) -> bytes:
        """36-byte AE ciphertext of the new balance under the sender's AE key."""

    def generate_proofs(self, intent: TransferIntent, amount: Optional[AmountSplit] = None) -> ProofBundle:
        """
        Run the oracle steps in dependency order and assemble a ProofBundle.

        `amount` is the caller's lo/hi split of `intent.amount`; it is computed
        here when not given.

        Raises:
            ProofGenerationFailed: any oracle step failed or returned unusable bytes
        """
        if amount is None:
            amount = split_amount(intent.amount)
        elif amount.value != intent.amount:
            raise ValueError(f"split {amount} does not add up to {intent.amount}")
        new_balance = intent.new_balance
        try:
            validity = self.prove_validity(intent, amount)
            grouped_lo = GroupedCiphertext3Handles.from_bytes(validity.grouped_ciphertext_lo)
            grouped_hi = GroupedCiphertext3Handles.from_bytes(validity.grouped_ciphertext_hi)
            derived = derive_new_balance(
                intent.current_available_ciphertext,
                grouped_lo.sender.to_bytes(),
                grouped_hi.sender.to_bytes(),
            )
            equality = self.prove_equality(intent, derived, new_balance)
            range_proof = self.prove_range(intent, new_balance, amount, validity, equality)
            decryptable = self.encrypt_decryptable_balance(intent, new_balance)
            return ProofBundle(
                equality_proof=equality.proof,
                validity_proof=validity.proof,
                range_proof=range_proof,
                grouped_ciphertext_lo=validity.grouped_ciphertext_lo,
                grouped_ciphertext_hi=validity.grouped_ciphertext_hi,
                new_balance_ciphertext=derived,
                new_decryptable_balance=decryptable,
                auditor_enabled=intent.auditor_elgamal_pubkey is not None,
            )
        except ProofGenerationFailed:
            raise
        except MalformedGroupElement as e:
            raise ProofGenerationFailed(f"oracle returned a malformed ciphertext: {e}") from e
        except Exception as e:
            logger.error(f"{type(self).__name__} failed: {e}")
            raise ProofGenerationFailed(f"{type(self).__name__}: {e}") from e


# ---------- file-backed oracle ----------
def _decode_field(value: Any) -> bytes:
    if isinstance(value, list):
        return bytes(value)
    if not isinstance(value, str):
        raise ValueError(f"cannot decode {type(value).__name__} as bytes")
    if value.startswith("0x"):
        return bytes.fromhex(value[2:])
    return base64.b64decode(value, validate=True)


BUNDLE_FIELDS = (
    "equality_proof",
    "validity_proof",
    "range_proof",
    "grouped_ciphertext_lo",
    "grouped_ciphertext_hi",
    "new_decryptable_balance",
)


class BundleFileOracle(ProvingOracle):
    """
    Serves proofs produced ahead of time by an external prover.

    The bundle is a JSON object with the fields in BUNDLE_FIELDS, each base64,
    0x-hex or a list of ints. The derived balance ciphertext is always
    recomputed locally.
    """

    def __init__(self, bundle: Dict[str, Any]):
        missing = [k for k in BUNDLE_FIELDS if k not in bundle]
        if missing:
            raise ProofGenerationFailed(f"proof bundle is missing {', '.join(missing)}")
        try:
            self._fields = {k: _decode_field(bundle[k]) for k in BUNDLE_FIELDS}
        except ValueError as e:
            raise ProofGenerationFailed(f"proof bundle field is not decodable: {e}") from e

    @classmethod
    def from_path(cls, path: str) -> "BundleFileOracle":
        with open(path, "r") as f:
            return cls(json.load(f))

    def prove_validity(self, intent: TransferIntent, amount: AmountSplit) -> ValidityArtifacts:
        return ValidityArtifacts(
            self._fields["validity_proof"],
            self._fields["grouped_ciphertext_lo"],
            self._fields["grouped_ciphertext_hi"],
        )

    def prove_equality(self, intent: TransferIntent, new_balance_ciphertext: bytes,
                       new_balance: int) -> EqualityArtifacts:
        return EqualityArtifacts(self._fields["equality_proof"])

    def prove_range(self, intent: TransferIntent, new_balance: int, amount: AmountSplit,
                    validity: ValidityArtifacts, equality: EqualityArtifacts) -> bytes:
        return self._fields["range_proof"]

    def encrypt_decryptable_balance(self, intent: TransferIntent, new_balance: int) -> bytes:
        return self._fields["new_decryptable_balance"]


def bundle_to_json(bundle: ProofBundle, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = {k: base64.b64encode(getattr(bundle, k)).decode("ascii") for k in BUNDLE_FIELDS}
    out["new_balance_ciphertext"] = base64.b64encode(bundle.new_balance_ciphertext).decode("ascii")
    out["auditor_enabled"] = bundle.auditor_enabled
    if extra:
        out.update(extra)
    return out
