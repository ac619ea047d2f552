# services/transfer/signing.py
from __future__ import annotations

from typing import Iterable, Protocol, Sequence, Tuple, runtime_checkable

from services.crypto_core.keypairs import pubkey_to_b58
from services.ledger.message import SIGNATURE_LEN, Transaction
from services.transfer.errors import SignerNotFound


@runtime_checkable
class PrimarySigner(Protocol):
    """Anything holding the fee payer / transfer authority key (wallet, Keypair, HSM shim)."""

    pubkey: bytes

    def sign(self, message: bytes) -> bytes: ...


class PartialSigningCoordinator:
    """Places each signer's Ed25519 signature in the slot of its pubkey."""

    def sign(self, tx: Transaction, pairs: Iterable[Tuple[PrimarySigner, bytes]]) -> Transaction:
        """
        Args:
            tx: transaction whose message is final
            pairs: (signer, expected pubkey)

        Raises:
            SignerNotFound: pubkey not a required signer, or signer holds a different key
        """
        message = tx.message_bytes()
        signer_keys = tx.message.signer_keys
        if len(tx.signatures) != len(signer_keys):
            tx.signatures = [bytes(SIGNATURE_LEN)] * len(signer_keys)

        for signer, expected in pairs:
            if signer.pubkey != expected:
                raise SignerNotFound(
                    f"signer holds {pubkey_to_b58(signer.pubkey)}, expected {pubkey_to_b58(expected)}"
                )
            try:
                slot = signer_keys.index(expected)
            except ValueError:
                raise SignerNotFound(f"{pubkey_to_b58(expected)} is not a required signer") from None
            tx.signatures[slot] = signer.sign(message)
        return tx

    def sign_all(self, tx: Transaction, primary: PrimarySigner, cosigners: Sequence[PrimarySigner]) -> Transaction:
        """Primary (fee payer, slot 0) plus every co-signer; every slot must end up filled."""
        if not tx.message.signer_keys or tx.message.signer_keys[0] != primary.pubkey:
            raise SignerNotFound("primary signer is not the fee payer")
        self.sign(tx, [(primary, primary.pubkey)] + [(s, s.pubkey) for s in cosigners])
        missing = [
            pubkey_to_b58(k) for k, sig in zip(tx.message.signer_keys, tx.signatures)
            if sig == bytes(SIGNATURE_LEN)
        ]
        if missing:
            raise SignerNotFound(f"no signer supplied for {', '.join(missing)}")
        return tx
