from __future__ import annotations
from typing import Callable, Tuple
import hashlib, os
from cryptography.hazmat.primitives.ciphers.aead import AESGCMSIV
from cryptography.exceptions import InvalidTag

from services.crypto_core.elgamal import ElGamalKeypair
from services.crypto_core.ristretto import scalar_from_bytes_mod_order

ELGAMAL_SEED_PREFIX = b"ElGamalSecretKey"
AE_SEED_PREFIX = b"AeKey"

AE_KEY_LEN = 16
AE_NONCE_LEN = 12
AE_CIPHERTEXT_LEN = 36  # nonce(12) || amount(8) || tag(16)

SignMessage = Callable[[bytes], bytes]


class AeDecryptError(ValueError):
    pass


class AeKey:
    """AES-128-GCM-SIV key for the owner-only "decryptable balance" field."""

    def __init__(self, key16: bytes):
        if len(key16) != AE_KEY_LEN:
            raise ValueError(f"AE key must be {AE_KEY_LEN} bytes")
        self._key = bytes(key16)

    @classmethod
    def from_seed(cls, seed: bytes) -> "AeKey":
        return cls(hashlib.sha3_512(seed).digest()[:AE_KEY_LEN])

    @classmethod
    def from_signature(cls, signature: bytes) -> "AeKey":
        return cls.from_seed(hashlib.sha3_512(signature).digest())

    def to_bytes(self) -> bytes:
        return self._key

    def encrypt(self, amount: int, nonce: bytes | None = None) -> bytes:
        if amount < 0 or amount >= 1 << 64:
            raise ValueError("amount is not a u64")
        nonce = nonce if nonce is not None else os.urandom(AE_NONCE_LEN)
        ct = AESGCMSIV(self._key).encrypt(nonce, amount.to_bytes(8, "little"), None)
        return nonce + ct

    def decrypt(self, ciphertext: bytes) -> int:
        if len(ciphertext) != AE_CIPHERTEXT_LEN:
            raise AeDecryptError(f"AE ciphertext must be {AE_CIPHERTEXT_LEN} bytes")
        nonce, body = ciphertext[:AE_NONCE_LEN], ciphertext[AE_NONCE_LEN:]
        try:
            pt = AESGCMSIV(self._key).decrypt(nonce, body, None)
        except InvalidTag as e:
            raise AeDecryptError("AE ciphertext failed authentication") from e
        return int.from_bytes(pt, "little")


def elgamal_secret_from_signature(signature: bytes) -> int:
    # Scalar::hash_from_bytes::<Sha512>
    return scalar_from_bytes_mod_order(hashlib.sha512(signature).digest())


def derive_keys(sign_message: SignMessage, token_account: bytes) -> Tuple[ElGamalKeypair, AeKey]:
    """
    Derive the per-token-account ElGamal keypair and AE key from two wallet
    signatures, so the keys can be re-derived from the wallet alone.
    """
    if len(token_account) != 32:
        raise ValueError("token account must be a 32-byte address")
    eg_sig = sign_message(ELGAMAL_SEED_PREFIX + token_account)
    ae_sig = sign_message(AE_SEED_PREFIX + token_account)
    keypair = ElGamalKeypair.from_secret(elgamal_secret_from_signature(eg_sig))
    return keypair, AeKey.from_signature(ae_sig)
