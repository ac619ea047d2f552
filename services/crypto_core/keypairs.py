from __future__ import annotations
import json
from typing import List, Union

import base58
from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError

PUBKEY_LEN = 32
SIGNATURE_LEN = 64


def pubkey_from_b58(s: str) -> bytes:
    """Decode a base58 address; must be exactly 32 bytes."""
    try:
        raw = base58.b58decode(s.strip())
    except ValueError as e:
        raise ValueError(f"invalid base58 address: {s!r}") from e
    if len(raw) != PUBKEY_LEN:
        raise ValueError(f"address {s!r} decodes to {len(raw)} bytes, expected {PUBKEY_LEN}")
    return raw


def pubkey_to_b58(pk: bytes) -> str:
    return base58.b58encode(pk).decode("ascii")


def verify_signature(pubkey: bytes, message: bytes, signature: bytes) -> bool:
    try:
        VerifyKey(pubkey).verify(message, signature)
    except BadSignatureError:
        return False
    return True


class Keypair:
    """Ed25519 keypair in Solana's 64-byte (seed || pubkey) form."""

    def __init__(self, signing_key: SigningKey):
        self._sk = signing_key
        self.pubkey: bytes = bytes(signing_key.verify_key)

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed(cls, seed32: bytes) -> "Keypair":
        return cls(SigningKey(bytes(seed32)))

    @classmethod
    def from_secret_bytes(cls, sk64: Union[bytes, List[int]]) -> "Keypair":
        raw = bytes(sk64)
        if len(raw) != 64:
            raise ValueError(f"secret key must be 64 bytes, got {len(raw)}")
        kp = cls.from_seed(raw[:32])
        if kp.pubkey != raw[32:]:
            raise ValueError("secret key bytes do not match their embedded pubkey")
        return kp

    def to_secret_bytes(self) -> bytes:
        return bytes(self._sk) + self.pubkey

    @property
    def address(self) -> str:
        return pubkey_to_b58(self.pubkey)

    def sign(self, message: bytes) -> bytes:
        return self._sk.sign(message).signature

    def __repr__(self) -> str:
        return f"Keypair({self.address})"


def load_keypair(path: str) -> Keypair:
    """Load a Solana CLI keyfile (JSON list of 64 ints)."""
    with open(path, "r") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON list of 64 ints")
    return Keypair.from_secret_bytes(bytes(raw))


def write_keypair(kp: Keypair, path: str) -> str:
    with open(path, "w") as f:
        json.dump(list(kp.to_secret_bytes()), f)
    return path
