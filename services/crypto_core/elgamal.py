# services/crypto_core/elgamal.py
"""
Twisted ElGamal over Ristretto255, in the layout used by Solana's
confidential-transfer extension.

    pubkey      P = s^-1 * H
    commitment  C = x * G + r * H
    handle      D = r * P
    decrypt     C - s * D = x * G

A plain ciphertext is `commitment || handle` (64 bytes). A grouped ciphertext
shares one commitment across several decrypt handles, one per recipient key
(`commitment || h1 || h2 || h3` for the 3-handle variant, 128 bytes).
"""
from __future__ import annotations

import hashlib
import math
import secrets
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from services.crypto_core.ristretto import (
    BASEPOINT_BYTES,
    L,
    POINT_LEN,
    MalformedGroupElement,
    RistrettoPoint,
    scalar_invert,
)

G = RistrettoPoint.basepoint()
# Pedersen blinding generator: hash of the compressed basepoint
PEDERSEN_H = RistrettoPoint.hash_from_bytes(BASEPOINT_BYTES, hasher=hashlib.sha3_512)

CIPHERTEXT_LEN = 2 * POINT_LEN
GROUPED_3_HANDLES_LEN = 4 * POINT_LEN
ZERO_POINT = bytes(POINT_LEN)

# The low 16 bits of a transfer amount go in the lo ciphertext; hi is scaled back by this
TWO_16 = 1 << 16


def random_scalar() -> int:
    return secrets.randbelow(L - 1) + 1


def _decode(data: bytes, what: str) -> RistrettoPoint:
    try:
        return RistrettoPoint.from_bytes(data)
    except MalformedGroupElement as e:
        raise MalformedGroupElement(f"{what}: {e}") from e


@dataclass(frozen=True)
class ElGamalCiphertext:
    commitment: bytes
    handle: bytes

    @classmethod
    def from_bytes(cls, data: bytes) -> "ElGamalCiphertext":
        if len(data) != CIPHERTEXT_LEN:
            raise MalformedGroupElement(f"ciphertext must be {CIPHERTEXT_LEN} bytes, got {len(data)}")
        return cls(bytes(data[:POINT_LEN]), bytes(data[POINT_LEN:]))

    def to_bytes(self) -> bytes:
        return self.commitment + self.handle

    def points(self) -> Tuple[RistrettoPoint, RistrettoPoint]:
        return _decode(self.commitment, "commitment"), _decode(self.handle, "handle")


@dataclass(frozen=True)
class GroupedCiphertext3Handles:
    """One Pedersen commitment with sender / recipient / auditor decrypt handles."""
    commitment: bytes
    handles: Tuple[bytes, bytes, bytes]

    @classmethod
    def from_bytes(cls, data: bytes) -> "GroupedCiphertext3Handles":
        if len(data) != GROUPED_3_HANDLES_LEN:
            raise MalformedGroupElement(
                f"grouped ciphertext must be {GROUPED_3_HANDLES_LEN} bytes, got {len(data)}"
            )
        chunks = [bytes(data[i:i + POINT_LEN]) for i in range(0, GROUPED_3_HANDLES_LEN, POINT_LEN)]
        return cls(chunks[0], (chunks[1], chunks[2], chunks[3]))

    def to_bytes(self) -> bytes:
        return self.commitment + b"".join(self.handles)

    def ciphertext_for(self, index: int) -> ElGamalCiphertext:
        """Plain ciphertext for handle `index` (0 sender, 1 recipient, 2 auditor)."""
        return ElGamalCiphertext(self.commitment, self.handles[index])

    @property
    def sender(self) -> ElGamalCiphertext:
        return self.ciphertext_for(0)

    @property
    def recipient(self) -> ElGamalCiphertext:
        return self.ciphertext_for(1)

    @property
    def auditor(self) -> ElGamalCiphertext:
        return self.ciphertext_for(2)


@dataclass(frozen=True)
class ElGamalKeypair:
    secret: int
    public: bytes

    @classmethod
    def from_secret(cls, secret: int) -> "ElGamalKeypair":
        s = secret % L
        pub = (PEDERSEN_H * scalar_invert(s)).to_bytes()
        return cls(s, pub)

    @classmethod
    def generate(cls) -> "ElGamalKeypair":
        return cls.from_secret(random_scalar())

    def encrypt(self, amount: int, opening: Optional[int] = None) -> ElGamalCiphertext:
        return encrypt(self.public, amount, opening)

    def decrypt_point(self, ct: ElGamalCiphertext) -> RistrettoPoint:
        c, d = ct.points()
        return c - d * self.secret

    def decrypt(self, ct: ElGamalCiphertext, max_value: int = TWO_16) -> int:
        """
        Recover a small plaintext with baby-step/giant-step over [0, max_value].

        Raises ValueError when the plaintext is outside that range.
        """
        target = self.decrypt_point(ct)
        m = math.isqrt(max_value) + 1
        baby = {}
        acc = RistrettoPoint.identity()
        for j in range(m):
            baby.setdefault(acc.to_bytes(), j)
            acc = acc + G
        giant = -(G * m)
        cur = target
        for i in range(m + 1):
            j = baby.get(cur.to_bytes())
            if j is not None:
                return i * m + j
            cur = cur + giant
        raise ValueError(f"plaintext is not in [0, {max_value}]")


def encrypt(pubkey: bytes, amount: int, opening: Optional[int] = None) -> ElGamalCiphertext:
    r = random_scalar() if opening is None else opening
    p = _decode(pubkey, "pubkey")
    c = G * amount + PEDERSEN_H * r
    d = p * r
    return ElGamalCiphertext(c.to_bytes(), d.to_bytes())


def encrypt_grouped_3(
    pubkeys: Sequence[bytes], amount: int, opening: Optional[int] = None
) -> GroupedCiphertext3Handles:
    """
    Encrypt `amount` once for three keys. An all-zero pubkey (no auditor)
    decodes to the identity, so its handle is the identity encoding too.
    """
    if len(pubkeys) != 3:
        raise ValueError("grouped ciphertext needs exactly three pubkeys")
    r = random_scalar() if opening is None else opening
    c = G * amount + PEDERSEN_H * r
    handles = tuple((_decode(pk, "pubkey") * r).to_bytes() for pk in pubkeys)
    return GroupedCiphertext3Handles(c.to_bytes(), handles)  # type: ignore[arg-type]


def derive_new_balance(source_ct: bytes, amount_lo_ct: bytes, amount_hi_ct: bytes) -> bytes:
    """
    Homomorphically subtract a split amount from an available-balance ciphertext.

    Each input is a 64-byte `commitment || handle`. Computes
    `source - lo - hi * 2^16` on the commitment and on the handle separately
    and returns the 64-byte result.

    Raises:
        MalformedGroupElement: any 32-byte part is not a canonical point
    """
    src_c, src_h = ElGamalCiphertext.from_bytes(source_ct).points()
    lo_c, lo_h = ElGamalCiphertext.from_bytes(amount_lo_ct).points()
    hi_c, hi_h = ElGamalCiphertext.from_bytes(amount_hi_ct).points()

    new_c = src_c - lo_c - hi_c * TWO_16
    new_h = src_h - lo_h - hi_h * TWO_16
    return new_c.to_bytes() + new_h.to_bytes()


def is_valid_pubkey(data: bytes, allow_zero: bool = False) -> bool:
    if len(data) != POINT_LEN:
        return False
    if data == ZERO_POINT:
        return allow_zero
    try:
        RistrettoPoint.from_bytes(data)
    except MalformedGroupElement:
        return False
    return True
