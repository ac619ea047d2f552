# services/crypto_core/ristretto.py
"""
Ristretto255 group elements (RFC 9496) over edwards25519.

Points are kept in extended twisted-Edwards coordinates (X:Y:Z:T) and only
converted to/from the canonical 32-byte encoding at the edges. This is the
group that Solana's ElGamal ciphertexts and Pedersen commitments live in.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Tuple

# ===== Field / group constants =====
P = 2**255 - 19
# Prime order of the Ristretto group
L = 2**252 + 27742317777372353535851937790883648493

D = (-121665 * pow(121666, P - 2, P)) % P
SQRT_M1 = pow(2, (P - 1) // 4, P)
SQRT_AD_MINUS_ONE = 25063068953384623474111414158702152701244531502492656460079210482610430750235
INVSQRT_A_MINUS_D = 54469307008909316920995813868745141605393597292927456921205312896311721017578
ONE_MINUS_D_SQ = (1 - D * D) % P
D_MINUS_ONE_SQ = ((D - 1) * (D - 1)) % P

BASEPOINT_BYTES = bytes.fromhex("e2f2ae0a6abc4e71a884a961c500515f58e30b6aa582dd8db6a65945e08d2d76")
POINT_LEN = 32


class MalformedGroupElement(ValueError):
    """Raised when bytes do not decode to a canonical Ristretto255 point."""


# ===== Field helpers =====
def _is_negative(x: int) -> bool:
    return (x % P) & 1 == 1


def _abs(x: int) -> int:
    x %= P
    return (P - x) % P if _is_negative(x) else x


def _sqrt_ratio_m1(u: int, v: int) -> Tuple[bool, int]:
    u %= P
    v %= P
    v3 = v * v % P * v % P
    v7 = v3 * v3 % P * v % P
    r = (u * v3 % P) * pow(u * v7 % P, (P - 5) // 8, P) % P
    check = v * r % P * r % P

    correct_sign = check == u
    flipped_sign = check == (-u) % P
    flipped_sign_i = check == (-u * SQRT_M1) % P

    if flipped_sign or flipped_sign_i:
        r = r * SQRT_M1 % P
    return correct_sign or flipped_sign, _abs(r)


def _elligator(t: int) -> "RistrettoPoint":
    r = SQRT_M1 * t % P * t % P
    u = (r + 1) * ONE_MINUS_D_SQ % P
    v = (-1 - r * D) * (r + D) % P

    was_square, s = _sqrt_ratio_m1(u, v)
    s_prime = (-_abs(s * t)) % P
    if not was_square:
        s = s_prime
    c = P - 1 if was_square else r

    n = (c * (r - 1) % P * D_MINUS_ONE_SQ - v) % P
    w0 = 2 * s * v % P
    w1 = n * SQRT_AD_MINUS_ONE % P
    w2 = (1 - s * s) % P
    w3 = (1 + s * s) % P
    return RistrettoPoint(w0 * w3 % P, w2 * w1 % P, w1 * w3 % P, w0 * w2 % P)


# ===== Points =====
@dataclass(frozen=True, eq=False)
class RistrettoPoint:
    """
    Ristretto255 group element.

    Equality follows the Ristretto equivalence (two Edwards representatives of
    the same class compare equal), so `a == b` iff `a.to_bytes() == b.to_bytes()`.
    """
    x: int
    y: int
    z: int
    t: int

    @classmethod
    def identity(cls) -> "RistrettoPoint":
        return cls(0, 1, 1, 0)

    @classmethod
    def basepoint(cls) -> "RistrettoPoint":
        return cls.from_bytes(BASEPOINT_BYTES)

    @classmethod
    def from_bytes(cls, data: bytes) -> "RistrettoPoint":
        if len(data) != POINT_LEN:
            raise MalformedGroupElement(f"expected {POINT_LEN} bytes, got {len(data)}")
        s = int.from_bytes(data, "little")
        if s >= P or _is_negative(s):
            raise MalformedGroupElement("non-canonical field encoding")

        ss = s * s % P
        u1 = (1 - ss) % P
        u2 = (1 + ss) % P
        u2_sqr = u2 * u2 % P
        v = (-(D * u1 % P * u1) - u2_sqr) % P

        was_square, invsqrt = _sqrt_ratio_m1(1, v * u2_sqr)
        den_x = invsqrt * u2 % P
        den_y = invsqrt * den_x % P * v % P

        x = _abs(2 * s * den_x)
        y = u1 * den_y % P
        t = x * y % P
        if not was_square or _is_negative(t) or y == 0:
            raise MalformedGroupElement("bytes are not a valid Ristretto255 point")
        return cls(x, y, 1, t)

    @classmethod
    def from_uniform_bytes(cls, data: bytes) -> "RistrettoPoint":
        """Hash-to-group map over 64 uniformly random bytes."""
        if len(data) != 64:
            raise ValueError("from_uniform_bytes expects 64 bytes")
        mask = (1 << 255) - 1
        t1 = (int.from_bytes(data[:32], "little") & mask) % P
        t2 = (int.from_bytes(data[32:], "little") & mask) % P
        return _elligator(t1) + _elligator(t2)

    @classmethod
    def hash_from_bytes(cls, data: bytes, hasher=hashlib.sha512) -> "RistrettoPoint":
        return cls.from_uniform_bytes(hasher(data).digest())

    def to_bytes(self) -> bytes:
        x0, y0, z0, t0 = self.x, self.y, self.z, self.t
        u1 = (z0 + y0) * (z0 - y0) % P
        u2 = x0 * y0 % P
        _, invsqrt = _sqrt_ratio_m1(1, u1 * u2 % P * u2)
        den1 = invsqrt * u1 % P
        den2 = invsqrt * u2 % P
        z_inv = den1 * den2 % P * t0 % P

        if _is_negative(t0 * z_inv):
            x, y = y0 * SQRT_M1 % P, x0 * SQRT_M1 % P
            den_inv = den1 * INVSQRT_A_MINUS_D % P
        else:
            x, y = x0, y0
            den_inv = den2
        if _is_negative(x * z_inv):
            y = (-y) % P

        s = _abs(den_inv * (z0 - y))
        return s.to_bytes(POINT_LEN, "little")

    # --- group law (extended coordinates, a = -1) ---
    def __add__(self, other: "RistrettoPoint") -> "RistrettoPoint":
        a = (self.y - self.x) * (other.y - other.x) % P
        b = (self.y + self.x) * (other.y + other.x) % P
        c = self.t * 2 * D % P * other.t % P
        d = self.z * 2 * other.z % P
        e, f, g, h = b - a, d - c, d + c, b + a
        return RistrettoPoint(e * f % P, g * h % P, f * g % P, e * h % P)

    def __neg__(self) -> "RistrettoPoint":
        return RistrettoPoint((-self.x) % P, self.y, self.z, (-self.t) % P)

    def __sub__(self, other: "RistrettoPoint") -> "RistrettoPoint":
        return self + (-other)

    def __mul__(self, scalar: int) -> "RistrettoPoint":
        if not isinstance(scalar, int):
            return NotImplemented
        k = scalar % L
        acc = RistrettoPoint.identity()
        addend = self
        while k:
            if k & 1:
                acc = acc + addend
            addend = addend + addend
            k >>= 1
        return acc

    __rmul__ = __mul__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RistrettoPoint):
            return NotImplemented
        return (
            (self.x * other.y - self.y * other.x) % P == 0
            or (self.y * other.y - self.x * other.x) % P == 0
        )

    def __hash__(self) -> int:
        return hash(self.to_bytes())

    def __repr__(self) -> str:
        return f"RistrettoPoint({self.to_bytes().hex()[:16]}...)"

    def is_identity(self) -> bool:
        return self == RistrettoPoint.identity()


# ===== Scalars =====
def scalar_from_bytes_mod_order(data: bytes) -> int:
    """Little-endian integer reduced mod L (Scalar::from_bytes_mod_order[_wide])."""
    return int.from_bytes(data, "little") % L


def scalar_invert(k: int) -> int:
    k %= L
    if k == 0:
        raise ZeroDivisionError("zero scalar has no inverse")
    return pow(k, L - 2, L)


def is_valid_point(data: bytes) -> bool:
    try:
        RistrettoPoint.from_bytes(data)
    except MalformedGroupElement:
        return False
    return True


__all__ = [
    "L",
    "BASEPOINT_BYTES",
    "POINT_LEN",
    "MalformedGroupElement",
    "RistrettoPoint",
    "scalar_from_bytes_mod_order",
    "scalar_invert",
    "is_valid_point",
]
