import hashlib

import pytest

from services.crypto_core.elgamal import PEDERSEN_H
from services.crypto_core.ristretto import (
    L,
    MalformedGroupElement,
    RistrettoPoint,
    is_valid_point,
    scalar_invert,
)

# Small multiples of the generator, RFC 9496 appendix A.1
MULTIPLES = [
    "0000000000000000000000000000000000000000000000000000000000000000",
    "e2f2ae0a6abc4e71a884a961c500515f58e30b6aa582dd8db6a65945e08d2d76",
    "6a493210f7499cd17fecb510ae0cea23a110e8d5b901f8acadd3095c73a3b919",
    "94741f5d5d52755ece4f23f044ee27d5d1ea1e2bd196b462166b16152a9d0259",
    "da80862773358b466ffadfe0b3293ab3d9fd53c5ea6c955358f568322daf6a57",
    "e882b131016b52c1d3337080187cf768423efccbb517bb495ab812c4160ff44e",
]

BAD_ENCODINGS = [
    # non-canonical field elements
    "00ffffffffffffffffffffffffffffffffffffffffffffffffffffffffffffff",
    "ffffffffffffffffffffffffffffffffffffffffffffffffffffffffffffff7f",
    # negative field elements
    "0100000000000000000000000000000000000000000000000000000000000000",
    "01ffffffffffffffffffffffffffffffffffffffffffffffffffffffffffff7f",
]


@pytest.mark.parametrize("k,expected", list(enumerate(MULTIPLES)))
def test_small_multiples_of_basepoint(k, expected):
    g = RistrettoPoint.basepoint()
    assert (g * k).to_bytes().hex() == expected


def test_repeated_addition_matches_scalar_mul():
    g = RistrettoPoint.basepoint()
    acc = RistrettoPoint.identity()
    for k, expected in enumerate(MULTIPLES):
        assert acc.to_bytes().hex() == expected
        acc = acc + g


def test_decode_encode_roundtrip():
    for hexed in MULTIPLES:
        raw = bytes.fromhex(hexed)
        assert RistrettoPoint.from_bytes(raw).to_bytes() == raw


@pytest.mark.parametrize("hexed", BAD_ENCODINGS)
def test_rejects_bad_encodings(hexed):
    with pytest.raises(MalformedGroupElement):
        RistrettoPoint.from_bytes(bytes.fromhex(hexed))
    assert not is_valid_point(bytes.fromhex(hexed))


def test_rejects_wrong_length():
    with pytest.raises(MalformedGroupElement):
        RistrettoPoint.from_bytes(bytes(31))


def test_from_uniform_bytes_vector():
    digest = hashlib.sha512(b"Ristretto is traditionally a short shot of espresso coffee").digest()
    p = RistrettoPoint.from_uniform_bytes(digest)
    assert p.to_bytes().hex() == "3066f82a1a747d45120d1740f14358531a8f04bbffe6a819f86dfe50f44a0a46"


def test_pedersen_generator():
    assert PEDERSEN_H.to_bytes().hex() == "8c9240b456a9e6dc65c377a1048d745f94a08cdb7f44cbcd7b46f34048871134"


def test_group_order_and_equality():
    g = RistrettoPoint.basepoint()
    assert (g * L).is_identity()
    assert g * 7 - g * 3 == g * 4
    assert g * 3 != g * 4
    assert g * (L + 5) == g * 5


def test_scalar_invert():
    assert scalar_invert(7) * 7 % L == 1
    with pytest.raises(ZeroDivisionError):
        scalar_invert(L)
