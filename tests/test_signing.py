import pytest

from services.crypto_core.keypairs import Keypair, load_keypair, verify_signature, write_keypair
from services.ledger.message import Transaction, compile_message
from services.ledger.wire import CreateAccount, SYSTEM_PROGRAM_ID
from services.transfer.errors import SignerNotFound
from services.transfer.signing import PartialSigningCoordinator, PrimarySigner


def _tx(payer: Keypair, new_account: Keypair) -> Transaction:
    ix = CreateAccount(payer.pubkey, new_account.pubkey, 1, 161, SYSTEM_PROGRAM_ID).encode()
    return Transaction.unsigned(compile_message(payer.pubkey, [ix], bytes(32)))


def test_sign_all_fills_every_slot():
    payer, ctx = Keypair.generate(), Keypair.generate()
    tx = PartialSigningCoordinator().sign_all(_tx(payer, ctx), payer, [ctx])

    assert tx.is_fully_signed()
    message = tx.message_bytes()
    assert tx.message.signer_keys == (payer.pubkey, ctx.pubkey)
    assert verify_signature(payer.pubkey, message, tx.signatures[0])
    assert verify_signature(ctx.pubkey, message, tx.signatures[1])
    assert not verify_signature(ctx.pubkey, message, tx.signatures[0])


def test_missing_cosigner():
    payer, ctx = Keypair.generate(), Keypair.generate()
    with pytest.raises(SignerNotFound):
        PartialSigningCoordinator().sign_all(_tx(payer, ctx), payer, [])


def test_primary_must_be_fee_payer():
    payer, ctx = Keypair.generate(), Keypair.generate()
    with pytest.raises(SignerNotFound):
        PartialSigningCoordinator().sign_all(_tx(payer, ctx), ctx, [payer])


def test_signer_not_in_message():
    payer, ctx, stranger = Keypair.generate(), Keypair.generate(), Keypair.generate()
    with pytest.raises(SignerNotFound):
        PartialSigningCoordinator().sign_all(_tx(payer, ctx), payer, [ctx, stranger])


def test_signer_key_mismatch():
    payer, ctx = Keypair.generate(), Keypair.generate()
    with pytest.raises(SignerNotFound):
        PartialSigningCoordinator().sign(_tx(payer, ctx), [(payer, ctx.pubkey)])


def test_partial_sign_leaves_other_slots_empty():
    payer, ctx = Keypair.generate(), Keypair.generate()
    tx = PartialSigningCoordinator().sign(_tx(payer, ctx), [(ctx, ctx.pubkey)])
    assert tx.signatures[0] == bytes(64)
    assert tx.signatures[1] != bytes(64)


def test_keypair_is_a_primary_signer():
    assert isinstance(Keypair.generate(), PrimarySigner)


def test_keyfile_roundtrip(tmp_path):
    kp = Keypair.generate()
    path = write_keypair(kp, str(tmp_path / "id.json"))
    loaded = load_keypair(path)
    assert loaded.pubkey == kp.pubkey
    assert loaded.sign(b"m") == kp.sign(b"m")


def test_keyfile_rejects_mismatched_pubkey(tmp_path):
    kp = Keypair.generate()
    bad = kp.to_secret_bytes()[:32] + Keypair.generate().pubkey
    with pytest.raises(ValueError):
        Keypair.from_secret_bytes(bad)
