# services/ledger/wire.py
"""
Byte-exact instruction encoding for the programs a confidential transfer touches:
System (CreateAccount), ComputeBudget (SetComputeUnitLimit), the ZK ElGamal
proof program (verify into a context account, close context) and the Token-2022
confidential-transfer extension (Transfer).

Every typed instruction has `encode() -> Instruction` and a classmethod
`decode(Instruction)` that inverts it exactly.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Tuple, Union

import base58

from services.transfer.errors import InstructionDecodeError, OffsetOutOfRange

# ---------- Program ids ----------
SYSTEM_PROGRAM_ID = base58.b58decode("11111111111111111111111111111111")
COMPUTE_BUDGET_PROGRAM_ID = base58.b58decode("ComputeBudget111111111111111111111111111111")
ZK_ELGAMAL_PROOF_PROGRAM_ID = base58.b58decode("ZkE1Gama1Proof11111111111111111111111111111")
TOKEN_2022_PROGRAM_ID = base58.b58decode("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")

# ---------- Discriminators ----------
SYSTEM_CREATE_ACCOUNT = 0
COMPUTE_BUDGET_SET_UNIT_LIMIT = 2
CONFIDENTIAL_TRANSFER_EXTENSION = 27
CONFIDENTIAL_TRANSFER_TRANSFER = 7


class ProofInstruction(IntEnum):
    CLOSE_CONTEXT_STATE = 0
    VERIFY_ZERO_CIPHERTEXT = 1
    VERIFY_CIPHERTEXT_CIPHERTEXT_EQUALITY = 2
    VERIFY_CIPHERTEXT_COMMITMENT_EQUALITY = 3
    VERIFY_PUBKEY_VALIDITY = 4
    VERIFY_PERCENTAGE_WITH_CAP = 5
    VERIFY_BATCHED_RANGE_PROOF_U64 = 6
    VERIFY_BATCHED_RANGE_PROOF_U128 = 7
    VERIFY_BATCHED_RANGE_PROOF_U256 = 8
    VERIFY_GROUPED_CIPHERTEXT_2_HANDLES_VALIDITY = 9
    VERIFY_BATCHED_GROUPED_CIPHERTEXT_2_HANDLES_VALIDITY = 10
    VERIFY_GROUPED_CIPHERTEXT_3_HANDLES_VALIDITY = 11
    VERIFY_BATCHED_GROUPED_CIPHERTEXT_3_HANDLES_VALIDITY = 12


# (context payload, proof body) for the proof kinds a transfer uses.
# Instruction proof data is context || proof.
PROOF_LAYOUTS: Dict[ProofInstruction, Tuple[int, int]] = {
    ProofInstruction.VERIFY_CIPHERTEXT_COMMITMENT_EQUALITY: (128, 192),
    ProofInstruction.VERIFY_BATCHED_GROUPED_CIPHERTEXT_2_HANDLES_VALIDITY: (256, 160),
    ProofInstruction.VERIFY_BATCHED_GROUPED_CIPHERTEXT_3_HANDLES_VALIDITY: (352, 192),
    ProofInstruction.VERIFY_BATCHED_RANGE_PROOF_U128: (264, 736),
}

DECRYPTABLE_BALANCE_LEN = 36
CIPHERTEXT_LEN = 64
TRANSFER_DATA_LEN = 2 + DECRYPTABLE_BALANCE_LEN + 2 * CIPHERTEXT_LEN + 3


def proof_data_len(kind: ProofInstruction) -> int:
    ctx, proof = PROOF_LAYOUTS[kind]
    return ctx + proof


# ---------- Generic instruction ----------
@dataclass(frozen=True)
class AccountMeta:
    pubkey: bytes
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class Instruction:
    program_id: bytes
    accounts: Tuple[AccountMeta, ...]
    data: bytes


def _w(pk: bytes, signer: bool = False) -> AccountMeta:
    return AccountMeta(pk, signer, True)


def _r(pk: bytes, signer: bool = False) -> AccountMeta:
    return AccountMeta(pk, signer, False)


def _expect(ix: Instruction, program_id: bytes, n_accounts: int, what: str) -> None:
    if ix.program_id != program_id:
        raise InstructionDecodeError(f"{what}: wrong program id")
    if len(ix.accounts) != n_accounts:
        raise InstructionDecodeError(f"{what}: expected {n_accounts} accounts, got {len(ix.accounts)}")


def check_offset(value: int, name: str = "offset") -> int:
    if not -128 <= value <= 127:
        raise OffsetOutOfRange(f"{name}={value} does not fit in a signed byte")
    return value


# ---------- System ----------
@dataclass(frozen=True)
class CreateAccount:
    payer: bytes
    new_account: bytes
    lamports: int
    space: int
    owner: bytes

    def encode(self) -> Instruction:
        data = struct.pack("<IQQ", SYSTEM_CREATE_ACCOUNT, self.lamports, self.space) + self.owner
        return Instruction(
            SYSTEM_PROGRAM_ID,
            (_w(self.payer, True), _w(self.new_account, True)),
            data,
        )

    @classmethod
    def decode(cls, ix: Instruction) -> "CreateAccount":
        _expect(ix, SYSTEM_PROGRAM_ID, 2, "CreateAccount")
        if len(ix.data) != 52:
            raise InstructionDecodeError("CreateAccount: data must be 52 bytes")
        tag, lamports, space = struct.unpack_from("<IQQ", ix.data)
        if tag != SYSTEM_CREATE_ACCOUNT:
            raise InstructionDecodeError(f"CreateAccount: unexpected tag {tag}")
        return cls(ix.accounts[0].pubkey, ix.accounts[1].pubkey, lamports, space, bytes(ix.data[20:]))


# ---------- Compute budget ----------
@dataclass(frozen=True)
class SetComputeUnitLimit:
    units: int

    def encode(self) -> Instruction:
        return Instruction(
            COMPUTE_BUDGET_PROGRAM_ID, (), struct.pack("<BI", COMPUTE_BUDGET_SET_UNIT_LIMIT, self.units)
        )

    @classmethod
    def decode(cls, ix: Instruction) -> "SetComputeUnitLimit":
        _expect(ix, COMPUTE_BUDGET_PROGRAM_ID, 0, "SetComputeUnitLimit")
        if len(ix.data) != 5 or ix.data[0] != COMPUTE_BUDGET_SET_UNIT_LIMIT:
            raise InstructionDecodeError("SetComputeUnitLimit: malformed data")
        return cls(struct.unpack_from("<I", ix.data, 1)[0])


# ---------- ZK ElGamal proof program ----------
@dataclass(frozen=True)
class VerifyProof:
    """Verify `proof` and store its context in `context_account`, owned by `context_authority`."""
    kind: ProofInstruction
    proof: bytes
    context_account: bytes
    context_authority: bytes

    def encode(self) -> Instruction:
        if self.kind in PROOF_LAYOUTS and len(self.proof) != proof_data_len(self.kind):
            raise InstructionDecodeError(
                f"{self.kind.name}: proof data must be {proof_data_len(self.kind)} bytes, got {len(self.proof)}"
            )
        return Instruction(
            ZK_ELGAMAL_PROOF_PROGRAM_ID,
            (_w(self.context_account), _r(self.context_authority)),
            bytes([int(self.kind)]) + self.proof,
        )

    @classmethod
    def decode(cls, ix: Instruction) -> "VerifyProof":
        _expect(ix, ZK_ELGAMAL_PROOF_PROGRAM_ID, 2, "VerifyProof")
        if not ix.data:
            raise InstructionDecodeError("VerifyProof: empty data")
        try:
            kind = ProofInstruction(ix.data[0])
        except ValueError as e:
            raise InstructionDecodeError(f"VerifyProof: unknown discriminator {ix.data[0]}") from e
        if kind == ProofInstruction.CLOSE_CONTEXT_STATE:
            raise InstructionDecodeError("VerifyProof: discriminator 0 is CloseContextState")
        return cls(kind, bytes(ix.data[1:]), ix.accounts[0].pubkey, ix.accounts[1].pubkey)


@dataclass(frozen=True)
class CloseContextState:
    context_account: bytes
    destination: bytes
    authority: bytes

    def encode(self) -> Instruction:
        return Instruction(
            ZK_ELGAMAL_PROOF_PROGRAM_ID,
            (_w(self.context_account), _w(self.destination), _r(self.authority, True)),
            bytes([ProofInstruction.CLOSE_CONTEXT_STATE]),
        )

    @classmethod
    def decode(cls, ix: Instruction) -> "CloseContextState":
        _expect(ix, ZK_ELGAMAL_PROOF_PROGRAM_ID, 3, "CloseContextState")
        if bytes(ix.data) != bytes([ProofInstruction.CLOSE_CONTEXT_STATE]):
            raise InstructionDecodeError("CloseContextState: data must be [0]")
        a = ix.accounts
        return cls(a[0].pubkey, a[1].pubkey, a[2].pubkey)


# ---------- Token-2022 confidential transfer ----------
@dataclass(frozen=True)
class ConfidentialTransfer:
    """
    Transfer whose three proofs were verified into context accounts.

    Offsets are relative positions of inline proof instructions; with context
    accounts they are all 0.
    """
    source: bytes
    mint: bytes
    destination: bytes
    equality_context: bytes
    validity_context: bytes
    range_context: bytes
    authority: bytes
    new_decryptable_balance: bytes
    auditor_ciphertext_lo: bytes
    auditor_ciphertext_hi: bytes
    equality_offset: int = 0
    validity_offset: int = 0
    range_offset: int = 0

    def encode(self) -> Instruction:
        if len(self.new_decryptable_balance) != DECRYPTABLE_BALANCE_LEN:
            raise InstructionDecodeError("Transfer: decryptable balance must be 36 bytes")
        for name, ct in (("auditor_lo", self.auditor_ciphertext_lo), ("auditor_hi", self.auditor_ciphertext_hi)):
            if len(ct) != CIPHERTEXT_LEN:
                raise InstructionDecodeError(f"Transfer: {name} must be {CIPHERTEXT_LEN} bytes")
        offsets = struct.pack(
            "<bbb",
            check_offset(self.equality_offset, "equality_offset"),
            check_offset(self.validity_offset, "validity_offset"),
            check_offset(self.range_offset, "range_offset"),
        )
        data = (
            bytes([CONFIDENTIAL_TRANSFER_EXTENSION, CONFIDENTIAL_TRANSFER_TRANSFER])
            + self.new_decryptable_balance
            + self.auditor_ciphertext_lo
            + self.auditor_ciphertext_hi
            + offsets
        )
        accounts = (
            _w(self.source),
            _r(self.mint),
            _w(self.destination),
            _r(self.equality_context),
            _r(self.validity_context),
            _r(self.range_context),
            _r(self.authority, True),
        )
        return Instruction(TOKEN_2022_PROGRAM_ID, accounts, data)

    @classmethod
    def decode(cls, ix: Instruction) -> "ConfidentialTransfer":
        _expect(ix, TOKEN_2022_PROGRAM_ID, 7, "Transfer")
        d = bytes(ix.data)
        if len(d) != TRANSFER_DATA_LEN:
            raise InstructionDecodeError(f"Transfer: data must be {TRANSFER_DATA_LEN} bytes, got {len(d)}")
        if d[0] != CONFIDENTIAL_TRANSFER_EXTENSION or d[1] != CONFIDENTIAL_TRANSFER_TRANSFER:
            raise InstructionDecodeError("Transfer: not a confidential-transfer Transfer instruction")
        eq, val, rng = struct.unpack_from("<bbb", d, 166)
        a = [m.pubkey for m in ix.accounts]
        return cls(
            source=a[0], mint=a[1], destination=a[2],
            equality_context=a[3], validity_context=a[4], range_context=a[5],
            authority=a[6],
            new_decryptable_balance=d[2:38],
            auditor_ciphertext_lo=d[38:102],
            auditor_ciphertext_hi=d[102:166],
            equality_offset=eq, validity_offset=val, range_offset=rng,
        )


TypedInstruction = Union[CreateAccount, SetComputeUnitLimit, VerifyProof, CloseContextState, ConfidentialTransfer]


def decode_instruction(ix: Instruction) -> TypedInstruction:
    """Dispatch on program id and leading tag."""
    if ix.program_id == SYSTEM_PROGRAM_ID:
        return CreateAccount.decode(ix)
    if ix.program_id == COMPUTE_BUDGET_PROGRAM_ID:
        return SetComputeUnitLimit.decode(ix)
    if ix.program_id == ZK_ELGAMAL_PROOF_PROGRAM_ID:
        if ix.data[:1] == bytes([ProofInstruction.CLOSE_CONTEXT_STATE]):
            return CloseContextState.decode(ix)
        return VerifyProof.decode(ix)
    if ix.program_id == TOKEN_2022_PROGRAM_ID:
        return ConfidentialTransfer.decode(ix)
    raise InstructionDecodeError("unknown program id")
