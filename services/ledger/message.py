# services/ledger/message.py
"""
Solana v0 message compiler and transaction codec (no address lookup tables).

    transaction = shortvec(n) || n * signature(64) || message
    message     = 0x80 || header(3) || shortvec keys || blockhash(32)
                  || shortvec instructions || shortvec lookups (always 0)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import base58

from services.ledger.wire import AccountMeta, Instruction
from services.transfer.errors import InstructionDecodeError

SIGNATURE_LEN = 64
PUBKEY_LEN = 32
V0_PREFIX = 0x80
ZERO_BLOCKHASH = bytes(32)


# ---------- shortvec ----------
def encode_shortvec(n: int) -> bytes:
    if n < 0 or n > 0xFFFF:
        raise ValueError(f"shortvec length out of range: {n}")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def read_shortvec(data: bytes, offset: int) -> Tuple[int, int]:
    """Parse Solana's compact-u16; returns (value, new offset)."""
    result = 0
    shift = 0
    for _ in range(3):
        if offset >= len(data):
            raise InstructionDecodeError("truncated shortvec")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, offset
        shift += 7
    raise InstructionDecodeError("shortvec longer than 3 bytes")


def blockhash_bytes(blockhash: str | bytes) -> bytes:
    raw = blockhash if isinstance(blockhash, (bytes, bytearray)) else base58.b58decode(blockhash)
    if len(raw) != 32:
        raise ValueError("blockhash must be 32 bytes")
    return bytes(raw)


# ---------- Message ----------
@dataclass(frozen=True)
class MessageHeader:
    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int


@dataclass(frozen=True)
class CompiledInstruction:
    program_id_index: int
    accounts: Tuple[int, ...]
    data: bytes


@dataclass(frozen=True)
class MessageV0:
    header: MessageHeader
    account_keys: Tuple[bytes, ...]
    recent_blockhash: bytes
    instructions: Tuple[CompiledInstruction, ...]

    @property
    def signer_keys(self) -> Tuple[bytes, ...]:
        return self.account_keys[: self.header.num_required_signatures]

    def is_writable(self, index: int) -> bool:
        h = self.header
        if index < h.num_required_signatures:
            return index < h.num_required_signatures - h.num_readonly_signed
        return index < len(self.account_keys) - h.num_readonly_unsigned

    def serialize(self) -> bytes:
        h = self.header
        out = bytearray([V0_PREFIX, h.num_required_signatures, h.num_readonly_signed, h.num_readonly_unsigned])
        out += encode_shortvec(len(self.account_keys))
        for k in self.account_keys:
            out += k
        out += self.recent_blockhash
        out += encode_shortvec(len(self.instructions))
        for ix in self.instructions:
            out.append(ix.program_id_index)
            out += encode_shortvec(len(ix.accounts))
            out += bytes(ix.accounts)
            out += encode_shortvec(len(ix.data))
            out += ix.data
        out += encode_shortvec(0)
        return bytes(out)

    @classmethod
    def deserialize(cls, raw: bytes, offset: int = 0) -> Tuple["MessageV0", int]:
        try:
            if raw[offset] != V0_PREFIX:
                raise InstructionDecodeError("not a v0 message")
            header = MessageHeader(raw[offset + 1], raw[offset + 2], raw[offset + 3])
            offset += 4
            n_keys, offset = read_shortvec(raw, offset)
            keys = []
            for _ in range(n_keys):
                keys.append(bytes(raw[offset:offset + PUBKEY_LEN]))
                offset += PUBKEY_LEN
            blockhash = bytes(raw[offset:offset + 32])
            offset += 32
            n_ix, offset = read_shortvec(raw, offset)
            ixs = []
            for _ in range(n_ix):
                prog = raw[offset]
                offset += 1
                n_acc, offset = read_shortvec(raw, offset)
                accs = tuple(raw[offset:offset + n_acc])
                offset += n_acc
                n_data, offset = read_shortvec(raw, offset)
                data = bytes(raw[offset:offset + n_data])
                offset += n_data
                ixs.append(CompiledInstruction(prog, accs, data))
            n_lookups, offset = read_shortvec(raw, offset)
        except IndexError as e:
            raise InstructionDecodeError("truncated message") from e
        if n_lookups:
            raise InstructionDecodeError("address lookup tables are not supported")
        if len(blockhash) != 32 or any(len(k) != PUBKEY_LEN for k in keys):
            raise InstructionDecodeError("truncated message")
        return cls(header, tuple(keys), blockhash, tuple(ixs)), offset

    def decompile(self) -> List[Instruction]:
        """Rebuild generic instructions (account metas from header flags)."""
        out = []
        n_sig = self.header.num_required_signatures
        for ix in self.instructions:
            metas = tuple(
                AccountMeta(self.account_keys[i], i < n_sig, self.is_writable(i)) for i in ix.accounts
            )
            out.append(Instruction(self.account_keys[ix.program_id_index], metas, ix.data))
        return out


def compile_message(payer: bytes, instructions: Sequence[Instruction], recent_blockhash: bytes) -> MessageV0:
    """
    Order keys payer first, then writable signers, readonly signers, writable
    non-signers, readonly non-signers; first-seen order inside each group.
    A key listed several times gets the union of its flags.
    """
    flags: Dict[bytes, List[bool]] = {payer: [True, True]}
    order: List[bytes] = [payer]

    def note(pk: bytes, signer: bool, writable: bool) -> None:
        if pk not in flags:
            flags[pk] = [signer, writable]
            order.append(pk)
        else:
            flags[pk][0] |= signer
            flags[pk][1] |= writable

    for ix in instructions:
        for m in ix.accounts:
            note(m.pubkey, m.is_signer, m.is_writable)
        note(ix.program_id, False, False)

    rest = order[1:]
    groups = (
        [k for k in rest if flags[k][0] and flags[k][1]],
        [k for k in rest if flags[k][0] and not flags[k][1]],
        [k for k in rest if not flags[k][0] and flags[k][1]],
        [k for k in rest if not flags[k][0] and not flags[k][1]],
    )
    keys = [payer] + groups[0] + groups[1] + groups[2] + groups[3]
    if len(keys) > 256:
        raise InstructionDecodeError("too many account keys for one message")
    index = {k: i for i, k in enumerate(keys)}
    header = MessageHeader(
        num_required_signatures=1 + len(groups[0]) + len(groups[1]),
        num_readonly_signed=len(groups[1]),
        num_readonly_unsigned=len(groups[3]),
    )
    compiled = tuple(
        CompiledInstruction(index[ix.program_id], tuple(index[m.pubkey] for m in ix.accounts), bytes(ix.data))
        for ix in instructions
    )
    return MessageV0(header, tuple(keys), blockhash_bytes(recent_blockhash), compiled)


# ---------- Transaction ----------
@dataclass
class Transaction:
    message: MessageV0
    signatures: List[bytes] = field(default_factory=list)

    @classmethod
    def unsigned(cls, message: MessageV0) -> "Transaction":
        n = message.header.num_required_signatures
        return cls(message, [bytes(SIGNATURE_LEN)] * n)

    def message_bytes(self) -> bytes:
        return self.message.serialize()

    def serialize(self) -> bytes:
        out = bytearray(encode_shortvec(len(self.signatures)))
        for s in self.signatures:
            out += s
        out += self.message.serialize()
        return bytes(out)

    @classmethod
    def deserialize(cls, raw: bytes) -> "Transaction":
        n, offset = read_shortvec(raw, 0)
        sigs = []
        for _ in range(n):
            sigs.append(bytes(raw[offset:offset + SIGNATURE_LEN]))
            offset += SIGNATURE_LEN
        message, end = MessageV0.deserialize(raw, offset)
        if end != len(raw):
            raise InstructionDecodeError(f"{len(raw) - end} trailing bytes after message")
        return cls(message, sigs)

    @property
    def signature(self) -> str:
        """Transaction id: base58 of the fee payer's signature."""
        return base58.b58encode(self.signatures[0]).decode("ascii")

    def is_fully_signed(self) -> bool:
        return bool(self.signatures) and all(s != bytes(SIGNATURE_LEN) for s in self.signatures)


def serialized_size(payer: bytes, instructions: Sequence[Instruction]) -> int:
    """Wire size with a placeholder blockhash and every signature slot filled."""
    return len(Transaction.unsigned(compile_message(payer, instructions, ZERO_BLOCKHASH)).serialize())
