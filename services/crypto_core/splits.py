# crypto_core/splits.py
from __future__ import annotations
from dataclasses import dataclass

LO_BITS = 16
HI_BITS = 32
LO_MASK = (1 << LO_BITS) - 1
U64_MAX = (1 << 64) - 1
# Largest amount the lo/hi range proofs can cover (16 + 32 bits)
MAX_TRANSFER_AMOUNT = (1 << (LO_BITS + HI_BITS)) - 1


@dataclass(frozen=True)
class AmountSplit:
    lo: int
    hi: int

    @property
    def value(self) -> int:
        return self.lo + (self.hi << LO_BITS)


def split_amount(value: int) -> AmountSplit:
    """
    Split a u64 into its low 16 bits and the remaining high bits,
    so that `lo + hi * 2**16 == value`.
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError("amount must be an int")
    if value < 0 or value > U64_MAX:
        raise ValueError(f"amount {value} is not a u64")
    return AmountSplit(lo=value & LO_MASK, hi=value >> LO_BITS)


def split_transfer(amount: int, available_balance: int) -> tuple[AmountSplit, AmountSplit]:
    """Splits for the transfer amount and for the balance left after it."""
    if amount > available_balance:
        raise ValueError("amount exceeds available balance")
    return split_amount(amount), split_amount(available_balance - amount)
