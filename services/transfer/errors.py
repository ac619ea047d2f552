# services/transfer/errors.py
from __future__ import annotations

from typing import Any, Optional


# ===== Root =====
class ConfidentialTransferError(RuntimeError):
    """Base class for every failure raised by the transfer pipeline."""


# ===== Input (raised before any network call) =====
class InvalidTransferIntent(ConfidentialTransferError):
    pass


class NonPositiveAmount(InvalidTransferIntent):
    pass


class InsufficientBalance(InvalidTransferIntent):
    pass


class AmountTooLarge(InvalidTransferIntent):
    pass


class MalformedPublicKey(InvalidTransferIntent):
    pass


class MalformedCiphertext(InvalidTransferIntent):
    pass


# ===== Oracle =====
class ProofGenerationFailed(ConfidentialTransferError):
    """The proving oracle could not produce a usable bundle. Fatal."""


# ===== Encoding / configuration =====
class EncodingError(ConfidentialTransferError):
    pass


class StepTooLarge(EncodingError):
    def __init__(self, label: str, size: int, limit: int):
        super().__init__(f"step '{label}' serializes to {size} bytes, limit is {limit}")
        self.label = label
        self.size = size
        self.limit = limit


class OffsetOutOfRange(EncodingError):
    pass


class SignerNotFound(EncodingError):
    pass


class InstructionDecodeError(EncodingError):
    pass


class ConfigError(ConfidentialTransferError):
    pass


# ===== Ledger =====
class RentQueryFailed(ConfidentialTransferError):
    pass


class LedgerError(ConfidentialTransferError):
    """JSON-RPC or transport failure. `code` is the RPC error code when there is one."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data

    @property
    def rejected(self) -> bool:
        """
        True when the node answered with an error of its own (an RPC error object
        or HTTP 4xx). Otherwise, such as after a dropped connection or a 5xx from a
        proxy, the request may still have reached the cluster.
        """
        return self.code is not None and self.code < 500


class StaleLifetimeToken(LedgerError):
    """Blockhash unknown to the cluster or past its last valid block height."""


class AlreadyProcessed(LedgerError):
    """The cluster has already seen this exact transaction."""


class RateLimited(LedgerError):
    @property
    def rejected(self) -> bool:
        return True


# ===== Programming errors =====
class ContextAccountReuseError(AssertionError):
    """A context account handle was moved out of order, reused, or double-bound."""
