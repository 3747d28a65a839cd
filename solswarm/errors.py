"""
Error taxonomy for fleet operations.

Every exception raised by the core carries an ``ErrorKind`` so that the batch
executor can record it on the failing account's result without inspecting
message text.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Classification recorded on failed operation results."""
    INVALID_ADDRESS = "InvalidAddress"
    INVALID_KEY_ENCODING = "InvalidKeyEncoding"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INFEASIBLE_PARTITION = "InfeasiblePartition"
    ANCHOR_EXPIRED = "AnchorExpired"
    SUBMISSION_FAILED = "SubmissionFailed"
    CONFIRMATION_TIMEOUT = "ConfirmationTimeout"
    QUOTE_UNAVAILABLE = "QuoteUnavailable"
    CANCELLED = "Cancelled"


class FleetError(Exception):
    """Base class for all fleet errors."""
    kind: ErrorKind = ErrorKind.SUBMISSION_FAILED

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class InvalidAddressError(FleetError):
    """Raised when a string is not a 32-byte base58 public key."""
    kind = ErrorKind.INVALID_ADDRESS


class InvalidKeyEncodingError(FleetError):
    """Raised when a stored secret cannot be decoded into a keypair."""
    kind = ErrorKind.INVALID_KEY_ENCODING


class InsufficientBalanceError(FleetError):
    """Raised when an account cannot cover an operation plus its fee reserve."""
    kind = ErrorKind.INSUFFICIENT_BALANCE


class InfeasiblePartitionError(FleetError):
    """Raised when no share sequence satisfies the requested constraints."""
    kind = ErrorKind.INFEASIBLE_PARTITION


class AnchorExpiredError(FleetError):
    """Raised when the ledger rejects a transaction for a stale blockhash."""
    kind = ErrorKind.ANCHOR_EXPIRED


class SubmissionError(FleetError):
    """Raised when the ledger rejects or fails a submitted transaction."""
    kind = ErrorKind.SUBMISSION_FAILED


class ConfirmationTimeoutError(FleetError):
    """Raised when a transaction is not finalized before its deadline."""
    kind = ErrorKind.CONFIRMATION_TIMEOUT


class QuoteUnavailableError(FleetError):
    """Raised when the swap API returns no usable quote or transaction."""
    kind = ErrorKind.QUOTE_UNAVAILABLE


class LedgerError(FleetError):
    """Raised for RPC-level failures that are not submission rejections."""
    kind = ErrorKind.SUBMISSION_FAILED

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class LedgerTransportError(LedgerError):
    """Network-level failure talking to the RPC node (retryable)."""
