"""
Ledger Client
=============

Narrow interface to the Solana JSON-RPC API used by the fleet core, plus an
implementation on top of ``solana.rpc.api.Client``.

Idempotent reads (balances, account state, blockhash, block height,
signature status) are retried with exponential backoff on transport
failures. Submissions are never retried here: a retry policy for sends
belongs above the batch executor.
"""

import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from solswarm.errors import (
    AnchorExpiredError,
    LedgerError,
    LedgerTransportError,
    SubmissionError,
)
from solswarm.utils import decode_address, logger, format_signature

COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")

CONFIRMATION_LEVELS = (
    (TransactionConfirmationStatus.Processed, "processed"),
    (TransactionConfirmationStatus.Confirmed, "confirmed"),
    (TransactionConfirmationStatus.Finalized, "finalized"),
)

# RPC error fragments meaning the blockhash the transaction was built on is stale
STALE_BLOCKHASH_MARKERS = ("blockhash not found", "block height exceeded")


class FinalizationStatus(Enum):
    """Outcome of waiting for a submitted transaction."""
    FINALIZED = "finalized"    # Reached the requested commitment without error
    FAILED = "failed"          # Landed on chain with an error
    EXPIRED = "expired"        # Blockhash expired before the transaction landed
    TIMEOUT = "timeout"        # Wall-clock wait exceeded


@dataclass(frozen=True)
class Anchor:
    """A recent blockhash and the last block height at which it is valid."""
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class AccountState:
    """On-chain account metadata."""
    lamports: int
    owner: str
    executable: bool
    rent_epoch: Optional[int]
    data_size: int


@dataclass(frozen=True)
class Finalization:
    """Status of a finalization wait, with the ledger's error if any."""
    status: FinalizationStatus
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == FinalizationStatus.FINALIZED


class LedgerClient(ABC):
    """Capabilities the fleet core needs from the ledger."""

    @abstractmethod
    def get_balance(self, address: str, commitment: Optional[str] = None) -> int:
        """Return the native balance in lamports."""

    @abstractmethod
    def get_account_state(self, address: str, commitment: Optional[str] = None) -> Optional[AccountState]:
        """Return account metadata, or None if the account does not exist."""

    @abstractmethod
    def get_token_balance(self, owner: str, mint: str) -> int:
        """Return the owner's total balance of ``mint`` in base units."""

    @abstractmethod
    def get_recent_anchor(self) -> Anchor:
        """Fetch a fresh blockhash to build a transaction on."""

    @abstractmethod
    def submit(self, raw_transaction: bytes) -> str:
        """Submit a signed transaction and return its signature."""

    @abstractmethod
    def await_finalization(self, signature: str, anchor: Anchor,
                           timeout: Optional[float] = None) -> Finalization:
        """Wait until the transaction lands, fails, or its anchor expires."""


_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type(LedgerTransportError),
    reraise=True,
)


def _rpc_message(error: RPCException) -> str:
    """Human-readable text of an RPC error object."""
    detail = error.args[0] if error.args else error
    message = getattr(detail, "message", None)
    return message if message is not None else str(detail)


@contextmanager
def _rpc_errors(method: str):
    """
    Translate ``solana`` client exceptions into ledger errors.

    Raises:
        LedgerTransportError: On connection errors, timeouts and HTTP error statuses
        LedgerError: When the node returns a JSON-RPC error object
    """
    try:
        yield
    except SolanaRpcException as e:
        raise LedgerTransportError(f"{method}: {e}") from e
    except RPCException as e:
        raise LedgerError(f"{method}: {_rpc_message(e)}") from e


class RpcLedgerClient(LedgerClient):
    """
    Solana JSON-RPC client over a shared ``solana.rpc.api.Client``.

    The client's HTTP session is the only connection state and is safe to
    share across the operations of a batch.
    """

    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        request_timeout: float = 30.0,
        confirm_timeout: float = 60.0,
        poll_interval: float = 0.5,
        client: Optional[Client] = None,
    ):
        if commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"Unknown commitment: {commitment}")
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.client = client or Client(rpc_url, commitment=Commitment(commitment), timeout=request_timeout)

    def _commitment(self, commitment: Optional[str] = None) -> Commitment:
        return Commitment(commitment or self.commitment)

    @_read_retry
    def get_balance(self, address: str, commitment: Optional[str] = None) -> int:
        with _rpc_errors("getBalance"):
            response = self.client.get_balance(decode_address(address), self._commitment(commitment))
        return int(response.value)

    @_read_retry
    def get_account_state(self, address: str, commitment: Optional[str] = None) -> Optional[AccountState]:
        with _rpc_errors("getAccountInfo"):
            response = self.client.get_account_info(
                decode_address(address), self._commitment(commitment), encoding="base64"
            )
        account = response.value
        if account is None:
            return None

        return AccountState(
            lamports=int(account.lamports),
            owner=str(account.owner),
            executable=bool(account.executable),
            rent_epoch=account.rent_epoch,
            data_size=len(account.data),
        )

    @_read_retry
    def get_token_balance(self, owner: str, mint: str) -> int:
        with _rpc_errors("getTokenAccountsByOwner"):
            response = self.client.get_token_accounts_by_owner_json_parsed(
                decode_address(owner),
                TokenAccountOpts(mint=decode_address(mint)),
                self._commitment(),
            )
        total = 0
        for item in response.value:
            info = item.account.data.parsed["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    @_read_retry
    def get_recent_anchor(self) -> Anchor:
        with _rpc_errors("getLatestBlockhash"):
            response = self.client.get_latest_blockhash(self._commitment())
        value = response.value
        return Anchor(blockhash=str(value.blockhash), last_valid_block_height=int(value.last_valid_block_height))

    @_read_retry
    def get_block_height(self) -> int:
        with _rpc_errors("getBlockHeight"):
            return int(self.client.get_block_height(self._commitment()).value)

    @_read_retry
    def _get_signature_status(self, signature: str):
        with _rpc_errors("getSignatureStatuses"):
            response = self.client.get_signature_statuses([Signature.from_string(signature)])
        statuses = response.value or [None]
        return statuses[0]

    def submit(self, raw_transaction: bytes, skip_preflight: bool = False) -> str:
        """
        Send a signed transaction.

        Raises:
            AnchorExpiredError: If the node no longer knows the transaction's blockhash
            SubmissionError: For any other rejection
        """
        opts = TxOpts(
            skip_confirmation=True,
            skip_preflight=skip_preflight,
            preflight_commitment=self._commitment(),
        )
        try:
            with _rpc_errors("sendTransaction"):
                response = self.client.send_raw_transaction(raw_transaction, opts=opts)
        except LedgerError as e:
            message = str(e)
            if any(marker in message.lower() for marker in STALE_BLOCKHASH_MARKERS):
                raise AnchorExpiredError(message) from e
            raise SubmissionError(message) from e
        return str(response.value)

    def _reached_commitment(self, status) -> bool:
        level = next(
            (name for value, name in CONFIRMATION_LEVELS if status.confirmation_status == value), None
        )
        if level is None:
            # Older nodes only report confirmations; None means rooted
            return status.confirmations is None
        return COMMITMENT_LEVELS.index(level) >= COMMITMENT_LEVELS.index(self.commitment)

    def await_finalization(self, signature: str, anchor: Anchor,
                           timeout: Optional[float] = None) -> Finalization:
        deadline = time.monotonic() + (timeout if timeout is not None else self.confirm_timeout)

        while True:
            status = self._get_signature_status(signature)
            if status is not None:
                if status.err is not None:
                    return Finalization(FinalizationStatus.FAILED, error=str(status.err))
                if self._reached_commitment(status):
                    return Finalization(FinalizationStatus.FINALIZED)
            elif self.get_block_height() > anchor.last_valid_block_height:
                logger.warning(f"Blockhash expired before {format_signature(signature)} landed")
                return Finalization(FinalizationStatus.EXPIRED, error="blockhash expired")

            if time.monotonic() >= deadline:
                return Finalization(FinalizationStatus.TIMEOUT, error="confirmation wait timed out")
            time.sleep(self.poll_interval)
