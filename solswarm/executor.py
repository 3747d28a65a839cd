"""
Batch Executor
==============

Runs one operation per account across a list of accounts and returns one
result per account, in input order, no matter how many of them fail.

For each account:

1. Resolve the amount from the policy (flat, percent of balance, or a
   precomputed share)
2. Skip with ``InsufficientBalance`` if nothing is left to send
3. Fetch a fresh anchor (blockhash) right before building
4. Build, sign, submit
5. Wait for the transaction to land
6. Record the result and move on

Errors never cross account boundaries: anything raised while handling an
account is captured into that account's result. Errors that make the whole
batch meaningless (bad destination, policy/account length mismatch) are
raised before the first submission.

Execution is sequential by default. With ``max_workers > 1`` accounts are
grouped by source address and groups run on a bounded thread pool; each
group stays in order and results are reassembled in input order.
"""

import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from solswarm.errors import (
    ErrorKind,
    FleetError,
    InsufficientBalanceError,
    InvalidAddressError,
    LedgerError,
)
from solswarm.ledger import Anchor, Finalization, FinalizationStatus, LedgerClient
from solswarm.metrics import MetricsCollector
from solswarm.models import Account, OperationIntent, OperationResult
from solswarm.swap import QuoteProvider
from solswarm.transactions import build_signed_transfer, sign_serialized_transaction
from solswarm.utils import (
    logger,
    format_address,
    format_signature,
    sanitize_error_message,
    validate_address,
)


@dataclass(frozen=True)
class Flat:
    """Send the same amount from every account."""
    amount: int

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError(f"Flat amount must be an integer number of base units, got {self.amount!r}")


@dataclass(frozen=True)
class PercentOfBalance:
    """Send a percentage of each account's current balance."""
    pct: float

    def __post_init__(self):
        if not 0 < self.pct <= 100:
            raise ValueError(f"Percentage must be in (0, 100], got {self.pct}")


@dataclass(frozen=True)
class PerAccountShare:
    """Send a precomputed amount per account, matched by position."""
    shares: Sequence[int]

    def __post_init__(self):
        object.__setattr__(self, "shares", tuple(self.shares))
        for share in self.shares:
            if isinstance(share, bool) or not isinstance(share, int):
                raise ValueError(f"Shares must be integers, got {share!r}")


AmountPolicy = Union[Flat, PercentOfBalance, PerAccountShare]
BalanceReader = Callable[[str], int]


def resolve_percent_amount(balance: int, pct: float, fee_reserve: int) -> int:
    """
    Amount to send for a percent-of-balance operation.

    At 100% the fee reserve is always subtracted. Below 100% the floored
    percentage is only reduced when it would leave less than the reserve.
    """
    if pct == 100:
        return balance - fee_reserve

    amount = int((Decimal(balance) * Decimal(str(pct)) / 100).to_integral_value(rounding=ROUND_FLOOR))
    if balance - amount < fee_reserve:
        amount = balance - fee_reserve
    return amount


class CancelToken:
    """
    Cooperative cancellation for a running batch.

    Cancelled explicitly with ``cancel()`` or implicitly once ``timeout``
    seconds have passed since creation.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline


class OperationBuilder(ABC):
    """Turns a resolved intent into a signed, serialized transaction."""
    operation: str = "operation"

    @abstractmethod
    def build(self, intent: OperationIntent, anchor: Anchor) -> bytes:
        """Return the signed transaction bytes."""


class TransferBuilder(OperationBuilder):
    """Native SOL transfer from the source account to the destination."""
    operation = "transfer"

    def build(self, intent: OperationIntent, anchor: Anchor) -> bytes:
        return build_signed_transfer(intent.source.signer, intent.destination, intent.amount, anchor.blockhash)


class SwapBuilder(OperationBuilder):
    """
    Token swap through a quote provider.

    The intent's amount is the input amount in base units of ``input_mint``.
    The provider's transaction is re-anchored on the fresh blockhash before
    signing.
    """
    operation = "swap"

    def __init__(self, provider: QuoteProvider, input_mint: str, output_mint: str, slippage_bps: int):
        self.provider = provider
        self.input_mint = input_mint
        self.output_mint = output_mint
        self.slippage_bps = slippage_bps

    def build(self, intent: OperationIntent, anchor: Anchor) -> bytes:
        quote = self.provider.get_quote(self.input_mint, self.output_mint, intent.amount, self.slippage_bps)
        unsigned = self.provider.build_swap_transaction(quote, intent.source.address)
        return sign_serialized_transaction(unsigned, intent.source.signer, anchor.blockhash)


class BatchExecutor:
    """
    Executes one operation per account and collects ordered results.

    Args:
        ledger: Shared ledger client
        builder: How to turn an intent into a transaction (default: SOL transfer)
        balance_reader: Balance source for percent policies (default: SOL balance)
        metrics: Optional metrics collector
        max_workers: Concurrency cap across distinct source accounts
        confirm_timeout: Per-operation finalization wait, None for the ledger default
    """

    def __init__(
        self,
        ledger: LedgerClient,
        builder: Optional[OperationBuilder] = None,
        balance_reader: Optional[BalanceReader] = None,
        metrics: Optional[MetricsCollector] = None,
        max_workers: int = 1,
        confirm_timeout: Optional[float] = None,
    ):
        self.ledger = ledger
        self.builder = builder or TransferBuilder()
        self.balance_reader = balance_reader or ledger.get_balance
        self.metrics = metrics
        self.max_workers = max(1, max_workers)
        self.confirm_timeout = confirm_timeout

    @staticmethod
    def _destinations(destination: Union[str, Sequence[str]], count: int) -> List[str]:
        """Expand and validate destinations before anything is submitted."""
        if isinstance(destination, str):
            destinations = [destination] * count
        else:
            destinations = list(destination)
            if len(destinations) != count:
                raise ValueError(f"Got {len(destinations)} destinations for {count} accounts")

        for address in set(destinations):
            if not validate_address(address):
                raise InvalidAddressError(f"Invalid destination address: {address}")
        return destinations

    def _resolve(
        self, index: int, account: Account, policy: AmountPolicy, fee_reserve: int
    ) -> Tuple[Account, int]:
        """Resolve the amount; percent policies also stamp the balance just read on the account."""
        if isinstance(policy, Flat):
            return account, policy.amount
        if isinstance(policy, PerAccountShare):
            return account, policy.shares[index]
        balance = self.balance_reader(account.address)
        return account.with_balance(balance), resolve_percent_amount(balance, policy.pct, fee_reserve)

    def preview(
        self,
        accounts: Sequence[Account],
        policy: AmountPolicy,
        destination: Union[str, Sequence[str]],
        fee_reserve: int = 0,
    ) -> List[OperationIntent]:
        """Resolve every account's intent without submitting anything."""
        accounts = list(accounts)
        self._check_policy(policy, len(accounts))
        destinations = self._destinations(destination, len(accounts))
        intents = []
        for i, account in enumerate(accounts):
            source, amount = self._resolve(i, account, policy, fee_reserve)
            intents.append(OperationIntent(source, destinations[i], amount, fee_reserve))
        return intents

    @staticmethod
    def _check_policy(policy: AmountPolicy, count: int):
        if isinstance(policy, PerAccountShare) and len(policy.shares) != count:
            raise ValueError(f"Got {len(policy.shares)} shares for {count} accounts")

    def execute(
        self,
        accounts: Sequence[Account],
        policy: AmountPolicy,
        destination: Union[str, Sequence[str]],
        fee_reserve: int = 0,
        cancel: Optional[CancelToken] = None,
    ) -> List[OperationResult]:
        """
        Run the batch.

        Args:
            accounts: Source accounts, in processing order
            policy: How to resolve each account's amount
            destination: One address for all, or one per account
            fee_reserve: Base units each source must keep for fees
            cancel: Optional token; unprocessed accounts get ``Cancelled`` results

        Returns:
            Exactly one OperationResult per account, in input order

        Raises:
            InvalidAddressError: If any destination is not a valid address
            ValueError: If the policy does not fit the account list
        """
        accounts = list(accounts)
        if fee_reserve < 0:
            raise ValueError(f"Fee reserve cannot be negative: {fee_reserve}")
        self._check_policy(policy, len(accounts))
        destinations = self._destinations(destination, len(accounts))

        results: List[Optional[OperationResult]] = [None] * len(accounts)

        if self.max_workers == 1:
            for i, account in enumerate(accounts):
                results[i] = self._process(i, account, destinations[i], policy, fee_reserve, cancel)
        else:
            # One task per source keeps each source's operations ordered
            groups: Dict[str, List[int]] = {}
            for i, account in enumerate(accounts):
                groups.setdefault(account.address, []).append(i)

            def run_group(indices: List[int]):
                for i in indices:
                    results[i] = self._process(i, accounts[i], destinations[i], policy, fee_reserve, cancel)

            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(groups) or 1)) as pool:
                for future in [pool.submit(run_group, indices) for indices in groups.values()]:
                    future.result()

        success_count = sum(1 for r in results if r.success)
        logger.info(f"Batch complete: {success_count}/{len(results)} successful")
        return results

    def _process(
        self,
        index: int,
        account: Account,
        destination: str,
        policy: AmountPolicy,
        fee_reserve: int,
        cancel: Optional[CancelToken],
    ) -> OperationResult:
        """Handle one account. Never raises."""
        if cancel is not None and cancel.cancelled:
            return OperationResult(
                source=account.address,
                destination=destination,
                amount=0,
                success=False,
                error_kind=ErrorKind.CANCELLED,
                error="Batch cancelled before this account was processed",
            )

        metric = self.metrics.start(self.builder.operation, account.address) if self.metrics else None
        amount = 0
        signature = None

        try:
            source, amount = self._resolve(index, account, policy, fee_reserve)
            if amount <= 0:
                raise InsufficientBalanceError(
                    f"Nothing to send from {format_address(account.address)} after a reserve of {fee_reserve}"
                )

            intent = OperationIntent(source, destination, amount, fee_reserve)
            anchor = self.ledger.get_recent_anchor()
            raw = self.builder.build(intent, anchor)
            signature = self.ledger.submit(raw)

            logger.info(
                f"Account {index} ({format_address(account.address)}): {self.builder.operation} "
                f"{amount} -> {format_address(destination)} | {format_signature(signature)}"
            )

            try:
                outcome = self.ledger.await_finalization(signature, anchor, self.confirm_timeout)
            except LedgerError as e:
                # Submitted, so the outcome is unknown rather than failed
                outcome = Finalization(FinalizationStatus.TIMEOUT, error=str(e))
            if outcome.success:
                result = OperationResult(
                    source=account.address,
                    destination=destination,
                    amount=amount,
                    success=True,
                    reference=signature,
                )
            else:
                kind = (ErrorKind.SUBMISSION_FAILED if outcome.status == FinalizationStatus.FAILED
                        else ErrorKind.CONFIRMATION_TIMEOUT)
                result = self._failure(account, destination, amount, kind, outcome.error or outcome.status.value,
                                       signature)

        except FleetError as e:
            result = self._failure(account, destination, amount, e.kind, e, signature)
        except Exception as e:
            result = self._failure(account, destination, amount, ErrorKind.SUBMISSION_FAILED, e, signature)

        if metric is not None:
            metric.finalize(
                success=result.success,
                error_kind=result.error_kind.value if result.error_kind else None,
                signature=result.reference,
            )
            self.metrics.add_metric(metric)

        return result

    def _failure(
        self,
        account: Account,
        destination: str,
        amount: int,
        kind: ErrorKind,
        error: Union[str, Exception],
        signature: Optional[str] = None,
    ) -> OperationResult:
        message = sanitize_error_message(error)
        logger.error(f"{self.builder.operation} from {format_address(account.address)} failed [{kind.value}]: {message}")
        return OperationResult(
            source=account.address,
            destination=destination,
            amount=max(amount, 0),
            success=False,
            reference=signature,
            error_kind=kind,
            error=message,
        )
