"""
Distribution Service
====================

Fleet-level operations built on the batch executor:

- Fund the fleet from a funder account, flat or with generated shares
- Sweep a percentage of every wallet's balance to one destination
- Buy a token from every wallet, or sell a percentage of it back to SOL
- Create wallets and list their on-chain state

Whole-batch problems (empty or undecodable fleet, infeasible shares,
underfunded funder, bad destination) raise before anything is submitted.
Per-wallet problems end up in that wallet's result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from solders.keypair import Keypair

from solswarm.config import Config
from solswarm.errors import InsufficientBalanceError, InvalidAddressError, LedgerError
from solswarm.executor import (
    AmountPolicy,
    BalanceReader,
    BatchExecutor,
    CancelToken,
    Flat,
    OperationBuilder,
    PerAccountShare,
    PercentOfBalance,
    SwapBuilder,
)
from solswarm.keystore import KeyStore, WalletEntry
from solswarm.ledger import LedgerClient
from solswarm.metrics import MetricsCollector
from solswarm.models import Account, OperationIntent, OperationResult, Share
from solswarm.partition import PartitionGenerator, shares_to_amounts
from solswarm.swap import SOL_MINT, QuoteProvider
from solswarm.utils import (
    logger,
    format_address,
    format_sol,
    lamports_to_sol,
    sanitize_error_message,
    validate_address,
)
from solswarm.wallet import keypair_from_mnemonic, load_keypair

MAX_WALLETS_PER_CREATE = 1000


class DistributionMode(Enum):
    """How a funder's balance is split across recipients."""
    BOUNDED = "bounded"            # Integer lamports within [min, max]
    PERCENTAGES = "percentages"    # Random percentages within [min_pct, max_pct]
    ARITHMETIC = "arithmetic"      # Strictly increasing arithmetic percentages


@dataclass(frozen=True)
class DistributionSummary:
    """Outcome of one fleet operation."""
    total_resolved: int
    results: List[OperationResult] = field(default_factory=list)
    shares: List[Share] = field(default_factory=list)
    intents: List[OperationIntent] = field(default_factory=list)   # Dry runs only
    dry_run: bool = False

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return len(self.results) - self.success_count

    @property
    def total_transferred(self) -> int:
        return sum(r.amount for r in self.results if r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_resolved': self.total_resolved,
            'total_transferred': self.total_transferred,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'dry_run': self.dry_run,
            'shares': [
                {'index': s.index, 'fraction': s.fraction, 'amount': s.resolved_amount}
                for s in self.shares
            ],
            'planned': [
                {'source': i.source.address, 'destination': i.destination, 'amount': i.amount}
                for i in self.intents
            ],
            'results': [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class AccountInfo:
    """On-chain state of one stored wallet, or why it could not be read."""
    address: str
    lamports: Optional[int] = None
    owner: Optional[str] = None
    executable: Optional[bool] = None
    rent_epoch: Optional[int] = None
    data_size: Optional[int] = None
    error: Optional[str] = None

    @property
    def sol(self) -> Optional[float]:
        return float(lamports_to_sol(self.lamports)) if self.lamports is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'lamports': self.lamports,
            'sol': self.sol,
            'owner': self.owner,
            'executable': self.executable,
            'rent_epoch': self.rent_epoch,
            'data_size': self.data_size,
            'error': self.error,
        }


class DistributionService:
    """
    Fleet operations over an injected key store and ledger.

    Args:
        keystore: Source of the fleet's keypairs
        ledger: Ledger client shared by every batch
        config: Fee reserve, concurrency and swap settings
        quote_provider: Swap API client, required for buy/sell
        metrics: Optional metrics collector fed by every batch
        generator: Partition generator (seed it for reproducible shares)
    """

    def __init__(
        self,
        keystore: KeyStore,
        ledger: LedgerClient,
        config: Optional[Config] = None,
        quote_provider: Optional[QuoteProvider] = None,
        metrics: Optional[MetricsCollector] = None,
        generator: Optional[PartitionGenerator] = None,
    ):
        self.keystore = keystore
        self.ledger = ledger
        self.config = config or Config()
        self.quote_provider = quote_provider
        self.metrics = metrics
        self.generator = generator or PartitionGenerator()

    # Fleet

    def fleet_accounts(self) -> List[Account]:
        """Decode every stored wallet. Raises InvalidKeyEncodingError on the first bad one."""
        return self.keystore.accounts()

    def create_wallets(self, count: int) -> List[WalletEntry]:
        """Generate ``count`` new keypairs and append them to the key store."""
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_WALLETS_PER_CREATE:
            raise ValueError(f"Wallet count must be between 1 and {MAX_WALLETS_PER_CREATE}, got {count!r}")

        entries = [WalletEntry.from_keypair(Keypair()) for _ in range(count)]
        self.keystore.append(entries)
        logger.info(f"Created {count} wallets")
        return entries

    def account_info(self, commitment: Optional[str] = None) -> List[AccountInfo]:
        """
        Read the on-chain state of every stored wallet.

        Lookup failures are reported per wallet, not raised.

        Raises:
            ValueError: If the key store is empty
        """
        entries = self.keystore.list()
        if not entries:
            raise ValueError("No wallets found in the key store")

        infos = []
        for entry in entries:
            address = entry.public_key
            if not validate_address(address):
                infos.append(AccountInfo(address=address, error="invalid address"))
                continue

            try:
                state = self.ledger.get_account_state(address, commitment)
            except LedgerError as e:
                infos.append(AccountInfo(address=address, error=sanitize_error_message(e)))
                continue

            if state is None:
                infos.append(AccountInfo(address=address, error="not found"))
                continue

            infos.append(AccountInfo(
                address=address,
                lamports=state.lamports,
                owner=state.owner,
                executable=state.executable,
                rent_epoch=state.rent_epoch,
                data_size=state.data_size,
            ))
        return infos

    @staticmethod
    def load_funder(secret: str) -> Account:
        """Funder account from a base58 or base64 secret key."""
        return Account.from_keypair(load_keypair(secret))

    @staticmethod
    def load_funder_from_mnemonic(phrase: str, index: int = 0) -> Account:
        """Funder account derived from a BIP39 recovery phrase (m/44'/501'/index'/0')."""
        return Account.from_keypair(keypair_from_mnemonic(phrase, index))

    # Batches

    def _executor(
        self,
        builder: Optional[OperationBuilder] = None,
        balance_reader: Optional[BalanceReader] = None,
    ) -> BatchExecutor:
        return BatchExecutor(
            self.ledger,
            builder=builder,
            balance_reader=balance_reader,
            metrics=self.metrics,
            max_workers=self.config.max_workers,
            confirm_timeout=self.config.confirm_timeout_seconds,
        )

    def _run(
        self,
        executor: BatchExecutor,
        accounts: Sequence[Account],
        policy: AmountPolicy,
        destination,
        fee_reserve: int,
        cancel: Optional[CancelToken],
        dry_run: bool,
        shares: Optional[List[Share]] = None,
    ) -> DistributionSummary:
        if dry_run:
            intents = executor.preview(accounts, policy, destination, fee_reserve)
            return DistributionSummary(
                total_resolved=sum(max(i.amount, 0) for i in intents),
                shares=shares or [],
                intents=intents,
                dry_run=True,
            )

        results = executor.execute(accounts, policy, destination, fee_reserve, cancel)
        if shares is not None:
            total = sum(s.resolved_amount for s in shares)
        else:
            total = sum(r.amount for r in results)
        return DistributionSummary(total_resolved=total, results=results, shares=shares or [])

    def _recipients(self, recipients: Optional[Sequence[str]]) -> List[str]:
        if recipients is None:
            recipients = [entry.public_key for entry in self.keystore.list()]
        recipients = list(recipients)
        if not recipients:
            raise ValueError("No recipients to fund")
        for address in recipients:
            if not validate_address(address):
                raise InvalidAddressError(f"Invalid recipient address: {address}")
        return recipients

    def fund_flat(
        self,
        funder: Account,
        amount: int,
        recipients: Optional[Sequence[str]] = None,
        cancel: Optional[CancelToken] = None,
        dry_run: bool = False,
    ) -> DistributionSummary:
        """
        Send the same amount of lamports from the funder to every recipient.

        Recipients default to every wallet in the key store.

        Raises:
            InsufficientBalanceError: If the funder cannot cover every transfer
                plus one fee reserve per transfer
        """
        if amount <= 0:
            raise ValueError(f"Funding amount must be positive, got {amount}")
        recipients = self._recipients(recipients)
        count = len(recipients)

        required = (amount + self.config.fee_reserve_lamports) * count
        balance = self.ledger.get_balance(funder.address)
        if balance < required:
            raise InsufficientBalanceError(
                f"Funder {format_address(funder.address)} holds {format_sol(balance)}, "
                f"needs {format_sol(required)} for {count} transfers"
            )

        logger.info(f"Funding {count} wallets with {format_sol(amount)} each")
        return self._run(
            self._executor(), [funder] * count, Flat(amount), recipients,
            self.config.fee_reserve_lamports, cancel, dry_run,
        )

    def _generate_shares(
        self,
        mode: DistributionMode,
        count: int,
        total: int,
        min_amount: Optional[int],
        max_amount: Optional[int],
        min_pct: float,
        max_pct: float,
        common_difference: float,
    ) -> List[Share]:
        if mode == DistributionMode.BOUNDED:
            if min_amount is None or max_amount is None:
                raise ValueError("Bounded distribution needs min_amount and max_amount")
            amounts = self.generator.bounded_integer(count, total, min_amount, max_amount)
            fractions = [a / total for a in amounts]
        else:
            if mode == DistributionMode.PERCENTAGES:
                percentages = self.generator.random_percentages(count, min_pct, max_pct)
            else:
                percentages = self.generator.unique_arithmetic(count, common_difference)
            amounts = shares_to_amounts(percentages, total)
            fractions = [p / 100 for p in percentages]

        return [Share(index=i, fraction=f, resolved_amount=a) for i, (f, a) in enumerate(zip(fractions, amounts))]

    def fund_with_shares(
        self,
        funder: Account,
        recipients: Optional[Sequence[str]] = None,
        mode: DistributionMode = DistributionMode.PERCENTAGES,
        total: Optional[int] = None,
        min_amount: Optional[int] = None,
        max_amount: Optional[int] = None,
        min_pct: float = 1.0,
        max_pct: float = 10.0,
        common_difference: float = 0.01,
        cancel: Optional[CancelToken] = None,
        dry_run: bool = False,
    ) -> DistributionSummary:
        """
        Split the funder's spendable balance (or ``total``) across recipients.

        The funder pays one fee per transfer, so one fee reserve per
        recipient is held back before shares are generated.

        Raises:
            InsufficientBalanceError: If nothing (or less than ``total``) is spendable
            InfeasiblePartitionError: If the shares cannot satisfy the bounds
        """
        recipients = self._recipients(recipients)
        count = len(recipients)

        balance = self.ledger.get_balance(funder.address)
        available = balance - self.config.fee_reserve_lamports * count
        if available <= 0:
            raise InsufficientBalanceError(
                f"Funder {format_address(funder.address)} holds {format_sol(balance)}, "
                f"not enough to cover fees for {count} transfers"
            )
        if total is None:
            total = available
        elif total > available:
            raise InsufficientBalanceError(
                f"Requested {format_sol(total)} but only {format_sol(available)} is spendable"
            )

        shares = self._generate_shares(
            mode, count, total, min_amount, max_amount, min_pct, max_pct, common_difference
        )

        logger.info(f"Distributing {format_sol(total)} to {count} wallets ({mode.value})")
        return self._run(
            self._executor(), [funder] * count, PerAccountShare([s.resolved_amount for s in shares]),
            recipients, self.config.fee_reserve_lamports, cancel, dry_run, shares=shares,
        )

    def sweep_percentage(
        self,
        destination: str,
        pct: float,
        cancel: Optional[CancelToken] = None,
        dry_run: bool = False,
    ) -> DistributionSummary:
        """Send ``pct``% of every fleet wallet's SOL balance to ``destination``."""
        policy = PercentOfBalance(pct)
        accounts = self.fleet_accounts()

        logger.info(f"Sweeping {pct}% of {len(accounts)} wallets to {format_address(destination)}")
        return self._run(
            self._executor(), accounts, policy, destination,
            self.config.fee_reserve_lamports, cancel, dry_run,
        )

    def _swap_builder(self, input_mint: str, output_mint: str, slippage_bps: Optional[int]) -> SwapBuilder:
        if self.quote_provider is None:
            raise ValueError("Swaps need a quote provider")
        if not validate_address(input_mint) or not validate_address(output_mint):
            raise InvalidAddressError(f"Invalid mint: {input_mint} / {output_mint}")
        slippage = self.config.slippage_bps if slippage_bps is None else slippage_bps
        return SwapBuilder(self.quote_provider, input_mint, output_mint, slippage)

    def buy_all(
        self,
        mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        dry_run: bool = False,
    ) -> DistributionSummary:
        """Swap ``amount`` lamports of SOL into ``mint`` from every fleet wallet."""
        builder = self._swap_builder(SOL_MINT, mint, slippage_bps)
        policy = Flat(amount)
        accounts = self.fleet_accounts()

        logger.info(f"Buying {format_address(mint)} with {format_sol(amount)} from {len(accounts)} wallets")
        return self._run(
            self._executor(builder), accounts, policy, mint,
            self.config.fee_reserve_lamports, cancel, dry_run,
        )

    def buy(
        self,
        account: Account,
        mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        dry_run: bool = False,
    ) -> DistributionSummary:
        """Swap ``amount`` lamports of SOL into ``mint`` from a single wallet."""
        builder = self._swap_builder(SOL_MINT, mint, slippage_bps)

        logger.info(
            f"Buying {format_address(mint)} with {format_sol(amount)} from {format_address(account.address)}"
        )
        return self._run(
            self._executor(builder), [account], Flat(amount), mint,
            self.config.fee_reserve_lamports, cancel, dry_run,
        )

    def sell_all(
        self,
        mint: str,
        pct: float,
        slippage_bps: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        dry_run: bool = False,
    ) -> DistributionSummary:
        """Swap ``pct``% of every fleet wallet's ``mint`` balance back to SOL."""
        builder = self._swap_builder(mint, SOL_MINT, slippage_bps)
        policy = PercentOfBalance(pct)
        accounts = self.fleet_accounts()

        def token_balance(address: str) -> int:
            return self.ledger.get_token_balance(address, mint)

        logger.info(f"Selling {pct}% of {format_address(mint)} from {len(accounts)} wallets")
        # Fees are paid in SOL, so nothing of the token needs reserving
        return self._run(
            self._executor(builder, token_balance), accounts, policy, SOL_MINT,
            0, cancel, dry_run,
        )
