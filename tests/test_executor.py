"""
Tests for the batch executor: amount resolution, ordering, per-account
failure isolation, cancellation and swap signing.
"""

import sys
from pathlib import Path

import pytest
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction

sys.path.insert(0, str(Path(__file__).parent.parent))

from solswarm.errors import ErrorKind, InvalidAddressError, LedgerError, LedgerTransportError
from solswarm.executor import (
    BatchExecutor,
    CancelToken,
    Flat,
    PerAccountShare,
    PercentOfBalance,
    SwapBuilder,
    resolve_percent_amount,
)
from solswarm.ledger import Finalization, FinalizationStatus
from solswarm.metrics import MetricsCollector
from solswarm.models import Account
from solswarm.swap import SOL_MINT
from solswarm.transactions import transaction_signature

F = 5000


def transfer_lamports(raw: bytes) -> int:
    """Lamports of a signed System Program transfer (u32 tag, then u64 amount)."""
    data = bytes(VersionedTransaction.from_bytes(raw).message.instructions[0].data)
    return int.from_bytes(data[4:12], "little")


class TestResolvePercentAmount:

    def test_full_balance_leaves_exactly_the_reserve(self):
        assert resolve_percent_amount(1_000_000, 100, F) == 1_000_000 - F

    def test_half_balance(self):
        assert resolve_percent_amount(1_000_000, 50, F) == 500_000

    def test_clamped_to_keep_reserve(self):
        # floor(999_000) would leave only 1_000 behind
        assert resolve_percent_amount(1_000_000, 99.9, F) == 995_000

    def test_floors_fractional_amounts(self):
        assert resolve_percent_amount(999, 33.3, 0) == 332

    def test_balance_below_reserve_is_not_positive(self):
        assert resolve_percent_amount(3000, 100, F) <= 0
        assert resolve_percent_amount(3000, 50, F) <= 0


class TestPolicies:

    @pytest.mark.parametrize("pct", [0, -5, 100.01, 150])
    def test_percent_out_of_range(self, pct):
        with pytest.raises(ValueError):
            PercentOfBalance(pct)

    def test_flat_rejects_floats(self):
        with pytest.raises(ValueError):
            Flat(0.5)

    def test_share_count_must_match_accounts(self, ledger, accounts, destination):
        executor = BatchExecutor(ledger)
        with pytest.raises(ValueError):
            executor.execute(accounts, PerAccountShare([1, 2]), destination)
        assert ledger.submitted == []


class TestBatchExecutor:

    def test_one_result_per_account_in_order(self, ledger, accounts, destination):
        results = BatchExecutor(ledger).execute(accounts, Flat(1000), destination)

        assert len(results) == len(accounts)
        assert [r.source for r in results] == [a.address for a in accounts]
        assert all(r.success for r in results)
        assert all(r.amount == 1000 for r in results)
        assert len(ledger.submitted) == 3

    def test_fresh_anchor_per_operation(self, ledger, accounts, destination):
        BatchExecutor(ledger).execute(accounts, Flat(1000), destination)
        assert len(ledger.anchors) == len(accounts)

    def test_percent_of_full_balance(self, ledger, accounts, destination):
        for account in accounts:
            ledger.balances[account.address] = 2_000_000

        results = BatchExecutor(ledger).execute(accounts, PercentOfBalance(100), destination, fee_reserve=F)

        assert [r.amount for r in results] == [2_000_000 - F] * 3
        assert all(r.success for r in results)

    def test_percent_of_balance_half(self, ledger, accounts, destination):
        ledger.balances[accounts[0].address] = 1_000_000

        results = BatchExecutor(ledger).execute(accounts[:1], PercentOfBalance(50), destination, fee_reserve=F)

        assert results[0].amount == 500_000

    def test_empty_account_is_insufficient_and_not_submitted(self, ledger, accounts, destination):
        ledger.balances[accounts[0].address] = 1_000_000
        ledger.balances[accounts[1].address] = 3000
        ledger.balances[accounts[2].address] = 1_000_000

        results = BatchExecutor(ledger).execute(accounts, PercentOfBalance(100), destination, fee_reserve=F)

        assert results[0].success and results[2].success
        assert not results[1].success
        assert results[1].error_kind == ErrorKind.INSUFFICIENT_BALANCE
        assert results[1].reference is None
        assert len(ledger.submitted) == 2

    def test_failed_submission_does_not_stop_batch(self, ledger, accounts, destination):
        ledger.reject_sources.add(accounts[1].address)

        results = BatchExecutor(ledger).execute(accounts, Flat(1000), destination)

        assert [r.success for r in results] == [True, False, True]
        assert results[1].error_kind == ErrorKind.SUBMISSION_FAILED
        assert "insufficient funds" in results[1].error

    def test_stale_anchor_at_submission(self, ledger, accounts, destination):
        ledger.stale_sources.add(accounts[0].address)

        results = BatchExecutor(ledger).execute(accounts, Flat(1000), destination)

        assert results[0].error_kind == ErrorKind.ANCHOR_EXPIRED
        assert results[1].success and results[2].success

    def test_failed_finalization_keeps_reference(self, ledger, accounts, destination):
        ledger.finalization[accounts[0].address] = Finalization(FinalizationStatus.FAILED, error="{'InstructionError': 0}")

        results = BatchExecutor(ledger).execute(accounts, Flat(1000), destination)

        assert not results[0].success
        assert results[0].error_kind == ErrorKind.SUBMISSION_FAILED
        assert results[0].reference is not None

    @pytest.mark.parametrize("status", [FinalizationStatus.EXPIRED, FinalizationStatus.TIMEOUT])
    def test_unconfirmed_is_confirmation_timeout(self, ledger, accounts, destination, status):
        ledger.finalization[accounts[2].address] = Finalization(status, error=status.value)

        results = BatchExecutor(ledger).execute(accounts, Flat(1000), destination)

        assert results[2].error_kind == ErrorKind.CONFIRMATION_TIMEOUT
        assert results[2].reference is not None

    @pytest.mark.parametrize("error", [
        LedgerTransportError("getSignatureStatuses: HTTP 503"),
        LedgerError("getSignatureStatuses: Node is behind by 120 slots"),
    ])
    def test_ledger_error_while_waiting_is_confirmation_timeout(self, ledger, accounts, destination, error):
        def unreachable(signature, anchor, timeout=None):
            raise error

        ledger.await_finalization = unreachable

        results = BatchExecutor(ledger).execute(accounts, Flat(1000), destination)

        assert len(ledger.submitted) == 3
        assert [r.error_kind for r in results] == [ErrorKind.CONFIRMATION_TIMEOUT] * 3
        assert [r.reference for r in results] == [transaction_signature(raw) for raw in ledger.submitted]
        assert "getSignatureStatuses" in results[0].error

    def test_balance_read_errors_are_captured(self, ledger, accounts, destination):
        def flaky_balance(address):
            if address == accounts[0].address:
                raise LedgerTransportError("getBalance: HTTP 503")
            return 1_000_000

        executor = BatchExecutor(ledger, balance_reader=flaky_balance)
        results = executor.execute(accounts, PercentOfBalance(10), destination)

        assert not results[0].success
        assert results[0].error_kind == ErrorKind.SUBMISSION_FAILED
        assert results[1].amount == 100_000

    def test_unexpected_exception_is_captured(self, ledger, accounts, destination):
        def broken_balance(address):
            raise RuntimeError("boom")

        results = BatchExecutor(ledger, balance_reader=broken_balance).execute(
            accounts, PercentOfBalance(10), destination
        )

        assert len(results) == 3
        assert all(r.error_kind == ErrorKind.SUBMISSION_FAILED for r in results)
        assert results[0].error == "boom"

    def test_invalid_destination_raises_before_submission(self, ledger, accounts):
        with pytest.raises(InvalidAddressError):
            BatchExecutor(ledger).execute(accounts, Flat(1000), "not-an-address")
        assert ledger.submitted == []
        assert ledger.anchors == []

    def test_per_account_destinations(self, ledger, accounts, make_keypair):
        funder = Account.from_keypair(make_keypair(50))
        recipients = [a.address for a in accounts]

        results = BatchExecutor(ledger).execute([funder] * 3, PerAccountShare([10, 20, 30]), recipients)

        assert [r.destination for r in results] == recipients
        assert [r.amount for r in results] == [10, 20, 30]

    def test_empty_batch(self, ledger, destination):
        assert BatchExecutor(ledger).execute([], Flat(1000), destination) == []

    def test_preview_carries_the_balance_it_read(self, ledger, accounts, destination):
        ledger.balances[accounts[0].address] = 1_000_000

        intent = BatchExecutor(ledger).preview(accounts[:1], PercentOfBalance(50), destination, F)[0]

        assert intent.amount == 500_000
        assert intent.source.last_known_balance == 1_000_000
        assert intent.source == accounts[0]
        assert accounts[0].last_known_balance is None
        assert ledger.submitted == []


class TestCancellation:

    def test_cancelled_before_start(self, ledger, accounts, destination):
        token = CancelToken()
        token.cancel()

        results = BatchExecutor(ledger).execute(accounts, Flat(1000), destination, cancel=token)

        assert [r.error_kind for r in results] == [ErrorKind.CANCELLED] * 3
        assert ledger.submitted == []

    def test_cancel_mid_batch_keeps_submitted_results(self, ledger, accounts, destination):
        token = CancelToken()
        ledger.on_submit = lambda source: token.cancel()

        results = BatchExecutor(ledger).execute(accounts, Flat(1000), destination, cancel=token)

        assert results[0].success
        assert results[1].error_kind == ErrorKind.CANCELLED
        assert results[2].error_kind == ErrorKind.CANCELLED
        assert len(ledger.submitted) == 1

    def test_deadline(self):
        assert CancelToken(timeout=0).cancelled
        assert not CancelToken(timeout=60).cancelled
        assert not CancelToken().cancelled


class TestConcurrency:

    def test_worker_pool_preserves_order(self, ledger, make_keypair, destination):
        accounts = [Account.from_keypair(make_keypair(i)) for i in range(8)]
        ledger.reject_sources.add(accounts[5].address)

        results = BatchExecutor(ledger, max_workers=4).execute(accounts, Flat(1000), destination)

        assert [r.source for r in results] == [a.address for a in accounts]
        assert [r.success for r in results] == [True] * 5 + [False] + [True] * 2

    def test_same_source_runs_in_order(self, ledger, accounts, make_keypair):
        funder = Account.from_keypair(make_keypair(50))
        recipients = [a.address for a in accounts]

        results = BatchExecutor(ledger, max_workers=4).execute(
            [funder] * 3, PerAccountShare([1, 2, 3]), recipients
        )

        assert [r.amount for r in results] == [1, 2, 3]
        assert [transfer_lamports(raw) for raw in ledger.submitted] == [1, 2, 3]


class TestMetrics:

    def test_metrics_recorded_per_operation(self, ledger, accounts, destination):
        metrics = MetricsCollector()
        ledger.reject_sources.add(accounts[0].address)

        BatchExecutor(ledger, metrics=metrics).execute(accounts, Flat(1000), destination)

        summary = metrics.get_summary()
        assert summary['total_operations'] == 3
        transfer = summary['operations']['transfer']
        assert transfer['success'] == 2
        assert transfer['failure'] == 1
        assert transfer['errors'] == {'SubmissionFailed': 1}


class TestSwapBuilder:

    def test_swaps_are_reanchored_and_signed(self, ledger, quotes, accounts):
        mint = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
        builder = SwapBuilder(quotes, SOL_MINT, mint, 300)

        results = BatchExecutor(ledger, builder=builder).execute(accounts, Flat(10_000), mint)

        assert all(r.success for r in results)
        assert [q.in_amount for q in quotes.quotes] == [10_000] * 3

        for raw, anchor, account in zip(ledger.submitted, ledger.anchors, accounts):
            tx = VersionedTransaction.from_bytes(raw)
            assert str(tx.message.recent_blockhash) == anchor.blockhash
            assert tx.signatures[0].verify(account.signer.pubkey(), to_bytes_versioned(tx.message))

    def test_quote_unavailable_is_per_account(self, ledger, quotes, accounts):
        mint = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
        quotes.unavailable_for.add(accounts[1].address)

        results = BatchExecutor(ledger, builder=SwapBuilder(quotes, SOL_MINT, mint, 300)).execute(
            accounts, Flat(10_000), mint
        )

        assert [r.success for r in results] == [True, False, True]
        assert results[1].error_kind == ErrorKind.QUOTE_UNAVAILABLE
