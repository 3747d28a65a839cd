"""
Shared fixtures: an in-memory ledger and swap API standing in for the
network collaborators.
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

sys.path.insert(0, str(Path(__file__).parent.parent))

from solswarm.errors import AnchorExpiredError, QuoteUnavailableError, SubmissionError
from solswarm.ledger import AccountState, Anchor, Finalization, FinalizationStatus, LedgerClient
from solswarm.models import Account
from solswarm.swap import Quote, QuoteProvider
from solswarm.transactions import transaction_signature


def keypair_for(index: int) -> Keypair:
    """Deterministic keypair for test wallet ``index``."""
    return Keypair.from_seed(bytes([index + 1]) * 32)


def blockhash_for(index: int) -> str:
    return str(Hash(bytes([(index % 250) + 1]) * 32))


class FakeLedger(LedgerClient):
    """
    Ledger double.

    Records every submitted transaction and lets tests choose which sources
    are rejected at submission and how finalization ends per source.
    """

    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.token_balances: Dict[Tuple[str, str], int] = {}
        self.account_states: Dict[str, AccountState] = {}
        self.reject_sources: Set[str] = set()
        self.stale_sources: Set[str] = set()
        self.finalization: Dict[str, Finalization] = {}
        self.submitted: List[bytes] = []
        self.anchors: List[Anchor] = []
        self.on_submit = None

    def get_balance(self, address: str, commitment: Optional[str] = None) -> int:
        return self.balances.get(address, 0)

    def get_account_state(self, address: str, commitment: Optional[str] = None) -> Optional[AccountState]:
        return self.account_states.get(address)

    def get_token_balance(self, owner: str, mint: str) -> int:
        return self.token_balances.get((owner, mint), 0)

    def get_recent_anchor(self) -> Anchor:
        anchor = Anchor(blockhash=blockhash_for(len(self.anchors)), last_valid_block_height=1000 + len(self.anchors))
        self.anchors.append(anchor)
        return anchor

    @staticmethod
    def fee_payer(raw: bytes) -> str:
        return str(VersionedTransaction.from_bytes(raw).message.account_keys[0])

    def submit(self, raw_transaction: bytes) -> str:
        source = self.fee_payer(raw_transaction)
        if source in self.stale_sources:
            raise AnchorExpiredError("Transaction simulation failed: Blockhash not found")
        if source in self.reject_sources:
            raise SubmissionError("Transaction simulation failed: insufficient funds for rent")
        self.submitted.append(raw_transaction)
        if self.on_submit is not None:
            self.on_submit(source)
        return transaction_signature(raw_transaction)

    def await_finalization(self, signature: str, anchor: Anchor,
                           timeout: Optional[float] = None) -> Finalization:
        raw = next(r for r in self.submitted if transaction_signature(r) == signature)
        return self.finalization.get(self.fee_payer(raw), Finalization(FinalizationStatus.FINALIZED))


# Fixed counterparty in fake swap transactions
SWAP_POOL = str(Pubkey(b"\x77" * 32))


class FakeQuoteProvider(QuoteProvider):
    """Swap API double returning 1:2 quotes and unsigned v0 transactions."""

    def __init__(self):
        self.quotes: List[Quote] = []
        self.unavailable_for: Set[str] = set()

    def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Quote:
        quote = Quote(input_mint, output_mint, amount, amount * 2, slippage_bps, raw={"inAmount": str(amount)})
        self.quotes.append(quote)
        return quote

    def build_swap_transaction(self, quote: Quote, payer: str) -> bytes:
        if payer in self.unavailable_for:
            raise QuoteUnavailableError("No route found")
        payer_key = Pubkey.from_string(payer)
        instruction = transfer(TransferParams(
            from_pubkey=payer_key, to_pubkey=Pubkey.from_string(SWAP_POOL), lamports=quote.in_amount
        ))
        message = MessageV0.try_compile(payer_key, [instruction], [], Hash.from_string(blockhash_for(249)))
        return bytes(VersionedTransaction.populate(message, [Signature.default()]))


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def quotes():
    return FakeQuoteProvider()


@pytest.fixture
def accounts():
    """Three deterministic fleet accounts."""
    return [Account.from_keypair(keypair_for(i)) for i in range(3)]


@pytest.fixture
def destination():
    return str(keypair_for(99).pubkey())


@pytest.fixture
def make_keypair():
    return keypair_for


@pytest.fixture
def make_blockhash():
    return blockhash_for
