"""
Data model shared by the executor and the distribution service.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional

from solders.keypair import Keypair

from solswarm.errors import ErrorKind
from solswarm.wallet import keypair_address


@dataclass(frozen=True)
class Account:
    """
    A fleet account: its address and the signer borrowed from the key store.

    ``last_known_balance`` is only set on the copy the executor builds for a
    single operation, from the balance it just read. It is never reused
    across operations.
    """
    address: str
    signer: Keypair = field(repr=False, compare=False)
    last_known_balance: Optional[int] = field(default=None, compare=False)

    @classmethod
    def from_keypair(cls, keypair: Keypair) -> "Account":
        return cls(address=keypair_address(keypair), signer=keypair)

    def with_balance(self, balance: int) -> "Account":
        return replace(self, last_known_balance=balance)


@dataclass(frozen=True)
class Share:
    """One account's portion of a distributed total."""
    index: int
    fraction: float              # In (0, 1]
    resolved_amount: int         # Lamports (or token base units)


@dataclass(frozen=True)
class OperationIntent:
    """A resolved operation ready to be built and signed."""
    source: Account
    destination: str
    amount: int
    fee_reserve: int = 0


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one account's operation in a batch. Never mutated."""
    source: str
    destination: str
    amount: int
    success: bool
    reference: Optional[str] = None          # Transaction signature
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'destination': self.destination,
            'amount': self.amount,
            'success': self.success,
            'reference': self.reference,
            'error_kind': self.error_kind.value if self.error_kind else None,
            'error': self.error,
            'timestamp': self.timestamp,
        }
