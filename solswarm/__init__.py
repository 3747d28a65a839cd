"""
Solana Swarm Fleet
==================
Batch transfers, sweeps and swaps across a custodial fleet of Solana wallets.

Features:
- Create and store fleet wallets (optionally password-encrypted)
- Fund the fleet flat or with generated share distributions
- Sweep a percentage of every wallet to one destination
- Buy and sell a token from every wallet through Jupiter

Every batch returns one result per wallet, in order; a failing wallet never
stops the others.
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .config import Config, ConfigManager
from .distribution import DistributionMode, DistributionService, DistributionSummary
from .errors import ErrorKind, FleetError
from .executor import BatchExecutor, CancelToken, Flat, PerAccountShare, PercentOfBalance
from .keystore import FileKeyStore, MemoryKeyStore
from .ledger import RpcLedgerClient
from .models import Account, OperationResult
from .partition import PartitionGenerator
from .swap import JupiterQuoteProvider
from .wallet import keypair_from_mnemonic, load_keypair

__all__ = [
    "Config",
    "ConfigManager",
    "DistributionMode",
    "DistributionService",
    "DistributionSummary",
    "ErrorKind",
    "FleetError",
    "BatchExecutor",
    "CancelToken",
    "Flat",
    "PerAccountShare",
    "PercentOfBalance",
    "FileKeyStore",
    "MemoryKeyStore",
    "RpcLedgerClient",
    "Account",
    "OperationResult",
    "PartitionGenerator",
    "JupiterQuoteProvider",
    "keypair_from_mnemonic",
    "load_keypair",
]
