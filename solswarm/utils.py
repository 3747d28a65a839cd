"""
Utility Module

Logging, formatting, unit conversion and validation helpers shared by the
fleet modules.

- Secure logging that redacts secret keys and passwords
- Lamport/SOL conversion without float rounding
- Base58 address validation
"""

import os
import re
import logging
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Union

from solders.pubkey import Pubkey
from rich.logging import RichHandler
from rich.console import Console


# Global console for Rich output
console = Console()

LAMPORTS_PER_SOL = 10 ** 9


class SecureLogger:
    """
    Logger that sanitizes sensitive data from log messages.

    Secret keys are 64-byte blobs, so their base58 (86-88 chars) and base64
    (88 chars) renderings are long enough to tell apart from addresses
    (32 bytes, 32-44 chars) and signatures (64 bytes, but only ever logged
    through ``format_signature``).
    """

    SENSITIVE_PATTERNS = [
        (r'[A-Za-z0-9+/]{86}==', '[SECRET_KEY_REDACTED]'),              # base64, 64 bytes
        (r'\b[1-9A-HJ-NP-Za-km-z]{86,88}\b', '[SECRET_KEY_REDACTED]'),  # base58, 64 bytes
        (r'password["\']?\s*[:=]\s*["\']?[^"\'\s]+["\']?', 'password=[REDACTED]'),
        (r'secret[_-]?key["\']?\s*[:=]\s*["\']?[^"\'\s]+["\']?', 'secret_key=[REDACTED]'),
        (r'api[_-]?key["\']?\s*[:=]\s*["\']?[^"\'\s]+["\']?', 'api_key=[REDACTED]'),
    ]

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _sanitize(self, msg: str) -> str:
        """Remove sensitive data from log message."""
        if not isinstance(msg, str):
            msg = str(msg)

        sanitized = msg
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
        return sanitized

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, msg: str, *args, **kwargs):
        self._logger.debug(self._sanitize(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(self._sanitize(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(self._sanitize(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(self._sanitize(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        self._logger.exception(self._sanitize(msg), *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._logger.critical(self._sanitize(msg), *args, **kwargs)


LOGGER_NAME = "solswarm"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = "./solswarm.log") -> SecureLogger:
    """
    Setup logging with Rich console output and an optional log file.

    Returns a SecureLogger that sanitizes sensitive data.
    """
    base_logger = logging.getLogger(LOGGER_NAME)
    base_logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    base_logger.handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        rich_tracebacks=True
    )
    rich_handler.setLevel(getattr(logging, log_level.upper()))
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    base_logger.addHandler(rich_handler)

    if log_file:
        log_path = os.path.abspath(log_file)
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        base_logger.addHandler(file_handler)

    return SecureLogger(base_logger)


# Shared secure logger; handlers are attached by setup_logging()
logger = SecureLogger(logging.getLogger(LOGGER_NAME))


# Unit conversion

def sol_to_lamports(amount_sol: Union[str, int, float, Decimal]) -> int:
    """Convert a SOL amount to lamports, truncating sub-lamport dust."""
    value = Decimal(str(amount_sol)) * LAMPORTS_PER_SOL
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def lamports_to_sol(lamports: int) -> Decimal:
    """Convert lamports to an exact SOL Decimal."""
    return Decimal(lamports) / LAMPORTS_PER_SOL


# Formatting utilities

def format_sol(lamports: int) -> str:
    """Format a lamport amount as SOL with appropriate precision."""
    sol = lamports_to_sol(lamports)
    if sol == 0:
        return "0 SOL"
    if sol < Decimal("0.001"):
        return f"{sol:.9f} SOL"
    if sol < 1:
        return f"{sol:.6f} SOL"
    return f"{sol:,.4f} SOL"


def format_address(address: str, length: int = 4) -> str:
    """Shorten a base58 address with an ellipsis."""
    if len(address) <= length * 2 + 3:
        return address
    return f"{address[:length]}...{address[-length:]}"


def format_signature(signature: str, length: int = 8) -> str:
    """Shorten a transaction signature with an ellipsis."""
    if len(signature) <= length * 2:
        return signature
    return f"{signature[:length]}...{signature[-length:]}"


# Validation utilities

def decode_address(address: str) -> Pubkey:
    """
    Parse a base58 address into a public key.

    Raises:
        ValueError: If the string is not base58 or not 32 bytes long
    """
    if not address or not isinstance(address, str):
        raise ValueError("Address must be a non-empty string")
    return Pubkey.from_string(address.strip())


def validate_address(address: str) -> bool:
    """
    Validate a Solana address (base58-encoded 32-byte public key).

    Args:
        address: Address to validate

    Returns:
        True if the address parses as a public key
    """
    try:
        decode_address(address)
        return True
    except ValueError:
        return False


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """
    Sanitize error messages to remove sensitive data.

    Args:
        error: Original error message or exception

    Returns:
        Sanitized error message safe for display and storage
    """
    if not isinstance(error, str):
        error = str(error) or error.__class__.__name__

    patterns = [
        (r'[A-Za-z0-9+/]{86}==', '[SECRET_KEY]'),
        (r'\b[1-9A-HJ-NP-Za-km-z]{86,88}\b', '[SECRET_KEY]'),
        (r'https?://[^\s]+', '[URL]'),
        (r'password["\']?\s*[:=]\s*\S+', 'password=[REDACTED]'),
        (r'api[_-]?key["\']?\s*[:=]\s*\S+', 'api_key=[REDACTED]'),
    ]

    sanitized = error
    for pattern, replacement in patterns:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    return sanitized
