"""
Key Store - Fleet Keypair Storage
=================================

Append-only storage for the fleet's keypairs. The on-disk format is a JSON
list, one object per wallet::

    [{"publicKey": "<base58>", "secretKey": "<base64|base58>", "encoding": "base64"}]

``encoding`` is optional on read: entries without it are decoded by trying
each known encoding in turn. When the store is opened with a password, new
secrets are written Fernet-encrypted (``"encoding": "fernet"`` plus a salt)
and are decrypted on read.
"""

import os
import json
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from solders.keypair import Keypair

from solswarm.errors import InvalidKeyEncodingError
from solswarm.models import Account
from solswarm.security import (
    KDF_ITERATIONS,
    DecryptionError,
    decrypt_secret,
    encrypt_secret,
    validate_password,
)
from solswarm.utils import logger, format_address
from solswarm.wallet import (
    ENCODING_BASE64,
    decode_secret_key,
    encode_secret_key,
    keypair_address,
    keypair_from_bytes,
)

ENCODING_FERNET = "fernet"


@dataclass
class WalletEntry:
    """A stored wallet: its address and encoded secret."""
    public_key: str
    secret_key: str
    encoding: Optional[str] = None
    salt: Optional[str] = None          # Only for fernet-encrypted entries

    def to_dict(self) -> Dict[str, Any]:
        data = {"publicKey": self.public_key, "secretKey": self.secret_key}
        if self.encoding:
            data["encoding"] = self.encoding
        if self.salt:
            data["salt"] = self.salt
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletEntry":
        return cls(
            public_key=data["publicKey"],
            secret_key=data["secretKey"],
            encoding=data.get("encoding"),
            salt=data.get("salt"),
        )

    @classmethod
    def from_keypair(cls, keypair: Keypair, encoding: str = ENCODING_BASE64) -> "WalletEntry":
        return cls(
            public_key=keypair_address(keypair),
            secret_key=encode_secret_key(bytes(keypair), encoding),
            encoding=encoding,
        )


class KeyStore(ABC):
    """
    Ordered, append-only collection of fleet keypairs.

    Signing capabilities are handed out per call through ``accounts()`` and
    are never cached by the store's callers.
    """

    def __init__(self, password: Optional[str] = None, kdf_iterations: int = KDF_ITERATIONS):
        if password is not None:
            validate_password(password)
        self._password = password
        self._kdf_iterations = kdf_iterations

    @abstractmethod
    def list(self) -> List[WalletEntry]:
        """Return all stored entries in insertion order."""

    @abstractmethod
    def _write(self, entries: List[WalletEntry]):
        """Persist the full entry list."""

    def append(self, entries: Iterable[WalletEntry]) -> List[WalletEntry]:
        """
        Append new entries and persist.

        Returns:
            The full entry list after appending
        """
        new_entries = [self._seal(e) for e in entries]
        merged = self.list() + new_entries
        self._write(merged)
        logger.info(f"Key store now holds {len(merged)} wallets ({len(new_entries)} added)")
        return merged

    def _seal(self, entry: WalletEntry) -> WalletEntry:
        """Encrypt a plaintext entry when the store has a password."""
        if self._password is None or entry.encoding == ENCODING_FERNET:
            return entry
        # Store the canonical base64 form so decryption needs no sniffing
        raw = decode_secret_key(entry.secret_key, entry.encoding)
        ciphertext, salt = encrypt_secret(
            encode_secret_key(raw, ENCODING_BASE64), self._password, self._kdf_iterations
        )
        return WalletEntry(
            public_key=entry.public_key,
            secret_key=ciphertext,
            encoding=ENCODING_FERNET,
            salt=salt,
        )

    def keypair(self, entry: WalletEntry) -> Keypair:
        """
        Decode an entry into its keypair and verify it matches the stored address.

        Raises:
            InvalidKeyEncodingError: If the secret cannot be decoded or decrypted,
                or belongs to a different address
        """
        secret, encoding = entry.secret_key, entry.encoding
        if encoding == ENCODING_FERNET:
            if self._password is None:
                raise InvalidKeyEncodingError(
                    f"Wallet {format_address(entry.public_key)} is encrypted; a password is required"
                )
            try:
                secret = decrypt_secret(secret, entry.salt or "", self._password, self._kdf_iterations)
            except DecryptionError as e:
                raise InvalidKeyEncodingError(
                    f"Could not decrypt wallet {format_address(entry.public_key)}"
                ) from e
            encoding = ENCODING_BASE64

        keypair = keypair_from_bytes(decode_secret_key(secret, encoding))

        if keypair_address(keypair) != entry.public_key:
            raise InvalidKeyEncodingError(
                f"Decoded key does not match stored address {format_address(entry.public_key)}"
            )
        return keypair

    def accounts(self) -> List[Account]:
        """Decode every entry into an Account, in storage order."""
        return [Account.from_keypair(self.keypair(entry)) for entry in self.list()]

    def __len__(self) -> int:
        return len(self.list())


class MemoryKeyStore(KeyStore):
    """In-memory key store (tests and one-shot scripts)."""

    def __init__(self, entries: Optional[Iterable[WalletEntry]] = None, **kwargs):
        super().__init__(**kwargs)
        self._entries: List[WalletEntry] = list(entries or [])

    def list(self) -> List[WalletEntry]:
        return list(self._entries)

    def _write(self, entries: List[WalletEntry]):
        self._entries = list(entries)


class FileKeyStore(KeyStore):
    """JSON-file key store with owner-only permissions."""

    def __init__(self, path: str = "./wallets.json", **kwargs):
        super().__init__(**kwargs)
        self.path = Path(path)

    def list(self) -> List[WalletEntry]:
        if not self.path.exists():
            return []

        with open(self.path, 'r') as f:
            data = json.load(f)

        if not isinstance(data, list):
            raise ValueError(f"Wallet store {self.path} must contain a JSON list")
        return [WalletEntry.from_dict(item) for item in data]

    def _write(self, entries: List[WalletEntry]):
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a sibling temp file and swap it in so a crash never
        # leaves a truncated wallet file behind
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".wallets-", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump([e.to_dict() for e in entries], f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise
