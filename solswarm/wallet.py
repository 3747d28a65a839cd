"""
Wallet Module - Solana Keypairs
===============================
Signing capability for fleet accounts.

Keypairs are ``solders`` Ed25519 keypairs. A "secret key" in the Solana
sense is the 64-byte concatenation of the 32-byte seed and the 32-byte
public key (``bytes(keypair)``). Fleet stores keep it base64-encoded, while
wallet exports commonly use base58. Both are accepted here, as are BIP39
recovery phrases derived on the standard Solana path.
"""

import base64
import binascii
from typing import Callable, List, Optional, Tuple

import base58
from bip_utils import Bip39MnemonicValidator, Bip39SeedGenerator, Bip44, Bip44Changes, Bip44Coins
from solders.keypair import Keypair

from solswarm.errors import InvalidKeyEncodingError

SEED_LENGTH = 32
SECRET_KEY_LENGTH = 64

ENCODING_BASE64 = "base64"
ENCODING_BASE58 = "base58"


def keypair_address(keypair: Keypair) -> str:
    """Base58 address of a keypair."""
    return str(keypair.pubkey())


def keypair_from_bytes(raw: bytes) -> Keypair:
    """
    Build a keypair from a 32-byte seed or a 64-byte secret key.

    Raises:
        InvalidKeyEncodingError: On any other length, or if a secret key's
            public half does not match the one derived from its seed
    """
    raw = bytes(raw)
    if len(raw) == SEED_LENGTH:
        return Keypair.from_seed(raw)
    if len(raw) != SECRET_KEY_LENGTH:
        raise InvalidKeyEncodingError(
            f"Key must be {SEED_LENGTH} or {SECRET_KEY_LENGTH} bytes, got {len(raw)}"
        )

    keypair = Keypair.from_seed(raw[:SEED_LENGTH])
    if bytes(keypair.pubkey()) != raw[SEED_LENGTH:]:
        raise InvalidKeyEncodingError("Secret key public half does not match its seed")
    return keypair


def keypair_from_mnemonic(phrase: str, index: int = 0) -> Keypair:
    """
    Derive a keypair from a BIP39 recovery phrase.

    Uses the path wallets such as Phantom and Trust Wallet use:
    m/44'/501'/index'/0'

    Raises:
        InvalidKeyEncodingError: If the phrase is not a valid BIP39 mnemonic
            or the index is negative
    """
    if not phrase or not isinstance(phrase, str):
        raise InvalidKeyEncodingError("Recovery phrase is empty or not a string")
    if index < 0:
        raise InvalidKeyEncodingError(f"Derivation index must be >= 0, got {index}")

    phrase = " ".join(phrase.split())
    if not Bip39MnemonicValidator().IsValid(phrase):
        raise InvalidKeyEncodingError("Recovery phrase is not a valid BIP39 mnemonic")

    seed = Bip39SeedGenerator(phrase).Generate()
    bip44 = Bip44.FromSeed(seed, Bip44Coins.SOLANA)
    account = bip44.Purpose().Coin().Account(index).Change(Bip44Changes.CHAIN_EXT)
    private_key = account.PrivateKey().Raw().ToBytes()
    return Keypair.from_seed(private_key[:SEED_LENGTH])


def _decode_base64(secret: str) -> bytes:
    return base64.b64decode(secret, validate=True)


def _decode_base58(secret: str) -> bytes:
    return base58.b58decode(secret)


# Tried in order when an entry carries no explicit encoding. A base64 secret
# always contains padding or symbols outside the base58 alphabet, and a
# base58 secret never decodes to 32/64 bytes as base64, so the first decoder
# yielding a valid key length wins unambiguously.
KEY_DECODERS: List[Tuple[str, Callable[[str], bytes]]] = [
    (ENCODING_BASE64, _decode_base64),
    (ENCODING_BASE58, _decode_base58),
]


def decode_secret_key(secret: str, encoding: Optional[str] = None) -> bytes:
    """
    Decode a stored secret into raw key bytes (32 or 64 bytes).

    Args:
        secret: Encoded secret key
        encoding: Explicit encoding tag; when omitted each decoder is tried

    Raises:
        InvalidKeyEncodingError: If no decoder yields a valid key
    """
    if not secret or not isinstance(secret, str):
        raise InvalidKeyEncodingError("Secret key is empty or not a string")

    secret = secret.strip()
    decoders = KEY_DECODERS
    if encoding is not None:
        decoders = [(name, fn) for name, fn in KEY_DECODERS if name == encoding]
        if not decoders:
            raise InvalidKeyEncodingError(f"Unknown key encoding: {encoding}")

    for _, decoder in decoders:
        try:
            raw = decoder(secret)
        except (ValueError, binascii.Error):
            continue
        if len(raw) in (SEED_LENGTH, SECRET_KEY_LENGTH):
            return raw

    raise InvalidKeyEncodingError("Secret key is neither valid base64 nor base58")


def encode_secret_key(secret_key: bytes, encoding: str = ENCODING_BASE64) -> str:
    """Encode raw secret key bytes for storage."""
    if encoding == ENCODING_BASE64:
        return base64.b64encode(secret_key).decode()
    if encoding == ENCODING_BASE58:
        return base58.b58encode(secret_key).decode()
    raise InvalidKeyEncodingError(f"Unknown key encoding: {encoding}")


def load_keypair(secret: str, encoding: Optional[str] = None) -> Keypair:
    """Build a keypair from an encoded secret (base64 or base58)."""
    return keypair_from_bytes(decode_secret_key(secret, encoding))
