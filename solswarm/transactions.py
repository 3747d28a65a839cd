"""
Transaction Encoding
====================

Builds and signs the two kinds of transaction the fleet submits:

- Legacy transactions carrying a single System Program transfer
- Versioned (legacy or v0) transactions returned by the swap API, signed
  after their recent blockhash is replaced with a freshly fetched anchor

Serialization, message compilation and Ed25519 signing are done by
``solders``.
"""

from typing import Optional, Union

from solders.errors import BincodeError, SignerError
from solders.hash import Hash, ParseHashError
from solders.keypair import Keypair
from solders.message import Message, MessageV0
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from solswarm.errors import SubmissionError
from solswarm.utils import decode_address
from solswarm.wallet import keypair_address

MAX_LAMPORTS = 2 ** 64


def _parse_blockhash(blockhash: str) -> Hash:
    try:
        return Hash.from_string(blockhash)
    except ParseHashError as e:
        raise ValueError(f"Invalid blockhash: {blockhash}") from e


def build_transfer_message(source: str, destination: str, lamports: int, recent_blockhash: str) -> Message:
    """
    Compile a legacy message holding one System Program transfer.

    The source is both fee payer and the only signer.

    Raises:
        ValueError: If the amount is out of range or an address or the
            blockhash does not parse
    """
    if lamports <= 0 or lamports >= MAX_LAMPORTS:
        raise ValueError(f"Transfer amount out of range: {lamports}")

    payer = decode_address(source)
    instruction = transfer(TransferParams(
        from_pubkey=payer,
        to_pubkey=decode_address(destination),
        lamports=lamports,
    ))
    return Message.new_with_blockhash([instruction], payer, _parse_blockhash(recent_blockhash))


def build_signed_transfer(signer: Keypair, destination: str, lamports: int, recent_blockhash: str) -> bytes:
    """Build and sign a transfer transaction, ready for submission."""
    message = build_transfer_message(keypair_address(signer), destination, lamports, recent_blockhash)
    return bytes(VersionedTransaction(message, [signer]))


def _with_blockhash(message: Union[Message, MessageV0], blockhash: Hash) -> Union[Message, MessageV0]:
    """Copy of ``message`` anchored on ``blockhash``; everything else is kept."""
    if isinstance(message, MessageV0):
        return MessageV0(
            message.header,
            message.account_keys,
            blockhash,
            message.instructions,
            message.address_table_lookups,
        )
    header = message.header
    return Message.new_with_compiled_instructions(
        header.num_required_signatures,
        header.num_readonly_signed_accounts,
        header.num_readonly_unsigned_accounts,
        message.account_keys,
        blockhash,
        message.instructions,
    )


def sign_serialized_transaction(raw: bytes, signer: Keypair, recent_blockhash: Optional[str] = None) -> bytes:
    """
    Sign an unsigned (legacy or v0) transaction produced by another party.

    Args:
        raw: Serialized transaction with empty signature slots
        signer: Keypair that must be the transaction's only required signer
        recent_blockhash: If given, replaces the message's blockhash before signing

    Raises:
        SubmissionError: If the transaction is malformed or its required
            signers are not exactly ``signer``
    """
    try:
        message = VersionedTransaction.from_bytes(raw).message
        if recent_blockhash is not None:
            message = _with_blockhash(message, _parse_blockhash(recent_blockhash))
    except (ValueError, BincodeError) as e:
        raise SubmissionError(f"Malformed swap transaction: {e}") from e

    required = message.header.num_required_signatures
    signers = list(message.account_keys[:required])
    if signer.pubkey() not in signers:
        raise SubmissionError(f"Transaction does not require a signature from {keypair_address(signer)}")
    if required != 1:
        raise SubmissionError(f"Transaction needs {required} signatures; only the payer's can be provided")

    try:
        return bytes(VersionedTransaction(message, [signer]))
    except SignerError as e:
        raise SubmissionError(f"Could not sign swap transaction: {e}") from e


def transaction_signature(raw: bytes) -> str:
    """Return the base58 fee-payer signature (the transaction id)."""
    signatures = VersionedTransaction.from_bytes(raw).signatures
    if not signatures:
        raise ValueError("Transaction has no signatures")
    return str(signatures[0])
