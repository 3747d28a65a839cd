"""
Tests for transfer construction and swap transaction signing.
"""

import sys
from pathlib import Path

import pytest
from solders.hash import Hash
from solders.message import Message, MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

sys.path.insert(0, str(Path(__file__).parent.parent))

from solswarm.errors import SubmissionError
from solswarm.transactions import (
    build_signed_transfer,
    build_transfer_message,
    sign_serialized_transaction,
    transaction_signature,
)


def address(keypair) -> str:
    return str(keypair.pubkey())


class TestTransfer:

    def test_message_layout(self, make_keypair, make_blockhash):
        source, destination = address(make_keypair(0)), address(make_keypair(1))
        blockhash = make_blockhash(3)

        message = build_transfer_message(source, destination, 1_000_000, blockhash)

        assert message.header.num_required_signatures == 1
        assert [str(k) for k in message.account_keys] == [source, destination, str(SYSTEM_PROGRAM_ID)]
        assert str(message.recent_blockhash) == blockhash

        data = bytes(message.instructions[0].data)
        assert int.from_bytes(data[:4], "little") == 2
        assert int.from_bytes(data[4:], "little") == 1_000_000

    def test_transfer_to_self_dedupes_keys(self, make_keypair, make_blockhash):
        source = address(make_keypair(0))
        message = build_transfer_message(source, source, 1, make_blockhash(0))
        assert len(message.account_keys) == 2

    @pytest.mark.parametrize("lamports", [0, -1, 2 ** 64])
    def test_amount_out_of_range(self, make_keypair, make_blockhash, lamports):
        with pytest.raises(ValueError):
            build_transfer_message(address(make_keypair(0)), address(make_keypair(1)), lamports, make_blockhash(0))

    def test_bad_destination(self, make_keypair, make_blockhash):
        with pytest.raises(ValueError):
            build_transfer_message(address(make_keypair(0)), "0OIl", 1, make_blockhash(0))

    def test_signed_transfer_verifies(self, make_keypair, make_blockhash):
        signer = make_keypair(0)
        raw = build_signed_transfer(signer, address(make_keypair(1)), 42, make_blockhash(0))

        tx = VersionedTransaction.from_bytes(raw)

        assert len(tx.signatures) == 1
        assert tx.signatures[0].verify(signer.pubkey(), to_bytes_versioned(tx.message))
        assert transaction_signature(raw) == str(tx.signatures[0])


def unsigned(payer: str, other: str, blockhash: str, legacy: bool = False) -> bytes:
    """Unsigned transfer transaction as a swap API would return it."""
    instruction = transfer(TransferParams(
        from_pubkey=Pubkey.from_string(payer), to_pubkey=Pubkey.from_string(other), lamports=5
    ))
    if legacy:
        message = Message.new_with_blockhash([instruction], Pubkey.from_string(payer), Hash.from_string(blockhash))
    else:
        message = MessageV0.try_compile(Pubkey.from_string(payer), [instruction], [], Hash.from_string(blockhash))
    return bytes(VersionedTransaction.populate(message, [Signature.default()]))


class TestSignSerialized:

    @pytest.mark.parametrize("legacy", [False, True])
    def test_signs_and_reanchors(self, make_keypair, make_blockhash, legacy):
        signer = make_keypair(0)
        raw = unsigned(address(signer), address(make_keypair(1)), make_blockhash(1), legacy=legacy)

        tx = VersionedTransaction.from_bytes(sign_serialized_transaction(raw, signer, make_blockhash(2)))

        assert isinstance(tx.message, Message if legacy else MessageV0)
        assert str(tx.message.recent_blockhash) == make_blockhash(2)
        assert tx.message.account_keys == VersionedTransaction.from_bytes(raw).message.account_keys
        assert tx.signatures[0].verify(signer.pubkey(), to_bytes_versioned(tx.message))

    def test_keeps_blockhash_when_not_given(self, make_keypair, make_blockhash):
        signer = make_keypair(0)
        raw = unsigned(address(signer), address(make_keypair(1)), make_blockhash(1))

        signed = VersionedTransaction.from_bytes(sign_serialized_transaction(raw, signer))

        assert str(signed.message.recent_blockhash) == make_blockhash(1)

    def test_signer_must_be_required(self, make_keypair, make_blockhash):
        raw = unsigned(address(make_keypair(0)), address(make_keypair(1)), make_blockhash(1))
        with pytest.raises(SubmissionError):
            sign_serialized_transaction(raw, make_keypair(2))

    def test_malformed(self, make_keypair):
        with pytest.raises(SubmissionError):
            sign_serialized_transaction(b"\x01" + bytes(64) + b"\x80\x01", make_keypair(0))

    def test_bad_blockhash(self, make_keypair, make_blockhash):
        signer = make_keypair(0)
        raw = unsigned(address(signer), address(make_keypair(1)), make_blockhash(1))
        with pytest.raises(SubmissionError):
            sign_serialized_transaction(raw, signer, "not-a-blockhash")
