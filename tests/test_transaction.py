"""
Tests for shieldflow_core.transaction — wire format.

Covers:
  - description sizes and field length checks
  - serialize / deserialize of a built transaction
  - MalformedEncoding for truncated, padded or wrong-version bytes
  - tx_id and sighash stability
"""

from __future__ import annotations

import struct

import pytest

from shieldflow_core.errors import MalformedEncoding
from shieldflow_core.proofs import PROOF_DATA_LEN, Proof, ProofKind
from shieldflow_core.transaction import (
    COIN,
    MAX_MONEY,
    OUTPUT_LEN,
    SPEND_LEN,
    OutputDescription,
    ShieldedTransaction,
    SpendDescription,
)

STUB_PROOF = Proof(ProofKind.STUB, b"\x00" * PROOF_DATA_LEN)


@pytest.fixture
def tx(funded_wallet, gateway, bob_address):
    builder = funded_wallet.builder(gateway)
    return builder.build(funded_wallet.notes, [(bob_address, 3 * COIN, b"rent")], fee=1000)


class TestConstants:

    def test_units(self):
        assert COIN == 100_000_000
        assert MAX_MONEY == 21_000_000 * COIN

    def test_description_sizes(self):
        assert SPEND_LEN == 33 + 32 + 32 + 33 + 193 + 65
        assert OUTPUT_LEN == 33 + 32 + 33 + 612 + 81 + 193


class TestDescriptions:

    def test_spend_field_lengths(self):
        with pytest.raises(MalformedEncoding):
            SpendDescription(cv=b"\x02" * 32, anchor=b"\x00" * 32, nullifier=b"\x00" * 32,
                             rk=b"\x02" * 33, proof=STUB_PROOF)
        with pytest.raises(MalformedEncoding):
            SpendDescription(cv=b"\x02" * 33, anchor=b"\x00" * 32, nullifier=b"\x00" * 31,
                             rk=b"\x02" * 33, proof=STUB_PROOF)

    def test_spend_requires_proof_object(self):
        with pytest.raises(MalformedEncoding):
            SpendDescription(cv=b"\x02" * 33, anchor=b"\x00" * 32, nullifier=b"\x00" * 32,
                             rk=b"\x02" * 33, proof=b"\x00" * 193)

    def test_output_field_lengths(self):
        with pytest.raises(MalformedEncoding):
            OutputDescription(cv=b"\x02" * 33, cmu=b"\x00" * 32, ephemeral_key=b"\x02" * 33,
                              enc_ciphertext=b"\x00" * 611, out_ciphertext=b"\x00" * 81,
                              proof=STUB_PROOF)

    def test_spend_bytes(self, tx):
        spend = tx.spends[0]
        raw = spend.to_bytes()
        assert len(raw) == SPEND_LEN
        assert SpendDescription.from_bytes(raw) == spend

    def test_output_bytes(self, tx):
        out = tx.outputs[0]
        raw = out.to_bytes()
        assert len(raw) == OUTPUT_LEN
        assert OutputDescription.from_bytes(raw) == out

    def test_body_excludes_signature(self, tx):
        spend = tx.spends[0]
        assert spend.to_bytes() == spend.body_bytes() + spend.spend_auth_sig


class TestSerialization:

    def test_roundtrip(self, tx):
        raw = tx.serialize()
        assert len(raw) == 17 + SPEND_LEN + 2 * OUTPUT_LEN + 65
        back = ShieldedTransaction.deserialize(raw)
        assert back == tx
        assert back.tx_id == tx.tx_id
        assert back.sighash() == tx.sighash()

    def test_header(self, tx):
        version, vb, n_spends, n_outputs = struct.unpack_from("<BqII", tx.serialize())
        assert version == 1
        assert vb == 1000 == tx.value_balance
        assert (n_spends, n_outputs) == (1, 2)

    def test_truncated(self, tx):
        with pytest.raises(MalformedEncoding):
            ShieldedTransaction.deserialize(tx.serialize()[:-1])

    def test_trailing_bytes(self, tx):
        with pytest.raises(MalformedEncoding):
            ShieldedTransaction.deserialize(tx.serialize() + b"\x00")

    def test_too_short(self):
        with pytest.raises(MalformedEncoding):
            ShieldedTransaction.deserialize(b"\x01\x00")

    def test_wrong_version(self, tx):
        raw = bytearray(tx.serialize())
        raw[0] = 2
        with pytest.raises(MalformedEncoding):
            ShieldedTransaction.deserialize(bytes(raw))

    def test_bad_proof_kind_in_body(self, tx):
        raw = bytearray(tx.serialize())
        # proof kind byte of the first spend
        raw[17 + 33 + 32 + 32 + 33] = 0x7f
        with pytest.raises(MalformedEncoding):
            ShieldedTransaction.deserialize(bytes(raw))

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            ShieldedTransaction.deserialize(b"")


class TestIdentity:

    def test_tx_id_is_hex_hash(self, tx):
        assert len(tx.tx_id) == 64
        int(tx.tx_id, 16)

    def test_tx_id_changes_with_signature(self, tx):
        other = ShieldedTransaction(tx.spends, tx.outputs, tx.value_balance, b"\x01" * 65)
        assert other.tx_id != tx.tx_id
        # the sighash does not cover the binding signature
        assert other.sighash() == tx.sighash()

    def test_sighash_covers_value_balance(self, tx):
        other = ShieldedTransaction(tx.spends, tx.outputs, tx.value_balance + 1, tx.binding_sig)
        assert other.sighash() != tx.sighash()

    def test_to_dict(self, tx):
        d = tx.to_dict()
        assert d["tx_id"] == tx.tx_id
        assert d["spends"] == 1 and d["outputs"] == 2
        assert d["nullifiers"] == [nf.hex() for nf in tx.nullifiers]
        assert len(d["commitments"]) == 2

    def test_empty_transaction(self):
        tx = ShieldedTransaction()
        assert tx.nullifiers == [] and tx.commitments == []
        assert ShieldedTransaction.deserialize(tx.serialize()) == tx
