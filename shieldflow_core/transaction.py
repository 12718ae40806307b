"""
Shielded transaction structures and their byte layout.

A ShieldedTransaction carries an ordered list of SpendDescriptions, an
ordered list of OutputDescriptions, the net ``value_balance`` leaving the
pool (fee plus any unshielded value, minus any shielded value; negative
when a transaction moves transparent value into the pool) and a binding
signature.  Every field is fixed-width and
length-checked, so a deserialised transaction is structurally sound
before any cryptographic check runs.

Wire layout (version 1)::

    version(1) ‖ value_balance(8, LE signed) ‖ n_spends(4) ‖ n_outputs(4)
    ‖ spends ‖ outputs ‖ binding_sig(65)

    spend  = cv(33) ‖ anchor(32) ‖ nullifier(32) ‖ rk(33) ‖ proof(193) ‖ spend_auth_sig(65)
    output = cv(33) ‖ cmu(32) ‖ epk(33) ‖ enc(612) ‖ out(81) ‖ proof(193)
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from shieldflow_core.crypto_utils import blake2b
from shieldflow_core.curve import POINT_LEN
from shieldflow_core.errors import MalformedEncoding
from shieldflow_core.note_encryption import ENC_CIPHERTEXT_LEN, OUT_CIPHERTEXT_LEN
from shieldflow_core.proofs import (
    PROOF_LEN,
    Proof,
    output_public_inputs,
    spend_public_inputs,
)
from shieldflow_core.signatures import SIGNATURE_LEN

# ── units ───────────────────────────────────────────────────────

COIN = 100_000_000
MAX_MONEY = 21_000_000 * COIN

# ── result codes ────────────────────────────────────────────────

TES_SUCCESS = 0
TEC_MALFORMED = 101
TEC_BAD_VALUE_BALANCE = 102
TEC_UNKNOWN_ANCHOR = 103
TEC_DUPLICATE_NULLIFIER = 104
TEC_NULLIFIER_SPENT = 105
TEC_BAD_PROOF = 106
TEC_BAD_SPEND_AUTH = 107
TEC_BAD_BINDING = 108

TX_VERSION = 1
HASH_LEN = 32

SPEND_LEN = POINT_LEN + HASH_LEN + HASH_LEN + POINT_LEN + PROOF_LEN + SIGNATURE_LEN
OUTPUT_LEN = (POINT_LEN + HASH_LEN + POINT_LEN + ENC_CIPHERTEXT_LEN
              + OUT_CIPHERTEXT_LEN + PROOF_LEN)

_HEADER = struct.Struct("<BqII")
_SIGHASH_PERSON = b"ShieldFlowSigHsh"
_TXID_PERSON = b"ShieldFlow_TxId"


def _check_len(name: str, value: bytes, expected: int) -> None:
    if not isinstance(value, (bytes, bytearray)) or len(value) != expected:
        got = len(value) if isinstance(value, (bytes, bytearray)) else type(value).__name__
        raise MalformedEncoding(f"{name} must be {expected} bytes, got {got}")


# ===================================================================
#  Descriptions
# ===================================================================

@dataclass(frozen=True)
class SpendDescription:
    cv: bytes
    anchor: bytes
    nullifier: bytes
    rk: bytes
    proof: Proof
    spend_auth_sig: bytes = b"\x00" * SIGNATURE_LEN

    def __post_init__(self):
        _check_len("cv", self.cv, POINT_LEN)
        _check_len("anchor", self.anchor, HASH_LEN)
        _check_len("nullifier", self.nullifier, HASH_LEN)
        _check_len("rk", self.rk, POINT_LEN)
        _check_len("spend_auth_sig", self.spend_auth_sig, SIGNATURE_LEN)
        if not isinstance(self.proof, Proof):
            raise MalformedEncoding("Spend proof must be a Proof")

    def public_inputs(self) -> dict:
        return spend_public_inputs(self.cv, self.anchor, self.nullifier, self.rk)

    def body_bytes(self) -> bytes:
        """Everything except the spend-authorisation signature."""
        return self.cv + self.anchor + self.nullifier + self.rk + self.proof.to_bytes()

    def to_bytes(self) -> bytes:
        return self.body_bytes() + self.spend_auth_sig

    @classmethod
    def from_bytes(cls, data: bytes) -> SpendDescription:
        _check_len("Spend description", data, SPEND_LEN)
        o = 0

        def take(n: int) -> bytes:
            nonlocal o
            chunk = data[o:o + n]
            o += n
            return chunk

        return cls(
            cv=take(POINT_LEN), anchor=take(HASH_LEN), nullifier=take(HASH_LEN),
            rk=take(POINT_LEN), proof=Proof.from_bytes(take(PROOF_LEN)),
            spend_auth_sig=take(SIGNATURE_LEN),
        )


@dataclass(frozen=True)
class OutputDescription:
    cv: bytes
    cmu: bytes
    ephemeral_key: bytes
    enc_ciphertext: bytes
    out_ciphertext: bytes
    proof: Proof

    def __post_init__(self):
        _check_len("cv", self.cv, POINT_LEN)
        _check_len("cmu", self.cmu, HASH_LEN)
        _check_len("ephemeral_key", self.ephemeral_key, POINT_LEN)
        _check_len("enc_ciphertext", self.enc_ciphertext, ENC_CIPHERTEXT_LEN)
        _check_len("out_ciphertext", self.out_ciphertext, OUT_CIPHERTEXT_LEN)
        if not isinstance(self.proof, Proof):
            raise MalformedEncoding("Output proof must be a Proof")

    def public_inputs(self) -> dict:
        return output_public_inputs(self.cv, self.cmu, self.ephemeral_key)

    def to_bytes(self) -> bytes:
        return (self.cv + self.cmu + self.ephemeral_key + self.enc_ciphertext
                + self.out_ciphertext + self.proof.to_bytes())

    @classmethod
    def from_bytes(cls, data: bytes) -> OutputDescription:
        _check_len("Output description", data, OUTPUT_LEN)
        o = 0

        def take(n: int) -> bytes:
            nonlocal o
            chunk = data[o:o + n]
            o += n
            return chunk

        return cls(
            cv=take(POINT_LEN), cmu=take(HASH_LEN), ephemeral_key=take(POINT_LEN),
            enc_ciphertext=take(ENC_CIPHERTEXT_LEN), out_ciphertext=take(OUT_CIPHERTEXT_LEN),
            proof=Proof.from_bytes(take(PROOF_LEN)),
        )


# ===================================================================
#  Transaction
# ===================================================================

def compute_sighash(spends, outputs, value_balance: int) -> bytes:
    """Digest signed by every spend-auth signature and by the binding signature."""
    body = _HEADER.pack(TX_VERSION, value_balance, len(spends), len(outputs))
    body += b"".join(s.body_bytes() for s in spends)
    body += b"".join(o.to_bytes() for o in outputs)
    return blake2b(body, _SIGHASH_PERSON, 32)


@dataclass(frozen=True)
class ShieldedTransaction:
    spends: tuple[SpendDescription, ...] = field(default_factory=tuple)
    outputs: tuple[OutputDescription, ...] = field(default_factory=tuple)
    value_balance: int = 0
    binding_sig: bytes = b"\x00" * SIGNATURE_LEN

    def __post_init__(self):
        object.__setattr__(self, "spends", tuple(self.spends))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        _check_len("binding_sig", self.binding_sig, SIGNATURE_LEN)

    @property
    def nullifiers(self) -> list[bytes]:
        return [s.nullifier for s in self.spends]

    @property
    def commitments(self) -> list[bytes]:
        return [o.cmu for o in self.outputs]

    def sighash(self) -> bytes:
        return compute_sighash(self.spends, self.outputs, self.value_balance)

    def serialize(self) -> bytes:
        return (
            _HEADER.pack(TX_VERSION, self.value_balance, len(self.spends), len(self.outputs))
            + b"".join(s.to_bytes() for s in self.spends)
            + b"".join(o.to_bytes() for o in self.outputs)
            + self.binding_sig
        )

    @classmethod
    def deserialize(cls, data: bytes) -> ShieldedTransaction:
        if len(data) < _HEADER.size + SIGNATURE_LEN:
            raise MalformedEncoding("Transaction too short")
        version, value_balance, n_spends, n_outputs = _HEADER.unpack_from(data, 0)
        if version != TX_VERSION:
            raise MalformedEncoding(f"Unsupported transaction version {version}")
        expected = _HEADER.size + n_spends * SPEND_LEN + n_outputs * OUTPUT_LEN + SIGNATURE_LEN
        if len(data) != expected:
            raise MalformedEncoding(
                f"Transaction length {len(data)} does not match header ({expected})"
            )
        o = _HEADER.size
        spends = []
        for _ in range(n_spends):
            spends.append(SpendDescription.from_bytes(data[o:o + SPEND_LEN]))
            o += SPEND_LEN
        outputs = []
        for _ in range(n_outputs):
            outputs.append(OutputDescription.from_bytes(data[o:o + OUTPUT_LEN]))
            o += OUTPUT_LEN
        return cls(spends=tuple(spends), outputs=tuple(outputs),
                   value_balance=value_balance, binding_sig=data[o:])

    @property
    def tx_id(self) -> str:
        return blake2b(self.serialize(), _TXID_PERSON, 32).hex()

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "spends": len(self.spends),
            "outputs": len(self.outputs),
            "value_balance": self.value_balance,
            "nullifiers": [nf.hex() for nf in self.nullifiers],
            "commitments": [cm.hex() for cm in self.commitments],
        }
