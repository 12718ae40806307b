"""
Note commitments, nullifiers and value commitments.

Note commitment (binding under discrete log, hiding through ``rcm``)::

    cm  = [value] B_v + [H(d ‖ pkd)] B_a + [rcm] B_r
    cmu = x(cm)

Nullifier (pure function of ``nk`` and ``rho``)::

    nf = BLAKE2b-256("ShieldFlow_nf", nk ‖ rho)

Value commitment (additively homomorphic; the balance equation relies on
exact group addition here)::

    cv = [v] V + [rcv] R

``PedersenCommitment`` is the same construction over ``G`` / ``H`` for
confidential amounts on transparent chains, keeping the opening alongside
the commitment so partial sums can be audited.
"""

from __future__ import annotations

from dataclasses import dataclass

from shieldflow_core.crypto_utils import blake2b
from shieldflow_core.curve import (
    G,
    INFINITY,
    N,
    decode_point,
    encode_point,
    hash_to_point,
    point_add,
    point_mul,
    point_sub,
    random_scalar,
    scalar_to_bytes,
    x_only,
)
from shieldflow_core.errors import InvalidValue, MalformedEncoding

MAX_NOTE_VALUE = 2**64 - 1

_NOTE_PERSON = b"ShieldFlow_NCmt"
_NF_PERSON = b"ShieldFlow_nf"
_CV_PERSON = b"ShieldFlow_cv"
_PEDERSEN_PERSON = b"ShieldFlow_PedH"

# Independent generators; nobody knows their mutual discrete logs.
NOTE_VALUE_BASE = hash_to_point(_NOTE_PERSON, b"value", precompute=True)
NOTE_ADDRESS_BASE = hash_to_point(_NOTE_PERSON, b"address", precompute=True)
NOTE_RCM_BASE = hash_to_point(_NOTE_PERSON, b"rcm", precompute=True)
VALUE_COMMITMENT_VALUE_BASE = hash_to_point(_CV_PERSON, b"v", precompute=True)
VALUE_COMMITMENT_RANDOMNESS_BASE = hash_to_point(_CV_PERSON, b"r", precompute=True)
PEDERSEN_H = hash_to_point(_PEDERSEN_PERSON, b"H", precompute=True)


def _check_value(value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= MAX_NOTE_VALUE:
        raise InvalidValue(f"Value must be an integer in [0, 2**64), got {value!r}")


# ===================================================================
#  Note commitment
# ===================================================================

@dataclass(frozen=True)
class NoteCommitment:
    point: object

    @property
    def cmu(self) -> bytes:
        return x_only(self.point)

    def to_bytes(self) -> bytes:
        return encode_point(self.point)


def commit(diversifier: bytes, pkd: bytes, value: int, rcm: int | bytes) -> NoteCommitment:
    """Commit to ``(d, pkd, value)`` under randomness ``rcm``."""
    _check_value(value)
    r = int.from_bytes(rcm, "big") if isinstance(rcm, bytes) else rcm
    addr = int.from_bytes(blake2b(diversifier + pkd, _NOTE_PERSON, 32), "big") % N
    cm = point_add(
        point_add(point_mul(NOTE_VALUE_BASE, value), point_mul(NOTE_ADDRESS_BASE, addr)),
        point_mul(NOTE_RCM_BASE, r),
    )
    return NoteCommitment(cm)


def note_commitment_cmu(diversifier: bytes, pkd: bytes, value: int, rcm: int | bytes) -> bytes:
    return commit(diversifier, pkd, value, rcm).cmu


# ===================================================================
#  Nullifier
# ===================================================================

def derive_nullifier(nk: bytes, rho: bytes) -> bytes:
    return blake2b(nk + rho, _NF_PERSON, 32)


# ===================================================================
#  Value commitment
# ===================================================================

class ValueCommitment:
    """A point ``[v]V + [r]R`` supporting ``+``, ``-`` and equality."""

    __slots__ = ("point",)

    def __init__(self, point):
        self.point = point

    def __add__(self, other: ValueCommitment) -> ValueCommitment:
        return ValueCommitment(point_add(self.point, other.point))

    def __sub__(self, other: ValueCommitment) -> ValueCommitment:
        return ValueCommitment(point_sub(self.point, other.point))

    def __eq__(self, other) -> bool:
        if not isinstance(other, ValueCommitment):
            return NotImplemented
        return self.to_bytes() == other.to_bytes()

    def __hash__(self) -> int:
        return hash(self.to_bytes())

    def to_bytes(self) -> bytes:
        return encode_point(self.point)

    @classmethod
    def from_bytes(cls, data: bytes) -> ValueCommitment:
        point = decode_point(data, allow_identity=True)
        if point is None:
            raise MalformedEncoding("Invalid value commitment encoding")
        return cls(point)

    @classmethod
    def zero(cls) -> ValueCommitment:
        return cls(INFINITY)

    def __repr__(self) -> str:
        return f"ValueCommitment({self.to_bytes().hex()[:16]}…)"


def value_commitment(value: int, blinding: int) -> ValueCommitment:
    """``cv = [value]V + [blinding]R``; ``value`` may be negative for net balances."""
    return ValueCommitment(point_add(
        point_mul(VALUE_COMMITMENT_VALUE_BASE, value),
        point_mul(VALUE_COMMITMENT_RANDOMNESS_BASE, blinding),
    ))


# ===================================================================
#  Generic Pedersen commitment
# ===================================================================

class PedersenCommitment:
    """
    Pedersen commitment ``C = [v]G + [b]H`` that keeps its opening.

    ``value`` is an integer amount in base units.
    """

    def __init__(self, commitment: bytes, value: int, blinding: bytes):
        self.commitment = commitment
        self.value = value
        self.blinding = blinding

    @staticmethod
    def _point(value: int, blinding: int):
        return point_add(point_mul(G, value), point_mul(PEDERSEN_H, blinding))

    @classmethod
    def commit(cls, value: int, blinding: bytes | None = None) -> PedersenCommitment:
        if blinding is None:
            blinding = scalar_to_bytes(random_scalar())
        elif len(blinding) != 32:
            raise ValueError("Blinding factor must be 32 bytes")
        b = int.from_bytes(blinding, "big")
        return cls(encode_point(cls._point(value, b)), value, blinding)

    def verify(self, value: int) -> bool:
        expected = self._point(value, int.from_bytes(self.blinding, "big"))
        return encode_point(expected) == self.commitment

    def _combine(self, other: PedersenCommitment, sign: int) -> PedersenCommitment:
        a = decode_point(self.commitment, allow_identity=True)
        b = decode_point(other.commitment, allow_identity=True)
        point = point_add(a, b) if sign > 0 else point_sub(a, b)
        blinding = (
            int.from_bytes(self.blinding, "big") + sign * int.from_bytes(other.blinding, "big")
        ) % N
        return PedersenCommitment(
            encode_point(point), self.value + sign * other.value, scalar_to_bytes(blinding),
        )

    def add(self, other: PedersenCommitment) -> PedersenCommitment:
        return self._combine(other, 1)

    def subtract(self, other: PedersenCommitment) -> PedersenCommitment:
        return self._combine(other, -1)

    def __repr__(self) -> str:
        return f"PedersenCommitment({self.commitment.hex()[:16]}…)"
