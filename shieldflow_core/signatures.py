"""
Schnorr signatures over an arbitrary secp256k1 base point.

Used twice in a shielded transaction:
  - spend authorisation, under the re-randomised key ``rk = ak + [alpha]G``
  - the binding signature, under ``bvk = [bsk]R`` where ``R`` is the
    value-commitment randomness base

Signature layout: compressed nonce point (33) ‖ response scalar (32).
"""

from __future__ import annotations

import os

from shieldflow_core.crypto_utils import blake2b
from shieldflow_core.curve import (
    N,
    POINT_LEN,
    SCALAR_LEN,
    decode_point,
    encode_point,
    point_add,
    point_mul,
    points_equal,
)

SIGNATURE_LEN = POINT_LEN + SCALAR_LEN

_NONCE_PERSON = b"ShieldFlowSigNon"
_CHALLENGE_PERSON = b"ShieldFlowSigChl"


def _challenge(nonce_point: bytes, public_key: bytes, message: bytes) -> int:
    return int.from_bytes(
        blake2b(nonce_point + public_key + message, _CHALLENGE_PERSON, 64), "big"
    ) % N


def sign(secret: int, base, message: bytes) -> bytes:
    """Sign ``message`` with ``secret`` relative to ``base``."""
    secret %= N
    public_key = encode_point(point_mul(base, secret))
    # Hedged nonce: deterministic part plus fresh randomness.
    k = int.from_bytes(
        blake2b(secret.to_bytes(32, "big") + message + os.urandom(32), _NONCE_PERSON, 64),
        "big",
    ) % N or 1
    nonce_point = encode_point(point_mul(base, k))
    e = _challenge(nonce_point, public_key, message)
    s = (k + e * secret) % N
    return nonce_point + s.to_bytes(SCALAR_LEN, "big")


def verify(public_key: bytes, base, message: bytes, signature: bytes) -> bool:
    """Check ``[s]base == R + [e]pk``.  Never raises on malformed input."""
    if len(signature) != SIGNATURE_LEN:
        return False
    pk = decode_point(public_key, allow_identity=True)
    nonce = decode_point(signature[:POINT_LEN])
    if pk is None or nonce is None:
        return False
    s = int.from_bytes(signature[POINT_LEN:], "big")
    if s >= N:
        return False
    e = _challenge(signature[:POINT_LEN], public_key, message)
    return points_equal(point_mul(base, s), point_add(nonce, point_mul(pk, e)))
