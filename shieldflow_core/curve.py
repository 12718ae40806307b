"""
secp256k1 group helpers for the shielded pool.

Thin layer over ``ecdsa``'s point arithmetic:

  - 33-byte compressed point codec (with an explicit encoding for the
    identity, which can legitimately appear as a sum of commitments)
  - 32-byte x-only points with even y
  - deterministic try-and-increment hash to the curve, used to derive
    independent generators and diversified base points
  - scalar helpers modulo the group order
"""

from __future__ import annotations

import os

from ecdsa import SECP256k1
from ecdsa.ellipticcurve import INFINITY, PointJacobi

from shieldflow_core.crypto_utils import blake2b

CURVE = SECP256k1.curve
P = CURVE.p()
N = SECP256k1.order
G = SECP256k1.generator

POINT_LEN = 33
SCALAR_LEN = 32
IDENTITY_ENCODING = b"\x00" * POINT_LEN


# ── scalars ─────────────────────────────────────────────────────

def scalar_from_bytes(data: bytes) -> int:
    return int.from_bytes(data, "big") % N


def scalar_to_bytes(k: int) -> bytes:
    return (k % N).to_bytes(SCALAR_LEN, "big")


def random_scalar() -> int:
    """Uniform non-zero scalar (64 random bytes reduced mod n)."""
    while True:
        k = int.from_bytes(os.urandom(64), "big") % N
        if k:
            return k


# ── points ──────────────────────────────────────────────────────

def is_identity(point) -> bool:
    return point is INFINITY or point == INFINITY


def point_mul(point, k: int):
    k %= N
    if k == 0 or is_identity(point):
        return INFINITY
    return point * k


def point_add(a, b):
    if is_identity(a):
        return b
    if is_identity(b):
        return a
    return a + b


def point_neg(point):
    if is_identity(point):
        return INFINITY
    aff = point.to_affine() if isinstance(point, PointJacobi) else point
    return PointJacobi(CURVE, aff.x(), (-aff.y()) % P, 1, N)


def point_sub(a, b):
    return point_add(a, point_neg(b))


def points_equal(a, b) -> bool:
    return encode_point(a) == encode_point(b)


def _sqrt_mod_p(v: int) -> int | None:
    # P ≡ 3 (mod 4)
    r = pow(v, (P + 1) // 4, P)
    return r if (r * r) % P == v % P else None


def _lift(x: int, odd: bool, precompute: bool = False):
    if x >= P:
        return None
    y = _sqrt_mod_p((pow(x, 3, P) + 7) % P)
    if y is None:
        return None
    if (y & 1) != int(odd):
        y = P - y
    return PointJacobi(CURVE, x, y, 1, N, generator=precompute)


def encode_point(point) -> bytes:
    """33-byte SEC1 compressed encoding; the identity encodes as 33 zero bytes."""
    if is_identity(point):
        return IDENTITY_ENCODING
    aff = point.to_affine() if isinstance(point, PointJacobi) else point
    x, y = aff.x(), aff.y()
    return bytes([2 + (y & 1)]) + x.to_bytes(32, "big")


def decode_point(data: bytes, allow_identity: bool = False):
    """
    Decode a compressed point.  Returns ``None`` for anything that is not a
    valid encoding of a curve point (or of the identity, if allowed).
    """
    if len(data) != POINT_LEN:
        return None
    if data == IDENTITY_ENCODING:
        return INFINITY if allow_identity else None
    if data[0] not in (2, 3):
        return None
    return _lift(int.from_bytes(data[1:], "big"), odd=data[0] == 3)


def x_only(point) -> bytes:
    aff = point.to_affine() if isinstance(point, PointJacobi) else point
    return aff.x().to_bytes(32, "big")


def has_even_y(point) -> bool:
    aff = point.to_affine() if isinstance(point, PointJacobi) else point
    return aff.y() % 2 == 0


def lift_x(data: bytes):
    """The even-y point with the given 32-byte x-coordinate, or ``None``."""
    if len(data) != 32:
        return None
    return _lift(int.from_bytes(data, "big"), odd=False)


def hash_to_point(person: bytes, msg: bytes, precompute: bool = False):
    """
    Deterministically map ``msg`` to a curve point nobody knows the
    discrete log of.  secp256k1 has cofactor 1, so every point found is a
    valid group element.
    """
    for ctr in range(256):
        h = blake2b(msg + bytes([ctr]), person)
        point = _lift(int.from_bytes(h, "big"), odd=False, precompute=precompute)
        if point is not None:
            return point
    raise RuntimeError("hash_to_point exhausted its counter")  # probability ~2^-256
