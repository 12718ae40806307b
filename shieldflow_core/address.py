"""
Diversified shielded addresses.

One incoming viewing key yields up to 2**32 unlinkable addresses:

    d   = Diversifier(index)               11 bytes
    g_d = DiversifyBase(d)                 hash-to-curve
    pkd = [ivk] g_d                        33-byte compressed point

Text form::

    <prefix> Base58( d ‖ pkd ‖ SHA256d(d ‖ pkd)[:4] )

Nothing in the text can be linked to ``ivk`` or to another address of the
same wallet without the viewing key.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from shieldflow_core.crypto_utils import base58_decode, base58_encode, blake2b, sha256d
from shieldflow_core.curve import POINT_LEN, decode_point, encode_point, hash_to_point, point_mul
from shieldflow_core.errors import InvalidAddress
from shieldflow_core.keys import ViewingKey

DIVERSIFIER_LEN = 11
CHECKSUM_LEN = 4
ADDRESS_PAYLOAD_LEN = DIVERSIFIER_LEN + POINT_LEN + CHECKSUM_LEN
DEFAULT_PREFIX = "zs"
MAX_DIVERSIFIER_INDEX = 2**32 - 1

_DIVERSIFIER_PERSON = b"ShieldFlow_Div"
_GD_PERSON = b"ShieldFlow_gd"


def derive_diversifier(index: int) -> bytes:
    """Deterministic 11-byte diversifier for ``index`` in ``[0, 2**32)``."""
    if not 0 <= index <= MAX_DIVERSIFIER_INDEX:
        raise ValueError(f"Diversifier index out of range: {index}")
    return blake2b(struct.pack("<I", index), _DIVERSIFIER_PERSON, DIVERSIFIER_LEN)


def diversify_base(diversifier: bytes):
    """Map a diversifier to its base point ``g_d``."""
    if len(diversifier) != DIVERSIFIER_LEN:
        raise ValueError(f"Diversifier must be {DIVERSIFIER_LEN} bytes")
    return hash_to_point(_GD_PERSON, diversifier)


def _checksum(body: bytes) -> bytes:
    return sha256d(body)[:CHECKSUM_LEN]


@dataclass(frozen=True)
class Address:
    diversifier: bytes
    pkd: bytes

    def to_bytes(self) -> bytes:
        return self.diversifier + self.pkd

    def encode(self, prefix: str = DEFAULT_PREFIX) -> str:
        body = self.to_bytes()
        return prefix + base58_encode(body + _checksum(body))

    def pkd_point(self):
        return decode_point(self.pkd)

    def __str__(self) -> str:
        return self.encode()


def generate_address(viewing_key: ViewingKey, index: int) -> Address:
    d = derive_diversifier(index)
    pkd = point_mul(diversify_base(d), viewing_key.ivk_scalar)
    return Address(diversifier=d, pkd=encode_point(pkd))


def decode_address(text: str, prefix: str = DEFAULT_PREFIX) -> tuple[bytes, bytes]:
    """
    Parse address text into ``(diversifier, pkd)``.

    Any malformation raises :class:`InvalidAddress`: wrong prefix,
    non-alphabet characters, wrong length, checksum mismatch or a pkd
    that is not on the curve.
    """
    if not isinstance(text, str) or not text.startswith(prefix):
        raise InvalidAddress(f"Address must start with '{prefix}'")
    try:
        raw = base58_decode(text[len(prefix):])
    except ValueError as exc:
        raise InvalidAddress(str(exc)) from exc
    if len(raw) != ADDRESS_PAYLOAD_LEN:
        raise InvalidAddress(
            f"Address payload must be {ADDRESS_PAYLOAD_LEN} bytes, got {len(raw)}"
        )
    body, checksum = raw[:-CHECKSUM_LEN], raw[-CHECKSUM_LEN:]
    if _checksum(body) != checksum:
        raise InvalidAddress("Address checksum mismatch")
    d, pkd = body[:DIVERSIFIER_LEN], body[DIVERSIFIER_LEN:]
    if decode_point(pkd) is None:
        raise InvalidAddress("Address pkd is not a valid curve point")
    return d, pkd


def parse_address(text: str, prefix: str = DEFAULT_PREFIX) -> Address:
    d, pkd = decode_address(text, prefix)
    return Address(diversifier=d, pkd=pkd)


def try_decode_address(text: str, prefix: str = DEFAULT_PREFIX) -> Address | None:
    try:
        return parse_address(text, prefix)
    except InvalidAddress:
        return None
