"""
Stealth addresses for transparent chains.

Same ECDH primitive as the shielded pool, applied to ordinary secp256k1
key-pairs so a payer can derive a fresh one-time address for a recipient:

    sender:    e, E = [e]G,  S = [e]P_r,  h = H(S)
               one-time pub  = P_r + [h]G
    recipient: S = [p_r]E   (same shared point)
               one-time priv = h + p_r  (mod n)

A one-byte view tag lets the recipient skip most foreign payments
without deriving the full address.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.errors import MalformedPointError

from shieldflow_core.crypto_utils import derive_address, sha256
from shieldflow_core.curve import G, N, encode_point, point_add, point_mul


@dataclass(frozen=True)
class StealthPayment:
    stealth_address: str
    ephemeral_priv: bytes
    ephemeral_pub: bytes
    shared_secret: bytes
    view_tag: bytes


@dataclass(frozen=True)
class StealthScanResult:
    belongs_to_recipient: bool
    stealth_priv: bytes | None = None


def _pub_point(pub: bytes):
    """Parse a 33/64/65-byte public key into a point; ``None`` if invalid."""
    try:
        return VerifyingKey.from_string(pub, curve=SECP256k1).pubkey.point
    except (MalformedPointError, ValueError, AssertionError):
        return None


def _uncompressed(point) -> bytes:
    return b"\x04" + VerifyingKey.from_public_point(point, curve=SECP256k1).to_string()


def _shared_secret(point) -> bytes:
    return sha256(encode_point(point))


def _view_tag(shared_secret: bytes) -> bytes:
    return hashlib.sha256(b"view_tag" + shared_secret).digest()[:1]


def _offset(shared_secret: bytes) -> int:
    return int.from_bytes(sha256(shared_secret), "big") % N


class StealthAddress:

    @staticmethod
    def generate(recipient_pub: bytes) -> StealthPayment:
        """Derive a one-time address for the owner of ``recipient_pub``."""
        p_r = _pub_point(recipient_pub)
        if p_r is None:
            raise ValueError("Invalid recipient public key")
        eph = SigningKey.generate(curve=SECP256k1)
        e = eph.privkey.secret_multiplier
        shared = _shared_secret(point_mul(p_r, e))
        one_time = point_add(p_r, point_mul(G, _offset(shared)))
        return StealthPayment(
            stealth_address=derive_address(_uncompressed(one_time)),
            ephemeral_priv=eph.to_string(),
            ephemeral_pub=b"\x04" + eph.get_verifying_key().to_string(),
            shared_secret=shared,
            view_tag=_view_tag(shared),
        )

    @staticmethod
    def scan(
        ephemeral_pub: bytes,
        recipient_priv: bytes,
        recipient_pub: bytes,
        stealth_address: str,
        view_tag: bytes = b"",
    ) -> StealthScanResult:
        """
        Recompute the shared secret and check whether ``stealth_address``
        was derived for this recipient.  On a match the one-time spending
        key is returned.  Malformed inputs simply do not match.
        """
        eph = _pub_point(ephemeral_pub)
        p_r = _pub_point(recipient_pub)
        if eph is None or p_r is None:
            return StealthScanResult(False)
        priv = int.from_bytes(recipient_priv, "big") % N
        if priv == 0:
            return StealthScanResult(False)
        shared = _shared_secret(point_mul(eph, priv))
        if view_tag and _view_tag(shared) != view_tag:
            return StealthScanResult(False)
        h = _offset(shared)
        one_time = point_add(p_r, point_mul(G, h))
        if derive_address(_uncompressed(one_time)) != stealth_address:
            return StealthScanResult(False)
        stealth_priv = ((h + priv) % N).to_bytes(32, "big")
        return StealthScanResult(True, stealth_priv)
