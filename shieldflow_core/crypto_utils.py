"""
Cryptographic utilities for ShieldFlow.

Provides:
  - SHA-256 / double-SHA-256 / RIPEMD-160 / Hash160
  - Personalised BLAKE2b (the PRF / CRH used across the shielded pool)
  - Base58 and Base58Check encoding (ShieldFlow alphabet)
  - secp256k1 key-pair generation and transparent address derivation
"""

from __future__ import annotations

import hashlib

from Crypto.Hash import RIPEMD160
from ecdsa import SECP256k1, SigningKey

# Ripple-style alphabet: 'r' encodes zero.
ALPHABET = "rpshnaf39wBUDNEGHJKLM4PQRST7VWXYZ2bcdeCg65jkm8oFqi1tuvAxyz"
_ALPHABET_INDEX = {c: i for i, c in enumerate(ALPHABET)}

ACCOUNT_ID_PREFIX = b"\x00"


# ===================================================================
#  Hashing
# ===================================================================

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    """Double SHA-256, used for address checksums."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def ripemd160(data: bytes) -> bytes:
    return RIPEMD160.new(data).digest()


def hash160(data: bytes) -> bytes:
    return ripemd160(sha256(data))


def blake2b(data: bytes, person: bytes, digest_size: int = 32) -> bytes:
    """
    BLAKE2b with a personalisation string.

    ``person`` is right-padded with zeros to 16 bytes; distinct
    personalisations give independent hash functions.
    """
    if len(person) > 16:
        raise ValueError("BLAKE2b personalisation is at most 16 bytes")
    return hashlib.blake2b(data, digest_size=digest_size, person=person).digest()


# ===================================================================
#  Base58 / Base58Check
# ===================================================================

def base58_encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    out = []
    while n > 0:
        n, rem = divmod(n, 58)
        out.append(ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\x00"))
    return ALPHABET[0] * pad + "".join(reversed(out))


def base58_decode(text: str) -> bytes:
    """Decode Base58 text.  Raises ``ValueError`` on characters outside the alphabet."""
    n = 0
    for ch in text:
        try:
            n = n * 58 + _ALPHABET_INDEX[ch]
        except KeyError:
            raise ValueError(f"Invalid base58 character {ch!r}") from None
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(text) - len(text.lstrip(ALPHABET[0]))
    return b"\x00" * pad + body


def base58check_encode(payload: bytes) -> str:
    return base58_encode(payload + sha256d(payload)[:4])


def base58check_decode(text: str) -> bytes:
    raw = base58_decode(text)
    if len(raw) < 4:
        raise ValueError("Base58Check payload too short")
    payload, checksum = raw[:-4], raw[-4:]
    if sha256d(payload)[:4] != checksum:
        raise ValueError("Base58Check checksum mismatch")
    return payload


# ===================================================================
#  Keys & addresses
# ===================================================================

def generate_keypair() -> tuple[bytes, bytes]:
    """Return ``(private_key, public_key)``: a 32-byte scalar and a 65-byte uncompressed point."""
    sk = SigningKey.generate(curve=SECP256k1)
    return sk.to_string(), b"\x04" + sk.get_verifying_key().to_string()


def derive_address(public_key: bytes) -> str:
    """Transparent (non-shielded) address: Base58Check(0x00 ‖ Hash160(pub))."""
    return base58check_encode(ACCOUNT_ID_PREFIX + hash160(public_key))

