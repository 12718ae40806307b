"""
Key hierarchy for the shielded pool.

    master seed ──HMAC-SHA512──▶ SpendingKey (32 bytes, never transmitted)
                                   │  PRF_expand(sk, 0x00/0x01/0x02)
                                   ▼
                 ExpandedSpendingKey {ask, nsk, ovk}      (secret)
                                   │  ak = [ask]G, nk = [nsk]G
                                   ▼
                 ViewingKey {ak, nk, ovk, ivk}            (shareable)
                                      ivk = CRH(ak ‖ nk)

Every arrow is one-way: a ViewingKey grants balance auditing but no spend
authority, and ``ivk`` alone does not reveal ``ak`` or ``nk``.

Also provides:
  - BIP-39 style mnemonic → seed stretching
  - HD-style account derivation from a seed
  - Text encoding of viewing keys for auditors
  - Passphrase-encrypted export of spending keys (AES-256-GCM)
"""

from __future__ import annotations

import hashlib
import hmac
import os
import struct
from dataclasses import dataclass

from shieldflow_core.crypto_utils import base58check_decode, base58check_encode, blake2b
from shieldflow_core.curve import G, N, has_even_y, lift_x, point_mul, x_only
from shieldflow_core.errors import InvalidSpendingKey, MalformedEncoding

SPENDING_KEY_LEN = 32
HARDENED = 0x80000000

_EXPAND_PERSON = b"ShieldFlowExpand"
_IVK_PERSON = b"ShieldFlow_ivk"

TAG_ASK = 0x00
TAG_NSK = 0x01
TAG_OVK = 0x02


# ===================================================================
#  Mnemonic / seed
# ===================================================================

def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert a mnemonic phrase to a 64-byte seed (BIP-39 stretching)."""
    salt = ("mnemonic" + passphrase).encode("utf-8")
    return hashlib.pbkdf2_hmac(
        "sha512", mnemonic.encode("utf-8"), salt, 2048, dklen=64,
    )


# ===================================================================
#  Spending key
# ===================================================================

def _validate_spending_key(raw: bytes) -> None:
    if len(raw) != SPENDING_KEY_LEN:
        raise InvalidSpendingKey(
            f"Spending key must be {SPENDING_KEY_LEN} bytes, got {len(raw)}"
        )
    if not any(raw):
        raise InvalidSpendingKey("Spending key must not be all-zero")


class SpendingKey:
    """
    The root secret of one wallet identity.

    Held in a mutable buffer so it can be zeroed with :meth:`wipe` (also
    called on context exit and on garbage collection).
    """

    def __init__(self, raw: bytes):
        _validate_spending_key(bytes(raw))
        self._buf = bytearray(raw)

    # ---- factory methods ----

    @classmethod
    def generate(cls) -> SpendingKey:
        return cls(os.urandom(SPENDING_KEY_LEN))

    @classmethod
    def from_seed(cls, seed: bytes, account: int = 0) -> SpendingKey:
        """
        Derive the spending key for ``account`` from a master seed.

        Master node: ``HMAC-SHA512("ShieldFlow seed", seed)``; the account
        is a hardened child so sibling accounts are unlinkable.
        """
        if not 0 <= account < HARDENED:
            raise ValueError(f"Account index out of range: {account}")
        I = hmac.new(b"ShieldFlow seed", seed, hashlib.sha512).digest()
        key, chain_code = I[:32], I[32:]
        data = b"\x00" + key + struct.pack(">I", account | HARDENED)
        I = hmac.new(chain_code, data, hashlib.sha512).digest()
        return cls(I[:32])

    @classmethod
    def from_mnemonic(cls, mnemonic: str, passphrase: str = "",
                      account: int = 0) -> SpendingKey:
        return cls.from_seed(mnemonic_to_seed(mnemonic, passphrase), account)

    # ---- access ----

    @property
    def raw(self) -> bytes:
        if not any(self._buf):
            raise InvalidSpendingKey("Spending key has been wiped")
        return bytes(self._buf)

    def expand(self) -> ExpandedSpendingKey:
        return expand_spending_key(self.raw)

    def viewing_key(self) -> ViewingKey:
        return derive_viewing_key(self.raw)

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0

    def __enter__(self) -> SpendingKey:
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __del__(self):
        buf = getattr(self, "_buf", None)
        if buf is not None:
            self.wipe()

    def __repr__(self) -> str:
        return "SpendingKey(<redacted>)"

    # ---- encrypted export ----

    def export_encrypted(self, passphrase: str, iterations: int = 600_000) -> dict:
        """
        Export as a JSON-compatible dict.

        PBKDF2-HMAC-SHA256 stretches the passphrase; AES-256-GCM encrypts
        and authenticates the key.
        """
        from Crypto.Cipher import AES

        salt = os.urandom(16)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, iterations)
        nonce = os.urandom(12)
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(self.raw)
        return {
            "version": 1,
            "encrypted_spending_key": ciphertext.hex(),
            "nonce": nonce.hex(),
            "tag": tag.hex(),
            "salt": salt.hex(),
            "kdf": "pbkdf2-hmac-sha256",
            "kdf_iterations": iterations,
        }

    @classmethod
    def import_encrypted(cls, data: dict, passphrase: str) -> SpendingKey:
        """Inverse of :meth:`export_encrypted`.  Raises ``ValueError`` on a wrong passphrase."""
        from Crypto.Cipher import AES

        salt = bytes.fromhex(data["salt"])
        iterations = data.get("kdf_iterations", 600_000)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, iterations)
        cipher = AES.new(key, AES.MODE_GCM, nonce=bytes.fromhex(data["nonce"]))
        raw = cipher.decrypt_and_verify(
            bytes.fromhex(data["encrypted_spending_key"]), bytes.fromhex(data["tag"]),
        )
        return cls(raw)


# ===================================================================
#  Expansion
# ===================================================================

@dataclass(frozen=True)
class ExpandedSpendingKey:
    """Secret scalars used to authorise spends and derive nullifier keys."""
    ask: int
    nsk: int
    ovk: bytes

    def __repr__(self) -> str:
        return "ExpandedSpendingKey(<redacted>)"


def _prf_expand_scalar(sk: bytes, tag: int) -> int:
    """
    Domain-separated expansion to a scalar in ``[1, n)``.

    A candidate that is zero or not below the group order is discarded and
    the expansion repeated with a retry counter appended to the tag.
    """
    for retry in range(256):
        suffix = bytes([tag]) if retry == 0 else bytes([tag, retry])
        k = int.from_bytes(blake2b(sk + suffix, _EXPAND_PERSON, 32), "big")
        if 0 < k < N:
            return k
    raise InvalidSpendingKey("Could not derive a valid scalar")


def _even_y_scalar(k: int) -> int:
    """Negate ``k`` if needed so that ``[k]G`` has an even y-coordinate."""
    return k if has_even_y(point_mul(G, k)) else N - k


def expand_spending_key(spending_key: bytes) -> ExpandedSpendingKey:
    _validate_spending_key(spending_key)
    ask = _even_y_scalar(_prf_expand_scalar(spending_key, TAG_ASK))
    nsk = _even_y_scalar(_prf_expand_scalar(spending_key, TAG_NSK))
    ovk = blake2b(spending_key + bytes([TAG_OVK]), _EXPAND_PERSON, 32)
    return ExpandedSpendingKey(ask=ask, nsk=nsk, ovk=ovk)


# ===================================================================
#  Viewing key
# ===================================================================

def _crh_ivk(ak: bytes, nk: bytes) -> bytes:
    ivk = int.from_bytes(blake2b(ak + nk, _IVK_PERSON, 32), "big") % N
    if ivk == 0:
        raise InvalidSpendingKey("Derived incoming viewing key is zero")
    return ivk.to_bytes(32, "big")


@dataclass(frozen=True)
class ViewingKey:
    """
    ``ak``  — spend-authority validating key (x-only point)
    ``nk``  — nullifier deriving key (x-only point)
    ``ovk`` — outgoing viewing key
    ``ivk`` — incoming viewing key (scalar)
    """
    ak: bytes
    nk: bytes
    ovk: bytes
    ivk: bytes

    @property
    def ivk_scalar(self) -> int:
        return int.from_bytes(self.ivk, "big")

    @property
    def ak_point(self):
        return lift_x(self.ak)

    def encode(self, prefix: str = "zxview") -> str:
        return prefix + base58check_encode(self.ak + self.nk + self.ovk)

    @classmethod
    def decode(cls, text: str, prefix: str = "zxview") -> ViewingKey:
        if not text.startswith(prefix):
            raise MalformedEncoding(f"Viewing key must start with '{prefix}'")
        try:
            payload = base58check_decode(text[len(prefix):])
        except ValueError as exc:
            raise MalformedEncoding(f"Invalid viewing key encoding: {exc}") from exc
        if len(payload) != 96:
            raise MalformedEncoding(f"Viewing key payload must be 96 bytes, got {len(payload)}")
        ak, nk, ovk = payload[:32], payload[32:64], payload[64:]
        if lift_x(ak) is None or lift_x(nk) is None:
            raise MalformedEncoding("Viewing key contains an invalid point")
        return cls(ak=ak, nk=nk, ovk=ovk, ivk=_crh_ivk(ak, nk))

    def __repr__(self) -> str:
        return f"ViewingKey(ak={self.ak.hex()[:16]}…)"


def derive_viewing_key(spending_key: bytes | SpendingKey) -> ViewingKey:
    """Derive ``{ak, nk, ovk, ivk}`` from a 32-byte spending key."""
    raw = spending_key.raw if isinstance(spending_key, SpendingKey) else bytes(spending_key)
    expsk = expand_spending_key(raw)
    ak = x_only(point_mul(G, expsk.ask))
    nk = x_only(point_mul(G, expsk.nsk))
    return ViewingKey(ak=ak, nk=nk, ovk=expsk.ovk, ivk=_crh_ivk(ak, nk))
