"""
Shielded notes and their plaintext encoding.

Plaintext layout (596 bytes)::

    lead (1) ‖ d (11) ‖ value (8, LE) ‖ rcm (32) ‖ rho (32) ‖ memo_len (2, LE) ‖ memo (510)

``rho`` travels inside the plaintext so that every code path that
reconstructs a note derives the same nullifier.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, replace

from shieldflow_core.address import DIVERSIFIER_LEN, Address
from shieldflow_core.commitments import commit, derive_nullifier
from shieldflow_core.curve import random_scalar, scalar_to_bytes
from shieldflow_core.errors import InvalidValue, MalformedEncoding

NOTE_PLAINTEXT_LEAD_BYTE = 0x01
MEMO_FIELD_LEN = 512
MEMO_LEN = MEMO_FIELD_LEN - 2
NOTE_PLAINTEXT_LEN = 1 + DIVERSIFIER_LEN + 8 + 32 + 32 + MEMO_FIELD_LEN


@dataclass(frozen=True)
class ShieldedNote:
    """
    A spendable unit of shielded value.

    ``position`` is the note's leaf index in the commitment tree; it is
    known once the output has been appended and is not part of the note's
    on-chain identity.
    """
    value: int
    diversifier: bytes
    pkd: bytes
    rho: bytes
    rcm: bytes
    memo: bytes = b""
    position: int | None = None

    @classmethod
    def new(cls, address: Address, value: int, memo: bytes | str = b"") -> ShieldedNote:
        """Fresh note to ``address`` with random ``rcm`` and ``rho``."""
        if isinstance(memo, str):
            memo = memo.encode("utf-8")
        if len(memo) > MEMO_LEN:
            raise InvalidValue(f"Memo exceeds {MEMO_LEN} bytes")
        return cls(
            value=value,
            diversifier=address.diversifier,
            pkd=address.pkd,
            rho=os.urandom(32),
            rcm=scalar_to_bytes(random_scalar()),
            memo=memo,
        )

    @property
    def address(self) -> Address:
        return Address(self.diversifier, self.pkd)

    def cmu(self) -> bytes:
        return commit(self.diversifier, self.pkd, self.value, self.rcm).cmu

    def nullifier(self, nk: bytes) -> bytes:
        return derive_nullifier(nk, self.rho)

    def with_position(self, position: int) -> ShieldedNote:
        return replace(self, position=position)

    # ---- plaintext ----

    def to_plaintext(self) -> bytes:
        return (
            bytes([NOTE_PLAINTEXT_LEAD_BYTE])
            + self.diversifier
            + struct.pack("<Q", self.value)
            + self.rcm
            + self.rho
            + struct.pack("<H", len(self.memo))
            + self.memo.ljust(MEMO_LEN, b"\x00")
        )

    @classmethod
    def from_plaintext(cls, plaintext: bytes, pkd: bytes) -> ShieldedNote:
        """Parse a decrypted plaintext; ``pkd`` comes from the recipient's key."""
        if len(plaintext) != NOTE_PLAINTEXT_LEN:
            raise MalformedEncoding(f"Note plaintext must be {NOTE_PLAINTEXT_LEN} bytes")
        if plaintext[0] != NOTE_PLAINTEXT_LEAD_BYTE:
            raise MalformedEncoding(f"Unknown note plaintext lead byte {plaintext[0]:#x}")
        off = 1
        d = plaintext[off:off + DIVERSIFIER_LEN]
        off += DIVERSIFIER_LEN
        (value,) = struct.unpack_from("<Q", plaintext, off)
        off += 8
        rcm = plaintext[off:off + 32]
        off += 32
        rho = plaintext[off:off + 32]
        off += 32
        (memo_len,) = struct.unpack_from("<H", plaintext, off)
        off += 2
        if memo_len > MEMO_LEN:
            raise MalformedEncoding(f"Memo length {memo_len} exceeds {MEMO_LEN}")
        memo = plaintext[off:off + memo_len]
        return cls(value=value, diversifier=d, pkd=pkd, rho=rho, rcm=rcm, memo=memo)
