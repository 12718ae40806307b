"""
In-band note encryption.

The sender picks an ephemeral scalar ``esk`` and publishes
``epk = [esk] g_d``.  Both sides reach the same shared point::

    sender:    [esk] pkd
    recipient: [ivk] epk        (pkd = [ivk] g_d)

A symmetric key is derived from it with HKDF-SHA256 and the note
plaintext is sealed with ChaCha20-Poly1305.  Each key is used for exactly
one message, so a fixed all-zero nonce is safe.

``out_ciphertext`` seals ``pkd ‖ esk`` under a key derived from the
sender's outgoing viewing key, letting the sender (or an auditor holding
``ovk``) recover what was sent.
"""

from __future__ import annotations

from dataclasses import dataclass

from Crypto.Cipher import ChaCha20_Poly1305
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import HKDF

from shieldflow_core.address import diversify_base
from shieldflow_core.crypto_utils import blake2b
from shieldflow_core.curve import (
    POINT_LEN,
    SCALAR_LEN,
    decode_point,
    encode_point,
    point_mul,
    random_scalar,
    scalar_to_bytes,
)
from shieldflow_core.errors import MalformedEncoding
from shieldflow_core.note import NOTE_PLAINTEXT_LEN, ShieldedNote

TAG_LEN = 16
ENC_CIPHERTEXT_LEN = NOTE_PLAINTEXT_LEN + TAG_LEN
OUT_PLAINTEXT_LEN = POINT_LEN + SCALAR_LEN
OUT_CIPHERTEXT_LEN = OUT_PLAINTEXT_LEN + TAG_LEN

_NONCE = b"\x00" * 12
_KDF_CONTEXT = b"ShieldFlow_NoteKDF"
_OCK_PERSON = b"ShieldFlow_ock"


@dataclass(frozen=True)
class EncryptedNote:
    ephemeral_key: bytes
    enc_ciphertext: bytes
    out_ciphertext: bytes


# ── symmetric layer ─────────────────────────────────────────────

def _kdf(shared_point, epk: bytes) -> bytes:
    return HKDF(encode_point(shared_point) + epk, 32, None, SHA256, context=_KDF_CONTEXT)


def _seal(key: bytes, plaintext: bytes) -> bytes:
    cipher = ChaCha20_Poly1305.new(key=key, nonce=_NONCE)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return ciphertext + tag


def _open(key: bytes, sealed: bytes) -> bytes | None:
    cipher = ChaCha20_Poly1305.new(key=key, nonce=_NONCE)
    try:
        return cipher.decrypt_and_verify(sealed[:-TAG_LEN], sealed[-TAG_LEN:])
    except ValueError:
        return None


def outgoing_cipher_key(ovk: bytes, cv: bytes, cmu: bytes, epk: bytes) -> bytes:
    return blake2b(ovk + cv + cmu + epk, _OCK_PERSON, 32)


# ── sender ──────────────────────────────────────────────────────

def encrypt_note(note: ShieldedNote, ovk: bytes, cv: bytes,
                 esk: int | None = None) -> EncryptedNote:
    """Encrypt ``note`` to its owner and to the sender's ``ovk``."""
    pkd = decode_point(note.pkd)
    if pkd is None:
        raise MalformedEncoding("Note pkd is not a valid curve point")
    if esk is None:
        esk = random_scalar()
    epk = encode_point(point_mul(diversify_base(note.diversifier), esk))
    enc = _seal(_kdf(point_mul(pkd, esk), epk), note.to_plaintext())
    ock = outgoing_cipher_key(ovk, cv, note.cmu(), epk)
    out = _seal(ock, note.pkd + scalar_to_bytes(esk))
    return EncryptedNote(ephemeral_key=epk, enc_ciphertext=enc, out_ciphertext=out)


# ── recipient ───────────────────────────────────────────────────

def _parse_checked(plaintext: bytes | None, pkd: bytes, cmu: bytes) -> ShieldedNote | None:
    if plaintext is None:
        return None
    try:
        note = ShieldedNote.from_plaintext(plaintext, pkd)
        if note.cmu() != cmu:
            return None
    except ValueError:
        return None
    return note


def decrypt_note(ivk: int, epk: bytes, enc_ciphertext: bytes, cmu: bytes) -> ShieldedNote | None:
    """
    Trial-decrypt with an incoming viewing key.

    Returns ``None`` when the ciphertext is not ours or any part of it is
    malformed.  A successful decryption is also checked against ``cmu`` so
    a sender cannot hand us a note that differs from the committed one.
    """
    if len(enc_ciphertext) != ENC_CIPHERTEXT_LEN:
        return None
    epk_point = decode_point(epk)
    if epk_point is None:
        return None
    plaintext = _open(_kdf(point_mul(epk_point, ivk), epk), enc_ciphertext)
    if plaintext is None:
        return None
    d = plaintext[1:12]
    try:
        pkd = encode_point(point_mul(diversify_base(d), ivk))
    except ValueError:
        return None
    return _parse_checked(plaintext, pkd, cmu)


def decrypt_outgoing(ovk: bytes, cv: bytes, cmu: bytes, epk: bytes,
                     enc_ciphertext: bytes, out_ciphertext: bytes) -> ShieldedNote | None:
    """Recover a sent note from ``out_ciphertext`` using the sender's ``ovk``."""
    if len(out_ciphertext) != OUT_CIPHERTEXT_LEN or len(enc_ciphertext) != ENC_CIPHERTEXT_LEN:
        return None
    recovered = _open(outgoing_cipher_key(ovk, cv, cmu, epk), out_ciphertext)
    if recovered is None:
        return None
    pkd_bytes, esk_bytes = recovered[:POINT_LEN], recovered[POINT_LEN:]
    pkd = decode_point(pkd_bytes)
    if pkd is None:
        return None
    esk = int.from_bytes(esk_bytes, "big")
    plaintext = _open(_kdf(point_mul(pkd, esk), epk), enc_ciphertext)
    note = _parse_checked(plaintext, pkd_bytes, cmu)
    if note is None:
        return None
    if encode_point(point_mul(diversify_base(note.diversifier), esk)) != epk:
        return None
    return note
