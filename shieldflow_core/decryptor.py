"""
TrialDecryptor — discover owned notes among public outputs.

Most outputs in a block belong to someone else, so a failed decryption is
the normal case and is reported as ``None``.  Each output is tried
independently; a malformed output never stops the scan.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable

from shieldflow_core.keys import ViewingKey
from shieldflow_core.note import ShieldedNote
from shieldflow_core.note_encryption import decrypt_note, decrypt_outgoing
from shieldflow_core.transaction import OutputDescription

logger = logging.getLogger("shieldflow_scan")


def _ivk_scalar(ivk: ViewingKey | bytes | int) -> int:
    if isinstance(ivk, ViewingKey):
        return ivk.ivk_scalar
    if isinstance(ivk, (bytes, bytearray)):
        return int.from_bytes(ivk, "big")
    return ivk


class TrialDecryptor:

    def __init__(self, workers: int = 1):
        self.workers = max(1, workers)

    @staticmethod
    def try_decrypt(output: OutputDescription, ivk: ViewingKey | bytes | int) -> ShieldedNote | None:
        """Decrypt ``output`` if it was sent to ``ivk``; otherwise ``None``."""
        try:
            return decrypt_note(_ivk_scalar(ivk), output.ephemeral_key,
                                output.enc_ciphertext, output.cmu)
        except (ValueError, AttributeError, TypeError) as exc:
            logger.debug(f"Skipping unparseable output: {exc}")
            return None

    @staticmethod
    def try_decrypt_outgoing(output: OutputDescription, ovk: bytes) -> ShieldedNote | None:
        """Recover a note we sent, using the outgoing viewing key."""
        try:
            return decrypt_outgoing(ovk, output.cv, output.cmu, output.ephemeral_key,
                                    output.enc_ciphertext, output.out_ciphertext)
        except (ValueError, AttributeError, TypeError) as exc:
            logger.debug(f"Skipping unparseable output: {exc}")
            return None

    def scan(self, outputs: Iterable[OutputDescription],
             ivk: ViewingKey | bytes | int) -> list[tuple[int, ShieldedNote]]:
        """
        Trial-decrypt every output.

        Returns ``(index, note)`` for each owned output, in input order.
        """
        outputs = list(outputs)
        scalar = _ivk_scalar(ivk)
        if self.workers > 1 and len(outputs) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                results = list(pool.map(lambda o: self.try_decrypt(o, scalar), outputs))
        else:
            results = [self.try_decrypt(o, scalar) for o in outputs]
        found = [(i, note) for i, note in enumerate(results) if note is not None]
        if found:
            logger.info(f"Scan matched {len(found)}/{len(outputs)} outputs")
        return found
