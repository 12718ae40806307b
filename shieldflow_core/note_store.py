"""
NoteStore — the spent/unspent partition of one wallet's notes.

Notes are indexed by nullifier.  The spent set only ever grows: once a
nullifier is marked it stays marked, even if the matching note has not
been seen yet (chain data may be replayed out of order).

All public methods take the store's re-entrant lock, so concurrent
scanners can insert without corrupting the partition.
"""

from __future__ import annotations

import logging
import threading

from shieldflow_core.note import ShieldedNote

logger = logging.getLogger("shieldflow_notes")


class NoteStore:

    def __init__(self, nk: bytes):
        self._nk = nk
        self._lock = threading.RLock()
        self._notes: dict[bytes, ShieldedNote] = {}
        self._spent: set[bytes] = set()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def nullifier_for(self, note: ShieldedNote) -> bytes:
        return note.nullifier(self._nk)

    # ── mutation ─────────────────────────────────────────────────

    def add_note(self, note: ShieldedNote) -> bytes:
        """Index ``note`` and return its nullifier.  Re-adding is a no-op."""
        nf = self.nullifier_for(note)
        with self._lock:
            existing = self._notes.get(nf)
            if existing is None or (existing.position is None and note.position is not None):
                self._notes[nf] = note
                logger.debug(f"Note added: nf={nf.hex()[:16]} value={note.value}")
        return nf

    def mark_spent(self, nullifier: bytes) -> bool:
        """
        Add ``nullifier`` to the spent set.

        Returns True if it matched a known, previously unspent note.
        Unknown nullifiers are remembered but are not an error.
        """
        with self._lock:
            if nullifier in self._spent:
                return False
            self._spent.add(nullifier)
            known = nullifier in self._notes
        if known:
            logger.debug(f"Note spent: nf={nullifier.hex()[:16]}")
        return known

    # ── queries ──────────────────────────────────────────────────

    def is_spent(self, nullifier: bytes) -> bool:
        with self._lock:
            return nullifier in self._spent

    def get_note(self, nullifier: bytes) -> ShieldedNote | None:
        with self._lock:
            return self._notes.get(nullifier)

    def notes(self) -> list[ShieldedNote]:
        with self._lock:
            return list(self._notes.values())

    def unspent_notes(self) -> list[ShieldedNote]:
        with self._lock:
            return [n for nf, n in self._notes.items() if nf not in self._spent]

    def spent_nullifiers(self) -> set[bytes]:
        with self._lock:
            return set(self._spent)

    def balance(self) -> int:
        with self._lock:
            return sum(n.value for nf, n in self._notes.items() if nf not in self._spent)

    def __len__(self) -> int:
        with self._lock:
            return len(self._notes)

    def __contains__(self, nullifier: bytes) -> bool:
        with self._lock:
            return nullifier in self._notes
