"""
SQLite-based persistence layer for ShieldFlow wallet state.

Stores the note-commitment tree leaves, owned notes, the spent-nullifier
set and applied transactions so that a wallet can re-derive its in-memory
state after a restart or a crash.

Every state transition (one scanned block or one applied transaction) is
written in a single database transaction by :meth:`WalletStore.apply`:
either all of its leaves, notes and nullifiers land, or none do.

Usage:
    store = WalletStore("data/wallet.db")
    store.apply(height=1, commitments=[(0, cmu)], notes=[(nf, note)], spent=[])
    ...
    notes = store.load_notes()
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Iterable

from shieldflow_core.note import ShieldedNote

logger = logging.getLogger("shieldflow_storage")


class WalletStore:
    """Thin SQLite wrapper for persisting wallet state."""

    def __init__(self, db_path: str = "data/wallet.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # busy_timeout prevents "database is locked" under contention
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        # synchronous=NORMAL is safe with WAL and avoids fsync per commit
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS commitments (
                leaf_index INTEGER PRIMARY KEY,
                cmu        BLOB NOT NULL,
                height     INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS notes (
                nullifier   BLOB PRIMARY KEY,
                value       INTEGER NOT NULL,
                diversifier BLOB NOT NULL,
                pkd         BLOB NOT NULL,
                rho         BLOB NOT NULL,
                rcm         BLOB NOT NULL,
                memo        BLOB NOT NULL DEFAULT x'',
                position    INTEGER
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS spent_nullifiers (
                nullifier BLOB PRIMARY KEY,
                height    INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                tx_id     TEXT PRIMARY KEY,
                height    INTEGER NOT NULL DEFAULT 0,
                tx_blob   BLOB NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    CURRENT_SCHEMA_VERSION = 1

    def _ensure_schema_version(self) -> None:
        """Check / set schema version; run migrations when needed."""
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade ShieldFlow."
            )

    # ── atomic state transitions ─────────────────────────────────

    def apply(
        self,
        height: int,
        commitments: Iterable[tuple[int, bytes]] = (),
        notes: Iterable[tuple[bytes, ShieldedNote]] = (),
        spent: Iterable[bytes] = (),
        tx_id: str | None = None,
        tx_blob: bytes | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        """Write one block's or one transaction's effects in a single commit."""
        with self._conn:
            self._conn.executemany(
                "INSERT OR IGNORE INTO commitments (leaf_index, cmu, height) VALUES (?, ?, ?)",
                [(i, cmu, height) for i, cmu in commitments],
            )
            self._conn.executemany(
                """INSERT OR REPLACE INTO notes
                   (nullifier, value, diversifier, pkd, rho, rcm, memo, position)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [(nf, n.value, n.diversifier, n.pkd, n.rho, n.rcm, n.memo, n.position)
                 for nf, n in notes],
            )
            self._conn.executemany(
                "INSERT OR IGNORE INTO spent_nullifiers (nullifier, height) VALUES (?, ?)",
                [(nf, height) for nf in spent],
            )
            if tx_id is not None:
                self._conn.execute(
                    """INSERT OR REPLACE INTO transactions (tx_id, height, tx_blob, timestamp)
                       VALUES (?, ?, ?, ?)""",
                    (tx_id, height, tx_blob or b"", time.time()),
                )
            for key, value in (meta or {}).items():
                self._conn.execute(
                    "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, str(value)),
                )

    # ── loading ──────────────────────────────────────────────────

    def load_commitments(self) -> list[bytes]:
        rows = self._conn.execute(
            "SELECT cmu FROM commitments ORDER BY leaf_index"
        ).fetchall()
        return [bytes(r["cmu"]) for r in rows]

    def load_notes(self) -> list[ShieldedNote]:
        rows = self._conn.execute("SELECT * FROM notes ORDER BY position").fetchall()
        return [
            ShieldedNote(
                value=r["value"], diversifier=bytes(r["diversifier"]), pkd=bytes(r["pkd"]),
                rho=bytes(r["rho"]), rcm=bytes(r["rcm"]), memo=bytes(r["memo"]),
                position=r["position"],
            )
            for r in rows
        ]

    def load_spent_nullifiers(self) -> set[bytes]:
        rows = self._conn.execute("SELECT nullifier FROM spent_nullifiers").fetchall()
        return {bytes(r["nullifier"]) for r in rows}

    def load_transactions(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM transactions ORDER BY height, rowid"
        ).fetchall()
        return [dict(r) for r in rows]

    def get_meta(self, key: str, default: str | None = None) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_meta(self, key: str, value: Any) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, str(value)),
        )
        self._conn.commit()

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
