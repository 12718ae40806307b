"""
ShieldedWalletEngine — one instance per wallet identity.

Owns the wallet's NoteStore, MerkleAnchorTracker, TrialDecryptor and
TransactionBuilder, and serialises every state change through a single
lock.  Nothing here is process-global: construct as many engines as there
are wallets and pass them around explicitly.

State changes come from two places:
  - ``scan_block``  — outputs and nullifiers seen on chain
  - ``apply_transaction`` — a transaction (ours or not) that was mined

Both persist first (one SQLite transaction) and update memory second, so
a crash in between is recovered by :meth:`ShieldedWalletEngine.open`,
which rebuilds memory from the database.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from shieldflow_core.address import Address, generate_address
from shieldflow_core.builder import TransactionBuilder
from shieldflow_core.config import ShieldFlowConfig
from shieldflow_core.decryptor import TrialDecryptor
from shieldflow_core.errors import CommitmentTreeFull
from shieldflow_core.keys import SpendingKey, ViewingKey
from shieldflow_core.merkle import MerkleAnchorTracker
from shieldflow_core.note import ShieldedNote
from shieldflow_core.note_store import NoteStore
from shieldflow_core.proofs import ProofGateway, StubProofGateway
from shieldflow_core.storage import WalletStore
from shieldflow_core.transaction import OutputDescription, ShieldedTransaction
from shieldflow_core.validator import ShieldedTransactionValidator

logger = logging.getLogger("shieldflow_engine")

_META_NEXT_INDEX = "next_address_index"
_META_HEIGHT = "scanned_height"


def gateway_from_config(cfg: ShieldFlowConfig) -> ProofGateway:
    if cfg.prover.backend != "stub":
        raise ValueError(
            f"Prover backend '{cfg.prover.backend}' must be supplied as a ProofGateway"
        )
    if cfg.prover.stub_key:
        return StubProofGateway(bytes.fromhex(cfg.prover.stub_key))
    return StubProofGateway()


class ShieldedWalletEngine:

    def __init__(
        self,
        spending_key: SpendingKey | bytes,
        gateway: ProofGateway | None = None,
        config: ShieldFlowConfig | None = None,
        store: WalletStore | None = None,
    ):
        self.config = config or ShieldFlowConfig()
        if not isinstance(spending_key, SpendingKey):
            spending_key = SpendingKey(spending_key)
        self.viewing_key: ViewingKey = spending_key.viewing_key()
        self.gateway = gateway or gateway_from_config(self.config)
        self.store = store
        self.note_store = NoteStore(self.viewing_key.nk)
        self.tracker = MerkleAnchorTracker(self.config.tree.depth, self.config.tree.root_history)
        self.decryptor = TrialDecryptor(self.config.scan.workers)
        self._lock = threading.RLock()
        self._next_index = 0
        self._applied: set[str] = set()
        self.height = 0
        self.builder = TransactionBuilder(
            spending_key, self.note_store, self.tracker, self.gateway,
            change_address=self._unused_address,
            address_prefix=self.config.network.address_prefix,
        )

    # ── construction from storage ────────────────────────────────

    @classmethod
    def open(
        cls,
        spending_key: SpendingKey | bytes,
        config: ShieldFlowConfig | None = None,
        gateway: ProofGateway | None = None,
    ) -> ShieldedWalletEngine:
        """Create an engine and, if storage is enabled, restore its state."""
        config = config or ShieldFlowConfig()
        store = WalletStore(config.storage.path) if config.storage.enabled else None
        engine = cls(spending_key, gateway=gateway, config=config, store=store)
        if store is not None:
            engine._restore()
        return engine

    def _restore(self) -> None:
        with self._lock:
            for cmu in self.store.load_commitments():
                self.tracker.append_commitment(cmu)
            for note in self.store.load_notes():
                self.note_store.add_note(note)
            for nf in self.store.load_spent_nullifiers():
                self.note_store.mark_spent(nf)
            self._applied = {t["tx_id"] for t in self.store.load_transactions()}
            self._next_index = int(self.store.get_meta(_META_NEXT_INDEX, "0"))
            self.height = int(self.store.get_meta(_META_HEIGHT, "0"))
        logger.info(
            f"Restored wallet: {self.tracker.size()} leaves, "
            f"{len(self.note_store)} notes, balance {self.balance()}"
        )

    # ── addresses ────────────────────────────────────────────────

    def address(self, index: int) -> Address:
        return generate_address(self.viewing_key, index)

    def new_address(self) -> Address:
        """Next unused diversified address."""
        with self._lock:
            address = self._unused_address()
            self._reserve_address()
        return address

    def _unused_address(self) -> Address:
        return self.address(self._next_index)

    def _reserve_address(self) -> None:
        self._next_index += 1
        if self.store is not None:
            self.store.set_meta(_META_NEXT_INDEX, self._next_index)

    def encoded_address(self, index: int) -> str:
        return self.address(index).encode(self.config.network.address_prefix)

    # ── balances ─────────────────────────────────────────────────

    def balance(self) -> int:
        return self.note_store.balance()

    def unspent_notes(self) -> list[ShieldedNote]:
        return self.note_store.unspent_notes()

    # ── chain input ──────────────────────────────────────────────

    def scan_block(
        self,
        height: int,
        outputs: Iterable[OutputDescription],
        nullifiers: Iterable[bytes] = (),
    ) -> list[ShieldedNote]:
        """Ingest one block's outputs and revealed nullifiers.  Returns new owned notes."""
        return self._ingest(height, list(outputs), list(nullifiers))

    def apply_transaction(self, tx: ShieldedTransaction, height: int | None = None) -> list[ShieldedNote]:
        """
        Apply a mined transaction: mark its nullifiers spent, append its outputs.

        A transaction that was already applied is skipped, so replaying chain
        data cannot append the same outputs twice.
        """
        return self._ingest(
            self.height if height is None else height,
            list(tx.outputs), tx.nullifiers, tx=tx,
        )

    def _ingest(self, height: int, outputs: list[OutputDescription], nullifiers: list[bytes],
                tx: ShieldedTransaction | None = None) -> list[ShieldedNote]:
        # Decryption is parallel and lock-free; state changes go through one writer.
        matches = dict(self.decryptor.scan(outputs, self.viewing_key))
        with self._lock:
            if tx is not None and tx.tx_id in self._applied:
                logger.warning(
                    f"Transaction {tx.tx_id[:16]} already applied, skipping",
                    extra={"tx_id": tx.tx_id, "height": height},
                )
                return []
            start = self.tracker.size()
            if start + len(outputs) > self.tracker.capacity:
                raise CommitmentTreeFull("Block would overflow the commitment tree")
            found = [
                matches[i].with_position(start + i) for i in sorted(matches)
            ]
            new_height = max(self.height, height)
            if self.store is not None:
                self.store.apply(
                    height,
                    commitments=[(start + i, o.cmu) for i, o in enumerate(outputs)],
                    notes=[(self.note_store.nullifier_for(n), n) for n in found],
                    spent=nullifiers,
                    tx_id=tx.tx_id if tx is not None else None,
                    tx_blob=tx.serialize() if tx is not None else None,
                    meta={_META_HEIGHT: new_height},
                )
            for o in outputs:
                self.tracker.append_commitment(o.cmu)
            for note in found:
                self.note_store.add_note(note)
            spent = sum(1 for nf in nullifiers if self.note_store.mark_spent(nf))
            if tx is not None:
                self._applied.add(tx.tx_id)
            self.height = new_height
        if found or spent:
            logger.info(
                f"Height {height}: {len(found)} notes received, {spent} spent, "
                f"balance {self.balance()}",
                extra={"height": height},
            )
        return found

    # ── transactions ─────────────────────────────────────────────

    def build_transaction(self, recipients: Iterable[tuple], fee: int) -> ShieldedTransaction:
        """
        Build (but do not apply) a payment to ``recipients``.

        Largest notes are offered first, which keeps the number of spends low.
        """
        with self._lock:
            tx = self.builder.build(self._spendable(), recipients, fee)
            self._commit_change()
            return tx

    def shield(self, amount: int, fee: int) -> ShieldedTransaction:
        """
        Build a transaction moving ``amount`` of transparent value into a
        fresh address of this wallet.  The transparent side also pays ``fee``.
        """
        with self._lock:
            to = self._unused_address()
            tx = self.builder.build([], [(to, amount)], fee, transparent_in=amount + fee)
            self._reserve_address()
            return tx

    def unshield(self, amount: int, fee: int) -> ShieldedTransaction:
        """
        Build a transaction releasing ``amount`` from shielded notes to the
        transparent side.  The transparent recipient is the caller's concern.
        """
        with self._lock:
            tx = self.builder.build(self._spendable(), [], fee, transparent_out=amount)
            self._commit_change()
            return tx

    def _spendable(self) -> list[ShieldedNote]:
        return sorted(self.note_store.unspent_notes(), key=lambda n: n.value, reverse=True)

    def _commit_change(self) -> None:
        # The change address is only taken once the build has succeeded.
        if self.builder.last_change is not None:
            self._reserve_address()

    def validator(self) -> ShieldedTransactionValidator:
        return ShieldedTransactionValidator(
            self.gateway, self.tracker.is_valid_anchor, self.note_store.is_spent,
        )

    def validate(self, tx: ShieldedTransaction) -> tuple[bool, int, str]:
        return self.validator().validate(tx)

    def sent_notes(self, tx: ShieldedTransaction) -> list[ShieldedNote]:
        """Notes this wallet sent in ``tx``, recovered with the outgoing viewing key."""
        notes = []
        for output in tx.outputs:
            note = self.decryptor.try_decrypt_outgoing(output, self.viewing_key.ovk)
            if note is not None:
                notes.append(note)
        return notes

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        if self.store is not None:
            self.store.close()
            self.store = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
