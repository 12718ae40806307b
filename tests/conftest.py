"""
Shared pytest fixtures for the ShieldFlow test suite.
"""

from dataclasses import dataclass, field

import pytest

from shieldflow_core.address import generate_address
from shieldflow_core.builder import TransactionBuilder
from shieldflow_core.keys import SpendingKey, ViewingKey
from shieldflow_core.merkle import MerkleAnchorTracker
from shieldflow_core.note import ShieldedNote
from shieldflow_core.note_store import NoteStore
from shieldflow_core.proofs import StubProofGateway
from shieldflow_core.transaction import COIN


@dataclass
class FundedWallet:
    spending_key: SpendingKey
    viewing_key: ViewingKey
    note_store: NoteStore
    tracker: MerkleAnchorTracker
    notes: list = field(default_factory=list)

    def builder(self, gateway) -> TransactionBuilder:
        return TransactionBuilder(self.spending_key, self.note_store, self.tracker, gateway)


@pytest.fixture
def spending_key():
    """Deterministic spending key for Alice."""
    return SpendingKey.from_seed(b"alice-fixture-seed")


@pytest.fixture
def viewing_key(spending_key):
    return spending_key.viewing_key()


@pytest.fixture
def bob_key():
    """Deterministic spending key for Bob."""
    return SpendingKey.from_seed(b"bob-fixture-seed")


@pytest.fixture
def bob_address(bob_key):
    return generate_address(bob_key.viewing_key(), 0)


@pytest.fixture
def gateway():
    """Stub proof gateway shared by builder and validator."""
    return StubProofGateway(b"test-gateway-key")


@pytest.fixture
def make_funded_wallet():
    """
    Factory: a wallet whose tracker already holds notes of the given values
    (in base units), each received at a different diversified address.
    """
    def _make(values, seed=b"alice-fixture-seed", depth=32):
        sk = SpendingKey.from_seed(seed)
        vk = sk.viewing_key()
        store = NoteStore(vk.nk)
        tracker = MerkleAnchorTracker(depth=depth)
        notes = []
        for i, value in enumerate(values):
            note = ShieldedNote.new(generate_address(vk, i), value)
            note = note.with_position(tracker.append_commitment(note.cmu()))
            store.add_note(note)
            notes.append(note)
        return FundedWallet(sk, vk, store, tracker, notes)
    return _make


@pytest.fixture
def funded_wallet(make_funded_wallet):
    """Alice holding a single 10-coin note."""
    return make_funded_wallet([10 * COIN])
