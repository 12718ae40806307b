"""
Tests for shieldflow_core.engine — the per-wallet facade.

Covers:
  - scan_block discovers owned outputs and assigns tree positions
  - end-to-end: Alice pays Bob, Bob pays back, both balances track
  - sent notes recovered with the outgoing viewing key
  - fresh diversified addresses per request
  - restart restores tree, notes, spent set, height and address index
  - a block that would overflow the tree leaves state untouched
  - replaying an applied transaction does not grow the tree
  - shielding and unshielding through the engine
"""

from __future__ import annotations

import pytest

from shieldflow_core.commitments import value_commitment
from shieldflow_core.config import ShieldFlowConfig
from shieldflow_core.curve import random_scalar
from shieldflow_core.engine import ShieldedWalletEngine, gateway_from_config
from shieldflow_core.errors import CommitmentTreeFull, InsufficientBalance, ProofGenerationFailed
from shieldflow_core.keys import SpendingKey
from shieldflow_core.note import ShieldedNote
from shieldflow_core.note_encryption import encrypt_note
from shieldflow_core.proofs import SPEND_STATEMENT, StubProofGateway, output_public_inputs
from shieldflow_core.transaction import COIN, OutputDescription

FEE = COIN // 10_000


class SpendFailingGateway(StubProofGateway):

    def _prove(self, statement_id, private_inputs, public_inputs):
        if statement_id == SPEND_STATEMENT:
            raise RuntimeError("prover offline")
        return super()._prove(statement_id, private_inputs, public_inputs)


def mint(address, value, gateway):
    """An output paying ``address`` as it would appear in a block."""
    note = ShieldedNote.new(address, value)
    cv = value_commitment(value, random_scalar()).to_bytes()
    enc = encrypt_note(note, b"\x00" * 32, cv)
    proof = gateway.generate_output_proof(cv, note.cmu(), enc.ephemeral_key, {"note": note})
    return OutputDescription(
        cv=cv, cmu=note.cmu(), ephemeral_key=enc.ephemeral_key,
        enc_ciphertext=enc.enc_ciphertext, out_ciphertext=enc.out_ciphertext, proof=proof,
    )


@pytest.fixture
def config():
    cfg = ShieldFlowConfig()
    cfg.tree.depth = 16
    cfg.scan.workers = 2
    return cfg


@pytest.fixture
def alice(config, gateway):
    return ShieldedWalletEngine(SpendingKey.from_seed(b"alice-engine"), gateway=gateway, config=config)


@pytest.fixture
def bob(config, gateway):
    return ShieldedWalletEngine(SpendingKey.from_seed(b"bob-engine"), gateway=gateway, config=config)


@pytest.fixture
def funded(alice, bob, gateway):
    """Block 1 pays Alice 10 coins; both wallets scan it."""
    block = [mint(bob.address(5), COIN, gateway), mint(alice.address(0), 10 * COIN, gateway)]
    alice.scan_block(1, block)
    bob.scan_block(1, block)
    return alice, bob


# ═══════════════════════════════════════════════════════════════════
#  Scanning
# ═══════════════════════════════════════════════════════════════════

class TestScan:

    def test_scan_finds_owned_output(self, alice, bob, gateway):
        block = [mint(bob.address(0), 5, gateway), mint(alice.address(3), 7, gateway)]
        found = alice.scan_block(1, block)
        assert [(n.value, n.position) for n in found] == [(7, 1)]
        assert alice.balance() == 7
        assert alice.tracker.size() == 2
        assert alice.height == 1

    def test_foreign_block(self, alice, bob, gateway):
        assert alice.scan_block(1, [mint(bob.address(0), 5, gateway)]) == []
        assert alice.balance() == 0
        assert alice.tracker.size() == 1

    def test_nullifier_marks_spent(self, alice, gateway):
        note = alice.scan_block(1, [mint(alice.address(0), 9, gateway)])[0]
        nf = alice.note_store.nullifier_for(note)
        alice.scan_block(2, [], nullifiers=[nf])
        assert alice.balance() == 0
        assert alice.unspent_notes() == []

    def test_height_never_decreases(self, alice):
        alice.scan_block(10, [])
        alice.scan_block(4, [])
        assert alice.height == 10

    def test_overflow_leaves_state_untouched(self, gateway):
        cfg = ShieldFlowConfig()
        cfg.tree.depth = 1
        eng = ShieldedWalletEngine(SpendingKey.from_seed(b"tiny"), gateway=gateway, config=cfg)
        block = [mint(eng.address(i), 1, gateway) for i in range(3)]
        with pytest.raises(CommitmentTreeFull):
            eng.scan_block(1, block)
        assert eng.tracker.size() == 0
        assert eng.balance() == 0


# ═══════════════════════════════════════════════════════════════════
#  Payments
# ═══════════════════════════════════════════════════════════════════

class TestPayments:

    def test_alice_pays_bob(self, funded):
        alice, bob = funded
        assert bob.balance() == COIN
        tx = alice.build_transaction([(bob.encoded_address(0), 3 * COIN)], fee=FEE)
        assert alice.validate(tx) == (True, 0, "Valid")
        # building alone changes nothing
        assert alice.balance() == 10 * COIN

        alice.apply_transaction(tx, height=2)
        received = bob.apply_transaction(tx, height=2)

        assert [n.value for n in received] == [3 * COIN]
        assert bob.balance() == 4 * COIN
        assert alice.balance() == 7 * COIN - FEE
        assert alice.tracker.current_root() == bob.tracker.current_root()

    def test_spent_note_cannot_be_respent(self, funded):
        alice, bob = funded
        tx = alice.build_transaction([(bob.address(0), 3 * COIN)], fee=FEE)
        alice.apply_transaction(tx)
        ok, code, _ = alice.validate(tx)
        assert not ok
        assert code == 105

    def test_bob_pays_back(self, funded):
        alice, bob = funded
        tx1 = alice.build_transaction([(bob.address(0), 3 * COIN)], fee=FEE)
        for wallet in (alice, bob):
            wallet.apply_transaction(tx1, height=2)

        tx2 = bob.build_transaction([(alice.address(9), 3 * COIN + COIN // 2)], fee=FEE)
        assert alice.validate(tx2)[0]
        for wallet in (alice, bob):
            wallet.apply_transaction(tx2, height=3)

        assert alice.balance() == 7 * COIN - FEE + 3 * COIN + COIN // 2
        assert bob.balance() == 4 * COIN - 3 * COIN - COIN // 2 - FEE

    def test_insufficient_funds(self, funded):
        alice, bob = funded
        with pytest.raises(InsufficientBalance):
            alice.build_transaction([(bob.address(0), 11 * COIN)], fee=0)

    def test_sent_notes(self, funded):
        alice, bob = funded
        tx = alice.build_transaction([(bob.address(1), 2 * COIN, "lunch")], fee=FEE)
        sent = alice.sent_notes(tx)
        assert sorted(n.value for n in sent) == [2 * COIN, 8 * COIN - FEE]
        assert bob.sent_notes(tx) == []

    def test_change_goes_to_fresh_address(self, funded):
        alice, bob = funded
        before = alice._next_index
        tx = alice.build_transaction([(bob.address(0), COIN)], fee=FEE)
        assert alice._next_index == before + 1
        change = alice.apply_transaction(tx)
        assert change[0].diversifier == alice.address(before).diversifier

    def test_replayed_transaction_skipped(self, funded):
        alice, bob = funded
        tx = alice.build_transaction([(bob.address(0), 3 * COIN)], fee=FEE)
        alice.apply_transaction(tx, height=2)
        bob.apply_transaction(tx, height=2)
        balance = alice.balance()

        assert alice.apply_transaction(tx, height=3) == []
        assert alice.tracker.size() == bob.tracker.size() == 4
        assert alice.tracker.current_root() == bob.tracker.current_root()
        assert alice.balance() == balance

    def test_failed_build_keeps_address_index(self, config, bob):
        gw = SpendFailingGateway(b"test-gateway-key")
        eng = ShieldedWalletEngine(SpendingKey.from_seed(b"alice-engine"), gateway=gw, config=config)
        eng.scan_block(1, [mint(eng.address(0), 10 * COIN, gw)])
        before = eng._next_index
        with pytest.raises(ProofGenerationFailed):
            eng.build_transaction([(bob.address(0), COIN)], fee=FEE)
        assert eng._next_index == before

    def test_exact_payment_keeps_address_index(self, funded):
        alice, bob = funded
        before = alice._next_index
        alice.build_transaction([(bob.address(0), 10 * COIN - FEE)], fee=FEE)
        assert alice._next_index == before

    def test_shield_then_unshield(self, alice):
        tx = alice.shield(5 * COIN, fee=FEE)
        assert tx.spends == ()
        assert tx.value_balance == -5 * COIN
        assert alice.validate(tx)[0]
        received = alice.apply_transaction(tx, height=1)
        assert [n.value for n in received] == [5 * COIN]
        assert alice._next_index == 1

        out = alice.unshield(2 * COIN, fee=FEE)
        assert out.value_balance == 2 * COIN + FEE
        assert alice.validate(out)[0]
        alice.apply_transaction(out, height=2)
        assert alice.balance() == 3 * COIN - FEE

    def test_unshield_insufficient(self, alice):
        with pytest.raises(InsufficientBalance):
            alice.unshield(COIN, fee=0)


# ═══════════════════════════════════════════════════════════════════
#  Addresses and config
# ═══════════════════════════════════════════════════════════════════

class TestAddresses:

    def test_new_address_is_fresh(self, alice):
        a, b = alice.new_address(), alice.new_address()
        assert a.diversifier != b.diversifier
        assert a.pkd != b.pkd

    def test_encoded_address_uses_prefix(self, gateway):
        cfg = ShieldFlowConfig()
        cfg.network.address_prefix = "ztest"
        eng = ShieldedWalletEngine(SpendingKey.from_seed(b"p"), gateway=gateway, config=cfg)
        assert eng.encoded_address(0).startswith("ztest")

    def test_raw_key_bytes_accepted(self, gateway):
        raw = SpendingKey.from_seed(b"raw").raw
        eng = ShieldedWalletEngine(raw, gateway=gateway)
        assert eng.viewing_key == SpendingKey.from_seed(b"raw").viewing_key()


class TestGatewayFromConfig:

    def test_default_stub(self):
        assert isinstance(gateway_from_config(ShieldFlowConfig()), StubProofGateway)

    def test_stub_key_from_hex(self):
        cfg = ShieldFlowConfig()
        cfg.prover.stub_key = "abcd"
        gw = gateway_from_config(cfg)
        public = output_public_inputs(b"\x02" * 33, b"\x00" * 32, b"\x02" * 33)
        proof = gw.generate_output_proof(b"\x02" * 33, b"\x00" * 32, b"\x02" * 33)
        assert gw.verify(proof, public)
        assert not StubProofGateway().verify(proof, public)

    def test_external_backend_must_be_injected(self):
        cfg = ShieldFlowConfig()
        cfg.prover.backend = "groth16"
        with pytest.raises(ValueError):
            gateway_from_config(cfg)


# ═══════════════════════════════════════════════════════════════════
#  Persistence
# ═══════════════════════════════════════════════════════════════════

class TestRestart:

    def test_state_restored(self, tmp_path, config, gateway, bob):
        config.storage.enabled = True
        config.storage.path = str(tmp_path / "alice.db")
        sk = SpendingKey.from_seed(b"alice-restart")

        with ShieldedWalletEngine.open(sk, config, gateway) as alice:
            alice.scan_block(1, [mint(alice.address(0), 10 * COIN, gateway)])
            tx = alice.build_transaction([(bob.address(0), 4 * COIN)], fee=FEE)
            alice.apply_transaction(tx, height=2)
            root = alice.tracker.current_root()
            balance = alice.balance()
            next_index = alice._next_index

        with ShieldedWalletEngine.open(sk, config, gateway) as restored:
            assert restored.balance() == balance == 6 * COIN - FEE
            assert restored.tracker.current_root() == root
            assert restored.tracker.size() == 3
            assert restored.height == 2
            assert restored._next_index == next_index
            assert len(restored.note_store.spent_nullifiers()) == 1
            assert [t["tx_id"] for t in restored.store.load_transactions()] == [tx.tx_id]
            assert restored.apply_transaction(tx, height=3) == []
            assert restored.tracker.size() == 3

    def test_without_storage(self, alice):
        assert alice.store is None
        alice.close()
