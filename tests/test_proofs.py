"""
Tests for shieldflow_core.proofs — the prover boundary.

Covers:
  - Proof length / kind validation and byte encoding
  - StubProofGateway: verify succeeds for its own proofs only
  - stub spend witness checks
  - ExternalProverGateway request / response protocol
  - backend failures surface as ProofGenerationFailed with a cause
"""

from __future__ import annotations

import os

import pytest

from shieldflow_core.address import generate_address
from shieldflow_core.errors import MalformedEncoding, ProofGenerationFailed
from shieldflow_core.merkle import MerkleAnchorTracker
from shieldflow_core.note import ShieldedNote
from shieldflow_core.proofs import (
    OUTPUT_STATEMENT,
    PROOF_DATA_LEN,
    PROOF_LEN,
    SPEND_STATEMENT,
    ExternalProverGateway,
    Proof,
    ProofKind,
    StubProofGateway,
    output_public_inputs,
    spend_public_inputs,
)

CV = b"\x02" + b"\x11" * 32
RK = b"\x03" + b"\x22" * 32
EPK = b"\x02" + b"\x33" * 32


@pytest.fixture
def note(viewing_key):
    return ShieldedNote.new(generate_address(viewing_key, 0), 1000)


# ═══════════════════════════════════════════════════════════════════
#  Proof container
# ═══════════════════════════════════════════════════════════════════

class TestProof:

    def test_lengths(self):
        assert PROOF_DATA_LEN == 192
        assert PROOF_LEN == 193

    def test_to_from_bytes(self):
        p = Proof(ProofKind.GROTH16, os.urandom(PROOF_DATA_LEN))
        raw = p.to_bytes()
        assert raw[0] == 1
        assert Proof.from_bytes(raw) == p

    def test_int_kind_is_converted(self):
        p = Proof(2, b"\x00" * PROOF_DATA_LEN)
        assert p.kind is ProofKind.STUB

    def test_unknown_kind(self):
        with pytest.raises(MalformedEncoding):
            Proof(9, b"\x00" * PROOF_DATA_LEN)

    def test_bad_data_length(self):
        with pytest.raises(MalformedEncoding):
            Proof(ProofKind.STUB, b"\x00" * 191)

    def test_from_bytes_bad_length(self):
        with pytest.raises(MalformedEncoding):
            Proof.from_bytes(b"\x01" * 10)

    def test_public_inputs_carry_statement_id(self):
        assert spend_public_inputs(CV, b"a" * 32, b"n" * 32, RK)["statement_id"] == SPEND_STATEMENT
        assert output_public_inputs(CV, b"c" * 32, EPK)["statement_id"] == OUTPUT_STATEMENT


# ═══════════════════════════════════════════════════════════════════
#  Stub gateway
# ═══════════════════════════════════════════════════════════════════

class TestStubGateway:

    def test_output_proof_verifies(self, gateway, note):
        proof = gateway.generate_output_proof(CV, note.cmu(), EPK, {"note": note})
        assert proof.kind is ProofKind.STUB
        assert gateway.verify(proof, output_public_inputs(CV, note.cmu(), EPK))

    def test_deterministic(self, gateway, note):
        a = gateway.generate_output_proof(CV, note.cmu(), EPK)
        b = gateway.generate_output_proof(CV, note.cmu(), EPK)
        assert a == b

    def test_changed_public_input_fails(self, gateway, note):
        proof = gateway.generate_output_proof(CV, note.cmu(), EPK)
        assert not gateway.verify(proof, output_public_inputs(CV, os.urandom(32), EPK))

    def test_other_key_rejects(self, gateway, note):
        proof = gateway.generate_output_proof(CV, note.cmu(), EPK)
        other = StubProofGateway(b"someone-else")
        assert not other.verify(proof, output_public_inputs(CV, note.cmu(), EPK))

    def test_wrong_kind_rejected(self, gateway, note):
        proof = gateway.generate_output_proof(CV, note.cmu(), EPK)
        relabelled = Proof(ProofKind.GROTH16, proof.data)
        assert not gateway.verify(relabelled, output_public_inputs(CV, note.cmu(), EPK))

    def test_output_note_mismatch(self, gateway, note):
        with pytest.raises(ProofGenerationFailed) as exc_info:
            gateway.generate_output_proof(CV, os.urandom(32), EPK, {"note": note})
        assert exc_info.value.statement_id == OUTPUT_STATEMENT

    def test_spend_with_valid_witness(self, gateway, note, viewing_key):
        tracker = MerkleAnchorTracker(depth=8)
        pos = tracker.append_commitment(note.cmu())
        witness = tracker.witness_for(pos)
        nf = note.nullifier(viewing_key.nk)
        anchor = tracker.current_root()
        proof = gateway.generate_spend_proof(note, CV, anchor, nf, RK, {"witness": witness})
        assert gateway.verify(proof, spend_public_inputs(CV, anchor, nf, RK))

    def test_spend_witness_for_other_leaf(self, gateway, note, viewing_key):
        tracker = MerkleAnchorTracker(depth=8)
        tracker.append_commitment(os.urandom(32))
        tracker.append_commitment(note.cmu())
        witness = tracker.witness_for(0)
        with pytest.raises(ProofGenerationFailed):
            gateway.generate_spend_proof(note, CV, tracker.current_root(),
                                         note.nullifier(viewing_key.nk), RK,
                                         {"witness": witness})

    def test_spend_witness_wrong_anchor(self, gateway, note, viewing_key):
        tracker = MerkleAnchorTracker(depth=8)
        tracker.append_commitment(note.cmu())
        witness = tracker.witness_for(0)
        with pytest.raises(ProofGenerationFailed):
            gateway.generate_spend_proof(note, CV, os.urandom(32),
                                         note.nullifier(viewing_key.nk), RK,
                                         {"witness": witness})

    @pytest.mark.parametrize("key", [b"", b"k" * 65])
    def test_bad_key(self, key):
        with pytest.raises(ValueError):
            StubProofGateway(key)


# ═══════════════════════════════════════════════════════════════════
#  External gateway
# ═══════════════════════════════════════════════════════════════════

class TestExternalGateway:

    def test_request_shape_and_verify(self):
        requests, verifications = [], []

        def prover(req):
            requests.append(req)
            return {"proof_bytes": b"\x5a" * PROOF_DATA_LEN,
                    "public_signals": req["public_inputs"]}

        def verifier(req):
            verifications.append(req)
            return req["proof_bytes"] == b"\x5a" * PROOF_DATA_LEN

        gw = ExternalProverGateway(prover, verifier)
        cmu = os.urandom(32)
        proof = gw.generate_output_proof(CV, cmu, EPK, {"esk": 5})
        assert proof.kind is ProofKind.GROTH16
        assert requests[0]["statement_id"] == OUTPUT_STATEMENT
        assert requests[0]["private_inputs"] == {"esk": 5}
        assert requests[0]["public_inputs"]["cmu"] == cmu

        assert gw.verify(proof, output_public_inputs(CV, cmu, EPK))
        assert verifications[0]["verification_key_id"] == "output"

    def test_missing_proof(self):
        gw = ExternalProverGateway(lambda req: {}, lambda req: True)
        with pytest.raises(ProofGenerationFailed):
            gw.generate_output_proof(CV, os.urandom(32), EPK)

    def test_mismatched_public_signals(self):
        gw = ExternalProverGateway(
            lambda req: {"proof_bytes": b"\x00" * PROOF_DATA_LEN, "public_signals": {"x": 1}},
            lambda req: True,
        )
        with pytest.raises(ProofGenerationFailed):
            gw.generate_output_proof(CV, os.urandom(32), EPK)

    def test_backend_exception_is_wrapped(self):
        def prover(req):
            raise ConnectionError("prover unreachable")

        gw = ExternalProverGateway(prover, lambda req: True)
        with pytest.raises(ProofGenerationFailed) as exc_info:
            gw.generate_output_proof(CV, os.urandom(32), EPK)
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert "prover unreachable" in str(exc_info.value)

    def test_short_proof_is_wrapped(self):
        gw = ExternalProverGateway(lambda req: {"proof_bytes": b"\x00" * 10}, lambda req: True)
        with pytest.raises(ProofGenerationFailed) as exc_info:
            gw.generate_output_proof(CV, os.urandom(32), EPK)
        assert isinstance(exc_info.value.__cause__, MalformedEncoding)

    def test_verifier_exception_is_false(self):
        def verifier(req):
            raise TimeoutError

        gw = ExternalProverGateway(
            lambda req: {"proof_bytes": b"\x00" * PROOF_DATA_LEN}, verifier,
        )
        cmu = os.urandom(32)
        proof = gw.generate_output_proof(CV, cmu, EPK)
        assert gw.verify(proof, output_public_inputs(CV, cmu, EPK)) is False

    def test_unknown_statement_rejected(self):
        gw = ExternalProverGateway(lambda req: {}, lambda req: True)
        proof = Proof(ProofKind.GROTH16, b"\x00" * PROOF_DATA_LEN)
        assert gw.verify(proof, {"statement_id": "other"}) is False
