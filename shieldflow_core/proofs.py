"""
ProofGateway — the boundary to the zero-knowledge prover.

The engine never implements a proof system.  It assembles the public and
private inputs of two statements and hands them to a gateway:

  - spend:  "a note with this commitment exists under ``anchor``, its
            nullifier is ``nullifier`` and I know the key behind ``rk``"
  - output: "``cmu`` is a well-formed commitment consistent with the
            encrypted plaintext behind ``ephemeral_key``"

Two gateways ship here:

  - ``StubProofGateway`` — deterministic keyed BLAKE2b stand-in used by the
    test-suite and local development.  It checks the private witness it
    is given, so an inconsistent spend still fails to "prove".
  - ``ExternalProverGateway`` — adapts a real backend speaking the
    request/response dict protocol::

        prove({statement_id, private_inputs, public_inputs})
            -> {proof_bytes, public_signals}
        verify({proof_bytes, public_signals, verification_key_id}) -> bool
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable

from shieldflow_core.errors import MalformedEncoding, ProofGenerationFailed

logger = logging.getLogger("shieldflow_proofs")

PROOF_DATA_LEN = 192
PROOF_LEN = 1 + PROOF_DATA_LEN

SPEND_STATEMENT = "shieldflow.spend.v1"
OUTPUT_STATEMENT = "shieldflow.output.v1"


class ProofKind(IntEnum):
    GROTH16 = 1
    STUB = 2


@dataclass(frozen=True)
class Proof:
    kind: ProofKind
    data: bytes

    def __post_init__(self):
        if not isinstance(self.kind, ProofKind):
            try:
                object.__setattr__(self, "kind", ProofKind(self.kind))
            except ValueError as exc:
                raise MalformedEncoding(f"Unknown proof kind {self.kind!r}") from exc
        if len(self.data) != PROOF_DATA_LEN:
            raise MalformedEncoding(
                f"Proof data must be {PROOF_DATA_LEN} bytes, got {len(self.data)}"
            )

    def to_bytes(self) -> bytes:
        return bytes([self.kind]) + self.data

    @classmethod
    def from_bytes(cls, data: bytes) -> Proof:
        if len(data) != PROOF_LEN:
            raise MalformedEncoding(f"Proof must be {PROOF_LEN} bytes, got {len(data)}")
        return cls(data[0], data[1:])


def spend_public_inputs(cv: bytes, anchor: bytes, nullifier: bytes, rk: bytes) -> dict[str, Any]:
    return {"statement_id": SPEND_STATEMENT, "cv": cv, "anchor": anchor,
            "nullifier": nullifier, "rk": rk}


def output_public_inputs(cv: bytes, cmu: bytes, ephemeral_key: bytes) -> dict[str, Any]:
    return {"statement_id": OUTPUT_STATEMENT, "cv": cv, "cmu": cmu,
            "ephemeral_key": ephemeral_key}


def _canonical(public_inputs: dict[str, Any]) -> bytes:
    """Deterministic byte encoding of a public-input dict."""
    out = bytearray()
    for name in sorted(public_inputs):
        value = public_inputs[name]
        if isinstance(value, str):
            value = value.encode("utf-8")
        key = name.encode("utf-8")
        out += struct.pack(">H", len(key)) + key + struct.pack(">I", len(value)) + value
    return bytes(out)


# ===================================================================
#  Gateway contract
# ===================================================================

class ProofGateway(ABC):
    """
    Abstract prover/verifier.

    Subclasses implement :meth:`_prove` and :meth:`verify`.  Any exception
    escaping ``_prove`` reaches the caller as :class:`ProofGenerationFailed`
    with the original exception as its ``__cause__``.
    """

    def generate_spend_proof(self, note, cv: bytes, anchor: bytes, nullifier: bytes,
                             rk: bytes, private_inputs: dict | None = None) -> Proof:
        private = {"note": note, **(private_inputs or {})}
        return self._request(SPEND_STATEMENT, private,
                             spend_public_inputs(cv, anchor, nullifier, rk))

    def generate_output_proof(self, cv: bytes, cmu: bytes, ephemeral_key: bytes,
                              private_inputs: dict | None = None) -> Proof:
        return self._request(OUTPUT_STATEMENT, dict(private_inputs or {}),
                             output_public_inputs(cv, cmu, ephemeral_key))

    def _request(self, statement_id: str, private_inputs: dict,
                 public_inputs: dict[str, Any]) -> Proof:
        try:
            return self._prove(statement_id, private_inputs, public_inputs)
        except ProofGenerationFailed:
            raise
        except Exception as exc:
            raise ProofGenerationFailed(statement_id, str(exc)) from exc

    @abstractmethod
    def _prove(self, statement_id: str, private_inputs: dict,
               public_inputs: dict[str, Any]) -> Proof:
        ...

    @abstractmethod
    def verify(self, proof: Proof, public_inputs: dict[str, Any]) -> bool:
        """Check ``proof`` against ``public_inputs``.  Never raises."""


# ===================================================================
#  Stub backend
# ===================================================================

class StubProofGateway(ProofGateway):
    """
    Keyed-hash stand-in for a zk-SNARK.

    A "proof" is 192 bytes of BLAKE2b keyed with ``key`` over the canonical
    public inputs.  Anyone holding the key can forge; it exists only so
    that transaction assembly is testable without a proving backend.
    """

    def __init__(self, key: bytes = b"shieldflow-stub"):
        if not key or len(key) > 64:
            raise ValueError("Stub key must be 1..64 bytes")
        self._key = key

    def _digest(self, public_inputs: dict[str, Any]) -> bytes:
        msg = _canonical(public_inputs)
        return b"".join(
            hashlib.blake2b(bytes([i]) + msg, key=self._key, digest_size=64).digest()
            for i in range(PROOF_DATA_LEN // 64)
        )

    def _prove(self, statement_id, private_inputs, public_inputs) -> Proof:
        if statement_id == SPEND_STATEMENT:
            self._check_spend_witness(private_inputs, public_inputs)
        elif statement_id == OUTPUT_STATEMENT:
            note = private_inputs.get("note")
            if note is not None and note.cmu() != public_inputs["cmu"]:
                raise ProofGenerationFailed(statement_id, "note does not open cmu")
        else:
            raise ProofGenerationFailed(statement_id, "unknown statement")
        return Proof(ProofKind.STUB, self._digest(public_inputs))

    @staticmethod
    def _check_spend_witness(private_inputs: dict, public_inputs: dict) -> None:
        witness = private_inputs.get("witness")
        if witness is None:
            return
        note = private_inputs["note"]
        if witness.cmu != note.cmu():
            raise ProofGenerationFailed(SPEND_STATEMENT, "witness leaf is not the note commitment")
        if witness.compute_root() != public_inputs["anchor"]:
            raise ProofGenerationFailed(SPEND_STATEMENT, "witness does not reach anchor")

    def verify(self, proof: Proof, public_inputs: dict[str, Any]) -> bool:
        if not isinstance(proof, Proof) or proof.kind != ProofKind.STUB:
            return False
        try:
            expected = self._digest(public_inputs)
        except (TypeError, AttributeError):
            return False
        return hmac.compare_digest(expected, proof.data)


# ===================================================================
#  External backend
# ===================================================================

class ExternalProverGateway(ProofGateway):
    """
    Adapter for an out-of-process prover.

    ``prover`` and ``verifier`` are plain callables; transport, timeouts and
    retries are theirs to handle.
    """

    def __init__(self, prover: Callable[[dict], dict], verifier: Callable[[dict], bool],
                 verification_key_ids: dict[str, str] | None = None,
                 kind: ProofKind = ProofKind.GROTH16):
        self._prover = prover
        self._verifier = verifier
        self._vk_ids = verification_key_ids or {
            SPEND_STATEMENT: "spend", OUTPUT_STATEMENT: "output",
        }
        self._kind = kind

    def _prove(self, statement_id, private_inputs, public_inputs) -> Proof:
        response = self._prover({
            "statement_id": statement_id,
            "private_inputs": private_inputs,
            "public_inputs": public_inputs,
        })
        proof_bytes = response.get("proof_bytes")
        if proof_bytes is None:
            raise ProofGenerationFailed(statement_id, "prover returned no proof")
        signals = response.get("public_signals")
        if signals is not None and signals != public_inputs:
            raise ProofGenerationFailed(statement_id, "public signals do not match request")
        logger.debug(f"External proof received for {statement_id}")
        return Proof(self._kind, bytes(proof_bytes))

    def verify(self, proof: Proof, public_inputs: dict[str, Any]) -> bool:
        if not isinstance(proof, Proof) or proof.kind != self._kind:
            return False
        vk_id = self._vk_ids.get(public_inputs.get("statement_id", ""))
        if vk_id is None:
            return False
        try:
            return bool(self._verifier({
                "proof_bytes": proof.data,
                "public_signals": public_inputs,
                "verification_key_id": vk_id,
            }))
        except Exception as exc:
            logger.warning(f"Verifier error for {vk_id}: {exc}")
            return False
