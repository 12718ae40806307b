"""
Public-data validator for shielded transactions.

Checks everything a third party can check without any key material:
  - value balance range (signed: shielding transactions are negative)
  - nullifier uniqueness (within the transaction and against the spent set)
  - anchors against retained commitment-tree roots
  - spend and output proofs via the ProofGateway
  - spend-authorisation signatures under ``rk``
  - the binding signature under ``bvk`` derived from the value commitments
"""

from __future__ import annotations

from typing import Callable

from shieldflow_core.commitments import (
    VALUE_COMMITMENT_RANDOMNESS_BASE,
    ValueCommitment,
    value_commitment,
)
from shieldflow_core.curve import G
from shieldflow_core.errors import MalformedEncoding
from shieldflow_core.proofs import ProofGateway
from shieldflow_core.signatures import verify
from shieldflow_core.transaction import (
    MAX_MONEY,
    TEC_BAD_BINDING,
    TEC_BAD_PROOF,
    TEC_BAD_SPEND_AUTH,
    TEC_BAD_VALUE_BALANCE,
    TEC_DUPLICATE_NULLIFIER,
    TEC_MALFORMED,
    TEC_NULLIFIER_SPENT,
    TEC_UNKNOWN_ANCHOR,
    TES_SUCCESS,
    ShieldedTransaction,
)


class ShieldedTransactionValidator:
    """Stateless validator — checks a transaction against chain-state callbacks."""

    def __init__(
        self,
        gateway: ProofGateway,
        is_valid_anchor: Callable[[bytes], bool],
        is_spent: Callable[[bytes], bool] = lambda nf: False,
    ):
        self.gateway = gateway
        self.is_valid_anchor = is_valid_anchor
        self.is_spent = is_spent

    def validate(self, tx: ShieldedTransaction) -> tuple[bool, int, str]:
        """
        Full validation pipeline.
        Returns (is_valid, result_code, human_message).
        """
        # 1. Value balance
        if not -MAX_MONEY <= tx.value_balance <= MAX_MONEY:
            return False, TEC_BAD_VALUE_BALANCE, f"Value balance {tx.value_balance} out of range"

        # 2. Nullifiers
        nullifiers = tx.nullifiers
        if len(set(nullifiers)) != len(nullifiers):
            return False, TEC_DUPLICATE_NULLIFIER, "Duplicate nullifier within transaction"
        for nf in nullifiers:
            if self.is_spent(nf):
                return False, TEC_NULLIFIER_SPENT, f"Nullifier {nf.hex()[:16]} already spent"

        # 3. Anchors
        for spend in tx.spends:
            if not self.is_valid_anchor(spend.anchor):
                return False, TEC_UNKNOWN_ANCHOR, f"Unknown anchor {spend.anchor.hex()[:16]}"

        # 4. Proofs
        for i, spend in enumerate(tx.spends):
            if not self.gateway.verify(spend.proof, spend.public_inputs()):
                return False, TEC_BAD_PROOF, f"Invalid spend proof #{i}"
        for i, output in enumerate(tx.outputs):
            if not self.gateway.verify(output.proof, output.public_inputs()):
                return False, TEC_BAD_PROOF, f"Invalid output proof #{i}"

        # 5. Spend authorisation
        sighash = tx.sighash()
        for i, spend in enumerate(tx.spends):
            if not verify(spend.rk, G, sighash, spend.spend_auth_sig):
                return False, TEC_BAD_SPEND_AUTH, f"Invalid spend authorisation #{i}"

        # 6. Binding signature
        try:
            bvk = ValueCommitment.zero()
            for spend in tx.spends:
                bvk = bvk + ValueCommitment.from_bytes(spend.cv)
            for output in tx.outputs:
                bvk = bvk - ValueCommitment.from_bytes(output.cv)
        except MalformedEncoding as exc:
            return False, TEC_MALFORMED, str(exc)
        bvk = bvk - value_commitment(tx.value_balance, 0)
        if not verify(bvk.to_bytes(), VALUE_COMMITMENT_RANDOMNESS_BASE, sighash, tx.binding_sig):
            return False, TEC_BAD_BINDING, "Invalid binding signature"

        return True, TES_SUCCESS, "Valid"

    def validate_batch(self, txns: list) -> list:
        """
        Validate a list of transactions in order.  Returns list of
        (tx, valid, code, msg).  A nullifier accepted earlier in the batch
        counts as spent for later entries.
        """
        results = []
        pending: set[bytes] = set()
        base_is_spent = self.is_spent
        self.is_spent = lambda nf: nf in pending or base_is_spent(nf)
        try:
            for tx in txns:
                ok, code, msg = self.validate(tx)
                if ok:
                    pending.update(tx.nullifiers)
                results.append((tx, ok, code, msg))
        finally:
            self.is_spent = base_is_spent
        return results
