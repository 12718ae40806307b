"""
TransactionBuilder — assembles a ShieldedTransaction.

Each ``build`` call walks a fixed state machine::

    SELECT_INPUTS → COMPUTE_CHANGE → BUILD_SPENDS → BUILD_OUTPUTS → BIND → DONE

The builder reads the NoteStore (spent set) and the MerkleAnchorTracker
(anchor and witnesses) but never mutates either.  Applying the result,
marking nullifiers spent and appending the new commitments, is the
caller's job.  A failed build therefore leaves no trace in wallet state.

Balance is enforced with value commitments::

    bsk = Σ rcv_spends − Σ rcv_outputs
    bvk = Σ cv_spends  − Σ cv_outputs − [value_balance] V   ( == [bsk] R )

and the binding signature under ``bsk`` proves the equation holds
without revealing any individual value.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from shieldflow_core.address import DEFAULT_PREFIX, Address, generate_address, parse_address
from shieldflow_core.commitments import (
    VALUE_COMMITMENT_RANDOMNESS_BASE,
    ValueCommitment,
    value_commitment,
)
from shieldflow_core.curve import G, N, encode_point, point_add, point_mul, random_scalar
from shieldflow_core.errors import (
    DoubleSpendAttempt,
    InsufficientBalance,
    InvalidAddress,
    InvalidRecipientAddress,
    InvalidValue,
    ProofGenerationFailed,
    UnbalancedTransaction,
    UnknownLeaf,
)
from shieldflow_core.keys import SpendingKey, derive_viewing_key, expand_spending_key
from shieldflow_core.merkle import MerkleAnchorTracker
from shieldflow_core.note import MEMO_LEN, ShieldedNote
from shieldflow_core.note_encryption import encrypt_note
from shieldflow_core.note_store import NoteStore
from shieldflow_core.proofs import OUTPUT_STATEMENT, SPEND_STATEMENT, ProofGateway
from shieldflow_core.signatures import sign
from shieldflow_core.transaction import (
    MAX_MONEY,
    OutputDescription,
    ShieldedTransaction,
    SpendDescription,
    compute_sighash,
)

logger = logging.getLogger("shieldflow_builder")


class BuildState(Enum):
    SELECT_INPUTS = "select_inputs"
    COMPUTE_CHANGE = "compute_change"
    BUILD_SPENDS = "build_spends"
    BUILD_OUTPUTS = "build_outputs"
    BIND = "bind"
    DONE = "done"


@dataclass(frozen=True)
class OutputRequest:
    address: Address
    value: int
    memo: bytes = b""
    is_change: bool = False


@dataclass
class _PendingSpend:
    note: ShieldedNote
    description: SpendDescription
    rcv: int
    alpha: int


def _check_amount(value, what: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= MAX_MONEY:
        raise InvalidValue(f"{what} must be an integer in [0, {MAX_MONEY}], got {value!r}")
    return value


class TransactionBuilder:
    """
    Builds transactions for one spending key.

    ``change_address`` supplies a fresh self-address for change; by default
    a random diversifier index is used.
    """

    def __init__(
        self,
        spending_key: SpendingKey | bytes,
        note_store: NoteStore,
        tracker: MerkleAnchorTracker,
        gateway: ProofGateway,
        change_address: Callable[[], Address] | None = None,
        address_prefix: str = DEFAULT_PREFIX,
    ):
        raw = spending_key.raw if isinstance(spending_key, SpendingKey) else bytes(spending_key)
        self._expsk = expand_spending_key(raw)
        self.viewing_key = derive_viewing_key(raw)
        self.note_store = note_store
        self.tracker = tracker
        self.gateway = gateway
        self.address_prefix = address_prefix
        self._change_address = change_address or (
            lambda: generate_address(self.viewing_key, secrets.randbelow(2**32))
        )
        self.state = BuildState.DONE
        self.last_change: OutputRequest | None = None

    # ── public API ───────────────────────────────────────────────

    def build(self, inputs: Iterable[ShieldedNote], outputs: Iterable[tuple],
              fee: int, transparent_in: int = 0, transparent_out: int = 0) -> ShieldedTransaction:
        """
        Spend from ``inputs`` to ``outputs`` (``(address, value[, memo])``)
        paying ``fee``.  Returns the finished, immutable transaction.

        ``transparent_in`` is transparent value entering the pool (shielding)
        and ``transparent_out`` is value leaving it (unshielding).  Both move
        ``value_balance``, which becomes negative when more value enters the
        pool than leaves it.
        """
        self.state = BuildState.SELECT_INPUTS
        self.last_change = None
        fee = _check_amount(fee, "Fee")
        transparent_in = _check_amount(transparent_in, "Transparent input")
        transparent_out = _check_amount(transparent_out, "Transparent output")
        requests = [self._parse_output(o) for o in outputs]
        selected = self._select_inputs(list(inputs), requests, fee + transparent_out, transparent_in)

        self.state = BuildState.COMPUTE_CHANGE
        in_sum = sum(n.value for n in selected)
        out_sum = sum(r.value for r in requests)
        change = in_sum + transparent_in - out_sum - fee - transparent_out
        if change > 0:
            self.last_change = OutputRequest(self._change_address(), change, b"", is_change=True)
            requests.append(self.last_change)
            logger.debug(f"Change output of {change}")
        # Change must not be recognisable by its position.
        secrets.SystemRandom().shuffle(requests)

        self.state = BuildState.BUILD_SPENDS
        spends = self._build_spends(selected)

        self.state = BuildState.BUILD_OUTPUTS
        built_outputs = [self._build_output(r) for r in requests]

        self.state = BuildState.BIND
        tx = self._bind(spends, built_outputs, value_balance=in_sum - sum(r.value for r in requests))

        self.state = BuildState.DONE
        logger.info(
            f"Built tx {tx.tx_id[:16]}: {len(tx.spends)} spends, "
            f"{len(tx.outputs)} outputs, fee {fee}",
            extra={"tx_id": tx.tx_id, "value_balance": tx.value_balance},
        )
        return tx

    # ── SELECT_INPUTS ────────────────────────────────────────────

    def _parse_output(self, output: tuple) -> OutputRequest:
        if len(output) == 2:
            recipient, value = output
            memo = b""
        elif len(output) == 3:
            recipient, value, memo = output
        else:
            raise ValueError(f"Output must be (address, value[, memo]), got {output!r}")
        if isinstance(recipient, Address):
            if recipient.pkd_point() is None:
                raise InvalidRecipientAddress("Recipient pkd is not a valid curve point")
            address = recipient
        else:
            try:
                address = parse_address(recipient, self.address_prefix)
            except InvalidAddress as exc:
                raise InvalidRecipientAddress(f"Cannot decode recipient {recipient!r}: {exc}") from exc
        if isinstance(memo, str):
            memo = memo.encode("utf-8")
        if memo and len(memo) > MEMO_LEN:
            raise InvalidValue(f"Memo exceeds {MEMO_LEN} bytes")
        return OutputRequest(address, _check_amount(value, "Output value"), memo or b"")

    def _select_inputs(self, candidates: list[ShieldedNote], requests: list[OutputRequest],
                       debits: int, credits: int = 0) -> list[ShieldedNote]:
        seen: set[bytes] = set()
        for note in candidates:
            nf = self.note_store.nullifier_for(note)
            if nf in seen or self.note_store.is_spent(nf):
                raise DoubleSpendAttempt(nf)
            seen.add(nf)

        total = sum(r.value for r in requests) + debits
        if total > MAX_MONEY:
            raise InvalidValue(f"Total output {total} exceeds {MAX_MONEY}")
        need = max(total - credits, 0)
        selected, have = [], 0
        for note in candidates:
            if have >= need:
                break
            selected.append(note)
            have += note.value
        if have < need:
            raise InsufficientBalance(have=have, need=need)
        return selected

    # ── BUILD_SPENDS ─────────────────────────────────────────────

    def _position(self, note: ShieldedNote) -> int:
        if note.position is not None:
            return note.position
        position = self.tracker.position_of(note.cmu())
        if position is None:
            raise UnknownLeaf(None)
        return position

    def _build_spends(self, notes: list[ShieldedNote]) -> list[_PendingSpend]:
        anchor = self.tracker.current_root()
        ak = self.viewing_key.ak_point
        pending = []
        for note in notes:
            witness = self.tracker.witness_for(self._position(note))
            rcv = random_scalar()
            cv = value_commitment(note.value, rcv).to_bytes()
            nf = self.note_store.nullifier_for(note)
            alpha = random_scalar()
            rk = encode_point(point_add(ak, point_mul(G, alpha)))
            proof = self._prove(
                SPEND_STATEMENT, self.gateway.generate_spend_proof,
                note, cv, anchor, nf, rk,
                private_inputs={"witness": witness, "alpha": alpha, "rcv": rcv},
            )
            desc = SpendDescription(cv=cv, anchor=anchor, nullifier=nf, rk=rk, proof=proof)
            pending.append(_PendingSpend(note, desc, rcv, alpha))
        return pending

    # ── BUILD_OUTPUTS ────────────────────────────────────────────

    def _build_output(self, request: OutputRequest) -> tuple[OutputDescription, int]:
        note = ShieldedNote.new(request.address, request.value, request.memo)
        rcv = random_scalar()
        cv = value_commitment(note.value, rcv).to_bytes()
        esk = random_scalar()
        encrypted = encrypt_note(note, self._expsk.ovk, cv, esk=esk)
        cmu = note.cmu()
        proof = self._prove(
            OUTPUT_STATEMENT, self.gateway.generate_output_proof,
            cv, cmu, encrypted.ephemeral_key,
            private_inputs={"note": note, "rcv": rcv, "esk": esk},
        )
        desc = OutputDescription(
            cv=cv, cmu=cmu, ephemeral_key=encrypted.ephemeral_key,
            enc_ciphertext=encrypted.enc_ciphertext,
            out_ciphertext=encrypted.out_ciphertext, proof=proof,
        )
        return desc, rcv

    @staticmethod
    def _prove(statement_id: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ProofGenerationFailed:
            raise
        except Exception as exc:
            raise ProofGenerationFailed(statement_id, str(exc)) from exc

    # ── BIND ─────────────────────────────────────────────────────

    def _bind(self, spends: list[_PendingSpend], outputs: list[tuple[OutputDescription, int]],
              value_balance: int) -> ShieldedTransaction:
        bsk = (sum(s.rcv for s in spends) - sum(rcv for _, rcv in outputs)) % N
        bvk = ValueCommitment.zero()
        for s in spends:
            bvk = bvk + ValueCommitment.from_bytes(s.description.cv)
        for desc, _ in outputs:
            bvk = bvk - ValueCommitment.from_bytes(desc.cv)
        bvk = bvk - value_commitment(value_balance, 0)
        if bvk.to_bytes() != encode_point(point_mul(VALUE_COMMITMENT_RANDOMNESS_BASE, bsk)):
            raise UnbalancedTransaction("Value commitments do not balance")

        output_descs = [desc for desc, _ in outputs]
        sighash = compute_sighash([s.description for s in spends], output_descs, value_balance)
        signed = []
        for s in spends:
            rsk = (self._expsk.ask + s.alpha) % N
            sig = sign(rsk, G, sighash)
            d = s.description
            signed.append(SpendDescription(
                cv=d.cv, anchor=d.anchor, nullifier=d.nullifier, rk=d.rk,
                proof=d.proof, spend_auth_sig=sig,
            ))
        binding_sig = sign(bsk, VALUE_COMMITMENT_RANDOMNESS_BASE, sighash)
        return ShieldedTransaction(
            spends=tuple(signed), outputs=tuple(output_descs),
            value_balance=value_balance, binding_sig=binding_sig,
        )
