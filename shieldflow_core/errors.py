"""
Error taxonomy for the ShieldFlow shielded-pool engine.

Every failure the engine raises derives from ``ShieldedError``.  Input
validation failures (keys, addresses, values, encodings) additionally
derive from ``ValueError`` so generic callers can catch them without
importing this module.

Trial-decryption misses are *not* errors; they are reported as ``None``.
"""

from __future__ import annotations


class ShieldedError(Exception):
    """Base class for all engine errors."""


# ── validation ──────────────────────────────────────────────────

class InvalidSpendingKey(ShieldedError, ValueError):
    """Spending key is the wrong length, all-zero, or derives an invalid ivk."""


class InvalidAddress(ShieldedError, ValueError):
    """Address text has an unknown prefix, bad checksum, or bad payload."""


class InvalidRecipientAddress(InvalidAddress):
    """A transaction output names an address that cannot be decoded."""


class InvalidValue(ShieldedError, ValueError):
    """A note or output value is outside ``[0, MAX_MONEY]``."""


class MalformedEncoding(ShieldedError, ValueError):
    """A serialised structure has the wrong tag or length."""


# ── building ────────────────────────────────────────────────────

class InsufficientBalance(ShieldedError):
    """The candidate notes cannot cover outputs plus fee."""

    def __init__(self, have: int, need: int):
        self.have = have
        self.need = need
        super().__init__(f"Insufficient balance: have {have}, need {need}")


class UnbalancedTransaction(ShieldedError):
    """Value commitments do not satisfy the balance equation."""


class DoubleSpendAttempt(ShieldedError):
    """A selected note's nullifier is already in the spent set."""

    def __init__(self, nullifier: bytes):
        self.nullifier = nullifier
        super().__init__(f"Nullifier {nullifier.hex()} already spent")


class ProofGenerationFailed(ShieldedError):
    """The proof gateway could not produce a proof.

    The underlying prover exception, if any, is available as ``__cause__``.
    """

    def __init__(self, statement_id: str, reason: str = ""):
        self.statement_id = statement_id
        msg = f"Proof generation failed for '{statement_id}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


# ── commitment tree ─────────────────────────────────────────────

class UnknownLeaf(ShieldedError, LookupError):
    """A witness was requested for a leaf that was never appended."""

    def __init__(self, leaf_index: int | None):
        self.leaf_index = leaf_index
        if leaf_index is None:
            super().__init__("Note commitment is not in the tree")
        else:
            super().__init__(f"Unknown leaf index {leaf_index}")


class StaleAnchor(ShieldedError):
    """A witness refers to a root that is no longer retained."""


class CommitmentTreeFull(ShieldedError):
    """The commitment tree has reached its 2**depth capacity."""
