"""
MerkleAnchorTracker — append-only note-commitment tree.

Fixed-depth binary tree (depth 32 → 2**32 leaves).  Unfilled subtrees
hash to precomputed "empty" roots, so only the appended frontier has to be
materialised:

    node(h+1) = BLAKE2b-256(h ‖ left ‖ right, "ShieldFlowMerkle")

A bounded history of recent roots is retained.  A spend's anchor must be
one of them; a witness whose anchor has dropped out of the history is
stale and is rejected explicitly rather than silently failing to verify.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field

from shieldflow_core.crypto_utils import blake2b
from shieldflow_core.errors import CommitmentTreeFull, StaleAnchor, UnknownLeaf

logger = logging.getLogger("shieldflow_merkle")

DEFAULT_DEPTH = 32
DEFAULT_ROOT_HISTORY = 100

_MERKLE_PERSON = b"ShieldFlowMerkle"
EMPTY_LEAF = blake2b(b"uncommitted", _MERKLE_PERSON, 32)


def merkle_hash(layer: int, left: bytes, right: bytes) -> bytes:
    return blake2b(bytes([layer]) + left + right, _MERKLE_PERSON, 32)


def _empty_roots(depth: int) -> list[bytes]:
    roots = [EMPTY_LEAF]
    for h in range(depth):
        roots.append(merkle_hash(h, roots[h], roots[h]))
    return roots


@dataclass(frozen=True)
class Witness:
    """Authentication path for one leaf, bottom-up."""
    leaf_index: int
    cmu: bytes
    path_elements: list[bytes] = field(default_factory=list)
    path_indices: list[int] = field(default_factory=list)
    anchor: bytes = b""

    def compute_root(self) -> bytes:
        node = self.cmu
        for h, (sibling, is_right) in enumerate(zip(self.path_elements, self.path_indices)):
            node = merkle_hash(h, sibling, node) if is_right else merkle_hash(h, node, sibling)
        return node


class MerkleAnchorTracker:

    def __init__(self, depth: int = DEFAULT_DEPTH, root_history: int = DEFAULT_ROOT_HISTORY):
        if not 1 <= depth <= 32:
            raise ValueError(f"Tree depth must be in [1, 32], got {depth}")
        if root_history < 1:
            raise ValueError("root_history must be at least 1")
        self.depth = depth
        self.capacity = 2 ** depth
        self._empty = _empty_roots(depth)
        self._levels: list[list[bytes]] = [[] for _ in range(depth + 1)]
        self._roots: deque[bytes] = deque([self._empty[depth]], maxlen=root_history)
        self._positions: dict[bytes, int] = {}
        self._lock = threading.RLock()

    # ── mutation ─────────────────────────────────────────────────

    def append_commitment(self, cmu: bytes) -> int:
        """Append a leaf and return its index."""
        if len(cmu) != 32:
            raise ValueError("Commitment must be 32 bytes")
        with self._lock:
            index = len(self._levels[0])
            if index >= self.capacity:
                raise CommitmentTreeFull(f"Tree of depth {self.depth} is full")
            self._levels[0].append(cmu)
            self._positions.setdefault(cmu, index)
            node, pos = cmu, index
            for h in range(self.depth):
                sibling = self._node(h, pos ^ 1)
                node = merkle_hash(h, sibling, node) if pos & 1 else merkle_hash(h, node, sibling)
                pos >>= 1
                level = self._levels[h + 1]
                if pos < len(level):
                    level[pos] = node
                else:
                    level.append(node)
            self._roots.append(node)
        logger.debug(f"Appended leaf {index}")
        return index

    # ── queries ──────────────────────────────────────────────────

    def _node(self, height: int, index: int) -> bytes:
        level = self._levels[height]
        return level[index] if index < len(level) else self._empty[height]

    def size(self) -> int:
        with self._lock:
            return len(self._levels[0])

    def current_root(self) -> bytes:
        with self._lock:
            return self._roots[-1]

    def position_of(self, cmu: bytes) -> int | None:
        with self._lock:
            return self._positions.get(cmu)

    def retained_roots(self) -> list[bytes]:
        with self._lock:
            return list(self._roots)

    def is_valid_anchor(self, anchor: bytes) -> bool:
        with self._lock:
            return anchor in self._roots

    def witness_for(self, leaf_index: int) -> Witness:
        """Authentication path for ``leaf_index`` against the current root."""
        with self._lock:
            if not 0 <= leaf_index < len(self._levels[0]):
                raise UnknownLeaf(leaf_index)
            elements, indices = [], []
            pos = leaf_index
            for h in range(self.depth):
                elements.append(self._node(h, pos ^ 1))
                indices.append(pos & 1)
                pos >>= 1
            return Witness(
                leaf_index=leaf_index,
                cmu=self._levels[0][leaf_index],
                path_elements=elements,
                path_indices=indices,
                anchor=self._roots[-1],
            )

    def check_witness(self, witness: Witness) -> bool:
        """
        True if ``witness`` recomputes to its anchor.

        Raises :class:`StaleAnchor` when that anchor is no longer retained.
        """
        if not self.is_valid_anchor(witness.anchor):
            raise StaleAnchor(f"Anchor {witness.anchor.hex()[:16]} is no longer retained")
        if len(witness.path_elements) != self.depth:
            return False
        return witness.compute_root() == witness.anchor
