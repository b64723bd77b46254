# crypto_core/merkle.py
"""
Fixed-depth append-only commitment tree.

Empty leaves are 32 zero bytes. Interior nodes are merkle_node(left, right).
In a proof, bit i of path_bits is set when the running node is the right
child at level i (so sibling i sits on its left).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from shielded_pool.crypto_core.commitments import merkle_node
from shielded_pool.errors import InvalidInput, PoolConfigurationError, ShieldedPoolError

ZERO_LEAF = b"\x00" * 32


def zero_hashes(depth: int) -> List[bytes]:
    """zero_hashes(d)[i] is the root of an empty subtree of height i."""
    zs = [ZERO_LEAF]
    for _ in range(depth):
        zs.append(merkle_node(zs[-1], zs[-1]))
    return zs


@dataclass(frozen=True)
class MerkleProof:
    leaf_index: int
    siblings: Tuple[bytes, ...]
    path_bits: int


def compute_root(leaf: bytes, siblings: Sequence[bytes], path_bits: int) -> bytes:
    node = leaf
    for level, sibling in enumerate(siblings):
        if (path_bits >> level) & 1:
            node = merkle_node(sibling, node)
        else:
            node = merkle_node(node, sibling)
    return node


def verify_proof(root: bytes, leaf: bytes, siblings: Sequence[bytes], path_bits: int) -> bool:
    if path_bits < 0 or path_bits >> len(siblings):
        return False
    try:
        return compute_root(leaf, siblings, path_bits) == root
    except (ShieldedPoolError, ValueError, TypeError):
        # tampered bytes may fall outside the field
        return False


class MerkleTree:
    def __init__(self, depth: int, leaves: Iterable[bytes] = ()):
        if not 1 <= depth <= 32:
            raise PoolConfigurationError(f"unsupported tree depth {depth}")
        self.depth = depth
        self._zeros = zero_hashes(depth)
        self._leaves: List[bytes] = []
        for leaf in leaves:
            self.append(leaf)

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    def __len__(self) -> int:
        return len(self._leaves)

    @property
    def leaves(self) -> List[bytes]:
        return list(self._leaves)

    def append(self, leaf: bytes) -> int:
        if len(leaf) != 32:
            raise InvalidInput("leaf must be 32 bytes")
        if len(self._leaves) >= self.capacity:
            raise PoolConfigurationError(f"tree of depth {self.depth} is full ({self.capacity} leaves)")
        self._leaves.append(bytes(leaf))
        return len(self._leaves) - 1

    def _levels(self) -> List[List[bytes]]:
        levels = [list(self._leaves)]
        for level in range(self.depth):
            cur = levels[-1]
            nxt = []
            for i in range(0, len(cur), 2):
                right = cur[i + 1] if i + 1 < len(cur) else self._zeros[level]
                nxt.append(merkle_node(cur[i], right))
            levels.append(nxt)
        return levels

    def root(self) -> bytes:
        if not self._leaves:
            return self._zeros[self.depth]
        return self._levels()[-1][0]

    def proof(self, leaf_index: int) -> MerkleProof:
        if not 0 <= leaf_index < len(self._leaves):
            raise InvalidInput(f"leaf index {leaf_index} is not in the tree")
        levels = self._levels()
        siblings = []
        path_bits = 0
        idx = leaf_index
        for level in range(self.depth):
            nodes = levels[level]
            sib = idx ^ 1
            siblings.append(nodes[sib] if sib < len(nodes) else self._zeros[level])
            if idx & 1:
                path_bits |= 1 << level
            idx >>= 1
        return MerkleProof(leaf_index=leaf_index, siblings=tuple(siblings), path_bits=path_bits)
