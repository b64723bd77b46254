# ledger/accumulator.py
"""Membership proofs against a pool's published commitment tree."""
from __future__ import annotations

from typing import Any, Dict, Sequence

from solders.pubkey import Pubkey

from shielded_pool.crypto_core import merkle
from shielded_pool.crypto_core.merkle import MerkleProof, MerkleTree
from shielded_pool.errors import MerkleProofError, PoolConfigurationError
from shielded_pool.ledger.client import LedgerClient
from shielded_pool.ledger.instructions import check_wire_depth
from shielded_pool.logging_config import get_logger

logger = get_logger("accumulator")


def check_capacity(depth: int, capacity: int) -> None:
    """A pool may never need more leaves than its tree has; checked once, at creation."""
    check_wire_depth(depth)
    if capacity < 1 or capacity > (1 << depth):
        raise PoolConfigurationError(f"capacity {capacity} does not fit a depth-{depth} tree ({1 << depth} leaves)")


def verify_proof(root: bytes, leaf: bytes, siblings: Sequence[bytes], path_bits: int) -> bool:
    return merkle.verify_proof(root, leaf, siblings, path_bits)


class MerkleAccumulatorClient:
    def __init__(self, ledger: LedgerClient, depth: int):
        check_wire_depth(depth)
        self.ledger = ledger
        self.depth = depth

    async def rebuild(self, pool: Pubkey) -> MerkleTree:
        """Rebuild the tree from the ledger's notes and check it against the published root."""
        account = await self.ledger.get_pool_account(pool)
        if account is None:
            raise MerkleProofError(f"pool {pool} does not exist")
        notes = await self.ledger.get_note_accounts(pool)
        for expected, note in enumerate(notes):
            if note.leaf_index != expected:
                raise MerkleProofError(f"leaf {expected} is missing from the ledger's note set")
        tree = MerkleTree(self.depth, (n.commitment for n in notes))
        if tree.root() != account.merkle_root:
            logger.warning(f"rebuilt root for pool {str(pool)[:8]} disagrees with the published root")
            raise MerkleProofError("rebuilt tree does not match the pool's merkle root")
        return tree

    async def generate_proof(self, pool: Pubkey, leaf_index: int) -> MerkleProof:
        tree = await self.rebuild(pool)
        if not 0 <= leaf_index < len(tree):
            raise MerkleProofError(f"leaf {leaf_index} is not in pool {pool}")
        proof = tree.proof(leaf_index)
        if not verify_proof(tree.root(), tree.leaves[leaf_index], proof.siblings, proof.path_bits):
            raise MerkleProofError(f"proof for leaf {leaf_index} does not reach the root")
        return proof

    async def status(self, pool: Pubkey) -> Dict[str, Any]:
        account = await self.ledger.get_pool_account(pool)
        if account is None:
            raise MerkleProofError(f"pool {pool} does not exist")
        try:
            tree = await self.rebuild(pool)
            consistent, leaves = True, len(tree)
        except MerkleProofError:
            consistent, leaves = False, None
        return {
            "pool": str(pool),
            "depth": self.depth,
            "capacity": 1 << self.depth,
            "root": account.merkle_root.hex(),
            "leaves": leaves,
            "next_note_index": account.next_note_index,
            "consistent": consistent,
        }
