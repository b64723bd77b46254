"""
Commitment tree and accumulator tests
"""
import pytest

from shielded_pool.crypto_core.commitments import field_bytes
from shielded_pool.crypto_core.merkle import MerkleTree, compute_root, verify_proof, zero_hashes
from shielded_pool.errors import InvalidInput, PoolConfigurationError
from shielded_pool.ledger.accumulator import check_capacity


def _leaf(i: int) -> bytes:
    return field_bytes(1000 + i)


class TestMerkleTree:

    def test_empty_root_is_zero_subtree(self):
        assert MerkleTree(4).root() == zero_hashes(4)[4]

    def test_root_changes_on_append(self):
        tree = MerkleTree(4)
        roots = {tree.root()}
        for i in range(5):
            assert tree.append(_leaf(i)) == i
            roots.add(tree.root())
        assert len(roots) == 6

    @pytest.mark.parametrize("count", [1, 2, 3, 7, 8])
    def test_every_leaf_proves(self, count):
        tree = MerkleTree(3, [_leaf(i) for i in range(count)])
        root = tree.root()
        for i in range(count):
            proof = tree.proof(i)
            assert len(proof.siblings) == 3
            assert proof.path_bits == i
            assert verify_proof(root, _leaf(i), proof.siblings, proof.path_bits)

    def test_flipped_sibling_byte_rejected(self):
        tree = MerkleTree(4, [_leaf(i) for i in range(5)])
        proof = tree.proof(2)
        siblings = list(proof.siblings)
        siblings[1] = siblings[1][:-1] + bytes([siblings[1][-1] ^ 1])
        assert not verify_proof(tree.root(), _leaf(2), siblings, proof.path_bits)

    def test_wrong_leaf_or_path_rejected(self):
        tree = MerkleTree(4, [_leaf(i) for i in range(5)])
        proof = tree.proof(2)
        assert not verify_proof(tree.root(), _leaf(3), proof.siblings, proof.path_bits)
        assert not verify_proof(tree.root(), _leaf(2), proof.siblings, proof.path_bits ^ 1)
        assert not verify_proof(tree.root(), _leaf(2), proof.siblings, 1 << 4)

    def test_out_of_field_sibling_rejected(self):
        tree = MerkleTree(2, [_leaf(0)])
        proof = tree.proof(0)
        assert not verify_proof(tree.root(), _leaf(0), [b"\xff" * 32, proof.siblings[1]], proof.path_bits)

    def test_compute_root_matches_tree(self):
        tree = MerkleTree(3, [_leaf(i) for i in range(3)])
        proof = tree.proof(1)
        assert compute_root(_leaf(1), proof.siblings, proof.path_bits) == tree.root()

    def test_full_tree_refuses_append(self):
        tree = MerkleTree(1, [_leaf(0), _leaf(1)])
        with pytest.raises(PoolConfigurationError):
            tree.append(_leaf(2))

    def test_unknown_leaf_index(self):
        with pytest.raises(InvalidInput):
            MerkleTree(2, [_leaf(0)]).proof(1)

    def test_bad_depth(self):
        with pytest.raises(PoolConfigurationError):
            MerkleTree(0)


class TestCapacity:

    def test_capacity_within_depth(self):
        check_capacity(8, 256)
        check_capacity(4, 1)

    def test_capacity_exceeds_depth(self):
        with pytest.raises(PoolConfigurationError):
            check_capacity(4, 17)

    def test_depth_beyond_wire_limit(self):
        with pytest.raises(PoolConfigurationError):
            check_capacity(9, 10)
