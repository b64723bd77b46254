"""
Range proof tests
"""
import pytest

from shielded_pool.crypto_core import pedersen
from shielded_pool.crypto_core.pedersen import random_scalar
from shielded_pool.crypto_core.proofs import RangeProof
from shielded_pool.crypto_core.range_proof import prove_range, verify_range
from shielded_pool.errors import InvalidInput, RangeViolation


class TestProve:

    @pytest.mark.parametrize("amount", [0, 1, 2_500_000_000, 2**64 - 1])
    def test_in_range_verifies(self, amount):
        r = random_scalar()
        proof = prove_range(amount, r)
        assert proof.value_commitment == pedersen.commit(amount, r)
        assert verify_range(proof, value_commitment=pedersen.commit(amount, r), bit_width=64)

    def test_small_width(self):
        proof = prove_range(13, random_scalar(), bit_width=4)
        assert len(proof.bits) == 4
        assert verify_range(proof, bit_width=4)

    def test_refuses_amount_outside_range(self):
        with pytest.raises(RangeViolation):
            prove_range(2**64, random_scalar())
        with pytest.raises(RangeViolation):
            prove_range(16, random_scalar(), bit_width=4)
        with pytest.raises(RangeViolation):
            prove_range(-1, random_scalar())

    @pytest.mark.parametrize("width", [0, 65, True])
    def test_rejects_bad_width(self, width):
        with pytest.raises(InvalidInput):
            prove_range(1, random_scalar(), bit_width=width)


class TestVerify:

    def test_serialized_proof_verifies(self):
        proof = prove_range(77, random_scalar(), bit_width=8)
        data = proof.to_bytes()
        assert RangeProof.from_bytes(data) == proof
        assert verify_range(data, bit_width=8)

    def test_wrong_commitment_rejected(self):
        proof = prove_range(77, random_scalar(), bit_width=8)
        other = pedersen.commit(77, random_scalar())
        assert not verify_range(proof, value_commitment=other)

    def test_wrong_width_rejected(self):
        proof = prove_range(5, random_scalar(), bit_width=8)
        assert not verify_range(proof, bit_width=64)

    def test_tampered_byte_rejected(self):
        data = bytearray(prove_range(5, random_scalar(), bit_width=8).to_bytes())
        # flip a byte inside the first bit's e0 scalar
        data[34 + 40] ^= 0x01
        assert not verify_range(bytes(data))

    def test_truncated_rejected(self):
        data = prove_range(5, random_scalar(), bit_width=8).to_bytes()
        assert not verify_range(data[:-1])
        assert not verify_range(b"")

    def test_swapped_value_commitment_rejected(self):
        proof = prove_range(5, random_scalar(), bit_width=8)
        forged = RangeProof(8, pedersen.commit(6, random_scalar()), proof.bits)
        assert not verify_range(forged)
