"""
Commitment engine tests
"""
import pytest
from solders.keypair import Keypair

from shielded_pool.crypto_core.commitments import (
    FIELD_MODULUS,
    derive_owner_secret,
    field_bytes,
    merkle_node,
    note_commitment,
    nullifier,
    owner_commitment,
    to_field,
)
from shielded_pool.errors import InvalidInput


class TestOwnerCommitment:

    def test_deterministic(self):
        pk = Keypair().pubkey()
        assert owner_commitment(pk) == owner_commitment(bytes(pk))

    def test_distinct_owners(self):
        assert owner_commitment(Keypair().pubkey()) != owner_commitment(Keypair().pubkey())

    def test_is_field_element(self):
        oc = owner_commitment(Keypair().pubkey())
        assert len(oc) == 32
        assert int.from_bytes(oc, "big") < FIELD_MODULUS

    def test_rejects_short_key(self):
        with pytest.raises(InvalidInput):
            owner_commitment(b"\x01" * 31)


class TestNoteCommitment:

    def test_binds_every_input(self):
        oc = owner_commitment(Keypair().pubkey())
        base = note_commitment(100, 7, oc)
        assert base == note_commitment(100, 7, oc)
        assert base != note_commitment(101, 7, oc)
        assert base != note_commitment(100, 8, oc)
        assert base != note_commitment(100, 7, owner_commitment(Keypair().pubkey()))

    def test_zero_amount_allowed(self):
        oc = owner_commitment(Keypair().pubkey())
        assert len(note_commitment(0, 1, oc)) == 32

    @pytest.mark.parametrize("amount", [-1, 1.5, True, FIELD_MODULUS])
    def test_rejects_bad_amount(self, amount):
        oc = owner_commitment(Keypair().pubkey())
        with pytest.raises(InvalidInput):
            note_commitment(amount, 1, oc)

    def test_rejects_blinding_outside_field(self):
        oc = owner_commitment(Keypair().pubkey())
        with pytest.raises(InvalidInput):
            note_commitment(1, FIELD_MODULUS, oc)

    def test_rejects_owner_commitment_outside_field(self):
        with pytest.raises(InvalidInput):
            note_commitment(1, 1, b"\xff" * 32)


class TestNullifier:

    def test_one_per_note_and_secret(self):
        oc = owner_commitment(Keypair().pubkey())
        c1 = note_commitment(5, 11, oc)
        c2 = note_commitment(5, 12, oc)
        assert nullifier(c1, 3) == nullifier(c1, 3)
        assert nullifier(c1, 3) != nullifier(c2, 3)
        assert nullifier(c1, 3) != nullifier(c1, 4)

    def test_owner_secret_depends_on_key_and_owner(self):
        pk = Keypair().pubkey()
        s1 = derive_owner_secret(b"k" * 32, pk)
        assert s1 == derive_owner_secret(b"k" * 32, pk)
        assert s1 != derive_owner_secret(b"j" * 32, pk)
        assert s1 != derive_owner_secret(b"k" * 32, Keypair().pubkey())
        assert 0 <= s1 < FIELD_MODULUS


class TestFieldEncoding:

    def test_round_trip(self):
        x = FIELD_MODULUS - 1
        assert to_field(field_bytes(x)) == x

    def test_rejects_wrong_length(self):
        with pytest.raises(InvalidInput):
            to_field(b"\x00" * 31)

    def test_merkle_node_order_matters(self):
        a, b = field_bytes(1), field_bytes(2)
        assert merkle_node(a, b) != merkle_node(b, a)
