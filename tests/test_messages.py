"""
Note payload encryption tests
"""
import pytest
from solders.keypair import Keypair

from shielded_pool.crypto_core.commitments import note_commitment, owner_commitment
from shielded_pool.crypto_core.messages import ENCRYPTED_NOTE_SIZE, DecryptedNotePayload, NoteCipher
from shielded_pool.crypto_core.pedersen import random_scalar
from shielded_pool.errors import DecryptionFailure, InvalidInput, RangeViolation


@pytest.fixture
def owner():
    return Keypair().pubkey()


class TestSealOpen:

    def test_round_trip(self, cipher, owner):
        oc = cipher.register_owner(owner)
        sealed = cipher.seal(2_500_000_000, oc, unlock_at=1_700_086_400)
        assert len(sealed.encrypted) == ENCRYPTED_NOTE_SIZE

        payload = cipher.open(sealed.encrypted, expected_commitment=sealed.commitment)
        assert payload.amount == 2_500_000_000
        assert payload.unlock_at == 1_700_086_400
        assert payload.owner_commitment == oc
        assert payload.owner == bytes(owner)
        assert payload.blinding_factor == sealed.payload.blinding_factor
        assert note_commitment(payload.amount, payload.blinding_factor, oc) == sealed.commitment

    def test_fresh_nonce_per_seal(self, cipher, owner):
        oc = cipher.register_owner(owner)
        a = cipher.seal(1, oc, 0)
        b = cipher.seal(1, oc, 0)
        assert a.encrypted != b.encrypted
        assert a.commitment != b.commitment

    def test_same_key_other_instance_opens(self, encryption_key, cipher, owner):
        oc = cipher.register_owner(owner)
        sealed = cipher.seal(42, oc, 0)
        other = NoteCipher(encryption_key)
        other.register_owner(owner)
        assert other.open(sealed.encrypted).amount == 42

    def test_commitment_only_owner(self, cipher):
        oc = owner_commitment(Keypair().pubkey())
        cipher.register_commitment(oc)
        sealed = cipher.seal(9, oc, 0)
        payload = cipher.open(sealed.encrypted)
        assert payload.owner_commitment == oc
        assert payload.owner is None


class TestRejects:

    def test_foreign_key(self, cipher, owner):
        oc = cipher.register_owner(owner)
        sealed = cipher.seal(1, oc, 0)
        stranger = NoteCipher(b"\x99" * 32)
        stranger.register_owner(owner)
        with pytest.raises(DecryptionFailure):
            stranger.open(sealed.encrypted)
        assert stranger.decrypt(sealed.encrypted) is None

    def test_corrupted_payload(self, cipher, owner):
        oc = cipher.register_owner(owner)
        sealed = bytearray(cipher.seal(1, oc, 0).encrypted)
        sealed[40] ^= 0xFF
        assert cipher.decrypt(bytes(sealed)) is None

    def test_wrong_length(self, cipher):
        assert cipher.decrypt(b"\x00" * 63) is None

    def test_unknown_owner(self, encryption_key, cipher, owner):
        oc = cipher.register_owner(owner)
        sealed = cipher.seal(1, oc, 0)
        assert NoteCipher(encryption_key).decrypt(sealed.encrypted) is None

    def test_commitment_mismatch(self, cipher, owner):
        oc = cipher.register_owner(owner)
        sealed = cipher.seal(1, oc, 0)
        other = cipher.seal(1, oc, 0)
        with pytest.raises(DecryptionFailure):
            cipher.open(sealed.encrypted, expected_commitment=other.commitment)

    def test_short_key(self):
        with pytest.raises(InvalidInput):
            NoteCipher(b"\x00" * 16)

    @pytest.mark.parametrize("amount", [2 ** 64, -1])
    def test_amount_outside_u64(self, cipher, owner, amount):
        oc = cipher.register_owner(owner)
        with pytest.raises(RangeViolation):
            cipher.seal(amount, oc, 0)

    def test_largest_u64_amount(self, cipher, owner):
        oc = cipher.register_owner(owner)
        sealed = cipher.seal(2 ** 64 - 1, oc, 0)
        assert cipher.open(sealed.encrypted).amount == 2 ** 64 - 1


class TestOpenings:

    def _payload(self, cipher, owner, amount=700):
        oc = cipher.register_owner(owner)
        blinding = random_scalar()
        return DecryptedNotePayload(amount, blinding, oc, 1_700_000_000), note_commitment(amount, blinding, oc)

    def test_round_trip(self, cipher, owner):
        payload, commitment = self._payload(cipher, owner)
        sealed = cipher.seal_opening(payload)
        opened = cipher.open_opening(sealed, expected_commitment=commitment)
        assert opened.amount == 700
        assert opened.blinding_factor == payload.blinding_factor
        assert opened.owner_commitment == payload.owner_commitment
        assert opened.owner == bytes(owner)

    def test_other_key_cannot_open(self, cipher, owner):
        payload, commitment = self._payload(cipher, owner)
        sealed = cipher.seal_opening(payload)
        assert NoteCipher(b"\x99" * 32).decrypt_opening(sealed) is None

    def test_commitment_mismatch(self, cipher, owner):
        payload, _ = self._payload(cipher, owner)
        sealed = cipher.seal_opening(payload)
        with pytest.raises(DecryptionFailure):
            cipher.open_opening(sealed, expected_commitment=b"\x01" * 32)
