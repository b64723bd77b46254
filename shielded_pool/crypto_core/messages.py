# crypto_core/messages.py
"""
Note payload sealing.

A note's encrypted payload is exactly 64 bytes so it fits the on-chain slot:

    nonce(24) | SecretBox(amount u64 | unlockAt i64 | ownerTag 8)   (16 + 16 MAC)

The blinding factor is not stored: it is re-derived from the holder's key and
the nonce. The owner tag is the first 8 bytes of the owner commitment; the
full commitment (and the owner key) comes from the cipher's owner registry.

Notes received through a transfer carry a blinding chosen by the sender, so
their whole opening is kept instead, sealed under the holder's note key
(seal_opening / open_opening). Those blobs live only in the local store.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random

from shielded_pool.crypto_core.commitments import (
    FIELD_MODULUS,
    OwnerKey,
    field_bytes,
    note_commitment,
    owner_commitment,
)
from shielded_pool.errors import DecryptionFailure, InvalidInput, RangeViolation

NONCE_SIZE = SecretBox.NONCE_SIZE
ENCRYPTED_NOTE_SIZE = 64
OWNER_TAG_SIZE = 8
_PLAINTEXT = struct.Struct("<Qq8s")
MAX_AMOUNT = (1 << 64) - 1
# full opening of a note whose blinding was chosen by someone else
_OPENING = struct.Struct("<Q32sq32s")


def _hkdf(key: bytes, info: bytes, length: int = 32) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=None,
        info=info,
    )
    return hkdf.derive(key)


def derive_note_key(encryption_key: bytes) -> bytes:
    return _hkdf(encryption_key, b"shielded-pool/note-key")


def derive_blinding(encryption_key: bytes, nonce: bytes) -> int:
    return int.from_bytes(_hkdf(encryption_key, b"shielded-pool/blinding|" + nonce, 64), "big") % FIELD_MODULUS


def secretbox_encrypt(key32: bytes, plaintext: bytes, nonce24: bytes) -> bytes:
    sb = SecretBox(key32)
    # EncryptedMessage is nonce || ciphertext when a nonce is supplied
    return bytes(sb.encrypt(plaintext, nonce24))


def secretbox_decrypt(key32: bytes, sealed: bytes) -> bytes:
    sb = SecretBox(key32)
    return sb.decrypt(sealed)


@dataclass(frozen=True)
class DecryptedNotePayload:
    amount: int
    blinding_factor: int
    owner_commitment: bytes
    unlock_at: int
    owner: Optional[bytes] = None


@dataclass(frozen=True)
class SealedNote:
    """A freshly sealed note: its ciphertext plus the opening the sealer keeps."""

    encrypted: bytes
    commitment: bytes
    payload: DecryptedNotePayload


class NoteCipher:
    """Seals and opens note payloads for one holder's encryption key."""

    def __init__(self, encryption_key: bytes):
        if len(encryption_key) < 32:
            raise InvalidInput("encryption key must be at least 32 bytes")
        self._key = bytes(encryption_key)
        self._box_key = derive_note_key(self._key)
        self._owners: Dict[bytes, Tuple[bytes, bytes]] = {}

    @property
    def encryption_key(self) -> bytes:
        return self._key

    def register_owner(self, owner: OwnerKey) -> bytes:
        """Remember an owner so notes tagged for it can be opened. Returns its commitment."""
        oc = owner_commitment(owner)
        self._owners[oc[:OWNER_TAG_SIZE]] = (bytes(owner), oc)
        return oc

    def register_commitment(self, oc: bytes) -> None:
        """Register an owner known only by commitment (e.g. a transfer recipient)."""
        self._owners.setdefault(oc[:OWNER_TAG_SIZE], (b"", oc))

    def seal(
        self,
        amount: int,
        owner_commitment_: bytes,
        unlock_at: int,
        nonce: Optional[bytes] = None,
    ) -> SealedNote:
        if not 0 <= amount <= MAX_AMOUNT:
            raise RangeViolation(f"note amount {amount} does not fit in 64 bits")
        nonce = nonce or nacl_random(NONCE_SIZE)
        blinding = derive_blinding(self._key, nonce)
        commitment = note_commitment(amount, blinding, owner_commitment_)
        plaintext = _PLAINTEXT.pack(amount, unlock_at, owner_commitment_[:OWNER_TAG_SIZE])
        encrypted = secretbox_encrypt(self._box_key, plaintext, nonce)
        if len(encrypted) != ENCRYPTED_NOTE_SIZE:
            raise InvalidInput(f"sealed note is {len(encrypted)} bytes, expected {ENCRYPTED_NOTE_SIZE}")
        owner = self._owners.get(owner_commitment_[:OWNER_TAG_SIZE], (b"", b""))[0] or None
        return SealedNote(
            encrypted=encrypted,
            commitment=commitment,
            payload=DecryptedNotePayload(amount, blinding, owner_commitment_, unlock_at, owner),
        )

    def open(self, encrypted: bytes, expected_commitment: Optional[bytes] = None) -> DecryptedNotePayload:
        """Open a payload or raise DecryptionFailure."""
        if len(encrypted) != ENCRYPTED_NOTE_SIZE:
            raise DecryptionFailure(f"encrypted note must be {ENCRYPTED_NOTE_SIZE} bytes")
        try:
            plaintext = secretbox_decrypt(self._box_key, encrypted)
        except CryptoError as e:
            raise DecryptionFailure(f"note payload did not authenticate: {e}") from e
        amount, unlock_at, tag = _PLAINTEXT.unpack(plaintext)
        if tag not in self._owners:
            raise DecryptionFailure("note belongs to an unknown owner")
        owner, oc = self._owners[tag]
        blinding = derive_blinding(self._key, encrypted[:NONCE_SIZE])
        if expected_commitment is not None:
            if note_commitment(amount, blinding, oc) != expected_commitment:
                raise DecryptionFailure("payload does not open the note commitment")
        return DecryptedNotePayload(amount, blinding, oc, unlock_at, owner or None)

    def decrypt(self, encrypted: bytes, expected_commitment: Optional[bytes] = None) -> Optional[DecryptedNotePayload]:
        """Like open() but returns None for foreign or corrupted payloads."""
        try:
            return self.open(encrypted, expected_commitment)
        except (DecryptionFailure, InvalidInput):
            return None

    def seal_opening(self, payload: DecryptedNotePayload) -> bytes:
        """Encrypt a complete note opening, blinding included, for local storage."""
        plaintext = _OPENING.pack(
            payload.amount,
            field_bytes(payload.blinding_factor),
            payload.unlock_at,
            payload.owner_commitment,
        )
        return secretbox_encrypt(self._box_key, plaintext, nacl_random(NONCE_SIZE))

    def open_opening(self, sealed: bytes, expected_commitment: Optional[bytes] = None) -> DecryptedNotePayload:
        try:
            plaintext = secretbox_decrypt(self._box_key, sealed)
        except CryptoError as e:
            raise DecryptionFailure(f"note opening did not authenticate: {e}") from e
        if len(plaintext) != _OPENING.size:
            raise DecryptionFailure("note opening has the wrong size")
        amount, blinding_raw, unlock_at, oc = _OPENING.unpack(plaintext)
        blinding = int.from_bytes(blinding_raw, "big")
        if expected_commitment is not None:
            if note_commitment(amount, blinding, oc) != expected_commitment:
                raise DecryptionFailure("opening does not match the note commitment")
        owner = self._owners.get(oc[:OWNER_TAG_SIZE], (b"", b""))[0]
        return DecryptedNotePayload(amount, blinding, oc, unlock_at, owner or None)

    def decrypt_opening(
        self, sealed: bytes, expected_commitment: Optional[bytes] = None
    ) -> Optional[DecryptedNotePayload]:
        try:
            return self.open_opening(sealed, expected_commitment)
        except (DecryptionFailure, InvalidInput):
            return None
