# crypto_core/commitments.py
"""
Commitment engine: owner commitments, note commitments and nullifiers.

Every value is an element of the prime field of order L (the edwards25519
group order), so hash outputs can be fed straight back in as scalars.
Each function is a domain-separated SHA-256 over 32-byte big-endian field
elements, reduced mod L.
"""
from __future__ import annotations

import hashlib
from typing import Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from solders.pubkey import Pubkey

from shielded_pool.errors import InvalidInput

FIELD_MODULUS = 2**252 + 27742317777372353535851937790883648493

OWNER_DOMAIN = b"shielded-pool/owner-v1"
NOTE_DOMAIN = b"shielded-pool/note-v1"
NULLIFIER_DOMAIN = b"shielded-pool/nullifier-v1"
NODE_DOMAIN = b"shielded-pool/node-v1"

OwnerKey = Union[Pubkey, bytes]


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def field_bytes(x: int) -> bytes:
    """32-byte big-endian encoding of a field element."""
    if not 0 <= x < FIELD_MODULUS:
        raise InvalidInput("value is outside the field")
    return x.to_bytes(32, "big")


def to_field(data: bytes, what: str = "value") -> int:
    if len(data) != 32:
        raise InvalidInput(f"{what} must be 32 bytes, got {len(data)}")
    x = int.from_bytes(data, "big")
    if x >= FIELD_MODULUS:
        raise InvalidInput(f"{what} exceeds the field modulus")
    return x


def field_hash(domain: bytes, *elements: int) -> int:
    h = hashlib.sha256(domain)
    for e in elements:
        h.update(field_bytes(e))
    return int.from_bytes(h.digest(), "big") % FIELD_MODULUS


def _owner_key_bytes(owner_key: OwnerKey) -> bytes:
    raw = bytes(owner_key)
    if len(raw) != 32:
        raise InvalidInput(f"owner key must be 32 bytes, got {len(raw)}")
    return raw


def owner_commitment(owner_key: OwnerKey) -> bytes:
    digest = sha256(OWNER_DOMAIN + _owner_key_bytes(owner_key))
    return field_bytes(int.from_bytes(digest, "big") % FIELD_MODULUS)


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInput(f"amount must be an integer number of lamports, got {type(amount).__name__}")
    if amount < 0:
        raise InvalidInput("amount must not be negative")
    if amount >= FIELD_MODULUS:
        raise InvalidInput("amount exceeds the field modulus")
    return amount


def note_commitment(amount: int, blinding: int, owner_commitment: bytes) -> bytes:
    """H(amount || blinding || owner_commitment)."""
    _check_amount(amount)
    if not 0 <= blinding < FIELD_MODULUS:
        raise InvalidInput("blinding factor exceeds the field modulus")
    owner = to_field(owner_commitment, "owner commitment")
    return field_bytes(field_hash(NOTE_DOMAIN, amount, blinding, owner))


def nullifier(note_commitment: bytes, owner_secret: int) -> bytes:
    """H(note_commitment || owner_secret). One per note, revealed at spend time."""
    c = to_field(note_commitment, "note commitment")
    if not 0 <= owner_secret < FIELD_MODULUS:
        raise InvalidInput("owner secret exceeds the field modulus")
    return field_bytes(field_hash(NULLIFIER_DOMAIN, c, owner_secret))


def derive_owner_secret(encryption_key: bytes, owner_key: OwnerKey) -> int:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=64,
        salt=None,
        info=b"shielded-pool/owner-secret|" + _owner_key_bytes(owner_key),
    )
    return int.from_bytes(hkdf.derive(encryption_key), "big") % FIELD_MODULUS


def merkle_node(left: bytes, right: bytes) -> bytes:
    return field_bytes(field_hash(NODE_DOMAIN, to_field(left, "left node"), to_field(right, "right node")))
