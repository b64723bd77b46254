# crypto_core/pedersen.py
"""
Pedersen commitments over edwards25519 (libsodium via PyNaCl).

    C = a*G + r*H

G is the standard base point. H is found by hash-and-increment from a fixed
tag, so nobody knows log_G(H). Scalars are integers mod L; points travel as
32-byte compressed encodings.
"""
from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from functools import lru_cache

from nacl.bindings import (
    crypto_core_ed25519_add,
    crypto_core_ed25519_is_valid_point,
    crypto_core_ed25519_sub,
    crypto_scalarmult_ed25519_base_noclamp,
    crypto_scalarmult_ed25519_noclamp,
)

from shielded_pool.crypto_core.commitments import FIELD_MODULUS
from shielded_pool.errors import InvalidInput

L = FIELD_MODULUS
IDENTITY = b"\x01" + b"\x00" * 31
GENERATOR_TAG = b"shielded-pool/pedersen-H"


def scalar_bytes(x: int) -> bytes:
    return (x % L).to_bytes(32, "little")


def scalar_from_bytes(b: bytes) -> int:
    if len(b) != 32:
        raise InvalidInput("scalar must be 32 bytes")
    x = int.from_bytes(b, "little")
    if x >= L:
        raise InvalidInput("non-canonical scalar")
    return x


def random_scalar() -> int:
    # zero would make the blinding term vanish
    return secrets.randbelow(L - 1) + 1


def hash_to_scalar(*parts: bytes) -> int:
    h = hashlib.sha512()
    for p in parts:
        h.update(len(p).to_bytes(2, "little"))
        h.update(p)
    return int.from_bytes(h.digest(), "little") % L


@lru_cache(maxsize=None)
def generator_g() -> bytes:
    return crypto_scalarmult_ed25519_base_noclamp(scalar_bytes(1))


@lru_cache(maxsize=None)
def generator_h() -> bytes:
    counter = 0
    while True:
        candidate = hashlib.sha512(GENERATOR_TAG + counter.to_bytes(4, "little")).digest()[:32]
        if crypto_core_ed25519_is_valid_point(candidate):
            return candidate
        counter += 1


def is_point(p: bytes) -> bool:
    return len(p) == 32 and (p == IDENTITY or crypto_core_ed25519_is_valid_point(p))


def point_mul(k: int, p: bytes) -> bytes:
    k %= L
    if k == 0 or p == IDENTITY:
        return IDENTITY
    return crypto_scalarmult_ed25519_noclamp(scalar_bytes(k), p)


def base_mul(k: int) -> bytes:
    k %= L
    if k == 0:
        return IDENTITY
    return crypto_scalarmult_ed25519_base_noclamp(scalar_bytes(k))


def point_add(p: bytes, q: bytes) -> bytes:
    return crypto_core_ed25519_add(p, q)


def point_sub(p: bytes, q: bytes) -> bytes:
    return crypto_core_ed25519_sub(p, q)


@dataclass(frozen=True)
class HidingCommitment:
    commitment: bytes
    blinding_factor: int


def commit(amount: int, blinding: int) -> bytes:
    if amount < 0:
        raise InvalidInput("cannot commit to a negative amount")
    return point_add(base_mul(amount), point_mul(blinding, generator_h()))


def create(amount: int) -> HidingCommitment:
    r = random_scalar()
    return HidingCommitment(commitment=commit(amount, r), blinding_factor=r)


def verify(hc: HidingCommitment, amount: int) -> bool:
    if amount < 0 or not is_point(hc.commitment):
        return False
    return commit(amount, hc.blinding_factor) == hc.commitment


def add(c1: HidingCommitment, c2: HidingCommitment) -> HidingCommitment:
    """Homomorphic sum: commit(a, r1) + commit(b, r2) == commit(a+b, r1+r2)."""
    return HidingCommitment(
        commitment=point_add(c1.commitment, c2.commitment),
        blinding_factor=(c1.blinding_factor + c2.blinding_factor) % L,
    )
