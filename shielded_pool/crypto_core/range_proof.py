# crypto_core/range_proof.py
"""
Range proofs by bit decomposition.

The prover splits the amount into bits b_i and commits to each one,
C_i = b_i*G + r_i*H, choosing r_0 so that sum(2^i * C_i) equals the value
commitment. Each C_i carries a Chaum-Pedersen OR-proof that it opens to 0
or to 1 under H; the OR-proof is made non-interactive with Fiat-Shamir.
"""
from __future__ import annotations

from typing import List, Optional, Union

from nacl.exceptions import CryptoError

from shielded_pool.crypto_core import pedersen
from shielded_pool.crypto_core.pedersen import (
    IDENTITY,
    L,
    base_mul,
    generator_g,
    generator_h,
    hash_to_scalar,
    is_point,
    point_add,
    point_mul,
    point_sub,
    random_scalar,
    scalar_bytes,
    scalar_from_bytes,
)
from shielded_pool.crypto_core.proofs import BitProof, RangeProof
from shielded_pool.errors import InvalidInput, RangeViolation
from shielded_pool.logging_config import get_logger

log = get_logger("range_proof")

MAX_BIT_WIDTH = 64
BIT_DOMAIN = b"shielded-pool/range-bit-v1"


def _check_width(bit_width: int) -> None:
    if isinstance(bit_width, bool) or not isinstance(bit_width, int) or not 1 <= bit_width <= MAX_BIT_WIDTH:
        raise InvalidInput(f"bit width must be between 1 and {MAX_BIT_WIDTH}, got {bit_width!r}")


def _bit_challenge(value: bytes, index: int, c_i: bytes, a0: bytes, a1: bytes) -> int:
    return hash_to_scalar(BIT_DOMAIN, value, index.to_bytes(1, "little"), c_i, a0, a1)


def _prove_bit(value: bytes, index: int, bit: int, r: int) -> BitProof:
    h = generator_h()
    c_i = point_add(base_mul(bit), point_mul(r, h))
    k = random_scalar()
    # the branch we cannot open is simulated with a chosen challenge
    e_sim, s_sim = random_scalar(), random_scalar()
    if bit == 0:
        a0 = point_mul(k, h)
        a1 = point_sub(point_mul(s_sim, h), point_mul(e_sim, point_sub(c_i, generator_g())))
        e = _bit_challenge(value, index, c_i, a0, a1)
        e1, s1 = e_sim, s_sim
        e0 = (e - e1) % L
        s0 = (k + e0 * r) % L
    else:
        a0 = point_sub(point_mul(s_sim, h), point_mul(e_sim, c_i))
        a1 = point_mul(k, h)
        e = _bit_challenge(value, index, c_i, a0, a1)
        e0, s0 = e_sim, s_sim
        e1 = (e - e0) % L
        s1 = (k + e1 * r) % L
    return BitProof(
        commitment=c_i,
        e0=scalar_bytes(e0),
        e1=scalar_bytes(e1),
        s0=scalar_bytes(s0),
        s1=scalar_bytes(s1),
    )


def prove_range(amount: int, blinding: int, bit_width: int = MAX_BIT_WIDTH) -> RangeProof:
    """
    Prove that commit(amount, blinding) hides a value in [0, 2^bit_width).

    Raises RangeViolation for amounts outside that interval rather than
    producing a proof that would not verify.
    """
    _check_width(bit_width)
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInput("amount must be an integer")
    if not 0 <= amount < (1 << bit_width):
        raise RangeViolation(f"amount is outside [0, 2^{bit_width})")
    blinding %= L
    value = pedersen.commit(amount, blinding)

    rs: List[int] = [random_scalar() for _ in range(bit_width)]
    rs[0] = (blinding - sum((1 << i) * rs[i] for i in range(1, bit_width))) % L

    bits = tuple(_prove_bit(value, i, (amount >> i) & 1, rs[i]) for i in range(bit_width))
    return RangeProof(bit_width=bit_width, value_commitment=value, bits=bits)


def _verify_bit(value: bytes, index: int, bp: BitProof) -> bool:
    h = generator_h()
    c_i = bp.commitment
    if not is_point(c_i) or c_i == IDENTITY:
        return False
    e0, e1 = scalar_from_bytes(bp.e0), scalar_from_bytes(bp.e1)
    s0, s1 = scalar_from_bytes(bp.s0), scalar_from_bytes(bp.s1)
    a0 = point_sub(point_mul(s0, h), point_mul(e0, c_i))
    a1 = point_sub(point_mul(s1, h), point_mul(e1, point_sub(c_i, generator_g())))
    return (e0 + e1) % L == _bit_challenge(value, index, c_i, a0, a1)


def verify_range(
    proof: Union[RangeProof, bytes],
    value_commitment: Optional[bytes] = None,
    bit_width: Optional[int] = None,
) -> bool:
    """
    Check a range proof. When value_commitment is given the proof must be
    about that commitment; when bit_width is given the proof must use it.
    """
    try:
        rp = proof if isinstance(proof, RangeProof) else RangeProof.from_bytes(proof)
        _check_width(rp.bit_width)
        if len(rp.bits) != rp.bit_width:
            return False
        if bit_width is not None and rp.bit_width != bit_width:
            return False
        if value_commitment is not None and value_commitment != rp.value_commitment:
            return False
        if not is_point(rp.value_commitment):
            return False

        total = IDENTITY
        for i, bp in enumerate(rp.bits):
            if not _verify_bit(rp.value_commitment, i, bp):
                log.debug(f"bit {i} OR-proof rejected")
                return False
            total = point_add(total, point_mul(1 << i, bp.commitment))
        return total == rp.value_commitment
    except (InvalidInput, CryptoError, ValueError, TypeError) as e:
        log.debug(f"range proof rejected: {e}")
        return False
