# crypto_core/spend.py
"""
Spend proofs for withdrawals and in-pool transfers.

Value conservation is checked homomorphically. For a withdrawal of `amount`
lamports from a note with value commitment V_in, producing a change note with
value commitment C_change, the excess

    E = V_in - amount*G - C_change

is a multiple of H only when the amounts balance, and the prover knows the
multiple (the difference of blindings). A Schnorr signature under H over E
proves that knowledge; its challenge covers every public field so the proof
cannot be replayed for another nullifier, recipient or amount.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from nacl.exceptions import CryptoError

from shielded_pool.crypto_core import pedersen
from shielded_pool.crypto_core.pedersen import (
    L,
    base_mul,
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
from shielded_pool.crypto_core.proofs import TransferProof, WithdrawalProof
from shielded_pool.crypto_core.range_proof import prove_range, verify_range
from shielded_pool.errors import InsufficientBalance, InvalidInput
from shielded_pool.logging_config import get_logger

log = get_logger("spend")

WITHDRAW_DOMAIN = b"shielded-pool/withdraw-v1"
TRANSFER_DOMAIN = b"shielded-pool/transfer-v1"


@dataclass(frozen=True)
class NoteOpening:
    """Everything needed to spend a note: its amount and blinding."""

    amount: int
    blinding: int

    @property
    def value_commitment(self) -> bytes:
        return pedersen.commit(self.amount, self.blinding)


def _schnorr_sign(excess_blinding: int, *transcript: bytes):
    h = generator_h()
    k = random_scalar()
    r_point = point_mul(k, h)
    c = hash_to_scalar(*transcript, r_point)
    s = (k + c * excess_blinding) % L
    return r_point, scalar_bytes(s)


def _schnorr_check(excess: bytes, r_point: bytes, s_bytes: bytes, *transcript: bytes) -> bool:
    if not is_point(r_point) or not is_point(excess):
        return False
    s = scalar_from_bytes(s_bytes)
    c = hash_to_scalar(*transcript, r_point)
    return point_mul(s, generator_h()) == point_add(r_point, point_mul(c, excess))


# =========================
# Withdrawal
# =========================

def _withdraw_transcript(nf, note, recipient, amount, v_in, v_change):
    return (WITHDRAW_DOMAIN, nf, note, recipient, amount.to_bytes(8, "little"), v_in, v_change)


def prove_withdrawal(
    *,
    nullifier: bytes,
    note_commitment: bytes,
    recipient: bytes,
    amount: int,
    input_note: NoteOpening,
    change_blinding: int,
    range_bits: int = 64,
) -> WithdrawalProof:
    if amount <= 0:
        raise InvalidInput("withdrawal amount must be positive")
    if amount > input_note.amount:
        raise InsufficientBalance(requested=amount, available=input_note.amount)
    if len(recipient) != 32:
        raise InvalidInput("recipient must be 32 bytes")
    change = input_note.amount - amount
    v_in = input_note.value_commitment
    v_change = pedersen.commit(change, change_blinding)
    change_range = prove_range(change, change_blinding, range_bits)

    r_point, s = _schnorr_sign(
        (input_note.blinding - change_blinding) % L,
        *_withdraw_transcript(nullifier, note_commitment, recipient, amount, v_in, v_change),
    )
    return WithdrawalProof(
        nullifier=nullifier,
        note_commitment=note_commitment,
        recipient=recipient,
        amount=amount,
        input_value=v_in,
        change_value=v_change,
        excess_r=r_point,
        excess_s=s,
        change_range=change_range.to_bytes(),
    )


def verify_withdrawal(proof: WithdrawalProof, range_bits: Optional[int] = None) -> bool:
    try:
        if not verify_range(proof.change_range, proof.change_value, range_bits):
            return False
        excess = point_sub(point_sub(proof.input_value, base_mul(proof.amount)), proof.change_value)
        return _schnorr_check(
            excess, proof.excess_r, proof.excess_s,
            *_withdraw_transcript(
                proof.nullifier, proof.note_commitment, proof.recipient,
                proof.amount, proof.input_value, proof.change_value,
            ),
        )
    except (InvalidInput, CryptoError, ValueError, TypeError) as e:
        log.debug(f"withdrawal proof rejected: {e}")
        return False


# =========================
# Transfer
# =========================

def _transfer_transcript(nf, note, v_in, recipient_note, v_recipient, change_note, v_change):
    return (TRANSFER_DOMAIN, nf, note, v_in, recipient_note, v_recipient, change_note, v_change)


def prove_transfer(
    *,
    nullifier: bytes,
    note_commitment: bytes,
    input_note: NoteOpening,
    recipient_note_commitment: bytes,
    recipient_note: NoteOpening,
    change_note_commitment: bytes,
    change_note: NoteOpening,
    range_bits: int = 64,
) -> TransferProof:
    if recipient_note.amount + change_note.amount != input_note.amount:
        raise InvalidInput("transfer outputs do not add up to the input note")
    v_in = input_note.value_commitment
    v_recipient = recipient_note.value_commitment
    v_change = change_note.value_commitment
    recipient_range = prove_range(recipient_note.amount, recipient_note.blinding, range_bits)
    change_range = prove_range(change_note.amount, change_note.blinding, range_bits)

    r_point, s = _schnorr_sign(
        (input_note.blinding - recipient_note.blinding - change_note.blinding) % L,
        *_transfer_transcript(
            nullifier, note_commitment, v_in,
            recipient_note_commitment, v_recipient, change_note_commitment, v_change,
        ),
    )
    return TransferProof(
        nullifier=nullifier,
        note_commitment=note_commitment,
        input_value=v_in,
        recipient_note=recipient_note_commitment,
        recipient_value=v_recipient,
        change_note=change_note_commitment,
        change_value=v_change,
        excess_r=r_point,
        excess_s=s,
        recipient_range=recipient_range.to_bytes(),
        change_range=change_range.to_bytes(),
    )


def verify_transfer(proof: TransferProof, range_bits: Optional[int] = None) -> bool:
    try:
        if not verify_range(proof.recipient_range, proof.recipient_value, range_bits):
            return False
        if not verify_range(proof.change_range, proof.change_value, range_bits):
            return False
        excess = point_sub(point_sub(proof.input_value, proof.recipient_value), proof.change_value)
        return _schnorr_check(
            excess, proof.excess_r, proof.excess_s,
            *_transfer_transcript(
                proof.nullifier, proof.note_commitment, proof.input_value,
                proof.recipient_note, proof.recipient_value, proof.change_note, proof.change_value,
            ),
        )
    except (InvalidInput, CryptoError, ValueError, TypeError) as e:
        log.debug(f"transfer proof rejected: {e}")
        return False
