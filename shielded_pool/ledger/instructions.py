# ledger/instructions.py
"""
Instruction data and account layouts of the shielded pool program.

Instruction data (little-endian):

    create_pool     0 | pool_id(32) | reward_rate_bps(u16)
    shield_deposit  1 | note_commitment(32) | encrypted_note(64) | len(u16) | range_proof
    shield_withdraw 2 | nullifier(32) | siblings(D x 32) | path_bits(u8) | len(u16) | proof
                      | output_commitment(32)
    shield_transfer 3 | nullifier(32) | siblings(D x 32) | path_bits(u8) | len(u16) | proof
                      | recipient_commitment(32) | change_commitment(32)
"""
from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Sequence, Tuple, Union

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from shielded_pool.config import MAX_WIRE_TREE_DEPTH, SHIELDED_PROGRAM_ID
from shielded_pool.errors import InvalidInput, PoolConfigurationError

PROGRAM_ID = Pubkey.from_string(SHIELDED_PROGRAM_ID)

SHIELDED_POOL_SEED = b"shielded_pool"
SHIELDED_NOTE_SEED = b"shielded_note"
NULLIFIER_SEED = b"nullifier"

ENCRYPTED_NOTE_SIZE = 64
ZERO_COMMITMENT = b"\x00" * 32


class InstructionKind(IntEnum):
    CREATE_POOL = 0
    SHIELD_DEPOSIT = 1
    SHIELD_WITHDRAW = 2
    SHIELD_TRANSFER = 3


def _account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


POOL_DISCRIMINATOR = _account_discriminator("ShieldedPool")
NOTE_DISCRIMINATOR = _account_discriminator("ShieldedNote")


# =========================
# PDAs
# =========================

def pool_address(creator: Pubkey, pool_id: bytes, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address([SHIELDED_POOL_SEED, bytes(creator), pool_id], program_id)[0]


def note_address(pool: Pubkey, commitment: bytes, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address([SHIELDED_NOTE_SEED, bytes(pool), commitment], program_id)[0]


def nullifier_address(pool: Pubkey, nullifier: bytes, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address([NULLIFIER_SEED, bytes(pool), nullifier], program_id)[0]


def _check32(value: bytes, what: str) -> bytes:
    if len(value) != 32:
        raise InvalidInput(f"{what} must be 32 bytes, got {len(value)}")
    return bytes(value)


def check_wire_depth(depth: int) -> None:
    if not 1 <= depth <= MAX_WIRE_TREE_DEPTH:
        raise PoolConfigurationError(
            f"tree depth {depth} cannot be encoded; path bits travel as one byte (max depth {MAX_WIRE_TREE_DEPTH})"
        )


def _pack_proof(proof: bytes) -> bytes:
    if len(proof) > 0xFFFF:
        raise InvalidInput("proof exceeds 65535 bytes")
    return struct.pack("<H", len(proof)) + proof


def _pack_path(siblings: Sequence[bytes], path_bits: int) -> bytes:
    check_wire_depth(len(siblings))
    if not 0 <= path_bits < (1 << len(siblings)):
        raise InvalidInput(f"path bits {path_bits} do not fit depth {len(siblings)}")
    return b"".join(_check32(s, "merkle sibling") for s in siblings) + struct.pack("<B", path_bits)


# =========================
# Encoding
# =========================

def encode_create_pool(pool_id: bytes, reward_rate_bps: int) -> bytes:
    if not 0 <= reward_rate_bps <= 0xFFFF:
        raise InvalidInput("reward rate must fit in u16")
    return struct.pack("<B32sH", InstructionKind.CREATE_POOL, _check32(pool_id, "pool id"), reward_rate_bps)


def encode_deposit(note_commitment: bytes, encrypted_note: bytes, range_proof: bytes) -> bytes:
    if len(encrypted_note) != ENCRYPTED_NOTE_SIZE:
        raise InvalidInput(f"encrypted note must be {ENCRYPTED_NOTE_SIZE} bytes")
    return (
        struct.pack("<B32s64s", InstructionKind.SHIELD_DEPOSIT, _check32(note_commitment, "note commitment"), encrypted_note)
        + _pack_proof(range_proof)
    )


def encode_withdraw(
    nullifier: bytes,
    siblings: Sequence[bytes],
    path_bits: int,
    proof: bytes,
    output_commitment: bytes = ZERO_COMMITMENT,
) -> bytes:
    return (
        struct.pack("<B32s", InstructionKind.SHIELD_WITHDRAW, _check32(nullifier, "nullifier"))
        + _pack_path(siblings, path_bits)
        + _pack_proof(proof)
        + _check32(output_commitment, "output commitment")
    )


def encode_transfer(
    nullifier: bytes,
    siblings: Sequence[bytes],
    path_bits: int,
    proof: bytes,
    recipient_commitment: bytes,
    change_commitment: bytes,
) -> bytes:
    return (
        struct.pack("<B32s", InstructionKind.SHIELD_TRANSFER, _check32(nullifier, "nullifier"))
        + _pack_path(siblings, path_bits)
        + _pack_proof(proof)
        + _check32(recipient_commitment, "recipient commitment")
        + _check32(change_commitment, "change commitment")
    )


# =========================
# Decoding
# =========================

@dataclass(frozen=True)
class CreatePoolData:
    pool_id: bytes
    reward_rate_bps: int


@dataclass(frozen=True)
class DepositData:
    note_commitment: bytes
    encrypted_note: bytes
    range_proof: bytes


@dataclass(frozen=True)
class WithdrawData:
    nullifier: bytes
    siblings: Tuple[bytes, ...]
    path_bits: int
    proof: bytes
    output_commitment: bytes


@dataclass(frozen=True)
class TransferData:
    nullifier: bytes
    siblings: Tuple[bytes, ...]
    path_bits: int
    proof: bytes
    recipient_commitment: bytes
    change_commitment: bytes


InstructionData = Union[CreatePoolData, DepositData, WithdrawData, TransferData]


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise InvalidInput("instruction data is truncated")
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def unpack(self, fmt: str):
        raw = self.take(struct.calcsize(fmt))
        return struct.unpack(fmt, raw)

    def finish(self) -> None:
        if self.pos != len(self.data):
            raise InvalidInput(f"{len(self.data) - self.pos} trailing bytes in instruction data")


def _read_spend_prefix(r: _Reader, depth: int):
    nullifier = r.take(32)
    siblings = tuple(r.take(32) for _ in range(depth))
    (path_bits,) = r.unpack("<B")
    (proof_len,) = r.unpack("<H")
    proof = r.take(proof_len)
    return nullifier, siblings, path_bits, proof


def decode_instruction(data: bytes, depth: int) -> InstructionData:
    if not data:
        raise InvalidInput("empty instruction data")
    check_wire_depth(depth)
    r = _Reader(bytes(data))
    (tag,) = r.unpack("<B")
    try:
        kind = InstructionKind(tag)
    except ValueError:
        raise InvalidInput(f"unknown instruction discriminator {tag}")

    if kind is InstructionKind.CREATE_POOL:
        pool_id, rate = r.unpack("<32sH")
        out: InstructionData = CreatePoolData(pool_id, rate)
    elif kind is InstructionKind.SHIELD_DEPOSIT:
        commitment, encrypted = r.unpack("<32s64s")
        (proof_len,) = r.unpack("<H")
        out = DepositData(commitment, encrypted, r.take(proof_len))
    elif kind is InstructionKind.SHIELD_WITHDRAW:
        nf, siblings, bits, proof = _read_spend_prefix(r, depth)
        out = WithdrawData(nf, siblings, bits, proof, r.take(32))
    else:
        nf, siblings, bits, proof = _read_spend_prefix(r, depth)
        out = TransferData(nf, siblings, bits, proof, r.take(32), r.take(32))
    r.finish()
    return out


# =========================
# Instructions
# =========================

def create_pool_instruction(
    creator: Pubkey, pool_id: bytes, reward_rate_bps: int, program_id: Pubkey = PROGRAM_ID
) -> Instruction:
    pool = pool_address(creator, pool_id, program_id)
    accounts = [
        AccountMeta(pool, is_signer=False, is_writable=True),
        AccountMeta(creator, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, encode_create_pool(pool_id, reward_rate_bps), accounts)


def deposit_instruction(
    pool: Pubkey,
    depositor: Pubkey,
    note_commitment: bytes,
    encrypted_note: bytes,
    range_proof: bytes,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    accounts = [
        AccountMeta(pool, is_signer=False, is_writable=True),
        AccountMeta(note_address(pool, note_commitment, program_id), is_signer=False, is_writable=True),
        AccountMeta(depositor, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, encode_deposit(note_commitment, encrypted_note, range_proof), accounts)


def withdraw_instruction(
    pool: Pubkey,
    owner: Pubkey,
    recipient: Pubkey,
    nullifier: bytes,
    siblings: Sequence[bytes],
    path_bits: int,
    proof: bytes,
    output_commitment: bytes = ZERO_COMMITMENT,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    accounts = [
        AccountMeta(pool, is_signer=False, is_writable=True),
        AccountMeta(nullifier_address(pool, nullifier, program_id), is_signer=False, is_writable=True),
        AccountMeta(recipient, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    if output_commitment != ZERO_COMMITMENT:
        accounts.append(AccountMeta(note_address(pool, output_commitment, program_id), is_signer=False, is_writable=True))
    data = encode_withdraw(nullifier, siblings, path_bits, proof, output_commitment)
    return Instruction(program_id, data, accounts)


def transfer_instruction(
    pool: Pubkey,
    owner: Pubkey,
    nullifier: bytes,
    siblings: Sequence[bytes],
    path_bits: int,
    proof: bytes,
    recipient_commitment: bytes,
    change_commitment: bytes,
    program_id: Pubkey = PROGRAM_ID,
) -> Instruction:
    accounts = [
        AccountMeta(pool, is_signer=False, is_writable=True),
        AccountMeta(nullifier_address(pool, nullifier, program_id), is_signer=False, is_writable=True),
        AccountMeta(note_address(pool, recipient_commitment, program_id), is_signer=False, is_writable=True),
        AccountMeta(note_address(pool, change_commitment, program_id), is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = encode_transfer(nullifier, siblings, path_bits, proof, recipient_commitment, change_commitment)
    return Instruction(program_id, data, accounts)


# =========================
# Accounts
# =========================

@dataclass(frozen=True)
class PoolAccount:
    address: Pubkey
    pool_id: bytes
    creator: Pubkey
    reward_rate_bps: int
    lockup_epochs: int
    merkle_root: bytes
    next_note_index: int
    total_notes: int
    nullifier_count: int
    created_at: int
    is_active: bool

    LAYOUT = struct.Struct("<8s32s32sHB32sIIIq?")

    def to_bytes(self) -> bytes:
        return self.LAYOUT.pack(
            POOL_DISCRIMINATOR, self.pool_id, bytes(self.creator), self.reward_rate_bps,
            self.lockup_epochs, self.merkle_root, self.next_note_index, self.total_notes,
            self.nullifier_count, self.created_at, self.is_active,
        )

    @classmethod
    def from_bytes(cls, address: Pubkey, data: bytes) -> "PoolAccount":
        if len(data) < cls.LAYOUT.size:
            raise InvalidInput(f"pool account is {len(data)} bytes, expected {cls.LAYOUT.size}")
        (disc, pool_id, creator, rate, lockup, root, next_idx, total,
         nf_count, created, active) = cls.LAYOUT.unpack_from(data, 0)
        if disc != POOL_DISCRIMINATOR:
            raise InvalidInput("account is not a shielded pool")
        return cls(
            address=address,
            pool_id=pool_id,
            creator=Pubkey.from_bytes(creator),
            reward_rate_bps=rate,
            lockup_epochs=lockup,
            merkle_root=root,
            next_note_index=next_idx,
            total_notes=total,
            nullifier_count=nf_count,
            created_at=created,
            is_active=active,
        )


@dataclass(frozen=True)
class NoteAccount:
    pool: Pubkey
    commitment: bytes
    encrypted_note: bytes
    value_commitment: bytes
    leaf_index: int
    created_at: int
    unlock_at: int
    spent: bool

    LAYOUT = struct.Struct("<8s32s32s64s32sIqq?")

    def to_bytes(self) -> bytes:
        return self.LAYOUT.pack(
            NOTE_DISCRIMINATOR, bytes(self.pool), self.commitment, self.encrypted_note,
            self.value_commitment, self.leaf_index, self.created_at, self.unlock_at, self.spent,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "NoteAccount":
        if len(data) < cls.LAYOUT.size:
            raise InvalidInput(f"note account is {len(data)} bytes, expected {cls.LAYOUT.size}")
        disc, pool, commitment, enc, value, leaf, created, unlock, spent = cls.LAYOUT.unpack_from(data, 0)
        if disc != NOTE_DISCRIMINATOR:
            raise InvalidInput("account is not a shielded note")
        return cls(Pubkey.from_bytes(pool), commitment, enc, value, leaf, created, unlock, spent)


def parse_pubkey(value: Union[str, bytes, Pubkey], what: str = "public key") -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        if isinstance(value, (bytes, bytearray)):
            # from_bytes panics (BaseException) on the wrong length
            if len(value) != 32:
                raise InvalidInput(f"invalid {what}: expected 32 bytes, got {len(value)}")
            return Pubkey.from_bytes(bytes(value))
        return Pubkey.from_string(value)
    except (ValueError, TypeError) as e:
        raise InvalidInput(f"invalid {what}: {value!r}") from e


def pool_id_from_label(label: str) -> bytes:
    """32-byte pool id from a human label (sha256)."""
    return hashlib.sha256(label.encode()).digest()
