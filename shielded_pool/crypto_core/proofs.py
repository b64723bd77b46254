# crypto_core/proofs.py
"""
Binary layouts of the three proof kinds carried by pool instructions.

Every proof starts with a one-byte tag so a decoder can tell them apart:

    RangeProof       0x01 | bits(1) | value_commitment(32) | bits x BitProof(160)
    WithdrawalProof  0x02 | nullifier | note_commitment | recipient | amount(u64)
                          | input_value | change_value | R | s | len(u16) | change_range
    TransferProof    0x03 | nullifier | note_commitment | input_value
                          | recipient_note | recipient_value | change_note | change_value
                          | R | s | len(u16) | recipient_range | len(u16) | change_range

All 32-byte fields are either compressed edwards25519 points, field elements
(big-endian) or scalars (little-endian). Integers are little-endian.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Tuple, Union

from shielded_pool.errors import InvalidInput


class ProofKind(IntEnum):
    RANGE = 0x01
    WITHDRAWAL = 0x02
    TRANSFER = 0x03


BIT_PROOF_SIZE = 160


def _take(data: bytes, offset: int, n: int) -> Tuple[bytes, int]:
    if offset + n > len(data):
        raise InvalidInput("proof is truncated")
    return data[offset:offset + n], offset + n


def _check_tag(data: bytes, kind: ProofKind) -> None:
    if not data:
        raise InvalidInput("empty proof")
    if data[0] != kind:
        raise InvalidInput(f"expected {kind.name.lower()} proof tag {int(kind):#04x}, got {data[0]:#04x}")


@dataclass(frozen=True)
class BitProof:
    commitment: bytes
    e0: bytes
    e1: bytes
    s0: bytes
    s1: bytes

    def to_bytes(self) -> bytes:
        return self.commitment + self.e0 + self.e1 + self.s0 + self.s1

    @classmethod
    def from_bytes(cls, data: bytes) -> "BitProof":
        if len(data) != BIT_PROOF_SIZE:
            raise InvalidInput("bit proof must be 160 bytes")
        return cls(*(data[i:i + 32] for i in range(0, BIT_PROOF_SIZE, 32)))


@dataclass(frozen=True)
class RangeProof:
    bit_width: int
    value_commitment: bytes
    bits: Tuple[BitProof, ...]

    def to_bytes(self) -> bytes:
        head = struct.pack("<BB32s", ProofKind.RANGE, self.bit_width, self.value_commitment)
        return head + b"".join(b.to_bytes() for b in self.bits)

    @classmethod
    def from_bytes(cls, data: bytes) -> "RangeProof":
        _check_tag(data, ProofKind.RANGE)
        if len(data) < 34:
            raise InvalidInput("range proof is truncated")
        _, bit_width, value = struct.unpack_from("<BB32s", data, 0)
        expected = 34 + bit_width * BIT_PROOF_SIZE
        if len(data) != expected:
            raise InvalidInput(f"range proof length {len(data)} does not match {bit_width} bits")
        bits = tuple(
            BitProof.from_bytes(data[34 + i * BIT_PROOF_SIZE: 34 + (i + 1) * BIT_PROOF_SIZE])
            for i in range(bit_width)
        )
        return cls(bit_width=bit_width, value_commitment=value, bits=bits)


def _pack_var(blob: bytes) -> bytes:
    if len(blob) > 0xFFFF:
        raise InvalidInput("embedded proof exceeds 65535 bytes")
    return struct.pack("<H", len(blob)) + blob


def _unpack_var(data: bytes, offset: int) -> Tuple[bytes, int]:
    raw, offset = _take(data, offset, 2)
    (n,) = struct.unpack("<H", raw)
    return _take(data, offset, n)


@dataclass(frozen=True)
class WithdrawalProof:
    nullifier: bytes
    note_commitment: bytes
    recipient: bytes
    amount: int
    input_value: bytes
    change_value: bytes
    excess_r: bytes
    excess_s: bytes
    change_range: bytes

    _HEAD = struct.Struct("<B32s32s32sQ32s32s32s32s")

    def to_bytes(self) -> bytes:
        head = self._HEAD.pack(
            ProofKind.WITHDRAWAL, self.nullifier, self.note_commitment, self.recipient, self.amount,
            self.input_value, self.change_value, self.excess_r, self.excess_s,
        )
        return head + _pack_var(self.change_range)

    @classmethod
    def from_bytes(cls, data: bytes) -> "WithdrawalProof":
        _check_tag(data, ProofKind.WITHDRAWAL)
        head, offset = _take(data, 0, cls._HEAD.size)
        _, nf, note, recipient, amount, inp, change, r, s = cls._HEAD.unpack(head)
        change_range, offset = _unpack_var(data, offset)
        if offset != len(data):
            raise InvalidInput("trailing bytes after withdrawal proof")
        return cls(nf, note, recipient, amount, inp, change, r, s, change_range)


@dataclass(frozen=True)
class TransferProof:
    nullifier: bytes
    note_commitment: bytes
    input_value: bytes
    recipient_note: bytes
    recipient_value: bytes
    change_note: bytes
    change_value: bytes
    excess_r: bytes
    excess_s: bytes
    recipient_range: bytes
    change_range: bytes

    _HEAD = struct.Struct("<B32s32s32s32s32s32s32s32s32s")

    def to_bytes(self) -> bytes:
        head = self._HEAD.pack(
            ProofKind.TRANSFER, self.nullifier, self.note_commitment, self.input_value,
            self.recipient_note, self.recipient_value, self.change_note, self.change_value,
            self.excess_r, self.excess_s,
        )
        return head + _pack_var(self.recipient_range) + _pack_var(self.change_range)

    @classmethod
    def from_bytes(cls, data: bytes) -> "TransferProof":
        _check_tag(data, ProofKind.TRANSFER)
        head, offset = _take(data, 0, cls._HEAD.size)
        fields: List[bytes] = list(cls._HEAD.unpack(head)[1:])
        recipient_range, offset = _unpack_var(data, offset)
        change_range, offset = _unpack_var(data, offset)
        if offset != len(data):
            raise InvalidInput("trailing bytes after transfer proof")
        return cls(*fields, recipient_range, change_range)


AnyProof = Union[RangeProof, WithdrawalProof, TransferProof]


def decode_proof(data: bytes) -> AnyProof:
    if not data:
        raise InvalidInput("empty proof")
    try:
        kind = ProofKind(data[0])
    except ValueError:
        raise InvalidInput(f"unknown proof tag {data[0]:#04x}")
    decoder = {
        ProofKind.RANGE: RangeProof,
        ProofKind.WITHDRAWAL: WithdrawalProof,
        ProofKind.TRANSFER: TransferProof,
    }[kind]
    return decoder.from_bytes(data)
