"""
ORM models for the local note store.

Only ciphertext, the public commitment and lifecycle metadata are persisted;
amounts and blinding factors are recovered by decrypting ``encrypted``, or
``opening`` for notes received through a transfer.
"""
from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, LargeBinary, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class StoredNote(Base):
    __tablename__ = "notes"
    __table_args__ = (UniqueConstraint("pool", "commitment", name="uq_note_pool_commitment"),)

    # autoincrement id doubles as insertion order for note selection
    id = Column(Integer, primary_key=True, autoincrement=True)
    pool = Column(String(44), nullable=False, index=True)
    commitment = Column(String(64), nullable=False)
    encrypted = Column(LargeBinary(64), nullable=False)
    leaf_index = Column(Integer, nullable=True)
    created_at = Column(Integer, nullable=False)
    unlock_at = Column(Integer, nullable=False)
    spent = Column(Boolean, nullable=False, default=False)
    nullifier = Column(String(64), nullable=True, unique=True)
    spent_at = Column(Integer, nullable=True)
    opening = Column(LargeBinary, nullable=True)

    @property
    def commitment_bytes(self) -> bytes:
        return bytes.fromhex(self.commitment)

    def is_unlocked(self, now: int) -> bool:
        return now >= self.unlock_at

    def __repr__(self) -> str:
        state = "spent" if self.spent else "unspent"
        return f"<StoredNote {self.commitment[:16]}... pool={self.pool[:8]} leaf={self.leaf_index} {state}>"
