# database/note_store.py
"""
Client-local encrypted note store.

Per-note lifecycle:

    Created (locked) --now >= unlock_at--> Unlockable --spend confirmed--> Spent

Spent notes are kept as records. Nothing here talks to the network; the
session commits to the store only after the ledger has confirmed.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError

from shielded_pool.config import NOTE_STORE_URL
from shielded_pool.crypto_core.messages import DecryptedNotePayload, NoteCipher
from shielded_pool.crypto_core.splits import first_covering
from shielded_pool.database.config import (
    StoreLock,
    create_store_engine,
    init_database,
    make_session_factory,
    sqlite_path,
)
from shielded_pool.database.models import StoredNote
from shielded_pool.errors import InvalidInput, NoSpendableNote
from shielded_pool.logging_config import get_logger

logger = get_logger("note_store")


@dataclass(frozen=True)
class Note:
    pool: str
    commitment: bytes
    encrypted: bytes
    created_at: int
    unlock_at: int
    leaf_index: Optional[int] = None
    spent: bool = False
    nullifier: Optional[bytes] = None
    spent_at: Optional[int] = None
    opening: Optional[bytes] = None

    def is_unlocked(self, now: int) -> bool:
        return now >= self.unlock_at


def _to_note(row: StoredNote) -> Note:
    return Note(
        pool=row.pool,
        commitment=row.commitment_bytes,
        encrypted=bytes(row.encrypted),
        created_at=row.created_at,
        unlock_at=row.unlock_at,
        leaf_index=row.leaf_index,
        spent=bool(row.spent),
        nullifier=bytes.fromhex(row.nullifier) if row.nullifier else None,
        spent_at=row.spent_at,
        opening=bytes(row.opening) if row.opening is not None else None,
    )


class NoteStore:
    """
    Encrypted note repository for one holder.

    Args:
        cipher: NoteCipher holding the holder's encryption key and owners
        url: SQLAlchemy sqlite URL (``sqlite://`` for in-memory)
        clock: callable returning Unix seconds, used when ``now`` is omitted
    """

    def __init__(
        self,
        cipher: NoteCipher,
        url: str = NOTE_STORE_URL,
        clock: Callable[[], float] = time.time,
    ):
        self.cipher = cipher
        self.url = url
        self._clock = clock
        path = sqlite_path(url)
        self._lock = StoreLock(path) if path else None
        if self._lock:
            self._lock.acquire()
        try:
            self._engine = create_store_engine(url)
            init_database(self._engine)
        except Exception:
            if self._lock:
                self._lock.release()
            raise
        self._Session = make_session_factory(self._engine)
        logger.info(f"note store opened at {url}")

    def __enter__(self) -> "NoteStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._engine.dispose()
        if self._lock:
            self._lock.release()

    def _now(self, now: Optional[int]) -> int:
        return int(self._clock()) if now is None else int(now)

    # ---------- writes ----------

    def store(self, note: Note) -> Note:
        """Insert a note. Storing the same (pool, commitment) again is a no-op."""
        if len(note.commitment) != 32:
            raise InvalidInput("note commitment must be 32 bytes")
        with self._Session() as session:
            existing = session.query(StoredNote).filter_by(
                pool=note.pool, commitment=note.commitment.hex()
            ).first()
            if existing:
                logger.debug(f"note {note.commitment.hex()[:16]}... already stored")
                return _to_note(existing)
            row = StoredNote(
                pool=note.pool,
                commitment=note.commitment.hex(),
                encrypted=note.encrypted,
                leaf_index=note.leaf_index,
                created_at=note.created_at,
                unlock_at=note.unlock_at,
                spent=note.spent,
                nullifier=note.nullifier.hex() if note.nullifier else None,
                spent_at=note.spent_at,
                opening=note.opening,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise InvalidInput(f"note {note.commitment.hex()[:16]}... conflicts with a stored note")
            logger.info(f"stored note {note.commitment.hex()[:16]}... in pool {note.pool[:8]}")
            return _to_note(row)

    def mark_spent(self, note: Note, nullifier: Optional[bytes] = None, spent_at: Optional[int] = None) -> Note:
        with self._Session() as session:
            row = self._row(session, note.pool, note.commitment)
            if row.spent:
                return _to_note(row)
            row.spent = True
            row.nullifier = nullifier.hex() if nullifier else None
            row.spent_at = self._now(spent_at)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise InvalidInput(f"nullifier {nullifier.hex()[:16]}... already recorded for another note")
            logger.info(f"note {row.commitment[:16]}... marked spent")
            return _to_note(row)

    def set_leaf_index(self, note: Note, leaf_index: int) -> Note:
        with self._Session() as session:
            row = self._row(session, note.pool, note.commitment)
            row.leaf_index = leaf_index
            session.commit()
            return _to_note(row)

    def replace_encrypted(self, note: Note, encrypted: bytes) -> Note:
        """Overwrite a note's ciphertext (used by tests and recovery tooling)."""
        with self._Session() as session:
            row = self._row(session, note.pool, note.commitment)
            row.encrypted = encrypted
            session.commit()
            return _to_note(row)

    # ---------- reads ----------

    @staticmethod
    def _row(session, pool: str, commitment: bytes) -> StoredNote:
        row = session.query(StoredNote).filter_by(pool=pool, commitment=commitment.hex()).first()
        if row is None:
            raise InvalidInput(f"note {commitment.hex()[:16]}... is not in the store")
        return row

    def get(self, pool: str, commitment: bytes) -> Optional[Note]:
        with self._Session() as session:
            row = session.query(StoredNote).filter_by(pool=pool, commitment=commitment.hex()).first()
            return _to_note(row) if row else None

    def get_by_leaf(self, pool: str, leaf_index: int) -> Optional[Note]:
        with self._Session() as session:
            row = session.query(StoredNote).filter_by(pool=pool, leaf_index=leaf_index).first()
            return _to_note(row) if row else None

    def list_notes(self, pool: Optional[str] = None, include_spent: bool = True) -> List[Note]:
        with self._Session() as session:
            q = session.query(StoredNote)
            if pool is not None:
                q = q.filter(StoredNote.pool == pool)
            if not include_spent:
                q = q.filter(StoredNote.spent.is_(False))
            return [_to_note(r) for r in q.order_by(StoredNote.id).all()]

    def decrypt(self, note: Note) -> Optional[DecryptedNotePayload]:
        """Open a stored note; None if the payload is foreign or corrupted."""
        if note.opening is not None:
            return self.cipher.decrypt_opening(note.opening, expected_commitment=note.commitment)
        return self.cipher.decrypt(note.encrypted, expected_commitment=note.commitment)

    def _owned(self, payload: Optional[DecryptedNotePayload], owner_commitment: Optional[bytes]) -> bool:
        if payload is None:
            return False
        return owner_commitment is None or payload.owner_commitment == owner_commitment

    def balance(self, pool: str, owner_commitment: Optional[bytes] = None) -> int:
        """Sum of unspent, decryptable notes in lamports, locked ones included."""
        total = 0
        for note in self.list_notes(pool, include_spent=False):
            payload = self.decrypt(note)
            if self._owned(payload, owner_commitment):
                total += payload.amount
        return total

    def find_spendable(
        self,
        pool: str,
        min_amount: int,
        owner_commitment: Optional[bytes] = None,
        now: Optional[int] = None,
    ) -> Note:
        """
        First unspent, unlocked, decryptable note (insertion order) worth at
        least ``min_amount`` lamports. Raises NoSpendableNote otherwise.
        """
        ts = self._now(now)
        candidates = [n for n in self.list_notes(pool, include_spent=False) if n.is_unlocked(ts)]

        def amount_of(n: Note) -> Optional[int]:
            payload = self.decrypt(n)
            return payload.amount if self._owned(payload, owner_commitment) else None

        chosen = first_covering(candidates, min_amount, amount_of)
        if chosen is None:
            raise NoSpendableNote(
                f"no unspent, unlocked note of at least {min_amount} lamports in pool {pool[:8]}"
            )
        return chosen
