# ledger/client.py
"""Interface the session uses to reach the authoritative ledger."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from shielded_pool.ledger.instructions import NoteAccount, PoolAccount


@dataclass(frozen=True)
class Confirmation:
    signature: str
    slot: Optional[int] = None


class LedgerClient(ABC):
    """
    Async access to the shielded pool program.

    submit() returns only once the instruction is confirmed. It raises
    SubmissionFailed when the program rejects it and SubmissionTimeout
    when no verdict arrives in time.
    """

    @abstractmethod
    async def submit(self, instruction: Instruction) -> Confirmation: ...

    @abstractmethod
    async def get_pool_account(self, address: Pubkey) -> Optional[PoolAccount]: ...

    @abstractmethod
    async def get_note_account(self, pool: Pubkey, commitment: bytes) -> Optional[NoteAccount]: ...

    @abstractmethod
    async def get_note_accounts(self, pool: Pubkey) -> List[NoteAccount]: ...

    @abstractmethod
    async def nullifier_spent(self, pool: Pubkey, nullifier: bytes) -> bool: ...

    @abstractmethod
    async def get_balance(self, owner: Pubkey) -> int: ...

    async def close(self) -> None:
        return None
