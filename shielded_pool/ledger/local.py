# ledger/local.py
"""
In-process ledger for localnet runs and tests.

Implements the pool program's validation rules against plain Python
repositories. Pools and notes are addressed by pool address and leaf index;
the commitment index maps a note commitment back to its leaf.

Deposits carry no public amount on the wire, so the ledger cannot debit a
depositor by what a note hides. Custody is modelled through pool vaults
instead: once a vault is funded (fund_vault) every withdrawal from that pool
is paid out of it and refused when it would overdraw it. Pools without a
funded vault pay withdrawals without a custody check.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Set, Tuple

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature

from shielded_pool.config import DEFAULT_LOCKUP_EPOCHS, EPOCH_SECONDS, MERKLE_TREE_DEPTH, RANGE_PROOF_BITS
from shielded_pool.crypto_core.merkle import MerkleTree, compute_root
from shielded_pool.crypto_core.proofs import RangeProof, TransferProof, WithdrawalProof
from shielded_pool.crypto_core.range_proof import verify_range
from shielded_pool.crypto_core.spend import verify_transfer, verify_withdrawal
from shielded_pool.errors import (
    InvalidInput,
    PoolConfigurationError,
    RejectReason,
    ShieldedPoolError,
    SubmissionFailed,
    SubmissionTimeout,
)
from shielded_pool.ledger.client import Confirmation, LedgerClient
from shielded_pool.ledger.instructions import (
    ENCRYPTED_NOTE_SIZE,
    PROGRAM_ID,
    ZERO_COMMITMENT,
    CreatePoolData,
    DepositData,
    NoteAccount,
    PoolAccount,
    TransferData,
    WithdrawData,
    decode_instruction,
    pool_address,
)
from shielded_pool.logging_config import get_logger

logger = get_logger("local_ledger")


@dataclass
class PoolRecord:
    account: PoolAccount
    tree: MerkleTree
    nullifiers: Set[bytes] = field(default_factory=set)


class PoolRepository:
    def __init__(self):
        self._pools: Dict[Pubkey, PoolRecord] = {}

    def get(self, address: Pubkey) -> Optional[PoolRecord]:
        return self._pools.get(address)

    def put(self, record: PoolRecord) -> None:
        self._pools[record.account.address] = record

    def __contains__(self, address: Pubkey) -> bool:
        return address in self._pools


class NoteRepository:
    """Arena of note accounts keyed by (pool, leaf_index)."""

    def __init__(self):
        self._notes: Dict[Tuple[Pubkey, int], NoteAccount] = {}
        self._by_commitment: Dict[Tuple[Pubkey, bytes], int] = {}

    def insert(self, note: NoteAccount) -> None:
        self._notes[(note.pool, note.leaf_index)] = note
        self._by_commitment[(note.pool, note.commitment)] = note.leaf_index

    def update(self, note: NoteAccount) -> None:
        self._notes[(note.pool, note.leaf_index)] = note

    def at(self, pool: Pubkey, leaf_index: int) -> Optional[NoteAccount]:
        return self._notes.get((pool, leaf_index))

    def leaf_of(self, pool: Pubkey, commitment: bytes) -> Optional[int]:
        return self._by_commitment.get((pool, commitment))

    def by_commitment(self, pool: Pubkey, commitment: bytes) -> Optional[NoteAccount]:
        idx = self.leaf_of(pool, commitment)
        return None if idx is None else self.at(pool, idx)

    def in_pool(self, pool: Pubkey) -> List[NoteAccount]:
        return sorted((n for (p, _), n in self._notes.items() if p == pool), key=lambda n: n.leaf_index)


class LocalLedger(LedgerClient):
    def __init__(
        self,
        depth: int = MERKLE_TREE_DEPTH,
        lockup_epochs: int = DEFAULT_LOCKUP_EPOCHS,
        epoch_seconds: int = EPOCH_SECONDS,
        range_bits: int = RANGE_PROOF_BITS,
        program_id: Pubkey = PROGRAM_ID,
        clock: Callable[[], float] = time.time,
    ):
        self.depth = depth
        self.lockup_epochs = lockup_epochs
        self.epoch_seconds = epoch_seconds
        self.range_bits = range_bits
        self.program_id = program_id
        self.clock = clock
        self.pools = PoolRepository()
        self.notes = NoteRepository()
        self.balances: Dict[Pubkey, int] = {}
        self.vaults: Dict[Pubkey, int] = {}
        self.calls: List[str] = []
        # fault injection for tests
        self.gate: Optional[asyncio.Event] = None
        self._timeouts: List[bool] = []

    # ---------- test hooks ----------

    def fund(self, owner: Pubkey, lamports: int) -> None:
        self.balances[owner] = self.balances.get(owner, 0) + lamports

    def fund_vault(self, pool: Pubkey, lamports: int, payer: Optional[Pubkey] = None) -> None:
        """Move lamports into a pool vault, out of ``payer``'s public balance when given."""
        if lamports < 0:
            raise InvalidInput("cannot fund a vault with a negative amount")
        if payer is not None:
            if self.balances.get(payer, 0) < lamports:
                raise InvalidInput(f"{payer} cannot cover {lamports} lamports")
            self.balances[payer] -= lamports
        self.vaults[pool] = self.vaults.get(pool, 0) + lamports

    def timeout_next(self, apply: bool) -> None:
        """Make the next submit time out, after applying its effect if ``apply``."""
        self._timeouts.append(apply)

    # ---------- LedgerClient ----------

    async def submit(self, instruction: Instruction) -> Confirmation:
        self.calls.append("submit")
        if self.gate is not None:
            await self.gate.wait()
        timeout = self._timeouts.pop(0) if self._timeouts else None
        if timeout is False:
            raise SubmissionTimeout("confirmation did not arrive (dropped before landing)")
        self._apply(instruction)
        signature = str(Signature.new_unique())
        if timeout is True:
            raise SubmissionTimeout("confirmation did not arrive", signature=signature)
        return Confirmation(signature=signature, slot=len(self.calls))

    async def get_pool_account(self, address: Pubkey) -> Optional[PoolAccount]:
        self.calls.append("get_pool_account")
        record = self.pools.get(address)
        return record.account if record else None

    async def get_note_account(self, pool: Pubkey, commitment: bytes) -> Optional[NoteAccount]:
        self.calls.append("get_note_account")
        return self.notes.by_commitment(pool, commitment)

    async def get_note_accounts(self, pool: Pubkey) -> List[NoteAccount]:
        self.calls.append("get_note_accounts")
        return self.notes.in_pool(pool)

    async def nullifier_spent(self, pool: Pubkey, nullifier: bytes) -> bool:
        self.calls.append("nullifier_spent")
        record = self.pools.get(pool)
        return record is not None and nullifier in record.nullifiers

    async def get_balance(self, owner: Pubkey) -> int:
        self.calls.append("get_balance")
        return self.balances.get(owner, 0)

    # ---------- program rules ----------

    def _now(self) -> int:
        return int(self.clock())

    def _apply(self, ix: Instruction) -> None:
        if ix.program_id != self.program_id:
            raise SubmissionFailed(RejectReason.INVALID_INSTRUCTION, "wrong program id")
        try:
            data = decode_instruction(bytes(ix.data), self.depth)
        except (InvalidInput, PoolConfigurationError) as e:
            raise SubmissionFailed(RejectReason.INVALID_INSTRUCTION, str(e))
        keys = [m.pubkey for m in ix.accounts]
        try:
            if isinstance(data, CreatePoolData):
                self._create_pool(keys[1], data)
            elif isinstance(data, DepositData):
                self._deposit(keys[0], data)
            elif isinstance(data, WithdrawData):
                self._withdraw(keys[0], keys[2], data)
            else:
                self._transfer(keys[0], data)
        except SubmissionFailed as e:
            logger.warning(f"rejected {type(data).__name__}: {e.reason_code}")
            raise

    def _active_pool(self, address: Pubkey) -> PoolRecord:
        record = self.pools.get(address)
        if record is None:
            raise SubmissionFailed(RejectReason.UNKNOWN_POOL, str(address))
        if not record.account.is_active:
            raise SubmissionFailed(RejectReason.POOL_INACTIVE, str(address))
        return record

    def _create_pool(self, creator: Pubkey, data: CreatePoolData) -> None:
        address = pool_address(creator, data.pool_id, self.program_id)
        if address in self.pools:
            raise SubmissionFailed(RejectReason.POOL_EXISTS, str(address))
        tree = MerkleTree(self.depth)
        account = PoolAccount(
            address=address,
            pool_id=data.pool_id,
            creator=creator,
            reward_rate_bps=data.reward_rate_bps,
            lockup_epochs=self.lockup_epochs,
            merkle_root=tree.root(),
            next_note_index=0,
            total_notes=0,
            nullifier_count=0,
            created_at=self._now(),
            is_active=True,
        )
        self.pools.put(PoolRecord(account=account, tree=tree))
        logger.info(f"pool {str(address)[:8]} created by {str(creator)[:8]}")

    def _insert_note(
        self,
        record: PoolRecord,
        commitment: bytes,
        value_commitment: bytes,
        unlock_at: int,
        encrypted: bytes = b"\x00" * ENCRYPTED_NOTE_SIZE,
    ) -> None:
        pool = record.account.address
        leaf = record.account.next_note_index
        record.tree.append(commitment)
        self.notes.insert(NoteAccount(
            pool=pool,
            commitment=commitment,
            encrypted_note=encrypted,
            value_commitment=value_commitment,
            leaf_index=leaf,
            created_at=self._now(),
            unlock_at=unlock_at,
            spent=False,
        ))
        record.account = replace(
            record.account,
            merkle_root=record.tree.root(),
            next_note_index=leaf + 1,
            total_notes=record.account.total_notes + 1,
        )

    def _check_new_outputs(self, record: PoolRecord, *commitments: bytes) -> None:
        pool = record.account.address
        if len(set(commitments)) != len(commitments):
            raise SubmissionFailed(RejectReason.COMMITMENT_EXISTS, "duplicate output commitment")
        for c in commitments:
            if c == ZERO_COMMITMENT:
                raise SubmissionFailed(RejectReason.INVALID_INSTRUCTION, "zero output commitment")
            if self.notes.leaf_of(pool, c) is not None:
                raise SubmissionFailed(RejectReason.COMMITMENT_EXISTS, c.hex()[:16])
        if record.account.next_note_index + len(commitments) > record.tree.capacity:
            raise SubmissionFailed(RejectReason.POOL_FULL, f"capacity {record.tree.capacity}")

    def _deposit(self, pool: Pubkey, data: DepositData) -> None:
        record = self._active_pool(pool)
        self._check_new_outputs(record, data.note_commitment)
        try:
            proof = RangeProof.from_bytes(data.range_proof)
        except ShieldedPoolError as e:
            raise SubmissionFailed(RejectReason.INVALID_PROOF, str(e))
        if not verify_range(proof, bit_width=self.range_bits):
            raise SubmissionFailed(RejectReason.INVALID_PROOF, "range proof rejected")
        unlock_at = self._now() + record.account.lockup_epochs * self.epoch_seconds
        self._insert_note(record, data.note_commitment, proof.value_commitment, unlock_at, data.encrypted_note)

    def _spend_input(self, record: PoolRecord, nullifier: bytes, note_commitment: bytes, input_value: bytes,
                     siblings, path_bits: int) -> NoteAccount:
        pool = record.account.address
        if nullifier in record.nullifiers:
            raise SubmissionFailed(RejectReason.NULLIFIER_EXISTS, nullifier.hex()[:16])
        note = self.notes.by_commitment(pool, note_commitment)
        if note is None:
            raise SubmissionFailed(RejectReason.UNKNOWN_NOTE, note_commitment.hex()[:16])
        try:
            root = compute_root(note_commitment, siblings, path_bits)
        except ShieldedPoolError:
            root = None
        if root != record.account.merkle_root:
            raise SubmissionFailed(RejectReason.STALE_ROOT, "merkle proof does not reach the current root")
        if path_bits != note.leaf_index:
            raise SubmissionFailed(RejectReason.INVALID_PROOF, "path does not lead to the note's leaf")
        if input_value != note.value_commitment:
            raise SubmissionFailed(RejectReason.VALUE_MISMATCH, note_commitment.hex()[:16])
        if self._now() < note.unlock_at:
            raise SubmissionFailed(RejectReason.NOTE_LOCKED, f"unlocks at {note.unlock_at}")
        return note

    def _consume(self, record: PoolRecord, note: NoteAccount, nullifier: bytes) -> None:
        record.nullifiers.add(nullifier)
        self.notes.update(replace(note, spent=True))
        record.account = replace(record.account, nullifier_count=record.account.nullifier_count + 1)

    def _withdraw(self, pool: Pubkey, recipient: Pubkey, data: WithdrawData) -> None:
        record = self._active_pool(pool)
        try:
            proof = WithdrawalProof.from_bytes(data.proof)
        except ShieldedPoolError as e:
            raise SubmissionFailed(RejectReason.INVALID_PROOF, str(e))
        if proof.nullifier != data.nullifier or proof.recipient != bytes(recipient):
            raise SubmissionFailed(RejectReason.INVALID_PROOF, "proof is bound to another nullifier or recipient")
        note = self._spend_input(record, data.nullifier, proof.note_commitment, proof.input_value,
                                 data.siblings, data.path_bits)
        has_change = data.output_commitment != ZERO_COMMITMENT
        if has_change:
            self._check_new_outputs(record, data.output_commitment)
        if not verify_withdrawal(proof, self.range_bits):
            raise SubmissionFailed(RejectReason.INVALID_PROOF, "withdrawal proof rejected")
        if pool in self.vaults and self.vaults[pool] < proof.amount:
            raise SubmissionFailed(
                RejectReason.VAULT_EXHAUSTED, f"vault holds {self.vaults[pool]}, withdrawal needs {proof.amount}"
            )

        self._consume(record, note, data.nullifier)
        if has_change:
            self._insert_note(record, data.output_commitment, proof.change_value, note.unlock_at)
        if pool in self.vaults:
            self.vaults[pool] -= proof.amount
        self.balances[recipient] = self.balances.get(recipient, 0) + proof.amount
        logger.info(f"withdrew {proof.amount} lamports from pool {str(pool)[:8]} to {str(recipient)[:8]}")

    def _transfer(self, pool: Pubkey, data: TransferData) -> None:
        record = self._active_pool(pool)
        try:
            proof = TransferProof.from_bytes(data.proof)
        except ShieldedPoolError as e:
            raise SubmissionFailed(RejectReason.INVALID_PROOF, str(e))
        if (proof.nullifier != data.nullifier
                or proof.recipient_note != data.recipient_commitment
                or proof.change_note != data.change_commitment):
            raise SubmissionFailed(RejectReason.INVALID_PROOF, "proof is bound to other outputs")
        note = self._spend_input(record, data.nullifier, proof.note_commitment, proof.input_value,
                                 data.siblings, data.path_bits)
        self._check_new_outputs(record, data.recipient_commitment, data.change_commitment)
        if not verify_transfer(proof, self.range_bits):
            raise SubmissionFailed(RejectReason.INVALID_PROOF, "transfer proof rejected")

        self._consume(record, note, data.nullifier)
        self._insert_note(record, data.recipient_commitment, proof.recipient_value, note.unlock_at)
        self._insert_note(record, data.change_commitment, proof.change_value, note.unlock_at)
        logger.info(f"transfer inside pool {str(pool)[:8]}")
