# shielded_pool/pool_session.py
"""
Pool session: deposit, withdraw and transfer orchestration.

Each (pool, owner) pair runs one operation at a time:

    Idle -> Depositing | Withdrawing | Transferring -> Idle

An operation first prepares everything locally (note selection, proofs,
instruction). That phase can be cancelled. Submission and the local commit
that follows run as one shielded task, so cancelling the caller after the
instruction left does not stop it. Local state only changes after the ledger
confirms.

When submission times out, or fails in any way other than a definite
rejection, the session asks the ledger whether the effect landed (nullifier
for spends, note account for deposits). If it cannot tell, the key is parked
until reconcile() settles it.
"""
from __future__ import annotations

import asyncio
import struct
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from shielded_pool.config import SessionConfig
from shielded_pool.crypto_core import pedersen
from shielded_pool.crypto_core.commitments import (
    derive_owner_secret,
    field_bytes,
    note_commitment,
    nullifier,
    to_field,
)
from shielded_pool.crypto_core.messages import DecryptedNotePayload
from shielded_pool.crypto_core.pedersen import random_scalar
from shielded_pool.crypto_core.range_proof import prove_range
from shielded_pool.crypto_core.spend import NoteOpening, prove_transfer, prove_withdrawal
from shielded_pool.crypto_core.splits import from_lamports, to_lamports
from shielded_pool.database.note_store import Note, NoteStore
from shielded_pool.errors import (
    InsufficientBalance,
    InvalidInput,
    OperationInProgress,
    RangeViolation,
    ReconciliationRequired,
    SubmissionFailed,
    UnknownOutcome,
)
from shielded_pool.ledger.accumulator import MerkleAccumulatorClient, check_capacity
from shielded_pool.ledger.client import Confirmation, LedgerClient
from shielded_pool.ledger.instructions import (
    ZERO_COMMITMENT,
    NoteAccount,
    PoolAccount,
    create_pool_instruction,
    deposit_instruction,
    parse_pubkey,
    pool_address,
    transfer_instruction,
    withdraw_instruction,
)
from shielded_pool.logging_config import get_logger

logger = get_logger("pool_session")

PubkeyLike = Union[Pubkey, str, bytes]
Amount = Union[Decimal, str, int]


class OpState(str, Enum):
    IDLE = "idle"
    DEPOSITING = "depositing"
    WITHDRAWING = "withdrawing"
    TRANSFERRING = "transferring"


@dataclass(frozen=True)
class DepositResult:
    signature: str
    pool: str
    commitment: bytes
    amount: Decimal
    leaf_index: Optional[int]
    unlock_at: int


@dataclass(frozen=True)
class WithdrawResult:
    signature: str
    pool: str
    recipient: str
    amount: Decimal
    nullifier: bytes
    change_commitment: Optional[bytes]
    change_amount: Decimal


@dataclass(frozen=True)
class RecipientNote:
    """
    Opening of a transferred note, handed to the recipient out of band.
    The recipient imports it with PoolSession.receive_note().
    """

    commitment: bytes
    amount: int
    blinding: int
    owner_commitment: bytes
    unlock_at: int

    LAYOUT = struct.Struct("<32sQ32s32sq")

    def to_bytes(self) -> bytes:
        return self.LAYOUT.pack(
            self.commitment, self.amount, field_bytes(self.blinding), self.owner_commitment, self.unlock_at
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "RecipientNote":
        if len(data) != cls.LAYOUT.size:
            raise InvalidInput(f"recipient note must be {cls.LAYOUT.size} bytes, got {len(data)}")
        commitment, amount, blinding, oc, unlock_at = cls.LAYOUT.unpack(data)
        return cls(commitment, amount, to_field(blinding, "blinding factor"), oc, unlock_at)


@dataclass(frozen=True)
class TransferResult:
    signature: str
    pool: str
    amount: Decimal
    nullifier: bytes
    recipient_note: RecipientNote
    change_commitment: bytes
    change_amount: Decimal


@dataclass
class PendingOperation:
    kind: OpState
    pool: Pubkey
    marker: bytes
    landed: Callable[[], Awaitable[bool]]
    commit: Callable[[Confirmation], Awaitable[Any]]
    signature: Optional[str] = None


Key = Tuple[str, str]


class PoolSession:
    """
    Args:
        ledger: LedgerClient (RPC or in-process)
        store: NoteStore whose cipher holds the holder's encryption key
        pool: default pool for operations that do not name one
        owners: owner public keys whose notes this session may open
        config: tree depth, epoch length and range width
        clock: callable returning Unix seconds
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: NoteStore,
        pool: Optional[PubkeyLike] = None,
        owners: Iterable[PubkeyLike] = (),
        config: SessionConfig = SessionConfig(),
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.store = store
        self.cipher = store.cipher
        self.config = config
        self.clock = clock
        self.pool: Optional[Pubkey] = parse_pubkey(pool, "pool address") if pool is not None else None
        self.accumulator = MerkleAccumulatorClient(ledger, config.tree_depth)
        self._owners: List[Pubkey] = []
        self._states: Dict[Key, OpState] = {}
        self._pending: Dict[Key, PendingOperation] = {}
        self._tasks: Set[asyncio.Task] = set()
        for owner in owners:
            self.add_owner(owner)

    # ---------- helpers ----------

    def add_owner(self, owner: PubkeyLike) -> bytes:
        pk = parse_pubkey(owner, "owner")
        if pk not in self._owners:
            self._owners.append(pk)
        return self.cipher.register_owner(pk)

    @property
    def default_owner(self) -> Pubkey:
        if not self._owners:
            raise InvalidInput("session has no owner; pass one or call add_owner()")
        return self._owners[0]

    def resolve_pool(self, pool: Optional[PubkeyLike] = None) -> Pubkey:
        if pool is not None:
            return parse_pubkey(pool, "pool address")
        if self.pool is None:
            raise InvalidInput("no pool given and the session has no default pool")
        return self.pool

    def _now(self) -> int:
        return int(self.clock())

    @staticmethod
    def _positive_lamports(amount: Amount) -> int:
        lamports = to_lamports(amount)
        if lamports <= 0:
            raise InvalidInput("amount must be positive")
        return lamports

    def state(self, pool: Optional[PubkeyLike] = None, owner: Optional[PubkeyLike] = None) -> OpState:
        key = (str(self.resolve_pool(pool)), str(parse_pubkey(owner, "owner") if owner is not None else self.default_owner))
        return self._states.get(key, OpState.IDLE)

    def pending(self, pool: Optional[PubkeyLike] = None, owner: Optional[PubkeyLike] = None) -> Optional[PendingOperation]:
        key = (str(self.resolve_pool(pool)), str(parse_pubkey(owner, "owner") if owner is not None else self.default_owner))
        return self._pending.get(key)

    # ---------- state machine ----------

    def _begin(self, pool: Pubkey, owner: Pubkey, state: OpState) -> Key:
        key = (str(pool), str(owner))
        if key in self._pending:
            raise ReconciliationRequired(
                f"{self._pending[key].kind.value} for {key[1][:8]} in pool {key[0][:8]} has an unknown outcome"
            )
        current = self._states.get(key, OpState.IDLE)
        if current is not OpState.IDLE:
            raise OperationInProgress(f"{current.value} already in flight for {key[1][:8]} in pool {key[0][:8]}")
        self._states[key] = state
        logger.info(f"{key[1][:8]}@{key[0][:8]}: idle -> {state.value}")
        return key

    def _end(self, key: Key) -> None:
        previous = self._states.pop(key, OpState.IDLE)
        logger.info(f"{key[1][:8]}@{key[0][:8]}: {previous.value} -> idle")

    async def _finish(self, key: Key, ix: Instruction, op: PendingOperation) -> Any:
        try:
            try:
                confirmation = await self.ledger.submit(ix)
            except (SubmissionFailed, InvalidInput):
                raise
            except Exception as e:
                # anything else may have happened after the instruction left
                op.signature = getattr(e, "signature", None)
                logger.warning(f"{op.kind.value} outcome unknown ({type(e).__name__}: {e}), reconciling against the ledger")
                try:
                    landed = await op.landed()
                except Exception as query_error:
                    self._pending[key] = op
                    raise UnknownOutcome(
                        f"{op.kind.value} outcome unknown and the reconciliation query failed: {query_error}",
                        signature=op.signature,
                        marker=op.marker,
                    ) from query_error
                if not landed:
                    self._pending[key] = op
                    raise UnknownOutcome(
                        f"{op.kind.value} outcome unknown and its effect is not visible on the ledger",
                        signature=op.signature,
                        marker=op.marker,
                    ) from e
                logger.info(f"{op.kind.value} landed despite {type(e).__name__}")
                confirmation = Confirmation(signature=op.signature or "")
            return await op.commit(confirmation)
        finally:
            self._end(key)

    async def _run(self, key: Key, ix: Instruction, op: PendingOperation) -> Any:
        task = asyncio.ensure_future(self._finish(key, ix, op))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return await asyncio.shield(task)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"operation task finished with {type(task.exception()).__name__}")

    async def wait_idle(self) -> None:
        """Wait for every submitted operation to finish (including ones whose caller was cancelled)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def reconcile(self, pool: Optional[PubkeyLike] = None, owner: Optional[PubkeyLike] = None) -> Optional[str]:
        """
        Settle a parked operation. Returns "committed" if its effect is on the
        ledger (local state is then updated), "discarded" if it is not, and
        None when nothing was pending.
        """
        p = self.resolve_pool(pool)
        o = parse_pubkey(owner, "owner") if owner is not None else self.default_owner
        key = (str(p), str(o))
        op = self._pending.get(key)
        if op is None:
            return None
        if await op.landed():
            await op.commit(Confirmation(signature=op.signature or ""))
            outcome = "committed"
        else:
            outcome = "discarded"
        del self._pending[key]
        logger.info(f"reconciled {op.kind.value} for {key[1][:8]}@{key[0][:8]}: {outcome}")
        return outcome

    # ---------- lookups ----------

    async def _leaf_index(self, note: Note) -> int:
        if note.leaf_index is not None:
            return note.leaf_index
        account = await self.ledger.get_note_account(parse_pubkey(note.pool), note.commitment)
        if account is None:
            raise InvalidInput(f"note {note.commitment.hex()[:16]}... is not on the ledger")
        self.store.set_leaf_index(note, account.leaf_index)
        return account.leaf_index

    async def _fetch_note_account(self, pool: Pubkey, commitment: bytes) -> Optional[NoteAccount]:
        try:
            return await self.ledger.get_note_account(pool, commitment)
        except Exception as e:
            # the leaf index is resolved lazily on first spend
            logger.warning(f"could not fetch note account {commitment.hex()[:16]}...: {e}")
            return None

    async def _store_output(self, pool: Pubkey, commitment: bytes, encrypted: bytes, unlock_at: int) -> Note:
        account = await self._fetch_note_account(pool, commitment)
        return self.store.store(Note(
            pool=str(pool),
            commitment=commitment,
            encrypted=encrypted,
            created_at=account.created_at if account else self._now(),
            unlock_at=account.unlock_at if account else unlock_at,
            leaf_index=account.leaf_index if account else None,
        ))

    async def _require_pool(self, pool: Pubkey) -> PoolAccount:
        account = await self.ledger.get_pool_account(pool)
        if account is None:
            raise InvalidInput(f"pool {pool} does not exist")
        return account

    # ---------- pools ----------

    async def create_pool(
        self,
        creator: PubkeyLike,
        pool_id: bytes,
        reward_rate_bps: int = 0,
        capacity: Optional[int] = None,
    ) -> Pubkey:
        check_capacity(self.config.tree_depth, capacity if capacity is not None else 1 << self.config.tree_depth)
        creator_pk = parse_pubkey(creator, "creator")
        ix = create_pool_instruction(creator_pk, pool_id, reward_rate_bps)
        await self.ledger.submit(ix)
        address = pool_address(creator_pk, pool_id)
        if self.pool is None:
            self.pool = address
        logger.info(f"created pool {address}")
        return address

    async def get_pool(self, address: Optional[PubkeyLike] = None) -> Optional[PoolAccount]:
        return await self.ledger.get_pool_account(self.resolve_pool(address))

    async def merkle_status(self, pool: Optional[PubkeyLike] = None) -> Dict[str, Any]:
        return await self.accumulator.status(self.resolve_pool(pool))

    # ---------- balances ----------

    def get_shielded_balance(self, pool: Optional[PubkeyLike] = None, owner: Optional[PubkeyLike] = None) -> Decimal:
        oc = self.cipher.register_owner(parse_pubkey(owner, "owner")) if owner is not None else None
        return from_lamports(self.store.balance(str(self.resolve_pool(pool)), oc))

    async def get_public_balance(self, owner: PubkeyLike) -> Decimal:
        return from_lamports(await self.ledger.get_balance(parse_pubkey(owner, "owner")))

    def decrypt_note(self, data: bytes) -> Optional[DecryptedNotePayload]:
        return self.cipher.decrypt(bytes(data))

    # ---------- deposit ----------

    async def deposit(self, owner: PubkeyLike, amount: Amount, pool: Optional[PubkeyLike] = None) -> DepositResult:
        lamports = self._positive_lamports(amount)
        if lamports >> self.config.range_bits:
            raise RangeViolation(f"amount is outside [0, 2^{self.config.range_bits}) lamports")
        owner_pk = parse_pubkey(owner, "owner")
        pool_pk = self.resolve_pool(pool)
        oc = self.add_owner(owner_pk)

        key = self._begin(pool_pk, owner_pk, OpState.DEPOSITING)
        try:
            account = await self._require_pool(pool_pk)
            unlock_at = self._now() + account.lockup_epochs * self.config.epoch_seconds
            sealed = self.cipher.seal(lamports, oc, unlock_at)
            proof = prove_range(lamports, sealed.payload.blinding_factor, self.config.range_bits)
            ix = deposit_instruction(pool_pk, owner_pk, sealed.commitment, sealed.encrypted, proof.to_bytes())
        except BaseException:
            self._end(key)
            raise

        async def landed() -> bool:
            return await self.ledger.get_note_account(pool_pk, sealed.commitment) is not None

        async def commit(confirmation: Confirmation) -> DepositResult:
            note = await self._store_output(pool_pk, sealed.commitment, sealed.encrypted, unlock_at)
            logger.info(f"deposit confirmed ({confirmation.signature[:16]}), note leaf {note.leaf_index}")
            return DepositResult(
                signature=confirmation.signature,
                pool=str(pool_pk),
                commitment=sealed.commitment,
                amount=from_lamports(lamports),
                leaf_index=note.leaf_index,
                unlock_at=note.unlock_at,
            )

        op = PendingOperation(OpState.DEPOSITING, pool_pk, sealed.commitment, landed, commit)
        return await self._run(key, ix, op)

    # ---------- spends ----------

    async def _select_input(self, pool_pk: Pubkey, owner_pk: Pubkey, oc: bytes, lamports: int):
        note = self.store.find_spendable(str(pool_pk), lamports, oc, self._now())
        payload = self.store.decrypt(note)
        if payload is None:
            raise InvalidInput(f"note {note.commitment.hex()[:16]}... no longer decrypts")
        leaf = await self._leaf_index(note)
        secret = derive_owner_secret(self.cipher.encryption_key, owner_pk)
        nf = nullifier(note.commitment, secret)
        path = await self.accumulator.generate_proof(pool_pk, leaf)
        return note, payload, nf, path

    def _spend_landed(self, pool_pk: Pubkey, nf: bytes) -> Callable[[], Awaitable[bool]]:
        async def landed() -> bool:
            return await self.ledger.nullifier_spent(pool_pk, nf)
        return landed

    async def withdraw(
        self,
        owner: PubkeyLike,
        amount: Amount,
        recipient: PubkeyLike,
        pool: Optional[PubkeyLike] = None,
    ) -> WithdrawResult:
        lamports = self._positive_lamports(amount)
        owner_pk = parse_pubkey(owner, "owner")
        recipient_pk = parse_pubkey(recipient, "recipient")
        pool_pk = self.resolve_pool(pool)
        oc = self.add_owner(owner_pk)

        available = self.store.balance(str(pool_pk), oc)
        if available < lamports:
            raise InsufficientBalance(requested=lamports, available=available)

        key = self._begin(pool_pk, owner_pk, OpState.WITHDRAWING)
        try:
            note, payload, nf, path = await self._select_input(pool_pk, owner_pk, oc, lamports)
            change = payload.amount - lamports
            change_sealed = self.cipher.seal(change, oc, note.unlock_at) if change > 0 else None
            change_blinding = change_sealed.payload.blinding_factor if change_sealed else random_scalar()
            proof = prove_withdrawal(
                nullifier=nf,
                note_commitment=note.commitment,
                recipient=bytes(recipient_pk),
                amount=lamports,
                input_note=NoteOpening(payload.amount, payload.blinding_factor),
                change_blinding=change_blinding,
                range_bits=self.config.range_bits,
            )
            output = change_sealed.commitment if change_sealed else ZERO_COMMITMENT
            ix = withdraw_instruction(
                pool_pk, owner_pk, recipient_pk, nf, path.siblings, path.path_bits, proof.to_bytes(), output
            )
        except BaseException:
            self._end(key)
            raise

        async def commit(confirmation: Confirmation) -> WithdrawResult:
            self.store.mark_spent(note, nf, self._now())
            if change_sealed:
                await self._store_output(pool_pk, change_sealed.commitment, change_sealed.encrypted, note.unlock_at)
            logger.info(f"withdrawal confirmed ({confirmation.signature[:16]})")
            return WithdrawResult(
                signature=confirmation.signature,
                pool=str(pool_pk),
                recipient=str(recipient_pk),
                amount=from_lamports(lamports),
                nullifier=nf,
                change_commitment=change_sealed.commitment if change_sealed else None,
                change_amount=from_lamports(change),
            )

        op = PendingOperation(OpState.WITHDRAWING, pool_pk, nf, self._spend_landed(pool_pk, nf), commit)
        return await self._run(key, ix, op)

    async def shielded_transfer(
        self,
        amount: Amount,
        recipient_commitment: bytes,
        owner: Optional[PubkeyLike] = None,
        pool: Optional[PubkeyLike] = None,
    ) -> TransferResult:
        lamports = self._positive_lamports(amount)
        recipient_oc = bytes(recipient_commitment)
        to_field(recipient_oc, "recipient commitment")
        owner_pk = parse_pubkey(owner, "owner") if owner is not None else self.default_owner
        pool_pk = self.resolve_pool(pool)
        oc = self.add_owner(owner_pk)

        available = self.store.balance(str(pool_pk), oc)
        if available < lamports:
            raise InsufficientBalance(requested=lamports, available=available)

        key = self._begin(pool_pk, owner_pk, OpState.TRANSFERRING)
        try:
            note, payload, nf, path = await self._select_input(pool_pk, owner_pk, oc, lamports)
            change = payload.amount - lamports
            change_sealed = self.cipher.seal(change, oc, note.unlock_at)
            recipient_blinding = random_scalar()
            recipient_note = RecipientNote(
                commitment=note_commitment(lamports, recipient_blinding, recipient_oc),
                amount=lamports,
                blinding=recipient_blinding,
                owner_commitment=recipient_oc,
                unlock_at=note.unlock_at,
            )
            proof = prove_transfer(
                nullifier=nf,
                note_commitment=note.commitment,
                input_note=NoteOpening(payload.amount, payload.blinding_factor),
                recipient_note_commitment=recipient_note.commitment,
                recipient_note=NoteOpening(lamports, recipient_blinding),
                change_note_commitment=change_sealed.commitment,
                change_note=NoteOpening(change, change_sealed.payload.blinding_factor),
                range_bits=self.config.range_bits,
            )
            ix = transfer_instruction(
                pool_pk, owner_pk, nf, path.siblings, path.path_bits, proof.to_bytes(),
                recipient_note.commitment, change_sealed.commitment,
            )
        except BaseException:
            self._end(key)
            raise

        async def commit(confirmation: Confirmation) -> TransferResult:
            self.store.mark_spent(note, nf, self._now())
            await self._store_output(pool_pk, change_sealed.commitment, change_sealed.encrypted, note.unlock_at)
            logger.info(f"transfer confirmed ({confirmation.signature[:16]})")
            return TransferResult(
                signature=confirmation.signature,
                pool=str(pool_pk),
                amount=from_lamports(lamports),
                nullifier=nf,
                recipient_note=recipient_note,
                change_commitment=change_sealed.commitment,
                change_amount=from_lamports(change),
            )

        op = PendingOperation(OpState.TRANSFERRING, pool_pk, nf, self._spend_landed(pool_pk, nf), commit)
        return await self._run(key, ix, op)

    # ---------- recovery ----------

    async def recover_notes(self, pool: Optional[PubkeyLike] = None) -> int:
        """
        Import ledger notes that decrypt under this session's key. Returns how many were added.

        Only deposits carry an encrypted payload on the ledger. Change notes from
        withdrawals and transfers are published as bare commitments, so a store
        rebuilt this way does not get them back; neither does it see received
        notes, which come in through receive_note().
        """
        pool_pk = self.resolve_pool(pool)
        imported = 0
        for account in await self.ledger.get_note_accounts(pool_pk):
            if self.store.get(str(pool_pk), account.commitment) is not None:
                continue
            payload = self.cipher.decrypt(account.encrypted_note, expected_commitment=account.commitment)
            if payload is None:
                continue
            note = self.store.store(Note(
                pool=str(pool_pk),
                commitment=account.commitment,
                encrypted=account.encrypted_note,
                created_at=account.created_at,
                unlock_at=account.unlock_at,
                leaf_index=account.leaf_index,
            ))
            if payload.owner:
                secret = derive_owner_secret(self.cipher.encryption_key, payload.owner)
                nf = nullifier(account.commitment, secret)
                if await self.ledger.nullifier_spent(pool_pk, nf):
                    self.store.mark_spent(note, nf)
            imported += 1
        if imported:
            logger.info(f"recovered {imported} notes from pool {str(pool_pk)[:8]}")
        return imported

    async def receive_note(
        self,
        note: Union[RecipientNote, bytes],
        owner: Optional[PubkeyLike] = None,
        pool: Optional[PubkeyLike] = None,
    ) -> Note:
        """
        Take ownership of a note sent with shielded_transfer(). The opening is
        checked against the ledger's note account and kept in the store sealed
        under this session's key, so the note becomes spendable like any other.
        """
        if not isinstance(note, RecipientNote):
            note = RecipientNote.from_bytes(bytes(note))
        owner_pk = parse_pubkey(owner, "owner") if owner is not None else self.default_owner
        pool_pk = self.resolve_pool(pool)
        oc = self.add_owner(owner_pk)
        if note.owner_commitment != oc:
            raise InvalidInput(f"note {note.commitment.hex()[:16]}... is addressed to another owner")
        if note_commitment(note.amount, note.blinding, oc) != note.commitment:
            raise InvalidInput("opening does not match the note commitment")

        existing = self.store.get(str(pool_pk), note.commitment)
        if existing is not None:
            return existing
        account = await self.ledger.get_note_account(pool_pk, note.commitment)
        if account is None:
            raise InvalidInput(f"note {note.commitment.hex()[:16]}... is not on the ledger")
        if account.value_commitment != pedersen.commit(note.amount, note.blinding):
            raise InvalidInput("opening does not match the ledger's value commitment")

        payload = DecryptedNotePayload(note.amount, note.blinding, oc, account.unlock_at, bytes(owner_pk))
        stored = self.store.store(Note(
            pool=str(pool_pk),
            commitment=note.commitment,
            encrypted=account.encrypted_note,
            created_at=account.created_at,
            unlock_at=account.unlock_at,
            leaf_index=account.leaf_index,
            opening=self.cipher.seal_opening(payload),
        ))
        secret = derive_owner_secret(self.cipher.encryption_key, owner_pk)
        nf = nullifier(note.commitment, secret)
        if await self.ledger.nullifier_spent(pool_pk, nf):
            stored = self.store.mark_spent(stored, nf)
        logger.info(f"received note {note.commitment.hex()[:16]}... at leaf {account.leaf_index}")
        return stored
