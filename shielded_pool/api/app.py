# api/app.py
from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException

from shielded_pool.api.health_checks import comprehensive_health_check
from shielded_pool.api.schemas_api import (
    BalanceRes,
    DecryptReq,
    DecryptRes,
    DepositReq,
    DepositRes,
    HealthRes,
    MerkleStatus,
    PoolRes,
    PublicBalanceRes,
    ReceiveReq,
    ReceiveRes,
    RecipientNoteOut,
    ReconcileReq,
    ReconcileRes,
    TransferReq,
    TransferRes,
    WithdrawReq,
    WithdrawRes,
    sol_str,
)
from shielded_pool.crypto_core.commitments import field_bytes, to_field
from shielded_pool.crypto_core.splits import from_lamports
from shielded_pool.errors import (
    InsufficientBalance,
    InvalidInput,
    MerkleProofError,
    NoSpendableNote,
    OperationInProgress,
    RangeViolation,
    ReconciliationRequired,
    ShieldedPoolError,
    SubmissionFailed,
    SubmissionTimeout,
)
from shielded_pool.logging_config import configure_logging, get_logger
from shielded_pool.pool_session import PoolSession, RecipientNote

logger = get_logger("api")

# =========================
# Error mapping
# =========================

_STATUS = (
    (InvalidInput, 400),
    (RangeViolation, 400),
    (InsufficientBalance, 409),
    (NoSpendableNote, 409),
    (OperationInProgress, 409),
    (ReconciliationRequired, 409),
    (SubmissionFailed, 502),
    (MerkleProofError, 502),
    (SubmissionTimeout, 504),
)


def http_error(e: ShieldedPoolError) -> HTTPException:
    for cls, status in _STATUS:
        if isinstance(e, cls):
            detail = str(e)
            if isinstance(e, SubmissionFailed):
                detail = {"reason": e.reason_code, "detail": e.detail}
            if status >= 500:
                logger.warning(f"{type(e).__name__}: {e}")
            return HTTPException(status_code=status, detail=detail)
    return HTTPException(status_code=500, detail=str(e))


def _hex_bytes(value: str, what: str, size: Optional[int] = None) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{what} is not valid hex")
    if size is not None and len(raw) != size:
        raise HTTPException(status_code=400, detail=f"{what} must be {size} bytes")
    return raw


def create_app(session: PoolSession) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Shielded Pool API", version="0.1.0")

    # ---------- Balances ----------
    @app.get("/balance", response_model=BalanceRes)
    def balance(owner: Optional[str] = None, pool: Optional[str] = None):
        try:
            bal = session.get_shielded_balance(pool=pool, owner=owner)
            return BalanceRes(pool=str(session.resolve_pool(pool)), owner=owner, balance_sol=sol_str(bal))
        except ShieldedPoolError as e:
            raise http_error(e)

    @app.get("/balance/public/{owner}", response_model=PublicBalanceRes)
    async def public_balance(owner: str):
        try:
            bal = await session.get_public_balance(owner)
        except ShieldedPoolError as e:
            raise http_error(e)
        return PublicBalanceRes(owner=owner, balance_sol=sol_str(bal))

    # ---------- Deposit ----------
    @app.post("/deposit", response_model=DepositRes)
    async def deposit(req: DepositReq):
        try:
            res = await session.deposit(req.owner, req.amount_sol, pool=req.pool)
        except ShieldedPoolError as e:
            raise http_error(e)
        return DepositRes(
            tx_signature=res.signature,
            pool=res.pool,
            commitment=res.commitment.hex(),
            amount_sol=sol_str(res.amount),
            leaf_index=res.leaf_index,
            unlock_at=res.unlock_at,
        )

    # ---------- Withdraw ----------
    @app.post("/withdraw", response_model=WithdrawRes)
    async def withdraw(req: WithdrawReq):
        try:
            res = await session.withdraw(req.owner, req.amount_sol, req.recipient, pool=req.pool)
        except ShieldedPoolError as e:
            raise http_error(e)
        return WithdrawRes(
            tx_signature=res.signature,
            amount_sol=sol_str(res.amount),
            recipient=res.recipient,
            nullifier=res.nullifier.hex(),
            change_commitment=res.change_commitment.hex() if res.change_commitment else None,
            change_sol=sol_str(res.change_amount),
        )

    # ---------- Transfer ----------
    @app.post("/transfer", response_model=TransferRes)
    async def transfer(req: TransferReq):
        recipient_commitment = _hex_bytes(req.recipient_commitment, "recipient_commitment", 32)
        try:
            res = await session.shielded_transfer(
                req.amount_sol, recipient_commitment, owner=req.owner, pool=req.pool
            )
        except ShieldedPoolError as e:
            raise http_error(e)
        rn = res.recipient_note
        return TransferRes(
            tx_signature=res.signature,
            amount_sol=sol_str(res.amount),
            nullifier=res.nullifier.hex(),
            recipient_note=RecipientNoteOut(
                commitment=rn.commitment.hex(),
                amount_lamports=rn.amount,
                blinding=field_bytes(rn.blinding).hex(),
                owner_commitment=rn.owner_commitment.hex(),
                unlock_at=rn.unlock_at,
            ),
            change_commitment=res.change_commitment.hex(),
            change_sol=sol_str(res.change_amount),
        )

    # ---------- Pool ----------
    @app.get("/pool/{address}", response_model=PoolRes)
    async def get_pool(address: str):
        try:
            acct = await session.get_pool(address)
        except ShieldedPoolError as e:
            raise http_error(e)
        if acct is None:
            raise HTTPException(status_code=404, detail="Pool not found")
        return PoolRes(
            address=str(acct.address),
            pool_id=acct.pool_id.hex(),
            creator=str(acct.creator),
            reward_rate_bps=acct.reward_rate_bps,
            lockup_epochs=acct.lockup_epochs,
            merkle_root=acct.merkle_root.hex(),
            next_note_index=acct.next_note_index,
            total_notes=acct.total_notes,
            nullifier_count=acct.nullifier_count,
            created_at=acct.created_at,
            is_active=acct.is_active,
        )

    # ---------- Notes ----------
    @app.post("/notes/decrypt", response_model=DecryptRes)
    def decrypt_note(req: DecryptReq):
        payload = session.decrypt_note(_hex_bytes(req.encrypted_note, "encrypted_note"))
        if payload is None:
            return DecryptRes(decrypted=False)
        return DecryptRes(
            decrypted=True,
            amount_sol=sol_str(from_lamports(payload.amount)),
            owner_commitment=payload.owner_commitment.hex(),
            unlock_at=payload.unlock_at,
        )

    @app.post("/notes/receive", response_model=ReceiveRes)
    async def receive_note(req: ReceiveReq):
        n = req.note
        try:
            note = RecipientNote(
                commitment=_hex_bytes(n.commitment, "commitment", 32),
                amount=n.amount_lamports,
                blinding=to_field(_hex_bytes(n.blinding, "blinding", 32), "blinding"),
                owner_commitment=_hex_bytes(n.owner_commitment, "owner_commitment", 32),
                unlock_at=n.unlock_at,
            )
            stored = await session.receive_note(note, owner=req.owner, pool=req.pool)
        except ShieldedPoolError as e:
            raise http_error(e)
        return ReceiveRes(
            commitment=stored.commitment.hex(),
            amount_sol=sol_str(from_lamports(note.amount)),
            leaf_index=stored.leaf_index,
            unlock_at=stored.unlock_at,
            spent=stored.spent,
        )

    # ---------- Merkle Status ----------
    @app.get("/merkle/status", response_model=MerkleStatus)
    async def merkle_status(pool: Optional[str] = None):
        try:
            return MerkleStatus(**await session.merkle_status(pool))
        except ShieldedPoolError as e:
            raise http_error(e)

    # ---------- Reconcile ----------
    @app.post("/reconcile", response_model=ReconcileRes)
    async def reconcile(req: ReconcileReq):
        try:
            outcome = await session.reconcile(pool=req.pool, owner=req.owner)
        except ShieldedPoolError as e:
            raise http_error(e)
        return ReconcileRes(outcome=outcome)

    # ---------- Health ----------
    @app.get("/health", response_model=HealthRes)
    async def health():
        return HealthRes(**await comprehensive_health_check(session))

    return app
