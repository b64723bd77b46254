# api/schemas_api.py
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal, conint


class _DecimalAsStr(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True, extra="ignore")


class Ok(_DecimalAsStr):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


SolAmount = condecimal(gt=0, decimal_places=9)


# ---------- Balances ----------

class BalanceRes(Ok):
    pool: str = Field(..., description="Pool address (base58).")
    owner: Optional[str] = Field(None, description="Owner filter, if any.")
    balance_sol: str = Field(..., description="Unspent shielded balance (SOL, as string). Locked notes included.")


class PublicBalanceRes(Ok):
    owner: str = Field(..., description="Owner public key (base58).")
    balance_sol: str = Field(..., description="Public ledger balance (SOL, as string).")


# ---------- Deposit ----------

class DepositReq(_DecimalAsStr):
    owner: str = Field(..., description="Depositing owner public key (base58).")
    amount_sol: SolAmount = Field(..., description="Deposit amount in SOL (at most 9 decimals).")
    pool: Optional[str] = Field(None, description="Pool address; defaults to the session pool.")


class DepositRes(Ok):
    tx_signature: str = Field(..., description="Transaction signature")
    pool: str = Field(..., description="Pool address")
    commitment: str = Field(..., description="Note commitment (hex)")
    amount_sol: str = Field(..., description="Deposited amount (SOL)")
    leaf_index: Optional[int] = Field(None, description="Leaf of the note in the pool tree, if already known")
    unlock_at: int = Field(..., description="Unix time after which the note can be spent")


# ---------- Withdraw ----------

class WithdrawReq(_DecimalAsStr):
    owner: str = Field(..., description="Owner of the notes being spent (base58).")
    amount_sol: SolAmount = Field(..., description="Amount to withdraw in SOL")
    recipient: str = Field(..., description="Public recipient of the payout (base58).")
    pool: Optional[str] = Field(None, description="Pool address; defaults to the session pool.")


class WithdrawRes(Ok):
    tx_signature: str = Field(..., description="Transaction signature")
    amount_sol: str = Field(..., description="Amount withdrawn (SOL)")
    recipient: str = Field(..., description="Recipient public key")
    nullifier: str = Field(..., description="Nullifier revealed (hex)")
    change_commitment: Optional[str] = Field(None, description="Commitment of the change note (hex), if any")
    change_sol: str = Field(..., description="Value left in the change note (SOL)")


# ---------- Transfer ----------

class TransferReq(_DecimalAsStr):
    amount_sol: SolAmount = Field(..., description="Amount to move to the recipient (SOL)")
    recipient_commitment: str = Field(..., description="Recipient owner commitment (hex, 32 bytes)")
    owner: Optional[str] = Field(None, description="Sending owner; defaults to the session owner.")
    pool: Optional[str] = Field(None, description="Pool address; defaults to the session pool.")


class RecipientNoteOut(_DecimalAsStr):
    commitment: str = Field(..., description="Recipient note commitment (hex)")
    amount_lamports: int = Field(..., description="Note amount (lamports)")
    blinding: str = Field(..., description="Blinding factor (hex, 32 bytes big-endian)")
    owner_commitment: str = Field(..., description="Recipient owner commitment (hex)")
    unlock_at: int = Field(..., description="Unix time after which the note can be spent")


class TransferRes(Ok):
    tx_signature: str = Field(..., description="Transaction signature")
    amount_sol: str = Field(..., description="Amount transferred (SOL)")
    nullifier: str = Field(..., description="Nullifier revealed (hex)")
    recipient_note: RecipientNoteOut = Field(..., description="Opening to deliver to the recipient out of band")
    change_commitment: str = Field(..., description="Commitment of the change note (hex)")
    change_sol: str = Field(..., description="Value left in the change note (SOL)")


# ---------- Pool / notes ----------

class PoolRes(Ok):
    address: str
    pool_id: str = Field(..., description="Pool id (hex)")
    creator: str
    reward_rate_bps: conint(ge=0)
    lockup_epochs: conint(ge=0)
    merkle_root: str = Field(..., description="Current root (hex)")
    next_note_index: conint(ge=0)
    total_notes: conint(ge=0)
    nullifier_count: conint(ge=0)
    created_at: int
    is_active: bool


class DecryptReq(_DecimalAsStr):
    encrypted_note: str = Field(..., description="64-byte encrypted note payload (hex).")


class DecryptRes(Ok):
    decrypted: bool = Field(..., description="False when the payload is foreign or corrupted.")
    amount_sol: Optional[str] = None
    owner_commitment: Optional[str] = None
    unlock_at: Optional[int] = None


class ReceiveReq(_DecimalAsStr):
    note: RecipientNoteOut = Field(..., description="Opening received from the sender")
    owner: Optional[str] = Field(None, description="Receiving owner; defaults to the session owner.")
    pool: Optional[str] = Field(None, description="Pool address; defaults to the session pool.")


class ReceiveRes(Ok):
    commitment: str = Field(..., description="Note commitment (hex)")
    amount_sol: str = Field(..., description="Note value (SOL)")
    leaf_index: Optional[int] = None
    unlock_at: int
    spent: bool = Field(..., description="True if the note was already spent on the ledger")


class MerkleStatus(_DecimalAsStr):
    pool: str = Field(..., description="Pool address")
    depth: conint(ge=1) = Field(..., description="Tree depth")
    capacity: conint(ge=1) = Field(..., description="Maximum number of leaves")
    root: str = Field(..., description="Published Merkle root (hex)")
    leaves: Optional[conint(ge=0)] = Field(None, description="Leaves rebuilt from the ledger (None if inconsistent)")
    next_note_index: conint(ge=0)
    consistent: bool = Field(..., description="Whether the rebuilt tree matches the published root")


class ReconcileReq(_DecimalAsStr):
    owner: Optional[str] = None
    pool: Optional[str] = None


class ReconcileRes(Ok):
    outcome: Optional[str] = Field(None, description="committed / discarded, or null if nothing was pending")


class HealthRes(_DecimalAsStr):
    status: str
    timestamp: str
    checks: Dict[str, Dict] = Field(default_factory=dict)


def sol_str(d: Decimal) -> str:
    return format(d.normalize(), "f") if d != 0 else "0"
