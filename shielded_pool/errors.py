# shielded_pool/errors.py
from __future__ import annotations

from enum import Enum
from typing import Optional


class ShieldedPoolError(RuntimeError):
    """Base class for every error raised by the shielded pool client."""


class InvalidInput(ShieldedPoolError, ValueError):
    """Malformed amount, key or byte string. Detected locally, never submitted."""


class InsufficientBalance(ShieldedPoolError):
    """Local shielded balance does not cover the requested amount."""

    def __init__(self, requested: int, available: int):
        super().__init__(f"Insufficient shielded balance: requested {requested} > available {available} lamports")
        self.requested = requested
        self.available = available


class RangeViolation(ShieldedPoolError):
    """The range prover refuses to prove an amount outside [0, 2^bits)."""


class NoSpendableNote(ShieldedPoolError):
    """No unspent, unlocked note covers the amount. Deposit again or wait for lockup expiry."""


class PoolConfigurationError(ShieldedPoolError):
    """Fatal pool configuration problem (tree depth / capacity)."""


class OperationInProgress(ShieldedPoolError):
    """Another deposit/withdraw/transfer is in flight for the same (pool, owner)."""


class ReconciliationRequired(ShieldedPoolError):
    """A previous submission has an unknown outcome; call reconcile() before retrying."""


class MerkleProofError(ShieldedPoolError):
    """The locally rebuilt commitment tree does not match the pool's published root."""


class NoteStoreLocked(ShieldedPoolError):
    """The note store is already opened by another process."""


class DecryptionFailure(ShieldedPoolError):
    """A note payload could not be opened with the holder's key."""


class RejectReason(str, Enum):
    NULLIFIER_EXISTS = "nullifier-exists"
    STALE_ROOT = "stale-root"
    INVALID_PROOF = "invalid-proof"
    NOTE_LOCKED = "note-locked"
    UNKNOWN_NOTE = "unknown-note"
    COMMITMENT_EXISTS = "commitment-exists"
    VALUE_MISMATCH = "value-commitment-mismatch"
    POOL_FULL = "pool-full"
    POOL_EXISTS = "pool-exists"
    POOL_INACTIVE = "pool-inactive"
    UNKNOWN_POOL = "unknown-pool"
    INVALID_INSTRUCTION = "invalid-instruction"
    VAULT_EXHAUSTED = "vault-exhausted"
    TRANSACTION_TOO_LARGE = "transaction-too-large"
    RPC_ERROR = "rpc-error"


class SubmissionFailed(ShieldedPoolError):
    """The ledger rejected the instruction. `reason` tells retry from abort."""

    def __init__(self, reason: str | RejectReason, detail: str = ""):
        try:
            self.reason: str | RejectReason = RejectReason(reason)
        except ValueError:
            self.reason = str(reason)
        self.detail = detail
        msg = f"Submission rejected: {self.reason_code}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)

    @property
    def reason_code(self) -> str:
        return self.reason.value if isinstance(self.reason, RejectReason) else str(self.reason)


class SubmissionTimeout(ShieldedPoolError):
    """No confirmation arrived in time. The instruction may or may not have landed."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class UnknownOutcome(SubmissionTimeout):
    """Timed out and the reconciliation query could not prove the effect landed."""

    def __init__(self, message: str, signature: Optional[str] = None, marker: bytes = b""):
        super().__init__(message, signature)
        self.marker = marker
