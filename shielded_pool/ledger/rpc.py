# ledger/rpc.py
"""
LedgerClient over Solana JSON-RPC (httpx).

Transient failures (expired blockhash, rate limiting, refused connections)
are retried with exponential backoff (1s, 2s, 4s, ...). A read timeout
after the transaction left this process is never retried: the transaction
may have landed, so the caller gets SubmissionTimeout and must reconcile.
The same goes for any other failure once sendTransaction was attempted.

Transactions above the 1232-byte packet limit are refused before sending.
The bit-decomposition range proofs take 160 bytes per bit (over 10 KB at 64
bits), so deposits and spends only go through this client once a compact
proof system replaces them. The in-process ledger has no such limit.
"""
from __future__ import annotations

import asyncio
import base64
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import httpx
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from shielded_pool.config import (
    CONFIRM_TIMEOUT_SEC,
    MAX_RETRIES,
    POLL_INTERVAL_SEC,
    RPC_TIMEOUT_SEC,
    SOLANA_RPC_URL,
)
from shielded_pool.errors import (
    InvalidInput,
    RejectReason,
    ShieldedPoolError,
    SubmissionFailed,
    SubmissionTimeout,
)
from shielded_pool.ledger.client import Confirmation, LedgerClient
from shielded_pool.ledger.instructions import (
    PROGRAM_ID,
    NoteAccount,
    PoolAccount,
    note_address,
    nullifier_address,
)
from shielded_pool.logging_config import get_logger

logger = get_logger("rpc")

T = TypeVar("T")

# serialized transaction limit (IPv6 MTU minus headers)
MAX_TRANSACTION_SIZE = 1232

# Custom program error codes (anchor numbering starts at 6000)
PROGRAM_ERROR_CODES: Dict[int, RejectReason] = {
    6000: RejectReason.NULLIFIER_EXISTS,
    6001: RejectReason.STALE_ROOT,
    6002: RejectReason.INVALID_PROOF,
    6003: RejectReason.NOTE_LOCKED,
    6004: RejectReason.UNKNOWN_NOTE,
    6005: RejectReason.COMMITMENT_EXISTS,
    6006: RejectReason.VALUE_MISMATCH,
    6007: RejectReason.POOL_FULL,
    6008: RejectReason.POOL_INACTIVE,
    6009: RejectReason.INVALID_INSTRUCTION,
    6010: RejectReason.VAULT_EXHAUSTED,
}

_MESSAGE_HINTS = (
    ("nullifier", RejectReason.NULLIFIER_EXISTS),
    ("stale", RejectReason.STALE_ROOT),
    ("root", RejectReason.STALE_ROOT),
    ("locked", RejectReason.NOTE_LOCKED),
    ("proof", RejectReason.INVALID_PROOF),
)


class RpcError(ShieldedPoolError):
    """JSON-RPC level error returned by the node."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class RetryableRpcError(RpcError):
    pass


def _is_retryable(message: str) -> bool:
    lower = message.lower()
    return (
        "blockhash not found" in lower
        or "invalid blockhash" in lower
        or "429" in lower
        or "rate limit" in lower
    )


def reject_reason(err: Any, message: str = "") -> RejectReason:
    """Map a transaction error (``{"InstructionError": [i, {"Custom": n}]}``) or log text to a reason."""
    if isinstance(err, dict):
        ix_err = err.get("InstructionError")
        if isinstance(ix_err, list) and len(ix_err) == 2 and isinstance(ix_err[1], dict):
            code = ix_err[1].get("Custom")
            if code in PROGRAM_ERROR_CODES:
                return PROGRAM_ERROR_CODES[code]
    text = f"{err} {message}".lower()
    for needle, reason in _MESSAGE_HINTS:
        if needle in text:
            return reason
    return RejectReason.RPC_ERROR


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = MAX_RETRIES,
    description: str = "RPC call",
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``fn`` retrying connect failures, rate limits and expired blockhashes."""
    last_error: Optional[Exception] = None
    for attempt in range(max_retries):
        try:
            return await fn()
        except (httpx.ConnectError, RetryableRpcError) as e:
            last_error = e
            if attempt == max_retries - 1:
                break
            wait_time = base_delay * (2 ** attempt)
            logger.warning(f"{description} failed ({e}); retry {attempt + 1}/{max_retries - 1} in {wait_time}s")
            await sleep(wait_time)
    raise SubmissionFailed(RejectReason.RPC_ERROR, f"{description} failed after {max_retries} attempts: {last_error}")


class RpcLedgerClient(LedgerClient):
    """
    Args:
        signers: keypairs allowed to sign; the first one pays fees
        transport: optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        signers: Sequence[Keypair],
        rpc_url: str = SOLANA_RPC_URL,
        program_id: Pubkey = PROGRAM_ID,
        timeout: float = RPC_TIMEOUT_SEC,
        confirm_timeout: float = CONFIRM_TIMEOUT_SEC,
        poll_interval: float = POLL_INTERVAL_SEC,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not signers:
            raise InvalidInput("at least one signer is required")
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._signers = {kp.pubkey(): kp for kp in signers}
        self._payer = signers[0]
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._next_id = 0

    def add_signer(self, kp: Keypair) -> None:
        self._signers[kp.pubkey()] = kp

    async def close(self) -> None:
        await self._http.aclose()

    # ---------- transport ----------

    async def _call(self, method: str, params: List[Any]) -> Any:
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}
        response = await self._http.post(self.rpc_url, json=payload)
        if response.status_code == 429:
            raise RetryableRpcError(429, "rate limited")
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            err = body["error"]
            code, message = err.get("code", -1), err.get("message", "")
            if _is_retryable(message):
                raise RetryableRpcError(code, message, err.get("data"))
            raise RpcError(code, message, err.get("data"))
        return body.get("result")

    async def _read(self, method: str, params: List[Any]) -> Any:
        async def call():
            return await self._call(method, params)

        return await with_retry(
            call, self.max_retries, description=method, base_delay=self.retry_delay
        )

    async def _account_data(self, address: Pubkey) -> Optional[bytes]:
        result = await self._read("getAccountInfo", [str(address), {"encoding": "base64", "commitment": "confirmed"}])
        value = (result or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    # ---------- submission ----------

    def _sign(self, instruction: Instruction, blockhash: Hash) -> Transaction:
        needed = [m.pubkey for m in instruction.accounts if m.is_signer]
        keypairs = [self._payer]
        for pk in needed:
            if pk == self._payer.pubkey():
                continue
            if pk not in self._signers:
                raise InvalidInput(f"no keypair for required signer {pk}")
            keypairs.append(self._signers[pk])
        message = Message.new_with_blockhash([instruction], self._payer.pubkey(), blockhash)
        return Transaction(keypairs, message, blockhash)

    def _check_size(self, instruction: Instruction) -> None:
        size = len(bytes(self._sign(instruction, Hash.default())))
        if size > MAX_TRANSACTION_SIZE:
            raise SubmissionFailed(
                RejectReason.TRANSACTION_TOO_LARGE,
                f"transaction is {size} bytes, the packet limit is {MAX_TRANSACTION_SIZE}",
            )

    async def _send_once(self, instruction: Instruction) -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": "confirmed"}])
        blockhash = Hash.from_string(result["value"]["blockhash"])
        tx = self._sign(instruction, blockhash)
        signature = str(tx.signatures[0])
        raw = base64.b64encode(bytes(tx)).decode()
        try:
            return await self._call(
                "sendTransaction", [raw, {"encoding": "base64", "preflightCommitment": "confirmed"}]
            )
        except (httpx.ConnectError, RetryableRpcError):
            raise
        except RpcError as e:
            logs = " ".join((e.data or {}).get("logs") or []) if isinstance(e.data, dict) else ""
            err = (e.data or {}).get("err") if isinstance(e.data, dict) else None
            raise SubmissionFailed(reject_reason(err, f"{e.message} {logs}"), e.message) from e
        except (httpx.HTTPError, ValueError) as e:
            # the node may have accepted the transaction before the reply broke
            raise SubmissionTimeout(f"sendTransaction outcome unknown: {e}", signature=signature) from e

    async def _await_confirmation(self, signature: str) -> Confirmation:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout
        while True:
            try:
                result = await self._call(
                    "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
                )
            except (httpx.HTTPError, RpcError, ValueError) as e:
                logger.warning(f"status poll for {signature[:16]}... failed: {e}")
                result = None
            status = ((result or {}).get("value") or [None])[0]
            if status:
                if status.get("err"):
                    reason = reject_reason(status["err"])
                    logger.warning(f"transaction {signature[:16]}... rejected: {reason.value}")
                    raise SubmissionFailed(reason, str(status["err"]))
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return Confirmation(signature=signature, slot=status.get("slot"))
            if loop.time() >= deadline:
                raise SubmissionTimeout(
                    f"transaction {signature} not confirmed within {self.confirm_timeout}s", signature=signature
                )
            await asyncio.sleep(self.poll_interval)

    async def submit(self, instruction: Instruction) -> Confirmation:
        self._check_size(instruction)

        async def send():
            return await self._send_once(instruction)

        signature = await with_retry(
            send, self.max_retries, description="sendTransaction", base_delay=self.retry_delay
        )
        logger.info(f"sent transaction {signature[:16]}..., awaiting confirmation")
        try:
            return await self._await_confirmation(signature)
        except (SubmissionFailed, SubmissionTimeout):
            raise
        except Exception as e:
            raise SubmissionTimeout(f"lost track of {signature}: {e}", signature=signature) from e

    # ---------- queries ----------

    async def get_pool_account(self, address: Pubkey) -> Optional[PoolAccount]:
        data = await self._account_data(address)
        return PoolAccount.from_bytes(address, data) if data is not None else None

    async def get_note_account(self, pool: Pubkey, commitment: bytes) -> Optional[NoteAccount]:
        data = await self._account_data(note_address(pool, commitment, self.program_id))
        return NoteAccount.from_bytes(data) if data is not None else None

    async def get_note_accounts(self, pool: Pubkey) -> List[NoteAccount]:
        result = await self._read(
            "getProgramAccounts",
            [
                str(self.program_id),
                {
                    "encoding": "base64",
                    "commitment": "confirmed",
                    "filters": [
                        {"dataSize": NoteAccount.LAYOUT.size},
                        {"memcmp": {"offset": 8, "bytes": str(pool)}},
                    ],
                },
            ],
        )
        notes = [NoteAccount.from_bytes(base64.b64decode(item["account"]["data"][0])) for item in result or []]
        return sorted(notes, key=lambda n: n.leaf_index)

    async def nullifier_spent(self, pool: Pubkey, nullifier: bytes) -> bool:
        return await self._account_data(nullifier_address(pool, nullifier, self.program_id)) is not None

    async def get_balance(self, owner: Pubkey) -> int:
        result = await self._read("getBalance", [str(owner), {"commitment": "confirmed"}])
        return int(result["value"])
