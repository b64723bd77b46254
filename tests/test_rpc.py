"""
JSON-RPC ledger client tests (httpx.MockTransport stands in for the node)
"""
import base64
import json

import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

from shielded_pool.errors import InvalidInput, RejectReason, SubmissionFailed, SubmissionTimeout
from shielded_pool.ledger.instructions import (
    NoteAccount,
    PoolAccount,
    create_pool_instruction,
    deposit_instruction,
    pool_id_from_label,
)
from shielded_pool.ledger.rpc import RpcLedgerClient, reject_reason, with_retry


class FakeNode:
    """Queues replies per RPC method; a reply is a result, an error dict or an HTTP status."""

    def __init__(self):
        self.replies = {}
        self.methods = []
        self.params = {}

    def reply(self, method, *replies):
        self.replies.setdefault(method, []).extend(replies)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.methods.append(method)
        self.params[method] = body["params"]
        queue = self.replies.get(method) or []
        reply = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else None)
        if isinstance(reply, int):
            return httpx.Response(reply, json={})
        if callable(reply):
            reply = reply(body["params"])
        if isinstance(reply, dict) and "error" in reply:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": reply["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": reply})


@pytest.fixture
def node():
    return FakeNode()


@pytest.fixture
def payer():
    return Keypair()


@pytest.fixture
async def client(node, payer):
    c = RpcLedgerClient(
        [payer],
        rpc_url="http://node.test",
        confirm_timeout=0.05,
        poll_interval=0,
        retry_delay=0,
        transport=httpx.MockTransport(node.handler),
    )
    yield c
    await c.close()


def _account(data: bytes):
    return {"context": {"slot": 1}, "value": {"data": [base64.b64encode(data).decode(), "base64"], "lamports": 1}}


def _tx_signature(params):
    tx = Transaction.from_bytes(base64.b64decode(params[0]))
    return str(tx.signatures[0])


BLOCKHASH = {"context": {"slot": 1}, "value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 10}}


class TestQueries:

    async def test_get_balance(self, node, client, payer):
        node.reply("getBalance", {"context": {"slot": 1}, "value": 5_000_000_000})
        assert await client.get_balance(payer.pubkey()) == 5_000_000_000
        assert node.params["getBalance"][0] == str(payer.pubkey())

    async def test_missing_account(self, node, client):
        node.reply("getAccountInfo", {"context": {"slot": 1}, "value": None})
        assert await client.get_pool_account(Keypair().pubkey()) is None

    async def test_pool_account_decoded(self, node, client):
        address = Keypair().pubkey()
        acct = PoolAccount(address, b"\x01" * 32, Keypair().pubkey(), 0, 1, b"\x02" * 32, 4, 4, 1, 1_700_000_000, True)
        node.reply("getAccountInfo", _account(acct.to_bytes()))
        assert await client.get_pool_account(address) == acct

    async def test_note_accounts_filtered_and_sorted(self, node, client):
        pool = Keypair().pubkey()
        notes = [
            NoteAccount(pool, bytes([i]) * 32, b"\x00" * 64, b"\x00" * 32, i, 0, 0, False)
            for i in (2, 0, 1)
        ]
        node.reply("getProgramAccounts", [
            {"pubkey": str(Keypair().pubkey()), "account": {"data": [base64.b64encode(n.to_bytes()).decode(), "base64"]}}
            for n in notes
        ])
        got = await client.get_note_accounts(pool)
        assert [n.leaf_index for n in got] == [0, 1, 2]
        filters = node.params["getProgramAccounts"][1]["filters"]
        assert {"memcmp": {"offset": 8, "bytes": str(pool)}} in filters
        assert {"dataSize": NoteAccount.LAYOUT.size} in filters

    async def test_nullifier_lookup(self, node, client):
        node.reply("getAccountInfo", _account(b"\x01"))
        assert await client.nullifier_spent(Keypair().pubkey(), b"\x03" * 32)

    async def test_rate_limit_is_retried(self, node, client):
        node.reply("getBalance", 429, {"context": {"slot": 1}, "value": 7})
        assert await client.get_balance(Keypair().pubkey()) == 7
        assert node.methods.count("getBalance") == 2

    async def test_retries_exhausted(self, node, client):
        node.reply("getBalance", 429)
        with pytest.raises(SubmissionFailed) as exc:
            await client.get_balance(Keypair().pubkey())
        assert exc.value.reason is RejectReason.RPC_ERROR
        assert node.methods.count("getBalance") == 3


class TestSubmit:

    def _ix(self, payer):
        return create_pool_instruction(payer.pubkey(), pool_id_from_label("rpc"), 0)

    async def test_confirmed(self, node, client, payer):
        node.reply("getLatestBlockhash", BLOCKHASH)
        node.reply("sendTransaction", _tx_signature)
        node.reply("getSignatureStatuses", {"context": {"slot": 2}, "value": [
            {"slot": 2, "confirmations": 1, "err": None, "confirmationStatus": "confirmed"}
        ]})
        confirmation = await client.submit(self._ix(payer))
        assert confirmation.slot == 2
        assert node.params["getSignatureStatuses"][0] == [confirmation.signature]

    async def test_expired_blockhash_retried(self, node, client, payer):
        node.reply("getLatestBlockhash", BLOCKHASH)
        node.reply("sendTransaction", {"error": {"code": -32002, "message": "Blockhash not found"}}, _tx_signature)
        node.reply("getSignatureStatuses", {"context": {"slot": 2}, "value": [
            {"slot": 2, "err": None, "confirmationStatus": "finalized"}
        ]})
        await client.submit(self._ix(payer))
        assert node.methods.count("getLatestBlockhash") == 2

    async def test_preflight_rejection(self, node, client, payer):
        node.reply("getLatestBlockhash", BLOCKHASH)
        node.reply("sendTransaction", {"error": {
            "code": -32002,
            "message": "Transaction simulation failed",
            "data": {"err": {"InstructionError": [0, {"Custom": 6001}]}, "logs": []},
        }})
        with pytest.raises(SubmissionFailed) as exc:
            await client.submit(self._ix(payer))
        assert exc.value.reason is RejectReason.STALE_ROOT

    async def test_rejected_after_landing(self, node, client, payer):
        node.reply("getLatestBlockhash", BLOCKHASH)
        node.reply("sendTransaction", _tx_signature)
        node.reply("getSignatureStatuses", {"context": {"slot": 2}, "value": [
            {"slot": 2, "err": {"InstructionError": [0, {"Custom": 6000}]}, "confirmationStatus": "confirmed"}
        ]})
        with pytest.raises(SubmissionFailed) as exc:
            await client.submit(self._ix(payer))
        assert exc.value.reason is RejectReason.NULLIFIER_EXISTS

    async def test_confirmation_timeout(self, node, client, payer):
        node.reply("getLatestBlockhash", BLOCKHASH)
        node.reply("sendTransaction", _tx_signature)
        node.reply("getSignatureStatuses", {"context": {"slot": 2}, "value": [None]})
        with pytest.raises(SubmissionTimeout) as exc:
            await client.submit(self._ix(payer))
        assert exc.value.signature

    async def test_status_poll_errors_end_in_timeout(self, node, client, payer):
        node.reply("getLatestBlockhash", BLOCKHASH)
        node.reply("sendTransaction", _tx_signature)
        node.reply("getSignatureStatuses", 503)
        with pytest.raises(SubmissionTimeout) as exc:
            await client.submit(self._ix(payer))
        assert node.params["getSignatureStatuses"][0] == [exc.value.signature]

    async def test_broken_send_reply_is_not_retried(self, node, client, payer):
        node.reply("getLatestBlockhash", BLOCKHASH)
        node.reply("sendTransaction", 503)
        with pytest.raises(SubmissionTimeout) as exc:
            await client.submit(self._ix(payer))
        assert exc.value.signature
        assert node.methods.count("sendTransaction") == 1

    async def test_oversized_transaction_never_sent(self, node, client, payer):
        ix = deposit_instruction(Keypair().pubkey(), payer.pubkey(), b"\x01" * 32, b"\x00" * 64, b"\x00" * 2000)
        with pytest.raises(SubmissionFailed) as exc:
            await client.submit(ix)
        assert exc.value.reason is RejectReason.TRANSACTION_TOO_LARGE
        assert node.methods == []

    async def test_unknown_signer(self, node, client, payer):
        node.reply("getLatestBlockhash", BLOCKHASH)
        stranger = Keypair().pubkey()
        ix = deposit_instruction(Keypair().pubkey(), stranger, b"\x01" * 32, b"\x00" * 64, b"")
        with pytest.raises(InvalidInput):
            await client.submit(ix)


class TestHelpers:

    @pytest.mark.parametrize("err, message, expected", [
        ({"InstructionError": [0, {"Custom": 6003}]}, "", RejectReason.NOTE_LOCKED),
        ({"InstructionError": [0, {"Custom": 6007}]}, "", RejectReason.POOL_FULL),
        ({"InstructionError": [0, {"Custom": 6010}]}, "", RejectReason.VAULT_EXHAUSTED),
        (None, "Program log: nullifier already used", RejectReason.NULLIFIER_EXISTS),
        ("InsufficientFundsForFee", "", RejectReason.RPC_ERROR),
    ])
    def test_reject_reason(self, err, message, expected):
        assert reject_reason(err, message) is expected

    async def test_backoff_doubles(self):
        delays = []

        async def sleep(d):
            delays.append(d)

        async def refused():
            raise httpx.ConnectError("refused")

        with pytest.raises(SubmissionFailed):
            await with_retry(refused, max_retries=4, base_delay=1.0, sleep=sleep)
        assert delays == [1.0, 2.0, 4.0]

    async def test_succeeds_after_failure(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise httpx.ConnectError("refused")
            return "ok"

        async def no_sleep(_):
            return None

        assert await with_retry(flaky, max_retries=3, sleep=no_sleep) == "ok"
