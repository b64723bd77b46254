"""
Instruction encoding and account layout tests
"""
import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from shielded_pool.errors import InvalidInput, PoolConfigurationError
from shielded_pool.ledger.instructions import (
    NOTE_DISCRIMINATOR,
    POOL_DISCRIMINATOR,
    PROGRAM_ID,
    ZERO_COMMITMENT,
    CreatePoolData,
    DepositData,
    InstructionKind,
    NoteAccount,
    PoolAccount,
    TransferData,
    WithdrawData,
    create_pool_instruction,
    decode_instruction,
    deposit_instruction,
    encode_create_pool,
    encode_deposit,
    encode_transfer,
    encode_withdraw,
    note_address,
    nullifier_address,
    parse_pubkey,
    pool_address,
    pool_id_from_label,
    transfer_instruction,
    withdraw_instruction,
)

DEPTH = 8
SIBLINGS = tuple(bytes([i]) * 32 for i in range(DEPTH))


class TestEncoding:

    def test_create_pool_layout(self):
        data = encode_create_pool(b"\x01" * 32, 250)
        assert len(data) == 1 + 32 + 2
        assert data[0] == InstructionKind.CREATE_POOL
        assert decode_instruction(data, DEPTH) == CreatePoolData(b"\x01" * 32, 250)

    def test_deposit_layout(self):
        data = encode_deposit(b"\x02" * 32, b"\x03" * 64, b"proof")
        assert len(data) == 1 + 32 + 64 + 2 + 5
        assert decode_instruction(data, DEPTH) == DepositData(b"\x02" * 32, b"\x03" * 64, b"proof")

    def test_withdraw_layout(self):
        data = encode_withdraw(b"\x04" * 32, SIBLINGS, 5, b"pp", b"\x05" * 32)
        assert len(data) == 1 + 32 + DEPTH * 32 + 1 + 2 + 2 + 32
        decoded = decode_instruction(data, DEPTH)
        assert decoded == WithdrawData(b"\x04" * 32, SIBLINGS, 5, b"pp", b"\x05" * 32)

    def test_withdraw_defaults_to_zero_output(self):
        decoded = decode_instruction(encode_withdraw(b"\x04" * 32, SIBLINGS, 0, b""), DEPTH)
        assert decoded.output_commitment == ZERO_COMMITMENT

    def test_transfer_layout(self):
        data = encode_transfer(b"\x06" * 32, SIBLINGS, 255, b"xyz", b"\x07" * 32, b"\x08" * 32)
        decoded = decode_instruction(data, DEPTH)
        assert decoded == TransferData(b"\x06" * 32, SIBLINGS, 255, b"xyz", b"\x07" * 32, b"\x08" * 32)

    def test_depth_beyond_one_byte_of_path_bits(self):
        siblings = tuple(b"\x00" * 32 for _ in range(9))
        with pytest.raises(PoolConfigurationError):
            encode_withdraw(b"\x04" * 32, siblings, 0, b"")
        with pytest.raises(PoolConfigurationError):
            decode_instruction(encode_create_pool(b"\x01" * 32, 0), 9)

    def test_path_bits_must_fit_depth(self):
        with pytest.raises(InvalidInput):
            encode_withdraw(b"\x04" * 32, SIBLINGS[:4], 16, b"")

    def test_rejects_bad_sizes(self):
        with pytest.raises(InvalidInput):
            encode_deposit(b"\x02" * 32, b"\x03" * 63, b"")
        with pytest.raises(InvalidInput):
            encode_create_pool(b"\x01" * 31, 0)
        with pytest.raises(InvalidInput):
            encode_create_pool(b"\x01" * 32, 70_000)

    def test_decode_rejects_garbage(self):
        with pytest.raises(InvalidInput):
            decode_instruction(b"", DEPTH)
        with pytest.raises(InvalidInput):
            decode_instruction(b"\x09", DEPTH)
        with pytest.raises(InvalidInput):
            decode_instruction(encode_create_pool(b"\x01" * 32, 0) + b"\x00", DEPTH)
        with pytest.raises(InvalidInput):
            decode_instruction(encode_deposit(b"\x02" * 32, b"\x03" * 64, b"proof")[:-1], DEPTH)


class TestInstructions:

    def test_pdas_are_deterministic(self):
        creator = Keypair().pubkey()
        pid = pool_id_from_label("main")
        pool = pool_address(creator, pid)
        assert pool == pool_address(creator, pid)
        assert pool != pool_address(creator, pool_id_from_label("other"))
        assert note_address(pool, b"\x01" * 32) != nullifier_address(pool, b"\x01" * 32)

    def test_create_pool_accounts(self):
        creator = Keypair().pubkey()
        ix = create_pool_instruction(creator, b"\x01" * 32, 0)
        assert ix.program_id == PROGRAM_ID
        metas = ix.accounts
        assert metas[0].pubkey == pool_address(creator, b"\x01" * 32)
        assert metas[1].pubkey == creator and metas[1].is_signer
        assert metas[2].pubkey == SYSTEM_PROGRAM_ID

    def test_deposit_accounts(self):
        pool, depositor = Keypair().pubkey(), Keypair().pubkey()
        ix = deposit_instruction(pool, depositor, b"\x02" * 32, b"\x03" * 64, b"")
        assert [m.pubkey for m in ix.accounts] == [
            pool, note_address(pool, b"\x02" * 32), depositor, SYSTEM_PROGRAM_ID,
        ]

    def test_withdraw_change_account_only_with_change(self):
        pool, owner, recipient = (Keypair().pubkey() for _ in range(3))
        full = withdraw_instruction(pool, owner, recipient, b"\x04" * 32, SIBLINGS, 0, b"")
        partial = withdraw_instruction(pool, owner, recipient, b"\x04" * 32, SIBLINGS, 0, b"", b"\x05" * 32)
        assert len(full.accounts) == 5
        assert len(partial.accounts) == 6
        assert partial.accounts[5].pubkey == note_address(pool, b"\x05" * 32)
        assert full.accounts[1].pubkey == nullifier_address(pool, b"\x04" * 32)

    def test_transfer_accounts(self):
        pool, owner = Keypair().pubkey(), Keypair().pubkey()
        ix = transfer_instruction(pool, owner, b"\x04" * 32, SIBLINGS, 0, b"", b"\x07" * 32, b"\x08" * 32)
        signers = [m.pubkey for m in ix.accounts if m.is_signer]
        assert signers == [owner]


class TestAccounts:

    def _pool(self) -> PoolAccount:
        return PoolAccount(
            address=Keypair().pubkey(),
            pool_id=b"\x01" * 32,
            creator=Keypair().pubkey(),
            reward_rate_bps=100,
            lockup_epochs=1,
            merkle_root=b"\x02" * 32,
            next_note_index=3,
            total_notes=3,
            nullifier_count=1,
            created_at=1_700_000_000,
            is_active=True,
        )

    def test_pool_layout(self):
        acct = self._pool()
        data = acct.to_bytes()
        assert len(data) == 128
        assert data[:8] == POOL_DISCRIMINATOR
        assert PoolAccount.from_bytes(acct.address, data) == acct

    def test_pool_rejects_other_account(self):
        acct = self._pool()
        data = NOTE_DISCRIMINATOR + acct.to_bytes()[8:]
        with pytest.raises(InvalidInput):
            PoolAccount.from_bytes(acct.address, data)
        with pytest.raises(InvalidInput):
            PoolAccount.from_bytes(acct.address, data[:100])

    def test_note_layout(self):
        note = NoteAccount(Keypair().pubkey(), b"\x01" * 32, b"\x02" * 64, b"\x03" * 32, 7, 10, 20, False)
        data = note.to_bytes()
        assert data[:8] == NOTE_DISCRIMINATOR
        assert data[8:40] == bytes(note.pool)
        assert NoteAccount.from_bytes(data) == note


class TestParsePubkey:

    def test_accepts_all_forms(self):
        pk = Keypair().pubkey()
        assert parse_pubkey(pk) == pk
        assert parse_pubkey(str(pk)) == pk
        assert parse_pubkey(bytes(pk)) == pk

    @pytest.mark.parametrize("value", ["not-a-key", b"\x00" * 5, b"\x00" * 33, bytearray(31)])
    def test_rejects_garbage(self, value):
        with pytest.raises(InvalidInput):
            parse_pubkey(value)

    def test_default_pubkey_round_trip(self):
        assert parse_pubkey(str(Pubkey.default())) == Pubkey.default()
