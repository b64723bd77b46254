"""
Shielded pool test fixtures
"""
import pytest
from solders.keypair import Keypair

from shielded_pool.config import SessionConfig
from shielded_pool.crypto_core.messages import NoteCipher
from shielded_pool.database.note_store import NoteStore
from shielded_pool.ledger.instructions import pool_id_from_label
from shielded_pool.ledger.local import LocalLedger
from shielded_pool.pool_session import PoolSession

T0 = 1_700_000_000
DAY = 86_400


class FakeClock:
    """Manually advanced Unix clock shared by ledger, store and session."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def encryption_key() -> bytes:
    return bytes(range(32))


@pytest.fixture
def cipher(encryption_key) -> NoteCipher:
    return NoteCipher(encryption_key)


@pytest.fixture
def store(cipher, clock):
    s = NoteStore(cipher, url="sqlite://", clock=clock)
    yield s
    s.close()


@pytest.fixture
def ledger(clock) -> LocalLedger:
    return LocalLedger(depth=8, lockup_epochs=1, epoch_seconds=DAY, clock=clock)


@pytest.fixture
def alice() -> Keypair:
    return Keypair()


@pytest.fixture
def bob() -> Keypair:
    return Keypair()


@pytest.fixture
async def session(ledger, store, clock, alice):
    """Session with a freshly created pool; alice is the default owner."""
    s = PoolSession(ledger, store, owners=[alice.pubkey()], config=SessionConfig(tree_depth=8), clock=clock)
    await s.create_pool(alice.pubkey(), pool_id_from_label("test-pool"))
    return s
