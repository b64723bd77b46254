# shielded_pool/config.py
from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass

# =========================
# Paths & endpoints
# =========================

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[1])
DATA_DIR = os.getenv("DATA_DIR", os.path.join(REPO_ROOT, "data"))

SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "http://127.0.0.1:8899")
# Deployed shielded pool program
SHIELDED_PROGRAM_ID = os.getenv("SHIELDED_PROGRAM_ID", "5C1VaebPdHZYETnTL18cLJK2RexXmVVhkkYpnYHD5P4h")

NOTE_STORE_URL = os.getenv("NOTE_STORE_URL", "sqlite:///" + os.path.join(DATA_DIR, "notes.db"))

# =========================
# Protocol constants
# =========================

# pathBits travels as a single byte on the wire, so 8 is also the ceiling.
MERKLE_TREE_DEPTH = int(os.getenv("MERKLE_TREE_DEPTH", "8"))
MAX_WIRE_TREE_DEPTH = 8

EPOCH_SECONDS = int(os.getenv("EPOCH_SECONDS", "86400"))
DEFAULT_LOCKUP_EPOCHS = int(os.getenv("DEFAULT_LOCKUP_EPOCHS", "1"))
RANGE_PROOF_BITS = int(os.getenv("RANGE_PROOF_BITS", "64"))

LAMPORTS_PER_SOL = 1_000_000_000

# =========================
# Network behaviour
# =========================

RPC_TIMEOUT_SEC = float(os.getenv("RPC_TIMEOUT_SEC", "10"))
CONFIRM_TIMEOUT_SEC = float(os.getenv("CONFIRM_TIMEOUT_SEC", "60"))
POLL_INTERVAL_SEC = float(os.getenv("POLL_INTERVAL_SEC", "0.5"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class SessionConfig:
    """Per-session knobs. Defaults come from the environment above."""

    tree_depth: int = MERKLE_TREE_DEPTH
    epoch_seconds: int = EPOCH_SECONDS
    range_bits: int = RANGE_PROOF_BITS
