"""Pytest configuration and fixtures."""

import os
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DRY_RUN"] = "true"

from bmn_resolver.chains import ChainConfig, build_chain_configs
from bmn_resolver.config import Settings
from bmn_resolver.crypto import compute_hashlock
from bmn_resolver.ledger.database import Database
from bmn_resolver.ledger.swaps import SwapLedger
from bmn_resolver.ledger.vault import SecretVault
from bmn_resolver.utils.locks import KeyLockRegistry

SRC_CHAIN_ID = 8453
DST_CHAIN_ID = 10

SECRET = "0x" + "5e" * 32
HASHLOCK = compute_hashlock(SECRET)


def h32(byte: int) -> str:
    """32-byte hex value made of one repeated byte."""
    return "0x" + f"{byte:02x}" * 32


def address(byte: int) -> str:
    """20-byte address made of one repeated byte."""
    return "0x" + f"{byte:02x}" * 20


ALICE = address(0xA1)
BOB = address(0xB0)
SRC_ESCROW = address(0x51)
DST_ESCROW = address(0xD5)


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults only, ignoring any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def chains(settings: Settings) -> dict[int, ChainConfig]:
    return build_chain_configs(settings)


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """File-backed SQLite database, so concurrent sessions see each other."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.open()
    yield db
    await db.close()


@pytest.fixture
def ledger(database: Database) -> SwapLedger:
    return SwapLedger(database, KeyLockRegistry("ledger", timeout=10.0))


@pytest.fixture
def vault(database: Database) -> SecretVault:
    return SecretVault(database, KeyLockRegistry("vault", timeout=10.0))


@pytest.fixture
def action_locks() -> KeyLockRegistry:
    return KeyLockRegistry("actions", timeout=10.0)
