"""Pytest configuration and fixtures."""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"

from walletwatch.models import TokenRecord, TokenType
from walletwatch.storage.checkpoints import CheckpointStore
from walletwatch.storage.models import Base
from walletwatch.storage.token_store import TokenStore
from walletwatch.storage.transactions import TransactionStore

WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20
USDT = "0xdac17f958d2ee523a2206206994597c13d831ec7"
DAI = "0x6b175474e89094c44da98b954eedcdecb5be3830"
NFT = "0x" + "11" * 20


def make_token(
    contract: str = USDT,
    chain: int = 1,
    symbol: str = "USDT",
    decimals: int = 6,
    value: str = "0",
    token_type: TokenType = TokenType.ERC20,
    balance: tuple = (),
) -> TokenRecord:
    """Build a token record for tests."""
    return TokenRecord(
        contract=contract,
        chain=chain,
        name=symbol,
        symbol=symbol,
        decimals=decimals,
        type=token_type,
        value=value,
        balance=balance,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a per-test SQLite database engine.

    A file database gives every session its own connection, so concurrent
    detection and refresh tasks never share a transaction.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'walletwatch.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create session factory for testing."""
    yield async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def token_store(session_factory) -> TokenStore:
    """Opened token store for WALLET on Ethereum."""
    store = TokenStore(session_factory, WALLET, 1)
    await store.open()
    return store


@pytest.fixture
def transaction_store(session_factory) -> TransactionStore:
    return TransactionStore(session_factory, WALLET, 1)


@pytest.fixture
def checkpoints(session_factory) -> CheckpointStore:
    return CheckpointStore(session_factory)
