from __future__ import annotations

import os
from pathlib import Path

import psycopg
import pytest
import pytest_asyncio
from alembic import command
from alembic.config import Config
from eth_account import Account
from eth_utils import keccak, to_hex
from httpx import ASGITransport, AsyncClient
from psycopg import sql
from sqlalchemy import text
from sqlalchemy.engine import make_url

from rolu_rewards_api.db.session import create_sessionmaker
from rolu_rewards_api.domain.chain import (
    ChainRpcError,
    ChainTransaction,
    LogEntry,
    TransactionReceipt,
)
from rolu_rewards_api.domain.chain import get_chain_client
from rolu_rewards_api.domain.notifications import get_notification_dispatcher
from rolu_rewards_api.main import create_app
from rolu_rewards_api.settings import get_settings
from rolu_rewards_api.time import get_sleep

# Well-known development keys; never funded outside local chains.
SIGNER_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
SETTLEMENT_PRIVATE_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
DISPATCHER_ADDRESS = "0x" + "d1" * 20
TOKEN_ADDRESS = "0x" + "70" * 20
REWARDS_ADDRESS = "0x" + "5e" * 20
ADMIN_TOKEN = "test-admin-token"
CRON_SECRET = "test-cron-secret"

_TABLES = (
    "user_notifications",
    "token_transactions",
    "claimable_rewards",
    "sessions",
    "devices",
    "users",
)


def _normalize_psycopg_dsn(url: str) -> str:
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql://", 1)
    if url.startswith("postgresql+psycopg://"):
        return url.replace("postgresql+psycopg://", "postgresql://", 1)
    return url


def _get_test_database_url(tmp_dir: Path) -> str:
    explicit = os.environ.get("DATABASE_URL_TEST") or os.environ.get("TEST_DATABASE_URL")
    if explicit:
        return explicit
    return f"sqlite+aiosqlite:///{tmp_dir / 'rolu_rewards_test.db'}"


def _ensure_test_database_exists(test_url: str) -> None:
    url = make_url(test_url)
    if not url.drivername.startswith("postgresql"):
        return
    if not url.database:
        raise RuntimeError("DATABASE_URL_TEST must include a database name.")
    db_name = url.database
    admin_dsn = _normalize_psycopg_dsn(
        url.set(database="postgres").render_as_string(hide_password=False)
    )
    with psycopg.connect(admin_dsn, autocommit=True) as conn:
        exists = conn.execute(
            "select 1 from pg_database where datname = %s",
            (db_name,),
        ).fetchone()
        if not exists:
            conn.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(db_name)))


@pytest.fixture(scope="session")
def alembic_config() -> Config:
    config_dir = Path(__file__).resolve().parents[1]
    cfg = Config(str(config_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(config_dir / "src/rolu_rewards_api/db/migrations"))
    cfg.set_main_option("prepend_sys_path", str(config_dir / "src"))
    cfg.attributes["configure_logger"] = False
    return cfg


@pytest.fixture(scope="session", autouse=True)
def migrate_db(alembic_config: Config, tmp_path_factory) -> str:
    test_url = _get_test_database_url(tmp_path_factory.mktemp("db"))
    os.environ["DATABASE_URL"] = test_url
    get_settings.cache_clear()
    _ensure_test_database_exists(test_url)
    alembic_config.attributes["database_url"] = test_url
    command.upgrade(alembic_config, "head")
    return test_url


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    monkeypatch.setenv("REWARD_SIGNER_PRIVATE_KEY", SIGNER_PRIVATE_KEY)
    monkeypatch.setenv("SETTLEMENT_PRIVATE_KEY", SETTLEMENT_PRIVATE_KEY)
    monkeypatch.setenv("DISPATCHER_CONTRACT_ADDRESS", DISPATCHER_ADDRESS)
    monkeypatch.setenv("TOKEN_CONTRACT_ADDRESS", TOKEN_ADDRESS)
    monkeypatch.setenv("REWARDS_CONTRACT_ADDRESS", REWARDS_ADDRESS)
    monkeypatch.setenv("ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("NOTIFICATIONS_MODE", "noop")
    monkeypatch.setenv("SETTLEMENT_RECEIPT_TIMEOUT_SECONDS", "1")
    monkeypatch.setenv("SETTLEMENT_RECEIPT_POLL_INTERVAL_SECONDS", "0.5")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(settings_env):
    return get_settings()


@pytest.fixture
def db_sessionmaker():
    settings = get_settings()
    create_sessionmaker.cache_clear()
    return create_sessionmaker(settings.database_url)


@pytest_asyncio.fixture(autouse=True)
async def reset_db(db_sessionmaker):
    async with db_sessionmaker() as session:
        if session.bind.dialect.name == "postgresql":
            await session.execute(
                text(f"TRUNCATE {', '.join(_TABLES)} RESTART IDENTITY CASCADE")
            )
        else:
            for table in _TABLES:
                await session.execute(text(f"DELETE FROM {table}"))
        await session.commit()
    yield


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[dict[str, object]] = []

    async def send(
        self,
        *,
        wallet_address: str,
        title: str,
        message: str,
        path: str | None = None,
    ) -> None:
        self.sent.append(
            {"wallet_address": wallet_address, "title": title, "message": message, "path": path}
        )


class FakeChain:
    """In-memory EVM node: signed transactions are mined immediately unless told otherwise."""

    def __init__(self) -> None:
        self.balance = 10**18
        self.gas_price = 10**9
        self.gas_estimate = 100_000
        self.block_number = 100
        self.pending_nonce = 0
        self.mine_mode = "success"
        self.sent: list[str] = []
        self.estimate_calls: list[dict[str, object]] = []
        self.send_errors: list[ChainRpcError | None] = []
        self.latest_nonce: int | None = None
        self.receipts: dict[str, TransactionReceipt] = {}
        self.transactions: dict[str, ChainTransaction] = {}
        self.blocks: dict[int, list[ChainTransaction]] = {}

    def add_block_transaction(
        self, transaction: ChainTransaction, *, succeeded: bool = True
    ) -> None:
        number = transaction.block_number if transaction.block_number is not None else self.block_number
        self.blocks.setdefault(number, []).append(transaction)
        self.transactions[transaction.transaction_hash] = transaction
        self.receipts[transaction.transaction_hash] = TransactionReceipt(
            transaction_hash=transaction.transaction_hash,
            status=1 if succeeded else 0,
            block_number=number,
            from_address=transaction.from_address,
            to_address=transaction.to_address,
        )

    def add_receipt(
        self,
        transaction_hash: str,
        *,
        succeeded: bool = True,
        block_number: int | None = None,
        to_address: str | None = None,
        logs: tuple[LogEntry, ...] = (),
    ) -> None:
        self.receipts[transaction_hash] = TransactionReceipt(
            transaction_hash=transaction_hash,
            status=1 if succeeded else 0,
            block_number=block_number if block_number is not None else self.block_number,
            to_address=to_address,
            logs=logs,
        )

    async def get_balance(self, address: str) -> int:
        return self.balance

    async def get_transaction_count(self, address: str, *, block: str = "pending") -> int:
        if block == "latest" and self.latest_nonce is not None:
            return self.latest_nonce
        return self.pending_nonce

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def estimate_gas(self, transaction: dict[str, object]) -> int:
        self.estimate_calls.append(transaction)
        return self.gas_estimate

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        transaction_hash = to_hex(keccak(hexstr=raw_transaction)).lower()
        self.sent.append(raw_transaction)
        self.pending_nonce += 1
        sender = Account.recover_transaction(raw_transaction).lower()
        self.transactions[transaction_hash] = ChainTransaction(
            transaction_hash=transaction_hash,
            from_address=sender,
            to_address=None,
            input="0x",
            nonce=None,
            block_number=None,
        )
        if self.mine_mode == "success":
            self.add_receipt(transaction_hash, succeeded=True)
        elif self.mine_mode == "revert":
            self.add_receipt(transaction_hash, succeeded=False)
        return transaction_hash

    async def get_transaction_receipt(self, transaction_hash: str) -> TransactionReceipt | None:
        return self.receipts.get(transaction_hash)

    async def get_transaction(self, transaction_hash: str) -> ChainTransaction | None:
        return self.transactions.get(transaction_hash)

    async def get_block_number(self) -> int:
        return self.block_number

    async def get_block_transactions(self, block_number: int) -> list[ChainTransaction]:
        return list(self.blocks.get(block_number, []))


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def no_sleep():
    return _no_sleep


@pytest_asyncio.fixture
async def client(settings_env, fake_chain, dispatcher):
    app = create_app()
    app.dependency_overrides[get_chain_client] = lambda: fake_chain
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_sleep] = lambda: _no_sleep
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
