from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from eth_account import Account
from eth_utils import to_checksum_address, to_hex
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from rolu_rewards_api.domain.chain import ChainClient
from rolu_rewards_api.domain.errors import AppError, configuration_error
from rolu_rewards_api.settings import Settings

logger = logging.getLogger("rolu_rewards_api.admin_wallet")

# pg advisory lock key shared by every process that can submit from the admin wallet.
SETTLEMENT_ADVISORY_LOCK_KEY = 0x524F4C55

_settlement_lock = asyncio.Lock()


def _already_running() -> AppError:
    return AppError(
        code="settlement_already_running",
        message="A settlement run is already in progress",
        status_code=409,
    )


@asynccontextmanager
async def settlement_run_lock(engine: AsyncEngine) -> AsyncIterator[None]:
    """Hold the process-wide and, on PostgreSQL, cluster-wide settlement lock."""
    if _settlement_lock.locked():
        raise _already_running()
    async with _settlement_lock:
        if engine.dialect.name != "postgresql":
            yield
            return
        async with engine.connect() as conn:
            acquired = await conn.scalar(
                text("select pg_try_advisory_lock(:key)"),
                {"key": SETTLEMENT_ADVISORY_LOCK_KEY},
            )
            if not acquired:
                raise _already_running()
            try:
                yield
            finally:
                await conn.execute(
                    text("select pg_advisory_unlock(:key)"),
                    {"key": SETTLEMENT_ADVISORY_LOCK_KEY},
                )


@dataclass(frozen=True)
class PreparedTransaction:
    transaction_hash: str
    raw_transaction: str
    nonce: int
    gas_limit: int
    gas_price_wei: int


class AdminWallet:
    """Owns the settlement key. Callers must hold ``settlement_run_lock``."""

    def __init__(self, chain: ChainClient, private_key: str, *, chain_id: int) -> None:
        self._chain = chain
        self._account = Account.from_key(private_key)
        self._chain_id = chain_id

    @property
    def address(self) -> str:
        return self._account.address.lower()

    async def prepare(
        self,
        *,
        to: str,
        data: str,
        gas_limit: int,
        gas_price_wei: int | None = None,
        min_nonce: int | None = None,
    ) -> PreparedTransaction:
        nonce = await self._chain.get_transaction_count(self.address, block="pending")
        if min_nonce is not None and nonce < min_nonce:
            nonce = min_nonce
        if gas_price_wei is None:
            gas_price_wei = await self._chain.get_gas_price()
        signed = self._account.sign_transaction(
            {
                "nonce": nonce,
                "gasPrice": gas_price_wei,
                "gas": gas_limit,
                "to": to_checksum_address(to),
                "value": 0,
                "data": data,
                "chainId": self._chain_id,
            }
        )
        return PreparedTransaction(
            transaction_hash=to_hex(signed.hash).lower(),
            raw_transaction=to_hex(signed.raw_transaction),
            nonce=nonce,
            gas_limit=gas_limit,
            gas_price_wei=gas_price_wei,
        )

    async def broadcast(self, prepared: PreparedTransaction) -> str:
        reported = await self._chain.send_raw_transaction(prepared.raw_transaction)
        if reported and reported.lower() != prepared.transaction_hash:
            logger.warning(
                "broadcast_hash_mismatch",
                extra={"expected_hash": prepared.transaction_hash, "reported_hash": reported},
            )
        return prepared.transaction_hash


def build_admin_wallet(chain: ChainClient, settings: Settings) -> AdminWallet:
    if settings.settlement_private_key is None:
        raise configuration_error(
            "settlement_not_configured",
            "Settlement private key is not configured",
        )
    if settings.dispatcher_contract_address is None:
        raise configuration_error(
            "settlement_not_configured",
            "Dispatcher contract address is not configured",
        )
    try:
        return AdminWallet(
            chain,
            settings.settlement_private_key.get_secret_value(),
            chain_id=settings.chain_id,
        )
    except ValueError as exc:
        raise configuration_error(
            "settlement_not_configured",
            "Settlement private key is invalid",
        ) from exc
