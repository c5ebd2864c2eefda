from __future__ import annotations

import logging
from dataclasses import dataclass

from rolu_rewards_api.domain.chain import ChainClient
from rolu_rewards_api.observability import metrics

logger = logging.getLogger("rolu_rewards_api.gas_guard")

# Share of the admin balance that batch planning may commit to gas in one run.
SPENDABLE_BALANCE_PERCENT = 80


@dataclass(frozen=True)
class GasStatus:
    has_enough: bool
    balance_wei: int
    minimum_required_wei: int
    gas_price_wei: int | None = None
    affordable_transfers: int | None = None


def affordable_transfer_count(
    *, balance_wei: int, gas_price_wei: int, gas_per_transfer: int, batch_gas_overhead: int
) -> int | None:
    per_transfer_cost = gas_price_wei * gas_per_transfer
    if per_transfer_cost <= 0:
        return None
    spendable = balance_wei * SPENDABLE_BALANCE_PERCENT // 100 - gas_price_wei * batch_gas_overhead
    return max(0, spendable // per_transfer_cost)


async def check_admin_gas(
    chain: ChainClient,
    admin_address: str,
    *,
    minimum_balance_wei: int,
    gas_per_transfer: int,
    batch_gas_overhead: int,
) -> GasStatus:
    """Read the admin wallet balance and decide whether a settlement run may submit anything."""
    balance = await chain.get_balance(admin_address)
    metrics.admin_wallet_balance_wei.set(balance)
    if balance < minimum_balance_wei:
        logger.warning(
            "admin_wallet_insufficient_gas",
            extra={
                "admin_address": admin_address,
                "balance_wei": str(balance),
                "minimum_required_wei": str(minimum_balance_wei),
            },
        )
        return GasStatus(
            has_enough=False,
            balance_wei=balance,
            minimum_required_wei=minimum_balance_wei,
        )

    gas_price = await chain.get_gas_price()
    return GasStatus(
        has_enough=True,
        balance_wei=balance,
        minimum_required_wei=minimum_balance_wei,
        gas_price_wei=gas_price,
        affordable_transfers=affordable_transfer_count(
            balance_wei=balance,
            gas_price_wei=gas_price,
            gas_per_transfer=gas_per_transfer,
            batch_gas_overhead=batch_gas_overhead,
        ),
    )
