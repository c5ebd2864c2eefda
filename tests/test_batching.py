from __future__ import annotations

from rolu_rewards_api.domain.batching import (
    batch_gas_estimate,
    plan_batches,
    size_batches,
    with_gas_buffer,
)
from rolu_rewards_api.domain.gas_guard import affordable_transfer_count


def _plan(items, **overrides):
    options = {
        "max_transfers_per_batch": 50,
        "max_gas_per_batch": 3_000_000,
        "batch_gas_overhead": 50_000,
        "gas_per_transfer": 60_000,
        "max_batches": 10,
        "affordable_transfers": None,
    }
    options.update(overrides)
    return plan_batches(items, **options)


def test_count_cap_alone_does_not_flag_gas_limited() -> None:
    plan = _plan(list(range(5)), max_transfers_per_batch=2)

    assert plan.batches == [[0, 1], [2, 3], [4]]
    assert plan.batch_size == 2
    assert plan.gas_limited is False
    assert plan.deferred == []


def test_gas_budget_splits_selection_and_flags_gas_limited() -> None:
    plan = _plan(["a", "b", "c"], max_gas_per_batch=50_000 + 2 * 60_000)

    assert plan.batches == [["a", "b"], ["c"]]
    assert plan.gas_limited is True
    assert plan.planned_count == 3


def test_gas_budget_that_fits_everything_is_not_gas_limited() -> None:
    plan = _plan(["a", "b"], max_gas_per_batch=50_000 + 2 * 60_000)

    assert plan.batches == [["a", "b"]]
    assert plan.gas_limited is False


def test_affordable_transfers_shorten_the_run() -> None:
    plan = _plan(list(range(10)), affordable_transfers=4)

    assert plan.planned_count == 4
    assert plan.deferred == [4, 5, 6, 7, 8, 9]
    assert plan.gas_limited is True


def test_max_batches_defers_the_remainder() -> None:
    plan = _plan(list(range(7)), max_transfers_per_batch=2, max_batches=2)

    assert plan.batches == [[0, 1], [2, 3]]
    assert plan.deferred == [4, 5, 6]


def test_empty_selection_plans_nothing() -> None:
    plan = _plan([])

    assert plan.batches == []
    assert plan.gas_limited is False


def test_size_batches_never_goes_below_one() -> None:
    sizing = size_batches(
        max_transfers_per_batch=50,
        max_gas_per_batch=10_000,
        batch_gas_overhead=50_000,
        gas_per_transfer=60_000,
    )

    assert sizing.batch_size == 1
    assert sizing.gas_bounded is True


def test_gas_estimate_and_buffer() -> None:
    assert batch_gas_estimate(3, gas_per_transfer=60_000, batch_gas_overhead=50_000) == 230_000
    assert with_gas_buffer(100_000, 20) == 120_000
    assert with_gas_buffer(101, 20) == 122


def test_affordable_transfer_count_reserves_part_of_the_balance() -> None:
    # 80% of 1 ETH at 1 gwei, minus one batch overhead, over 60k gas per transfer.
    count = affordable_transfer_count(
        balance_wei=10**18,
        gas_price_wei=10**9,
        gas_per_transfer=60_000,
        batch_gas_overhead=50_000,
    )

    assert count == (8 * 10**17 - 50_000 * 10**9) // (60_000 * 10**9)
    assert (
        affordable_transfer_count(
            balance_wei=0, gas_price_wei=10**9, gas_per_transfer=60_000, batch_gas_overhead=50_000
        )
        == 0
    )
    assert (
        affordable_transfer_count(
            balance_wei=10**18, gas_price_wei=0, gas_per_transfer=60_000, batch_gas_overhead=0
        )
        is None
    )
