from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class BatchSizing:
    batch_size: int
    gas_bounded: bool


@dataclass(frozen=True)
class BatchPlan(Generic[T]):
    batches: list[list[T]]
    batch_size: int
    gas_limited: bool
    deferred: list[T]

    @property
    def planned_count(self) -> int:
        return sum(len(batch) for batch in self.batches)


def batch_gas_estimate(transfer_count: int, *, gas_per_transfer: int, batch_gas_overhead: int) -> int:
    return batch_gas_overhead + transfer_count * gas_per_transfer


def with_gas_buffer(gas: int, buffer_percent: int) -> int:
    return gas + (gas * buffer_percent + 99) // 100


def size_batches(
    *,
    max_transfers_per_batch: int,
    max_gas_per_batch: int,
    batch_gas_overhead: int,
    gas_per_transfer: int,
) -> BatchSizing:
    """Largest batch that fits both the count cap and the per-transaction gas budget."""
    by_gas = max(0, (max_gas_per_batch - batch_gas_overhead) // gas_per_transfer)
    if by_gas < max_transfers_per_batch:
        return BatchSizing(batch_size=max(1, by_gas), gas_bounded=True)
    return BatchSizing(batch_size=max_transfers_per_batch, gas_bounded=False)


def plan_batches(
    items: Sequence[T],
    *,
    max_transfers_per_batch: int,
    max_gas_per_batch: int,
    batch_gas_overhead: int,
    gas_per_transfer: int,
    max_batches: int,
    affordable_transfers: int | None = None,
) -> BatchPlan[T]:
    """Partition queued transfers into gas-bounded batches.

    The run is flagged ``gas_limited`` when the per-transaction gas budget or the admin
    wallet's affordable transfer count, rather than the plain count cap, forced the
    selection to be split or shortened. Items that do not fit are returned as
    ``deferred`` and stay queued for a later run.
    """
    sizing = size_batches(
        max_transfers_per_batch=max_transfers_per_batch,
        max_gas_per_batch=max_gas_per_batch,
        batch_gas_overhead=batch_gas_overhead,
        gas_per_transfer=gas_per_transfer,
    )
    gas_limited = sizing.gas_bounded and len(items) > sizing.batch_size

    budget = len(items)
    if affordable_transfers is not None and affordable_transfers < budget:
        budget = max(0, affordable_transfers)
        gas_limited = True
    budget = min(budget, sizing.batch_size * max_batches)

    selected = list(items[:budget])
    deferred = list(items[budget:])
    batches = [
        selected[start : start + sizing.batch_size]
        for start in range(0, len(selected), sizing.batch_size)
    ]
    return BatchPlan(
        batches=batches,
        batch_size=sizing.batch_size,
        gas_limited=gas_limited,
        deferred=deferred,
    )
