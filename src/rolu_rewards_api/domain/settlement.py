from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rolu_rewards_api.db.models import TokenTransaction, UserNotification
from rolu_rewards_api.domain.admin_wallet import (
    AdminWallet,
    PreparedTransaction,
    build_admin_wallet,
    settlement_run_lock,
)
from rolu_rewards_api.domain.batching import batch_gas_estimate, plan_batches, with_gas_buffer
from rolu_rewards_api.domain.chain import (
    ChainClient,
    ChainRpcError,
    ChainTransportError,
    InsufficientFundsError,
    NonceConflictError,
    TransactionReceipt,
)
from rolu_rewards_api.domain.claims import expire_stale_claims
from rolu_rewards_api.domain.contracts import decode_batch_transfer, encode_batch_transfer
from rolu_rewards_api.domain.errors import AppError
from rolu_rewards_api.domain.gas_guard import check_admin_gas
from rolu_rewards_api.domain.notifications import (
    NotificationDispatcher,
    push_notification,
    record_transfer_completed_notification,
)
from rolu_rewards_api.domain.reward_ledger import (
    TokenTransactionStatus,
    is_valid_address,
    parse_amount_wei,
    require_transition,
)
from rolu_rewards_api.observability.context import settlement_run_context
from rolu_rewards_api.observability.ops import BatchObservation, observe_batch, observe_operation
from rolu_rewards_api.settings import Settings
from rolu_rewards_api.time import Sleep, UtcNow

logger = logging.getLogger("rolu_rewards_api.settlement")

_ERROR_MESSAGE_MAX_LENGTH = 500


@dataclass(frozen=True)
class SettlementStats:
    queued: int
    processing: int
    completed: int
    failed: int
    retriable_failed: int
    invalid_data: int
    total: int
    oldest_queued_at: dt.datetime | None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["oldest_queued_at"] = (
            self.oldest_queued_at.isoformat() if self.oldest_queued_at else None
        )
        return payload


@dataclass(frozen=True)
class HousekeepingReport:
    invalidated: int = 0
    reconciled_completed: int = 0
    requeued: int = 0
    failed: int = 0
    expired_claims: int = 0


@dataclass(frozen=True)
class SettlementRunReport:
    success: bool
    processed_count: int
    batches_processed: int
    gas_limited: bool
    completed_count: int
    requeued_count: int
    failed_count: int
    pending_count: int
    deferred_count: int
    before_stats: SettlementStats
    after_stats: SettlementStats
    housekeeping: HousekeepingReport
    aborted_reason: str | None = None


@dataclass(frozen=True)
class InsufficientGasReport:
    balance_wei: int
    minimum_required_wei: int
    error: str = "INSUFFICIENT_GAS"


@dataclass(frozen=True)
class OnChainBatch:
    transaction_hash: str
    nonce: int | None
    transfers: list[tuple[str, int]]


@dataclass
class _BatchOutcome:
    submitted: bool = False
    completed: int = 0
    requeued: int = 0
    failed: int = 0
    pending: int = 0
    abort_reason: str | None = None
    notifications: list[tuple[UserNotification, str | None]] = field(default_factory=list)


async def get_settlement_stats(db: AsyncSession, *, max_retry_count: int) -> SettlementStats:
    counts: dict[str, int] = {
        status: int(count)
        for status, count in (
            await db.execute(
                select(TokenTransaction.status, func.count()).group_by(TokenTransaction.status)
            )
        ).all()
    }
    retriable_failed = await db.scalar(
        select(func.count())
        .select_from(TokenTransaction)
        .where(
            TokenTransaction.status == TokenTransactionStatus.FAILED.value,
            TokenTransaction.retry_count <= max_retry_count,
            TokenTransaction.refunded_at.is_(None),
        )
    )
    invalid_data = await db.scalar(
        select(func.count())
        .select_from(TokenTransaction)
        .where(
            TokenTransaction.status == TokenTransactionStatus.QUEUED.value,
            or_(
                TokenTransaction.wallet_address.is_(None),
                TokenTransaction.amount_wei.is_(None),
            ),
        )
    )
    oldest_queued_at = await db.scalar(
        select(func.min(TokenTransaction.created_at)).where(
            TokenTransaction.status == TokenTransactionStatus.QUEUED.value
        )
    )
    return SettlementStats(
        queued=counts.get(TokenTransactionStatus.QUEUED.value, 0),
        processing=counts.get(TokenTransactionStatus.PROCESSING.value, 0),
        completed=counts.get(TokenTransactionStatus.COMPLETED.value, 0),
        failed=counts.get(TokenTransactionStatus.FAILED.value, 0),
        retriable_failed=int(retriable_failed or 0),
        invalid_data=int(invalid_data or 0),
        total=sum(counts.values()),
        oldest_queued_at=oldest_queued_at,
    )


def _transfer_pair(row: TokenTransaction) -> tuple[str, int]:
    return (str(row.wallet_address).lower(), int(str(row.amount_wei)))


def _set_status(row: TokenTransaction, target: TokenTransactionStatus) -> None:
    row.status = require_transition(row.status, target).value


def _record_failure(row: TokenTransaction, message: str, *, max_retry_count: int) -> TokenTransactionStatus:
    """Count a definite failed attempt; the row returns to the queue until the ceiling is exceeded."""
    row.retry_count = (row.retry_count or 0) + 1
    row.error_message = message[:_ERROR_MESSAGE_MAX_LENGTH]
    row.batch_transaction_hash = None
    row.submitted_nonce = None
    target = (
        TokenTransactionStatus.FAILED
        if row.retry_count > max_retry_count
        else TokenTransactionStatus.QUEUED
    )
    _set_status(row, target)
    return target


def _requeue_unbroadcast(row: TokenTransaction, message: str | None = None) -> None:
    row.batch_transaction_hash = None
    row.submitted_nonce = None
    row.error_message = message[:_ERROR_MESSAGE_MAX_LENGTH] if message else None
    _set_status(row, TokenTransactionStatus.QUEUED)


def _mark_completed(
    db: AsyncSession, row: TokenTransaction, transaction_hash: str
) -> tuple[UserNotification, str | None]:
    _set_status(row, TokenTransactionStatus.COMPLETED)
    row.batch_transaction_hash = transaction_hash
    row.error_message = None
    notification = record_transfer_completed_notification(
        user_id=row.user_id,
        token_transaction_id=row.id,
        amount=row.amount,
        transaction_hash=transaction_hash,
    )
    db.add(notification)
    return notification, row.wallet_address


async def _publish(
    dispatcher: NotificationDispatcher,
    notifications: Sequence[tuple[UserNotification, str | None]],
) -> None:
    if not notifications:
        return
    await asyncio.gather(
        *(
            push_notification(dispatcher, notification, wallet_address=wallet_address)
            for notification, wallet_address in notifications
        )
    )


async def wait_for_receipt(
    chain: ChainClient,
    transaction_hash: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    sleep: Sleep,
) -> TransactionReceipt | None:
    """Poll for a receipt; ``None`` means the outcome is still unknown when the wait ends."""
    waited = 0.0
    delay = poll_interval_seconds
    while True:
        try:
            receipt = await chain.get_transaction_receipt(transaction_hash)
        except ChainRpcError as exc:
            logger.warning(
                "receipt_lookup_failed",
                extra={"transaction_hash": transaction_hash, "error": str(exc)},
            )
            delay = min(delay * 2, max(poll_interval_seconds, timeout_seconds))
        else:
            if receipt is not None:
                return receipt
            delay = poll_interval_seconds
        if waited >= timeout_seconds:
            return None
        await sleep(delay)
        waited += delay


async def scan_admin_batches(
    chain: ChainClient,
    *,
    sender: str,
    dispatcher_address: str,
    lookback_blocks: int,
) -> list[OnChainBatch]:
    """Successful batchTransfer calls sent by the admin wallet in recent blocks, newest first."""
    if lookback_blocks <= 0:
        return []
    latest = await chain.get_block_number()
    earliest = max(0, latest - lookback_blocks + 1)
    batches: list[OnChainBatch] = []
    for number in range(latest, earliest - 1, -1):
        for transaction in await chain.get_block_transactions(number):
            if transaction.from_address != sender or transaction.to_address != dispatcher_address:
                continue
            transfers = decode_batch_transfer(transaction.input)
            if not transfers:
                continue
            receipt = await chain.get_transaction_receipt(transaction.transaction_hash)
            if receipt is None or not receipt.succeeded:
                continue
            batches.append(
                OnChainBatch(
                    transaction_hash=transaction.transaction_hash,
                    nonce=transaction.nonce,
                    transfers=transfers,
                )
            )
    return batches


async def _attributed_transfers(
    db: AsyncSession, transaction_hashes: Iterable[str]
) -> Counter[tuple[str, tuple[str, int]]]:
    hashes = list(set(transaction_hashes))
    attributed: Counter[tuple[str, tuple[str, int]]] = Counter()
    if not hashes:
        return attributed
    rows = await db.scalars(
        select(TokenTransaction).where(
            TokenTransaction.status == TokenTransactionStatus.COMPLETED.value,
            TokenTransaction.batch_transaction_hash.in_(hashes),
        )
    )
    for row in rows:
        if row.wallet_address and parse_amount_wei(row.amount_wei) is not None:
            attributed[(str(row.batch_transaction_hash), _transfer_pair(row))] += 1
    return attributed


def match_rows_to_batches(
    rows: Sequence[TokenTransaction],
    batches: Sequence[OnChainBatch],
    attributed: Counter[tuple[str, tuple[str, int]]],
) -> dict[Any, str]:
    """Pair ambiguous rows with on-chain transfers not already credited to a completed row.

    A row that recorded the sequence number it was submitted with only matches the
    transaction sent with that sequence number.
    """
    available: Counter[tuple[str, tuple[str, int]]] = Counter()
    for batch in batches:
        for pair in batch.transfers:
            available[(batch.transaction_hash, pair)] += 1
    available.subtract(attributed)

    matches: dict[Any, str] = {}
    for row in rows:
        if not row.wallet_address or parse_amount_wei(row.amount_wei) is None:
            continue
        pair = _transfer_pair(row)
        for batch in batches:
            if row.submitted_nonce is not None and batch.nonce != row.submitted_nonce:
                continue
            key = (batch.transaction_hash, pair)
            if available[key] > 0:
                available[key] -= 1
                matches[row.id] = batch.transaction_hash
                break
    return matches


class SettlementWorker:
    """One settlement run against the admin wallet. Instances are not reused across runs."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        chain: ChainClient,
        wallet: AdminWallet,
        settings: Settings,
        dispatcher: NotificationDispatcher,
        now: UtcNow,
        sleep: Sleep,
    ) -> None:
        self._db = db
        self._chain = chain
        self._wallet = wallet
        self._settings = settings
        self._dispatcher = dispatcher
        self._now = now
        self._sleep = sleep
        self._dispatcher_address = str(settings.dispatcher_contract_address)
        self._scanned: list[OnChainBatch] | None = None

    async def _recent_batches(self) -> list[OnChainBatch]:
        if self._scanned is None:
            self._scanned = await scan_admin_batches(
                self._chain,
                sender=self._wallet.address,
                dispatcher_address=self._dispatcher_address,
                lookback_blocks=self._settings.settlement_reconciliation_lookback_blocks,
            )
        return self._scanned

    async def _match_on_chain(self, rows: Sequence[TokenTransaction]) -> dict[Any, str]:
        batches = await self._recent_batches()
        if not batches:
            return {}
        attributed = await _attributed_transfers(
            self._db, (batch.transaction_hash for batch in batches)
        )
        return match_rows_to_batches(rows, batches, attributed)

    async def mark_invalid_queued(self) -> int:
        rows = (
            await self._db.scalars(
                select(TokenTransaction).where(
                    TokenTransaction.status == TokenTransactionStatus.QUEUED.value
                )
            )
        ).all()
        invalidated = 0
        for row in rows:
            if not is_valid_address(row.wallet_address):
                reason = "invalid wallet address"
            elif parse_amount_wei(row.amount_wei) is None:
                reason = "invalid amount"
            else:
                continue
            _set_status(row, TokenTransactionStatus.FAILED)
            row.error_message = reason
            invalidated += 1
            logger.warning(
                "token_transaction_invalid_data",
                extra={"token_transaction_id": str(row.id), "reason": reason},
            )
        if invalidated:
            await self._db.commit()
        return invalidated

    async def reconcile_in_flight(self) -> tuple[int, int, int]:
        """Resolve rows whose last submission outcome is unknown by consulting the chain.

        Returns (completed, requeued, failed) counts.
        """
        rows = (
            await self._db.scalars(
                select(TokenTransaction)
                .where(
                    or_(
                        TokenTransaction.status == TokenTransactionStatus.PROCESSING.value,
                        and_(
                            TokenTransaction.status == TokenTransactionStatus.FAILED.value,
                            TokenTransaction.batch_transaction_hash.is_not(None),
                            TokenTransaction.refunded_at.is_(None),
                        ),
                    )
                )
                .order_by(TokenTransaction.created_at)
            )
        ).all()
        if not rows:
            return 0, 0, 0

        stale_before = self._now() - dt.timedelta(
            seconds=self._settings.settlement_processing_timeout_seconds
        )
        max_retry = self._settings.settlement_max_retry_count
        completed = requeued = failed = 0
        notifications: list[tuple[UserNotification, str | None]] = []
        unresolved: list[TokenTransaction] = []

        by_hash: dict[str, list[TokenTransaction]] = {}
        for row in rows:
            if row.batch_transaction_hash:
                by_hash.setdefault(row.batch_transaction_hash, []).append(row)
            elif row.updated_at <= stale_before:
                unresolved.append(row)

        for transaction_hash, group in by_hash.items():
            try:
                receipt = await self._chain.get_transaction_receipt(transaction_hash)
                known = receipt is not None or (
                    await self._chain.get_transaction(transaction_hash) is not None
                )
            except ChainRpcError as exc:
                logger.warning(
                    "reconciliation_lookup_failed",
                    extra={"transaction_hash": transaction_hash, "error": str(exc)},
                )
                continue

            if receipt is not None and receipt.succeeded:
                for row in group:
                    notifications.append(_mark_completed(self._db, row, transaction_hash))
                    completed += 1
                logger.info(
                    "settlement_reconciled_completed",
                    extra={"transaction_hash": transaction_hash, "row_count": len(group)},
                )
            elif receipt is not None:
                for row in group:
                    if row.status == TokenTransactionStatus.PROCESSING.value:
                        outcome = _record_failure(
                            row,
                            f"batch transaction {transaction_hash} reverted",
                            max_retry_count=max_retry,
                        )
                        if outcome == TokenTransactionStatus.FAILED:
                            failed += 1
                        else:
                            requeued += 1
                    else:
                        row.batch_transaction_hash = None
            elif not known:
                unresolved.extend(row for row in group if row.updated_at <= stale_before)

        if unresolved:
            try:
                matches = await self._match_on_chain(unresolved)
            except ChainRpcError as exc:
                logger.warning("reconciliation_scan_failed", extra={"error": str(exc)})
                matches = None
            confirmed_nonce: int | None = None
            if matches is not None and any(
                row.submitted_nonce is not None
                and row.status == TokenTransactionStatus.PROCESSING.value
                and row.id not in matches
                for row in unresolved
            ):
                try:
                    confirmed_nonce = await self._chain.get_transaction_count(
                        self._wallet.address, block="latest"
                    )
                except ChainRpcError as exc:
                    logger.warning("reconciliation_nonce_lookup_failed", extra={"error": str(exc)})
                    matches = None
            if matches is not None:
                for row in unresolved:
                    matched_hash = matches.get(row.id)
                    if matched_hash is not None:
                        notifications.append(_mark_completed(self._db, row, matched_hash))
                        completed += 1
                    elif row.status == TokenTransactionStatus.PROCESSING.value:
                        # Until the signed nonce is consumed the submission can still be
                        # mined, possibly beyond the scanned window.
                        if (
                            row.submitted_nonce is not None
                            and confirmed_nonce is not None
                            and confirmed_nonce <= row.submitted_nonce
                        ):
                            logger.info(
                                "settlement_submission_nonce_unconsumed",
                                extra={
                                    "token_transaction_id": str(row.id),
                                    "submitted_nonce": row.submitted_nonce,
                                    "confirmed_nonce": confirmed_nonce,
                                },
                            )
                            continue
                        _requeue_unbroadcast(row, "previous submission not found on chain")
                        requeued += 1
                    else:
                        row.batch_transaction_hash = None
                        row.submitted_nonce = None

        await self._db.commit()
        await _publish(self._dispatcher, notifications)
        return completed, requeued, failed

    async def housekeeping(self) -> HousekeepingReport:
        invalidated = await self.mark_invalid_queued()
        completed, requeued, failed = await self.reconcile_in_flight()
        expired = await expire_stale_claims(
            self._db,
            retention_seconds=self._settings.claim_retention_seconds,
            now=self._now,
        )
        return HousekeepingReport(
            invalidated=invalidated,
            reconciled_completed=completed,
            requeued=requeued,
            failed=failed,
            expired_claims=expired,
        )

    async def settle_batch(
        self, rows: list[TokenTransaction], *, gas_price_wei: int | None
    ) -> _BatchOutcome:
        outcome = _BatchOutcome()
        max_retry = self._settings.settlement_max_retry_count

        with observe_batch(
            transfer_count=len(rows), attributes={"settlement.dispatcher": self._dispatcher_address}
        ) as observation:
            for row in rows:
                _set_status(row, TokenTransactionStatus.PROCESSING)
                row.error_message = None
            await self._db.commit()

            min_nonce: int | None = None
            transaction_hash: str | None = None
            attempts = self._settings.settlement_nonce_conflict_retries + 1
            for attempt in range(attempts):
                pairs = [_transfer_pair(row) for row in rows]
                data = encode_batch_transfer(
                    [address for address, _ in pairs], [amount for _, amount in pairs]
                )
                try:
                    estimated = await self._chain.estimate_gas(
                        {"from": self._wallet.address, "to": self._dispatcher_address, "data": data}
                    )
                    gas_limit = with_gas_buffer(
                        max(
                            estimated,
                            batch_gas_estimate(
                                len(rows),
                                gas_per_transfer=self._settings.settlement_gas_per_transfer,
                                batch_gas_overhead=self._settings.settlement_batch_gas_overhead,
                            ),
                        ),
                        self._settings.settlement_gas_limit_buffer_percent,
                    )
                    prepared = await self._wallet.prepare(
                        to=self._dispatcher_address,
                        data=data,
                        gas_limit=gas_limit,
                        gas_price_wei=gas_price_wei,
                        min_nonce=min_nonce,
                    )
                except InsufficientFundsError as exc:
                    return self._abort_insufficient_funds(rows, outcome, observation, exc)
                except ChainRpcError as exc:
                    await self._fail_rows(rows, outcome, f"submission preparation failed: {exc}")
                    observation.outcome = "failed"
                    return outcome

                for row in rows:
                    row.submitted_nonce = prepared.nonce
                await self._db.commit()

                try:
                    transaction_hash = await self._wallet.broadcast(prepared)
                    break
                except NonceConflictError as exc:
                    logger.warning(
                        "settlement_nonce_conflict",
                        extra={"nonce": prepared.nonce, "attempt": attempt + 1, "error": str(exc)},
                    )
                    resolved_hash, rows = await self._resolve_nonce_conflict(rows, prepared, outcome)
                    if resolved_hash is not None:
                        transaction_hash = resolved_hash
                        break
                    if not rows:
                        observation.outcome = "reconciled"
                        await self._db.commit()
                        return outcome
                    min_nonce = prepared.nonce + 1
                except InsufficientFundsError as exc:
                    return self._abort_insufficient_funds(rows, outcome, observation, exc)
                except ChainTransportError as exc:
                    # The node may have accepted it before the connection failed; the
                    # receipt wait or a later reconciliation settles the outcome.
                    logger.warning(
                        "settlement_broadcast_unacknowledged",
                        extra={"transaction_hash": prepared.transaction_hash, "error": str(exc)},
                    )
                    transaction_hash = prepared.transaction_hash
                    break
                except ChainRpcError as exc:
                    await self._fail_rows(rows, outcome, f"submission failed: {exc}")
                    observation.outcome = "failed"
                    return outcome

            if transaction_hash is None:
                await self._fail_rows(rows, outcome, "sequence number conflict retries exhausted")
                observation.outcome = "failed"
                return outcome

            outcome.submitted = True
            observation.transaction_hash = transaction_hash
            for row in rows:
                row.batch_transaction_hash = transaction_hash
            await self._db.commit()
            logger.info(
                "settlement_batch_submitted",
                extra={
                    "transaction_hash": transaction_hash,
                    "transfer_count": len(rows),
                    "nonce": rows[0].submitted_nonce,
                },
            )

            receipt = await wait_for_receipt(
                self._chain,
                transaction_hash,
                timeout_seconds=self._settings.settlement_receipt_timeout_seconds,
                poll_interval_seconds=self._settings.settlement_receipt_poll_interval_seconds,
                sleep=self._sleep,
            )
            if receipt is None:
                # Outcome unknown: rows stay PROCESSING with their hash until reconciled.
                outcome.pending += len(rows)
                observation.outcome = "pending"
                logger.warning(
                    "settlement_receipt_timeout",
                    extra={"transaction_hash": transaction_hash, "transfer_count": len(rows)},
                )
                return outcome

            if receipt.succeeded:
                for row in rows:
                    outcome.notifications.append(_mark_completed(self._db, row, transaction_hash))
                    outcome.completed += 1
                observation.outcome = "completed"
                await self._db.commit()
                logger.info(
                    "settlement_batch_completed",
                    extra={"transaction_hash": transaction_hash, "transfer_count": len(rows)},
                )
                return outcome

            await self._fail_rows(rows, outcome, f"batch transaction {transaction_hash} reverted")
            observation.outcome = "reverted"
            logger.warning(
                "settlement_batch_reverted",
                extra={"transaction_hash": transaction_hash, "transfer_count": len(rows)},
            )
            return outcome

    async def _resolve_nonce_conflict(
        self,
        rows: list[TokenTransaction],
        prepared: PreparedTransaction,
        outcome: _BatchOutcome,
    ) -> tuple[str | None, list[TokenTransaction]]:
        """Decide whether a conflicted submission already landed before trying a fresh nonce.

        Returns the hash to follow when our own transaction is known to the node, and the
        rows that still need a submission.
        """
        try:
            if await self._chain.get_transaction(prepared.transaction_hash) is not None:
                return prepared.transaction_hash, rows
            self._scanned = None
            matches = await self._match_on_chain(rows)
        except ChainRpcError as exc:
            logger.warning("nonce_conflict_lookup_failed", extra={"error": str(exc)})
            return None, rows

        remaining: list[TokenTransaction] = []
        for row in rows:
            matched_hash = matches.get(row.id)
            if matched_hash is None:
                remaining.append(row)
                continue
            outcome.notifications.append(_mark_completed(self._db, row, matched_hash))
            outcome.completed += 1
            logger.info(
                "settlement_nonce_conflict_reconciled",
                extra={"token_transaction_id": str(row.id), "transaction_hash": matched_hash},
            )
        return None, remaining

    async def _fail_rows(
        self, rows: Sequence[TokenTransaction], outcome: _BatchOutcome, message: str
    ) -> None:
        for row in rows:
            result = _record_failure(
                row, message, max_retry_count=self._settings.settlement_max_retry_count
            )
            if result == TokenTransactionStatus.FAILED:
                outcome.failed += 1
            else:
                outcome.requeued += 1
        await self._db.commit()
        logger.warning(
            "settlement_batch_failed",
            extra={"transfer_count": len(rows), "error": message},
        )

    def _abort_insufficient_funds(
        self,
        rows: Sequence[TokenTransaction],
        outcome: _BatchOutcome,
        observation: BatchObservation,
        exc: ChainRpcError,
    ) -> _BatchOutcome:
        for row in rows:
            _requeue_unbroadcast(row)
            outcome.requeued += 1
        observation.outcome = "aborted"
        outcome.abort_reason = "insufficient_funds"
        logger.error(
            "settlement_insufficient_funds",
            extra={"transfer_count": len(rows), "error": str(exc)},
        )
        return outcome

    async def run(self) -> SettlementRunReport | InsufficientGasReport:
        try:
            gas = await check_admin_gas(
                self._chain,
                self._wallet.address,
                minimum_balance_wei=self._settings.settlement_min_admin_balance_wei,
                gas_per_transfer=self._settings.settlement_gas_per_transfer,
                batch_gas_overhead=self._settings.settlement_batch_gas_overhead,
            )
        except ChainRpcError as exc:
            raise AppError(
                code="chain_unavailable",
                message="Blockchain node is unavailable",
                status_code=502,
                details={"error": str(exc)},
            ) from exc
        if not gas.has_enough:
            return InsufficientGasReport(
                balance_wei=gas.balance_wei,
                minimum_required_wei=gas.minimum_required_wei,
            )

        max_retry = self._settings.settlement_max_retry_count
        before_stats = await get_settlement_stats(self._db, max_retry_count=max_retry)
        housekeeping = await self.housekeeping()

        queued = (
            await self._db.scalars(
                select(TokenTransaction)
                .where(TokenTransaction.status == TokenTransactionStatus.QUEUED.value)
                .order_by(TokenTransaction.created_at, TokenTransaction.id)
                .limit(self._settings.settlement_selection_limit)
            )
        ).all()
        plan = plan_batches(
            queued,
            max_transfers_per_batch=self._settings.settlement_max_transfers_per_batch,
            max_gas_per_batch=self._settings.settlement_max_gas_per_batch,
            batch_gas_overhead=self._settings.settlement_batch_gas_overhead,
            gas_per_transfer=self._settings.settlement_gas_per_transfer,
            max_batches=self._settings.settlement_max_batches_per_run,
            affordable_transfers=gas.affordable_transfers,
        )
        logger.info(
            "settlement_run_planned",
            extra={
                "queued_count": len(queued),
                "batch_count": len(plan.batches),
                "batch_size": plan.batch_size,
                "gas_limited": plan.gas_limited,
                "admin_balance_wei": str(gas.balance_wei),
            },
        )

        processed = batches_processed = 0
        completed = requeued = failed = pending = 0
        aborted_reason: str | None = None
        for batch in plan.batches:
            result = await self.settle_batch(batch, gas_price_wei=gas.gas_price_wei)
            await _publish(self._dispatcher, result.notifications)
            processed += len(batch)
            if result.submitted:
                batches_processed += 1
            completed += result.completed
            requeued += result.requeued
            failed += result.failed
            pending += result.pending
            if result.abort_reason is not None:
                aborted_reason = result.abort_reason
                await self._db.commit()
                break

        after_stats = await get_settlement_stats(self._db, max_retry_count=max_retry)
        return SettlementRunReport(
            success=aborted_reason is None,
            processed_count=processed,
            batches_processed=batches_processed,
            gas_limited=plan.gas_limited,
            completed_count=completed,
            requeued_count=requeued,
            failed_count=failed,
            pending_count=pending,
            deferred_count=len(plan.deferred),
            before_stats=before_stats,
            after_stats=after_stats,
            housekeeping=housekeeping,
            aborted_reason=aborted_reason,
        )


async def process_batch_claims(
    db: AsyncSession,
    *,
    chain: ChainClient,
    settings: Settings,
    dispatcher: NotificationDispatcher,
    now: UtcNow,
    sleep: Sleep,
) -> SettlementRunReport | InsufficientGasReport:
    """Run one settlement pass under the single-writer lock for the admin wallet."""
    wallet = build_admin_wallet(chain, settings)
    with settlement_run_context() as run_id:
        async with settlement_run_lock(db.bind):
            async with observe_operation(
                "settlement_run",
                attributes={"settlement.admin_address": wallet.address, "settlement.run_id": run_id},
            ):
                worker = SettlementWorker(
                    db,
                    chain=chain,
                    wallet=wallet,
                    settings=settings,
                    dispatcher=dispatcher,
                    now=now,
                    sleep=sleep,
                )
                report = await worker.run()
        if isinstance(report, InsufficientGasReport):
            logger.warning(
                "settlement_run_insufficient_gas",
                extra={
                    "balance_wei": str(report.balance_wei),
                    "minimum_required_wei": str(report.minimum_required_wei),
                },
            )
        else:
            logger.info(
                "settlement_run_finished",
                extra={
                    "processed_count": report.processed_count,
                    "batches_processed": report.batches_processed,
                    "gas_limited": report.gas_limited,
                    "completed_count": report.completed_count,
                    "aborted_reason": report.aborted_reason,
                },
            )
    return report
