from __future__ import annotations

import argparse
import asyncio
import json
import logging

from rolu_rewards_api.api.routers.cron import stats_to_public
from rolu_rewards_api.db.session import create_sessionmaker
from rolu_rewards_api.domain.chain import JsonRpcChainClient
from rolu_rewards_api.domain.errors import AppError
from rolu_rewards_api.domain.notifications import build_notification_dispatcher
from rolu_rewards_api.domain.settlement import InsufficientGasReport, process_batch_claims
from rolu_rewards_api.observability.logging import configure_logging
from rolu_rewards_api.observability.tracing import configure_tracing
from rolu_rewards_api.settings import get_settings
from rolu_rewards_api.time import sleep, utcnow

logger = logging.getLogger("rolu_rewards_api.scripts.process_batch_claims")


def _summary(report) -> dict[str, object]:
    if isinstance(report, InsufficientGasReport):
        return {
            "success": False,
            "error": report.error,
            "balance": str(report.balance_wei),
            "minimumRequired": str(report.minimum_required_wei),
        }
    return {
        "success": report.success,
        "processedCount": report.processed_count,
        "batchesProcessed": report.batches_processed,
        "gasLimited": report.gas_limited,
        "completedCount": report.completed_count,
        "failedCount": report.failed_count,
        "pendingCount": report.pending_count,
        "abortedReason": report.aborted_reason,
        "beforeStats": stats_to_public(report.before_stats).model_dump(by_alias=True, mode="json"),
        "afterStats": stats_to_public(report.after_stats).model_dump(by_alias=True, mode="json"),
    }


async def _run_once() -> dict[str, object]:
    settings = get_settings()
    sessionmaker = create_sessionmaker(settings.database_url)
    chain = JsonRpcChainClient(
        str(settings.chain_rpc_url), timeout=settings.chain_rpc_timeout_seconds
    )
    dispatcher = build_notification_dispatcher(settings)

    async with sessionmaker() as db:
        report = await process_batch_claims(
            db,
            chain=chain,
            settings=settings,
            dispatcher=dispatcher,
            now=utcnow,
            sleep=sleep,
        )
    return _summary(report)


async def _run_loop() -> None:
    settings = get_settings()
    interval_seconds = settings.settlement_run_interval_seconds
    if interval_seconds < 1:
        raise ValueError("Settlement interval must be at least 1 second for loop mode.")

    while True:
        try:
            summary = await _run_once()
        except AppError as exc:
            summary = {"success": False, "error": exc.code, "message": exc.message}
        except Exception:
            logger.exception("settlement_run_failed")
            summary = {"success": False, "error": "internal_error"}
        print(f"process_batch_claims: {json.dumps(summary)}")
        await sleep(interval_seconds)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Settle queued token claims in on-chain batches.")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Run continuously, sleeping for the configured interval between runs.",
    )
    args = parser.parse_args()
    configure_logging()
    configure_tracing(service_name="rolu-settlement-worker")

    if args.loop:
        await _run_loop()
    else:
        summary = await _run_once()
        print(f"process_batch_claims: {json.dumps(summary)}")


if __name__ == "__main__":
    asyncio.run(main())
