from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from rolu_rewards_api.api.schemas import (
    BatchRunResponse,
    HousekeepingPublic,
    InsufficientGasResponse,
    SettlementStatsPublic,
)
from rolu_rewards_api.auth.deps import require_cron
from rolu_rewards_api.db.session import DbSessionDep
from rolu_rewards_api.domain.chain import ChainClientDep
from rolu_rewards_api.domain.notifications import NotificationDispatcherDep
from rolu_rewards_api.domain.settlement import (
    HousekeepingReport,
    InsufficientGasReport,
    SettlementRunReport,
    SettlementStats,
    process_batch_claims,
)
from rolu_rewards_api.settings import Settings, get_settings
from rolu_rewards_api.time import Sleep, UtcNow, get_sleep, get_utcnow

router = APIRouter(prefix="/v1/cron", tags=["cron"], dependencies=[Depends(require_cron)])


def stats_to_public(stats: SettlementStats) -> SettlementStatsPublic:
    return SettlementStatsPublic(
        queued=stats.queued,
        processing=stats.processing,
        completed=stats.completed,
        failed=stats.failed,
        retriable_failed=stats.retriable_failed,
        invalid_data=stats.invalid_data,
        total=stats.total,
        oldest_queued_at=stats.oldest_queued_at,
    )


def housekeeping_to_public(report: HousekeepingReport) -> HousekeepingPublic:
    return HousekeepingPublic(
        invalidated=report.invalidated,
        reconciled_completed=report.reconciled_completed,
        requeued=report.requeued,
        failed=report.failed,
        expired_claims=report.expired_claims,
    )


def run_report_to_response(
    report: SettlementRunReport | InsufficientGasReport,
) -> BatchRunResponse | JSONResponse:
    if isinstance(report, InsufficientGasReport):
        body = InsufficientGasResponse(
            balance=str(report.balance_wei),
            minimum_required=str(report.minimum_required_wei),
        )
        return JSONResponse(status_code=400, content=body.model_dump(mode="json", by_alias=True))
    return BatchRunResponse(
        success=report.success,
        processed_count=report.processed_count,
        batches_processed=report.batches_processed,
        gas_limited=report.gas_limited,
        completed_count=report.completed_count,
        requeued_count=report.requeued_count,
        failed_count=report.failed_count,
        pending_count=report.pending_count,
        deferred_count=report.deferred_count,
        before_stats=stats_to_public(report.before_stats),
        after_stats=stats_to_public(report.after_stats),
        housekeeping=housekeeping_to_public(report.housekeeping),
        aborted_reason=report.aborted_reason,
    )


@router.api_route(
    "/batch-process-claims",
    methods=["GET", "POST"],
    response_model=BatchRunResponse,
    responses={400: {"model": InsufficientGasResponse}},
)
async def batch_process_claims(
    db: DbSessionDep,
    chain: ChainClientDep,
    dispatcher: NotificationDispatcherDep,
    settings: Settings = Depends(get_settings),
    now: UtcNow = Depends(get_utcnow),
    sleep: Sleep = Depends(get_sleep),
):
    report = await process_batch_claims(
        db,
        chain=chain,
        settings=settings,
        dispatcher=dispatcher,
        now=now,
        sleep=sleep,
    )
    return run_report_to_response(report)
