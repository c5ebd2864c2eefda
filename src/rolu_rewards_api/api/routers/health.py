from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from rolu_rewards_api.api.schemas import HealthResponse
from rolu_rewards_api.db.session import DbSessionDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_model=HealthResponse)
async def liveness() -> HealthResponse:
    return HealthResponse()


@router.get("/ready", response_model=HealthResponse, responses={503: {"model": HealthResponse}})
async def readiness(db: DbSessionDep) -> HealthResponse | JSONResponse:
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("readiness_check_failed", extra={"error": repr(exc)})
        return JSONResponse(
            status_code=503, content=HealthResponse(status="unavailable").model_dump()
        )
    return HealthResponse()
