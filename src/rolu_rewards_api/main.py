from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rolu_rewards_api.api.errors import install_error_handlers
from rolu_rewards_api.api.routers import admin, cron, health, me, rewards, sessions, token_claims
from rolu_rewards_api.observability.logging import access_log, configure_logging
from rolu_rewards_api.observability.metrics import render_metrics
from rolu_rewards_api.observability.middleware import RequestContextMiddleware
from rolu_rewards_api.observability.tracing import configure_tracing
from rolu_rewards_api.settings import get_settings

_ROUTERS = (health, sessions, me, rewards, token_claims, cron, admin)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()
    configure_tracing()
    logger = logging.getLogger("rolu_rewards_api.main")
    app = FastAPI(title="Rolu Rewards API", version="0.1.0")

    # AnyHttpUrl normalizes to a trailing slash, but browser Origin headers do not.
    cors_origins = [str(origin).rstrip("/") for origin in settings.api_cors_origins]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware, access_log=access_log)
    install_error_handlers(app)

    for module in _ROUTERS:
        app.include_router(module.router)
    app.add_api_route("/metrics", render_metrics, methods=["GET"], include_in_schema=False)

    logger.info(
        "app_configured",
        extra={
            "allowed_origins": cors_origins,
            "chain_id": settings.chain_id,
            "notifications_mode": settings.notifications_mode,
            "voucher_signing_enabled": settings.reward_signer_private_key is not None,
            "settlement_enabled": settings.settlement_private_key is not None,
        },
    )
    return app


app = create_app()
