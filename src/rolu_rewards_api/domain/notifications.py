from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Annotated, Any, Protocol

import httpx
from fastapi import Depends

from rolu_rewards_api.db.models import UserNotification
from rolu_rewards_api.settings import Settings, get_settings

TITLE_MAX_LENGTH = 30
MESSAGE_MAX_LENGTH = 200


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 1] + "…"


class NotificationDispatcher(Protocol):
    async def send(
        self,
        *,
        wallet_address: str,
        title: str,
        message: str,
        path: str | None = None,
    ) -> None:
        ...


class NoopNotificationDispatcher:
    async def send(
        self,
        *,
        wallet_address: str,
        title: str,
        message: str,
        path: str | None = None,
    ) -> None:
        return None


class LoggingNotificationDispatcher:
    def __init__(self) -> None:
        self._logger = logging.getLogger("rolu_rewards_api.notifications")

    async def send(
        self,
        *,
        wallet_address: str,
        title: str,
        message: str,
        path: str | None = None,
    ) -> None:
        self._logger.info(
            "user_notification",
            extra={
                "wallet_address": wallet_address,
                "title": title,
                "notification_message": message,
                "mini_app_path": path,
            },
        )


class WorldAppNotificationDispatcher:
    """Pushes notifications through the World App mini-app notification API."""

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if settings.world_app_api_key is None or not settings.world_app_id:
            raise ValueError("world_app_api_key and world_app_id are required for world_app mode")
        self._url = str(settings.world_app_notification_url)
        self._api_key = settings.world_app_api_key.get_secret_value()
        self._app_id = settings.world_app_id
        self._timeout = float(settings.notifications_timeout_seconds)
        self._transport = transport
        self._logger = logging.getLogger("rolu_rewards_api.notifications")

    async def send(
        self,
        *,
        wallet_address: str,
        title: str,
        message: str,
        path: str | None = None,
    ) -> None:
        payload = {
            "app_id": self._app_id,
            "wallet_addresses": [wallet_address],
            "title": _truncate(title, TITLE_MAX_LENGTH),
            "message": _truncate(message, MESSAGE_MAX_LENGTH),
            "mini_app_path": f"worldapp://mini-app?app_id={self._app_id}&path={path or '/'}",
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError:
            self._logger.exception(
                "world_app_notification_failed",
                extra={"wallet_address": wallet_address, "title": payload["title"]},
            )


_noop_dispatcher = NoopNotificationDispatcher()
_log_dispatcher = LoggingNotificationDispatcher()


def build_notification_dispatcher(settings: Settings) -> NotificationDispatcher:
    mode = settings.notifications_mode
    if mode == "noop":
        return _noop_dispatcher
    if mode == "world_app":
        return WorldAppNotificationDispatcher(settings)
    return _log_dispatcher


def get_notification_dispatcher(
    settings: Settings = Depends(get_settings),
) -> NotificationDispatcher:
    return build_notification_dispatcher(settings)


NotificationDispatcherDep = Annotated[
    NotificationDispatcher, Depends(get_notification_dispatcher)
]


def _format_amount(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


def record_claim_confirmed_notification(
    *,
    user_id: uuid.UUID,
    claimable_reward_id: uuid.UUID,
    amount: Decimal,
    transaction_hash: str,
) -> UserNotification:
    details: dict[str, Any] = {
        "claimable_reward_id": str(claimable_reward_id),
        "transaction_hash": transaction_hash,
        "amount": _format_amount(amount),
    }
    return UserNotification(
        user_id=user_id,
        event_type="claim_confirmed",
        title="Rewards claimed",
        body=f"{_format_amount(amount)} tokens have been sent to your wallet.",
        details=details,
    )


def record_transfer_completed_notification(
    *,
    user_id: uuid.UUID,
    token_transaction_id: uuid.UUID,
    amount: Decimal,
    transaction_hash: str,
) -> UserNotification:
    details: dict[str, Any] = {
        "token_transaction_id": str(token_transaction_id),
        "transaction_hash": transaction_hash,
        "amount": _format_amount(amount),
    }
    return UserNotification(
        user_id=user_id,
        event_type="token_transfer_completed",
        title="Tokens sent",
        body=f"Your claim of {_format_amount(amount)} tokens has been processed.",
        details=details,
    )


async def push_notification(
    dispatcher: NotificationDispatcher,
    notification: UserNotification,
    *,
    wallet_address: str | None,
) -> None:
    """Fire-and-forget push of an already recorded notification; failures are only logged."""
    if not wallet_address:
        return
    try:
        await dispatcher.send(
            wallet_address=wallet_address,
            title=notification.title,
            message=notification.body or "",
            path="/rewards",
        )
    except Exception:  # noqa: BLE001
        logging.getLogger("rolu_rewards_api.notifications").exception(
            "notification_dispatch_failed",
            extra={"event_type": notification.event_type, "wallet_address": wallet_address},
        )
