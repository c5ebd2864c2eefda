from __future__ import annotations

import re
import time
import uuid
from collections.abc import Callable, Collection
from contextlib import nullcontext
from typing import Any

from opentelemetry import trace
from opentelemetry.propagate import extract
from opentelemetry.trace import SpanKind
from opentelemetry.trace.status import Status, StatusCode
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from rolu_rewards_api.observability.context import request_id_var
from rolu_rewards_api.observability.tracing import tracing_enabled

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
_REQUEST_ID_HEADER = b"x-request-id"

# Scraped or polled by infrastructure; not worth an access log line each.
DEFAULT_QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})

AccessLog = Callable[[dict[str, object]], None]


def _header_map(scope: Scope) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in scope.get("headers") or []:
        headers[name.decode("latin-1").lower()] = value.decode("latin-1")
    return headers


def resolve_request_id(headers: dict[str, str]) -> str:
    """Reuse a well-formed inbound X-Request-ID, otherwise mint a new one."""
    candidate = headers.get(_REQUEST_ID_HEADER.decode(), "").strip()
    if candidate and _REQUEST_ID_RE.fullmatch(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestContextMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        *,
        access_log: AccessLog | None = None,
        quiet_paths: Collection[str] = DEFAULT_QUIET_PATHS,
    ) -> None:
        self._app = app
        self._access_log = access_log
        self._quiet_paths = frozenset(quiet_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        headers = _header_map(scope)
        request_id = resolve_request_id(headers)
        token = request_id_var.set(request_id)
        method = scope.get("method") or "UNKNOWN"
        path = scope.get("path") or ""
        started = time.perf_counter()
        status: dict[str, int] = {}

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                status["code"] = int(message["status"])
                message["headers"] = [
                    *(message.get("headers") or []),
                    (_REQUEST_ID_HEADER, request_id.encode("ascii")),
                ]
            await send(message)

        span_cm: Any = nullcontext(None)
        if tracing_enabled():
            span_cm = trace.get_tracer("rolu_rewards_api").start_as_current_span(
                name=f"{method} {path}",
                context=extract(headers),
                kind=SpanKind.SERVER,
                attributes={"http.method": method, "http.target": path, "request.id": request_id},
            )

        try:
            with span_cm as span:
                try:
                    await self._app(scope, receive, send_with_request_id)
                except Exception as exc:  # noqa: BLE001
                    if span is not None:
                        span.record_exception(exc)
                        span.set_status(Status(StatusCode.ERROR))
                    raise
                finally:
                    if span is not None and "code" in status:
                        span.set_attribute("http.status_code", status["code"])
                        if status["code"] >= 500:
                            span.set_status(Status(StatusCode.ERROR))
        finally:
            if self._access_log is not None and path not in self._quiet_paths:
                self._access_log(
                    {
                        "request_id": request_id,
                        "method": method,
                        "path": path,
                        "status_code": status.get("code"),
                        "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
                        "client": (scope.get("client") or [None, None])[0],
                    }
                )
            request_id_var.reset(token)
