from __future__ import annotations

import datetime as dt
import json
import logging
import os
import traceback
from decimal import Decimal
from typing import Any

from opentelemetry.trace import get_current_span

from rolu_rewards_api.observability.context import get_request_id, get_settlement_run_id

_CONFIGURED = False

# Attributes every LogRecord carries; anything else on a record came from ``extra=``.
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}
_CONTEXT_FIELDS = ("request_id", "settlement_run_id", "trace_id", "span_id")

# Never written to logs even when passed through ``extra=``.
_REDACTED_FIELDS = frozenset({"private_key", "raw_transaction", "authorization", "api_key"})

# Chatty per-request loggers of the HTTP client used for JSON-RPC polling.
_QUIET_LOGGERS = ("httpx", "httpcore")


def _trace_ids() -> tuple[str | None, str | None]:
    context = get_current_span().get_span_context()
    if not context or not context.is_valid:
        return None, None
    return f"{context.trace_id:032x}", f"{context.span_id:016x}"


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class RequestContextFilter(logging.Filter):
    """Stamps the HTTP request id, settlement run id and active span on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.settlement_run_id = get_settlement_run_id()
        record.trace_id, record.span_id = _trace_ids()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": dt.datetime.fromtimestamp(record.created, dt.UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                payload[name] = value

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in _CONTEXT_FIELDS or value is None:
                continue
            payload[key] = "[redacted]" if key in _REDACTED_FIELDS else value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_type"] = record.exc_info[0].__name__
            payload["exc"] = "".join(traceback.format_exception(*record.exc_info)).rstrip()

        return json.dumps(payload, default=_json_default)


def configure_logging(*, default_level: str = "INFO") -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    level = os.getenv("LOG_LEVEL", default_level).upper()
    handler: logging.Handler = logging.StreamHandler()
    if os.getenv("LOG_FORMAT", "json").lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    handler.addFilter(RequestContextFilter())

    base = logging.getLogger("rolu_rewards_api")
    base.setLevel(level)
    base.propagate = False
    if not base.handlers:
        base.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _CONFIGURED = True


def access_log(event: dict[str, object]) -> None:
    logging.getLogger("rolu_rewards_api.access").info("http_request", extra=event)
