from __future__ import annotations

import contextvars
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
settlement_run_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "settlement_run_id", default=None
)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_settlement_run_id() -> str | None:
    return settlement_run_id_var.get()


@contextmanager
def settlement_run_context(run_id: str | None = None) -> Iterator[str]:
    """Tag every log line emitted during one settlement run with the same id."""
    value = run_id or uuid.uuid4().hex
    token = settlement_run_id_var.set(value)
    try:
        yield value
    finally:
        settlement_run_id_var.reset(token)
