from __future__ import annotations

import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span
from opentelemetry.trace.status import Status, StatusCode

from rolu_rewards_api.domain.errors import AppError
from rolu_rewards_api.observability import metrics

_tracer = trace.get_tracer("rolu_rewards_api")


def _annotate(span: Span, attributes: dict[str, Any] | None) -> None:
    for key, value in (attributes or {}).items():
        if value is not None:
            span.set_attribute(key, value)


def _error_code(span: Span, exc: Exception) -> str:
    """Mark the span failed and return the metric label for ``exc``."""
    if isinstance(exc, AppError):
        span.set_attribute("app.error_code", exc.code)
        span.set_status(Status(StatusCode.ERROR, description=exc.code))
        return exc.code
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR))
    return "unhandled_exception"


@asynccontextmanager
async def observe_operation(
    operation: str,
    *,
    attributes: dict[str, Any] | None = None,
) -> AsyncIterator[None]:
    """Count, time and trace one API or worker operation.

    Domain errors are labelled with their ``AppError.code``; anything else
    is counted as ``unhandled_exception``.
    """
    started = time.perf_counter()
    error_code = ""
    with _tracer.start_as_current_span(f"rolu.{operation}") as span:
        _annotate(span, attributes)
        try:
            yield
        except Exception as exc:  # noqa: BLE001
            error_code = _error_code(span, exc)
            raise
        finally:
            outcome = "error" if error_code else "success"
            metrics.operation_total.labels(
                operation=operation, outcome=outcome, error_code=error_code
            ).inc()
            metrics.operation_duration_seconds.labels(
                operation=operation, outcome=outcome
            ).observe(time.perf_counter() - started)


@dataclass
class BatchObservation:
    outcome: str = "unknown"
    transaction_hash: str | None = None


@contextmanager
def observe_batch(
    *,
    transfer_count: int,
    attributes: dict[str, Any] | None = None,
) -> Iterator[BatchObservation]:
    # The caller sets ``outcome`` once it knows how the batch ended.
    observation = BatchObservation()
    with _tracer.start_as_current_span("rolu.settlement_batch") as span:
        span.set_attribute("settlement.transfer_count", transfer_count)
        _annotate(span, attributes)
        try:
            yield observation
        except Exception as exc:  # noqa: BLE001
            observation.outcome = "error"
            _error_code(span, exc)
            raise
        finally:
            _annotate(
                span,
                {
                    "settlement.outcome": observation.outcome,
                    "settlement.transaction_hash": observation.transaction_hash,
                },
            )
            metrics.settlement_batches_total.labels(outcome=observation.outcome).inc()
            metrics.settlement_transfers_total.labels(outcome=observation.outcome).inc(
                transfer_count
            )
