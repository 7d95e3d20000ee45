"""Error capture sink for failures that are swallowed at an HTTP boundary"""
import json
import logging

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from sadqa.core.metrics import captured_errors_counter

logger = logging.getLogger("errors")


def capture_exception(exc: BaseException, source: str, **context) -> None:
    """Record an exception with structured context.

    Writes an error log line (with traceback), marks the current span as
    failed and counts the error by source. Never raises.
    """
    try:
        context_json = json.dumps(context, default=str, sort_keys=True)
    except (TypeError, ValueError):
        context_json = repr(context)

    logger.error(
        f"Captured {type(exc).__name__} in {source}: {exc} context={context_json}",
        exc_info=(type(exc), exc, exc.__traceback__)
    )

    span = trace.get_current_span()
    if span.is_recording():
        span.record_exception(exc, attributes={f"sadqa.{k}": str(v) for k, v in context.items()})
        span.set_status(Status(StatusCode.ERROR, str(exc)))

    captured_errors_counter.labels(source=source).inc()
