"""Observability sub-package: tracing and logging."""

from metered_gateway.observability.logging import (
    configure_logging,
    get_logger,
    redact_secrets,
    request_context,
)
from metered_gateway.observability.tracing import (
    annotate_response,
    configure_tracing,
    disable_tracing,
    finish_stream_span,
    get_tracer,
    start_stream_span,
    structured_call_span,
)

__all__ = [
    "annotate_response",
    "configure_logging",
    "configure_tracing",
    "disable_tracing",
    "finish_stream_span",
    "get_logger",
    "get_tracer",
    "redact_secrets",
    "request_context",
    "start_stream_span",
    "structured_call_span",
]
