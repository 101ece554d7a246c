"""OpenTelemetry spans for gateway requests.

Attribute names follow the OpenTelemetry GenAI conventions where one
exists (``gen_ai.*``); gateway-specific fields use ``gateway.*``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from metered_gateway.types import LLMResponse, UsageRecord

logger = logging.getLogger(__name__)

# Tracer used by the span helpers; None while tracing is off
_tracer: trace.Tracer | None = None


def configure_tracing(
    exporter: str = "none",
    endpoint: str = "http://localhost:4317",
    service_name: str = "metered-gateway",
) -> None:
    """Turn span export on or off.

    Args:
        exporter: One of "none", "console", "otlp". The OTLP exporter
            needs the ``otlp`` extra installed.
        endpoint: OTLP collector endpoint (only used when exporter="otlp").
        service_name: ``service.name`` resource attribute.
    """
    global _tracer

    processor = _build_processor(exporter, endpoint)
    if processor is None:
        _tracer = None
        return

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    _tracer = provider.get_tracer("metered_gateway")
    logger.info("Tracing enabled", extra={"exporter": exporter, "service": service_name})


def _build_processor(exporter: str, endpoint: str) -> SpanProcessor | None:
    if exporter == "console":
        return SimpleSpanProcessor(ConsoleSpanExporter())
    if exporter == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning("OTLP exporter requested but the 'otlp' extra is not installed")
            return None
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
    if exporter != "none":
        logger.warning("Unknown trace exporter %r; tracing stays off", exporter)
    return None


def get_tracer() -> trace.Tracer | None:
    """Return the active tracer, or None if tracing is off."""
    return _tracer


def disable_tracing() -> None:
    """Turn tracing off (used by tests)."""
    global _tracer
    _tracer = None


def _request_attributes(provider: str, model: str, request_type: str) -> dict[str, Any]:
    return {
        "gen_ai.system": provider,
        "gen_ai.request.model": model,
        "gateway.request_type": request_type,
    }


@contextmanager
def structured_call_span(
    provider: str,
    model: str,
    request_type: str = "inline",
    operation: str = "gateway.generate_structured",
) -> Iterator[trace.Span | None]:
    """Current span around one inline call; yields None when tracing is off.

    Exceptions leaving the block are recorded on the span and mark it
    as an error. Annotate the outcome with :func:`annotate_response`.
    """
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        operation,
        attributes=_request_attributes(provider, model, request_type),
    ) as span:
        yield span


def annotate_response(span: trace.Span | None, response: LLMResponse[Any]) -> None:
    if span is None:
        return
    span.set_attributes(
        {
            "gen_ai.response.model": response.model,
            "gen_ai.usage.input_tokens": response.usage.input_tokens,
            "gen_ai.usage.output_tokens": response.usage.output_tokens,
            "gateway.cost_usd": response.usage.total_cost_usd,
            "gateway.latency_ms": response.latency_ms,
        }
    )


def start_stream_span(provider: str, model: str, request_type: str) -> trace.Span | None:
    """Open a span for a streaming session, or return None when tracing is off.

    The span is not made current: a stream suspends at every yield, and
    the consumer's code runs in between.
    """
    if _tracer is None:
        return None
    return _tracer.start_span(
        "gateway.stream", attributes=_request_attributes(provider, model, request_type)
    )


def finish_stream_span(span: trace.Span | None, record: UsageRecord, outcome: str) -> None:
    """Copy the settled usage record onto the span and end it."""
    if span is None:
        return
    span.set_attributes(
        {
            "gateway.outcome": outcome,
            "gen_ai.usage.input_tokens": record.input_tokens,
            "gen_ai.usage.output_tokens": record.output_tokens,
            "gateway.cost_usd": record.actual_cost,
            "gateway.duration_ms": record.duration_ms,
        }
    )
    if not record.success:
        span.set_status(trace.StatusCode.ERROR, record.error_message or outcome)
    span.end()
