"""Testing utilities shipped with metered-gateway.

Provides ``FakeProviderAdapter`` for consumers to use in their test suites
without reimplementing the ProviderAdapter Protocol.

Usage::

    from metered_gateway import Gateway, StreamRequest
    from metered_gateway.testing import FakeProviderAdapter

    fake = FakeProviderAdapter().script_text("Hello", " world")

    async with Gateway(adapter_factory=fake.factory, context=ctx) as gateway:
        request = StreamRequest("openai", "gpt-4o-mini", [{"role": "user", "content": "hi"}])
        events = [event async for event in gateway.submit(request)]
        assert events[-1].type == "done"
        assert fake.call_count == 1
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from metered_gateway.catalog import ProviderCatalog, ProviderSpec
from metered_gateway.cost import build_token_usage
from metered_gateway.exceptions import GatewayError, SchemaValidationError
from metered_gateway.providers.base import ModelHandle
from metered_gateway.types import (
    CredentialSet,
    Endpoint,
    LLMResponse,
    ModelDescriptor,
    StreamEvent,
    StreamRequest,
    StructuredRequest,
    TokenUsage,
    ToolCall,
)

if TYPE_CHECKING:
    from metered_gateway.config import GatewayConfig

T = TypeVar("T")


@dataclass
class FakeCall:
    """Record of a single ``stream()`` or ``generate_object()`` invocation."""

    kind: str
    provider_id: str
    model_id: str
    request: object


class FakeProviderAdapter:
    """Scripted adapter for tests. Implements the ``ProviderAdapter`` Protocol.

    Streaming replays a script of events (by default two text deltas and a
    ``done`` with ``default_input_tokens``/``default_output_tokens``),
    checking the request's cancellation token before every event the way
    real adapters do after every vendor read.

    Structured generation resolves, in order:

    1. Pre-configured via ``set_response()`` (exact type match)
    2. ``response_factory`` callable (if provided)
    3. Raise ``SchemaValidationError`` (no response configured)
    """

    def __init__(
        self,
        catalog: ProviderCatalog | None = None,
        response_factory: Callable[[type[Any], str], Any] | None = None,
        default_input_tokens: int = 100,
        default_output_tokens: int = 50,
    ) -> None:
        self._catalog = catalog or ProviderCatalog.builtin()
        self._response_factory = response_factory
        self._default_input_tokens = default_input_tokens
        self._default_output_tokens = default_output_tokens
        self._responses: dict[type, object] = {}
        self._script: list[StreamEvent] | None = None
        self._error: GatewayError | None = None
        self._error_after: int = 0
        self._error_times: int | None = None
        self._hang_after: int | None = None
        self._structured_gate: asyncio.Event | None = None
        self.calls: list[FakeCall] = []
        self.built_for: list[tuple[str, CredentialSet | None]] = []
        self.closed = 0

    # ── Scripting ───────────────────────────────────────────────

    def script(self, events: Iterable[StreamEvent]) -> FakeProviderAdapter:
        """Replay exactly ``events`` on every ``stream()`` call."""
        self._script = list(events)
        return self

    def script_text(
        self, *chunks: str, tool_calls: Iterable[ToolCall] = ()
    ) -> FakeProviderAdapter:
        """Text deltas, then tool calls, then ``done`` with the default usage."""
        events = [StreamEvent.text_delta(chunk) for chunk in chunks]
        events.extend(StreamEvent.for_tool_call(call) for call in tool_calls)
        events.append(StreamEvent.done(None, "stop"))
        self._script = events
        return self

    def fail_with(
        self, error: GatewayError, after: int = 0, times: int | None = None
    ) -> FakeProviderAdapter:
        """Raise ``error`` once ``after`` events have been yielded.

        With ``times``, only the first ``times`` calls fail.
        """
        self._error = error
        self._error_after = after
        self._error_times = times
        return self

    def hang_after(self, count: int) -> FakeProviderAdapter:
        """After ``count`` events, block until the request is cancelled."""
        self._hang_after = count
        return self

    def hold_structured(self) -> asyncio.Event:
        """Make ``generate_object`` wait until the returned event is set."""
        self._structured_gate = asyncio.Event()
        return self._structured_gate

    def set_response(self, response_model: type[T], response: T) -> None:
        """Pre-configure a structured response for a ``response_model`` class."""
        self._responses[response_model] = response

    # ── ProviderAdapter ─────────────────────────────────────────

    def get_model(self, model_id: str, provider_id: str = "openai") -> ModelHandle:
        spec = self._spec(provider_id)
        if spec is None:
            return ModelHandle(provider_id, model_id, Endpoint.CHAT_COMPLETIONS)
        return ModelHandle(
            provider_id=spec.id,
            model_id=model_id,
            endpoint=spec.resolve_endpoint(model_id),
            quirks=spec.resolve_quirks(model_id),
            descriptor=spec.find_model(model_id),
        )

    async def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        self.calls.append(FakeCall("stream", request.provider_id, request.model_id, request))
        handle = self.get_model(request.model_id, request.provider_id)
        events = self._script if self._script is not None else self._default_script()

        for index, event in enumerate(events):
            await self._checkpoint(request, index)
            if event.type == "done" and event.usage is None:
                event = StreamEvent.done(self._default_usage(handle), event.finish_reason)
            yield event
        await self._checkpoint(request, len(events))

    async def generate_object(self, request: StructuredRequest[T]) -> LLMResponse[T]:
        """Return the pre-configured or factory-built response."""
        self.calls.append(
            FakeCall("generate_object", request.provider_id, request.model_id, request)
        )
        start = time.monotonic()
        if self._structured_gate is not None:
            await self._structured_gate.wait()
        error = self._consume_error()
        if error is not None:
            raise error

        content: Any = self._responses.get(request.schema)
        if content is None and self._response_factory is not None:
            content = self._response_factory(request.schema, request.prompt)
        if content is None:
            raise SchemaValidationError(
                model_name=request.schema.__name__,
                reason="No fake response configured. "
                "Use set_response() or pass a response_factory.",
                provider_id=request.provider_id,
            )

        handle = self.get_model(request.model_id, request.provider_id)
        return LLMResponse(
            content=content,
            usage=self._default_usage(handle),
            model=request.model_id,
            provider=request.provider_id,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    def list_models(self, provider_id: str = "openai") -> tuple[ModelDescriptor, ...]:
        spec = self._spec(provider_id)
        return spec.models if spec is not None else ()

    async def close(self) -> None:
        self.closed += 1

    # ── Registry hook ───────────────────────────────────────────

    def factory(
        self,
        spec: ProviderSpec,
        credentials: CredentialSet | None,
        config: GatewayConfig,
    ) -> FakeProviderAdapter:
        """Adapter factory for ``Gateway(adapter_factory=...)``; always returns ``self``."""
        self.built_for.append((spec.id, credentials))
        return self

    @property
    def call_count(self) -> int:
        """Number of ``stream()``/``generate_object()`` calls recorded."""
        return len(self.calls)

    # ── Internals ───────────────────────────────────────────────

    def _spec(self, provider_id: str) -> ProviderSpec | None:
        return self._catalog.get(provider_id) if provider_id in self._catalog else None

    def _default_script(self) -> list[StreamEvent]:
        return [
            StreamEvent.text_delta("Hello"),
            StreamEvent.text_delta(" world"),
            StreamEvent.done(None, "stop"),
        ]

    def _default_usage(self, handle: ModelHandle) -> TokenUsage:
        return build_token_usage(
            handle.descriptor, self._default_input_tokens, self._default_output_tokens
        )

    async def _checkpoint(self, request: StreamRequest, index: int) -> None:
        request.cancellation.raise_if_cancelled()
        if self._hang_after is not None and index == self._hang_after:
            await request.cancellation.wait()
            request.cancellation.raise_if_cancelled()
        if index == self._error_after:
            error = self._consume_error()
            if error is not None:
                raise error

    def _consume_error(self) -> GatewayError | None:
        if self._error is None:
            return None
        if self._error_times is not None:
            if self._error_times <= 0:
                return None
            self._error_times -= 1
        return self._error
