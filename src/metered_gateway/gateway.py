"""Gateway: the single class host applications import and use."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import aclosing
from typing import Any, TypeVar

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from metered_gateway.billing import BillingClient
from metered_gateway.cancellation import CancellationToken
from metered_gateway.catalog import ProviderCatalog, ProviderSpec
from metered_gateway.config import GatewayConfig
from metered_gateway.credentials import CredentialStore, EnvCredentialStore
from metered_gateway.credits import CreditGate
from metered_gateway.exceptions import (
    CancellationError,
    CreditDeniedError,
    GatewayError,
    ProviderRejectionError,
    ProviderTransportError,
    user_message,
)
from metered_gateway.observability.logging import configure_logging, request_context
from metered_gateway.observability.tracing import (
    annotate_response,
    configure_tracing,
    finish_stream_span,
    start_stream_span,
    structured_call_span,
)
from metered_gateway.providers.base import ProviderAdapter
from metered_gateway.registry import build_adapter
from metered_gateway.session import SessionState, StreamSession
from metered_gateway.types import (
    CreditStatus,
    CredentialSet,
    LLMMessage,
    LLMResponse,
    ModelDescriptor,
    ProviderDescriptor,
    StreamEvent,
    StreamRequest,
    StructuredRequest,
    TextRequest,
    ToolCall,
    ToolResult,
    UsageRecord,
    UserContext,
)
from metered_gateway.usage import UsageRecorder

logger = logging.getLogger(__name__)

T = TypeVar("T")
_InlineRequestT = TypeVar("_InlineRequestT", StructuredRequest[Any], TextRequest)

AdapterFactory = Callable[[ProviderSpec, CredentialSet | None, GatewayConfig], ProviderAdapter]
UsageListener = Callable[[UsageRecord], None]


class Gateway:
    """Credit-gated, usage-metered access to every configured LLM vendor.

    Every request passes a credit check, runs against a freshly built
    adapter, and produces exactly one usage record, whatever the outcome.

    Usage:
        # Reads GATEWAY_* env vars automatically. Without a tenant
        # (GATEWAY_TENANT_ID or an explicit context) every request is denied.
        gateway = Gateway(context=UserContext(tenant_id="acme", user_id="dev-1"))

        request = StreamRequest(
            provider_id="openai",
            model_id="gpt-4o-mini",
            messages=[{"role": "user", "content": "Hello"}],
        )
        async for event in gateway.submit(request):
            if event.type == "text-delta":
                print(event.text, end="")
            elif event.type == "error":
                print(event.error)

        await gateway.close()
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        catalog: ProviderCatalog | None = None,
        credentials: CredentialStore | None = None,
        billing: BillingClient | None = None,
        context: UserContext | None = None,
        adapter_factory: AdapterFactory | None = None,
    ) -> None:
        self._config = config or GatewayConfig()
        self._catalog = catalog or ProviderCatalog.from_config(self._config)
        self._credentials = credentials or EnvCredentialStore()
        self._adapter_factory = adapter_factory or build_adapter
        self._context = context or self._config.user_context()

        self._owns_billing = billing is None and bool(self._config.billing_base_url)
        if billing is None and self._owns_billing:
            billing = BillingClient.from_config(self._config)
        if billing is None:
            logger.warning("No billing backend configured; requests are unmetered")
        self._billing = billing
        self._credit_gate = CreditGate(billing, self._config.low_credit_threshold)
        self._recorder = UsageRecorder(billing)
        self._listeners: list[UsageListener] = []
        self._closed = False

        # Auto-configure observability
        configure_logging(
            level=self._config.log_level,
            fmt=self._config.log_format,
        )
        if self._config.trace_enabled:
            configure_tracing(
                exporter=self._config.trace_exporter,
                endpoint=self._config.trace_endpoint,
                service_name=self._config.trace_service_name,
            )

    # ── Streaming ───────────────────────────────────────────────

    async def submit(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """Stream one request.

        Always ends with a single ``done`` or ``error`` event. Credit
        denials, vendor failures and cancellation arrive as the ``error``
        event; they are not raised. If the consumer stops iterating early
        (``aclose()``, ``break``, task cancellation) the attempt is recorded
        as cancelled, or completed when ``done`` was already delivered.
        """
        context = dataclasses.replace(self._context)
        session = StreamSession(
            provider_id=request.provider_id,
            model_id=request.model_id,
            request_type=request.request_type,
            messages=tuple(request.messages),
            system_prompt=request.system_prompt,
            query_text=_last_user_text(request.messages),
        )
        span = start_stream_span(request.provider_id, request.model_id, request.request_type)
        adapter: ProviderAdapter | None = None
        try:
            try:
                spec = self._catalog.get(request.provider_id)
                request = self._prepare_stream(spec, request)
                session.model_id = request.model_id
                session.descriptor = spec.find_model(request.model_id)

                session.transition(SessionState.CREDIT_CHECK)
                await self._require_credits(context)
                request.cancellation.raise_if_cancelled()

                adapter = await self._build_adapter(spec)
                session.transition(SessionState.STREAMING)
                async with aclosing(adapter.stream(request)) as events:
                    async for event in events:
                        session.observe(event)
                        if event.type == "usage":
                            continue
                        yield event
                        if event.type == "done":
                            break
                        if event.type == "tool-call" and event.tool_call is not None:
                            result = await self._run_tool(request, event.tool_call)
                            if result is not None:
                                session.observe(result)
                                yield result
                        request.cancellation.raise_if_cancelled()

                if not session.done_seen:
                    raise ProviderRejectionError(
                        request.provider_id, RuntimeError("stream ended without a done event")
                    )
                session.complete()
            except CancellationError as exc:
                session.cancel(str(exc))
                yield StreamEvent.failed(exc, user_message(exc))
            except GatewayError as exc:
                session.fail(str(exc))
                logger.warning(
                    "Stream failed: %s",
                    exc,
                    extra={
                        "provider": session.provider_id,
                        "model": session.model_id,
                        "error_type": type(exc).__name__,
                    },
                )
                yield StreamEvent.failed(exc, user_message(exc))
        except (GeneratorExit, asyncio.CancelledError):
            if not session.is_terminal:
                session.close_early()
            raise
        finally:
            if not session.is_terminal:
                session.fail("Unexpected error while streaming")
            if adapter is not None:
                await adapter.close()
            record = self._settle(session, context)
            finish_stream_span(span, record, str(session.outcome))

    def _prepare_stream(self, spec: ProviderSpec, request: StreamRequest) -> StreamRequest:
        model_id = spec.route_model(request.model_id, has_tools=bool(request.tools))
        if model_id != request.model_id:
            logger.warning(
                "Model %s cannot call tools; using %s",
                request.model_id,
                model_id,
                extra={"provider": spec.id, "model": request.model_id, "fallback": model_id},
            )
        return dataclasses.replace(
            request,
            model_id=model_id,
            temperature=(
                request.temperature
                if request.temperature is not None
                else self._config.default_temperature
            ),
            max_tokens=request.max_tokens or self._config.max_tokens,
        )

    async def _run_tool(self, request: StreamRequest, call: ToolCall) -> StreamEvent | None:
        """Run the matching tool's executor, if it has one. Single step."""
        tool = next((t for t in request.tools if t.name == call.name), None)
        if tool is None or tool.execute is None:
            return None
        try:
            output = await tool.execute(call.arguments)
        except Exception as exc:
            logger.exception(
                "Tool %s failed", call.name, extra={"provider": request.provider_id}
            )
            return StreamEvent.for_tool_result(
                ToolResult(tool_call_id=call.id, name=call.name, result=str(exc), is_error=True)
            )
        return StreamEvent.for_tool_result(
            ToolResult(tool_call_id=call.id, name=call.name, result=output)
        )

    # ── One-shot calls ──────────────────────────────────────────

    async def generate_structured(self, request: StructuredRequest[T]) -> LLMResponse[T]:
        """Generate one validated ``request.schema`` instance.

        Raises:
            CreditDeniedError: If the credit gate refuses the request.
            CancellationError: If the request's token fires first.
            SchemaValidationError: If the output does not validate.
            ProviderSyncError: On vendor failures (transport errors are
                retried up to ``max_retries`` times).
        """
        request = self._with_defaults(request)
        session = self._inline_session(request)

        async def call(adapter: ProviderAdapter) -> LLMResponse[T]:
            return await self._generate_with_retry(adapter, request)

        return await self._run_inline(
            session, request.cancellation, call, "gateway.generate_structured"
        )

    async def generate_text(self, request: TextRequest) -> LLMResponse[str]:
        """Generate plain text in one piece.

        The vendor stream is consumed internally; nothing is retried.
        Partial vendor usage is still recorded if the stream breaks.

        Raises:
            CreditDeniedError: If the credit gate refuses the request.
            CancellationError: If the request's token fires first.
            ProviderSyncError: On vendor failures.
        """
        request = self._with_defaults(request)
        session = self._inline_session(request)

        async def call(adapter: ProviderAdapter) -> LLMResponse[str]:
            return await self._collect_text(adapter, request, session)

        return await self._run_inline(session, request.cancellation, call, "gateway.generate_text")

    def _with_defaults(self, request: _InlineRequestT) -> _InlineRequestT:
        return dataclasses.replace(
            request,
            temperature=(
                request.temperature
                if request.temperature is not None
                else self._config.default_temperature
            ),
            max_tokens=request.max_tokens or self._config.max_tokens,
        )

    @staticmethod
    def _inline_session(request: StructuredRequest[Any] | TextRequest) -> StreamSession:
        return StreamSession(
            provider_id=request.provider_id,
            model_id=request.model_id,
            request_type=request.request_type,
            messages=({"role": "user", "content": request.prompt},),
            query_text=request.query_text,
        )

    async def _run_inline(
        self,
        session: StreamSession,
        cancellation: CancellationToken,
        call: Callable[[ProviderAdapter], Awaitable[LLMResponse[T]]],
        operation: str,
    ) -> LLMResponse[T]:
        """Credit check, vendor call raced against cancellation, one usage record."""
        context = dataclasses.replace(self._context)
        adapter: ProviderAdapter | None = None
        try:
            with request_context(
                tenant_id=context.tenant_id,
                provider=session.provider_id,
                model=session.model_id,
            ):
                with structured_call_span(
                    session.provider_id, session.model_id, session.request_type, operation
                ) as span:
                    try:
                        spec = self._catalog.get(session.provider_id)
                        session.descriptor = spec.find_model(session.model_id)

                        session.transition(SessionState.CREDIT_CHECK)
                        await self._require_credits(context)
                        cancellation.raise_if_cancelled()

                        adapter = await self._build_adapter(spec)
                        session.transition(SessionState.STREAMING)
                        response = await _race_cancellation(cancellation, call(adapter))
                        session.report_usage(response.usage)
                        session.complete()
                        annotate_response(span, response)
                    except CancellationError as exc:
                        session.cancel(str(exc))
                        raise
                    except GatewayError as exc:
                        session.fail(str(exc))
                        raise
        except asyncio.CancelledError:
            if not session.is_terminal:
                session.cancel("Task cancelled")
            raise
        finally:
            if not session.is_terminal:
                session.fail(f"Unexpected error in {operation}")
            if adapter is not None:
                await adapter.close()
            self._settle(session, context)

        logger.info(
            "Inline call completed",
            extra={
                "operation": operation,
                "provider": response.provider,
                "model": response.model,
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "cost_usd": response.usage.total_cost_usd,
                "latency_ms": round(response.latency_ms, 1),
            },
        )
        return response

    async def _collect_text(
        self, adapter: ProviderAdapter, request: TextRequest, session: StreamSession
    ) -> LLMResponse[str]:
        stream_request = StreamRequest(
            provider_id=request.provider_id,
            model_id=request.model_id,
            messages=[{"role": "user", "content": request.prompt}],
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            cancellation=request.cancellation,
            request_type=request.request_type,
        )
        start = time.monotonic()
        parts: list[str] = []
        async with aclosing(adapter.stream(stream_request)) as events:
            async for event in events:
                session.observe(event)
                if event.type == "text-delta":
                    parts.append(event.text)
                elif event.type == "done":
                    break
        if not session.done_seen:
            raise ProviderRejectionError(
                request.provider_id, RuntimeError("stream ended without a done event")
            )
        return LLMResponse(
            content="".join(parts),
            usage=session.usage(),
            model=request.model_id,
            provider=request.provider_id,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    async def _generate_with_retry(
        self, adapter: ProviderAdapter, request: StructuredRequest[T]
    ) -> LLMResponse[T]:
        @retry(
            stop=stop_after_attempt(self._config.max_retries + 1),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(ProviderTransportError),
            reraise=True,
        )
        async def _do_call() -> LLMResponse[T]:
            return await adapter.generate_object(request)

        return await _do_call()

    # ── Shared steps ────────────────────────────────────────────

    async def _require_credits(self, context: UserContext) -> CreditStatus:
        status = await self._credit_gate.check(context)
        if not status.has_credits:
            raise CreditDeniedError(status)
        return status

    async def _build_adapter(self, spec: ProviderSpec) -> ProviderAdapter:
        credentials = await self._credentials.get_credentials(spec)
        return self._adapter_factory(spec, credentials, self._config)

    def _settle(self, session: StreamSession, context: UserContext) -> UsageRecord:
        """Build, publish and dispatch the attempt's single usage record."""
        record = self._recorder.build_record(session, context)
        session.transition(SessionState.USAGE_RECORDED)
        logger.info(
            "Request settled",
            extra={
                "provider": record.provider_id,
                "model": record.model_id,
                "request_type": record.request_type,
                "success": record.success,
                "input_tokens": record.input_tokens,
                "output_tokens": record.output_tokens,
                "cost_usd": record.actual_cost,
                "duration_ms": record.duration_ms,
            },
        )
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("Usage listener failed")
        self._recorder.dispatch(record)
        return record

    # ── Host-facing API ─────────────────────────────────────────

    async def check_credits(self) -> CreditStatus:
        """Current credit status for the gateway's user context."""
        return await self._credit_gate.check(dataclasses.replace(self._context))

    def list_providers(self) -> list[ProviderDescriptor]:
        return self._catalog.providers()

    def list_models(self, provider_id: str) -> tuple[ModelDescriptor, ...]:
        """Catalog models for a provider. Raises ``ProviderNotFoundError``."""
        return self._catalog.list_models(provider_id)

    @property
    def context(self) -> UserContext:
        return dataclasses.replace(self._context)

    def update_context(self, **fields: str | None) -> UserContext:
        """Merge non-empty identity fields into the context for later requests."""
        known = {f.name for f in dataclasses.fields(UserContext)}
        unknown = set(fields) - known
        if unknown:
            msg = f"Unknown context fields: {sorted(unknown)}"
            raise TypeError(msg)
        updates = {k: v for k, v in fields.items() if v}
        self._context = dataclasses.replace(self._context, **updates)
        return self.context

    def subscribe(self, listener: UsageListener) -> Callable[[], None]:
        """Call ``listener`` with every usage record. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def drain(self) -> None:
        """Wait until every dispatched usage record has been posted."""
        await self._recorder.drain()

    async def close(self) -> None:
        """Flush pending usage records and release the billing client."""
        if self._closed:
            return
        self._closed = True
        await self._recorder.drain()
        if self._owns_billing and self._billing is not None:
            await self._billing.close()

    async def __aenter__(self) -> Gateway:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *exc: object) -> None:
        """Async context manager exit: flushes usage and closes the billing client."""
        await self.close()


def _last_user_text(messages: Sequence[LLMMessage]) -> str | None:
    for msg in reversed(messages):
        if msg.get("role") == "user":
            return msg.get("content") or None
    return None


async def _race_cancellation(token: CancellationToken, call: Awaitable[T]) -> T:
    """Await ``call`` unless ``token`` fires first, then raise ``CancellationError``."""
    task: asyncio.Future[T] = asyncio.ensure_future(call)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task.done():
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise CancellationError(token.reason)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()

