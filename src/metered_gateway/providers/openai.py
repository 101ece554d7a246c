"""OpenAI adapter: wraps AsyncOpenAI for OpenAI and every OpenAI-compatible vendor.

Serves both the Chat Completions and the Responses endpoints; which one a
model uses is decided by the catalog's quirk rules.
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any, TypeVar

import instructor
import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from metered_gateway.catalog import ProviderSpec
from metered_gateway.config import GatewayConfig
from metered_gateway.cost import build_token_usage
from metered_gateway.exceptions import (
    GatewayError,
    ProviderRejectionError,
    ProviderSyncError,
    ProviderTransportError,
    SchemaValidationError,
)
from metered_gateway.providers.base import (
    CatalogAdapter,
    ModelHandle,
    apply_quirks,
    effective_temperature,
    iter_causes,
    merged_headers,
    parse_tool_arguments,
    require_api_key,
    split_system,
    status_error,
)
from metered_gateway.types import (
    CredentialSet,
    Endpoint,
    LLMMessage,
    LLMResponse,
    ModelDescriptor,
    StreamEvent,
    StreamRequest,
    StructuredRequest,
    ToolCall,
    ToolSpec,
    TokenUsage,
)

T = TypeVar("T")

# AsyncOpenAI refuses an empty key; keyless local servers ignore whatever is sent
_KEYLESS_API_KEY = "not-needed"


class OpenAIAdapter(CatalogAdapter):
    """Adapter backed by the OpenAI SDK, with instructor for structured output."""

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str | None,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 120,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(spec)
        self._client = client or AsyncOpenAI(
            api_key=api_key or _KEYLESS_API_KEY,
            base_url=base_url,
            default_headers=headers or None,
            timeout=float(timeout_seconds),
            max_retries=0,
        )
        self._instructor = instructor.from_openai(self._client)

    @classmethod
    def from_spec(
        cls,
        spec: ProviderSpec,
        credentials: CredentialSet | None,
        config: GatewayConfig,
    ) -> OpenAIAdapter:
        """Factory method for the adapter registry."""
        return cls(
            spec,
            api_key=require_api_key(spec, credentials),
            base_url=(credentials.base_url if credentials else None) or spec.base_url,
            headers=merged_headers(spec, credentials),
            timeout_seconds=config.timeout_seconds,
        )

    # ── Streaming ───────────────────────────────────────────────

    async def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        handle = self.get_model(request.model_id)
        request = apply_quirks(handle, request)
        request.cancellation.raise_if_cancelled()
        try:
            if handle.endpoint is Endpoint.RESPONSES:
                async for event in self._stream_responses(handle, request):
                    yield event
            else:
                async for event in self._stream_chat(handle, request):
                    yield event
        except GatewayError:
            raise
        except Exception as exc:
            raise self._map_error(exc) from exc

    async def _stream_chat(
        self, handle: ModelHandle, request: StreamRequest
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "model": handle.model_id,
            "messages": _chat_messages(request.messages, request.system_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        if request.tools:
            kwargs["tools"] = [_chat_tool(tool) for tool in request.tools]

        stream = await self._client.chat.completions.create(**kwargs)
        # index → {"id", "name", "arguments"}; arguments arrive in fragments
        pending_calls: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None
        usage: TokenUsage | None = None
        try:
            async for chunk in stream:
                request.cancellation.raise_if_cancelled()
                if chunk.usage is not None:
                    usage = build_token_usage(
                        handle.descriptor,
                        chunk.usage.prompt_tokens or 0,
                        chunk.usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta.content:
                    yield StreamEvent.text_delta(delta.content)
                for fragment in delta.tool_calls or ():
                    slot = pending_calls.setdefault(
                        fragment.index, {"id": "", "name": "", "arguments": ""}
                    )
                    if fragment.id:
                        slot["id"] = fragment.id
                    if fragment.function is not None:
                        slot["name"] += fragment.function.name or ""
                        slot["arguments"] += fragment.function.arguments or ""
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        finally:
            await stream.close()

        for index in sorted(pending_calls):
            slot = pending_calls[index]
            yield StreamEvent.for_tool_call(
                ToolCall(
                    id=slot["id"] or f"call_{index}",
                    name=slot["name"],
                    arguments=parse_tool_arguments(self.provider_id, slot["arguments"]),
                )
            )
        yield StreamEvent.done(usage, finish_reason)

    async def _stream_responses(
        self, handle: ModelHandle, request: StreamRequest
    ) -> AsyncIterator[StreamEvent]:
        instructions, conversation = split_system(request.messages, request.system_prompt)
        kwargs: dict[str, Any] = {
            "model": handle.model_id,
            "input": [{"role": m["role"], "content": m.get("content", "")} for m in conversation],
            "stream": True,
        }
        if instructions:
            kwargs["instructions"] = instructions
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_output_tokens"] = request.max_tokens
        if request.tools:
            kwargs["tools"] = [_responses_tool(tool) for tool in request.tools]

        stream = await self._client.responses.create(**kwargs)
        usage: TokenUsage | None = None
        finish_reason: str | None = None
        try:
            async for event in stream:
                request.cancellation.raise_if_cancelled()
                if event.type == "response.output_text.delta":
                    if event.delta:
                        yield StreamEvent.text_delta(event.delta)
                elif event.type == "response.output_item.done":
                    item = event.item
                    if item.type == "function_call":
                        yield StreamEvent.for_tool_call(
                            ToolCall(
                                id=item.call_id,
                                name=item.name,
                                arguments=parse_tool_arguments(self.provider_id, item.arguments),
                            )
                        )
                elif event.type in ("response.completed", "response.incomplete"):
                    response = event.response
                    finish_reason = response.status
                    if response.usage is not None:
                        usage = build_token_usage(
                            handle.descriptor,
                            response.usage.input_tokens,
                            response.usage.output_tokens,
                        )
                elif event.type == "response.failed":
                    error = event.response.error
                    detail = error.message if error is not None else "response failed"
                    raise ProviderRejectionError(self.provider_id, RuntimeError(detail))
                elif event.type == "error":
                    raise ProviderRejectionError(self.provider_id, RuntimeError(event.message))
        finally:
            await stream.close()

        yield StreamEvent.done(usage, finish_reason)

    # ── Structured output ───────────────────────────────────────

    async def generate_object(self, request: StructuredRequest[T]) -> LLMResponse[T]:
        """Generate and validate one ``request.schema`` instance."""
        handle = self.get_model(request.model_id)
        temperature = effective_temperature(handle, request.temperature)
        start = time.monotonic()
        try:
            if handle.endpoint is Endpoint.RESPONSES:
                content, usage = await self._parse_responses(handle, request, temperature)
            else:
                content, usage = await self._parse_chat(handle, request, temperature)
        except GatewayError:
            raise
        except Exception as exc:
            raise self._map_error(exc, schema=request.schema) from exc

        return LLMResponse(
            content=content,
            usage=usage,
            model=handle.model_id,
            provider=self.provider_id,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    async def _parse_chat(
        self,
        handle: ModelHandle,
        request: StructuredRequest[T],
        temperature: float | None,
    ) -> tuple[T, TokenUsage]:
        kwargs: dict[str, Any] = {
            "model": handle.model_id,
            "messages": [{"role": "user", "content": request.prompt}],
            "response_model": request.schema,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        result: T = await self._instructor.chat.completions.create(**kwargs)
        return result, self._extract_usage(result, handle.descriptor)

    async def _parse_responses(
        self,
        handle: ModelHandle,
        request: StructuredRequest[T],
        temperature: float | None,
    ) -> tuple[T, TokenUsage]:
        kwargs: dict[str, Any] = {
            "model": handle.model_id,
            "input": [{"role": "user", "content": request.prompt}],
            "text_format": request.schema,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if request.max_tokens is not None:
            kwargs["max_output_tokens"] = request.max_tokens
        response = await self._client.responses.parse(**kwargs)
        if response.output_parsed is None:
            raise SchemaValidationError(
                request.schema.__name__, "model returned no parsable output", self.provider_id
            )
        usage = build_token_usage(
            handle.descriptor,
            response.usage.input_tokens if response.usage else 0,
            response.usage.output_tokens if response.usage else 0,
        )
        return response.output_parsed, usage

    @staticmethod
    def _extract_usage(result: object, descriptor: ModelDescriptor | None) -> TokenUsage:
        """Extract token usage from instructor's _raw_response."""
        raw = getattr(result, "_raw_response", None)
        usage = getattr(raw, "usage", None) if raw is not None else None
        if usage is None:
            return build_token_usage(descriptor, 0, 0)

        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0
        return build_token_usage(descriptor, input_tokens, output_tokens)

    # ── Discovery ───────────────────────────────────────────────

    async def list_remote_models(self) -> list[str]:
        """Model ids served by the vendor's ``/models`` endpoint.

        Used to discover what a dynamic backend (e.g. a local server) offers;
        ``list_models`` stays catalog-only.
        """
        try:
            return [model.id async for model in self._client.models.list()]
        except Exception as exc:
            raise self._map_error(exc) from exc

    # ── Errors ──────────────────────────────────────────────────

    def _map_error(self, exc: Exception, schema: type | None = None) -> GatewayError:
        for cause in iter_causes(exc):
            if isinstance(cause, GatewayError):
                return cause
            if schema is not None and isinstance(cause, (ValidationError, json.JSONDecodeError)):
                return SchemaValidationError(schema.__name__, str(cause), self.provider_id)
            if isinstance(cause, openai.APIConnectionError):
                return ProviderTransportError(self.provider_id, cause)
            if isinstance(cause, openai.APIStatusError):
                return status_error(self.provider_id, cause, cause.status_code)
            if isinstance(cause, openai.OpenAIError):
                return ProviderRejectionError(self.provider_id, cause)
        return ProviderSyncError(self.provider_id, exc)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()


def _chat_messages(
    messages: Sequence[LLMMessage], system_prompt: str | None
) -> list[dict[str, str]]:
    converted = [{"role": "system", "content": system_prompt}] if system_prompt else []
    converted.extend({"role": m["role"], "content": m.get("content", "")} for m in messages)
    return converted


def _chat_tool(tool: ToolSpec) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": dict(tool.parameters),
        },
    }


def _responses_tool(tool: ToolSpec) -> dict[str, Any]:
    return {
        "type": "function",
        "name": tool.name,
        "description": tool.description,
        "parameters": dict(tool.parameters),
    }
