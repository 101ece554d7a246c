"""Anthropic adapter: wraps AsyncAnthropic for streaming and instructor for structured output."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any, TypeVar

import anthropic
import instructor
from anthropic import AsyncAnthropic
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
    LLMResponse,
    ModelDescriptor,
    StreamEvent,
    StreamRequest,
    StructuredRequest,
    ToolCall,
    TokenUsage,
)

T = TypeVar("T")

# The Messages API requires max_tokens on every call
_DEFAULT_MAX_TOKENS = 4096


class AnthropicAdapter(CatalogAdapter):
    """Adapter backed by the Anthropic Messages API."""

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str | None,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 120,
        client: AsyncAnthropic | None = None,
    ) -> None:
        super().__init__(spec)
        self._client = client or AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            default_headers=headers or None,
            timeout=float(timeout_seconds),
            max_retries=0,
        )
        self._instructor = instructor.from_anthropic(self._client)

    @classmethod
    def from_spec(
        cls,
        spec: ProviderSpec,
        credentials: CredentialSet | None,
        config: GatewayConfig,
    ) -> AnthropicAdapter:
        """Factory method for the adapter registry."""
        return cls(
            spec,
            api_key=require_api_key(spec, credentials),
            base_url=(credentials.base_url if credentials else None) or spec.base_url,
            headers=merged_headers(spec, credentials),
            timeout_seconds=config.timeout_seconds,
        )

    async def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        handle = self.get_model(request.model_id)
        request = apply_quirks(handle, request)
        request.cancellation.raise_if_cancelled()

        system, conversation = split_system(request.messages, request.system_prompt)
        kwargs: dict[str, Any] = {
            "model": handle.model_id,
            "max_tokens": request.max_tokens or _DEFAULT_MAX_TOKENS,
            "messages": [
                {"role": m["role"], "content": m.get("content", "")} for m in conversation
            ],
            "stream": True,
        }
        if system:
            kwargs["system"] = system
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools:
            kwargs["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": dict(tool.parameters),
                }
                for tool in request.tools
            ]

        try:
            stream = await self._client.messages.create(**kwargs)
        except Exception as exc:
            raise self._map_error(exc) from exc

        input_tokens = 0
        output_tokens = 0
        stop_reason: str | None = None
        # content block index → {"id", "name", "json"} for tool_use blocks
        tool_blocks: dict[int, dict[str, str]] = {}
        try:
            async for event in stream:
                request.cancellation.raise_if_cancelled()
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens or 0
                    output_tokens = event.message.usage.output_tokens or 0
                    yield StreamEvent.usage_update(
                        build_token_usage(handle.descriptor, input_tokens, output_tokens)
                    )
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        tool_blocks[event.index] = {"id": block.id, "name": block.name, "json": ""}
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta" and delta.text:
                        yield StreamEvent.text_delta(delta.text)
                    elif delta.type == "input_json_delta" and event.index in tool_blocks:
                        tool_blocks[event.index]["json"] += delta.partial_json
                elif event.type == "content_block_stop":
                    finished = tool_blocks.pop(event.index, None)
                    if finished is not None:
                        yield StreamEvent.for_tool_call(
                            ToolCall(
                                id=finished["id"],
                                name=finished["name"],
                                arguments=parse_tool_arguments(self.provider_id, finished["json"]),
                            )
                        )
                elif event.type == "message_delta":
                    output_tokens = event.usage.output_tokens or output_tokens
                    stop_reason = event.delta.stop_reason or stop_reason
                    yield StreamEvent.usage_update(
                        build_token_usage(handle.descriptor, input_tokens, output_tokens)
                    )
        except GatewayError:
            raise
        except Exception as exc:
            raise self._map_error(exc) from exc
        finally:
            await stream.close()

        usage = build_token_usage(handle.descriptor, input_tokens, output_tokens)
        yield StreamEvent.done(usage, stop_reason)

    async def generate_object(self, request: StructuredRequest[T]) -> LLMResponse[T]:
        """Call the Messages API through instructor and return the validated object."""
        handle = self.get_model(request.model_id)
        start = time.monotonic()

        kwargs: dict[str, Any] = {
            "model": handle.model_id,
            "max_tokens": request.max_tokens or _DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": request.prompt}],
            "response_model": request.schema,
        }
        temperature = effective_temperature(handle, request.temperature)
        if temperature is not None:
            kwargs["temperature"] = temperature

        try:
            result: T = await self._instructor.messages.create(**kwargs)
        except GatewayError:
            raise
        except Exception as exc:
            raise self._map_error(exc, schema=request.schema) from exc

        return LLMResponse(
            content=result,
            usage=self._extract_usage(result, handle.descriptor),
            model=handle.model_id,
            provider=self.provider_id,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    @staticmethod
    def _extract_usage(result: object, descriptor: ModelDescriptor | None) -> TokenUsage:
        """Extract token usage from instructor's _raw_response."""
        raw = getattr(result, "_raw_response", None)
        if raw is None:
            return build_token_usage(descriptor, 0, 0)

        usage = getattr(raw, "usage", None)
        if usage is None:
            return build_token_usage(descriptor, 0, 0)

        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        return build_token_usage(descriptor, input_tokens, output_tokens)

    def _map_error(self, exc: Exception, schema: type | None = None) -> GatewayError:
        for cause in iter_causes(exc):
            if isinstance(cause, GatewayError):
                return cause
            if schema is not None and isinstance(cause, (ValidationError, json.JSONDecodeError)):
                return SchemaValidationError(schema.__name__, str(cause), self.provider_id)
            if isinstance(cause, anthropic.APIConnectionError):
                return ProviderTransportError(self.provider_id, cause)
            if isinstance(cause, anthropic.APIStatusError):
                return status_error(self.provider_id, cause, cause.status_code)
            if isinstance(cause, anthropic.AnthropicError):
                return ProviderRejectionError(self.provider_id, cause)
        return ProviderSyncError(self.provider_id, exc)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()
