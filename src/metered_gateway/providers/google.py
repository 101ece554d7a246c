"""Google adapter: wraps the google-genai async client (Gemini generate_content)."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any, TypeVar

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from pydantic import ValidationError

from metered_gateway.catalog import ProviderSpec
from metered_gateway.config import GatewayConfig
from metered_gateway.cost import build_token_usage
from metered_gateway.exceptions import (
    GatewayError,
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
    require_api_key,
    split_system,
    status_error,
)
from metered_gateway.types import (
    CredentialSet,
    LLMMessage,
    LLMResponse,
    StreamEvent,
    StreamRequest,
    StructuredRequest,
    ToolCall,
    ToolSpec,
    TokenUsage,
)

T = TypeVar("T")

_ROLE_MAP = {"user": "user", "assistant": "model"}


class GoogleAdapter(CatalogAdapter):
    """Adapter backed by the Gemini API."""

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str | None,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 120,
        client: genai.Client | None = None,
    ) -> None:
        super().__init__(spec)
        if client is None:
            http_options = genai_types.HttpOptions(
                timeout=int(timeout_seconds * 1000),
                headers=headers or None,
                base_url=base_url,
            )
            client = genai.Client(api_key=api_key, http_options=http_options)
        self._client = client

    @classmethod
    def from_spec(
        cls,
        spec: ProviderSpec,
        credentials: CredentialSet | None,
        config: GatewayConfig,
    ) -> GoogleAdapter:
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
        config = genai_types.GenerateContentConfig(
            system_instruction=system,
            temperature=request.temperature,
            max_output_tokens=request.max_tokens,
            tools=_tools(request.tools) if request.tools else None,
        )

        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=handle.model_id,
                contents=_contents(conversation),
                config=config,
            )
        except Exception as exc:
            raise self._map_error(exc) from exc

        usage: TokenUsage | None = None
        finish_reason: str | None = None
        call_count = 0
        try:
            async for chunk in stream:
                request.cancellation.raise_if_cancelled()
                if chunk.usage_metadata is not None:
                    latest = self._usage(handle, chunk.usage_metadata)
                    if latest != usage:
                        usage = latest
                        yield StreamEvent.usage_update(usage)
                for candidate in chunk.candidates or ():
                    if candidate.finish_reason is not None:
                        reason = candidate.finish_reason
                        finish_reason = str(getattr(reason, "value", reason))
                    parts = candidate.content.parts if candidate.content else None
                    for part in parts or ():
                        if part.function_call is not None:
                            call = part.function_call
                            yield StreamEvent.for_tool_call(
                                ToolCall(
                                    id=call.id or f"{call.name}_{call_count}",
                                    name=call.name or "",
                                    arguments=dict(call.args or {}),
                                )
                            )
                            call_count += 1
                        elif part.text and not part.thought:
                            yield StreamEvent.text_delta(part.text)
        except GatewayError:
            raise
        except Exception as exc:
            raise self._map_error(exc) from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        yield StreamEvent.done(usage, finish_reason)

    async def generate_object(self, request: StructuredRequest[T]) -> LLMResponse[T]:
        """Generate JSON constrained by ``request.schema`` and validate it."""
        handle = self.get_model(request.model_id)
        start = time.monotonic()
        config = genai_types.GenerateContentConfig(
            temperature=effective_temperature(handle, request.temperature),
            max_output_tokens=request.max_tokens,
            response_mime_type="application/json",
            response_schema=request.schema,
        )
        try:
            response = await self._client.aio.models.generate_content(
                model=handle.model_id,
                contents=request.prompt,
                config=config,
            )
            content = request.schema.model_validate_json(response.text or "")  # type: ignore[attr-defined]
        except GatewayError:
            raise
        except Exception as exc:
            raise self._map_error(exc, schema=request.schema) from exc

        usage = (
            self._usage(handle, response.usage_metadata)
            if response.usage_metadata is not None
            else build_token_usage(handle.descriptor, 0, 0)
        )
        return LLMResponse(
            content=content,
            usage=usage,
            model=handle.model_id,
            provider=self.provider_id,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    @staticmethod
    def _usage(handle: ModelHandle, metadata: Any) -> TokenUsage:
        return build_token_usage(
            handle.descriptor,
            metadata.prompt_token_count or 0,
            metadata.candidates_token_count or 0,
        )

    def _map_error(self, exc: Exception, schema: type | None = None) -> GatewayError:
        for cause in iter_causes(exc):
            if isinstance(cause, GatewayError):
                return cause
            if schema is not None and isinstance(cause, (ValidationError, json.JSONDecodeError)):
                return SchemaValidationError(schema.__name__, str(cause), self.provider_id)
            if isinstance(cause, genai_errors.APIError):
                return status_error(self.provider_id, cause, cause.code)
            if isinstance(cause, httpx.TransportError):
                return ProviderTransportError(self.provider_id, cause)
        return ProviderSyncError(self.provider_id, exc)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        aclose = getattr(self._client.aio, "aclose", None)
        if aclose is not None:
            await aclose()


def _contents(messages: Sequence[LLMMessage]) -> list[genai_types.Content]:
    return [
        genai_types.Content(
            role=_ROLE_MAP.get(msg.get("role", "user"), "user"),
            parts=[genai_types.Part(text=msg.get("content", ""))],
        )
        for msg in messages
    ]


def _tools(tools: Sequence[ToolSpec]) -> list[genai_types.Tool]:
    return [
        genai_types.Tool(
            function_declarations=[
                genai_types.FunctionDeclaration(
                    name=tool.name,
                    description=tool.description,
                    parameters_json_schema=dict(tool.parameters),
                )
                for tool in tools
            ]
        )
    ]
