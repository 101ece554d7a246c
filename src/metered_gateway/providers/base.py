"""Provider adapter protocol: the contract every vendor adapter must satisfy."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import AsyncIterator, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

from metered_gateway.catalog import ProviderSpec
from metered_gateway.exceptions import (
    AuthenticationError,
    InvalidToolArgumentsError,
    ProviderAuthenticationError,
    ProviderRejectionError,
    ProviderSyncError,
)
from metered_gateway.types import (
    CredentialSet,
    Endpoint,
    LLMMessage,
    LLMResponse,
    ModelDescriptor,
    Quirk,
    StreamEvent,
    StreamRequest,
    StructuredRequest,
)

T = TypeVar("T")

# Temperature the vendor accepts for FIXED_TEMPERATURE models
FIXED_TEMPERATURE_VALUE = 1.0

_AUTH_STATUSES = frozenset({401, 403})


@dataclass(frozen=True)
class ModelHandle:
    """A resolved model: where to send it and which quirks apply."""

    provider_id: str
    model_id: str
    endpoint: Endpoint
    quirks: frozenset[Quirk] = frozenset()
    descriptor: ModelDescriptor | None = None

    def has(self, quirk: Quirk) -> bool:
        return quirk in self.quirks


@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol that all vendor adapters must implement.

    Adapters translate between the gateway's request/event types and one
    vendor SDK. They never retry and never talk to the billing backend.
    """

    def get_model(self, model_id: str) -> ModelHandle:
        """Resolve a model id to its endpoint and quirks. Deterministic."""
        ...

    def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """Stream one turn.

        Yields ``text-delta`` and ``tool-call`` events, ``usage`` events with
        running token counts where the vendor reports them mid-stream, then
        one ``done`` event carrying the vendor's final usage. Raises ``CancellationError``
        once the request's token fires, and ``ProviderSyncError`` subclasses
        on vendor failures.
        """
        ...

    async def generate_object(self, request: StructuredRequest[T]) -> LLMResponse[T]:
        """Non-streaming structured generation validated against ``request.schema``.

        Raises:
            SchemaValidationError: If the output does not match the schema.
            ProviderSyncError: On transport, auth, or vendor errors.
        """
        ...

    def list_models(self) -> tuple[ModelDescriptor, ...]:
        """Catalog models for this provider. No network call."""
        ...

    async def close(self) -> None:
        """Release the underlying SDK client."""
        ...


def apply_quirks(handle: ModelHandle, request: StreamRequest) -> StreamRequest:
    """Return ``request`` adjusted for the model's quirks."""
    changes: dict[str, Any] = {}
    if handle.has(Quirk.FIXED_TEMPERATURE) and request.temperature != FIXED_TEMPERATURE_VALUE:
        changes["temperature"] = FIXED_TEMPERATURE_VALUE
    if handle.has(Quirk.NO_TOOLS) and request.tools:
        changes["tools"] = ()
    if not changes:
        return request
    return dataclasses.replace(request, **changes)


def effective_temperature(handle: ModelHandle, temperature: float | None) -> float | None:
    if handle.has(Quirk.FIXED_TEMPERATURE):
        return FIXED_TEMPERATURE_VALUE
    return temperature


def split_system(
    messages: Sequence[LLMMessage], system_prompt: str | None = None
) -> tuple[str | None, list[LLMMessage]]:
    """Separate system text from the conversation, for vendors that take it apart."""
    system_parts = [system_prompt] if system_prompt else []
    conversation: list[LLMMessage] = []
    for msg in messages:
        if msg.get("role") == "system":
            content = msg.get("content", "")
            if content:
                system_parts.append(content)
        else:
            conversation.append(msg)
    return ("\n\n".join(system_parts) or None), conversation


def parse_tool_arguments(provider_id: str, raw: str | None) -> dict[str, Any]:
    """Decode a tool call's JSON arguments. Empty input means no arguments."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidToolArgumentsError(provider_id, exc) from exc
    if not isinstance(parsed, dict):
        raise InvalidToolArgumentsError(
            provider_id, ValueError(f"Tool arguments must be an object, got {raw!r}")
        )
    return parsed


def status_error(
    provider_id: str, cause: BaseException, status_code: int | None
) -> ProviderSyncError:
    """Map a vendor error response to the gateway hierarchy."""
    if status_code in _AUTH_STATUSES:
        return ProviderAuthenticationError(provider_id, cause, status_code)
    return ProviderRejectionError(provider_id, cause, status_code)


def iter_causes(exc: BaseException) -> Iterator[BaseException]:
    """Walk ``exc`` and its ``__cause__``/``__context__`` chain."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


class CatalogAdapter:
    """Shared catalog-backed routing for adapters. Subclasses add the vendor calls."""

    def __init__(self, spec: ProviderSpec) -> None:
        self._spec = spec

    @property
    def provider_id(self) -> str:
        return self._spec.id

    def get_model(self, model_id: str) -> ModelHandle:
        return ModelHandle(
            provider_id=self._spec.id,
            model_id=model_id,
            endpoint=self._spec.resolve_endpoint(model_id),
            quirks=self._spec.resolve_quirks(model_id),
            descriptor=self._spec.find_model(model_id),
        )

    def list_models(self) -> tuple[ModelDescriptor, ...]:
        return self._spec.models


def merged_headers(spec: ProviderSpec, credentials: CredentialSet | None) -> dict[str, str]:
    headers = dict(spec.headers)
    if credentials is not None:
        headers.update(credentials.headers)
    return headers


def require_api_key(spec: ProviderSpec, credentials: CredentialSet | None) -> str | None:
    """The API key to use, or ``None`` for keyless providers.

    Raises:
        AuthenticationError: If the provider needs a key and none is configured.
    """
    if credentials is not None and credentials.api_key:
        return credentials.api_key
    if spec.descriptor.requires_api_key:
        raise AuthenticationError(
            f"No API key configured for provider '{spec.id}'", provider_id=spec.id
        )
    return None
