"""Core data types for metered-gateway."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, Literal, TypedDict, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from metered_gateway.cancellation import CancellationToken
from metered_gateway.exceptions import GatewayError

T = TypeVar("T")

RequestType = Literal["chat", "inline", "analysis", "completion"]
StreamEventType = Literal["text-delta", "tool-call", "tool-result", "usage", "done", "error"]


class ProviderId(StrEnum):
    """Built-in vendors. Configuration may add OpenAI-compatible ids."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    DEEPSEEK = "deepseek"
    OPENROUTER = "openrouter"


class Quirk(StrEnum):
    """Vendor/model constraints, applied by adapters as data."""

    FIXED_TEMPERATURE = "fixed_temperature"
    RESPONSES_ENDPOINT = "responses_endpoint"
    NO_TOOLS = "no_tools"
    TOOLS_FALLBACK = "tools_fallback"


class Endpoint(StrEnum):
    """Vendor endpoint family a model is served from."""

    CHAT_COMPLETIONS = "chat_completions"
    RESPONSES = "responses"
    MESSAGES = "messages"
    GENERATE_CONTENT = "generate_content"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Public identity of a provider."""

    id: str
    display_name: str
    requires_api_key: bool = True


@dataclass(frozen=True)
class ModelDescriptor:
    """A catalog entry. Prices are USD per 1M tokens; ``None`` means unknown."""

    id: str
    provider_id: str
    context_window: int = 128_000
    supports_tools: bool = True
    input_price_per_million: float | None = None
    output_price_per_million: float | None = None
    quirks: frozenset[Quirk] = frozenset()
    display_name: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.id


@dataclass(frozen=True)
class CredentialSet:
    """Credentials for one provider, read per call and never persisted."""

    provider_id: str
    api_key: str
    base_url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"CredentialSet(provider_id={self.provider_id!r}, api_key='***')"


@dataclass(frozen=True)
class TokenUsage:
    """Token counts and associated costs for a single LLM call."""

    input_tokens: int = 0
    output_tokens: int = 0
    input_cost_usd: float = 0.0
    output_cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        """Total tokens consumed."""
        return self.input_tokens + self.output_tokens

    @property
    def total_cost_usd(self) -> float:
        """Total cost in USD."""
        return self.input_cost_usd + self.output_cost_usd


@dataclass
class LLMResponse(Generic[T]):
    """Result of a structured generation call.

    Generic over T, the validated Pydantic model type returned in ``content``.
    """

    content: T
    usage: TokenUsage
    model: str
    provider: str
    latency_ms: float = 0.0
    metadata: dict[str, object] = field(default_factory=dict)


class LLMMessage(TypedDict, total=False):
    """A single message in the conversation."""

    role: Literal["user", "assistant", "system"]
    content: str


ToolExecutor = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    """A tool the model may call. ``parameters`` is a JSON schema."""

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    execute: ToolExecutor | None = None


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    name: str
    result: Any = None
    is_error: bool = False


@dataclass(frozen=True)
class StreamRequest:
    """One user turn to stream. Not reused across turns."""

    provider_id: str
    model_id: str
    messages: Sequence[LLMMessage]
    tools: Sequence[ToolSpec] = ()
    temperature: float | None = None
    system_prompt: str | None = None
    max_tokens: int | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    request_type: RequestType = "chat"


@dataclass(frozen=True)
class StructuredRequest(Generic[T]):
    """A non-streaming request validated against ``schema``."""

    provider_id: str
    model_id: str
    schema: type[T]
    prompt: str
    temperature: float | None = None
    max_tokens: int | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    request_type: RequestType = "inline"
    query_text: str | None = None


@dataclass(frozen=True)
class TextRequest:
    """A plain-text request answered in one piece, e.g. an inline completion."""

    provider_id: str
    model_id: str
    prompt: str
    temperature: float | None = None
    max_tokens: int | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    request_type: RequestType = "inline"
    query_text: str | None = None


@dataclass(frozen=True)
class StreamEvent:
    """One item of a gateway stream.

    Every stream ends with exactly one ``done`` or ``error`` event, unless
    the consumer closes it first.

    Adapters also emit ``usage`` events with the vendor's running token
    counts as they arrive. The gateway consumes them for metering and never
    forwards them to callers.
    """

    type: StreamEventType
    text: str = ""
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    usage: TokenUsage | None = None
    finish_reason: str | None = None
    error: GatewayError | None = None

    @classmethod
    def text_delta(cls, text: str) -> StreamEvent:
        return cls(type="text-delta", text=text)

    @classmethod
    def for_tool_call(cls, call: ToolCall) -> StreamEvent:
        return cls(type="tool-call", tool_call=call)

    @classmethod
    def for_tool_result(cls, result: ToolResult) -> StreamEvent:
        return cls(type="tool-result", tool_result=result)

    @classmethod
    def usage_update(cls, usage: TokenUsage) -> StreamEvent:
        return cls(type="usage", usage=usage)

    @classmethod
    def done(cls, usage: TokenUsage | None, finish_reason: str | None = None) -> StreamEvent:
        return cls(type="done", usage=usage, finish_reason=finish_reason)

    @classmethod
    def failed(cls, error: GatewayError, message: str | None = None) -> StreamEvent:
        return cls(type="error", text=message or str(error), error=error)


@dataclass(frozen=True)
class CreditStatus:
    """Outcome of one credit gate check. ``credits_left == -1`` means unknown."""

    has_credits: bool
    credits_left: int
    message: str = ""
    low_credit_threshold: int = 0

    @property
    def is_low(self) -> bool:
        return self.has_credits and 0 < self.credits_left <= self.low_credit_threshold


@dataclass
class UserContext:
    """Identity of the caller, supplied by the host application."""

    tenant_id: str | None = None
    user_id: str | None = None
    workspace_id: str | None = None
    connection_id: str | None = None


class UsageRecord(BaseModel):
    """One request attempt, as posted to the usage-ingestion endpoint."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    tenant_id: str | None = None
    workspace_id: str | None = None
    connection_id: str | None = None
    user_id: str | None = None
    provider_id: str
    model_id: str
    request_type: RequestType = "chat"
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    duration_ms: int = Field(default=0, alias="requestDuration")
    success: bool
    error_message: str | None = None
    query_text: str | None = None
    input_price_per_million: float | None = None
    output_price_per_million: float | None = None
    estimated_cost: float = 0.0
    actual_cost: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        """JSON body for ``POST /api/ai/usage``."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
