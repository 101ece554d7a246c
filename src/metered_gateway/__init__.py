"""metered-gateway: credit-gated, usage-metered gateway over multiple LLM vendors.

Usage:
    from metered_gateway import Gateway, StreamRequest, UserContext

    # GATEWAY_* env vars, identity included (GATEWAY_TENANT_ID, GATEWAY_USER_ID)
    gateway = Gateway(context=UserContext(tenant_id="acme"))
    async for event in gateway.submit(StreamRequest("openai", "gpt-4o-mini", messages)):
        ...
"""

from __future__ import annotations

from metered_gateway.billing import BillingClient
from metered_gateway.cancellation import CancellationToken
from metered_gateway.catalog import ProviderCatalog, ProviderSpec, QuirkRule
from metered_gateway.config import CompatModelConfig, CompatProviderConfig, GatewayConfig
from metered_gateway.cost import calculate_cost
from metered_gateway.credentials import (
    CredentialStore,
    EnvCredentialStore,
    RemoteCredentialStore,
    StaticCredentialStore,
)
from metered_gateway.credits import CreditGate
from metered_gateway.exceptions import (
    AuthenticationError,
    CancellationError,
    CreditDeniedError,
    GatewayError,
    InvalidToolArgumentsError,
    ProviderAuthenticationError,
    ProviderInitError,
    ProviderNotFoundError,
    ProviderRejectionError,
    ProviderSyncError,
    ProviderTransportError,
    SchemaValidationError,
    SessionStateError,
)
from metered_gateway.gateway import Gateway
from metered_gateway.providers.base import ModelHandle, ProviderAdapter
from metered_gateway.registry import build_adapter, list_adapter_families, register_adapter
from metered_gateway.session import SessionState, StreamSession
from metered_gateway.types import (
    CredentialSet,
    CreditStatus,
    Endpoint,
    LLMMessage,
    LLMResponse,
    ModelDescriptor,
    ProviderDescriptor,
    ProviderId,
    Quirk,
    StreamEvent,
    StreamRequest,
    StructuredRequest,
    TextRequest,
    TokenUsage,
    ToolCall,
    ToolResult,
    ToolSpec,
    UsageRecord,
    UserContext,
)
from metered_gateway.usage import UsageRecorder

__all__ = [
    # Core
    "Gateway",
    "GatewayConfig",
    "CompatProviderConfig",
    "CompatModelConfig",
    # Requests and events
    "StreamRequest",
    "StructuredRequest",
    "TextRequest",
    "StreamEvent",
    "CancellationToken",
    "LLMMessage",
    "LLMResponse",
    "ToolSpec",
    "ToolCall",
    "ToolResult",
    "UserContext",
    # Catalog
    "ProviderCatalog",
    "ProviderSpec",
    "QuirkRule",
    "ProviderDescriptor",
    "ProviderId",
    "ModelDescriptor",
    "Quirk",
    "Endpoint",
    # Adapters
    "ProviderAdapter",
    "ModelHandle",
    "register_adapter",
    "build_adapter",
    "list_adapter_families",
    # Credentials
    "CredentialSet",
    "CredentialStore",
    "EnvCredentialStore",
    "StaticCredentialStore",
    "RemoteCredentialStore",
    # Billing
    "BillingClient",
    "CreditGate",
    "CreditStatus",
    "UsageRecorder",
    "UsageRecord",
    "TokenUsage",
    "calculate_cost",
    "SessionState",
    "StreamSession",
    # Exceptions
    "GatewayError",
    "ProviderNotFoundError",
    "ProviderInitError",
    "SessionStateError",
    "AuthenticationError",
    "CreditDeniedError",
    "ProviderSyncError",
    "ProviderTransportError",
    "ProviderRejectionError",
    "ProviderAuthenticationError",
    "InvalidToolArgumentsError",
    "SchemaValidationError",
    "CancellationError",
]
