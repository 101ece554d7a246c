"""Exception hierarchy for metered-gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from metered_gateway.types import CreditStatus


class GatewayError(Exception):
    """Base exception for all metered-gateway errors."""


class ProviderNotFoundError(GatewayError):
    """Raised when the requested provider is not in the catalog or registry."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(
            f"Provider '{provider}' is not registered. "
            f"Check the provider id and GATEWAY_COMPAT_PROVIDERS."
        )


class ProviderInitError(GatewayError):
    """Raised when a provider adapter fails to initialize."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        super().__init__(f"Failed to initialize provider '{provider}': {reason}")


class SessionStateError(GatewayError):
    """Raised on an illegal stream session state transition."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal session transition: {current} -> {target}")


class AuthenticationError(GatewayError):
    """Missing or rejected identity: no tenant, no credential, or a 401/403."""

    def __init__(self, message: str, provider_id: str | None = None) -> None:
        super().__init__(message)
        self.provider_id = provider_id


class CreditDeniedError(GatewayError):
    """The credit gate refused the request. Not a system fault."""

    def __init__(self, status: CreditStatus) -> None:
        self.status = status
        super().__init__(status.message)


class ProviderSyncError(GatewayError):
    """A vendor call failed. Carries which provider failed and why."""

    def __init__(self, provider_id: str, cause: BaseException) -> None:
        super().__init__(f"Provider '{provider_id}' error: {cause}")
        self.provider_id = provider_id
        self.cause = cause


class ProviderTransportError(ProviderSyncError):
    """Network failure or timeout talking to a vendor."""


class ProviderRejectionError(ProviderSyncError):
    """The vendor returned a well-formed error response."""

    def __init__(
        self,
        provider_id: str,
        cause: BaseException,
        status_code: int | None = None,
    ) -> None:
        super().__init__(provider_id, cause)
        self.status_code = status_code


class InvalidToolArgumentsError(ProviderRejectionError):
    """The model emitted tool-call arguments that are not a JSON object."""


class ProviderAuthenticationError(ProviderSyncError, AuthenticationError):
    """The vendor rejected the API key (HTTP 401/403)."""

    def __init__(
        self,
        provider_id: str,
        cause: BaseException,
        status_code: int | None = None,
    ) -> None:
        super().__init__(provider_id, cause)
        self.status_code = status_code


class SchemaValidationError(GatewayError):
    """Structured output could not be validated against the requested schema."""

    def __init__(self, model_name: str, reason: str, provider_id: str | None = None) -> None:
        self.model_name = model_name
        self.provider_id = provider_id
        super().__init__(f"Failed to validate response as {model_name}: {reason}")


class CancellationError(GatewayError):
    """The caller cancelled the request."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason or "Request cancelled by caller")


def user_message(exc: GatewayError) -> str:
    """Short message for end users. The full text stays in logs and usage records."""
    if isinstance(exc, InvalidToolArgumentsError):
        return "The model sent invalid arguments for a tool call. Please try again."
    if isinstance(exc, ProviderAuthenticationError):
        return f"{exc.provider_id} rejected the API key. Check your credentials."
    if isinstance(exc, ProviderTransportError):
        return f"Could not reach {exc.provider_id}. Check your connection and try again."
    return str(exc)
