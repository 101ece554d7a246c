"""Credential stores: where the gateway reads vendor API keys from.

The gateway only ever reads credentials, once per request.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from metered_gateway.exceptions import AuthenticationError, ProviderTransportError
from metered_gateway.types import CredentialSet, UserContext

if TYPE_CHECKING:
    from metered_gateway.billing import BillingClient
    from metered_gateway.catalog import ProviderSpec

logger = logging.getLogger(__name__)

# Alternate env vars accepted when the primary one is unset
_FALLBACK_ENV: dict[str, tuple[str, ...]] = {
    "google": ("GEMINI_API_KEY",),
}

_IDENTITY_STATUSES = frozenset({401, 403, 404})


@runtime_checkable
class CredentialStore(Protocol):
    """Supplies credentials per provider. ``None`` means none configured."""

    async def get_credentials(self, spec: ProviderSpec) -> CredentialSet | None:
        ...


class EnvCredentialStore:
    """Reads API keys from provider-specific environment variables."""

    async def get_credentials(self, spec: ProviderSpec) -> CredentialSet | None:
        names = [spec.api_key_env] if spec.api_key_env else []
        names.extend(_FALLBACK_ENV.get(spec.id, ()))
        for name in names:
            value = os.environ.get(name)
            if value:
                return CredentialSet(provider_id=spec.id, api_key=value)
        return None


class StaticCredentialStore:
    """In-memory credentials, keyed by provider id."""

    def __init__(self, credentials: Mapping[str, CredentialSet] | None = None) -> None:
        self._credentials = dict(credentials or {})

    async def get_credentials(self, spec: ProviderSpec) -> CredentialSet | None:
        return self._credentials.get(spec.id)


class RemoteCredentialStore:
    """Fetches vendor API keys from the billing backend for the current tenant."""

    def __init__(self, billing: BillingClient, context: Callable[[], UserContext]) -> None:
        self._billing = billing
        self._context = context

    async def get_credentials(self, spec: ProviderSpec) -> CredentialSet | None:
        tenant_id = self._context().tenant_id
        if not tenant_id:
            raise AuthenticationError(
                "Not authenticated. Please log in to use AI features.", provider_id=spec.id
            )
        try:
            api_key = await self._billing.provider_api_key(spec.id, tenant_id)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in _IDENTITY_STATUSES:
                raise AuthenticationError(
                    f"Backend refused credentials for provider '{spec.id}' "
                    f"(HTTP {exc.response.status_code})",
                    provider_id=spec.id,
                ) from exc
            raise ProviderTransportError(spec.id, exc) from exc
        except httpx.HTTPError as exc:
            raise ProviderTransportError(spec.id, exc) from exc

        if not api_key:
            logger.warning("No API key returned for provider", extra={"provider": spec.id})
            return None
        return CredentialSet(provider_id=spec.id, api_key=api_key)
