"""Adapter registry: maps adapter families to factory functions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from metered_gateway.exceptions import GatewayError, ProviderInitError, ProviderNotFoundError

if TYPE_CHECKING:
    from metered_gateway.catalog import ProviderSpec
    from metered_gateway.config import GatewayConfig
    from metered_gateway.providers.base import ProviderAdapter
    from metered_gateway.types import CredentialSet

logger = logging.getLogger(__name__)

AdapterFactory = Callable[
    ["ProviderSpec", "CredentialSet | None", "GatewayConfig"], "ProviderAdapter"
]

# Global registry: family → factory(spec, credentials, config) → adapter instance
_ADAPTERS: dict[str, AdapterFactory] = {}


def register_adapter(family: str, factory: AdapterFactory) -> None:
    """Register an adapter factory.

    Args:
        family: Adapter family (e.g. "openai", "anthropic", "google").
        factory: Callable taking (ProviderSpec, CredentialSet | None,
            GatewayConfig) and returning a ProviderAdapter.
    """
    _ADAPTERS[family] = factory
    logger.debug("Registered adapter family: %s", family)


def build_adapter(
    spec: ProviderSpec,
    credentials: CredentialSet | None,
    config: GatewayConfig,
) -> ProviderAdapter:
    """Build a fresh adapter for one request.

    Triggers lazy registration of built-in adapters on first call.

    Raises:
        ProviderNotFoundError: If no factory serves the spec's family.
        ProviderInitError: If the factory raises an error.
    """
    _ensure_builtins_registered()

    factory = _ADAPTERS.get(spec.family)
    if factory is None:
        raise ProviderNotFoundError(spec.id)

    try:
        return factory(spec, credentials, config)
    except GatewayError:
        raise
    except Exception as exc:
        raise ProviderInitError(spec.id, str(exc)) from exc


def list_adapter_families() -> list[str]:
    """Return the adapter families with a registered factory."""
    _ensure_builtins_registered()
    return list(_ADAPTERS.keys())


# ── Lazy Registration ───────────────────────────────────────────

_builtins_registered = False


def _ensure_builtins_registered() -> None:
    """Lazily register built-in adapters on first use.

    This avoids importing the vendor SDKs at module load time.
    """
    global _builtins_registered  # noqa: PLW0603
    if _builtins_registered:
        return
    _builtins_registered = True

    try:
        from metered_gateway.providers.openai import OpenAIAdapter

        register_adapter("openai", OpenAIAdapter.from_spec)
    except ImportError:
        logger.debug("openai SDK not installed; adapter not available")

    try:
        from metered_gateway.providers.anthropic import AnthropicAdapter

        register_adapter("anthropic", AnthropicAdapter.from_spec)
    except ImportError:
        logger.debug("anthropic SDK not installed; adapter not available")

    try:
        from metered_gateway.providers.google import GoogleAdapter

        register_adapter("google", GoogleAdapter.from_spec)
    except ImportError:
        logger.debug("google-genai SDK not installed; adapter not available")
