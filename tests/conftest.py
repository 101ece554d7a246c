"""Shared test fixtures for metered-gateway."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from metered_gateway.billing import BillingClient
from metered_gateway.config import GatewayConfig
from metered_gateway.credentials import StaticCredentialStore
from metered_gateway.gateway import Gateway
from metered_gateway.observability.tracing import disable_tracing
from metered_gateway.testing import FakeProviderAdapter
from metered_gateway.types import CredentialSet, UserContext


class FakeBillingBackend:
    """In-memory billing API served through ``httpx.MockTransport``.

    Set ``summary`` (dict body) or ``summary_status`` to shape credit
    checks; every posted usage payload lands in ``usage_posts``.
    """

    def __init__(self) -> None:
        self.summary: dict[str, Any] = {
            "MaxAnalysesPerMonth": 100,
            "ExtraAnalysesAvailable": 10,
            "CurrentMonthAnalyses": 80,
            "SubscriptionStatus": "active",
        }
        self.summary_status = 200
        self.summary_error: Exception | None = None
        self.usage_status = 201
        self.usage_posts: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.api_keys: dict[str, str] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/ai/usage/summary":
            if self.summary_error is not None:
                raise self.summary_error
            return httpx.Response(self.summary_status, json=self.summary)
        if path == "/api/ai/usage" and request.method == "POST":
            self.usage_posts.append(json.loads(request.content))
            return httpx.Response(self.usage_status, json={"ok": True})
        if path == "/api/ai/credentials":
            provider_id = request.url.params.get("providerId", "")
            if provider_id not in self.api_keys:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json={"apiKey": self.api_keys[provider_id]})
        return httpx.Response(404)

    def client(self, secret: str | None = "test-secret") -> BillingClient:
        return BillingClient(
            base_url="https://billing.test",
            secret=secret,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer GATEWAY_* settings and tracing out of unit tests."""
    monkeypatch.setenv("GATEWAY_TRACE_ENABLED", "false")
    monkeypatch.delenv("GATEWAY_BILLING_BASE_URL", raising=False)
    monkeypatch.delenv("GATEWAY_COMPAT_PROVIDERS", raising=False)
    monkeypatch.delenv("PLUGIN_SECRET", raising=False)
    disable_tracing()


@pytest.fixture
def billing_backend() -> FakeBillingBackend:
    """Return a fresh in-memory billing backend."""
    return FakeBillingBackend()


@pytest.fixture
async def billing_client(billing_backend: FakeBillingBackend) -> AsyncIterator[BillingClient]:
    client = billing_backend.client()
    yield client
    await client.close()


@pytest.fixture
def fake_adapter() -> FakeProviderAdapter:
    """Return a fresh FakeProviderAdapter."""
    return FakeProviderAdapter()


@pytest.fixture
def user_context() -> UserContext:
    return UserContext(tenant_id="tenant-1", user_id="user-1", workspace_id="ws-1")


@pytest.fixture
def test_config() -> GatewayConfig:
    """Return a GatewayConfig with test defaults (no billing URL, no tracing)."""
    return GatewayConfig(trace_enabled=False, _env_file=None)  # type: ignore[call-arg]


@pytest.fixture
def static_credentials() -> StaticCredentialStore:
    return StaticCredentialStore(
        {
            pid: CredentialSet(provider_id=pid, api_key=f"{pid}-test-key")
            for pid in ("openai", "anthropic", "google", "deepseek", "openrouter")
        }
    )


@pytest.fixture
def make_gateway(
    test_config: GatewayConfig,
    billing_client: BillingClient,
    fake_adapter: FakeProviderAdapter,
    user_context: UserContext,
    static_credentials: StaticCredentialStore,
) -> Callable[..., Gateway]:
    """Build a Gateway wired to the fake adapter and in-memory billing."""

    def _make(**overrides: Any) -> Gateway:
        kwargs: dict[str, Any] = {
            "billing": billing_client,
            "context": user_context,
            "credentials": static_credentials,
            "adapter_factory": fake_adapter.factory,
        }
        kwargs.update(overrides)
        return Gateway(test_config, **kwargs)

    return _make
