"""HTTP client for the remote billing/usage backend."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from metered_gateway.config import GatewayConfig

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Plugin-Secret"

USAGE_SUMMARY_PATH = "/api/ai/usage/summary"
USAGE_INGEST_PATH = "/api/ai/usage"
CREDENTIALS_PATH = "/api/ai/credentials"


class UsageSummary(BaseModel):
    """Body of ``GET /api/ai/usage/summary``. Field names follow the wire format."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    remaining_analyses: int | None = Field(default=None, alias="RemainingAnalyses")
    extra_analyses_available: int | None = Field(default=None, alias="ExtraAnalysesAvailable")
    max_analyses_per_month: int | None = Field(default=None, alias="MaxAnalysesPerMonth")
    current_month_analyses: int | None = Field(default=None, alias="CurrentMonthAnalyses")
    subscription_status: str | None = Field(default=None, alias="SubscriptionStatus")


class BillingClient:
    """Thin async wrapper over the billing API.

    Methods raise ``httpx.HTTPError`` subclasses on failure; policy (fail
    open, fail closed, swallow) belongs to the callers.
    """

    def __init__(
        self,
        base_url: str,
        secret: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if secret:
            headers[SECRET_HEADER] = secret
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> BillingClient:
        if not config.billing_base_url:
            logger.warning("GATEWAY_BILLING_BASE_URL is not set; billing calls will fail")
        return cls(
            base_url=config.billing_base_url,
            secret=config.get_plugin_secret(),
            timeout_seconds=config.billing_timeout_seconds,
            transport=transport,
        )

    async def usage_summary(self, tenant_id: str) -> UsageSummary:
        """Fetch the tenant's current credit summary."""
        response = await self._client.get(USAGE_SUMMARY_PATH, params={"tenantId": tenant_id})
        response.raise_for_status()
        return UsageSummary.model_validate(response.json())

    async def post_usage(self, payload: dict[str, Any]) -> httpx.Response:
        """Post one usage record. The caller inspects the status."""
        return await self._client.post(USAGE_INGEST_PATH, json=payload)

    async def provider_api_key(self, provider_id: str, tenant_id: str) -> str:
        """Fetch a vendor API key held by the backend. Empty string if none."""
        response = await self._client.get(
            CREDENTIALS_PATH,
            params={"providerId": provider_id, "tenantId": tenant_id},
        )
        response.raise_for_status()
        data = response.json()
        api_key = data.get("apiKey") if isinstance(data, dict) else None
        return api_key if isinstance(api_key, str) else ""

    async def close(self) -> None:
        await self._client.aclose()
