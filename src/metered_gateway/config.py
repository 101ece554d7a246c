"""Gateway configuration via environment variables."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings

from metered_gateway.types import Quirk, UserContext


def parse_headers(text: str) -> dict[str, str]:
    """Parse ``Key: value`` lines into a header dict.

    Blank lines and lines without a colon are skipped. Only the first colon
    splits, so values may contain colons (URLs).
    """
    headers: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip()
        if key:
            headers[key] = value.strip()
    return headers


class CompatModelConfig(BaseModel):
    """One model served by a configured OpenAI-compatible vendor."""

    id: str
    display_name: str | None = None
    context_window: int = Field(default=128_000, ge=1)
    supports_tools: bool = True
    input_price_per_million: float | None = Field(default=None, ge=0)
    output_price_per_million: float | None = Field(default=None, ge=0)
    quirks: list[Quirk] = Field(default_factory=list)


class CompatProviderConfig(BaseModel):
    """An OpenAI-compatible vendor declared in configuration.

    Example (``GATEWAY_COMPAT_PROVIDERS``)::

        [{"id": "ollama", "base_url": "http://localhost:11434/v1/",
          "requires_api_key": false, "models": [{"id": "llama3.1"}]}]
    """

    id: str = Field(min_length=1)
    display_name: str | None = None
    base_url: str
    headers: dict[str, str] = Field(default_factory=dict)
    api_key_env: str | None = None
    requires_api_key: bool = True
    models: list[CompatModelConfig] = Field(min_length=1)

    @field_validator("headers", mode="before")
    @classmethod
    def _parse_header_lines(cls, value: object) -> object:
        if isinstance(value, str):
            return parse_headers(value)
        return value


class GatewayConfig(BaseSettings):
    """Gateway configuration.

    All fields are read from environment variables with the ``GATEWAY_`` prefix.
    Example: ``GATEWAY_BILLING_BASE_URL=https://cloud.example.com``.
    """

    model_config = {"env_prefix": "GATEWAY_", "env_file": ".env", "extra": "ignore"}

    # ── Request defaults ────────────────────────────────────────
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, ge=1)
    max_retries: int = Field(
        default=0,
        ge=0,
        description="Extra attempts on transport errors for structured calls. Streams never retry.",
    )
    timeout_seconds: int = Field(default=120, ge=1)

    # ── Billing backend ─────────────────────────────────────────
    billing_base_url: str = Field(
        default="",
        description="Base URL of the usage/billing API, e.g. https://cloud.example.com.",
    )
    plugin_secret: SecretStr | None = Field(
        default=None,
        description="Shared secret sent as X-Plugin-Secret. Falls back to PLUGIN_SECRET.",
    )
    billing_timeout_seconds: float = Field(default=10.0, gt=0)
    low_credit_threshold: int = Field(
        default=5,
        ge=0,
        description="Log a low-credit warning at or below this many credits left.",
    )

    # ── Caller identity seed ────────────────────────────────────
    tenant_id: str | None = None
    user_id: str | None = None
    workspace_id: str | None = None
    connection_id: str | None = None

    # ── Extra OpenAI-compatible vendors ─────────────────────────
    compat_providers: list[CompatProviderConfig] = Field(default_factory=list)

    # ── Observability ───────────────────────────────────────────
    trace_enabled: bool = Field(default=False)
    trace_exporter: str = Field(
        default="none",
        description="Trace exporter: 'none', 'console', 'otlp'.",
    )
    trace_endpoint: str = Field(default="http://localhost:4317")
    trace_service_name: str = Field(default="metered-gateway")

    log_level: str = Field(default="INFO")
    log_format: str = Field(
        default="json",
        description="Log format: 'json' or 'console'.",
    )

    @model_validator(mode="after")
    def _resolve_plugin_secret(self) -> GatewayConfig:
        """Fall back to PLUGIN_SECRET if GATEWAY_PLUGIN_SECRET is unset."""
        if self.plugin_secret is None:
            value = os.environ.get("PLUGIN_SECRET")
            if value:
                self.plugin_secret = SecretStr(value)
        return self

    def get_plugin_secret(self) -> str | None:
        """Return the billing shared secret as a plain string, if configured."""
        if self.plugin_secret is None:
            return None
        return self.plugin_secret.get_secret_value()

    def user_context(self) -> UserContext:
        """Identity seeded from configuration."""
        return UserContext(
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            workspace_id=self.workspace_id,
            connection_id=self.connection_id,
        )
