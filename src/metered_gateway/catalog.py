"""Static provider/model catalog and per-vendor quirk tables.

Vendor differences live here as data: which adapter family serves a
provider, its base URL and headers, and prefix/substring rules that attach
quirks to model ids the catalog does not list. Adding an OpenAI-compatible
vendor is a new ``ProviderSpec``, not a new adapter class.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING

from metered_gateway.exceptions import ProviderNotFoundError
from metered_gateway.types import (
    Endpoint,
    ModelDescriptor,
    ProviderDescriptor,
    ProviderId,
    Quirk,
)

if TYPE_CHECKING:
    from metered_gateway.config import CompatProviderConfig, GatewayConfig


class AdapterFamily(StrEnum):
    """Which adapter implementation serves a provider."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


@dataclass(frozen=True)
class QuirkRule:
    """Attach ``quirks`` to every model id matching a prefix or substring.

    A rule with neither prefixes nor substrings matches every model id.
    Matching is case-insensitive.
    """

    quirks: frozenset[Quirk]
    prefixes: tuple[str, ...] = ()
    substrings: tuple[str, ...] = ()

    def matches(self, model_id: str) -> bool:
        if not self.prefixes and not self.substrings:
            return True
        normalized = model_id.strip().lower()
        return normalized.startswith(self.prefixes) or any(
            s in normalized for s in self.substrings
        )


@dataclass(frozen=True)
class ProviderSpec:
    """Everything the gateway needs to know about one provider."""

    descriptor: ProviderDescriptor
    family: AdapterFamily
    default_endpoint: Endpoint
    models: tuple[ModelDescriptor, ...]
    base_url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    api_key_env: str | None = None
    quirk_rules: tuple[QuirkRule, ...] = ()
    tool_fallback_model: str | None = None

    @property
    def id(self) -> str:
        return self.descriptor.id

    def find_model(self, model_id: str) -> ModelDescriptor | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    def resolve_quirks(self, model_id: str) -> frozenset[Quirk]:
        """Catalog quirks plus every matching rule. Stable per model id."""
        quirks: set[Quirk] = set()
        descriptor = self.find_model(model_id)
        if descriptor is not None:
            quirks.update(descriptor.quirks)
        for rule in self.quirk_rules:
            if rule.matches(model_id):
                quirks.update(rule.quirks)
        return frozenset(quirks)

    def resolve_endpoint(self, model_id: str) -> Endpoint:
        if Quirk.RESPONSES_ENDPOINT in self.resolve_quirks(model_id):
            return Endpoint.RESPONSES
        return self.default_endpoint

    def route_model(self, model_id: str, *, has_tools: bool) -> str:
        """Return the model id to actually call for this request."""
        if (
            has_tools
            and self.tool_fallback_model
            and Quirk.TOOLS_FALLBACK in self.resolve_quirks(model_id)
        ):
            return self.tool_fallback_model
        return model_id


def _models(provider_id: str, *rows: tuple[str, int, float | None, float | None]) -> tuple[
    ModelDescriptor, ...
]:
    return tuple(
        ModelDescriptor(
            id=model_id,
            provider_id=provider_id,
            context_window=context_window,
            input_price_per_million=input_price,
            output_price_per_million=output_price,
        )
        for model_id, context_window, input_price, output_price in rows
    )


# ── Built-in providers (prices: USD per 1M tokens) ─────────────

OPENAI = ProviderSpec(
    descriptor=ProviderDescriptor(id=ProviderId.OPENAI, display_name="OpenAI"),
    family=AdapterFamily.OPENAI,
    default_endpoint=Endpoint.CHAT_COMPLETIONS,
    api_key_env="OPENAI_API_KEY",
    models=_models(
        ProviderId.OPENAI,
        ("gpt-5", 400_000, 1.25, 10.00),
        ("gpt-5-mini", 400_000, 0.25, 2.00),
        ("gpt-5-nano", 400_000, 0.05, 0.40),
        ("gpt-4.1", 1_047_576, 2.00, 8.00),
        ("gpt-4.1-mini", 1_047_576, 0.40, 1.60),
        ("gpt-4.1-nano", 1_047_576, 0.10, 0.40),
        ("gpt-4o", 128_000, 2.50, 10.00),
        ("gpt-4o-mini", 128_000, 0.15, 0.60),
    ),
    quirk_rules=(
        # Served only by the Responses API; reject custom temperatures.
        QuirkRule(
            quirks=frozenset({Quirk.RESPONSES_ENDPOINT, Quirk.FIXED_TEMPERATURE}),
            prefixes=("gpt-5",),
        ),
        QuirkRule(quirks=frozenset({Quirk.RESPONSES_ENDPOINT}), substrings=("codex",)),
    ),
)

ANTHROPIC = ProviderSpec(
    descriptor=ProviderDescriptor(id=ProviderId.ANTHROPIC, display_name="Anthropic"),
    family=AdapterFamily.ANTHROPIC,
    default_endpoint=Endpoint.MESSAGES,
    api_key_env="ANTHROPIC_API_KEY",
    headers={"anthropic-dangerous-direct-browser-access": "true"},
    models=_models(
        ProviderId.ANTHROPIC,
        ("claude-sonnet-4-5-20250929", 200_000, 3.00, 15.00),
        ("claude-haiku-4-5-20251001", 200_000, 1.00, 5.00),
        ("claude-opus-4-1", 200_000, 15.00, 75.00),
        ("claude-opus-4-20250514", 200_000, 15.00, 75.00),
        ("claude-sonnet-4-20250514", 200_000, 3.00, 15.00),
        ("claude-3-7-sonnet-20250219", 200_000, 3.00, 15.00),
        ("claude-3-5-haiku-20241022", 200_000, 0.80, 4.00),
        ("claude-3-haiku-20240307", 200_000, 0.25, 1.25),
    ),
)

GOOGLE = ProviderSpec(
    descriptor=ProviderDescriptor(id=ProviderId.GOOGLE, display_name="Google"),
    family=AdapterFamily.GOOGLE,
    default_endpoint=Endpoint.GENERATE_CONTENT,
    api_key_env="GOOGLE_API_KEY",
    models=_models(
        ProviderId.GOOGLE,
        ("gemini-2.5-pro", 1_048_576, 1.25, 10.00),
        ("gemini-2.5-flash", 1_048_576, 0.30, 2.50),
        ("gemini-2.5-flash-lite-preview-06-17", 1_048_576, 0.10, 0.40),
        ("gemini-2.0-flash", 1_048_576, 0.10, 0.40),
        ("gemini-2.0-flash-lite", 1_048_576, 0.075, 0.30),
    ),
    quirk_rules=(
        # Tool calls fail without thought signatures on these families.
        QuirkRule(
            quirks=frozenset({Quirk.TOOLS_FALLBACK}),
            substrings=("gemini-3", "preview"),
        ),
    ),
    tool_fallback_model="gemini-2.5-flash",
)

DEEPSEEK = ProviderSpec(
    descriptor=ProviderDescriptor(id=ProviderId.DEEPSEEK, display_name="DeepSeek"),
    family=AdapterFamily.OPENAI,
    default_endpoint=Endpoint.CHAT_COMPLETIONS,
    base_url="https://api.deepseek.com",
    api_key_env="DEEPSEEK_API_KEY",
    models=tuple(
        ModelDescriptor(
            id=model_id,
            provider_id=ProviderId.DEEPSEEK,
            context_window=128_000,
            supports_tools=False,
            input_price_per_million=input_price,
            output_price_per_million=output_price,
        )
        for model_id, input_price, output_price in (
            ("deepseek-chat", 0.27, 1.10),
            ("deepseek-reasoner", 0.55, 2.19),
        )
    ),
    quirk_rules=(QuirkRule(quirks=frozenset({Quirk.NO_TOOLS})),),
)

OPENROUTER = ProviderSpec(
    descriptor=ProviderDescriptor(id=ProviderId.OPENROUTER, display_name="OpenRouter"),
    family=AdapterFamily.OPENAI,
    default_endpoint=Endpoint.CHAT_COMPLETIONS,
    base_url="https://openrouter.ai/api/v1",
    api_key_env="OPENROUTER_API_KEY",
    headers={
        "HTTP-Referer": "https://github.com/metered-gateway",
        "X-Title": "metered-gateway",
    },
    models=_models(
        ProviderId.OPENROUTER,
        ("openai/gpt-4o-mini", 128_000, 0.15, 0.60),
        ("anthropic/claude-sonnet-4.5", 200_000, 3.00, 15.00),
        ("google/gemini-2.5-flash", 1_048_576, 0.30, 2.50),
        ("deepseek/deepseek-chat", 128_000, None, None),
    ),
)

BUILTIN_PROVIDERS: tuple[ProviderSpec, ...] = (OPENAI, ANTHROPIC, GOOGLE, DEEPSEEK, OPENROUTER)


def compat_provider_spec(entry: CompatProviderConfig) -> ProviderSpec:
    """Turn a configured OpenAI-compatible vendor into a catalog entry."""
    models = tuple(
        ModelDescriptor(
            id=model.id,
            provider_id=entry.id,
            context_window=model.context_window,
            supports_tools=model.supports_tools,
            input_price_per_million=model.input_price_per_million,
            output_price_per_million=model.output_price_per_million,
            quirks=frozenset(model.quirks),
            display_name=model.display_name or "",
        )
        for model in entry.models
    )
    return ProviderSpec(
        descriptor=ProviderDescriptor(
            id=entry.id,
            display_name=entry.display_name or entry.id,
            requires_api_key=entry.requires_api_key,
        ),
        family=AdapterFamily.OPENAI,
        default_endpoint=Endpoint.CHAT_COMPLETIONS,
        models=models,
        base_url=entry.base_url,
        headers=dict(entry.headers),
        api_key_env=entry.api_key_env,
    )


class ProviderCatalog:
    """Immutable lookup of provider specs, in declaration order."""

    def __init__(self, specs: Iterable[ProviderSpec]) -> None:
        ordered: dict[str, ProviderSpec] = {}
        for spec in specs:
            if spec.id in ordered:
                msg = f"Duplicate provider id in catalog: {spec.id}"
                raise ValueError(msg)
            ordered[spec.id] = spec
        self._specs: Mapping[str, ProviderSpec] = MappingProxyType(ordered)

    @classmethod
    def builtin(cls) -> ProviderCatalog:
        return cls(BUILTIN_PROVIDERS)

    @classmethod
    def from_config(cls, config: GatewayConfig) -> ProviderCatalog:
        """Built-in providers followed by ``config.compat_providers``."""
        return cls(
            [*BUILTIN_PROVIDERS, *(compat_provider_spec(e) for e in config.compat_providers)]
        )

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._specs

    def get(self, provider_id: str) -> ProviderSpec:
        spec = self._specs.get(provider_id)
        if spec is None:
            raise ProviderNotFoundError(provider_id)
        return spec

    def providers(self) -> list[ProviderDescriptor]:
        return [spec.descriptor for spec in self._specs.values()]

    def list_models(self, provider_id: str) -> tuple[ModelDescriptor, ...]:
        return self.get(provider_id).models
