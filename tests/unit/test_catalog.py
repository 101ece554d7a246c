"""Tests for the provider catalog and quirk routing."""

from __future__ import annotations

import pytest

from metered_gateway.catalog import (
    BUILTIN_PROVIDERS,
    ProviderCatalog,
    QuirkRule,
    compat_provider_spec,
)
from metered_gateway.config import CompatProviderConfig, GatewayConfig
from metered_gateway.exceptions import ProviderNotFoundError
from metered_gateway.types import Endpoint, Quirk


@pytest.fixture
def catalog() -> ProviderCatalog:
    return ProviderCatalog.builtin()


@pytest.mark.unit
class TestRouting:
    @pytest.mark.parametrize("model_id", ["gpt-5", "gpt-5-mini", "GPT-5-nano", "gpt-5-codex"])
    def test_gpt5_family_routes_to_responses(self, catalog: ProviderCatalog, model_id: str) -> None:
        spec = catalog.get("openai")
        assert spec.resolve_endpoint(model_id) is Endpoint.RESPONSES
        assert Quirk.FIXED_TEMPERATURE in spec.resolve_quirks(model_id)

    def test_codex_routes_to_responses_without_fixed_temperature(
        self, catalog: ProviderCatalog
    ) -> None:
        spec = catalog.get("openai")
        assert spec.resolve_endpoint("codex-mini-latest") is Endpoint.RESPONSES
        assert Quirk.FIXED_TEMPERATURE not in spec.resolve_quirks("codex-mini-latest")

    def test_other_openai_models_use_chat_completions(self, catalog: ProviderCatalog) -> None:
        spec = catalog.get("openai")
        assert spec.resolve_endpoint("gpt-4o-mini") is Endpoint.CHAT_COMPLETIONS
        assert spec.resolve_quirks("gpt-4o-mini") == frozenset()

    def test_routing_is_deterministic(self, catalog: ProviderCatalog) -> None:
        spec = catalog.get("openai")
        assert {spec.resolve_endpoint("gpt-5") for _ in range(5)} == {Endpoint.RESPONSES}

    def test_deepseek_has_no_tools(self, catalog: ProviderCatalog) -> None:
        spec = catalog.get("deepseek")
        assert Quirk.NO_TOOLS in spec.resolve_quirks("deepseek-chat")
        assert Quirk.NO_TOOLS in spec.resolve_quirks("some-future-model")

    def test_google_tools_fallback(self, catalog: ProviderCatalog) -> None:
        spec = catalog.get("google")
        assert spec.route_model("gemini-3-pro", has_tools=True) == "gemini-2.5-flash"
        assert spec.route_model("gemini-3-pro", has_tools=False) == "gemini-3-pro"
        assert spec.route_model("gemini-2.5-pro", has_tools=True) == "gemini-2.5-pro"

    def test_empty_rule_matches_everything(self) -> None:
        rule = QuirkRule(quirks=frozenset({Quirk.NO_TOOLS}))
        assert rule.matches("anything")


@pytest.mark.unit
class TestCatalog:
    def test_builtin_providers_in_order(self, catalog: ProviderCatalog) -> None:
        ids = [p.id for p in catalog.providers()]
        assert ids == ["openai", "anthropic", "google", "deepseek", "openrouter"]

    @pytest.mark.parametrize("spec", BUILTIN_PROVIDERS, ids=lambda s: s.id)
    def test_list_models_non_empty_and_stable(self, spec: object) -> None:
        catalog = ProviderCatalog.builtin()
        provider_id = spec.id  # type: ignore[attr-defined]
        first = catalog.list_models(provider_id)
        assert first
        assert catalog.list_models(provider_id) == first
        assert all(m.provider_id == provider_id for m in first)

    def test_unknown_provider(self, catalog: ProviderCatalog) -> None:
        with pytest.raises(ProviderNotFoundError):
            catalog.get("nope")
        assert "nope" not in catalog

    def test_anthropic_browser_header(self, catalog: ProviderCatalog) -> None:
        headers = catalog.get("anthropic").headers
        assert headers["anthropic-dangerous-direct-browser-access"] == "true"

    def test_unknown_price_stays_none(self, catalog: ProviderCatalog) -> None:
        model = catalog.get("openrouter").find_model("deepseek/deepseek-chat")
        assert model is not None
        assert model.input_price_per_million is None

    def test_duplicate_ids_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate"):
            ProviderCatalog([*BUILTIN_PROVIDERS, BUILTIN_PROVIDERS[0]])


@pytest.mark.unit
class TestCompatProviders:
    def test_config_entry_becomes_openai_family_spec(self) -> None:
        entry = CompatProviderConfig(
            id="ollama",
            base_url="http://localhost:11434/v1/",
            requires_api_key=False,
            models=[{"id": "llama3.1", "input_price_per_million": 0, "output_price_per_million": 0}],
        )
        spec = compat_provider_spec(entry)
        assert spec.family == "openai"
        assert spec.base_url == "http://localhost:11434/v1/"
        assert spec.descriptor.requires_api_key is False
        assert spec.models[0].id == "llama3.1"

    def test_from_config_appends_compat_providers(self) -> None:
        config = GatewayConfig(
            compat_providers=[
                {"id": "local", "base_url": "http://localhost:8000/v1", "models": [{"id": "m"}]}
            ],
            _env_file=None,
        )  # type: ignore[call-arg]
        catalog = ProviderCatalog.from_config(config)
        assert [p.id for p in catalog.providers()][-1] == "local"
        assert catalog.list_models("local")[0].id == "m"
