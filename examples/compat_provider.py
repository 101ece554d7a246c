"""Adding an OpenAI-compatible vendor (here a local Ollama) through config."""

import asyncio

from metered_gateway import (
    CompatModelConfig,
    CompatProviderConfig,
    Gateway,
    GatewayConfig,
    StreamRequest,
)


async def main() -> None:
    # Same as GATEWAY_COMPAT_PROVIDERS='[{"id": "ollama", ...}]'
    config = GatewayConfig(
        compat_providers=[
            CompatProviderConfig(
                id="ollama",
                display_name="Ollama (local)",
                base_url="http://localhost:11434/v1/",
                requires_api_key=False,
                models=[CompatModelConfig(id="llama3.1", supports_tools=False)],
            )
        ],
        tenant_id="acme",
    )
    async with Gateway(config) as gateway:
        for provider in gateway.list_providers():
            models = ", ".join(m.id for m in gateway.list_models(provider.id))
            print(f"{provider.id:<12} {models}")

        request = StreamRequest(
            provider_id="ollama",
            model_id="llama3.1",
            messages=[{"role": "user", "content": "Say hello in five words."}],
        )
        async for event in gateway.submit(request):
            if event.type == "text-delta":
                print(event.text, end="", flush=True)
            elif event.type == "error":
                print(f"\nFailed: {event.error}")
        print()


if __name__ == "__main__":
    asyncio.run(main())
