"""Basic streaming usage of metered-gateway."""

import asyncio

from metered_gateway import Gateway, StreamRequest, UserContext


async def main() -> None:
    """Stream one answer and print the usage that was metered for it."""
    # Other settings come from GATEWAY_* env vars. Credits are checked and
    # usage is recorded against the tenant; GATEWAY_TENANT_ID works too.
    context = UserContext(tenant_id="acme", user_id="dev-1")
    async with Gateway(context=context) as gateway:
        request = StreamRequest(
            provider_id="openai",
            model_id="gpt-4o-mini",
            messages=[{"role": "user", "content": "What is the capital of France?"}],
        )
        async for event in gateway.submit(request):
            if event.type == "text-delta":
                print(event.text, end="", flush=True)
            elif event.type == "done" and event.usage is not None:
                print(f"\nTokens: {event.usage.total_tokens}")
                print(f"Cost: ${event.usage.total_cost_usd:.6f}")
            elif event.type == "error":
                print(f"\nFailed: {event.error}")


if __name__ == "__main__":
    asyncio.run(main())
