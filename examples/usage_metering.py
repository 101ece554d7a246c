"""Demonstrates credit checks, usage listeners and cancellation."""

import asyncio

from metered_gateway import Gateway, StreamRequest, UsageRecord, UserContext


def on_usage(record: UsageRecord) -> None:
    status = "ok" if record.success else f"failed ({record.error_message})"
    print(
        f"[usage] {record.provider_id}/{record.model_id} "
        f"in={record.input_tokens} out={record.output_tokens} "
        f"cost=${record.estimated_cost:.6f} {status}"
    )


async def main() -> None:
    """Run a few calls, cutting the last one short."""
    # Needs GATEWAY_BILLING_BASE_URL for real metering; without it requests
    # run unmetered and records are only logged. A tenant is always required.
    async with Gateway(context=UserContext(tenant_id="acme", user_id="dev-1")) as gateway:
        unsubscribe = gateway.subscribe(on_usage)

        status = await gateway.check_credits()
        print(f"Credits left: {status.credits_left}")

        for topic in ("tides", "volcanoes"):
            request = StreamRequest(
                provider_id="google",
                model_id="gemini-2.5-flash",
                messages=[{"role": "user", "content": f"One sentence about {topic}."}],
            )
            async for _event in gateway.submit(request):
                pass

        # Cancel after the first few deltas; the partial turn is still recorded
        request = StreamRequest(
            provider_id="google",
            model_id="gemini-2.5-flash",
            messages=[{"role": "user", "content": "Write a long essay about rivers."}],
        )
        deltas = 0
        async for event in gateway.submit(request):
            if event.type == "text-delta":
                deltas += 1
                if deltas == 3:
                    request.cancellation.cancel()
            elif event.type == "error":
                print(f"Stopped: {event.error}")

        await gateway.drain()
        unsubscribe()


if __name__ == "__main__":
    asyncio.run(main())
