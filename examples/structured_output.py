"""One-shot calls: structured (schema-validated) output and plain text."""

import asyncio

from pydantic import BaseModel

from metered_gateway import Gateway, StructuredRequest, TextRequest, UserContext
from metered_gateway.exceptions import CreditDeniedError, SchemaValidationError


class Answer(BaseModel):
    """Simple answer model."""

    text: str
    confidence: float


async def main() -> None:
    async with Gateway(context=UserContext(tenant_id="acme")) as gateway:
        try:
            resp = await gateway.generate_structured(
                StructuredRequest(
                    provider_id="anthropic",
                    model_id="claude-haiku-4-5-20251001",
                    schema=Answer,
                    prompt="What is the capital of France?",
                )
            )
        except CreditDeniedError as exc:
            print(f"Denied: {exc}")
            return
        except SchemaValidationError as exc:
            print(f"Model output did not match the schema: {exc}")
            return

        print(f"Answer: {resp.content.text}")
        print(f"Confidence: {resp.content.confidence}")
        print(f"Tokens: {resp.usage.total_tokens}")
        print(f"Latency: {resp.latency_ms:.0f}ms")

        completion = await gateway.generate_text(
            TextRequest(
                provider_id="anthropic",
                model_id="claude-haiku-4-5-20251001",
                prompt="Complete: def fibonacci(n):",
                query_text="def fibonacci(n):",
            )
        )
        print(f"Completion: {completion.content}")


if __name__ == "__main__":
    asyncio.run(main())
