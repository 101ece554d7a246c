"""Tests for Gateway orchestration: credit gate, streaming, metering."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest
from pydantic import BaseModel

from metered_gateway.config import GatewayConfig
from metered_gateway.exceptions import (
    CancellationError,
    CreditDeniedError,
    ProviderNotFoundError,
    ProviderRejectionError,
    ProviderTransportError,
)
from metered_gateway.gateway import Gateway
from metered_gateway.testing import FakeProviderAdapter
from metered_gateway.types import (
    StreamEvent,
    StreamRequest,
    StructuredRequest,
    TextRequest,
    ToolCall,
    ToolSpec,
    UsageRecord,
)

if TYPE_CHECKING:
    from tests.conftest import FakeBillingBackend


class Answer(BaseModel):
    text: str


def _request(**kwargs: Any) -> StreamRequest:
    fields: dict[str, Any] = {
        "provider_id": "openai",
        "model_id": "gpt-4o-mini",
        "messages": [{"role": "user", "content": "What is in this file?"}],
    }
    fields.update(kwargs)
    return StreamRequest(**fields)


def _structured(**kwargs: Any) -> StructuredRequest[Answer]:
    fields: dict[str, Any] = {
        "provider_id": "openai",
        "model_id": "gpt-4o-mini",
        "schema": Answer,
        "prompt": "Explain this line",
    }
    fields.update(kwargs)
    return StructuredRequest(**fields)


def _text(**kwargs: Any) -> TextRequest:
    fields: dict[str, Any] = {
        "provider_id": "openai",
        "model_id": "gpt-4o-mini",
        "prompt": "Complete this line",
    }
    fields.update(kwargs)
    return TextRequest(**fields)


async def _collect(gateway: Gateway, request: StreamRequest) -> list[StreamEvent]:
    return [event async for event in gateway.submit(request)]


def _recording(gateway: Gateway) -> list[UsageRecord]:
    records: list[UsageRecord] = []
    gateway.subscribe(records.append)
    return records


@pytest.mark.unit
class TestSubmit:
    @pytest.mark.asyncio
    async def test_streams_text_then_done(
        self,
        make_gateway: Callable[..., Gateway],
        fake_adapter: FakeProviderAdapter,
        billing_backend: FakeBillingBackend,
    ) -> None:
        gateway = make_gateway()
        records = _recording(gateway)

        events = await _collect(gateway, _request())
        await gateway.close()

        assert [e.type for e in events] == ["text-delta", "text-delta", "done"]
        assert "".join(e.text for e in events) == "Hello world"
        assert events[-1].usage is not None
        assert events[-1].usage.input_tokens == 100

        assert len(records) == 1
        record = records[0]
        assert record.success
        assert record.input_tokens == 100
        assert record.output_tokens == 50
        assert record.actual_cost == pytest.approx(100 * 0.15 / 1e6 + 50 * 0.60 / 1e6)
        assert record.query_text == "What is in this file?"
        assert record.tenant_id == "tenant-1"
        assert billing_backend.usage_posts[0]["success"] is True
        assert fake_adapter.closed == 1

    @pytest.mark.asyncio
    async def test_request_defaults_filled_from_config(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        gateway = make_gateway()
        await _collect(gateway, _request())
        sent = fake_adapter.calls[0].request
        assert isinstance(sent, StreamRequest)
        assert sent.temperature == 0.7
        assert sent.max_tokens == 4096

    @pytest.mark.asyncio
    async def test_credit_denial_is_error_event_and_zero_token_record(
        self,
        make_gateway: Callable[..., Gateway],
        fake_adapter: FakeProviderAdapter,
        billing_backend: FakeBillingBackend,
    ) -> None:
        billing_backend.summary["CurrentMonthAnalyses"] = 500
        gateway = make_gateway()
        records = _recording(gateway)

        events = await _collect(gateway, _request())

        assert len(events) == 1
        assert events[0].type == "error"
        assert isinstance(events[0].error, CreditDeniedError)
        assert "used all your credits" in events[0].text
        assert fake_adapter.call_count == 0
        assert len(records) == 1
        assert not records[0].success
        assert records[0].total_tokens == 0

    @pytest.mark.asyncio
    async def test_vendor_error_mid_stream(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.fail_with(
            ProviderRejectionError("openai", RuntimeError("overloaded"), 529), after=1
        )
        gateway = make_gateway()
        records = _recording(gateway)

        events = await _collect(gateway, _request())

        assert [e.type for e in events] == ["text-delta", "error"]
        assert isinstance(events[-1].error, ProviderRejectionError)
        assert not records[0].success
        assert "overloaded" in (records[0].error_message or "")
        assert records[0].output_tokens > 0

    @pytest.mark.asyncio
    async def test_stream_without_done_is_an_error(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.script([StreamEvent.text_delta("cut off")])
        gateway = make_gateway()
        records = _recording(gateway)

        events = await _collect(gateway, _request())

        assert events[-1].type == "error"
        assert not records[0].success

    @pytest.mark.asyncio
    async def test_unknown_provider(self, make_gateway: Callable[..., Gateway]) -> None:
        gateway = make_gateway()
        records = _recording(gateway)

        events = await _collect(gateway, _request(provider_id="nope"))

        assert events[-1].type == "error"
        assert isinstance(events[-1].error, ProviderNotFoundError)
        assert len(records) == 1
        assert not records[0].success

    @pytest.mark.asyncio
    async def test_one_record_per_attempt(self, make_gateway: Callable[..., Gateway]) -> None:
        gateway = make_gateway()
        records = _recording(gateway)
        for _ in range(3):
            await _collect(gateway, _request())
        assert len(records) == 3


@pytest.mark.unit
class TestCancellation:
    @pytest.mark.asyncio
    async def test_token_cancel_mid_stream_records_partial_tokens(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.script_text("a" * 40, "b" * 40, "c" * 40)
        gateway = make_gateway()
        records = _recording(gateway)
        request = _request()

        events: list[StreamEvent] = []
        async for event in gateway.submit(request):
            events.append(event)
            if event.type == "text-delta":
                request.cancellation.cancel("user pressed stop")

        assert [e.type for e in events] == ["text-delta", "error"]
        assert isinstance(events[-1].error, CancellationError)
        record = records[0]
        assert not record.success
        assert record.error_message == "user pressed stop"
        assert record.output_tokens == 10
        assert record.total_tokens > 0

    @pytest.mark.asyncio
    async def test_cancel_before_start_skips_vendor(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        request = _request()
        request.cancellation.cancel()
        gateway = make_gateway()
        records = _recording(gateway)

        events = await _collect(gateway, request)

        assert events[-1].type == "error"
        assert fake_adapter.call_count == 0
        assert records[0].total_tokens == 0

    @pytest.mark.asyncio
    async def test_consumer_close_records_cancelled_attempt(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        gateway = make_gateway()
        records = _recording(gateway)

        stream = gateway.submit(_request())
        first = await stream.__anext__()
        await stream.aclose()

        assert first.type == "text-delta"
        assert len(records) == 1
        assert not records[0].success
        assert records[0].error_message == "Stream closed by caller"
        assert records[0].output_tokens > 0
        assert fake_adapter.closed == 1

    @pytest.mark.asyncio
    async def test_task_cancellation_records_attempt(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.hang_after(1)
        gateway = make_gateway()
        records = _recording(gateway)
        started = asyncio.Event()

        async def consume() -> None:
            async for _event in gateway.submit(_request()):
                started.set()

        task = asyncio.create_task(consume())
        await asyncio.wait_for(started.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(records) == 1
        assert not records[0].success


@pytest.mark.unit
class TestTools:
    @pytest.mark.asyncio
    async def test_tool_call_is_executed_once(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        seen: list[dict[str, Any]] = []

        async def lookup(arguments: dict[str, Any]) -> str:
            seen.append(arguments)
            return "42 rows"

        fake_adapter.script_text(
            "Checking", tool_calls=[ToolCall(id="call_1", name="lookup", arguments={"q": "x"})]
        )
        gateway = make_gateway()

        events = await _collect(gateway, _request(tools=[ToolSpec("lookup", execute=lookup)]))

        assert [e.type for e in events] == ["text-delta", "tool-call", "tool-result", "done"]
        result = events[2].tool_result
        assert result is not None
        assert result.tool_call_id == "call_1"
        assert result.result == "42 rows"
        assert not result.is_error
        assert seen == [{"q": "x"}]

    @pytest.mark.asyncio
    async def test_tool_failure_becomes_error_result(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        async def broken(arguments: dict[str, Any]) -> str:
            raise RuntimeError("db offline")

        fake_adapter.script_text(tool_calls=[ToolCall(id="c", name="broken")])
        gateway = make_gateway()

        events = await _collect(gateway, _request(tools=[ToolSpec("broken", execute=broken)]))

        result = events[1].tool_result
        assert result is not None
        assert result.is_error
        assert result.result == "db offline"
        assert events[-1].type == "done"

    @pytest.mark.asyncio
    async def test_tool_without_executor_is_only_forwarded(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.script_text(tool_calls=[ToolCall(id="c", name="client_side")])
        gateway = make_gateway()

        events = await _collect(gateway, _request(tools=[ToolSpec("client_side")]))

        assert [e.type for e in events] == ["tool-call", "done"]

    @pytest.mark.asyncio
    async def test_google_tool_requests_use_fallback_model(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        gateway = make_gateway()
        records = _recording(gateway)

        await _collect(
            gateway,
            _request(provider_id="google", model_id="gemini-3-pro", tools=[ToolSpec("t")]),
        )

        assert fake_adapter.calls[0].model_id == "gemini-2.5-flash"
        assert records[0].model_id == "gemini-2.5-flash"


@pytest.mark.unit
class TestGenerateStructured:
    @pytest.mark.asyncio
    async def test_success(
        self,
        make_gateway: Callable[..., Gateway],
        fake_adapter: FakeProviderAdapter,
        billing_backend: FakeBillingBackend,
    ) -> None:
        fake_adapter.set_response(Answer, Answer(text="It reads a config file."))
        gateway = make_gateway()
        records = _recording(gateway)

        response = await gateway.generate_structured(_structured(query_text="line 3"))
        await gateway.drain()

        assert response.content == Answer(text="It reads a config file.")
        assert response.usage.total_tokens == 150
        assert records[0].success
        assert records[0].request_type == "inline"
        assert records[0].query_text == "line 3"
        assert records[0].total_tokens == 150
        assert len(billing_backend.usage_posts) == 1

    @pytest.mark.asyncio
    async def test_denial_raises(
        self,
        make_gateway: Callable[..., Gateway],
        fake_adapter: FakeProviderAdapter,
        billing_backend: FakeBillingBackend,
    ) -> None:
        billing_backend.summary_status = 403
        gateway = make_gateway()
        records = _recording(gateway)

        with pytest.raises(CreditDeniedError) as exc_info:
            await gateway.generate_structured(_structured())

        assert not exc_info.value.status.has_credits
        assert fake_adapter.call_count == 0
        assert not records[0].success
        assert records[0].total_tokens == 0

    @pytest.mark.asyncio
    async def test_cancellation_while_waiting_on_vendor(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.hold_structured()
        fake_adapter.set_response(Answer, Answer(text="never"))
        gateway = make_gateway()
        records = _recording(gateway)
        request = _structured()

        task = asyncio.create_task(gateway.generate_structured(request))
        while not fake_adapter.calls:
            await asyncio.sleep(0)
        request.cancellation.cancel("closed the panel")

        with pytest.raises(CancellationError, match="closed the panel"):
            await task
        assert not records[0].success
        assert records[0].error_message == "closed the panel"

    @pytest.mark.asyncio
    async def test_transport_error_without_retries(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.fail_with(ProviderTransportError("openai", ConnectionError("reset")))
        fake_adapter.set_response(Answer, Answer(text="x"))
        gateway = make_gateway()

        with pytest.raises(ProviderTransportError):
            await gateway.generate_structured(_structured())
        assert fake_adapter.call_count == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(
        self,
        billing_client: Any,
        fake_adapter: FakeProviderAdapter,
        static_credentials: Any,
        user_context: Any,
    ) -> None:
        config = GatewayConfig(max_retries=1, _env_file=None)  # type: ignore[call-arg]
        fake_adapter.fail_with(
            ProviderTransportError("openai", ConnectionError("reset")), times=1
        )
        fake_adapter.set_response(Answer, Answer(text="second time"))
        gateway = Gateway(
            config,
            billing=billing_client,
            context=user_context,
            credentials=static_credentials,
            adapter_factory=fake_adapter.factory,
        )
        records = _recording(gateway)

        response = await gateway.generate_structured(_structured())

        assert response.content.text == "second time"
        assert fake_adapter.call_count == 2
        assert len(records) == 1
        assert records[0].success


@pytest.mark.unit
class TestGenerateText:
    @pytest.mark.asyncio
    async def test_success(
        self,
        make_gateway: Callable[..., Gateway],
        fake_adapter: FakeProviderAdapter,
        billing_backend: FakeBillingBackend,
    ) -> None:
        fake_adapter.script_text("const x = ", "1;")
        gateway = make_gateway()
        records = _recording(gateway)

        response = await gateway.generate_text(_text(query_text="const x"))
        await gateway.drain()

        assert response.content == "const x = 1;"
        assert response.provider == "openai"
        assert response.usage.total_tokens == 150
        assert records[0].success
        assert records[0].request_type == "inline"
        assert records[0].query_text == "const x"
        assert records[0].total_tokens == 150
        assert len(billing_backend.usage_posts) == 1

    @pytest.mark.asyncio
    async def test_prompt_sent_as_single_user_message(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        await make_gateway().generate_text(_text(request_type="completion"))

        sent = fake_adapter.calls[0].request
        assert isinstance(sent, StreamRequest)
        assert list(sent.messages) == [{"role": "user", "content": "Complete this line"}]
        assert sent.request_type == "completion"
        assert sent.temperature is not None
        assert sent.max_tokens

    @pytest.mark.asyncio
    async def test_denial_raises(
        self,
        make_gateway: Callable[..., Gateway],
        fake_adapter: FakeProviderAdapter,
        billing_backend: FakeBillingBackend,
    ) -> None:
        billing_backend.summary_status = 403
        gateway = make_gateway()
        records = _recording(gateway)

        with pytest.raises(CreditDeniedError):
            await gateway.generate_text(_text())

        assert fake_adapter.call_count == 0
        assert not records[0].success
        assert records[0].total_tokens == 0

    @pytest.mark.asyncio
    async def test_cancellation_mid_stream(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.hang_after(1)
        gateway = make_gateway()
        records = _recording(gateway)
        request = _text()

        task = asyncio.create_task(gateway.generate_text(request))
        while not fake_adapter.calls:
            await asyncio.sleep(0)
        request.cancellation.cancel("closed the panel")

        with pytest.raises(CancellationError, match="closed the panel"):
            await task
        assert len(records) == 1
        assert records[0].error_message == "closed the panel"
        assert fake_adapter.closed == 1

    @pytest.mark.asyncio
    async def test_vendor_error_raises_and_meters_partial_output(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.fail_with(
            ProviderRejectionError("openai", RuntimeError("overloaded"), 529), after=1
        )
        gateway = make_gateway()
        records = _recording(gateway)

        with pytest.raises(ProviderRejectionError):
            await gateway.generate_text(_text())

        assert not records[0].success
        assert records[0].request_type == "inline"
        assert records[0].output_tokens > 0

    @pytest.mark.asyncio
    async def test_stream_without_done_is_rejected(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        fake_adapter.script([StreamEvent.text_delta("half")])
        gateway = make_gateway()
        records = _recording(gateway)

        with pytest.raises(ProviderRejectionError, match="without a done event"):
            await gateway.generate_text(_text())
        assert not records[0].success


@pytest.mark.unit
class TestHostApi:
    @pytest.mark.asyncio
    async def test_check_credits(self, make_gateway: Callable[..., Gateway]) -> None:
        status = await make_gateway().check_credits()
        assert status.has_credits
        assert status.credits_left == 30

    def test_list_providers_and_models(self, make_gateway: Callable[..., Gateway]) -> None:
        gateway = make_gateway()
        assert "anthropic" in [p.id for p in gateway.list_providers()]
        assert gateway.list_models("anthropic")
        with pytest.raises(ProviderNotFoundError):
            gateway.list_models("nope")

    def test_update_context_merges_non_empty(self, make_gateway: Callable[..., Gateway]) -> None:
        gateway = make_gateway()
        context = gateway.update_context(workspace_id="ws-2", user_id="")
        assert context.workspace_id == "ws-2"
        assert context.user_id == "user-1"
        with pytest.raises(TypeError):
            gateway.update_context(region="eu")

    def test_context_is_a_copy(self, make_gateway: Callable[..., Gateway]) -> None:
        gateway = make_gateway()
        gateway.context.tenant_id = "mutated"
        assert gateway.context.tenant_id == "tenant-1"

    @pytest.mark.asyncio
    async def test_unsubscribe_and_failing_listener(
        self, make_gateway: Callable[..., Gateway]
    ) -> None:
        gateway = make_gateway()
        records: list[UsageRecord] = []

        def explode(record: UsageRecord) -> None:
            raise RuntimeError("listener bug")

        gateway.subscribe(explode)
        unsubscribe = gateway.subscribe(records.append)
        await _collect(gateway, _request())
        unsubscribe()
        await _collect(gateway, _request())

        assert len(records) == 1

    @pytest.mark.asyncio
    async def test_without_billing_requests_are_unmetered(
        self,
        test_config: GatewayConfig,
        fake_adapter: FakeProviderAdapter,
        static_credentials: Any,
        user_context: Any,
    ) -> None:
        async with Gateway(
            test_config,
            context=user_context,
            credentials=static_credentials,
            adapter_factory=fake_adapter.factory,
        ) as gateway:
            records = _recording(gateway)
            events = await _collect(gateway, _request())
            status = await gateway.check_credits()

        assert events[-1].type == "done"
        assert records[0].success
        assert status.credits_left == -1

    @pytest.mark.asyncio
    async def test_credentials_passed_to_factory(
        self, make_gateway: Callable[..., Gateway], fake_adapter: FakeProviderAdapter
    ) -> None:
        await _collect(make_gateway(), _request(provider_id="anthropic", model_id="claude-x"))
        provider_id, credentials = fake_adapter.built_for[0]
        assert provider_id == "anthropic"
        assert credentials is not None
        assert credentials.api_key == "anthropic-test-key"
