"""Usage recording: one record per request attempt, posted in the background."""

from __future__ import annotations

import asyncio
import logging

from metered_gateway.billing import BillingClient
from metered_gateway.cost import calculate_cost
from metered_gateway.session import StreamSession
from metered_gateway.types import UsageRecord, UserContext

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Builds usage records and ships them to the billing backend.

    Posting is fire-and-forget: ``dispatch`` never blocks the caller and
    ``log_usage`` never raises. With no billing client, records are only
    logged locally.
    """

    def __init__(self, billing: BillingClient | None = None) -> None:
        self._billing = billing
        self._pending: set[asyncio.Task[None]] = set()

    @staticmethod
    def build_record(session: StreamSession, context: UserContext) -> UsageRecord:
        """Snapshot a settled session into a ``UsageRecord``."""
        usage = session.usage()
        descriptor = session.descriptor
        input_price = descriptor.input_price_per_million if descriptor else None
        output_price = descriptor.output_price_per_million if descriptor else None
        cost = calculate_cost(usage.input_tokens, usage.output_tokens, input_price, output_price)

        return UsageRecord(
            tenant_id=context.tenant_id,
            workspace_id=context.workspace_id,
            connection_id=context.connection_id,
            user_id=context.user_id,
            provider_id=session.provider_id,
            model_id=session.model_id,
            request_type=session.request_type,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            duration_ms=session.duration_ms,
            success=session.succeeded,
            error_message=None if session.succeeded else session.error_message,
            query_text=session.query_text,
            input_price_per_million=input_price,
            output_price_per_million=output_price,
            # Client-side estimate; the backend may re-price
            estimated_cost=cost,
            actual_cost=cost,
        )

    async def log_usage(self, record: UsageRecord) -> None:
        """POST one record. Failures are logged and dropped."""
        fields = {
            "provider": record.provider_id,
            "model": record.model_id,
            "success": record.success,
            "input_tokens": record.input_tokens,
            "output_tokens": record.output_tokens,
            "cost_usd": record.actual_cost,
        }
        if self._billing is None:
            logger.info("Usage recorded locally (no billing backend)", extra=fields)
            return

        try:
            response = await self._billing.post_usage(record.to_payload())
        except Exception:
            logger.exception("Failed to post usage record", extra=fields)
            return

        if response.is_success:
            logger.debug("Usage record posted", extra=fields)
        else:
            logger.error(
                "Usage backend rejected record: HTTP %d %s",
                response.status_code,
                response.text,
                extra=fields,
            )

    def dispatch(self, record: UsageRecord) -> None:
        """Schedule ``log_usage`` without awaiting it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(
                "No running event loop; usage record dropped",
                extra={"provider": record.provider_id, "model": record.model_id},
            )
            return
        task = loop.create_task(self.log_usage(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every in-flight post to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
