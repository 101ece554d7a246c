"""Cooperative cancellation token shared between a caller and one request."""

from __future__ import annotations

import asyncio

from metered_gateway.exceptions import CancellationError


class CancellationToken:
    """Set by the caller, observed by the gateway at its next suspension point.

    Nothing is interrupted pre-emptively: adapters check the token after
    every vendor read, and the orchestrator checks it between events.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation. Idempotent; the first reason wins."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Raise ``CancellationError`` if ``cancel()`` has been called."""
        if self._event.is_set():
            raise CancellationError(self._reason)

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
