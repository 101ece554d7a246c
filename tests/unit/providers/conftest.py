"""Fixtures shared by the vendor adapter tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from typing import Any

import pytest


class FakeSDKStream:
    """Stand-in for an SDK's async event stream: iterable, closeable."""

    def __init__(self, events: Iterable[Any], error: Exception | None = None) -> None:
        self._events = list(events)
        self._error = error
        self.closed = False

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        for event in self._events:
            yield event
        if self._error is not None:
            raise self._error

    async def close(self) -> None:
        self.closed = True

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def sdk_stream() -> type[FakeSDKStream]:
    return FakeSDKStream
