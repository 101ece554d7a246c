"""Per-request stream session: state machine and token accounting."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum

from metered_gateway.cost import build_token_usage, estimate_prompt_tokens, estimate_tokens
from metered_gateway.exceptions import SessionStateError
from metered_gateway.types import (
    LLMMessage,
    ModelDescriptor,
    RequestType,
    StreamEvent,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    IDLE = "idle"
    CREDIT_CHECK = "credit_check"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    USAGE_RECORDED = "usage_recorded"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED})

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset(
        {SessionState.CREDIT_CHECK, SessionState.FAILED, SessionState.CANCELLED}
    ),
    SessionState.CREDIT_CHECK: frozenset(
        {SessionState.STREAMING, SessionState.FAILED, SessionState.CANCELLED}
    ),
    SessionState.STREAMING: TERMINAL_STATES,
    SessionState.COMPLETED: frozenset({SessionState.USAGE_RECORDED}),
    SessionState.FAILED: frozenset({SessionState.USAGE_RECORDED}),
    SessionState.CANCELLED: frozenset({SessionState.USAGE_RECORDED}),
    SessionState.USAGE_RECORDED: frozenset(),
}


@dataclass
class StreamSession:
    """Transient state of one in-flight request.

    Owned by exactly one gateway call. Token counts come from the vendor's
    final usage report when there is one. An interrupted stream keeps the
    vendor's partial counts and estimates only what they do not cover, so it
    is never billed as zero.
    """

    provider_id: str
    model_id: str
    request_type: RequestType = "chat"
    messages: tuple[LLMMessage, ...] = ()
    system_prompt: str | None = None
    descriptor: ModelDescriptor | None = None
    query_text: str | None = None
    state: SessionState = SessionState.IDLE
    started_at: float = field(default_factory=time.monotonic)
    error_message: str | None = None
    outcome: SessionState | None = None
    _reported_usage: TokenUsage | None = field(default=None, repr=False)
    _usage_final: bool = field(default=False, repr=False)
    _streamed_text: list[str] = field(default_factory=list, repr=False)
    _events_seen: int = field(default=0, repr=False)
    _done_seen: bool = field(default=False, repr=False)

    # ── State machine ───────────────────────────────────────────

    def transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise SessionStateError(self.state, target)
        logger.debug(
            "session_transition | %s -> %s", self.state, target,
            extra={"provider": self.provider_id, "model": self.model_id},
        )
        self.state = target
        if target in TERMINAL_STATES:
            self.outcome = target

    def complete(self) -> None:
        self.transition(SessionState.COMPLETED)

    def fail(self, message: str) -> None:
        self.error_message = message
        self.transition(SessionState.FAILED)

    def cancel(self, message: str = "Request cancelled by caller") -> None:
        self.error_message = message
        self.transition(SessionState.CANCELLED)

    def close_early(self) -> None:
        """The consumer stopped iterating. Completed if ``done`` already arrived."""
        if self._done_seen:
            self.complete()
        else:
            self.cancel("Stream closed by caller")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.outcome is SessionState.COMPLETED

    @property
    def done_seen(self) -> bool:
        return self._done_seen

    # ── Accounting ──────────────────────────────────────────────

    def observe(self, event: StreamEvent) -> None:
        """Account for one adapter event, forwarded to the caller or not."""
        self._events_seen += 1
        if event.type == "text-delta":
            self._streamed_text.append(event.text)
        elif event.type == "usage" and event.usage is not None:
            self._reported_usage = event.usage
        elif event.type == "done":
            self._done_seen = True
            if event.usage is not None:
                self._reported_usage = event.usage
                self._usage_final = True

    def report_usage(self, usage: TokenUsage) -> None:
        """Vendor-metered usage for non-streaming calls."""
        self._reported_usage = usage
        self._usage_final = True

    @property
    def started_streaming(self) -> bool:
        return self._events_seen > 0

    def usage(self) -> TokenUsage:
        """Priced token usage for the attempt so far."""
        reported = self._reported_usage
        if reported is not None and self._usage_final:
            if reported.total_tokens > 0:
                return build_token_usage(
                    self.descriptor, reported.input_tokens, reported.output_tokens
                )
            if not self.started_streaming:
                return TokenUsage()
        elif reported is None and not self.started_streaming:
            return TokenUsage()

        # Partial vendor counts: a reported input count is exact, but output
        # streamed after the last report is not counted yet
        input_tokens = reported.input_tokens if reported is not None else 0
        output_tokens = reported.output_tokens if reported is not None else 0
        return build_token_usage(
            self.descriptor,
            input_tokens or estimate_prompt_tokens(self.messages, self.system_prompt),
            max(output_tokens, estimate_tokens("".join(self._streamed_text))),
        )

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)
