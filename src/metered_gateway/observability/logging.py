"""Log rendering for metered-gateway.

Modules log through stdlib ``logging`` with ``extra={...}`` fields;
structlog's ``ProcessorFormatter`` turns every record into one JSON (or
console) line carrying those fields plus any bound request context.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.contextvars import bound_contextvars, merge_contextvars
from structlog.typing import Processor

_CONFIGURED = False

# Field names whose values never reach a log line
_SECRET_KEYS = frozenset({"api_key", "authorization", "plugin_secret", "x-plugin-secret"})

# SDK/transport loggers that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "google_genai")


def redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: mask credential-bearing fields."""
    for key, value in event_dict.items():
        if value and key.lower() in _SECRET_KEYS:
            event_dict[key] = "***"
    return event_dict


def _pre_chain() -> list[Processor]:
    return [
        merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(fmt: str) -> list[Processor]:
    if fmt == "console":
        return [structlog.dev.ConsoleRenderer()]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install the gateway's log handler on the root logger. Runs once per process.

    Args:
        level: Log level name; unknown names fall back to INFO.
        fmt: "json" or "console".
    """
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *_renderer(fmt),
            ],
            foreign_pre_chain=pre_chain,
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # Vendor SDK request logs stay at WARNING unless we are debugging
    if numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def request_context(**fields: Any) -> Iterator[None]:
    """Bind request fields (tenant, provider, model) to every log line inside the block.

    None values are skipped. Not for use across ``yield`` in async
    generators: the binding would leak into the consumer between events.
    """
    with bound_contextvars(**{k: v for k, v in fields.items() if v is not None}):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.stdlib.get_logger(name)
