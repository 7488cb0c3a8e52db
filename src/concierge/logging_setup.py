"""
Structured logging for the server process.

Every log line carries the `call_id` bound by the WebSocket handler for the
call it belongs to, via structlog's contextvars integration.
"""

import logging

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    renderer = structlog.dev.ConsoleRenderer() if level == logging.DEBUG else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=level)

    # uvicorn's access log duplicates our own per-request lines
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))


def bind_call(call_id: str) -> None:
    """Attach `call_id` to every log line emitted by the current task."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(call_id=call_id)


def unbind_call() -> None:
    structlog.contextvars.unbind_contextvars("call_id")
