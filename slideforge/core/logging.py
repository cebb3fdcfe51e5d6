"""structlog setup shared by the pipeline, the executor and the backends.

Every log line emitted while a request runs carries that request's id and
routing policy, because ``request_log_context`` binds them into structlog's
context variables and asyncio tasks inherit them.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

_SHARED_PROCESSORS: tuple[Any, ...] = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
)


def configure_logging(level: str = "INFO", *, json_logs: bool = True) -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[*_SHARED_PROCESSORS, renderer],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def request_log_context(*, request_id: str, policy: str, **extra: Any) -> Iterator[None]:
    """Bind request identity to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(request_id=request_id, policy=policy, **extra):
        yield


def get_logger(*, name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    return logger.bind(**kwargs) if kwargs else logger
