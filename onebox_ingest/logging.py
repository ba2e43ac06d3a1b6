"""structlog wiring for the ingestion process.

Every record, structlog or plain stdlib, goes through one stdout handler.
JSON mode turns exceptions into structured ``exception`` lists so log
shippers can index them; console mode leaves traceback rendering to
:class:`structlog.dev.ConsoleRenderer`.
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import Processor

# Chatty at INFO; never allowed below WARNING.
_QUIET_LOGGERS = ("aiokafka", "imapclient", "httpx", "httpcore", "openai")


def _pre_chain(json: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json:
        chain.append(structlog.processors.dict_tracebacks)
    return chain


def _stdout_handler(json: bool) -> logging.Handler:
    renderer: Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(json),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    return handler


def _quiet_libraries(root_level: int) -> None:
    floor = max(root_level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(floor)


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Route structlog and stdlib logging to stdout.

    *json* selects JSON lines over the console renderer; *level* is the
    root level name and is case-insensitive.
    """
    structlog.configure(
        processors=[
            *_pre_chain(json),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_stdout_handler(json))
    root.setLevel(level.upper())
    _quiet_libraries(root.level)
