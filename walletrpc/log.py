"""Logging configuration.

This module wraps the :mod:`structlog` framework to provide structured logging for
every process context (background, popup, content script, hub). A chain of
"processors" (callables) filters or transforms events produced by log statements.

Library code logs through the async methods of a filtering bound logger
(``await logger.ainfo(...)``), so that rendering and writing never block the event
loop that is also carrying messages.

Note:
    :mod:`structlog` has a notion of *bound* and *unbound* loggers. An *unbound*
    logger is a proxy that borrows its configuration from the global configuration set
    by :func:`walletrpc.log.configure`. Once a logger is bound by calling
    :meth:`structlog.BoundLoggerBase.bind`, the global configuration is copied into the
    logger's local state and frozen.
"""

import functools
import logging
import typing
from typing import Any, Callable, Literal, MutableMapping, Union

import orjson as json
import structlog
import structlog.processors
from structlog.typing import FilteringBoundLogger as AsyncLogger

from .exception import WalletBaseException

__all__ = [
    'AsyncLogger',
    'LEVELS',
    'configure',
    'get_level_num',
    'get_logger',
]


Event = MutableMapping[str, Any]
ProcessorReturnType = Union[Event, str, bytes]
Processor = Callable[[Any, str, Event], ProcessorReturnType]
LEVELS: list[str] = ['debug', 'info', 'warning', 'error', 'critical']
"""Log severity levels, in ascending order of severity.

============ ================================= =========================================
Level        Description                       Example
============ ================================= =========================================
``debug``    Frequent, low-level tracing.      A message is posted to the window.
``info``     Normal operation (default level). A peer connects to the hub.
``warning``  Unusual or anomalous events.      A hub frame has an unknown kind.
``error``    Failure mode.                     A handler raises an exception.
``critical`` Cannot continue running.          The hub socket cannot be bound.
============ ================================= =========================================
"""


def get_logger(*factory_args: Any, **context: Any) -> AsyncLogger:
    """Get an unbound logger with async-compatible methods.

    Parameters:
        factory_args: Positional arguments passed to the logger factory.
        context: Contextual variables added to every event produced by this logger.
    """
    return typing.cast(AsyncLogger, structlog.get_logger(*factory_args, **context))


@functools.lru_cache(maxsize=16)
def get_level_num(level_name: str, /, *, default: int = logging.DEBUG) -> int:
    """Translate a :mod:`logging` level name into its numeric value.

    Parameters:
        level_name: A case-insensitive name, such as ``'DEBUG'``.
        default: The numeric level to return if the name is invalid.

    Example:
        >>> get_level_num('INFO')
        20
        >>> assert get_level_num('DNE') == logging.DEBUG == 10
    """
    level = getattr(logging, level_name.upper(), None)
    return level if isinstance(level, int) else default


def _add_exc_context(_logger: AsyncLogger, _method: str, event: Event, /) -> Event:
    """A processor to add the context of a :class:`WalletBaseException` to the event.

    When the keys of the exception context clash with those of the event, the event's
    entries take priority.
    """
    exception = event.get('exc_info')
    if isinstance(exception, WalletBaseException):
        event = {**exception.context, **event}
    return event


def configure(
    *,
    fmt: Literal['json', 'pretty'] = 'json',
    level: str = 'INFO',
) -> None:
    """Configure :mod:`structlog` with the desired log format and filtering.

    Parameters:
        fmt: The format of events written to standard output.
        level: The minimum log level (inclusive) that should be processed. Severities
            are compared using :func:`walletrpc.log.get_level_num`.

    For development, we recommend the ``'pretty'`` log format, which is human-readable
    and renders exception tracebacks but cannot be parsed:

    .. code-block:: text

        2026-10-17T21:01:22.301992Z [info     ] Hub connected to peer          peer=popup

    In production, we recommend the ``'json'`` format, which produces events in
    `jsonlines <https://jsonlines.org/>`_ format (required entries shown):

    .. code-block:: json

        {"event":"Hub started","level":"info","timestamp":"2026-10-17T21:04:15.507057Z"}
    """
    logging.captureWarnings(True)
    renderers: list[Processor] = []
    logger_factory: Callable[..., Union[structlog.PrintLogger, structlog.BytesLogger]]
    if fmt == 'pretty':
        renderers.append(structlog.dev.ConsoleRenderer(pad_event=40))
        logger_factory = structlog.PrintLogger
    else:
        renderers.append(structlog.processors.format_exc_info)
        renderers.append(structlog.processors.JSONRenderer(serializer=json.dumps))
        logger_factory = structlog.BytesLogger

    structlog.configure(
        cache_logger_on_first_use=True,
        wrapper_class=structlog.make_filtering_bound_logger(get_level_num(level)),
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _add_exc_context,
            structlog.processors.TimeStamper(fmt='iso'),
            *renderers,
        ],
        logger_factory=logger_factory,
    )
