"""Process and resource management.

Wrapping other low-level modules, this module provides a high-level interface for
managing the resources of one process: its event loop, the hub, the runtime it attaches
to, and the endpoints it hosts. This module is intended for consumption by the
command-line tools.
"""

import asyncio
import contextlib
import functools
import signal
import threading
import types
from collections.abc import Awaitable, Collection, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Callable, NoReturn, Optional, TypeVar, Union
from urllib.parse import urlsplit, urlunsplit

import zmq.asyncio

from . import log
from .hub import RuntimeHub, SocketRuntime
from .remote import Endpoint, EndpointName
from .transport import RuntimeNode

# isort: unique-list
__all__ = ['Application', 'get_connection', 'resolve_address', 'spin']


def resolve_address(address: str, *, peer: str = '127.0.0.1') -> str:
    """Resolve '*' (all available interfaces in ZMQ) to a concrete address.

    Parameters:
        address: ZMQ address (URL-like).
        peer: The hostname to substitute.

    Returns:
        The address with a concrete hostname (if the protocol requires it).

    Examples:
        >>> resolve_address('tcp://*:6100')
        'tcp://127.0.0.1:6100'
        >>> resolve_address('ipc:///tmp/walletrpc-hub.sock')
        'ipc:///tmp/walletrpc-hub.sock'
    """
    components = urlsplit(address)
    if components.scheme == 'ipc':
        return address
    if components.hostname == '*':
        components = components._replace(netloc=components.netloc.replace('*', peer, 1))
    return urlunsplit(components)


def get_connection(bindings: Collection[str]) -> str:
    """Find an address to connect to from one or more bound addresses.

    Parameters:
        bindings: ZMQ addresses the hub is bound to (URL-like).

    Returns:
        A suitable address to connect to. Addresses with the ``ipc`` protocol are
        prioritized over those that require the IP network stack.

    Raises:
        ValueError: If no bindings are provided.

    Examples:
        >>> get_connection(['tcp://*:6100'])
        'tcp://127.0.0.1:6100'
        >>> get_connection(['tcp://*:6100', 'ipc:///tmp/walletrpc-hub.sock'])
        'ipc:///tmp/walletrpc-hub.sock'
        >>> get_connection([])
        Traceback (most recent call last):
          ...
        ValueError: must provide at least one address
    """
    if not bindings:
        raise ValueError('must provide at least one address')
    key = lambda address: float('-inf') if address.startswith('ipc') else float('inf')
    address, *_ = sorted(map(resolve_address, bindings), key=key)
    return address


async def spin(
    func: Callable[..., Awaitable[Any]],
    /,
    *args: Any,
    interval: float = 1,
    **kwargs: Any,
) -> NoReturn:
    """Periodically execute an async callback.

    Parameters:
        func: Async callback.
        args: Positonal arguments to the callback.
        interval: Duration (in seconds) between calls. The callback is allowed to run
            for longer than the interval.
        kwargs: Keyword arguments to the callback.
    """
    while True:
        await asyncio.gather(asyncio.sleep(interval), func(*args, **kwargs))


RT = TypeVar('RT')


def enter_async_context(
    wrapped: Callable[..., Awaitable[AsyncContextManager[RT]]],
) -> Callable[..., Awaitable[RT]]:
    """Decorator that adds an async context manager to an async exit stack."""

    @functools.wraps(wrapped)
    async def wrapper(self: 'Application', /, *args: Any, **kwargs: Any) -> RT:
        resource = await wrapped(self, *args, **kwargs)
        return await self.stack.enter_async_context(resource)

    return wrapper


@dataclass
class Application:
    """An application opens and closes resources created from command-line options.

    Generally, you create one :class:`Application` per main function, like so::

        >>> async def main(**options):
        ...     async with Application('my-app', options) as app:
        ...         ...

    An :class:`Application` produces :class:`RuntimeHub`, :class:`SocketRuntime`, and
    :class:`Endpoint` instances in common configurations. It also configures the
    :mod:`asyncio` loop and logging framework, which are needed to make the messaging
    components work.

    Parameters:
        name: The name of the application (preferably kebab case and unique across all
            applications). Used as the ZMQ identity of the application's runtime.
        options: A map of option names to their values.
        stack: The stack that the app's resources are pushed on.
        logger: A logger instance (may not be bound).
    """

    name: str
    options: Mapping[str, Any]
    stack: contextlib.AsyncExitStack = field(default_factory=contextlib.AsyncExitStack)
    logger: log.AsyncLogger = field(default_factory=log.get_logger)

    async def __aenter__(self, /) -> 'Application':
        self.configure_loop()
        await self.stack.__aenter__()
        self.stack.push_async_callback(self._terminate_zmq_context)
        log.configure(fmt=self.options['log_format'], level=self.options['log_level'])
        self.logger = self.logger.bind(app=self.name)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        hide_exc = await self.stack.__aexit__(exc_type, exc, traceback)
        if exc_type and issubclass(exc_type, asyncio.CancelledError):
            await self.logger.ainfo('Application is exiting')
            return True
        return hide_exc

    async def _terminate_zmq_context(self, /) -> None:
        zmq.asyncio.Context.instance().term()
        await self.logger.adebug('ZMQ context terminated')

    @functools.cached_property
    def executor(self, /) -> ThreadPoolExecutor:
        """A thread pool executor for running synchronous tasks."""
        # pylint: disable=consider-using-with
        # Closed by ``asyncio.AbstractEventLoop.shutdown_default_executor``
        return ThreadPoolExecutor(
            max_workers=self.options['thread_pool_workers'],
            thread_name_prefix='aioworker',
        )

    def _handle_exc(
        self,
        loop: asyncio.AbstractEventLoop,
        ctx: dict[str, Any],
        /,
    ) -> None:
        context = {}
        if exception := ctx.get('exception'):
            context['exc_info'] = exception
        if future := ctx.get('future'):
            context['done'] = future.done()
            if isinstance(future, asyncio.Task):
                context['task_name'] = future.get_name()
        loop.create_task(asyncio.to_thread(self.logger.error, ctx['message'], **context))

    def configure_loop(self, /) -> None:
        """Configure the current :mod:`asyncio` loop and environment.

        * Sets the debug flag, default executor, and exception handler, which logs
          exceptions produced by event loop callbacks.
        * Set the current task and thread names.
        * If this method is called in the main thread, set signal handlers for
          ``SIGINT`` and ``SIGTERM`` that cancel the current task.

        Note:
            This method assumes the current task is the main task.
        """
        loop = asyncio.get_running_loop()
        loop.set_debug(self.options['debug'])
        loop.set_default_executor(self.executor)
        loop.set_exception_handler(self._handle_exc)
        current_thread = threading.current_thread()
        current_thread.name = f'{self.name}-main'
        current_task = asyncio.current_task()
        if not current_task:
            return
        current_task.set_name('main')
        if current_thread is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(
                    signum,
                    current_task.cancel,
                    f'received signal {signum}: {signal.strsignal(signum)}',
                )

    async def _health_cb(self, /) -> None:
        await self.logger.ainfo(
            'Health check',
            thread_count=threading.active_count(),
            task_count=len(asyncio.all_tasks()),
        )

    def report_health(self, /) -> asyncio.Task[NoReturn]:
        """Schedule a task to periodically log the health of this process."""
        return asyncio.create_task(
            spin(self._health_cb, interval=self.options['health_check_interval']),
            name='report-health',
        )

    @enter_async_context
    async def make_hub(self, /) -> RuntimeHub:
        """Make a hub bound to the configured addresses."""
        hub = RuntimeHub.bind(self.options['hub_address'])
        hub.logger = self.logger.bind(name='hub')
        return hub

    @enter_async_context
    async def make_runtime(self, /) -> SocketRuntime:
        """Make a runtime connected to the hub.

        The socket's identity is the app name, so the hub's logs name the app.
        """
        connection = get_connection(self.options['hub_address'])
        runtime = SocketRuntime.connect(connection, identity=self.name.encode())
        runtime.logger = self.logger.bind(name='runtime')
        return runtime

    @enter_async_context
    async def make_endpoint(
        self,
        /,
        runtime: SocketRuntime,
        source: Union[str, EndpointName],
        destination: Union[str, EndpointName],
        *,
        context: str = '',
    ) -> Endpoint:
        """Make and start an endpoint attached to a runtime.

        Parameters:
            runtime: The runtime the endpoint's node attaches to.
            source: The endpoint's name.
            destination: The peer's name.
            context: The process context of the node. If not provided, the node gets a
                context of its own.
        """
        # pylint: disable=unexpected-keyword-arg; dataclass not recognized
        return Endpoint(
            RuntimeNode(runtime, context=context),
            source=EndpointName(source),
            destination=EndpointName(destination),
            log_messages=self.options['log_messages'],
            logger=self.logger.bind(name='endpoint'),
        )
