"""Remote (procedure) calls between process contexts.

Much like :mod:`asyncio`'s transports and protocols, the messaging layer is divided
into low-level and high-level APIs:

* The low-level API, :class:`walletrpc.transport.Node` and its implementations, deal
  with moving discrete messages across a context boundary.
* The high-level API, :class:`Endpoint`, implements request/reply semantics on top of
  those one-way primitives. Most consumers should use the high-level API.

Every message is a JSON-compatible mapping::

    {"type": "request", "id": 7, "method": "account.unlock", "args": ["hunter2"],
     "source": "popup", "destination": "background"}
    {"type": "reply", "id": 7, "value": null,
     "source": "background", "destination": "popup"}

A reply ``value`` of the form ``{"error": "<message>"}`` is an error descriptor. No
live exception ever crosses a context boundary.

Message IDs are integers or strings. Any other ``id`` (including floats and booleans)
marks the message as malformed.
"""

import asyncio
import contextlib
import enum
import functools
import inspect
import random
import types
import typing
from collections.abc import Callable, Iterator, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Generic, NoReturn, Optional, Protocol, TypeVar, Union

from . import log
from .exception import WalletBaseException
from .transport import DataCloneError, Node, Responder, structured_clone

__all__ = [
    'Endpoint',
    'EndpointName',
    'Handler',
    'MessageType',
    'RemoteCallError',
    'RequestTracker',
    'error_descriptor',
    'is_error_descriptor',
    'make_reply',
    'make_request',
    'route',
    'validate_message',
]


class RemoteCallError(WalletBaseException):
    """Error produced by executing a remote call.

    Parameters:
        message: A human-readable description of the exception.
        context: Machine-readable data.
    """


class MessageType(str, enum.Enum):
    """The message type.

    Attributes:
        REQUEST: Denotes a call. The receiving endpoint always produces a reply.
        REPLY: Denotes the outcome of a call.
    """

    REQUEST = 'request'
    REPLY = 'reply'


class EndpointName(str, enum.Enum):
    """The fixed set of addressable participants."""

    PAGE = 'page'
    BACKGROUND = 'background'
    POPUP = 'popup'


Message = dict[str, Any]
MessageId = Union[int, str]


def _name(value: Union[str, enum.Enum]) -> str:
    return value.value if isinstance(value, enum.Enum) else value


def make_request(
    message_id: MessageId,
    method: Union[str, enum.Enum],
    args: Any,
    /,
    *,
    source: Union[str, EndpointName],
    destination: Union[str, EndpointName],
) -> Message:
    """Build a request message."""
    return {
        'type': MessageType.REQUEST.value,
        'id': message_id,
        'method': _name(method),
        'args': list(args),
        'source': _name(source),
        'destination': _name(destination),
    }


def make_reply(request: Message, value: Any, /) -> Message:
    """Build the reply to a request, addressed back to its source."""
    return {
        'type': MessageType.REPLY.value,
        'id': request['id'],
        'value': value,
        'source': request['destination'],
        'destination': request['source'],
    }


def error_descriptor(message: str, /) -> dict[str, str]:
    """Build the serializable form of an error."""
    return {'error': message}


def is_error_descriptor(value: Any, /) -> bool:
    """Whether a reply value denotes an error.

    Example:
        >>> is_error_descriptor({'error': 'vault is locked'})
        True
        >>> is_error_descriptor({'error': 'vault is locked', 'code': 1})
        False
    """
    return (
        isinstance(value, dict)
        and set(value) == {'error'}
        and isinstance(value['error'], str)
    )


def validate_message(message: Any, /) -> MessageType:
    """Check that an object is a well-formed message.

    Returns:
        The message type.

    Raises:
        ValueError: If the object is malformed.
    """
    if not isinstance(message, dict):
        raise ValueError('message must be a mapping')
    try:
        message_type = MessageType(message.get('type'))
    except ValueError as exc:
        raise ValueError('unknown message type') from exc
    message_id = message.get('id')
    if isinstance(message_id, bool) or not isinstance(message_id, (int, str)):
        raise ValueError('message ID must be an integer or string')
    for key in ('source', 'destination'):
        if not isinstance(message.get(key), str):
            raise ValueError(f'message {key} must be a string')
    if message_type is MessageType.REQUEST:
        if not isinstance(message.get('method'), str):
            raise ValueError('request method must be a string')
        if not isinstance(message.get('args'), list):
            raise ValueError('request arguments must be a list')
    elif 'value' not in message:
        raise ValueError('reply must contain a value')
    return message_type


ResponseType = TypeVar('ResponseType')


@dataclass
class RequestTracker(Generic[ResponseType]):
    """Track outstanding requests and their results.

    Every request is associated with a unique request ID (an integer). Each request is
    settled at most once: its future is discarded the instant a response registers.

    Parameters:
        futures: A mapping from request IDs to futures representing responses.
        lower: Minimum valid request ID.
        upper: Maximum valid request ID.
    """

    futures: MutableMapping[int, asyncio.Future[ResponseType]] = field(
        default_factory=dict,
    )
    lower: int = 0
    upper: int = (1 << 32) - 1

    def __len__(self, /) -> int:
        return len(self.futures)

    def _try_generate_id(self, /) -> int:
        """Attempt to generate a request ID.

        Unlike :meth:`generate_uid`, the candidate ID does not need to be unique.
        """
        return random.randint(self.lower, self.upper)

    def generate_uid(self, /, *, attempts: int = 10) -> int:
        """Generate a unique request ID.

        Parameters:
            attempts: The maximum number of times to try to generate an ID.

        Raises:
            ValueError: If the tracker could not generate a unique ID. If the ID space
                is sufficiently large, this error is exceedingly rare.
        """
        for _ in range(attempts):
            request_id = self._try_generate_id()
            if request_id not in self.futures:
                return request_id
        raise ValueError('unable to generate a request ID')

    @contextlib.contextmanager
    def new_request(
        self,
        /,
        request_id: Optional[int] = None,
    ) -> Iterator[tuple[int, asyncio.Future[ResponseType]]]:
        """Register a new request.

        The request is forgotten when the context exits, whether or not a response
        arrived. A caller that stops waiting (for example, because of a timeout) leaves
        nothing behind.

        Parameters:
            request_id: A unique request identifier. If not provided, a request ID is
                randomly generated.

        Returns:
            The request ID and a future representing the outcome of the request.
        """
        if request_id is None:
            request_id = self.generate_uid()
        elif request_id in self.futures:
            raise ValueError('request ID already exists')
        future = self.futures[request_id] = asyncio.get_running_loop().create_future()
        try:
            yield request_id, future
        finally:
            if self.futures.get(request_id) is future:
                del self.futures[request_id]

    def register_response(
        self,
        /,
        request_id: int,
        result: Union[BaseException, ResponseType],
    ) -> None:
        """Register a request's response.

        Parameters:
            request_id: The request identifier returned from :meth:`new_request`.
            result: The response or exception.

        Raises:
            KeyError: If the request is not outstanding.
        """
        future = self.futures.pop(request_id)
        if future.done():
            return
        if isinstance(result, BaseException):
            future.set_exception(result)
        else:
            future.set_result(result)


Method = Callable[..., Any]


class RemoteMethod(Protocol):
    """A remotely callable method (any signature, any return value)."""

    __remote__: str

    def __call__(self, /, *args: Any, **kwargs: Any) -> Any:
        ...


@typing.overload
def route(method_or_name: str, /) -> Callable[[Method], RemoteMethod]:
    ...


@typing.overload
def route(method_or_name: Method, /) -> RemoteMethod:
    ...


def route(
    method_or_name: Union[str, enum.Enum, Method],
    /,
) -> Union[RemoteMethod, Callable[[Method], RemoteMethod]]:
    """Decorator for marking a bound method as a remote call target.

    Parameters:
        method_or_name: Either the method to be registered or the name it should be
            registered under. If the former, the method name is exposed to the
            :class:`Endpoint`. The latter is needed for dotted names such as
            ``popup.updateState``.

    Returns:
        Either an identity decorator (if a name was provided) or the method provided.
    """
    if isinstance(method_or_name, (str, enum.Enum)):
        name = _name(method_or_name)

        def decorator(method: Callable[..., Any]) -> RemoteMethod:
            remote_method = typing.cast(RemoteMethod, method)
            remote_method.__remote__ = name
            return remote_method

        return decorator
    remote_method = typing.cast(RemoteMethod, method_or_name)
    remote_method.__remote__ = method_or_name.__name__
    return remote_method


class Handler:
    """An object whose bound methods are exposed to remote callers.

    Define a handler by subclassing :class:`Handler` and applying the :func:`route`
    decorator, then pass an instance to :meth:`Endpoint.register_handler`:

    >>> class CustomHandler(Handler):
    ...     @route
    ...     async def method1(self, arg: int) -> int:
    ...         ...
    ...     @route('popup.updateState')
    ...     def method2(self, state):
    ...         ...
    """

    @functools.cached_property
    def routes(self) -> dict[str, types.MethodType]:
        """A mapping of method names to (possibly coroutine) bound methods."""
        # Need to use the class to avoid calling `getattr(...)` on this property.
        # Accessing bound methods directly can lead to infinite recursion.
        funcs = inspect.getmembers(self.__class__, inspect.isfunction)
        funcs = [(attr, func) for attr, func in funcs if hasattr(func, '__remote__')]
        return {func.__remote__: getattr(self, attr) for attr, func in funcs}


EndpointType = TypeVar('EndpointType', bound='Endpoint')


@dataclass
class Endpoint:
    """One side of the remote call protocol.

    An endpoint owns a method registry (the calls it can answer) and a request tracker
    (the calls it has issued and is still waiting on). Every outgoing message is stamped
    with the endpoint's identity; an incoming message is only processed when it is
    addressed from the endpoint's peer to the endpoint itself. Everything else, such as
    the loopback of the endpoint's own posts or traffic meant for a sibling endpoint, is
    silently discarded.

    A single task receives messages. Each message is then processed in its own task, so
    a slow handler never holds up other requests or replies. Handlers must not assume
    mutual exclusion against each other.

    Parameters:
        node: The message transceiver.
        source: This endpoint's name.
        destination: The peer's name.
        log_messages: Whether to log every call and dispatch, including payloads.
        logger: A logger instance.
        requests: Calls issued but not yet settled.
        registry: A mapping of method names to handlers. Registering a name twice
            replaces the earlier handler.
    """

    node: Node
    source: EndpointName
    destination: EndpointName
    log_messages: bool = False
    logger: log.AsyncLogger = field(default_factory=log.get_logger)
    requests: RequestTracker[Any] = field(default_factory=RequestTracker)
    registry: dict[str, Method] = field(default_factory=dict)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set, init=False, repr=False)
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        self.source, self.destination = EndpointName(self.source), EndpointName(self.destination)
        self.logger = self.logger.bind(
            source=self.source.value,
            destination=self.destination.value,
        )

    async def __aenter__(self: EndpointType, /) -> EndpointType:
        await self.stack.__aenter__()
        self.node = await self.stack.enter_async_context(self.node)
        worker = asyncio.create_task(self._process_forever(), name='process-msg')
        self.stack.callback(self._cancel_tasks)
        self.stack.callback(worker.cancel)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        return await self.stack.__aexit__(exc_type, exc, traceback)

    def _cancel_tasks(self, /) -> None:
        for task in list(self.tasks):
            task.cancel()

    def _spawn(self, coro: Any, /, *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def register(self, method: Union[str, enum.Enum], handler: Method, /) -> None:
        """Register a handler under a method name (last registration wins)."""
        if not callable(handler):
            raise ValueError('handler must be callable')
        self.registry[_name(method)] = handler

    def register_handler(self, handler: Handler, /) -> None:
        """Register every routed method of a :class:`Handler`."""
        for method, func in handler.routes.items():
            self.register(method, func)

    async def _process_forever(self, /) -> NoReturn:
        """Receive messages indefinitely and process each one in its own task."""
        while True:
            message, responder = await self.node.recv()
            self._spawn(self._process(message, responder), name='dispatch')

    async def _process(self, message: Any, responder: Responder, /) -> None:
        reply = None
        try:
            reply = await self.handle_message(message)
        except (ValueError, WalletBaseException) as exc:
            await self.logger.aerror('Endpoint failed to process message', exc_info=exc)
        finally:
            self.node.respond(responder, reply)

    def _is_addressed_to_self(self, message: Message, /) -> bool:
        return (
            message['destination'] == self.source.value
            and message['source'] == self.destination.value
        )

    async def handle_message(self, message: Any, /) -> Optional[Message]:
        """Process an incoming message.

        Returns:
            The reply to send back if the message is a request addressed to this
            endpoint, ``None`` otherwise.
        """
        try:
            message_type = validate_message(message)
        except ValueError as exc:
            if self.log_messages:
                await self.logger.adebug('Endpoint dropped malformed message', reason=str(exc))
            return None
        if not self._is_addressed_to_self(message):
            return None
        if message_type is MessageType.REQUEST:
            return await self._dispatch(message)
        await self._settle(message)
        return None

    async def _dispatch(self, request: Message, /) -> Message:
        method, args = request['method'], request['args']
        if self.log_messages:
            await self.logger.adebug(
                'Endpoint received request',
                method=method,
                args=args,
                message_id=request['id'],
            )
        handler = self.registry.get(method)
        if not handler:
            await self.logger.awarning('No such method exists', method=method)
            return make_reply(request, error_descriptor(f'method not found: {method}'))
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                result = await result
            value = structured_clone(result)
        except DataCloneError:
            await self.logger.aerror('Method returned a value that cannot be cloned', method=method)
            value = error_descriptor(f'{method} returned a value that cannot be cloned')
        except Exception as exc:
            await self.logger.aerror(
                'Method produced an error',
                method=method,
                message_id=request['id'],
                exc_info=exc,
            )
            value = error_descriptor(str(exc) or exc.__class__.__name__)
        reply = make_reply(request, value)
        if self.log_messages:
            await self.logger.adebug('Endpoint sending reply', method=method, value=value)
        return reply

    async def _settle(self, reply: Message, /) -> None:
        message_id, value = reply['id'], reply['value']
        if is_error_descriptor(value):
            result: Any = RemoteCallError(value['error'], message_id=message_id)
        else:
            result = value
        try:
            self.requests.register_response(message_id, result)
        except KeyError:
            if self.log_messages:
                await self.logger.adebug('Endpoint dropped unexpected reply', message_id=message_id)
            return
        if self.log_messages:
            await self.logger.adebug('Endpoint received reply', message_id=message_id, value=value)

    async def call(self, method: Union[str, enum.Enum], /, *args: Any) -> Any:
        """Issue a remote call and wait for the result.

        There is no built-in timeout. A call whose peer never replies never returns;
        wrap the call in :func:`asyncio.wait_for` to bound the wait.

        Parameters:
            method: Method name.
            args: Method arguments. Must be clone-able.

        Raises:
            RemoteCallError: If the method does not exist or produced an error.
            DataCloneError: If the arguments are not clone-able.
            ValueError: If the request tracker could not generate a unique message ID.
        """
        with self.requests.new_request() as (message_id, result):
            request = make_request(
                message_id,
                method,
                args,
                source=self.source,
                destination=self.destination,
            )
            if self.log_messages:
                await self.logger.adebug(
                    'Issuing remote call',
                    method=request['method'],
                    args=request['args'],
                    message_id=message_id,
                )
            response = await self.node.send(request)
            if response is not None:
                await self.handle_message(response)
            return await result

    def broadcast(self, method: Union[str, enum.Enum], /, *args: Any) -> asyncio.Task[None]:
        """Issue a remote call whose result is discarded.

        No request is tracked, so any reply that comes back is dropped. Broadcasts
        leave in the order they were issued.

        Returns:
            The task sending the request.

        Raises:
            DataCloneError: If the arguments are not clone-able.
        """
        request = make_request(
            self.requests.generate_uid(),
            method,
            structured_clone(list(args)),
            source=self.source,
            destination=self.destination,
        )
        return self._spawn(self._broadcast(request), name='broadcast')

    async def _broadcast(self, request: Message, /) -> None:
        response = await self.node.send(request)
        if self.log_messages:
            await self.logger.adebug(
                'Broadcast remote call',
                method=request['method'],
                args=request['args'],
                responded=response is not None,
            )
        if response is not None:
            await self.handle_message(response)
