"""Message transports.

An extension has two native messaging primitives, and every process context talks
through one or both of them:

* The page-local broadcast (``window.postMessage(message, '*')``). Every listener in
  the window receives a structured clone of the message, including the poster itself.
  There is no return channel. Only the injected page and its content script share a
  window.
* The runtime-wide primitive (``runtime.sendMessage(message)``). Every listener in
  every *other* context receives the message. The sender's awaitable resolves with the
  first non-empty response a listener produces, or ``None`` if no listener responds.

This module models both primitives as in-process buses (:class:`Window` and
:class:`Runtime`) and wraps them in :class:`Node` objects, which present a uniform
interface to :class:`walletrpc.remote.Endpoint` and :class:`walletrpc.relay.ContentRelay`.
:class:`walletrpc.hub.SocketRuntime` carries the runtime primitive between OS
processes.

Only structurally clone-able (JSON-compatible) payloads may cross a bus. Receivers
always get their own copy, so no mutable state is ever shared between contexts.
"""

import abc
import asyncio
import contextlib
import types
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, TypeVar

import orjson as json

from .exception import WalletBaseException

__all__ = [
    'DataCloneError',
    'Delivery',
    'MessageBus',
    'Node',
    'Runtime',
    'RuntimeNode',
    'Window',
    'WindowNode',
    'first_response',
    'structured_clone',
]


class DataCloneError(WalletBaseException):
    """A payload could not be structurally cloned."""


Responder = Optional['asyncio.Future[Any]']
Delivery = tuple[Any, Responder]
NodeType = TypeVar('NodeType', bound='Node')


def structured_clone(obj: Any, /) -> Any:
    """Deep-copy a payload the way it would cross a context boundary.

    Tuples become lists. Anything that is not JSON-compatible is rejected.

    Raises:
        DataCloneError: If the object cannot be cloned.

    Example:
        >>> structured_clone({'args': (1, 'a', None)})
        {'args': [1, 'a', None]}
        >>> structured_clone(object())
        Traceback (most recent call last):
          ...
        walletrpc.transport.DataCloneError: payload could not be cloned
    """
    try:
        return json.loads(json.dumps(obj))
    except (TypeError, json.JSONEncodeError) as exc:
        raise DataCloneError('payload could not be cloned', type=type(obj).__name__) from exc


async def first_response(responses: Collection[Optional['asyncio.Future[Any]']], /) -> Any:
    """Wait for the first response that is not ``None``.

    Listeners that decline (resolve with ``None``), fail, or are cancelled do not count.

    Returns:
        The first non-empty response, or ``None`` once every listener has declined.
    """
    pending = {response for response in responses if response is not None}
    while pending:
        done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        for future in done:
            if future.cancelled() or future.exception() is not None:
                continue
            if future.result() is not None:
                return future.result()
    return None


@dataclass(eq=False)  # type: ignore[misc]
class Node(abc.ABC):  # https://github.com/python/mypy/issues/5374
    """A transceiver of discrete messages.

    A node attaches to an underlying bus, which it can repeatedly open (attach), close
    (detach), and reopen. :class:`Node` supports the async context manager protocol
    (reusable) for automatically managing the attachment.

    State Diagram::

        start [-> closed]? -> open
            [[-> close -> open]? [-> send]? [-> recv]? [-> closed?]]*
        -> close -> end

    Incoming messages are buffered in a bounded queue. When the queue is full, further
    messages are dropped, just as a fire-and-forget primitive would.

    Attributes:
        send_count: The number of messages sent since the node was opened.
        recv_count: The number of messages received since the node was opened.
    """

    recv_queue: asyncio.Queue[Delivery] = field(
        default_factory=lambda: asyncio.Queue(128),
        init=False,
        repr=False,
    )
    send_count: int = field(default=0, init=False, repr=False)
    recv_count: int = field(default=0, init=False, repr=False)

    async def __aenter__(self: NodeType, /) -> NodeType:
        if self.closed:
            self.open()
            self.send_count = self.recv_count = 0
        return self

    async def __aexit__(
        self,
        _exc_type: Optional[type[BaseException]],
        _exc: Optional[BaseException],
        _traceback: Optional[types.TracebackType],
        /,
    ) -> None:
        if not self.closed:
            self.close()

    @abc.abstractmethod
    async def send(self, message: Any, /) -> Any:
        """Send a message.

        Returns:
            The direct response produced by the primitive, if it has one. ``None``
            otherwise.

        Raises:
            DataCloneError: If the message is not clone-able.
            ValueError: If the node is closed.
        """

    async def recv(self, /) -> Delivery:
        """Receive a message.

        Returns:
            The message and a responder. The responder is a future the receiver must
            resolve (see :meth:`respond`) if the primitive expects a direct response.
        """
        item = await self.recv_queue.get()
        self.recv_count += 1
        return item

    def deliver(self, message: Any, /) -> Responder:
        """Enqueue a message received from the bus (called by the bus)."""
        with contextlib.suppress(asyncio.QueueFull):
            responder = self._make_responder()
            self.recv_queue.put_nowait((message, responder))
            return responder
        return None

    def _make_responder(self, /) -> Responder:
        return None

    @abc.abstractmethod
    def respond(self, responder: Responder, reply: Any, /) -> None:
        """Answer a received message.

        Parameters:
            responder: The responder returned by :meth:`recv`.
            reply: The reply message, or ``None`` to decline.
        """

    @abc.abstractmethod
    def open(self, /) -> None:
        """Attach to the underlying bus."""

    @abc.abstractmethod
    def close(self, /) -> None:
        """Detach from the underlying bus."""

    @property
    @abc.abstractmethod
    def closed(self, /) -> bool:
        """Whether the node is detached."""


@dataclass(eq=False)
class Window:
    """A page-local broadcast bus shared by an injected page and its content script.

    Attributes:
        listeners: Attached nodes.
    """

    listeners: set['WindowNode'] = field(default_factory=set)

    def post_message(self, message: Any, target_origin: str = '*', /) -> None:
        """Deliver a clone of the message to every listener, the poster included.

        Raises:
            DataCloneError: If the message is not clone-able.
            ValueError: If the target origin is not the wildcard.
        """
        if target_origin != '*':
            raise ValueError('only the wildcard target origin is supported')
        data = structured_clone(message)
        for listener in list(self.listeners):
            listener.deliver(structured_clone(data))


@dataclass(eq=False)
class WindowNode(Node):
    """A listener on a :class:`Window`.

    Replies are posted back onto the window like any other message.
    """

    window: Window = field(default_factory=Window)

    async def send(self, message: Any, /) -> None:
        if self.closed:
            raise ValueError('node is closed')
        self.window.post_message(message, '*')
        self.send_count += 1

    def respond(self, responder: Responder, reply: Any, /) -> None:
        if reply is not None and not self.closed:
            self.window.post_message(reply, '*')
            self.send_count += 1

    def open(self, /) -> None:
        self.window.listeners.add(self)

    def close(self, /) -> None:
        self.window.listeners.discard(self)

    @property
    def closed(self, /) -> bool:
        return self not in self.window.listeners


class MessageBus(Protocol):
    """A carrier of the runtime-wide primitive."""

    def attach(self, node: 'RuntimeNode', /) -> None:
        ...

    def detach(self, node: 'RuntimeNode', /) -> None:
        ...

    def is_attached(self, node: 'RuntimeNode', /) -> bool:
        ...

    async def send_message(self, message: Any, /, *, sender: 'RuntimeNode') -> Any:
        ...


@dataclass(eq=False)
class Runtime:
    """An in-process carrier of the runtime-wide primitive.

    Attributes:
        listeners: Attached nodes.
    """

    listeners: set['RuntimeNode'] = field(default_factory=set)

    def attach(self, node: 'RuntimeNode', /) -> None:
        self.listeners.add(node)

    def detach(self, node: 'RuntimeNode', /) -> None:
        self.listeners.discard(node)

    def is_attached(self, node: 'RuntimeNode', /) -> bool:
        return node in self.listeners

    async def send_message(self, message: Any, /, *, sender: 'RuntimeNode') -> Any:
        """Deliver a message to every listener outside the sender's context.

        Delivery happens before this coroutine first suspends, so messages sent from a
        single context are observed in the order they were sent.

        Returns:
            A clone of the first non-empty response, or ``None`` if every listener
            declined. Never returns if a listener neither responds nor declines.
        """
        data = structured_clone(message)
        responses = [
            listener.deliver(structured_clone(data))
            for listener in list(self.listeners)
            if listener.context != sender.context
        ]
        response = await first_response(responses)
        return None if response is None else structured_clone(response)


@dataclass(eq=False)
class RuntimeNode(Node):
    """A listener on the runtime-wide primitive.

    Parameters:
        runtime: The bus carrying the primitive.
        context: The name of the process context this node belongs to. The bus never
            delivers a message to nodes in the sender's own context.
    """

    runtime: MessageBus = field(default_factory=Runtime)
    context: str = ''

    def __post_init__(self, /) -> None:
        if not self.context:
            self.context = f'context-{id(self):x}'

    async def send(self, message: Any, /) -> Any:
        if self.closed:
            raise ValueError('node is closed')
        self.send_count += 1
        return await self.runtime.send_message(message, sender=self)

    def _make_responder(self, /) -> Responder:
        return asyncio.get_running_loop().create_future()

    def respond(self, responder: Responder, reply: Any, /) -> None:
        if responder is not None and not responder.done():
            responder.set_result(reply)

    def open(self, /) -> None:
        self.runtime.attach(self)

    def close(self, /) -> None:
        self.runtime.detach(self)
        while not self.recv_queue.empty():
            _, responder = self.recv_queue.get_nowait()
            self.respond(responder, None)

    @property
    def closed(self, /) -> bool:
        return not self.runtime.is_attached(self)
