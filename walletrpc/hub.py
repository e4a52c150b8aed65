"""Carry the runtime-wide primitive between OS processes.

The in-process :class:`walletrpc.transport.Runtime` only reaches contexts that share an
event loop. To reach contexts in other processes, each process attaches its nodes to a
:class:`SocketRuntime`, which connects a ``DEALER`` socket to a single
:class:`RuntimeHub` (a ``ROUTER`` socket).

Frames (the peer's identity frame added by ``ROUTER`` sockets is omitted)::

    peer -> hub    [b'']                                   probe, joins the peer set
    peer -> hub    [b'send', call_id, payload]
    peer -> hub    [b'respond', recipient, call_id, payload]
    peer -> hub    [b'leave']
    hub -> peer    [b'deliver', sender, call_id, payload]
    hub -> peer    [b'fanout', call_id, count]
    hub -> peer    [b'response', call_id, payload]

Payloads are CBOR-encoded and opaque to the hub, which holds no per-call state. Every
peer that receives a ``deliver`` frame answers with exactly one ``respond`` frame
(a null payload to decline), so the sending peer can resolve a call with the first
non-null response, or with null once all ``count`` peers have declined.
"""

import asyncio
import contextlib
import enum
import itertools
import types
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional, Union

import cbor2
import zmq
import zmq.asyncio
import zmq.error

from . import log
from .exception import WalletBaseException
from .transport import RuntimeNode, first_response, structured_clone

__all__ = ['Frame', 'HubError', 'RuntimeHub', 'SocketNode', 'SocketRuntime']


class HubError(WalletBaseException):
    """A hub frame is malformed or cannot be delivered."""


class Frame(bytes, enum.Enum):
    """The kind of a hub frame (always the first frame after the identity)."""

    SEND = b'send'
    RESPOND = b'respond'
    LEAVE = b'leave'
    DELIVER = b'deliver'
    FANOUT = b'fanout'
    RESPONSE = b'response'


SocketOptions = dict[int, Union[int, bytes]]
Frames = tuple[list[bytes], Optional[bytes]]


def _render_id(identity: Optional[bytes]) -> str:
    if identity is None:
        return '(none)'
    with contextlib.suppress(UnicodeDecodeError):
        decoded = identity.decode()
        if decoded.isprintable():
            return decoded
    return identity.hex()


def _encode_id(call_id: int, /) -> bytes:
    return str(call_id).encode()


def _decode_id(frame: bytes, /) -> int:
    try:
        return int(frame.decode())
    except (UnicodeDecodeError, ValueError) as exc:
        raise HubError('invalid call ID frame', frame=frame.hex()) from exc


async def _decode(buf: bytes, /) -> Any:
    """Decode a CBOR-encoded buffer in the default executor.

    Raises:
        HubError: If the decoding fails.
    """
    try:
        return await asyncio.to_thread(cbor2.loads, buf)
    except (cbor2.CBORDecodeError, ValueError) as exc:
        raise HubError('payload could not be decoded') from exc


@dataclass
class SocketNode:
    """A wrapper around :class:`zmq.asyncio.Socket` that buffers incoming frames.

    Parameters:
        socket_type: The socket type (``zmq.ROUTER`` or ``zmq.DEALER``).
        options: A mapping of `ZMQ socket option symbols
            <http://api.zeromq.org/4-3:zmq-setsockopt>`_ to their values.
        bindings: A set of addresses to bind to.
        connections: A set of addresses to connect to.
    """

    socket_type: int = zmq.DEALER
    options: SocketOptions = field(default_factory=dict)
    bindings: frozenset[str] = frozenset()
    connections: frozenset[str] = frozenset()
    socket: zmq.asyncio.Socket = field(init=False, repr=False)
    recv_queue: asyncio.Queue[Frames] = field(
        default_factory=lambda: asyncio.Queue(128),
        init=False,
        repr=False,
    )
    recv_task: asyncio.Future[NoReturn] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
        init=False,
        repr=False,
    )
    send_count: int = field(default=0, init=False, repr=False)
    recv_count: int = field(default=0, init=False, repr=False)

    def __post_init__(self, /) -> None:
        self.bindings = frozenset(self.bindings)
        self.connections = frozenset(self.connections)
        self.options.setdefault(zmq.LINGER, 100)
        if self.socket_type == zmq.DEALER:
            self.options.setdefault(zmq.PROBE_ROUTER, 1)
        if self.socket_type == zmq.ROUTER:
            self.options.setdefault(zmq.ROUTER_HANDOVER, 1)
            self.options.setdefault(zmq.ROUTER_MANDATORY, 1)

    async def __aenter__(self, /) -> 'SocketNode':
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

    @property
    def identity(self, /) -> bytes:
        """The ZMQ identity of this socket."""
        ident = self.options.get(zmq.IDENTITY)
        return ident if isinstance(ident, bytes) else b'(anonymous)'

    async def send(self, frames: list[bytes], /, *, address: Optional[bytes] = None) -> None:
        """Send a multipart message.

        Parameters:
            frames: The frames to send.
            address: The recipient's identity (``ROUTER`` sockets only).

        Raises:
            HubError: If the socket is closed, no address is given to a ``ROUTER``
                socket, or the recipient is unreachable.
        """
        if self.closed:
            raise HubError('socket is closed')
        if self.socket_type == zmq.ROUTER:
            if not address:
                raise HubError('must provide an address')
            frames = [address, *frames]
        try:
            await self.socket.send_multipart(frames)
        except zmq.error.ZMQError as exc:
            raise HubError(
                'socket failed to send',
                address=_render_id(address),
                errno=exc.errno,
            ) from exc
        self.send_count += 1

    async def recv(self, /) -> Frames:
        """Receive a multipart message.

        Returns:
            The frames and, for ``ROUTER`` sockets, the sender's identity.
        """
        item = await self.recv_queue.get()
        self.recv_count += 1
        return item

    async def _recv_forever(self, /) -> NoReturn:
        """Receive messages indefinitely and enqueue them."""
        while True:
            frames = await self.socket.recv_multipart()
            if self.socket_type == zmq.ROUTER:
                sender_id, *frames = frames
                await self.recv_queue.put((frames, sender_id))
            else:
                await self.recv_queue.put((frames, None))

    def open(self, /) -> None:
        ctx = zmq.asyncio.Context.instance()
        self.socket = ctx.socket(self.socket_type)
        for name, value in self.options.items():
            self.socket.set(name, value)
        for address in self.bindings:
            self.socket.bind(address)
        for address in self.connections:
            self.socket.connect(address)
        self.recv_task = asyncio.create_task(self._recv_forever(), name='recv')

    def close(self, /) -> None:
        self.recv_task.cancel()
        self.socket.close()

    @property
    def closed(self, /) -> bool:
        return bool(self.socket.closed) if getattr(self, 'socket', None) else True


@dataclass
class RuntimeHub:
    """Fans runtime messages out to every connected peer except the sender.

    The hub is stateless apart from the set of connected peers. A peer joins when its
    ``DEALER`` socket probes the hub on connecting and leaves when it says so or when a
    frame can no longer be routed to it.

    Parameters:
        node: A ``ROUTER`` socket peers connect to.
        peers: The identities of connected peers.
        logger: A logger instance.
        route_task: The background task performing the routing. :class:`RuntimeHub`
            implements the async context manager protocol, which automatically schedules
            and cancels this task.
    """

    node: SocketNode
    peers: set[bytes] = field(default_factory=set)
    logger: log.AsyncLogger = field(default_factory=log.get_logger)
    route_task: asyncio.Future[NoReturn] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
        init=False,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        if self.node.socket_type != zmq.ROUTER:
            raise HubError('socket type not allowed', socket_type=self.node.socket_type)
        self.logger = self.logger.bind(hub=_render_id(self.node.identity))

    async def __aenter__(self, /) -> 'RuntimeHub':
        await self.node.__aenter__()
        self.route_task = asyncio.create_task(self._route_forever(), name='route')
        await self.logger.ainfo('Hub started', bindings=sorted(self.node.bindings))
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> None:
        self.route_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self.route_task
        await self.node.__aexit__(exc_type, exc, traceback)

    @classmethod
    def bind(
        cls,
        bindings: Collection[str],
        options: Optional[SocketOptions] = None,
    ) -> 'RuntimeHub':
        """Construct a :class:`RuntimeHub` bound to the provided addresses."""
        # pylint: disable=unexpected-keyword-arg; dataclass not recognized
        options = options or {}
        options.setdefault(zmq.IDENTITY, b'runtime-hub')
        return RuntimeHub(
            SocketNode(
                socket_type=zmq.ROUTER,
                bindings=frozenset(bindings),
                options=options,
            ),
        )

    async def _route_forever(self, /) -> NoReturn:
        while True:
            frames, sender_id = await self.node.recv()
            try:
                await self.route(frames, sender_id or b'')
            except HubError as exc:
                await self.logger.aerror('Hub failed to route message', exc_info=exc)

    async def route(self, frames: list[bytes], sender_id: bytes, /) -> None:
        """Route one message received from a peer.

        Raises:
            HubError: If the frames are malformed.
        """
        if frames == [b'']:
            if sender_id not in self.peers:
                self.peers.add(sender_id)
                await self.logger.ainfo('Hub connected to peer', peer=_render_id(sender_id))
            return
        if not frames:
            raise HubError('empty message', peer=_render_id(sender_id))
        kind, *args = frames
        if kind == Frame.SEND and len(args) == 2:
            self.peers.add(sender_id)
            call_id, payload = args
            recipients = sorted(self.peers - {sender_id})
            delivered = 0
            for recipient_id in recipients:
                frame = [Frame.DELIVER.value, sender_id, call_id, payload]
                if await self._send(frame, recipient_id):
                    delivered += 1
            await self._send([Frame.FANOUT.value, call_id, _encode_id(delivered)], sender_id)
        elif kind == Frame.RESPOND and len(args) == 3:
            recipient_id, call_id, payload = args
            await self._send([Frame.RESPONSE.value, call_id, payload], recipient_id)
        elif kind == Frame.LEAVE and not args:
            self.peers.discard(sender_id)
            await self.logger.ainfo('Hub disconnected from peer', peer=_render_id(sender_id))
        else:
            raise HubError(
                'malformed frames',
                peer=_render_id(sender_id),
                kind=_render_id(kind),
                frame_count=len(frames),
            )

    async def _send(self, frames: list[bytes], recipient_id: bytes, /) -> bool:
        try:
            await self.node.send(frames, address=recipient_id)
        except HubError as exc:
            self.peers.discard(recipient_id)
            await self.logger.awarning(
                'Hub dropped unreachable peer',
                peer=_render_id(recipient_id),
                exc_info=exc,
            )
            return False
        return True


@dataclass
class _PendingCall:
    future: asyncio.Future[Any]
    expected: Optional[int] = None
    declined: int = 0

    def resolve(self, /, response: Any = None) -> None:
        if not self.future.done():
            self.future.set_result(response)

    def check_exhausted(self, /) -> None:
        if self.expected is not None and self.declined >= self.expected:
            self.resolve(None)


@dataclass(eq=False)
class SocketRuntime:
    """A carrier of the runtime-wide primitive that spans OS processes.

    Local listeners outside the sender's context receive a message directly, just as
    with :class:`walletrpc.transport.Runtime`. The message is also sent through the hub
    to every other peer, whose listeners outside the sender's context receive it too.

    Parameters:
        node: A ``DEALER`` socket connected to the hub.
        listeners: Attached local nodes.
        logger: A logger instance.
    """

    node: SocketNode
    listeners: set[RuntimeNode] = field(default_factory=set)
    logger: log.AsyncLogger = field(default_factory=log.get_logger)
    calls: dict[int, _PendingCall] = field(default_factory=dict, init=False, repr=False)
    call_ids: Any = field(default_factory=itertools.count, init=False, repr=False)
    tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False, repr=False)
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        if self.node.socket_type != zmq.DEALER:
            raise HubError('socket type not allowed', socket_type=self.node.socket_type)
        self.logger = self.logger.bind(peer=_render_id(self.node.identity))

    async def __aenter__(self, /) -> 'SocketRuntime':
        await self.stack.__aenter__()
        await self.stack.enter_async_context(self.node)
        self.stack.push_async_callback(self._leave)
        recv_task = asyncio.create_task(self._recv_forever(), name='runtime-recv')
        self.stack.callback(recv_task.cancel)
        self.stack.callback(self._cancel_tasks)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        return await self.stack.__aexit__(exc_type, exc, traceback)

    @classmethod
    def connect(cls, address: str, identity: Optional[bytes] = None) -> 'SocketRuntime':
        """Construct a :class:`SocketRuntime` connected to a hub."""
        # pylint: disable=unexpected-keyword-arg; dataclass not recognized
        options: SocketOptions = {}
        if identity:
            options[zmq.IDENTITY] = identity
        node = SocketNode(
            socket_type=zmq.DEALER,
            connections=frozenset({address}),
            options=options,
        )
        return SocketRuntime(node)

    def _cancel_tasks(self, /) -> None:
        for task in list(self.tasks):
            task.cancel()
        for call in self.calls.values():
            call.resolve(None)

    async def _leave(self, /) -> None:
        with contextlib.suppress(HubError):
            await self.node.send([Frame.LEAVE.value])

    def attach(self, node: RuntimeNode, /) -> None:
        self.listeners.add(node)

    def detach(self, node: RuntimeNode, /) -> None:
        self.listeners.discard(node)

    def is_attached(self, node: RuntimeNode, /) -> bool:
        return node in self.listeners

    def _deliver_locally(self, message: Any, context: str, /) -> list[Any]:
        return [
            listener.deliver(structured_clone(message))
            for listener in list(self.listeners)
            if listener.context != context
        ]

    async def send_message(self, message: Any, /, *, sender: RuntimeNode) -> Any:
        """Deliver a message to every listener outside the sender's context.

        Returns:
            A clone of the first non-empty response, local or remote, or ``None`` if
            every listener declined.

        Raises:
            DataCloneError: If the message is not clone-able.
            HubError: If the message cannot be sent to the hub.
        """
        data = structured_clone(message)
        call_id = next(self.call_ids)
        call = self.calls[call_id] = _PendingCall(asyncio.get_running_loop().create_future())
        try:
            responses = self._deliver_locally(data, sender.context)
            # Encode before suspending so messages leave in the order they were sent.
            payload = cbor2.dumps([sender.context, data])
            await self.node.send([Frame.SEND.value, _encode_id(call_id), payload])
            response = await first_response([*responses, call.future])
            return None if response is None else structured_clone(response)
        finally:
            self.calls.pop(call_id, None)

    async def _recv_forever(self, /) -> NoReturn:
        while True:
            frames, _ = await self.node.recv()
            try:
                await self._handle_frames(frames)
            except HubError as exc:
                await self.logger.aerror('Runtime dropped hub message', exc_info=exc)

    async def _handle_frames(self, frames: list[bytes], /) -> None:
        if not frames:
            raise HubError('empty message')
        kind, *args = frames
        if kind == Frame.DELIVER and len(args) == 3:
            sender_id, call_id, payload = args
            task = asyncio.create_task(
                self._answer(sender_id, call_id, await _decode(payload)),
                name='runtime-answer',
            )
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)
        elif kind == Frame.FANOUT and len(args) == 2:
            if call := self.calls.get(_decode_id(args[0])):
                call.expected = _decode_id(args[1])
                call.check_exhausted()
        elif kind == Frame.RESPONSE and len(args) == 2:
            call_id, payload = args
            if call := self.calls.get(_decode_id(call_id)):
                response = await _decode(payload)
                if response is None:
                    call.declined += 1
                    call.check_exhausted()
                else:
                    call.resolve(response)
        else:
            raise HubError('malformed frames', kind=_render_id(kind), frame_count=len(frames))

    async def _answer(self, sender_id: bytes, call_id: bytes, envelope: Any, /) -> None:
        response = None
        try:
            context, message = envelope
            response = await first_response(self._deliver_locally(message, context))
        except (TypeError, ValueError) as exc:
            await self.logger.aerror('Runtime received malformed envelope', exc_info=exc)
        finally:
            with contextlib.suppress(HubError):
                payload = cbor2.dumps(response)
                await self.node.send([Frame.RESPOND.value, sender_id, call_id, payload])
