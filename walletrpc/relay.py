"""The content-script relay between an injected page and the background process.

Communication::

                 window.postMessage                   runtime.sendMessage
    inject page --------------------> content script <-------------------> background
                <--------------------
                 window listener

The page cannot reach the runtime primitive, and the background cannot reach the
page's window, so the content script bridges the two. It is not an addressable
endpoint: it owns no registry and no request tracker, and relies entirely on the
message ID surviving the hop unchanged.
"""

import asyncio
import contextlib
import types
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

from . import log
from .exception import WalletBaseException
from .remote import EndpointName, MessageType, validate_message
from .transport import RuntimeNode, WindowNode

__all__ = ['ContentRelay']


@dataclass
class ContentRelay:
    """Forwards page requests to the background and posts the replies back.

    Only well-formed requests from the page to the background are forwarded; anything
    else seen on the window (including the relay's own reposted replies) is ignored.
    If the background never responds, nothing is posted and the page's call stays
    pending.

    Parameters:
        window_node: A listener on the page's window.
        runtime_node: A listener on the runtime-wide primitive.
        log_messages: Whether to log every message observed on the window.
        logger: A logger instance.
    """

    window_node: WindowNode
    runtime_node: RuntimeNode
    log_messages: bool = False
    logger: log.AsyncLogger = field(default_factory=log.get_logger)
    tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False, repr=False)
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    async def __aenter__(self, /) -> 'ContentRelay':
        await self.stack.__aenter__()
        await self.stack.enter_async_context(self.window_node)
        await self.stack.enter_async_context(self.runtime_node)
        relay_task = asyncio.create_task(self._relay_forever(), name='relay')
        self.stack.callback(relay_task.cancel)
        decline_task = asyncio.create_task(self._decline_forever(), name='decline')
        self.stack.callback(decline_task.cancel)
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

    def _cancel_tasks(self, /) -> None:
        for task in list(self.tasks):
            task.cancel()

    async def _relay_forever(self, /) -> NoReturn:
        while True:
            message, _ = await self.window_node.recv()
            task = asyncio.create_task(self.forward(message), name='relay-msg')
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)

    async def _decline_forever(self, /) -> NoReturn:
        """Decline everything other contexts send on the runtime primitive."""
        while True:
            _, responder = await self.runtime_node.recv()
            self.runtime_node.respond(responder, None)

    @staticmethod
    def _should_forward(message: Any, /) -> bool:
        try:
            if validate_message(message) is not MessageType.REQUEST:
                return False
        except ValueError:
            return False
        return (
            message['source'] == EndpointName.PAGE.value
            and message['destination'] == EndpointName.BACKGROUND.value
        )

    async def forward(self, message: Any, /) -> None:
        """Relay one message observed on the window. Never raises for bad input."""
        if self.log_messages:
            await self.logger.adebug('Relay received message', message=message)
        if not self._should_forward(message):
            return
        try:
            response = await self.runtime_node.send(message)
        except (ValueError, WalletBaseException) as exc:
            await self.logger.aerror('Relay failed to forward request', exc_info=exc)
            return
        if response is None:
            await self.logger.awarning(
                'Background did not respond',
                method=message['method'],
                message_id=message['id'],
            )
            return
        value = response.get('value') if isinstance(response, dict) else response
        message.update(
            type=MessageType.REPLY.value,
            value=value,
            source=message['destination'],
            destination=message['source'],
        )
        try:
            await self.window_node.send(message)
        except (ValueError, WalletBaseException) as exc:
            await self.logger.aerror('Relay failed to post reply', exc_info=exc)
