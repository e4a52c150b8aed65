"""The popup half of the duplex popup/background pair."""

import asyncio
import contextlib
import types
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar

from .. import log, remote
from ..methods import BackgroundMethod, PopupMethod
from ..remote import Endpoint, EndpointName
from ..state import AppState
from ..transport import MessageBus, RuntimeNode

__all__ = ['BackgroundManager', 'ErrorContainer']

ResultType = TypeVar('ResultType')


@dataclass
class ErrorContainer:
    """Collects user-facing error messages.

    Attributes:
        errors: Messages of the errors captured so far, oldest first.
    """

    errors: list[str] = field(default_factory=list)

    async def capture(self, awaitable: Awaitable[ResultType], /) -> ResultType:
        """Await a result, recording the message of any error before re-raising it."""
        try:
            return await awaitable
        except Exception as exc:
            self.errors.append(str(exc) or exc.__class__.__name__)
            raise

    def dismiss(self, /) -> Optional[str]:
        """Remove and return the oldest error message, if there is one."""
        return self.errors.pop(0) if self.errors else None


@dataclass
class BackgroundManager(remote.Handler):
    """The popup's proxy for the background process.

    On entry, the manager pulls the background's state and mirrors it into
    :attr:`app_state`. Afterwards, every ``popup.updateState`` broadcast overwrites the
    mirror with the complete snapshot.

    Parameters:
        runtime: The runtime-wide primitive.
        app_state: The popup's mirror of the background's state.
        errors: Collects the messages of failed calls.
        log_messages: Whether the endpoint logs every message.
        logger: A logger instance.
    """

    runtime: MessageBus
    app_state: AppState = field(default_factory=AppState)
    errors: ErrorContainer = field(default_factory=ErrorContainer)
    log_messages: bool = False
    logger: log.AsyncLogger = field(default_factory=log.get_logger)
    endpoint: Endpoint = field(init=False, repr=False)
    refresh_task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        # pylint: disable=unexpected-keyword-arg; dataclass not recognized
        self.endpoint = Endpoint(
            RuntimeNode(self.runtime),
            source=EndpointName.POPUP,
            destination=EndpointName.BACKGROUND,
            log_messages=self.log_messages,
            logger=self.logger,
        )
        self.endpoint.register_handler(self)

    async def __aenter__(self, /) -> 'BackgroundManager':
        await self.stack.__aenter__()
        await self.stack.enter_async_context(self.endpoint)
        self.refresh_task = asyncio.create_task(self.refresh(), name='refresh-state')
        self.stack.callback(self.refresh_task.cancel)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        return await self.stack.__aexit__(exc_type, exc, traceback)

    async def refresh(self, /) -> None:
        """Pull the complete state from the background."""
        snapshot = await self.endpoint.call(BackgroundMethod.GET_STATE)
        self.on_state_update(snapshot)

    @remote.route(PopupMethod.UPDATE_STATE)
    def on_state_update(self, snapshot: dict[str, Any], /) -> None:
        self.app_state.apply_snapshot(snapshot)

    def _call(self, method: BackgroundMethod, /, *args: Any) -> Awaitable[Any]:
        return self.errors.capture(self.endpoint.call(method, *args))

    async def unlock(self, password: str, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_UNLOCK, password)

    async def create_new_vault(self, password: str, /) -> None:
        await self.endpoint.call(BackgroundMethod.ACCOUNT_CREATE_NEW_VAULT, password)

    async def lock(self, /) -> None:
        await self.endpoint.call(BackgroundMethod.ACCOUNT_LOCK)

    async def import_user_account(
        self,
        name: str,
        secret_key_base64: str,
        algorithm: str,
        /,
    ) -> None:
        await self._call(
            BackgroundMethod.ACCOUNT_IMPORT_USER_ACCOUNT,
            name,
            secret_key_base64,
            algorithm,
        )

    async def reorder_account(self, index1: int, index2: int, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_REORDER_ACCOUNT, index1, index2)

    async def remove_user_account(self, name: str, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_REMOVE_USER_ACCOUNT, name)

    async def sign_deploy(self, deploy_id: int, /) -> None:
        await self._call(BackgroundMethod.SIGN_SIGN_DEPLOY, deploy_id)

    async def reject_sign_deploy(self, deploy_id: int, /) -> None:
        await self._call(BackgroundMethod.SIGN_REJECT_SIGN_DEPLOY, deploy_id)

    async def parse_deploy_data(self, deploy_id: int, /) -> dict[str, Any]:
        return await self._call(BackgroundMethod.SIGN_PARSE_DEPLOY_DATA, deploy_id)

    async def switch_to_account(self, account_name: str, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_SWITCH_TO_ACCOUNT, account_name)

    async def get_select_user_account(self, /) -> dict[str, Any]:
        return await self._call(BackgroundMethod.ACCOUNT_GET_SELECT_USER_ACCOUNT)

    async def get_active_public_key_hex(self, /) -> str:
        return await self._call(BackgroundMethod.ACCOUNT_GET_ACTIVE_PUBLIC_KEY_HEX)

    async def get_active_account_hash(self, /) -> str:
        return await self._call(BackgroundMethod.ACCOUNT_GET_ACTIVE_ACCOUNT_HASH)

    async def reset_vault(self, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_RESET_VAULT)

    async def reset_lockout(self, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_RESET_LOCKOUT)

    async def start_lockout_timer(self, time_in_minutes: float, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_START_LOCKOUT_TIMER, time_in_minutes)

    async def reset_lockout_timer(self, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_RESET_LOCKOUT_TIMER)

    async def rename_user_account(self, old_name: str, new_name: str, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_RENAME_USER_ACCOUNT, old_name, new_name)

    async def download_account_keys(self, account_alias: str, /) -> None:
        await self._call(BackgroundMethod.ACCOUNT_DOWNLOAD_ACCOUNT_KEYS, account_alias)

    async def confirm_password(self, password: str, /) -> bool:
        return await self._call(BackgroundMethod.ACCOUNT_CONFIRM_PASSWORD, password)

    async def connect_to_site(self, url: Optional[str] = None, /) -> None:
        await self._call(BackgroundMethod.CONNECTION_CONNECT_TO_SITE, url)

    async def disconnect_from_site(self, site: Optional[str] = None, /) -> None:
        await self._call(BackgroundMethod.CONNECTION_DISCONNECT_FROM_SITE, site)

    async def remove_site(self, url: str, /) -> None:
        await self._call(BackgroundMethod.CONNECTION_REMOVE_SITE, url)

    async def reset_connection_request(self, /) -> None:
        await self._call(BackgroundMethod.CONNECTION_RESET_CONNECTION_REQUEST)

    async def is_integrated_site(self, hostname: str, /) -> bool:
        return await self._call(BackgroundMethod.CONNECTION_IS_INTEGRATED_SITE, hostname)
