"""Background process endpoints.

The background process exposes two servers on the runtime-wide primitive:

* The inject-page API, reached by the page through the content-script relay.
* The popup API, one half of the duplex popup/background pair. The same endpoint
  broadcasts state changes to every open popup.

Both constructors only wire method names to collaborator methods. Business logic
stays in the collaborators.
"""

import contextlib
import types
from dataclasses import dataclass, field
from typing import Optional

from .. import log
from ..methods import (
    AuthController,
    BackgroundMethod,
    ConnectionManager,
    PageMethod,
    SigningManager,
    register_all,
)
from ..remote import Endpoint, EndpointName
from ..state import StateStore
from ..transport import MessageBus, Node, RuntimeNode

# isort: unique-list
__all__ = ['Background', 'setup_inject_page_api_server', 'setup_popup_api_server']


def setup_inject_page_api_server(
    node: Node,
    signer: SigningManager,
    connections: ConnectionManager,
    auth: AuthController,
    /,
    *,
    log_messages: bool = False,
    logger: Optional[log.AsyncLogger] = None,
) -> Endpoint:
    """Build the server the injected page calls through the relay.

    Parameters:
        node: The background's listener on the runtime-wide primitive.
        signer: Queues and signs deploys.
        connections: Manages site connections.
        auth: Manages the vault.
        log_messages: Whether the endpoint logs every message.
        logger: The logger passed to the endpoint.
    """
    # pylint: disable=unexpected-keyword-arg; dataclass not recognized
    endpoint = Endpoint(
        node,
        source=EndpointName.BACKGROUND,
        destination=EndpointName.PAGE,
        log_messages=log_messages,
        logger=logger or log.get_logger(),
    )
    register_all(
        endpoint,
        PageMethod,
        {
            PageMethod.SIGN: signer.sign,
            PageMethod.GET_SELECTED_PUBLIC_KEY_BASE64: signer.get_selected_public_key_base64,
            PageMethod.IS_CONNECTED: connections.is_connected,
            PageMethod.REQUEST_CONNECTION: connections.request_connection,
            PageMethod.CONNECT_TO_SITE: connections.connect_to_site,
            PageMethod.CREATE_NEW_VAULT: auth.create_new_vault,
            PageMethod.HAS_CREATED_VAULT: connections.has_created_vault,
        },
    )
    return endpoint


def setup_popup_api_server(
    node: Node,
    store: StateStore,
    signer: SigningManager,
    connections: ConnectionManager,
    auth: AuthController,
    /,
    *,
    log_messages: bool = False,
    logger: Optional[log.AsyncLogger] = None,
) -> Endpoint:
    """Build the background half of the duplex popup/background pair.

    The endpoint is attached to the state store, so every mutation of the store is
    broadcast to the open popups as ``popup.updateState``.
    """
    # pylint: disable=unexpected-keyword-arg; dataclass not recognized
    endpoint = Endpoint(
        node,
        source=EndpointName.BACKGROUND,
        destination=EndpointName.POPUP,
        log_messages=log_messages,
        logger=logger or log.get_logger(),
    )
    method = BackgroundMethod
    register_all(
        endpoint,
        BackgroundMethod,
        {
            method.GET_STATE: store.get_state,
            method.ACCOUNT_UNLOCK: auth.unlock,
            method.ACCOUNT_LOCK: auth.lock,
            method.ACCOUNT_CREATE_NEW_VAULT: auth.create_new_vault,
            method.ACCOUNT_IMPORT_USER_ACCOUNT: auth.import_user_account,
            method.ACCOUNT_REORDER_ACCOUNT: auth.reorder_account,
            method.ACCOUNT_REMOVE_USER_ACCOUNT: auth.remove_user_account,
            method.ACCOUNT_SWITCH_TO_ACCOUNT: auth.switch_to_account,
            method.ACCOUNT_GET_SELECT_USER_ACCOUNT: auth.get_select_user_account,
            method.ACCOUNT_GET_ACTIVE_PUBLIC_KEY_HEX: auth.get_active_public_key_hex,
            method.ACCOUNT_GET_ACTIVE_ACCOUNT_HASH: auth.get_active_account_hash,
            method.ACCOUNT_RESET_VAULT: auth.reset_vault,
            method.ACCOUNT_RESET_LOCKOUT: auth.reset_lockout,
            method.ACCOUNT_START_LOCKOUT_TIMER: auth.start_lockout_timer,
            method.ACCOUNT_RESET_LOCKOUT_TIMER: auth.reset_lockout_timer,
            method.ACCOUNT_RENAME_USER_ACCOUNT: auth.rename_user_account,
            method.ACCOUNT_DOWNLOAD_ACCOUNT_KEYS: auth.download_account_keys,
            method.ACCOUNT_CONFIRM_PASSWORD: auth.confirm_password,
            method.SIGN_SIGN_DEPLOY: signer.sign_deploy,
            method.SIGN_REJECT_SIGN_DEPLOY: signer.reject_sign_deploy,
            method.SIGN_PARSE_DEPLOY_DATA: signer.parse_deploy_data,
            method.CONNECTION_CONNECT_TO_SITE: connections.connect_to_site,
            method.CONNECTION_DISCONNECT_FROM_SITE: connections.disconnect_from_site,
            method.CONNECTION_REMOVE_SITE: connections.remove_site,
            method.CONNECTION_RESET_CONNECTION_REQUEST: connections.reset_connection_request,
            method.CONNECTION_IS_INTEGRATED_SITE: connections.is_integrated_site,
        },
    )
    store.attach(endpoint)
    return endpoint


@dataclass
class Background:
    """The background process's startup routine.

    Owns both server endpoints for as long as its async context is open. Nothing is
    global: collaborators that need an endpoint receive a reference to it.

    Parameters:
        runtime: The runtime-wide primitive.
        signer: Queues and signs deploys.
        connections: Manages site connections.
        auth: Manages the vault.
        store: The authoritative application state.
        log_messages: Whether the endpoints log every message.
        logger: A logger instance.
    """

    runtime: MessageBus
    signer: SigningManager
    connections: ConnectionManager
    auth: AuthController
    store: StateStore = field(default_factory=StateStore)
    log_messages: bool = False
    logger: log.AsyncLogger = field(default_factory=log.get_logger)
    page_server: Endpoint = field(init=False, repr=False)
    popup_server: Endpoint = field(init=False, repr=False)
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        context = EndpointName.BACKGROUND.value
        self.page_server = setup_inject_page_api_server(
            RuntimeNode(self.runtime, context=context),
            self.signer,
            self.connections,
            self.auth,
            log_messages=self.log_messages,
            logger=self.logger.bind(name='page-server'),
        )
        self.popup_server = setup_popup_api_server(
            RuntimeNode(self.runtime, context=context),
            self.store,
            self.signer,
            self.connections,
            self.auth,
            log_messages=self.log_messages,
            logger=self.logger.bind(name='popup-server'),
        )

    async def __aenter__(self, /) -> 'Background':
        await self.stack.__aenter__()
        await self.stack.enter_async_context(self.page_server)
        await self.stack.enter_async_context(self.popup_server)
        await self.logger.ainfo('Background started')
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        return await self.stack.__aexit__(exc_type, exc, traceback)
