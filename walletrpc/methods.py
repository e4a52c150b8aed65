"""The remote method surface.

Method names are the de facto protocol contract between the page, the popup, and the
background, so they are kept verbatim (including their camel case). Each surface is a
closed enumeration; the string-keyed registry only appears at the wire boundary, in
:class:`walletrpc.remote.Endpoint`.

The business logic behind these names (vault cryptography, deploy signing, connection
approval) lives in external collaborators, described here only by the interfaces the
endpoints consume.
"""

import enum
from collections.abc import Mapping
from typing import Any, Callable, Optional, Protocol

from .remote import Endpoint

__all__ = [
    'AuthController',
    'BackgroundMethod',
    'ConnectionManager',
    'PageMethod',
    'PopupMethod',
    'SigningManager',
    'register_all',
]


class PageMethod(str, enum.Enum):
    """Methods the injected page may call on the background (through the relay)."""

    SIGN = 'sign'
    GET_SELECTED_PUBLIC_KEY_BASE64 = 'getSelectedPublicKeyBase64'
    IS_CONNECTED = 'isConnected'
    REQUEST_CONNECTION = 'requestConnection'
    CONNECT_TO_SITE = 'connectToSite'
    CREATE_NEW_VAULT = 'createNewVault'  # Used by test harnesses.
    HAS_CREATED_VAULT = 'hasCreatedVault'


class BackgroundMethod(str, enum.Enum):
    """Methods the popup may call on the background."""

    GET_STATE = 'background.getState'
    ACCOUNT_UNLOCK = 'account.unlock'
    ACCOUNT_LOCK = 'account.lock'
    ACCOUNT_CREATE_NEW_VAULT = 'account.createNewVault'
    ACCOUNT_IMPORT_USER_ACCOUNT = 'account.importUserAccount'
    ACCOUNT_REORDER_ACCOUNT = 'account.reorderAccount'
    ACCOUNT_REMOVE_USER_ACCOUNT = 'account.removeUserAccount'
    ACCOUNT_SWITCH_TO_ACCOUNT = 'account.switchToAccount'
    ACCOUNT_GET_SELECT_USER_ACCOUNT = 'account.getSelectUserAccount'
    ACCOUNT_GET_ACTIVE_PUBLIC_KEY_HEX = 'account.getActivePublicKeyHex'
    ACCOUNT_GET_ACTIVE_ACCOUNT_HASH = 'account.getActiveAccountHash'
    ACCOUNT_RESET_VAULT = 'account.resetVault'
    ACCOUNT_RESET_LOCKOUT = 'account.resetLockout'
    ACCOUNT_START_LOCKOUT_TIMER = 'account.startLockoutTimer'
    ACCOUNT_RESET_LOCKOUT_TIMER = 'account.resetLockoutTimer'
    ACCOUNT_RENAME_USER_ACCOUNT = 'account.renameUserAccount'
    ACCOUNT_DOWNLOAD_ACCOUNT_KEYS = 'account.downloadAccountKeys'
    ACCOUNT_CONFIRM_PASSWORD = 'account.confirmPassword'
    SIGN_SIGN_DEPLOY = 'sign.signDeploy'
    SIGN_REJECT_SIGN_DEPLOY = 'sign.rejectSignDeploy'
    SIGN_PARSE_DEPLOY_DATA = 'sign.parseDeployData'
    CONNECTION_CONNECT_TO_SITE = 'connection.connectToSite'
    CONNECTION_DISCONNECT_FROM_SITE = 'connection.disconnectFromSite'
    CONNECTION_REMOVE_SITE = 'connection.removeSite'
    CONNECTION_RESET_CONNECTION_REQUEST = 'connection.resetConnectionRequest'
    CONNECTION_IS_INTEGRATED_SITE = 'connection.isIntegratedSite'


class PopupMethod(str, enum.Enum):
    """Methods the background may call (broadcast) on every open popup."""

    UPDATE_STATE = 'popup.updateState'


class SigningManager(Protocol):
    """Queues deploys for signing and signs them once the user approves."""

    def sign(self, deploy_base16: str, public_key_base64: Optional[str] = None) -> Any:
        """Queue a deploy and resolve with its signature once the user approves."""

    def get_selected_public_key_base64(self) -> Any:
        ...

    def sign_deploy(self, deploy_id: int) -> Any:
        ...

    def reject_sign_deploy(self, deploy_id: int) -> Any:
        ...

    def parse_deploy_data(self, deploy_id: int) -> Any:
        ...


class ConnectionManager(Protocol):
    """Decides which sites may talk to the wallet."""

    def is_connected(self) -> Any:
        ...

    def request_connection(self) -> Any:
        ...

    def connect_to_site(self, url: Optional[str] = None) -> Any:
        ...

    def disconnect_from_site(self, site: Optional[str] = None) -> Any:
        ...

    def remove_site(self, url: str) -> Any:
        ...

    def reset_connection_request(self) -> Any:
        ...

    def is_integrated_site(self, hostname: str) -> Any:
        ...

    def has_created_vault(self) -> Any:
        ...


class AuthController(Protocol):
    """Owns the vault: accounts, keys, and the lockout policy."""

    def create_new_vault(self, password: str) -> Any:
        ...

    def unlock(self, password: str) -> Any:
        ...

    def lock(self) -> Any:
        ...

    def import_user_account(self, name: str, secret_key_base64: str, algorithm: str) -> Any:
        ...

    def reorder_account(self, index1: int, index2: int) -> Any:
        ...

    def remove_user_account(self, name: str) -> Any:
        ...

    def switch_to_account(self, account_name: str) -> Any:
        ...

    def get_select_user_account(self) -> Any:
        ...

    def get_active_public_key_hex(self) -> Any:
        ...

    def get_active_account_hash(self) -> Any:
        ...

    def reset_vault(self) -> Any:
        ...

    def reset_lockout(self) -> Any:
        ...

    def start_lockout_timer(self, time_in_minutes: float) -> Any:
        ...

    def reset_lockout_timer(self) -> Any:
        ...

    def rename_user_account(self, old_name: str, new_name: str) -> Any:
        ...

    def download_account_keys(self, account_alias: str) -> Any:
        ...

    def confirm_password(self, password: str) -> Any:
        ...


def register_all(
    endpoint: Endpoint,
    surface: type[enum.Enum],
    bindings: Mapping[Any, Callable[..., Any]],
    /,
) -> None:
    """Register a handler for every method of a surface.

    Parameters:
        endpoint: The endpoint that will answer the calls.
        surface: The enumeration of method names.
        bindings: A handler for every member of ``surface``.

    Raises:
        ValueError: If a member has no handler, or a binding is not part of the surface.
    """
    members = set(surface)
    if missing := members - set(bindings):
        names = ', '.join(sorted(member.value for member in missing))
        raise ValueError(f'methods not bound: {names}')
    if extra := set(bindings) - members:
        raise ValueError(f'methods not part of {surface.__name__}: {sorted(map(str, extra))}')
    for method in surface:
        endpoint.register(method, bindings[method])
