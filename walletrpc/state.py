"""Shared application state.

The background process owns the authoritative :class:`AppState`. Every open popup keeps
a mirror that it first pulls with ``background.getState`` and then keeps current from
the ``popup.updateState`` broadcasts the background pushes after each mutation. A
broadcast always carries the complete snapshot, never a diff.
"""

import dataclasses
import functools
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .methods import PopupMethod
from .remote import Endpoint

__all__ = ['AppState', 'StateStore']


@functools.lru_cache(maxsize=64)
def to_camel_case(name: str, /) -> str:
    """Convert a snake case attribute name into the snapshot's key.

    Example:
        >>> to_camel_case('lockout_timer_started')
        'lockoutTimerStarted'
    """
    head, *tail = name.split('_')
    return head + ''.join(word.title() for word in tail)


@functools.lru_cache(maxsize=64)
def to_snake_case(key: str, /) -> str:
    """Convert a snapshot key into an attribute name.

    Example:
        >>> to_snake_case('isIntegratedSite')
        'is_integrated_site'
    """
    return re.sub('([A-Z])', r'_\1', key).lower()


@dataclass
class AppState:
    """A snapshot of everything the popup renders."""

    is_integrated_site: bool = False
    is_unlocked: bool = False
    unlock_attempts: int = 0
    lockout_timer_started: bool = False
    remaining_mins: float = 0
    current_tab: Optional[dict[str, Any]] = None
    connection_requested: bool = False
    connected_sites: list[Any] = field(default_factory=list)
    has_created_vault: bool = False
    selected_user_account: Optional[dict[str, Any]] = None
    user_accounts: list[Any] = field(default_factory=list)
    unsigned_deploys: list[Any] = field(default_factory=list)

    def to_snapshot(self, /) -> dict[str, Any]:
        """Render the complete state with the wire's camel case keys."""
        return {
            to_camel_case(attr.name): getattr(self, attr.name)
            for attr in dataclasses.fields(self)
        }

    def apply_snapshot(self, snapshot: dict[str, Any], /) -> None:
        """Overwrite this state with a snapshot. Unknown keys are ignored."""
        names = {attr.name for attr in dataclasses.fields(self)}
        for key, value in snapshot.items():
            name = to_snake_case(key)
            if name in names:
                setattr(self, name, list(value) if isinstance(value, list) else value)


@dataclass
class StateStore:
    """The background's authoritative state and its broadcaster.

    Parameters:
        state: The current state.
        endpoints: Endpoints (with popups as their peers) to broadcast changes to.
    """

    state: AppState = field(default_factory=AppState)
    endpoints: list[Endpoint] = field(default_factory=list)

    def attach(self, endpoint: Endpoint, /) -> None:
        """Broadcast future changes through an endpoint."""
        if all(attached is not endpoint for attached in self.endpoints):
            self.endpoints.append(endpoint)

    def get_state(self, /) -> dict[str, Any]:
        """Handler for ``background.getState``."""
        return self.state.to_snapshot()

    def update(self, /, **changes: Any) -> None:
        """Mutate the state and broadcast the new snapshot once.

        Either every change is applied or none is.

        Raises:
            AttributeError: If a change names an unknown attribute.
        """
        names = {attr.name for attr in dataclasses.fields(self.state)}
        if unknown := set(changes) - names:
            raise AttributeError(f'unknown state attributes: {", ".join(sorted(unknown))}')
        for name, value in changes.items():
            setattr(self.state, name, value)
        self.publish()

    def publish(self, /) -> None:
        """Broadcast the current snapshot to every open popup."""
        snapshot = self.state.to_snapshot()
        for endpoint in self.endpoints:
            endpoint.broadcast(PopupMethod.UPDATE_STATE, snapshot)
