"""
Shared types: auth states, credentials, server connection records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Optional, Union

if TYPE_CHECKING:
    from ..adapters.base import BackendAdapter


EntityID = Union[str, int]
Entity = dict[str, Any]

# "server:entity" routes an entity to a server explicitly
SERVER_PREFIX_SEPARATOR = ":"


class AuthState(IntEnum):
    """
    Login lifecycle of a server connection.

    Positive means usable, zero or negative means a login is needed (or
    running, for WAITING).
    """

    UNKNOWN = 0
    NOT_LOGGED_IN = -10
    WAITING = -5
    LOGGED_IN = 10
    ERROR = -100


class VerboseLevel(IntEnum):
    """Per-service log filter. Messages above the service level are dropped."""

    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3
    TRACE = 4


@dataclass
class Credentials:
    """Login data for a server. A token has priority over login+password."""

    login: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.token or (self.login and self.password))


# ServerConnection attributes a caller may change through Broker.upsert_server
SERVER_FIELDS = (
    "url",
    "type",
    "login",
    "password",
    "token",
    "auth_state",
    "entities",
    "adapter",
    "handle",
    "user",
)
CREDENTIAL_FIELDS = ("login", "password", "token")


@dataclass
class ServerConnection:
    """
    One configured backend server.

    Owned by the Broker; services look it up by name at call time and never
    keep their own reference.
    """

    name: str
    url: str
    type: Optional[str] = None
    login: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    auth_state: AuthState = AuthState.NOT_LOGGED_IN
    entities: set[str] = field(default_factory=set)
    # Backend adapter used for every call to this server
    adapter: Optional[BackendAdapter] = None
    # Adapter-owned session state (client object, tokens)
    handle: Any = None
    # Current user info reported by the backend after login
    user: Optional[dict[str, Any]] = None

    @property
    def credentials(self) -> Credentials:
        return Credentials(login=self.login, password=self.password, token=self.token)

    @property
    def is_logged_in(self) -> bool:
        return self.auth_state > AuthState.UNKNOWN

    def has_credentials(self) -> bool:
        return bool(self.url) and not self.credentials.is_empty

    def snapshot(self) -> dict[str, Any]:
        """Plain-data view of the connection (no adapter/handle objects)."""
        return {
            "name": self.name,
            "url": self.url,
            "type": self.type,
            "login": self.login,
            "password": self.password,
            "token": self.token,
            "auth_state": self.auth_state,
            "entities": sorted(self.entities),
            "user": self.user,
        }
