"""
Server broker: registry of backend servers, login orchestration and
server-change notifications.

Usage:
    broker = Broker({
        "servers": {
            "cms": {"url": "https://cms.example.com", "token": "abc",
                    "entities": ["articles"]},
        },
    })

    await broker.login_server("cms")
    broker.get_server_by_entity("articles")      # -> ServerConnection("cms")
    broker.get_server_by_entity("cms:authors")   # explicit server prefix

    broker.subscribe("*", lambda changes, server: print(changes))
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable, Mapping, Optional, Union

from ..adapters import BUILTIN_ADAPTERS, BackendAdapter
from ..core.config import BrokerConfig, ServerConfig, default_server_url
from ..core.errors import ConfigError, DBError
from ..core.types import (
    CREDENTIAL_FIELDS,
    SERVER_FIELDS,
    SERVER_PREFIX_SEPARATOR,
    AuthState,
    Credentials,
    ServerConnection,
)
from ..core.utils import shallow_diff

logger = logging.getLogger(__name__)


# Subscribe with this name to receive updates of every server
WILDCARD = "*"

# callback(changes, server_snapshot); may be a coroutine function
ServerCallback = Callable[[dict[str, Any], dict[str, Any]], Any]


class Broker:
    """
    Single source of truth for server connections.

    Args:
        config: BrokerConfig or plain dict with the same shape
        adapters: Adapter instances for specific servers (server name -> adapter)
        adapter_types: Extra adapter factories by server type
        server_suffix: Overrides config.server_suffix for default URLs
        login_poll_interval: Seconds between wait_for_login polls
        login_tries: Default number of wait_for_login polls
    """

    def __init__(
        self,
        config: Union[BrokerConfig, Mapping[str, Any], None] = None,
        adapters: Optional[dict[str, BackendAdapter]] = None,
        adapter_types: Optional[dict[str, Callable[[], BackendAdapter]]] = None,
        server_suffix: Optional[str] = None,
        login_poll_interval: float = 0.5,
        login_tries: int = 10,
    ):
        self.login_poll_interval = login_poll_interval
        self.login_tries = login_tries
        self.server_suffix = server_suffix or ""

        self._servers: dict[str, ServerConnection] = {}
        self._subscribers: dict[str, list[ServerCallback]] = {}
        # Entity name -> service that handles it (for deep-field loads)
        self._services: dict[str, Any] = {}
        self._adapters: dict[str, BackendAdapter] = dict(adapters or {})
        self._adapter_types: dict[str, Callable[[], BackendAdapter]] = {
            **BUILTIN_ADAPTERS,
            **(adapter_types or {}),
        }
        self._login_tasks: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()
        # Loop-less delivery: queued, drained by the outermost _notify
        self._queued: deque[tuple[ServerCallback, dict[str, Any], dict[str, Any]]] = deque()
        self._dispatching = False

        if config is not None:
            self.configure(config, server_suffix)

    @classmethod
    def from_config(cls, config: Union[BrokerConfig, Mapping[str, Any]], **kwargs) -> Broker:
        return cls(config, **kwargs)

    def configure(
        self,
        config: Union[BrokerConfig, Mapping[str, Any]],
        server_suffix: Optional[str] = None,
    ) -> None:
        """Register every server of ``config``. No login, no notifications."""
        if not isinstance(config, BrokerConfig):
            try:
                config = BrokerConfig.from_dict(config)
            except ValueError as e:
                raise ConfigError(f"Invalid broker config: {e}") from e

        if server_suffix is not None:
            config = config.model_copy(update={"server_suffix": server_suffix})
        self.server_suffix = config.server_suffix

        for name in config.server_names():
            server_config = config.servers.get(name) or ServerConfig()
            self.upsert_server(
                name,
                {
                    "url": config.server_url(name),
                    "type": server_config.type,
                    "login": server_config.login,
                    "password": server_config.password,
                    "token": server_config.token,
                    "entities": config.routed_entities(name),
                },
                notify=False,
            )
        logger.info(f"Broker configured with servers: {list(self._servers)}")

    # =========================================================================
    # Registry
    # =========================================================================

    def get_server(self, name: str) -> Optional[ServerConnection]:
        return self._servers.get(name)

    def servers(self) -> list[ServerConnection]:
        return list(self._servers.values())

    def has_credentials(self, name: str) -> bool:
        server = self.get_server(name)
        return server is not None and server.has_credentials()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Plain-data view of every server."""
        return {name: server.snapshot() for name, server in self._servers.items()}

    def upsert_server(
        self,
        name_or_info: Union[str, Mapping[str, Any], ServerConnection],
        changes: Optional[Mapping[str, Any]] = None,
        do_login: bool = False,
        notify: bool = True,
    ) -> ServerConnection:
        """
        Add or update a server.

        Only the fields that actually differ are applied and reported to
        subscribers.

        Args:
            name_or_info: Server name (changes in ``changes``), or a mapping /
                ServerConnection carrying ``name`` and the values to set
            changes: Field values to set (see SERVER_FIELDS)
            do_login: Start a background login when a credential changed and
                the server is not logged in. Use wait_for_login() to observe it.
            notify: Tell subscribers about the applied changes

        Returns:
            The (live) ServerConnection

        Raises:
            ConfigError: No server name, or unknown fields
        """
        name, incoming = self._split_server_info(name_or_info, changes)

        unknown = set(incoming) - set(SERVER_FIELDS)
        if unknown:
            raise ConfigError(f"Unknown server fields for {name}: {sorted(unknown)}")
        if incoming.get("entities") is not None:
            incoming["entities"] = set(incoming["entities"])
        for key in ("url", "entities"):
            if key in incoming and incoming[key] is None:
                del incoming[key]
        if "auth_state" in incoming:
            incoming["auth_state"] = AuthState(incoming["auth_state"])

        server = self._servers.get(name)
        if server is None:
            server = ServerConnection(
                name=name,
                url=incoming.get("url") or default_server_url(name, self.server_suffix),
            )
            self._servers[name] = server
            diff = dict(incoming)
            logger.debug(f"Server {name} registered")
        else:
            current = {key: getattr(server, key) for key in incoming}
            diff = shallow_diff(current, incoming)

        credentials_changed = any(key in diff for key in CREDENTIAL_FIELDS)
        # New credentials lift the terminal error state
        if credentials_changed and server.auth_state == AuthState.ERROR and "auth_state" not in diff:
            diff["auth_state"] = AuthState.NOT_LOGGED_IN

        for key, value in diff.items():
            setattr(server, key, value)

        if server.adapter is None or ("type" in diff and "adapter" not in diff):
            server.adapter = self._resolve_adapter(server)

        if notify and diff:
            self._notify(name, _plain_changes(diff), server.snapshot())

        if do_login and credentials_changed and server.auth_state <= AuthState.UNKNOWN:
            self._spawn_login(server)

        return server

    @staticmethod
    def _split_server_info(
        name_or_info: Union[str, Mapping[str, Any], ServerConnection],
        changes: Optional[Mapping[str, Any]],
    ) -> tuple[str, dict[str, Any]]:
        if isinstance(name_or_info, str):
            return name_or_info, dict(changes or {})

        if isinstance(name_or_info, ServerConnection):
            name = name_or_info.name
            incoming = {key: getattr(name_or_info, key) for key in SERVER_FIELDS}
        else:
            incoming = dict(name_or_info)
            name = incoming.pop("name", None)
        if changes:
            incoming.update(changes)
        if not name:
            raise ConfigError("Server info must carry a name")
        return name, incoming

    def _resolve_adapter(self, server: ServerConnection) -> Optional[BackendAdapter]:
        adapter = self._adapters.get(server.name)
        if adapter is not None:
            if server.type is None:
                server.type = adapter.type_name or None
            return adapter

        if server.type is None:
            return None
        factory = self._adapter_types.get(server.type)
        if factory is None:
            logger.warning(f"No adapter for server type '{server.type}' ({server.name})")
            return None
        adapter = factory()
        self._adapters[server.name] = adapter
        return adapter

    # =========================================================================
    # Entity routing
    # =========================================================================

    def get_server_by_entity(self, entity: str, service: Any = None) -> Optional[ServerConnection]:
        """
        Find the server that owns ``entity``.

        "server:entity" routes to the named server directly; a bare name is
        looked up in every server's entities. When a server is found the
        entity is added to its entities and ``service`` (if given) becomes the
        entity's service in the directory used for deep-field loads.
        """
        if SERVER_PREFIX_SEPARATOR in entity:
            server_name, entity = entity.split(SERVER_PREFIX_SEPARATOR, 1)
            server = self.get_server(server_name)
        else:
            server = next(
                (candidate for candidate in self._servers.values() if entity in candidate.entities),
                None,
            )

        if server is not None:
            server.entities.add(entity)
            if service is not None:
                self._services[entity] = service
        return server

    def get_service_by_entity(self, entity: str) -> Any:
        """Service registered for ``entity`` (server prefix ignored), or None."""
        if SERVER_PREFIX_SEPARATOR in entity:
            entity = entity.split(SERVER_PREFIX_SEPARATOR, 1)[1]
        return self._services.get(entity)

    # =========================================================================
    # Authentication
    # =========================================================================

    async def login_server(
        self,
        name: str,
        credentials: Optional[Credentials] = None,
    ) -> Optional[ServerConnection]:
        """
        Log in to a server and return it (None for an unknown server).

        Concurrent calls share one in-flight login. Given credentials replace
        the stored ones when they differ.
        """
        server = self.get_server(name)
        if server is None:
            return None
        await self._login(server, credentials)
        return server

    async def wait_for_login(self, name: str, tries: Optional[int] = None) -> AuthState:
        """
        Poll while the server is WAITING, at most ``tries`` times.

        Never starts a login itself.
        """
        server = self.get_server(name)
        if server is None:
            return AuthState.ERROR
        remaining = self.login_tries if tries is None else tries
        while server.auth_state == AuthState.WAITING and remaining > 0:
            remaining -= 1
            await asyncio.sleep(self.login_poll_interval)
        return server.auth_state

    async def recheck_login(self, name: str) -> AuthState:
        """
        Verify the session is still alive; log in again when it is not.

        Used after a backend call failed with a credential error.
        """
        server = self.get_server(name)
        if server is None:
            return AuthState.ERROR

        task = self._login_tasks.get(name)
        if task is not None and not task.done():
            return await asyncio.shield(task)
        if server.auth_state == AuthState.ERROR:
            return server.auth_state
        if server.adapter is None:
            return await self._login(server)

        try:
            alive = await server.adapter.refresh(server)
        except Exception as e:
            logger.warning(f"Session check on {name} failed, will log in again: {e}")
            alive = False

        if alive:
            self._set_state(server, AuthState.LOGGED_IN)
            return server.auth_state

        self._set_state(server, AuthState.UNKNOWN)
        return await self._login(server)

    async def logout_server(self, name: str) -> AuthState:
        """
        Close the server session.

        Raises:
            DBError: The adapter failed to log out (previous state is kept)
        """
        server = self.get_server(name)
        if server is None:
            return AuthState.ERROR
        if not server.is_logged_in or server.adapter is None:
            return server.auth_state

        previous = server.auth_state
        self._set_state(server, AuthState.WAITING)
        try:
            await server.adapter.logout(server)
        except Exception as e:
            self._set_state(server, previous)
            logger.error(f"Logout from {name} failed: {e}")
            raise DBError.from_exception(e) from e

        self._set_state(server, AuthState.NOT_LOGGED_IN)
        logger.info(f"Logged out from server {name}")
        return server.auth_state

    async def _login(self, server: ServerConnection, credentials: Optional[Credentials] = None) -> AuthState:
        task = self._login_tasks.get(server.name)
        if task is not None and not task.done():
            return await asyncio.shield(task)
        if server.auth_state == AuthState.WAITING:
            return await self.wait_for_login(server.name)

        changed = False
        if credentials is not None:
            changes = {
                key: getattr(credentials, key)
                for key in CREDENTIAL_FIELDS
                if getattr(credentials, key) is not None
            }
            before = server.credentials
            self.upsert_server(server.name, changes)
            changed = server.credentials != before

        if server.is_logged_in and not changed:
            return server.auth_state
        if server.auth_state == AuthState.ERROR and not changed:
            logger.warning(f"Server {server.name} is in error state, new credentials required")
            return server.auth_state

        task = self._start_login(server)
        return await asyncio.shield(task)

    def _start_login(self, server: ServerConnection) -> asyncio.Task:
        # WAITING is visible before the task runs so concurrent callers join it
        self._set_state(server, AuthState.WAITING)
        task = asyncio.get_running_loop().create_task(self._run_login(server))
        self._login_tasks[server.name] = task
        task.add_done_callback(lambda done: self._login_finished(server.name, done))
        return task

    def _spawn_login(self, server: ServerConnection) -> None:
        """Fire-and-forget login from synchronous code."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, login to {server.name} deferred to first use")
            return
        task = self._login_tasks.get(server.name)
        if task is None or task.done():
            self._start_login(server)

    async def _run_login(self, server: ServerConnection) -> AuthState:
        adapter = server.adapter
        if adapter is None:
            logger.error(f"Can't log in to server {server.name}: no adapter for type '{server.type}'")
            self._set_state(server, AuthState.ERROR)
            return server.auth_state

        logger.info(f"Logging in to server {server.name}")
        try:
            state = AuthState(await adapter.login(server, server.credentials))
        except Exception as e:
            logger.error(f"Login to server {server.name} failed: {e}", exc_info=True)
            state = AuthState.NOT_LOGGED_IN

        if state in (AuthState.WAITING, AuthState.UNKNOWN):
            state = AuthState.NOT_LOGGED_IN
        self._set_state(server, state)
        logger.info(f"Login to server {server.name}: {state.name}")
        return server.auth_state

    def _login_finished(self, name: str, task: asyncio.Task) -> None:
        if self._login_tasks.get(name) is task:
            del self._login_tasks[name]

    def _set_state(self, server: ServerConnection, state: AuthState) -> None:
        self.upsert_server(server.name, {"auth_state": state})

    # =========================================================================
    # Notifications
    # =========================================================================

    def subscribe(self, server_name: str, callback: ServerCallback) -> None:
        """
        Call ``callback(changes, server_snapshot)`` after every change of a
        server. Use WILDCARD ("*") to receive every server's changes.
        """
        self._subscribers.setdefault(server_name, []).append(callback)

    def unsubscribe(self, callback: ServerCallback) -> None:
        for callbacks in self._subscribers.values():
            while callback in callbacks:
                callbacks.remove(callback)

    def _notify(self, name: str, changes: dict[str, Any], snapshot: dict[str, Any]) -> None:
        """
        Deliver on the next loop iteration so a subscriber that changes the
        registry can't re-enter this dispatch. Without a running loop the
        callbacks run before returning, and changes made by a subscriber are
        delivered after the current callback finishes.
        """
        callbacks = [*self._subscribers.get(name, []), *self._subscribers.get(WILDCARD, [])]
        if not callbacks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            for callback in callbacks:
                loop.call_soon(self._dispatch, callback, dict(changes), snapshot)
            return

        self._queued.extend((callback, dict(changes), snapshot) for callback in callbacks)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._queued:
                self._dispatch(*self._queued.popleft())
        finally:
            self._dispatching = False

    def _dispatch(self, callback: ServerCallback, changes: dict[str, Any], snapshot: dict[str, Any]) -> None:
        try:
            result = callback(changes, snapshot)
        except Exception as e:
            logger.error(f"Error in server subscriber {callback!r}: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(f"Subscriber {callback!r} returned an awaitable outside an event loop")
                if inspect.iscoroutine(result):
                    result.close()
                return
            task = asyncio.ensure_future(result, loop=loop)
            self._pending.add(task)
            task.add_done_callback(self._subscriber_done)

    def _subscriber_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Error in async server subscriber: {task.exception()}")

    async def drain_notifications(self) -> None:
        """Let queued notifications (and async subscribers) run to completion."""
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
            await asyncio.sleep(0)

    async def close(self) -> None:
        """Cancel running logins and release adapter resources."""
        for task in list(self._login_tasks.values()):
            task.cancel()
        for adapter in {id(a): a for a in self._adapters.values()}.values():
            await adapter.close()


def _plain_changes(diff: dict[str, Any]) -> dict[str, Any]:
    """Changes as plain data: no adapter/handle objects, entities sorted."""
    changes = {key: value for key, value in diff.items() if key not in ("adapter", "handle")}
    if "entities" in changes:
        changes["entities"] = sorted(changes["entities"])
    return changes


# =============================================================================
# Global accessor
# =============================================================================

_global_broker: Optional[Broker] = None


def get_broker() -> Broker:
    """
    Get the global broker, creating an empty one on first use.

    Opt-in convenience: nothing inside entitymesh relies on it.
    """
    global _global_broker
    if _global_broker is None:
        _global_broker = Broker()
    return _global_broker


def set_broker(broker: Optional[Broker]) -> None:
    """Install (or with None, drop) the global broker."""
    global _global_broker
    _global_broker = broker
