"""
Directus REST adapter.

Talks to the Directus REST API over httpx:
    POST   /auth/login | /auth/refresh | /auth/logout
    GET    /users/me
    GET    /items/<collection>?fields=..&filter=..&deep=..
    POST   /items/<collection>
    PATCH  /items/<collection>[/<id>]
    DELETE /items/<collection>[/<id>]

System collections (directus_users, directus_roles, directus_files) are
served from /users, /roles and /files.

Usage:
    adapter = DirectusAdapter(timeout=10.0)
    broker = Broker(config, adapters={"cms": adapter})
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..core.errors import BackendError, DBError
from ..core.query import QueryFormat
from ..core.types import AuthState, Credentials, Entity, EntityID, ServerConnection
from .base import BackendAdapter

logger = logging.getLogger(__name__)


SYSTEM_COLLECTIONS = {
    "directus_users": "/users",
    "directus_roles": "/roles",
    "directus_files": "/files",
}

# Query params sent JSON-encoded; list params are comma-joined
_JSON_PARAMS = ("filter", "deep", "aggregate", "alias")
_LIST_PARAMS = ("fields", "sort", "group")


@dataclass
class DirectusSession:
    """Per-server session state kept in ServerConnection.handle."""

    client: httpx.AsyncClient
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires: Optional[int] = None
    # True for static tokens (nothing to refresh)
    static: bool = False


def collection_path(entity: str) -> str:
    """URL path of a collection: articles -> /items/articles"""
    return SYSTEM_COLLECTIONS.get(entity, f"/items/{entity}")


def encode_params(wire_query: dict[str, Any]) -> dict[str, Any]:
    """Directus query dict -> URL query params."""
    params: dict[str, Any] = {}
    for key, value in wire_query.items():
        if value is None:
            continue
        if key in _JSON_PARAMS:
            params[key] = json.dumps(value, separators=(",", ":"), default=str)
        elif key in _LIST_PARAMS and isinstance(value, (list, tuple)):
            params[key] = ",".join(value)
        else:
            params[key] = value
    return params


class DirectusAdapter(BackendAdapter):
    """
    Backend adapter for Directus servers.

    Args:
        timeout: HTTP request timeout in seconds
        transport: httpx transport override (httpx.MockTransport in tests)
    """

    type_name = "directus"
    query_format = QueryFormat.DIRECTUS

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport
        self._clients: list[httpx.AsyncClient] = []

    # =========================================================================
    # Session
    # =========================================================================

    def _session(self, server: ServerConnection) -> DirectusSession:
        """Get or create the server's session (and its HTTP client)."""
        session = server.handle
        if not isinstance(session, DirectusSession):
            client = httpx.AsyncClient(
                base_url=server.url.rstrip("/"),
                timeout=self.timeout,
                transport=self.transport,
            )
            self._clients.append(client)
            session = DirectusSession(client=client)
            server.handle = session
        return session

    async def login(self, server: ServerConnection, credentials: Credentials) -> AuthState:
        session = self._session(server)

        # Static token has priority: nothing to exchange, just verify it
        if credentials.token:
            session.access_token = credentials.token
            session.refresh_token = None
            session.static = True
            try:
                server.user = await self._request(server, "GET", "/users/me")
            except DBError as e:
                logger.warning(f"Token login to {server.name} failed: {e}")
                session.access_token = None
                return AuthState.NOT_LOGGED_IN
            return AuthState.LOGGED_IN

        if not (credentials.login and credentials.password):
            logger.warning(f"No token or login/password set for server {server.name}")
            return AuthState.ERROR

        try:
            auth = await self._request(
                server,
                "POST",
                "/auth/login",
                body={"email": credentials.login, "password": credentials.password, "mode": "json"},
                authorized=False,
            )
        except DBError as e:
            logger.warning(f"Login to {server.name} failed: {e}")
            return AuthState.NOT_LOGGED_IN

        self._store_tokens(session, auth)
        try:
            server.user = await self._request(server, "GET", "/users/me")
        except DBError as e:
            logger.debug(f"Could not read current user on {server.name}: {e}")
        return AuthState.LOGGED_IN

    async def refresh(self, server: ServerConnection) -> bool:
        session = server.handle
        if not isinstance(session, DirectusSession) or not session.access_token:
            return False
        try:
            if session.static or not session.refresh_token:
                await self._request(server, "GET", "/users/me")
            else:
                auth = await self._request(
                    server,
                    "POST",
                    "/auth/refresh",
                    body={"refresh_token": session.refresh_token, "mode": "json"},
                    authorized=False,
                )
                self._store_tokens(session, auth)
        except DBError as e:
            logger.info(f"Session refresh on {server.name} failed: {e}")
            return False
        return True

    async def logout(self, server: ServerConnection) -> AuthState:
        session = server.handle
        if isinstance(session, DirectusSession):
            if session.refresh_token:
                await self._request(
                    server,
                    "POST",
                    "/auth/logout",
                    body={"refresh_token": session.refresh_token, "mode": "json"},
                    authorized=False,
                )
            session.access_token = None
            session.refresh_token = None
            session.expires = None
        server.user = None
        return AuthState.NOT_LOGGED_IN

    async def close(self) -> None:
        for client in self._clients:
            await client.aclose()
        self._clients.clear()

    @staticmethod
    def _store_tokens(session: DirectusSession, auth: Any) -> None:
        auth = auth or {}
        session.access_token = auth.get("access_token")
        session.refresh_token = auth.get("refresh_token")
        session.expires = auth.get("expires")
        session.static = False

    # =========================================================================
    # Entities
    # =========================================================================

    async def query(self, server: ServerConnection, entity: str, wire_query: dict[str, Any]) -> list[Entity]:
        data = await self._request(
            server, "GET", collection_path(entity), params=encode_params(wire_query), entity=entity
        )
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    async def create_one(self, server: ServerConnection, entity: str, data: Entity) -> Entity:
        return await self._request(server, "POST", collection_path(entity), body=data, entity=entity)

    async def create_many(self, server: ServerConnection, entity: str, items: list[Entity]) -> list[Entity]:
        return await self._request(server, "POST", collection_path(entity), body=items, entity=entity) or []

    async def update_one(
        self, server: ServerConnection, entity: str, entity_id: EntityID, data: Entity
    ) -> Entity:
        path = f"{collection_path(entity)}/{entity_id}"
        return await self._request(server, "PATCH", path, body=data, entity=entity)

    async def update_many(
        self, server: ServerConnection, entity: str, ids: list[EntityID], data: Entity
    ) -> list[Entity]:
        body = {"keys": list(ids), "data": data}
        return await self._request(server, "PATCH", collection_path(entity), body=body, entity=entity) or []

    async def delete_one(self, server: ServerConnection, entity: str, entity_id: EntityID) -> None:
        path = f"{collection_path(entity)}/{entity_id}"
        await self._request(server, "DELETE", path, entity=entity)

    async def delete_many(self, server: ServerConnection, entity: str, ids: list[EntityID]) -> None:
        await self._request(server, "DELETE", collection_path(entity), body=list(ids), entity=entity)

    async def delete_by_query(self, server: ServerConnection, entity: str, wire_query: dict[str, Any]) -> None:
        await self._request(
            server, "DELETE", collection_path(entity), body={"query": wire_query}, entity=entity
        )

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(
        self,
        server: ServerConnection,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Any = None,
        entity: Optional[str] = None,
        authorized: bool = True,
    ) -> Any:
        """
        Send a request and unwrap the {"data": ...} envelope.

        Raises:
            BackendError: Transport failure or non-2xx response
        """
        session = self._session(server)
        headers = {}
        if authorized and session.access_token:
            headers["Authorization"] = f"Bearer {session.access_token}"

        try:
            response = await session.client.request(
                method, path, params=params, json=body, headers=headers
            )
        except httpx.RequestError as e:
            raise BackendError(
                f"Request to {server.name} failed: {e}", table=entity, data=e
            ) from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"errors": [{"message": response.text}]}
            raise DBError.from_directus(payload, response.status_code, table=entity)

        if response.status_code == 204 or not response.content:
            return None
        body = response.json()
        return body.get("data") if isinstance(body, dict) else body
