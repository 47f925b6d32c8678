"""
Backend adapter port.

An adapter implements the wire protocol of one backend kind. The broker owns
one adapter per server; entity services reach it through the server they
are bound to and never contain transport logic themselves.

Usage:
    class MyAdapter(BackendAdapter):
        type_name = "mine"
        query_format = QueryFormat.CANONICAL

        async def login(self, server, credentials):
            ...

    broker = Broker(config, adapter_types={"mine": MyAdapter})
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable

from ..core.query import QueryFormat
from ..core.types import AuthState, Credentials, Entity, EntityID, ServerConnection


class BackendOperation(str, Enum):
    """Adapter calls an entity service may issue."""

    QUERY = "query"
    CREATE_ONE = "create_one"
    CREATE_MANY = "create_many"
    UPDATE_ONE = "update_one"
    UPDATE_MANY = "update_many"
    DELETE_ONE = "delete_one"
    DELETE_MANY = "delete_many"
    DELETE_BY_QUERY = "delete_by_query"


class BackendAdapter(ABC):
    """Base class for backend adapters. All calls take the server first."""

    type_name: str = ""
    # Wire form queries are compiled into before query()/delete_by_query()
    query_format: QueryFormat = QueryFormat.CANONICAL

    # --- Session ---

    @abstractmethod
    async def login(self, server: ServerConnection, credentials: Credentials) -> AuthState:
        """
        Open a session.

        Returns:
            LOGGED_IN on success, NOT_LOGGED_IN when the backend refused,
            ERROR when there is nothing to log in with
        """
        raise NotImplementedError

    async def logout(self, server: ServerConnection) -> AuthState:
        return AuthState.NOT_LOGGED_IN

    async def refresh(self, server: ServerConnection) -> bool:
        """Ping/refresh the current session. False when it is gone."""
        return server.is_logged_in

    async def close(self) -> None:
        """Release transport resources."""
        pass

    # --- Entities ---

    @abstractmethod
    async def query(self, server: ServerConnection, entity: str, wire_query: dict[str, Any]) -> list[Entity]:
        raise NotImplementedError

    @abstractmethod
    async def create_one(self, server: ServerConnection, entity: str, data: Entity) -> Entity:
        raise NotImplementedError

    @abstractmethod
    async def create_many(self, server: ServerConnection, entity: str, items: list[Entity]) -> list[Entity]:
        raise NotImplementedError

    @abstractmethod
    async def update_one(
        self, server: ServerConnection, entity: str, entity_id: EntityID, data: Entity
    ) -> Entity:
        raise NotImplementedError

    @abstractmethod
    async def update_many(
        self, server: ServerConnection, entity: str, ids: list[EntityID], data: Entity
    ) -> list[Entity]:
        raise NotImplementedError

    @abstractmethod
    async def delete_one(self, server: ServerConnection, entity: str, entity_id: EntityID) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_many(self, server: ServerConnection, entity: str, ids: list[EntityID]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete_by_query(self, server: ServerConnection, entity: str, wire_query: dict[str, Any]) -> None:
        raise NotImplementedError


def operation_table(adapter: BackendAdapter) -> dict[BackendOperation, Callable[..., Awaitable[Any]]]:
    """Bound adapter methods keyed by operation."""
    return {
        BackendOperation.QUERY: adapter.query,
        BackendOperation.CREATE_ONE: adapter.create_one,
        BackendOperation.CREATE_MANY: adapter.create_many,
        BackendOperation.UPDATE_ONE: adapter.update_one,
        BackendOperation.UPDATE_MANY: adapter.update_many,
        BackendOperation.DELETE_ONE: adapter.delete_one,
        BackendOperation.DELETE_MANY: adapter.delete_many,
        BackendOperation.DELETE_BY_QUERY: adapter.delete_by_query,
    }
