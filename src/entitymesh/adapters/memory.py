"""
In-process backend adapter.

Keeps collections in dicts and evaluates canonical queries locally. Used for
development and tests, and as the reference behavior for the filter
operators.

Usage:
    adapter = MemoryAdapter({
        "users": [{"id": 1, "name": "Ann"}, {"id": 2, "name": "Bob"}],
    })
    broker = Broker({"servers": {"local": {"type": "memory", "entities": ["users"]}}},
                    adapters={"local": adapter})

    adapter.calls       # every adapter call, in order
    adapter.count("query")
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..core.errors import BackendError, DBError
from ..core.query import QueryFormat
from ..core.types import AuthState, Credentials, Entity, EntityID, ServerConnection
from ..core.utils import split_path
from .base import BackendAdapter

logger = logging.getLogger(__name__)


@dataclass
class RecordedCall:
    """One adapter invocation."""

    operation: str
    server: str
    entity: Optional[str] = None
    args: tuple = field(default_factory=tuple)


class MemoryAdapter(BackendAdapter):
    """
    Backend living in process memory.

    Args:
        data: Initial collections: entity name -> list of items
        credentials: When set, login must match them and entity calls require
            a session; when None every login succeeds
        id_field: Primary key name in every collection
        login_delay: Seconds login() sleeps before answering
    """

    type_name = "memory"
    query_format = QueryFormat.CANONICAL

    def __init__(
        self,
        data: Optional[dict[str, list[Entity]]] = None,
        credentials: Optional[Credentials] = None,
        id_field: str = "id",
        login_delay: float = 0.0,
    ):
        self.id_field = id_field
        self.credentials = credentials
        self.login_delay = login_delay
        self.collections: dict[str, dict[EntityID, Entity]] = {}
        self.calls: list[RecordedCall] = []
        self._sessions: set[str] = set()
        self._failures: dict[str, list[BaseException]] = {}
        for entity, items in (data or {}).items():
            self.load(entity, items)

    # =========================================================================
    # Test helpers
    # =========================================================================

    def load(self, entity: str, items: list[Entity]) -> None:
        collection = self.collections.setdefault(entity, {})
        for item in items:
            collection[item[self.id_field]] = copy.deepcopy(item)

    def count(self, operation: str, entity: Optional[str] = None) -> int:
        return sum(
            1
            for call in self.calls
            if call.operation == operation and (entity is None or call.entity == entity)
        )

    def fail_next(self, operation: str, error: BaseException) -> None:
        """Make the next call of ``operation`` raise ``error``."""
        self._failures.setdefault(operation, []).append(error)

    def expire_session(self, server_name: str) -> None:
        """Drop a session; the next entity call fails with an auth error."""
        self._sessions.discard(server_name)

    # =========================================================================
    # Session
    # =========================================================================

    async def login(self, server: ServerConnection, credentials: Credentials) -> AuthState:
        self._record("login", server)
        if self.login_delay:
            await asyncio.sleep(self.login_delay)
        self._raise_pending("login")

        if self.credentials is None:
            self._sessions.add(server.name)
            return AuthState.LOGGED_IN
        if credentials.is_empty:
            return AuthState.ERROR

        if credentials.token:
            accepted = credentials.token == self.credentials.token
        else:
            accepted = (
                credentials.login == self.credentials.login
                and credentials.password == self.credentials.password
            )
        if not accepted:
            logger.debug(f"Memory login refused for {server.name}")
            return AuthState.NOT_LOGGED_IN

        self._sessions.add(server.name)
        server.user = {"email": credentials.login} if credentials.login else {}
        return AuthState.LOGGED_IN

    async def logout(self, server: ServerConnection) -> AuthState:
        self._record("logout", server)
        self._raise_pending("logout")
        self._sessions.discard(server.name)
        return AuthState.NOT_LOGGED_IN

    async def refresh(self, server: ServerConnection) -> bool:
        self._record("refresh", server)
        self._raise_pending("refresh")
        return self.credentials is None or server.name in self._sessions

    # =========================================================================
    # Entities
    # =========================================================================

    async def query(self, server: ServerConnection, entity: str, wire_query: dict[str, Any]) -> list[Entity]:
        self._begin("query", server, entity, wire_query)
        items = self._select(entity, wire_query)
        fields = wire_query.get("fields")
        return [project(item, fields) for item in items]

    async def create_one(self, server: ServerConnection, entity: str, data: Entity) -> Entity:
        self._begin("create_one", server, entity, data)
        return copy.deepcopy(self._insert(entity, data))

    async def create_many(self, server: ServerConnection, entity: str, items: list[Entity]) -> list[Entity]:
        self._begin("create_many", server, entity, items)
        return [copy.deepcopy(self._insert(entity, item)) for item in items]

    async def update_one(
        self, server: ServerConnection, entity: str, entity_id: EntityID, data: Entity
    ) -> Entity:
        self._begin("update_one", server, entity, entity_id, data)
        item = self._existing(entity, entity_id)
        item.update(copy.deepcopy(data))
        return copy.deepcopy(item)

    async def update_many(
        self, server: ServerConnection, entity: str, ids: list[EntityID], data: Entity
    ) -> list[Entity]:
        self._begin("update_many", server, entity, ids, data)
        items = [self._existing(entity, entity_id) for entity_id in ids]
        for item in items:
            item.update(copy.deepcopy(data))
        return [copy.deepcopy(item) for item in items]

    async def delete_one(self, server: ServerConnection, entity: str, entity_id: EntityID) -> None:
        self._begin("delete_one", server, entity, entity_id)
        self._existing(entity, entity_id)
        del self.collections[entity][entity_id]

    async def delete_many(self, server: ServerConnection, entity: str, ids: list[EntityID]) -> None:
        self._begin("delete_many", server, entity, ids)
        collection = self.collections.get(entity, {})
        for entity_id in ids:
            collection.pop(entity_id, None)

    async def delete_by_query(self, server: ServerConnection, entity: str, wire_query: dict[str, Any]) -> None:
        self._begin("delete_by_query", server, entity, wire_query)
        collection = self.collections.get(entity, {})
        for item in self._select(entity, wire_query):
            collection.pop(item[self.id_field], None)

    # =========================================================================
    # Internals
    # =========================================================================

    def _record(self, operation: str, server: ServerConnection, entity: Optional[str] = None, *args: Any) -> None:
        self.calls.append(RecordedCall(operation, server.name, entity, copy.deepcopy(args)))

    def _raise_pending(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _begin(self, operation: str, server: ServerConnection, entity: str, *args: Any) -> None:
        self._record(operation, server, entity, *args)
        self._raise_pending(operation)
        if self.credentials is not None and server.name not in self._sessions:
            raise BackendError("Token expired.", table=entity, code=401, err_id="TOKEN_EXPIRED")

    def _select(self, entity: str, wire_query: dict[str, Any]) -> list[Entity]:
        items = list(self.collections.get(entity, {}).values())

        filter_tree = wire_query.get("filter")
        if filter_tree:
            items = [item for item in items if matches(item, filter_tree)]

        search = wire_query.get("search")
        if search:
            needle = str(search).lower()
            items = [
                item for item in items
                if any(isinstance(v, str) and needle in v.lower() for v in item.values())
            ]

        items = sort_items(items, wire_query.get("sort") or [])

        limit = wire_query.get("limit")
        offset = wire_query.get("offset") or 0
        page = wire_query.get("page")
        if page and limit and limit > 0:
            offset = (page - 1) * limit
        items = items[offset:]
        if limit is not None and limit >= 0:
            items = items[:limit]
        return items

    def _insert(self, entity: str, data: Entity) -> Entity:
        collection = self.collections.setdefault(entity, {})
        item = copy.deepcopy(data)
        entity_id = item.get(self.id_field)
        if entity_id is None:
            numeric = [key for key in collection if isinstance(key, int)]
            entity_id = max(numeric, default=0) + 1
            item[self.id_field] = entity_id
        elif entity_id in collection:
            raise BackendError(
                f'Value for field "{self.id_field}" in collection "{entity}" has to be unique.',
                table=entity,
                field=self.id_field,
                code=400,
                err_id="RECORD_NOT_UNIQUE",
            )
        collection[entity_id] = item
        return item

    def _existing(self, entity: str, entity_id: EntityID) -> Entity:
        item = self.collections.get(entity, {}).get(entity_id)
        if item is None:
            raise BackendError(f"Item {entity_id} not found", table=entity, code=404, err_id="NOT_FOUND")
        return item


# =============================================================================
# Canonical query evaluation
# =============================================================================


def _compare(value: Any, expected: Any, op) -> bool:
    if value is None or expected is None:
        return False
    try:
        return op(value, expected)
    except TypeError:
        return False


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _apply_operator(operator: str, value: Any, expected: Any) -> bool:
    if operator == "_eq":
        return value == expected
    if operator == "_neq":
        return value != expected
    if operator == "_lt":
        return _compare(value, expected, lambda a, b: a < b)
    if operator == "_lte":
        return _compare(value, expected, lambda a, b: a <= b)
    if operator == "_gt":
        return _compare(value, expected, lambda a, b: a > b)
    if operator == "_gte":
        return _compare(value, expected, lambda a, b: a >= b)
    if operator == "_in":
        return value in (expected or [])
    if operator == "_nin":
        return value not in (expected or [])
    if operator == "_null":
        return (value is None) == bool(expected)
    if operator == "_nnull":
        return (value is not None) == bool(expected)
    if operator == "_empty":
        return _is_empty(value) == bool(expected)
    if operator == "_nempty":
        return (not _is_empty(value)) == bool(expected)
    if operator == "_between":
        low, high = expected
        return _compare(value, low, lambda a, b: a >= b) and _compare(value, high, lambda a, b: a <= b)
    if operator == "_nbetween":
        low, high = expected
        return not (_compare(value, low, lambda a, b: a >= b) and _compare(value, high, lambda a, b: a <= b))

    text = _text(value)
    if operator == "_contains":
        return text is not None and str(expected) in text
    if operator == "_ncontains":
        return text is None or str(expected) not in text
    if operator == "_icontains":
        return text is not None and str(expected).lower() in text.lower()
    if operator == "_starts_with":
        return text is not None and text.startswith(str(expected))
    if operator == "_nstarts_with":
        return text is None or not text.startswith(str(expected))
    if operator == "_istarts_with":
        return text is not None and text.lower().startswith(str(expected).lower())
    if operator == "_ends_with":
        return text is not None and text.endswith(str(expected))
    if operator == "_nends_with":
        return text is None or not text.endswith(str(expected))
    if operator == "_iends_with":
        return text is not None and text.lower().endswith(str(expected).lower())

    raise DBError(f"Unsupported filter operator: {operator}")


def _is_operator_map(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and all(key.startswith("_") for key in condition)


def matches(item: Entity, filter_tree: dict[str, Any]) -> bool:
    """True when ``item`` satisfies every condition of the filter tree."""
    for key, condition in filter_tree.items():
        if key == "_and":
            if not all(matches(item, sub) for sub in condition):
                return False
            continue
        if key == "_or":
            if not any(matches(item, sub) for sub in condition):
                return False
            continue

        value = item.get(key) if isinstance(item, dict) else None
        if _is_operator_map(condition):
            if not all(_apply_operator(op, value, expected) for op, expected in condition.items()):
                return False
        elif isinstance(value, dict):
            if not matches(value, condition):
                return False
        elif isinstance(value, list):
            if not any(isinstance(sub, dict) and matches(sub, condition) for sub in value):
                return False
        else:
            return False
    return True


def sort_items(items: list[Entity], sort: list[str]) -> list[Entity]:
    """Stable multi-key sort. "-field" is descending; None sorts last."""
    result = list(items)
    for key in reversed(sort):
        descending = key.startswith("-")
        name = key.lstrip("+-")
        present = [item for item in result if item.get(name) is not None]
        missing = [item for item in result if item.get(name) is None]
        present.sort(key=lambda item: item[name], reverse=descending)
        result = present + missing
    return result


def project(item: Entity, fields: Optional[list[str]]) -> Entity:
    """
    Keep only the selected fields.

    "*" selects every top-level field, "author.name" selects inside a related
    object (or every object of a related list).
    """
    if not fields:
        return copy.deepcopy(item)
    result: Entity = {}
    for path in fields:
        _project_path(item, split_path(path), result)
    return result


def _project_path(source: dict[str, Any], segments: list[str], target: dict[str, Any]) -> None:
    if not segments:
        return
    head, rest = segments[0], segments[1:]

    if head == "*":
        for key, value in source.items():
            target.setdefault(key, copy.deepcopy(value))
        return
    if head not in source:
        return

    value = source[head]
    if not rest:
        target[head] = copy.deepcopy(value)
    elif isinstance(value, dict):
        sub = target.get(head)
        if not isinstance(sub, dict):
            sub = target[head] = {}
        _project_path(value, rest, sub)
    elif isinstance(value, list):
        existing = target.get(head)
        if not isinstance(existing, list) or len(existing) != len(value):
            existing = target[head] = [{} if isinstance(v, dict) else v for v in value]
        for index, sub_value in enumerate(value):
            if isinstance(sub_value, dict) and isinstance(existing[index], dict):
                _project_path(sub_value, rest, existing[index])
    else:
        # A scalar where a relation was expected (unexpanded foreign key)
        target[head] = value
