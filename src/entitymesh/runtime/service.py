"""
Entity service: the per-entity-type operation protocol.

One EntityService exists per entity type. It finds its server through the
broker, answers from its own cache when it can, calls the server's backend
adapter otherwise and post-processes what comes back (deep fields, type
casting, user hook, cache).

Usage:
    broker = Broker(config)
    articles = EntityService("articles", broker, ServiceOptions(
        deep_fields={"author": "users"},
        caster_schema={"rating": "number"},
    ))
    users = EntityService("users", broker)
    users.cache_enable(["email"])

    items = await articles.query(qb().equal("status", "published").limit(10))
    article = await articles.get_by_id(5)
    await articles.update({"id": 5, "title": "New title"})

Error policy:
    throw_errors=True   failures raise DBError
    throw_errors=False  mutating calls return the error string, queries return
                        [] / None; the error is kept in ``last_error``
"""

from __future__ import annotations

import datetime
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..adapters.base import BackendAdapter, BackendOperation, operation_table
from ..broker import Broker
from ..cache import MISSING, EntityCache
from ..core.builder import qb
from ..core.errors import (
    AuthError,
    ConfigError,
    DBError,
    ErrorLevel,
    ReadonlyError,
    ValidationError,
)
from ..core.query import DEFAULT_LIMIT, CanonicalQuery, coerce_query, id_filter_values
from ..core.types import (
    SERVER_PREFIX_SEPARATOR,
    AuthState,
    Credentials,
    Entity,
    EntityID,
    ServerConnection,
    VerboseLevel,
)
from ..core.utils import unique
from .caster import TypeCaster
from .deep_fields import DeepFieldResolver

logger = logging.getLogger(__name__)


# VerboseLevel -> logging level
_LOG_LEVELS = {
    VerboseLevel.ERROR: logging.ERROR,
    VerboseLevel.WARN: logging.WARNING,
    VerboseLevel.INFO: logging.INFO,
    VerboseLevel.DEBUG: logging.DEBUG,
    VerboseLevel.TRACE: logging.DEBUG,
}


class ServiceOptions(BaseModel):
    """Per-service options."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Reject every mutating call before touching cache or network.
    # The backend must still enforce its own permissions.
    readonly: bool = False
    throw_errors: bool = False
    id_field_name: str = "id"
    # Host field -> target entity name, for relations owned by another server
    deep_fields: dict[str, str] = Field(default_factory=dict)
    # Field -> type or alias (see runtime.caster.TYPE_ALIASES)
    caster_schema: Optional[dict[str, Any]] = None
    verbose_level: VerboseLevel = VerboseLevel.WARN
    errors_to_console: bool = True
    # Applied to every loaded entity; a non-None return value replaces it
    post_load_modifier: Optional[Callable[[Entity], Any]] = None
    # Merged under every query() call
    default_query: Optional[CanonicalQuery] = Field(default_factory=lambda: CanonicalQuery(limit=DEFAULT_LIMIT))


class ServiceOperation(str, Enum):
    """Public service operations reachable through EntityService.call()."""

    QUERY = "query"
    QUERY_ONE = "query_one"
    GET_ALL = "get_all"
    GET_BY_ID = "get_by_id"
    GET_BY_IDS = "get_by_ids"
    GET_BY_FIELD = "get_by_field"
    GET_ONE_BY_FIELD = "get_one_by_field"
    GET_BY_FIELDS = "get_by_fields"
    GET_ONE_BY_FIELDS = "get_one_by_fields"
    GET_VALUE_BY_FIELDS = "get_value_by_fields"
    GET_FIELD_VAL_BY_ID = "get_field_val_by_id"
    GET_REAL_ITEM = "get_real_item"
    NORMALIZE_ITEMS = "normalize_items"
    ADD = "add"
    UPDATE = "update"
    UPSERT = "upsert"
    BATCH_UPDATE = "batch_update"
    DELETE = "delete"
    DELETE_IDS = "delete_ids"
    BATCH_DELETE = "batch_delete"
    LOGIN = "login"
    CHECK_LOGIN = "check_login"
    LOGOUT = "logout"


class EntityService:
    """
    Operations for one entity type.

    The server is looked up through the broker on every call; the service
    never keeps a reference to the ServerConnection.

    Raises:
        ConfigError: No configured server routes the entity
    """

    def __init__(
        self,
        entity: str,
        broker: Broker,
        options: Optional[ServiceOptions] = None,
        **option_overrides: Any,
    ):
        if options is None:
            options = ServiceOptions(**option_overrides)
        elif option_overrides:
            options = options.model_copy(update=option_overrides)
        self.options = options

        self.broker = broker
        self.entity_name = entity.split(SERVER_PREFIX_SEPARATOR, 1)[1] if SERVER_PREFIX_SEPARATOR in entity else entity

        server = broker.get_server_by_entity(entity, self)
        if server is None:
            raise ConfigError(
                f"Server for {entity} not found. Check that the server config lists this entity.",
                table=self.entity_name,
            )
        self.server_name = server.name

        self.cache = EntityCache()
        self.caster = TypeCaster(options.caster_schema) if options.caster_schema else None
        self.deep = DeepFieldResolver(self, options.deep_fields) if options.deep_fields else None
        self.last_error: Optional[DBError] = None
        self.last_request_time: Optional[datetime.datetime] = None
        self._operations = self._operation_table()

        self._log(f"Service created for {self.entity_name} ({entity}) on server {server.name}", VerboseLevel.DEBUG)

    def __repr__(self) -> str:
        return f"EntityService({self.entity_name!r}, server={self.server_name!r})"

    @property
    def id_field(self) -> str:
        return self.options.id_field_name

    @property
    def readonly(self) -> bool:
        return self.options.readonly

    @property
    def server(self) -> ServerConnection:
        server = self.broker.get_server(self.server_name)
        if server is None:
            raise ConfigError(f"Server {self.server_name} is no longer registered", table=self.entity_name)
        return server

    # =========================================================================
    # Logging and errors
    # =========================================================================

    def _log(self, message: str, level: VerboseLevel, exc_info: bool = False) -> None:
        """Log through the module logger, filtered by the service verbose level."""
        if level > self.options.verbose_level:
            return
        logger.log(_LOG_LEVELS[level], message, exc_info=exc_info)

    def had_error(self) -> bool:
        return self.last_error is not None

    def _reset_error(self) -> None:
        self.last_error = None

    def _fail(self, error: Union[DBError, BaseException, str]) -> str:
        """
        Record an error and apply the error policy.

        Returns:
            The error string (when throw_errors is off)

        Raises:
            DBError: throw_errors is on
        """
        if isinstance(error, str):
            error = DBError(error, table=self.entity_name)
        elif not isinstance(error, DBError):
            error = DBError.from_exception(error, self.entity_name)
        if error.table is None:
            error.table = self.entity_name
        self.last_error = error

        if error.level >= ErrorLevel.DAMAGE:
            logger.critical(f"[{self.entity_name}] {error}")
        elif self.options.errors_to_console:
            logger.log(error.level.log_level, f"[{self.entity_name}] {error}")

        if self.options.throw_errors:
            raise error
        return str(error)

    # =========================================================================
    # Session
    # =========================================================================

    def has_credentials(self) -> bool:
        return self.broker.has_credentials(self.server_name)

    async def login(self, credentials: Optional[Credentials] = None) -> AuthState:
        """Log in to the service's server (shared with every service on it)."""
        server = await self.broker.login_server(self.server_name, credentials)
        return server.auth_state if server else AuthState.ERROR

    async def check_login(self, recheck: bool = False) -> AuthState:
        """
        Make sure the server is logged in.

        Args:
            recheck: Don't trust the stored state: ping the session and log
                in again when it is gone
        """
        if recheck:
            return await self.broker.recheck_login(self.server_name)
        server = self.server
        if server.is_logged_in:
            return server.auth_state
        return await self.login()

    async def logout(self) -> AuthState:
        self._reset_error()
        try:
            return await self.broker.logout_server(self.server_name)
        except DBError as e:
            self._fail(e)
            return self.server.auth_state

    def update_server(self, changes: dict[str, Any]) -> ServerConnection:
        """Change the server through the broker so subscribers are notified."""
        return self.broker.upsert_server(self.server_name, changes)

    # =========================================================================
    # Backend calls
    # =========================================================================

    def _adapter(self) -> BackendAdapter:
        adapter = self.server.adapter
        if adapter is None:
            raise ConfigError(
                f"No backend adapter for server {self.server_name} (type {self.server.type!r})",
                table=self.entity_name,
            )
        return adapter

    def _wire(self, query: CanonicalQuery) -> dict[str, Any]:
        return query.compile(self._adapter().query_format)

    async def _call_backend(self, operation: BackendOperation, *args: Any) -> Any:
        """
        Run an adapter operation for this entity.

        A credential failure triggers one session recheck and a single retry.

        Raises:
            DBError: Every adapter failure, converted
        """
        server = self.server
        call: Callable[..., Awaitable[Any]] = operation_table(self._adapter())[operation]

        # Servers without credentials are used anonymously
        if server.has_credentials():
            state = await self.check_login()
            if state == AuthState.ERROR:
                raise AuthError(f"Login to server {server.name} failed", table=self.entity_name)

        try:
            return await call(server, self.entity_name, *args)
        except Exception as e:
            error = _as_db_error(e, self.entity_name)
            if not error.is_auth_failure:
                _raise_from(error, e)
            self._log(f"{self.entity_name}: {operation.value} hit a credential error, logging in again: {error}",
                      VerboseLevel.WARN)
            first_error, first_cause = error, e

        state = await self.check_login(recheck=True)
        if state != AuthState.LOGGED_IN:
            _raise_from(first_error, first_cause)

        try:
            return await call(server, self.entity_name, *args)
        except Exception as e:
            _raise_from(_as_db_error(e, self.entity_name), e)

    # =========================================================================
    # Query
    # =========================================================================

    async def query(self, query: Any = None) -> list[Entity]:
        """
        Query entities.

        ``query`` (CanonicalQuery, QueryBuilder, dict or None) is merged over
        the service default query. Id filters and equality on an indexed
        field are answered from the cache when possible.
        """
        self._reset_error()
        q = coerce_query(query).merged_over(self.options.default_query)
        self._log(f"query {self.entity_name}: {q.compile()}", VerboseLevel.DEBUG)

        if self.cache.enabled and not q.skip_cache:
            cached = self._cache_query(q)
            if cached is not MISSING:
                self._log(f"query {self.entity_name}: answered from cache", VerboseLevel.TRACE)
                return cached

        requested_fields = q.fields
        if self.deep is not None and q.fields:
            q.fields = self.deep.strip_fields(q.fields)

        try:
            items = await self._call_backend(BackendOperation.QUERY, self._wire(q))
        except DBError as e:
            self._fail(e)
            return []

        return await self._post_process(list(items or []), q, requested_fields)

    async def query_one(self, query: Any = None) -> Optional[Entity]:
        """First result of ``query`` with limit forced to 1, or None."""
        q = coerce_query(query).model_copy(deep=True)
        q.limit = 1
        items = await self.query(q)
        return items[0] if items else None

    async def get_all(self) -> list[Entity]:
        return await self.query()

    async def get_by_id(self, entity_id: EntityID, fields: Optional[list[str]] = None) -> Optional[Entity]:
        return await self.query_one(qb().equal(self.id_field, entity_id).fields(fields))

    async def get_by_ids(self, ids: list[EntityID], fields: Optional[list[str]] = None) -> list[Entity]:
        ids = unique(ids)
        if not ids:
            return []
        return await self.query(qb().in_(self.id_field, ids).limit(len(ids)).fields(fields))

    async def get_by_field(
        self,
        field: str,
        value: Any,
        fields: Optional[list[str]] = None,
        limit: Optional[int] = None,
    ) -> list[Entity]:
        """Entities where ``field`` equals ``value`` (None matches null)."""
        builder = qb().is_null(field) if value is None else qb().equal(field, value)
        return await self.query(builder.fields(fields).limit(limit))

    async def get_one_by_field(
        self,
        field: str,
        value: Any,
        skip_cache: bool = False,
        fields: Optional[list[str]] = None,
    ) -> Optional[Entity]:
        builder = qb().is_null(field) if value is None else qb().equal(field, value)
        return await self.query_one(builder.fields(fields).skip_cache(skip_cache))

    async def get_by_fields(
        self,
        match: dict[str, Any],
        limit: Optional[int] = 1,
        fields: Optional[list[str]] = None,
    ) -> list[Entity]:
        """Entities equal to every field of ``match``."""
        builder = qb().limit(limit).fields(fields)
        for field, value in match.items():
            if value is None:
                builder.is_null(field)
            else:
                builder.equal(field, value)
        return await self.query(builder)

    async def get_one_by_fields(
        self,
        match: dict[str, Any],
        skip_cache: bool = False,
        fields: Optional[list[str]] = None,
    ) -> Optional[Entity]:
        builder = qb().fields(fields).skip_cache(skip_cache)
        for field, value in match.items():
            if value is None:
                builder.is_null(field)
            else:
                builder.equal(field, value)
        return await self.query_one(builder)

    async def get_value_by_fields(self, value_field: str, match: dict[str, Any]) -> Any:
        """Value of ``value_field`` on the first entity matching ``match``."""
        item = await self.get_one_by_fields(match, fields=[value_field])
        return item.get(value_field) if item else None

    async def get_field_val_by_id(self, field: str, entity_id: EntityID) -> Any:
        item = await self.get_by_id(entity_id, fields=unique([field, self.id_field]))
        return item.get(field) if item else None

    async def get_real_item(self, id_or_item: Union[EntityID, Entity, None]) -> Optional[Entity]:
        """Load by id, or return an already loaded entity unchanged."""
        if isinstance(id_or_item, (str, int)) and not isinstance(id_or_item, bool):
            return await self.get_by_id(id_or_item)
        if isinstance(id_or_item, dict):
            return id_or_item
        return None

    async def normalize_items(self, items: list[Union[EntityID, Entity, None]]) -> list[Entity]:
        """Mixed ids / entities / None -> loaded entities, missing ones dropped."""
        ids = [item for item in items if isinstance(item, (str, int)) and not isinstance(item, bool)]
        loaded = {}
        if ids:
            loaded = {item[self.id_field]: item for item in await self.get_by_ids(ids)}

        result = []
        for item in items:
            if isinstance(item, dict):
                result.append(item)
            elif item is not None and item in loaded:
                result.append(loaded[item])
        return result

    # =========================================================================
    # Mutations
    # =========================================================================

    async def add(
        self,
        entity_or_list: Union[Entity, list[Entity]],
        skip_post_process: bool = False,
    ) -> Union[Entity, list[Entity], str]:
        """Create one entity (dict) or many (list)."""
        if self.readonly:
            return self._fail(ReadonlyError(self.entity_name))
        self._reset_error()

        many = isinstance(entity_or_list, list)
        try:
            if many:
                created = list(await self._call_backend(BackendOperation.CREATE_MANY, entity_or_list) or [])
            else:
                created = [await self._call_backend(BackendOperation.CREATE_ONE, entity_or_list)]
        except DBError as e:
            return self._fail(e)

        created = [item for item in created if item is not None]
        if not skip_post_process:
            created = await self._post_process(created)
        if many:
            return created
        return created[0] if created else None

    async def update(self, partial: Entity, entity_id: Optional[EntityID] = None) -> Union[Entity, str, None]:
        """
        Update one entity.

        The id is taken from ``entity_id`` or from ``partial[id_field]``; the
        id field itself is never sent as a change.
        """
        if self.readonly:
            return self._fail(ReadonlyError(self.entity_name))
        self._reset_error()

        data = dict(partial)
        embedded = data.pop(self.id_field, None)
        if entity_id is None:
            entity_id = embedded
        if entity_id is None or entity_id == "":
            return self._fail(ValidationError("No id given for update", table=self.entity_name))

        try:
            updated = await self._call_backend(BackendOperation.UPDATE_ONE, entity_id, data)
        except DBError as e:
            return self._fail(e)

        if not isinstance(updated, dict):
            self.cache.delete(entity_id)
            return updated
        return (await self._post_process([updated]))[0]

    async def upsert(self, entity: Entity) -> Union[Entity, str, None]:
        """
        Update the entity if it has an id, otherwise (or if the update fails)
        add it.

        Not atomic. When the update fails because the entity exists but was
        not updatable, the add carries the same id and the backend's unique
        key rejects it, so the caller gets that error.
        """
        if self.readonly:
            return self._fail(ReadonlyError(self.entity_name))
        self._reset_error()

        data = dict(entity)
        entity_id = data.get(self.id_field)
        if entity_id is not None:
            changes = {key: value for key, value in data.items() if key != self.id_field}
            try:
                updated = await self._call_backend(BackendOperation.UPDATE_ONE, entity_id, changes)
            except DBError as e:
                self._log(f"upsert {self.entity_name}:{entity_id}: update failed, trying add: {e}", VerboseLevel.WARN)
            else:
                if isinstance(updated, dict):
                    return (await self._post_process([updated]))[0]

        return await self.add(data)

    async def batch_update(
        self,
        updates: Entity,
        ids: Optional[list[EntityID]],
        skip_post_process: bool = False,
    ) -> Union[list[Entity], str]:
        """Apply the same changes to every id."""
        if self.readonly:
            return self._fail(ReadonlyError(self.entity_name))
        if ids is None:
            return self._fail(ValidationError("No ids given for batch update", table=self.entity_name))
        if not ids:
            return []
        self._reset_error()

        data = {key: value for key, value in updates.items() if key != self.id_field}
        try:
            updated = list(await self._call_backend(BackendOperation.UPDATE_MANY, list(ids), data) or [])
        except DBError as e:
            return self._fail(e)

        if skip_post_process:
            for entity_id in ids:
                self.cache.delete(entity_id)
            return updated
        return await self._post_process(updated)

    async def delete(self, entity_id: EntityID) -> Union[bool, str]:
        if self.readonly:
            return self._fail(ReadonlyError(self.entity_name))
        if entity_id is None:
            return self._fail(ValidationError("No id given for delete", table=self.entity_name))
        self._reset_error()

        try:
            await self._call_backend(BackendOperation.DELETE_ONE, entity_id)
        except DBError as e:
            return self._fail(e)
        self.cache.delete(entity_id)
        return True

    async def delete_ids(self, ids: list[EntityID], limit: int = 10) -> Union[bool, str]:
        """Delete several entities; refuses more than ``limit`` at once."""
        if self.readonly:
            return self._fail(ReadonlyError(self.entity_name))
        if len(ids) > limit:
            return self._fail(ValidationError(f"Can't delete more than {limit} items at once", table=self.entity_name))
        self._reset_error()
        if not ids:
            return True

        try:
            await self._call_backend(BackendOperation.DELETE_MANY, list(ids))
        except DBError as e:
            return self._fail(e)
        for entity_id in ids:
            self.cache.delete(entity_id)
        return True

    async def batch_delete(self, query: Any) -> Union[bool, str]:
        """Delete everything matching ``query``. The query must set a limit."""
        if self.readonly:
            return self._fail(ReadonlyError(self.entity_name))
        q = coerce_query(query)
        if q.limit is None or q.limit <= 0:
            return self._fail(ValidationError("limit must be set in query for batch delete", table=self.entity_name))
        self._reset_error()
        self._log(f"batch delete {self.entity_name}: {q.compile()}", VerboseLevel.DEBUG)

        try:
            await self._call_backend(BackendOperation.DELETE_BY_QUERY, self._wire(q))
        except DBError as e:
            return self._fail(e)
        # Deleted ids are unknown here
        self.cache.clear()
        return True

    # =========================================================================
    # Post-processing
    # =========================================================================

    async def _post_process(
        self,
        items: list[Entity],
        query: Optional[CanonicalQuery] = None,
        requested_fields: Optional[list[str]] = None,
    ) -> list[Entity]:
        """Deep fields, type casting, user hook, then cache."""
        if items and self.deep is not None:
            await self.deep.resolve(items, requested_fields)

        if items and self.caster is not None:
            items = self.caster.cast_many(items)
            self._log(f"{self.entity_name}: caster applied to {len(items)} items", VerboseLevel.TRACE)

        modifier = self.options.post_load_modifier
        if items and modifier is not None:
            modified = []
            for item in items:
                result = modifier(item)
                modified.append(item if result is None else result)
            items = modified

        if self.cache.enabled:
            self._cache_result(items, query, requested_fields)

        self.last_request_time = datetime.datetime.now()
        return items

    def _cache_query(self, query: CanonicalQuery) -> Any:
        """
        Cached answer for the query, or MISSING.

        Only single-condition filters qualify: id equality, id "in" (every id
        must be known, partial hits go to the backend) and equality on an
        indexed field. Confirmed-absent entities count as known.
        """
        filter_tree = query.filter
        if not filter_tree or len(filter_tree) != 1:
            return MISSING

        ids = id_filter_values(filter_tree, self.id_field)
        if ids is not None:
            found = []
            for entity_id in ids:
                try:
                    cached = self.cache.get(entity_id)
                except TypeError:
                    return MISSING
                if cached is MISSING:
                    return MISSING
                if cached is not None:
                    found.append(cached)
            return _paginate(found, query)

        (field, condition), = filter_tree.items()
        if field not in self.cache.index_fields:
            return MISSING
        if not isinstance(condition, dict) or set(condition) != {"_eq"}:
            return MISSING
        cached = self.cache.get_by_field(field, condition["_eq"])
        if cached is MISSING:
            return MISSING
        return [] if cached is None else _paginate([cached], query)

    def _cache_result(
        self,
        items: list[Entity],
        query: Optional[CanonicalQuery],
        requested_fields: Optional[list[str]],
    ) -> None:
        # Partial projections would later be served as full entities
        if not requested_fields or "*" in requested_fields:
            for item in items:
                if isinstance(item, dict):
                    self.cache.set(item)

        if query is None:
            return
        ids = id_filter_values(query.filter, self.id_field)
        if not ids or query.offset or query.page:
            return
        if query.limit is not None and 0 <= query.limit <= len(items):
            return
        returned = set()
        for item in items:
            # Without the id on every item there is nothing to compare with
            if not isinstance(item, dict) or item.get(self.id_field) is None:
                return
            returned.add(_id_key(item[self.id_field]))
        for entity_id in ids:
            if _id_key(entity_id) in returned:
                continue
            try:
                self.cache.set_null(entity_id)
            except TypeError:
                continue

    # =========================================================================
    # Direct cache control
    # =========================================================================

    def cache_enable(
        self,
        index_fields: Optional[list[str]] = None,
        id_field: Optional[str] = None,
        max_items: int = 100,
    ) -> None:
        self.cache.enable(index_fields, id_field or self.id_field, max_items)

    def cache_get(self, entity_id: EntityID) -> Any:
        return self.cache.get(entity_id)

    def cache_get_by_field(self, field: str, value: Any) -> Any:
        return self.cache.get_by_field(field, value)

    def cache_set(self, item: Entity, add_to_index: Optional[str] = None) -> None:
        self.cache.set(item, add_to_index)

    def cache_set_null(self, entity_id: EntityID, field: Optional[str] = None, value: Any = None) -> None:
        self.cache.set_null(entity_id, field, value)

    def cache_delete(self, entity_id: EntityID) -> None:
        self.cache.delete(entity_id)

    def cache_clear(self) -> None:
        self.cache.clear()

    def cache_info(self) -> dict[str, Any]:
        return self.cache.info()

    # =========================================================================
    # Capability table
    # =========================================================================

    def _operation_table(self) -> dict[ServiceOperation, Callable[..., Awaitable[Any]]]:
        return {
            ServiceOperation.QUERY: self.query,
            ServiceOperation.QUERY_ONE: self.query_one,
            ServiceOperation.GET_ALL: self.get_all,
            ServiceOperation.GET_BY_ID: self.get_by_id,
            ServiceOperation.GET_BY_IDS: self.get_by_ids,
            ServiceOperation.GET_BY_FIELD: self.get_by_field,
            ServiceOperation.GET_ONE_BY_FIELD: self.get_one_by_field,
            ServiceOperation.GET_BY_FIELDS: self.get_by_fields,
            ServiceOperation.GET_ONE_BY_FIELDS: self.get_one_by_fields,
            ServiceOperation.GET_VALUE_BY_FIELDS: self.get_value_by_fields,
            ServiceOperation.GET_FIELD_VAL_BY_ID: self.get_field_val_by_id,
            ServiceOperation.GET_REAL_ITEM: self.get_real_item,
            ServiceOperation.NORMALIZE_ITEMS: self.normalize_items,
            ServiceOperation.ADD: self.add,
            ServiceOperation.UPDATE: self.update,
            ServiceOperation.UPSERT: self.upsert,
            ServiceOperation.BATCH_UPDATE: self.batch_update,
            ServiceOperation.DELETE: self.delete,
            ServiceOperation.DELETE_IDS: self.delete_ids,
            ServiceOperation.BATCH_DELETE: self.batch_delete,
            ServiceOperation.LOGIN: self.login,
            ServiceOperation.CHECK_LOGIN: self.check_login,
            ServiceOperation.LOGOUT: self.logout,
        }

    async def call(self, operation: Union[ServiceOperation, str], *args: Any, **kwargs: Any) -> Any:
        """
        Run a public operation picked at runtime (host wrappers, RPC layers).

        Raises:
            ValueError: Unknown operation
        """
        return await self._operations[ServiceOperation(operation)](*args, **kwargs)


def _paginate(items: list[Entity], query: CanonicalQuery) -> list[Entity]:
    start = query.offset or 0
    end = start + query.limit if query.limit is not None and query.limit >= 0 else None
    return items[start:end]


def _id_key(entity_id: Any) -> str:
    """Backends may hand back "10" for 10."""
    return str(entity_id)


def _as_db_error(exc: BaseException, table: str) -> DBError:
    return DBError.from_exception(exc, table)


def _raise_from(error: DBError, cause: BaseException) -> None:
    if error is cause:
        raise error
    raise error from cause
