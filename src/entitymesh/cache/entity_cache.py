"""
Bounded in-process entity cache with secondary field indexes.

Lookups are three-way:
    MISSING  - unknown, ask the backend
    None     - confirmed absent, the backend has no such entity
    item     - cached value

Usage:
    cache = EntityCache()
    cache.enable(["slug"], id_field="id", max_items=100)

    cache.set({"id": 1, "slug": "hello"})
    cache.set_null(5)

    cache.get(1)                    # {"id": 1, "slug": "hello"}
    cache.get(5)                    # None
    cache.get(6)                    # MISSING
    cache.get_by_field("slug", "hello")
"""

from __future__ import annotations

import logging
from collections.abc import Hashable
from typing import Any, Optional

from ..core.types import Entity, EntityID

logger = logging.getLogger(__name__)


class _Missing:
    """Sentinel for "not in cache". Falsy, like None, but never equal to it."""

    _instance: Optional[_Missing] = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


DEFAULT_MAX_ITEMS = 100


class EntityCache:
    """
    Entity cache owned by one entity service.

    Indexes hold one id per field value: when two entities share a value the
    later one wins and the earlier one is no longer reachable by that value.
    """

    def __init__(self) -> None:
        self.enabled = False
        self.id_field = "id"
        self.max_items = DEFAULT_MAX_ITEMS
        # id -> item, or None for confirmed-absent ids. Insertion ordered.
        self._items: dict[EntityID, Optional[Entity]] = {}
        # field -> {value: id}
        self._indexes: dict[str, dict[Any, EntityID]] = {}
        # id -> [(field, value)] entries currently pointing at it
        self._indexed_by: dict[EntityID, list[tuple[str, Any]]] = {}
        self._last_id: Any = MISSING
        self._last_item: Optional[Entity] = None

    def enable(
        self,
        index_fields: Optional[list[str]] = None,
        id_field: str = "id",
        max_items: int = DEFAULT_MAX_ITEMS,
    ) -> None:
        """
        Turn caching on.

        Calling it again resets the index buckets; cached items stay until
        ``clear()``.
        """
        self.enabled = True
        self.id_field = id_field
        self.max_items = max(1, max_items)
        self._indexes = {name: {} for name in index_fields or []}
        self._indexed_by = {}
        self._evict()

    def disable(self) -> None:
        self.enabled = False
        self.clear()

    def clear(self) -> None:
        self._items.clear()
        for bucket in self._indexes.values():
            bucket.clear()
        self._indexed_by.clear()
        self._forget_last()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, entity_id: EntityID) -> bool:
        return entity_id in self._items

    @property
    def index_fields(self) -> list[str]:
        return list(self._indexes)

    # =========================================================================
    # Write
    # =========================================================================

    def set(self, item: Entity, add_to_index: Optional[str] = None) -> None:
        """
        Store an item under its id and (re)index it.

        Args:
            item: Entity with the id field set. Stored by reference.
            add_to_index: Also index by this field, creating the index bucket
                if needed (every later item is indexed by it too)
        """
        if not self.enabled:
            return
        entity_id = item.get(self.id_field)
        if entity_id is None:
            logger.debug(f"Not caching item without '{self.id_field}'")
            return

        self._drop(entity_id)
        self._items[entity_id] = item
        self._last_id = entity_id
        self._last_item = item

        if add_to_index and add_to_index not in self._indexes:
            self._indexes[add_to_index] = {}
        for field_name in self._indexes:
            self._index(field_name, item.get(field_name), entity_id)

        self._evict()

    def set_null(
        self,
        entity_id: EntityID,
        field_name: Optional[str] = None,
        value: Any = None,
    ) -> None:
        """
        Record that ``entity_id`` does not exist.

        With ``field_name``/``value`` the absence is also reachable through
        that field's index (only for an already indexed field).
        """
        if not self.enabled:
            return
        self._drop(entity_id)
        self._items[entity_id] = None
        if field_name and field_name in self._indexes:
            self._index(field_name, value, entity_id)
        self._evict()

    def delete(self, entity_id: EntityID) -> None:
        """Forget an id completely: primary entry, index entries, last slot."""
        if not self.enabled:
            return
        self._drop(entity_id)

    # =========================================================================
    # Read
    # =========================================================================

    def get(self, entity_id: EntityID) -> Any:
        """Cached item, None when confirmed absent, MISSING when unknown."""
        if not self.enabled:
            return MISSING
        if self._last_id is not MISSING and entity_id == self._last_id:
            return self._last_item
        return self._items.get(entity_id, MISSING)

    def get_by_field(self, field_name: str, value: Any) -> Any:
        """Same three-way result as ``get``, looked up through a field index."""
        if not self.enabled or not isinstance(value, Hashable):
            return MISSING
        bucket = self._indexes.get(field_name)
        if bucket is None:
            return MISSING
        entity_id = bucket.get(value, MISSING)
        if entity_id is MISSING:
            return MISSING
        return self.get(entity_id)

    def info(self) -> dict[str, Any]:
        """Debug view of the cache state."""
        return {
            "enabled": self.enabled,
            "id_field": self.id_field,
            "max_items": self.max_items,
            "size": len(self._items),
            "items": dict(self._items),
            "indexes": {name: dict(bucket) for name, bucket in self._indexes.items()},
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _index(self, field_name: str, value: Any, entity_id: EntityID) -> None:
        if value is None or not isinstance(value, Hashable):
            return
        bucket = self._indexes[field_name]
        previous = bucket.get(value, MISSING)
        if previous is not MISSING and previous != entity_id:
            self._unlink(previous, field_name, value)
        bucket[value] = entity_id
        self._indexed_by.setdefault(entity_id, []).append((field_name, value))

    def _unlink(self, entity_id: EntityID, field_name: str, value: Any) -> None:
        entries = self._indexed_by.get(entity_id)
        if not entries:
            return
        try:
            entries.remove((field_name, value))
        except ValueError:
            return
        if not entries:
            del self._indexed_by[entity_id]

    def _drop(self, entity_id: EntityID) -> None:
        self._items.pop(entity_id, None)
        for field_name, value in self._indexed_by.pop(entity_id, []):
            bucket = self._indexes.get(field_name)
            # The value may have been taken over by another id since
            if bucket is not None and bucket.get(value, MISSING) == entity_id:
                del bucket[value]
        if self._last_id is not MISSING and self._last_id == entity_id:
            self._forget_last()

    def _forget_last(self) -> None:
        self._last_id = MISSING
        self._last_item = None

    def _evict(self) -> None:
        """Drop oldest-inserted entries until the size bound holds."""
        if len(self._items) <= self.max_items:
            return
        overflow = len(self._items) - self.max_items
        oldest = list(self._items)[:overflow]
        logger.debug(f"Cache maintenance: evicting {len(oldest)} item(s)")
        for entity_id in oldest:
            self._drop(entity_id)
