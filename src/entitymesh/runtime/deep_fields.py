"""
Cross-server relation loading ("deep fields").

A deep field is a relation whose target entity lives on another server, so
the owning backend can't join it. The host service receives raw foreign
keys; the resolver collects them across the whole result batch, asks the
target entity's service for them in one get_by_ids call per field and puts
the loaded entities back in place of the keys.

    deep_fields={"author": "users"}

    {"id": 10, "author": 7}          -> {"id": 10, "author": {"id": 7, "name": "Bob"}}
    {"id": 11, "author": [7, 8]}     -> {"id": 11, "author": [{"id": 7, ...}, {"id": 8, ...}]}
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional

from ..core.errors import DBError
from ..core.types import Entity, EntityID, VerboseLevel
from ..core.utils import split_path, top_level_field, unique

if TYPE_CHECKING:
    from .service import EntityService


class DeepFieldResolver:
    """
    Loads the deep fields of one host service.

    Args:
        service: Host entity service
        deep_fields: Host field name -> target entity name
    """

    def __init__(self, service: EntityService, deep_fields: Mapping[str, str]):
        self.service = service
        self.deep_fields = dict(deep_fields)

    def strip_fields(self, fields: list[str]) -> list[str]:
        """
        Replace dotted sub-paths of deep fields with the bare field, so the
        owning server only returns the foreign keys.

        Example (deep_fields={"nested": ...}):
            ["nested.id", "nested.name", "f", "id"] -> ["f", "id", "nested"]
        """
        kept: list[str] = []
        found: list[str] = []
        for path in fields:
            head = top_level_field(path)
            if "." in path and head in self.deep_fields:
                if head not in found:
                    found.append(head)
            else:
                kept.append(path)
        for head in found:
            if head not in kept:
                kept.append(head)
        return kept

    def plan(self, requested_fields: Optional[list[str]]) -> dict[str, Optional[list[str]]]:
        """
        Deep fields to load, each with the sub-fields to request from the
        target (None = all of them).

        Without a field restriction (or with "*") every deep field is loaded.
        """
        if not requested_fields or "*" in requested_fields:
            return {field: None for field in self.deep_fields}

        result: dict[str, Optional[list[str]]] = {}
        for path in requested_fields:
            segments = split_path(path)
            if not segments or segments[0] not in self.deep_fields:
                continue
            head = segments[0]
            sub_path = ".".join(segments[1:])
            if not sub_path:
                result[head] = None
            elif head not in result:
                result[head] = [sub_path]
            elif result[head] is not None and sub_path not in result[head]:
                result[head].append(sub_path)
        return {head: (None if sub and "*" in sub else sub) for head, sub in result.items()}

    async def resolve(self, items: list[Entity], requested_fields: Optional[list[str]] = None) -> list[Entity]:
        """Load and merge deep fields into ``items`` (in place)."""
        if not items:
            return items
        plan = self.plan(requested_fields)
        if plan:
            self.service._log(f"{self.service.entity_name}: loading deep fields {list(plan)}", VerboseLevel.TRACE)
        for field, sub_fields in plan.items():
            await self._resolve_field(items, field, sub_fields)
        return items

    async def _resolve_field(self, items: list[Entity], field: str, sub_fields: Optional[list[str]]) -> None:
        host = self.service
        target_entity = self.deep_fields[field]
        target = host.broker.get_service_by_entity(target_entity)
        if target is None:
            host._log(
                f"{host.entity_name}: service for '{target_entity}' not found, deep field '{field}' left as is",
                VerboseLevel.ERROR,
            )
            return
        if target.server_name == host.server_name:
            host._log(
                f"{host.entity_name}: deep field '{field}' ({target_entity}) is on the same server "
                f"{host.server_name}, a normal relational query would be cheaper",
                VerboseLevel.WARN,
            )

        target_id = target.id_field
        ids = []
        for item in items:
            value = item.get(field)
            for raw in value if isinstance(value, list) else [value]:
                entity_id = self._extract_id(raw, target_id, field)
                if entity_id is not None:
                    ids.append(entity_id)
        ids = unique(ids)
        if not ids:
            return

        if sub_fields is not None and target_id not in sub_fields:
            sub_fields = [*sub_fields, target_id]

        host._log(f"{host.entity_name}: loading {len(ids)} '{target_entity}' for '{field}'", VerboseLevel.DEBUG)
        try:
            loaded = await target.get_by_ids(ids, sub_fields)
        except DBError as e:
            host._log(f"{host.entity_name}: deep field '{field}' load failed: {e}", VerboseLevel.WARN)
            return

        by_id: dict[EntityID, Entity] = {
            entity[target_id]: entity
            for entity in loaded or []
            if isinstance(entity, dict) and entity.get(target_id) is not None
        }

        missing = [entity_id for entity_id in ids if entity_id not in by_id]
        if missing:
            host._log(
                f"{host.entity_name}: deep field '{field}' not found in '{target_entity}' for ids {missing}",
                VerboseLevel.WARN,
            )

        for item in items:
            value = item.get(field)
            if isinstance(value, list):
                item[field] = [self._swap(raw, by_id, target_id) for raw in value]
            elif value is not None:
                item[field] = self._swap(value, by_id, target_id)

    def _extract_id(self, raw: Any, target_id: str, field: str) -> Optional[EntityID]:
        """Foreign key of a raw value: scalar id, or an object carrying the id."""
        if raw is None:
            return None
        if isinstance(raw, dict):
            entity_id = raw.get(target_id)
            if entity_id is None:
                self.service._log(
                    f"{self.service.entity_name}: deep field '{field}' holds an object without '{target_id}'",
                    VerboseLevel.WARN,
                )
            return entity_id
        if isinstance(raw, (str, int)) and not isinstance(raw, bool):
            return raw
        self.service._log(
            f"{self.service.entity_name}: deep field '{field}' has unsupported value {raw!r}",
            VerboseLevel.WARN,
        )
        return None

    @staticmethod
    def _swap(raw: Any, by_id: dict[EntityID, Entity], target_id: str) -> Any:
        entity_id = raw.get(target_id) if isinstance(raw, dict) else raw
        if entity_id is None:
            return raw
        try:
            return by_id.get(entity_id, raw)
        except TypeError:
            return raw
