"""
Field type coercion for loaded entities.

Backends often hand numbers and dates over as strings. A TypeCaster rewrites
the configured fields of each entity in place using pydantic's lax
validation.

Usage:
    caster = TypeCaster({"balance": "number", "created": "datetime", "meta": "json"})
    caster.cast({"balance": "12.5", "created": "2024-01-01T10:00:00"})
    # {"balance": 12.5, "created": datetime(2024, 1, 1, 10, 0)}
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Mapping, Union

from pydantic import Json, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import ConfigError
from ..core.types import Entity

logger = logging.getLogger(__name__)


TYPE_ALIASES: dict[str, Any] = {
    "number": Union[int, float],
    "integer": int,
    "string": str,
    "boolean": bool,
    "date": datetime.date,
    "datetime": datetime.datetime,
    "json": Json[Any],
}


def resolve_type(declared: Any) -> Any:
    """Alias name or python type -> python type."""
    if isinstance(declared, str):
        try:
            return TYPE_ALIASES[declared]
        except KeyError:
            raise ConfigError(
                f"Unknown caster type '{declared}', expected one of {sorted(TYPE_ALIASES)}"
            ) from None
    return declared


class TypeCaster:
    """
    Casts entity fields to declared types.

    None values are left alone. A value that can't be cast is kept as is and
    a warning is logged.
    """

    def __init__(self, schema: Mapping[str, Any]):
        self.schema = dict(schema)
        self._adapters = {field: TypeAdapter(resolve_type(kind)) for field, kind in self.schema.items()}
        # "json" fields only parse strings; already decoded values pass through
        self._json_fields = {field for field, kind in self.schema.items() if kind == "json"}

    def cast(self, item: Entity) -> Entity:
        for field, adapter in self._adapters.items():
            value = item.get(field)
            if value is None:
                continue
            if field in self._json_fields and not isinstance(value, (str, bytes)):
                continue
            try:
                item[field] = adapter.validate_python(value)
            except PydanticValidationError as e:
                logger.warning(f"Can't cast field '{field}' value {value!r}: {e.errors()[0]['msg']}")
        return item

    def cast_many(self, items: list[Entity]) -> list[Entity]:
        return [self.cast(item) for item in items]
