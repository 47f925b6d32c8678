"""
Canonical query model.

Backend-agnostic representation of a query (fields, filter tree, sort,
pagination, per-relation subqueries). Services merge it with their defaults
and compile it into the wire form their adapter expects.

Filter tree:
    {"status": {"_eq": "active"}, "author": {"name": {"_icontains": "bob"}}}
    {"_or": [{"id": {"_eq": 1}}, {"id": {"_eq": 2}}]}
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class QueryFormat(str, Enum):
    """Wire forms a canonical query compiles into."""

    CANONICAL = "canonical"
    DIRECTUS = "directus"


# Filter operators understood by the canonical model
FILTER_OPERATORS = (
    "_eq",
    "_neq",
    "_lt",
    "_lte",
    "_gt",
    "_gte",
    "_in",
    "_nin",
    "_null",
    "_nnull",
    "_contains",
    "_ncontains",
    "_icontains",
    "_starts_with",
    "_nstarts_with",
    "_istarts_with",
    "_ends_with",
    "_nends_with",
    "_iends_with",
    "_between",
    "_nbetween",
    "_empty",
    "_nempty",
)
LOGICAL_OPERATORS = ("_and", "_or")

# Page size of a service query that sets no limit; -1 asks for everything
DEFAULT_LIMIT = 100


class CanonicalQuery(BaseModel):
    """
    Query in canonical form.

    Example:
        CanonicalQuery(
            fields=["id", "title", "author.name"],
            filter={"status": {"_eq": "published"}},
            sort=["-date_created"],
            limit=10,
            field_queries={"comments": CanonicalQuery(limit=2, sort=["-id"])},
        )
    """

    # Dotted paths select fields of related entities: ["*", "author.name"]
    fields: Optional[list[str]] = None
    filter: Optional[dict[str, Any]] = None
    search: Optional[str] = None
    # "+id" / "id" ascending, "-name" descending
    sort: Optional[list[str]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    page: Optional[int] = None
    group: Optional[list[str]] = None
    aggregate: Optional[dict[str, list[str]]] = None
    alias: Optional[dict[str, str]] = None
    # Per-relation query parameters (e.g. only the 2 latest children)
    field_queries: Optional[dict[str, CanonicalQuery]] = None
    # Go to the backend even when the cache could answer
    skip_cache: bool = False

    def explicit(self) -> dict[str, Any]:
        """Attributes that were set explicitly (constructor or assignment)."""
        return {name: getattr(self, name) for name in self.model_fields_set}

    def merged_over(self, default: Optional[CanonicalQuery]) -> CanonicalQuery:
        """
        Return a new query: ``default`` with every explicitly set attribute of
        this query applied over it. Unset attributes keep the default.
        """
        if default is None:
            return self.model_copy(deep=True)
        update = copy.deepcopy(self.explicit())
        return default.model_copy(deep=True, update=update)

    def compile(self, target: QueryFormat | str = QueryFormat.CANONICAL) -> dict[str, Any]:
        """Translate into the wire form of ``target``. Pure: never mutates self."""
        target = QueryFormat(target)
        if target is QueryFormat.DIRECTUS:
            return to_directus(self)
        return to_canonical_dict(self)


CanonicalQuery.model_rebuild()


# =============================================================================
# Translation
# =============================================================================


# Keys that only steer local processing and never go over the wire
_LOCAL_KEYS = {"skip_cache", "field_queries"}


def _plain_params(query: CanonicalQuery) -> dict[str, Any]:
    """Set, non-local attributes as plain data (deep copied)."""
    return {
        name: copy.deepcopy(getattr(query, name))
        for name in CanonicalQuery.model_fields
        if name not in _LOCAL_KEYS and getattr(query, name) is not None
    }


def to_canonical_dict(query: CanonicalQuery) -> dict[str, Any]:
    """Plain dict form; subqueries stay nested under ``field_queries``."""
    result = _plain_params(query)
    if query.field_queries:
        result["field_queries"] = {
            name: to_canonical_dict(sub) for name, sub in query.field_queries.items()
        }
    return result


def to_directus(query: CanonicalQuery) -> dict[str, Any]:
    """
    Directus REST form.

    Top-level params keep their names. Subqueries become the ``deep`` param
    whose parameters are prefixed with "_" at each relation level; relations
    nested further sit inside as plain (unprefixed) keys:

        field_queries={"children": CanonicalQuery(limit=2, field_queries={
            "owner": CanonicalQuery(fields=["id"])})}
        ->
        {"deep": {"children": {"_limit": 2, "owner": {"_fields": ["id"]}}}}
    """
    result = _plain_params(query)
    if query.field_queries:
        result["deep"] = {
            name: _directus_deep(sub) for name, sub in query.field_queries.items()
        }
    return result


def _directus_deep(query: CanonicalQuery) -> dict[str, Any]:
    level = {f"_{name}": value for name, value in _plain_params(query).items()}
    for name, sub in (query.field_queries or {}).items():
        level[name] = _directus_deep(sub)
    return level


def coerce_query(query: Any) -> CanonicalQuery:
    """
    Accept a CanonicalQuery, a QueryBuilder (anything with ``.query``), a dict
    or None and return a CanonicalQuery.
    """
    if query is None:
        return CanonicalQuery()
    if isinstance(query, CanonicalQuery):
        return query
    inner = getattr(query, "query", None)
    if isinstance(inner, CanonicalQuery):
        return inner
    if isinstance(query, dict):
        return CanonicalQuery.model_validate(query)
    raise TypeError(f"Unsupported query type: {type(query).__name__}")


def id_filter_values(filter_tree: Optional[dict[str, Any]], id_field: str) -> Optional[list[Any]]:
    """
    Ids requested by an id-equality or id-"in" filter, else None.

    Only a filter whose single key is the id field counts.
    """
    if not filter_tree or set(filter_tree) != {id_field}:
        return None
    condition = filter_tree[id_field]
    if not isinstance(condition, dict) or len(condition) != 1:
        return None
    if "_eq" in condition and condition["_eq"] is not None:
        return [condition["_eq"]]
    if "_in" in condition and isinstance(condition["_in"], (list, tuple)):
        return list(condition["_in"])
    return None
