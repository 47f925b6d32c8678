"""
Fluent builder for canonical queries.

Usage:
    from entitymesh import qb

    query = (
        qb()
        .fields(["id", "title", "author.name"])
        .equal("status", "published")
        .contains("title", "python", case_insensitive=True)
        .sort("-date_created")
        .limit(10)
    )
    wire = query.compile("directus")
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Union

from .query import CanonicalQuery, QueryFormat, coerce_query
from .utils import deep_merge, nest_path


class QueryBuilder:
    """
    Builds a CanonicalQuery step by step.

    Every mutation merges into the same underlying query, so nothing set by
    an earlier call is lost.
    """

    def __init__(self, query: Optional[CanonicalQuery] = None):
        self.query = query if query is not None else CanonicalQuery()

    @property
    def q(self) -> CanonicalQuery:
        return self.query

    # --- Filters ---

    def filter(self, field: str, condition: dict[str, Any]) -> QueryBuilder:
        """
        Put ``condition`` at the leaf of a dotted field path and deep-merge it
        into the filter tree.

        Example:
            .filter("user.avatar.type", {"_eq": "jpg"})
            .filter("user.avatar.date", {"_gte": "2023"})
            -> {"user": {"avatar": {"type": {...}, "date": {...}}}}
        """
        self.filters_add(nest_path(field, condition))
        return self

    def filters_add(self, filter_tree: dict[str, Any]) -> QueryBuilder:
        """Deep-merge a whole filter tree into the current one."""
        current = self.query.filter if self.query.filter is not None else {}
        self.query.filter = deep_merge(current, filter_tree)
        return self

    def filters_get(self) -> dict[str, Any]:
        return self.query.filter or {}

    def equal(self, field: str, value: Any) -> QueryBuilder:
        return self.filter(field, {"_eq": value})

    def not_(self, field: str, value: Any) -> QueryBuilder:
        return self.filter(field, {"_neq": value})

    def in_(self, field: str, values: Sequence[Any]) -> QueryBuilder:
        return self.filter(field, {"_in": list(values)})

    def not_in(self, field: str, values: Sequence[Any]) -> QueryBuilder:
        return self.filter(field, {"_nin": list(values)})

    def is_null(self, field: str) -> QueryBuilder:
        return self.filter(field, {"_null": True})

    def is_not_null(self, field: str) -> QueryBuilder:
        return self.filter(field, {"_nnull": True})

    def greater(self, field: str, than: Any) -> QueryBuilder:
        return self.filter(field, {"_gt": than})

    def greater_or_equal(self, field: str, than: Any) -> QueryBuilder:
        return self.filter(field, {"_gte": than})

    def less(self, field: str, than: Any) -> QueryBuilder:
        return self.filter(field, {"_lt": than})

    def less_or_equal(self, field: str, than: Any) -> QueryBuilder:
        return self.filter(field, {"_lte": than})

    def contains(self, field: str, value: str, case_insensitive: bool = False) -> QueryBuilder:
        operator = "_icontains" if case_insensitive else "_contains"
        return self.filter(field, {operator: value})

    # --- Selection / pagination ---

    def fields(self, fields: Union[Sequence[str], str, None] = None) -> QueryBuilder:
        """Replace the selected fields. None leaves them unchanged."""
        if isinstance(fields, str):
            fields = [fields]
        if fields is not None:
            self.query.fields = list(fields)
        return self

    def field_add(self, field: str) -> QueryBuilder:
        """Append one field: fields(["*"]).field_add("author.*") -> ["*", "author.*"]"""
        self.query.fields = [*(self.query.fields or []), field]
        return self

    def limit(self, limit: Optional[int] = None) -> QueryBuilder:
        if limit is not None:
            self.query.limit = limit
        return self

    def offset(self, offset: Optional[int] = None) -> QueryBuilder:
        if offset is not None:
            self.query.offset = offset
        return self

    def sort(self, sort: Union[Sequence[str], str]) -> QueryBuilder:
        """
        A list replaces the whole sort, a single string is appended.

        Example:
            .sort(["id", "-name"]).sort("title") -> ["id", "-name", "title"]
        """
        if isinstance(sort, str):
            self.query.sort = [*(self.query.sort or []), sort]
        else:
            self.query.sort = list(sort)
        return self

    def field_query(self, field: str, subquery: Any) -> QueryBuilder:
        """
        Query parameters for a related field, e.g. only the 2 most recent
        children: .field_query("children", qb().limit(2).sort("-id"))
        """
        subqueries = dict(self.query.field_queries or {})
        subqueries[field] = coerce_query(subquery)
        self.query.field_queries = subqueries
        return self

    def skip_cache(self, skip: Optional[bool] = True) -> QueryBuilder:
        if skip is not None:
            self.query.skip_cache = skip
        return self

    # --- Terminal ---

    def compile(self, target: QueryFormat | str = QueryFormat.CANONICAL) -> dict[str, Any]:
        """Wire form for ``target``; the builder stays unchanged."""
        return self.query.compile(target)

    def __repr__(self) -> str:
        return f"QueryBuilder({self.query!r})"


def qb(query: Any = None) -> QueryBuilder:
    """
    Shortcut to create a builder.

    An existing builder is returned as is; a CanonicalQuery or dict becomes the
    starting point of a new builder.
    """
    if isinstance(query, QueryBuilder):
        return query
    if query is None:
        return QueryBuilder()
    return QueryBuilder(coerce_query(query))
