"""
Utility functions for entitymesh.

Includes:
- Dotted field path helpers
- Non-destructive deep merge of filter trees
- Shallow diff used by the broker to compute minimal change sets
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional


# =============================================================================
# Field path utilities
# =============================================================================


def split_path(path: str) -> list[str]:
    """
    Split a dotted field path into segments.

    Examples:
        author.name -> ["author", "name"]
        id -> ["id"]
    """
    return [part for part in path.split(".") if part]


def top_level_field(path: str) -> str:
    """First segment of a dotted path: author.avatar.id -> author"""
    return path.split(".", 1)[0]


def nest_path(path: str, leaf: Any) -> dict[str, Any]:
    """
    Build a nested skeleton ending in ``leaf``.

    Example:
        nest_path("a.b.c", {"_eq": 1}) -> {"a": {"b": {"c": {"_eq": 1}}}}
    """
    segments = split_path(path)
    if not segments:
        raise ValueError("Empty field path")
    result: Any = leaf
    for segment in reversed(segments):
        result = {segment: result}
    return result


def unique(values: Iterable[Any]) -> list[Any]:
    """Drop duplicates keeping first-seen order."""
    seen: set = set()
    result = []
    for value in values:
        key = (type(value), value)
        if key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


# =============================================================================
# Merge / diff utilities
# =============================================================================


def deep_merge(target: dict[str, Any], source: Mapping[str, Any]) -> dict[str, Any]:
    """
    Recursively merge ``source`` into ``target`` (in place) and return target.

    Nested dicts present on both sides are merged key by key, so siblings
    under the same parent survive:
        {"a": {"x": 1}} + {"a": {"y": 2}} -> {"a": {"x": 1, "y": 2}}
    Anything else in ``source`` replaces the value in ``target``.
    """
    for key, value in source.items():
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            deep_merge(existing, value)
        elif isinstance(value, Mapping):
            target[key] = deep_merge({}, value)
        else:
            target[key] = value
    return target


def shallow_diff(
    current: Optional[Mapping[str, Any]],
    changes: Mapping[str, Any],
) -> dict[str, Any]:
    """
    Keep only the entries of ``changes`` that differ from ``current``.

    With no ``current`` everything is a change.
    """
    if current is None:
        return dict(changes)
    return {
        key: value
        for key, value in changes.items()
        if key not in current or current[key] != value
    }
