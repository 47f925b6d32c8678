"""
Cache module - bounded entity cache with secondary indexes.
"""

from .entity_cache import MISSING, EntityCache

__all__ = [
    "EntityCache",
    "MISSING",
]
