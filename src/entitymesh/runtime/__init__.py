"""
Runtime module - entity services and their post-processing steps.
"""

from __future__ import annotations

from .caster import TYPE_ALIASES, TypeCaster
from .deep_fields import DeepFieldResolver
from .service import EntityService, ServiceOperation, ServiceOptions

__all__ = [
    "EntityService",
    "ServiceOptions",
    "ServiceOperation",
    "DeepFieldResolver",
    "TypeCaster",
    "TYPE_ALIASES",
]
