"""
Core module - errors, shared types, canonical query model and config.
"""

from __future__ import annotations

from .builder import QueryBuilder, qb
from .config import (
    BrokerConfig,
    ServerConfig,
    Settings,
    apply_env_credentials,
    load_config,
)
from .errors import (
    AuthError,
    BackendError,
    ConfigError,
    DBError,
    EntityMeshError,
    ErrorLevel,
    ReadonlyError,
    ValidationError,
)
from .query import CanonicalQuery, QueryFormat, coerce_query
from .types import (
    AuthState,
    Credentials,
    Entity,
    EntityID,
    ServerConnection,
    VerboseLevel,
)

__all__ = [
    # Query
    "CanonicalQuery",
    "QueryBuilder",
    "QueryFormat",
    "coerce_query",
    "qb",
    # Config
    "BrokerConfig",
    "ServerConfig",
    "Settings",
    "apply_env_credentials",
    "load_config",
    # Errors
    "AuthError",
    "BackendError",
    "ConfigError",
    "DBError",
    "EntityMeshError",
    "ErrorLevel",
    "ReadonlyError",
    "ValidationError",
    # Types
    "AuthState",
    "Credentials",
    "Entity",
    "EntityID",
    "ServerConnection",
    "VerboseLevel",
]
