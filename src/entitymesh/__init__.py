"""
Entitymesh - entity access across several backend servers.

One broker owns the server connections (URLs, credentials, login state).
One EntityService per entity type queries and mutates entities on whichever
server owns them, with a bounded cache, type casting and cross-server
relation loading ("deep fields").

Usage:
    from entitymesh import Broker, EntityService, qb

    broker = Broker({
        "servers": {
            "cms": {"url": "https://cms.example.com", "token": "abc",
                    "entities": ["articles"]},
            "accounts": {"url": "https://accounts.example.com",
                         "entities": ["users"]},
        },
    })
    users = EntityService("users", broker)
    articles = EntityService("articles", broker, deep_fields={"author": "users"})

    latest = await articles.query(qb().equal("status", "published").sort("-id").limit(5))
"""

from __future__ import annotations

__version__ = "0.1.0"

from .adapters import BackendAdapter, BackendOperation, DirectusAdapter, MemoryAdapter
from .broker import WILDCARD, Broker, get_broker, set_broker
from .cache import MISSING, EntityCache
from .core import (
    AuthError,
    AuthState,
    BackendError,
    BrokerConfig,
    CanonicalQuery,
    ConfigError,
    Credentials,
    DBError,
    EntityMeshError,
    ErrorLevel,
    QueryBuilder,
    QueryFormat,
    ReadonlyError,
    ServerConfig,
    ServerConnection,
    Settings,
    ValidationError,
    VerboseLevel,
    apply_env_credentials,
    load_config,
    qb,
)
from .runtime import EntityService, ServiceOperation, ServiceOptions

__all__ = [
    "__version__",
    # Broker
    "Broker",
    "WILDCARD",
    "get_broker",
    "set_broker",
    # Services
    "EntityService",
    "ServiceOptions",
    "ServiceOperation",
    # Cache
    "EntityCache",
    "MISSING",
    # Adapters
    "BackendAdapter",
    "BackendOperation",
    "DirectusAdapter",
    "MemoryAdapter",
    # Query
    "CanonicalQuery",
    "QueryBuilder",
    "QueryFormat",
    "qb",
    # Config
    "BrokerConfig",
    "ServerConfig",
    "Settings",
    "apply_env_credentials",
    "load_config",
    # Types
    "AuthState",
    "Credentials",
    "ServerConnection",
    "VerboseLevel",
    # Errors
    "AuthError",
    "BackendError",
    "ConfigError",
    "DBError",
    "EntityMeshError",
    "ErrorLevel",
    "ReadonlyError",
    "ValidationError",
]
