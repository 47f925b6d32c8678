"""
Adapters module - backend adapter port and built-in backends.
"""

from .base import BackendAdapter, BackendOperation, operation_table
from .directus import DirectusAdapter
from .memory import MemoryAdapter

# Adapter factories by server type
BUILTIN_ADAPTERS = {
    DirectusAdapter.type_name: DirectusAdapter,
    MemoryAdapter.type_name: MemoryAdapter,
}

__all__ = [
    "BUILTIN_ADAPTERS",
    "BackendAdapter",
    "BackendOperation",
    "DirectusAdapter",
    "MemoryAdapter",
    "operation_table",
]
