"""
Broker module - server registry, login orchestration, change notifications.
"""

from .broker import WILDCARD, Broker, ServerCallback, get_broker, set_broker

__all__ = [
    "Broker",
    "ServerCallback",
    "WILDCARD",
    "get_broker",
    "set_broker",
]
