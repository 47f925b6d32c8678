"""
Messaging module - Redis relay of broker server events.
"""

from .events import DEFAULT_CHANNEL_PREFIX, ServerEventPublisher, redact

__all__ = [
    "DEFAULT_CHANNEL_PREFIX",
    "ServerEventPublisher",
    "redact",
]
