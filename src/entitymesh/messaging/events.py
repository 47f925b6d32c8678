"""
Redis relay of broker server events.

Every server change the broker reports (new server, credentials, auth state)
is published as JSON on ``<prefix>.<server name>``, so other processes can
follow login state without sharing the broker.

Usage:
    publisher = ServerEventPublisher(broker, redis_url="redis://localhost:6379")
    publisher.start()
    ...
    await publisher.stop()

Message:
    {"server": "cms", "changes": {"auth_state": "LOGGED_IN"},
     "state": {"name": "cms", "url": "...", "auth_state": "LOGGED_IN", ...}}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

from ..broker import WILDCARD, Broker
from ..core.types import AuthState

logger = logging.getLogger(__name__)


DEFAULT_CHANNEL_PREFIX = "entitymesh.servers"

# Never leave the process
REDACTED_FIELDS = ("password", "token")


def redact(data: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``data`` with secrets masked and auth states by name."""
    result = dict(data)
    for key in REDACTED_FIELDS:
        if result.get(key) is not None:
            result[key] = "***"
    if "auth_state" in result and result["auth_state"] is not None:
        result["auth_state"] = AuthState(result["auth_state"]).name
    return result


class ServerEventPublisher:
    """
    Publishes broker server changes to Redis Pub/Sub.

    Args:
        broker: Broker to follow
        redis_url: Redis URL, used when no client is given
        client: Ready redis.asyncio client (anything with ``publish``)
        channel_prefix: Channel name prefix
    """

    def __init__(
        self,
        broker: Broker,
        redis_url: Optional[str] = None,
        client: Any = None,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
    ):
        if client is None:
            if redis_url is None:
                raise ValueError("redis_url or client is required")
            client = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
            self._owns_client = True
        else:
            self._owns_client = False
        self.broker = broker
        self.client = client
        self.channel_prefix = channel_prefix
        self._running = False

    def channel(self, server_name: str) -> str:
        return f"{self.channel_prefix}.{server_name}"

    def start(self) -> None:
        """Subscribe to every server of the broker."""
        if self._running:
            logger.warning("Server event publisher already running")
            return
        self.broker.subscribe(WILDCARD, self.on_server_change)
        self._running = True
        logger.info(f"Publishing server events to {self.channel_prefix}.*")

    async def stop(self) -> None:
        if not self._running:
            return
        self.broker.unsubscribe(self.on_server_change)
        self._running = False
        if self._owns_client:
            await self.client.aclose()
        logger.info("Server event publisher stopped")

    async def on_server_change(self, changes: dict[str, Any], server: dict[str, Any]) -> int:
        """
        Broker callback: publish one change.

        Returns:
            Number of Redis subscribers that received it (0 on failure)
        """
        name = server.get("name")
        channel = self.channel(name)
        try:
            payload = json.dumps(
                {"server": name, "changes": redact(changes), "state": redact(server)},
                ensure_ascii=False,
                default=str,
            )
            count = await self.client.publish(channel, payload)
            logger.debug(f"Published to {channel}: {count} subscribers received")
            return count
        except Exception as e:
            logger.error(f"Failed to publish to {channel}: {e}", exc_info=True)
            return 0
