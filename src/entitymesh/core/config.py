"""
Configuration loading and validation for entitymesh.

A broker config is a map of server name -> connection info plus the entity
types each server owns:

    servers:
      cms:
        url: https://cms.example.com
        token: abc
        entities: [articles, authors]
      accounts:
        type: directus
        login: admin@example.com
        password: secret
    entities_by_server:
      accounts: [users, roles]
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .errors import ConfigError

logger = logging.getLogger(__name__)


DEFAULT_SERVER_TYPE = "directus"


class ServerConfig(BaseModel):
    """Configuration for a single backend server."""

    url: Optional[str] = None
    type: str = DEFAULT_SERVER_TYPE
    login: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    entities: list[str] = Field(default_factory=list)


class BrokerConfig(BaseModel):
    """Main broker configuration."""

    servers: dict[str, ServerConfig] = Field(default_factory=dict)
    # Extra routing merged into servers[<name>].entities
    entities_by_server: dict[str, list[str]] = Field(default_factory=dict)
    # Default URL of a server without one: https://<name><server_suffix>
    server_suffix: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> BrokerConfig:
        """Create config from dictionary."""
        return cls.model_validate(dict(data or {}))

    def routed_entities(self, server_name: str) -> list[str]:
        """Entities of a server from both its own list and entities_by_server."""
        server = self.servers.get(server_name)
        entities = list(server.entities) if server else []
        for entity in self.entities_by_server.get(server_name, []):
            if entity not in entities:
                entities.append(entity)
        return entities

    def server_url(self, server_name: str) -> str:
        server = self.servers.get(server_name)
        if server and server.url:
            return server.url
        return default_server_url(server_name, self.server_suffix)

    def server_names(self) -> list[str]:
        names = list(self.servers)
        for name in self.entities_by_server:
            if name not in names:
                names.append(name)
        return names


def default_server_url(server_name: str, suffix: str = "") -> str:
    return f"https://{server_name}{suffix}"


class Settings(BaseSettings):
    """Runtime settings loaded from ENTITYMESH_* environment variables."""

    config_path: str = Field(default="entitymesh.yml", description="Path to the broker YAML config")
    server_suffix: str = Field(default="", description="Suffix for default server URLs")
    login_poll_interval: float = Field(default=0.5, description="Seconds between wait_for_login polls")
    login_tries: int = Field(default=10, description="Polls before wait_for_login gives up")
    redis_url: Optional[str] = Field(default=None, description="Redis URL for server event relay")

    model_config = {"env_prefix": "ENTITYMESH_"}


def load_config(path: Union[str, Path]) -> Optional[BrokerConfig]:
    """
    Load broker config from a YAML file.

    Returns None if the file doesn't exist.

    Raises:
        ConfigError: File content is not a valid broker config
    """
    config_path = Path(path)
    if not config_path.exists():
        logger.debug(f"Config file not found: {config_path}")
        return None

    with open(config_path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(data).__name__}")

    try:
        return BrokerConfig.from_dict(data)
    except ValueError as e:
        raise ConfigError(f"Invalid broker config in {config_path}: {e}") from e


def apply_env_credentials(
    config: BrokerConfig,
    environ: Optional[Mapping[str, str]] = None,
) -> BrokerConfig:
    """
    Overlay ENTITYMESH_<SERVER>_{URL,LOGIN,PASSWORD,TOKEN} onto the config.

    Server names are upper-cased and "-" / "." become "_" to build the
    variable name: server "cms-eu" reads ENTITYMESH_CMS_EU_TOKEN.
    Servers only present in entities_by_server get a ServerConfig entry when
    any variable is set for them.
    """
    env = os.environ if environ is None else environ

    for name in config.server_names():
        prefix = "ENTITYMESH_" + name.upper().replace("-", "_").replace(".", "_") + "_"
        overrides = {}
        for key in ("url", "login", "password", "token"):
            value = env.get(prefix + key.upper())
            if value:
                overrides[key] = value
        if not overrides:
            continue
        current = config.servers.get(name) or ServerConfig()
        config.servers[name] = current.model_copy(update=overrides)
        logger.debug(f"Applied env overrides for server {name}: {sorted(overrides)}")

    return config
