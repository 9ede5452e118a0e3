"""
Service configuration.

Configuration can be provided directly, via environment variables, or from a
YAML settings file:

```yaml
datastore:
  backend: sqlite
  table_name: game_entries
  sqlite_path: ./datastore.db
  on_update_poll_interval: 2.5
  update_retries: 6
  global_data_store_name: __global__
```

Environment Variables:
    DATASTORE_BACKEND: memory, sqlite or cosmos (default: memory)
    DATASTORE_TABLE_NAME: Table (sqlite) or container (cosmos) name
    DATASTORE_POLL_INTERVAL: OnUpdate poll interval in seconds
    DATASTORE_UPDATE_RETRIES: UpdateAsync conflict retries
    DATASTORE_GLOBAL_NAME: Name of the global data store
    DATASTORE_SQLITE_PATH: SQLite database path
    DATASTORE_COSMOS_ENDPOINT: Cosmos DB endpoint URL
    DATASTORE_COSMOS_KEY: Cosmos DB key (if using key auth)
    DATASTORE_COSMOS_DATABASE: Cosmos DB database name
    DATASTORE_COSMOS_AUTH_METHOD: key or default_credential
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

DEFAULT_TABLE_NAME = "datastore_entries"
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_UPDATE_RETRIES = 6
DEFAULT_GLOBAL_DATA_STORE_NAME = "__global__"

BACKENDS = ("memory", "sqlite", "cosmos")


class CosmosAuthMethod(Enum):
    """Authentication method for Cosmos DB.

    KEY: Use account key (development/testing)
    DEFAULT_CREDENTIAL: Use Azure DefaultAzureCredential (recommended)
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"


@dataclass
class DataStoreConfig:
    """Configuration for a DataStoreService client.

    Attributes:
        table_name: Routing hint for the backend (sqlite table / cosmos container)
        on_update_poll_interval: Seconds between OnUpdate poll ticks
        update_retries: Conflict retries for UpdateAsync before giving up
        global_data_store_name: Store returned by get_global_data_store()
        update_retry_delay: Base backoff between UpdateAsync attempts (seconds)
        update_retry_max_delay: Backoff cap (seconds)
        default_page_size: Page size when a listing does not specify one

        backend: Which entry store to build (memory, sqlite, cosmos)
        sqlite_path: SQLite database path
        cosmos_endpoint: Cosmos DB endpoint URL
        cosmos_key: Cosmos DB key (only for KEY auth)
        cosmos_database: Cosmos DB database name
        cosmos_auth_method: Cosmos DB authentication method
    """

    table_name: str = DEFAULT_TABLE_NAME
    on_update_poll_interval: float = DEFAULT_POLL_INTERVAL
    update_retries: int = DEFAULT_UPDATE_RETRIES
    global_data_store_name: str = DEFAULT_GLOBAL_DATA_STORE_NAME
    update_retry_delay: float = 0.05
    update_retry_max_delay: float = 1.0
    default_page_size: int = 50

    backend: str = "memory"
    sqlite_path: str = ":memory:"
    cosmos_endpoint: str | None = None
    cosmos_key: str | None = None
    cosmos_database: str = "datastore"
    cosmos_auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL

    def validate(self) -> DataStoreConfig:
        """Check the configuration, returning self for chaining.

        Raises:
            ConfigurationError: On the first invalid setting
        """
        if not self.table_name:
            raise ConfigurationError("table_name", "must not be empty")
        if self.on_update_poll_interval <= 0:
            raise ConfigurationError("on_update_poll_interval", "must be positive")
        if self.update_retries < 0:
            raise ConfigurationError("update_retries", "must not be negative")
        if not self.global_data_store_name:
            raise ConfigurationError("global_data_store_name", "must not be empty")
        if self.update_retry_delay < 0 or self.update_retry_max_delay < 0:
            raise ConfigurationError("update_retry_delay", "must not be negative")
        if not 1 <= self.default_page_size <= 100:
            raise ConfigurationError("default_page_size", "must be between 1 and 100")
        if self.backend not in BACKENDS:
            raise ConfigurationError("backend", f"must be one of {', '.join(BACKENDS)}")
        if self.backend == "cosmos" and not self.cosmos_endpoint:
            raise ConfigurationError("cosmos_endpoint", "required for the cosmos backend")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataStoreConfig:
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        auth_method = values.get("cosmos_auth_method")
        if isinstance(auth_method, str):
            try:
                values["cosmos_auth_method"] = CosmosAuthMethod(auth_method.lower())
            except ValueError:
                raise ConfigurationError(
                    "cosmos_auth_method", f"unknown auth method {auth_method!r}"
                ) from None

        try:
            if "on_update_poll_interval" in values:
                values["on_update_poll_interval"] = float(values["on_update_poll_interval"])
            if "update_retries" in values:
                values["update_retries"] = int(values["update_retries"])
            if "default_page_size" in values:
                values["default_page_size"] = int(values["default_page_size"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError("datastore", str(e)) from e

        return cls(**values).validate()

    @classmethod
    def from_env(cls) -> DataStoreConfig:
        """Create configuration from environment variables."""
        env_map = {
            "backend": "DATASTORE_BACKEND",
            "table_name": "DATASTORE_TABLE_NAME",
            "on_update_poll_interval": "DATASTORE_POLL_INTERVAL",
            "update_retries": "DATASTORE_UPDATE_RETRIES",
            "global_data_store_name": "DATASTORE_GLOBAL_NAME",
            "sqlite_path": "DATASTORE_SQLITE_PATH",
            "cosmos_endpoint": "DATASTORE_COSMOS_ENDPOINT",
            "cosmos_key": "DATASTORE_COSMOS_KEY",
            "cosmos_database": "DATASTORE_COSMOS_DATABASE",
            "cosmos_auth_method": "DATASTORE_COSMOS_AUTH_METHOD",
        }
        data = {name: os.environ[var] for name, var in env_map.items() if var in os.environ}
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: str | Path) -> DataStoreConfig:
        """Load configuration from the ``datastore`` section of a YAML file.

        A missing file yields the defaults.
        """
        config_path = Path(path)
        if not config_path.exists():
            return cls().validate()

        try:
            content = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(str(config_path), f"invalid YAML: {e}") from e

        section = content.get("datastore", {}) if isinstance(content, dict) else {}
        if not isinstance(section, dict):
            raise ConfigurationError("datastore", "section must be a mapping")
        return cls.from_dict(section)
