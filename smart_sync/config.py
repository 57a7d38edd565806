"""
Configuration for smart sync.

Configuration can be provided directly, via environment variables, or
via the `sync:` section of a YAML settings file.

Environment Variables:
    SMART_SYNC_LOCAL_PATH: Directory for the local cache
    SMART_SYNC_COLLECTIONS: Comma-separated default collections
    SMART_SYNC_COLLECTION_PREFIX: Prefix applied to remote container names
    SMART_SYNC_FETCH_TIMEOUT: Seconds allowed for the remote fetch
    SMART_SYNC_PERSIST_TIMEOUT: Seconds allowed for the local write
    SMART_SYNC_CLIENT_SIDE_FILTER: "true" to filter fallback results locally
    SMART_SYNC_COSMOS_ENDPOINT: Cosmos DB endpoint URL
    SMART_SYNC_COSMOS_KEY: Cosmos DB key (if using key auth)
    SMART_SYNC_COSMOS_DATABASE: Database name (default: smart-sync)
    SMART_SYNC_COSMOS_AUTH_METHOD: Auth method (default: default_credential)
    SMART_SYNC_MAX_RETRIES: Attempts for throttled/5xx responses (default: 3)
    SMART_SYNC_RETRY_DELAY: Base delay between retries in seconds (default: 1.0)
    AZURE_TENANT_ID / AZURE_CLIENT_ID / AZURE_CLIENT_SECRET: Service principal
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .metadata import SYNC_METADATA_KEY
from .records import DEFAULT_ID_FALLBACKS

DEFAULT_SETTINGS_PATH = Path.home() / ".smart_sync" / "settings.yaml"


class CosmosAuthMethod(Enum):
    """Authentication method for Cosmos DB.

    KEY: Use account key
    DEFAULT_CREDENTIAL: Use Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Use Azure Managed Identity explicitly
    SERVICE_PRINCIPAL: Use Service Principal with client_id/client_secret
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"
    SERVICE_PRINCIPAL = "service_principal"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_timeout(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid timeout: {value!r}") from e
    return timeout if timeout > 0 else None


def _parse_retries(value: Any) -> int:
    try:
        retries = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid max_retries: {value!r}") from e
    if retries < 1:
        raise ConfigurationError(f"max_retries must be at least 1, got {retries}")
    return retries


def _parse_delay(value: Any) -> float:
    try:
        delay = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid retry_delay: {value!r}") from e
    if delay < 0:
        raise ConfigurationError(f"retry_delay must not be negative, got {delay}")
    return delay


def _parse_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


@dataclass
class SyncConfig:
    """Configuration for sync cycles and the remote store.

    Attributes:
        local_path: Directory for the file cache (None: ~/.smart_sync/cache)
        metadata_key: Reserved cache key holding SyncMetadata
        collections: Collections synced when none are named explicitly
        collection_prefix: Prefix of remote container names
        fetch_timeout: Seconds allowed for the remote fetch (None: unbounded)
        persist_timeout: Seconds allowed for the local write (None: unbounded)
        client_side_filter: Filter full-fetch fallbacks by the last sync instant
        id_fallbacks: Identifier fields tried when a document has no `id`

        cosmos_endpoint: Cosmos DB endpoint URL
        cosmos_auth_method: Authentication method
        cosmos_key: Cosmos DB key (only for KEY auth method)
        cosmos_database: Cosmos DB database name
        azure_tenant_id: Azure tenant ID (for SERVICE_PRINCIPAL)
        azure_client_id: Azure client ID (for SERVICE_PRINCIPAL/MANAGED_IDENTITY)
        azure_client_secret: Azure client secret (for SERVICE_PRINCIPAL)
        max_retries: Attempts for throttled/5xx responses
        retry_delay: Base delay between retries (seconds)
    """

    local_path: str | None = None
    metadata_key: str = SYNC_METADATA_KEY
    collections: list[str] = field(default_factory=list)
    collection_prefix: str = ""
    fetch_timeout: float | None = 30.0
    persist_timeout: float | None = 10.0
    client_side_filter: bool = False
    id_fallbacks: tuple[str, ...] = DEFAULT_ID_FALLBACKS

    cosmos_endpoint: str | None = None
    cosmos_auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    cosmos_key: str | None = None
    cosmos_database: str = "smart-sync"
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None
    max_retries: int = 3
    retry_delay: float = 1.0

    def container_name(self, collection: str) -> str:
        """Remote container name for a collection."""
        return f"{self.collection_prefix}{collection}"

    @classmethod
    def from_environment(cls) -> SyncConfig:
        """Create configuration from environment variables."""
        auth_method_str = os.environ.get("SMART_SYNC_COSMOS_AUTH_METHOD", "default_credential")
        try:
            auth_method = CosmosAuthMethod(auth_method_str.lower())
        except ValueError:
            auth_method = CosmosAuthMethod.DEFAULT_CREDENTIAL

        return cls(
            local_path=os.environ.get("SMART_SYNC_LOCAL_PATH"),
            collections=_parse_list(os.environ.get("SMART_SYNC_COLLECTIONS")),
            collection_prefix=os.environ.get("SMART_SYNC_COLLECTION_PREFIX", ""),
            fetch_timeout=_parse_timeout(os.environ.get("SMART_SYNC_FETCH_TIMEOUT", "30")),
            persist_timeout=_parse_timeout(os.environ.get("SMART_SYNC_PERSIST_TIMEOUT", "10")),
            client_side_filter=_parse_bool(os.environ.get("SMART_SYNC_CLIENT_SIDE_FILTER", "")),
            cosmos_endpoint=os.environ.get("SMART_SYNC_COSMOS_ENDPOINT"),
            cosmos_auth_method=auth_method,
            cosmos_key=os.environ.get("SMART_SYNC_COSMOS_KEY"),
            cosmos_database=os.environ.get("SMART_SYNC_COSMOS_DATABASE", "smart-sync"),
            azure_tenant_id=os.environ.get("AZURE_TENANT_ID"),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID"),
            azure_client_secret=os.environ.get("AZURE_CLIENT_SECRET"),
            max_retries=_parse_retries(os.environ.get("SMART_SYNC_MAX_RETRIES", "3")),
            retry_delay=_parse_delay(os.environ.get("SMART_SYNC_RETRY_DELAY", "1.0")),
        )

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> SyncConfig:
        """Create configuration from the `sync:` section of a settings file.

        ```yaml
        sync:
          local_path: ~/.dutytracker/cache
          collections: [officers, logs, taskings]
          collection_prefix: DutyTrackerSystem_
          fetch_timeout: 15
          cosmos_endpoint: https://example.documents.azure.com:443/
          cosmos_auth_method: default_credential
        ```

        Args:
            path: Settings file (default: ~/.smart_sync/settings.yaml)

        Raises:
            ConfigurationError: If the file cannot be parsed or has unknown keys
        """
        path = path or DEFAULT_SETTINGS_PATH
        if not path.exists():
            return cls()

        try:
            content = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read settings file {path}: {e}") from e

        section = content.get("sync", {}) if isinstance(content, dict) else {}
        if not isinstance(section, dict):
            raise ConfigurationError(f"'sync' section of {path} must be a mapping")
        return cls.from_dict(section)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create configuration from a plain mapping."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown sync settings: {', '.join(unknown)}")

        values = dict(data)
        if "cosmos_auth_method" in values:
            try:
                values["cosmos_auth_method"] = CosmosAuthMethod(
                    str(values["cosmos_auth_method"]).lower()
                )
            except ValueError as e:
                raise ConfigurationError(
                    f"Unsupported auth method: {values['cosmos_auth_method']}"
                ) from e
        for key in ("fetch_timeout", "persist_timeout"):
            if key in values:
                values[key] = _parse_timeout(values[key])
        if "max_retries" in values:
            values["max_retries"] = _parse_retries(values["max_retries"])
        if "retry_delay" in values:
            values["retry_delay"] = _parse_delay(values["retry_delay"])
        if "collections" in values:
            values["collections"] = _parse_list(values["collections"])
        if "id_fallbacks" in values:
            values["id_fallbacks"] = tuple(_parse_list(values["id_fallbacks"]))
        if "client_side_filter" in values:
            values["client_side_filter"] = _parse_bool(values["client_side_filter"])
        if values.get("local_path"):
            values["local_path"] = str(Path(str(values["local_path"])).expanduser())
        return cls(**values)
