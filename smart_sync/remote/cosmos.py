"""
Cosmos DB remote source.

Each collection lives in its own container named
`{collection_prefix}{collection}`. Documents carry `id` and an
`updatedAt` ISO-8601 UTC string; the filtered query compares
`updatedAt` lexicographically against the since instant truncated to
whole seconds, which over-fetches at most one second of records.

Supports multiple authentication methods:
- Key-based authentication
- Azure AD via DefaultAzureCredential (recommended)
- Azure Managed Identity
- Service Principal
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import UTC, datetime
from typing import Any

from azure.cosmos.aio import CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError

from ..config import CosmosAuthMethod, SyncConfig
from ..exceptions import (
    AuthenticationError,
    ConfigurationError,
    QueryUnsupportedError,
    TransportError,
)
from .base import RemoteSource

logger = logging.getLogger(__name__)

SYSTEM_PROPERTIES = frozenset({"_rid", "_self", "_etag", "_attachments", "_ts"})

FULL_QUERY = "SELECT * FROM c"
# updatedAt may be an ISO-8601 string, epoch milliseconds or a Firestore
# {seconds, nanoseconds} object. Strings compare lexicographically, so they
# must be written in UTC (as format_instant does).
FILTERED_QUERY = (
    "SELECT * FROM c WHERE "
    "(IS_STRING(c.updatedAt) AND c.updatedAt >= @since) "
    "OR (IS_NUMBER(c.updatedAt) AND c.updatedAt >= @since_ms) "
    "OR (IS_OBJECT(c.updatedAt) AND c.updatedAt.seconds >= @since_seconds)"
)


def _get_credential(config: SyncConfig) -> Any:
    """Get the appropriate credential based on auth method.

    Args:
        config: Sync configuration with auth settings

    Returns:
        Credential object for Cosmos DB authentication

    Raises:
        AuthenticationError: If credential cannot be created
    """
    auth_method = config.cosmos_auth_method
    endpoint = config.cosmos_endpoint or "cosmos"

    if auth_method == CosmosAuthMethod.KEY:
        if not config.cosmos_key:
            raise AuthenticationError(endpoint, "cosmos_key required for KEY authentication")
        return config.cosmos_key

    if auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL:
        from azure.identity.aio import DefaultAzureCredential

        return DefaultAzureCredential()

    if auth_method == CosmosAuthMethod.MANAGED_IDENTITY:
        from azure.identity.aio import ManagedIdentityCredential

        # If client_id is provided, use user-assigned managed identity
        if config.azure_client_id:
            return ManagedIdentityCredential(client_id=config.azure_client_id)
        return ManagedIdentityCredential()

    if auth_method == CosmosAuthMethod.SERVICE_PRINCIPAL:
        if not all([config.azure_tenant_id, config.azure_client_id, config.azure_client_secret]):
            raise AuthenticationError(
                endpoint,
                "azure_tenant_id, azure_client_id, and azure_client_secret "
                "required for SERVICE_PRINCIPAL authentication",
            )
        from azure.identity.aio import ClientSecretCredential

        return ClientSecretCredential(
            tenant_id=config.azure_tenant_id,
            client_id=config.azure_client_id,
            client_secret=config.azure_client_secret,
        )

    raise AuthenticationError(endpoint, f"Unsupported auth method: {auth_method}")


def strip_system_properties(document: dict[str, Any]) -> dict[str, Any]:
    """Remove Cosmos bookkeeping properties from a document."""
    return {key: value for key, value in document.items() if key not in SYSTEM_PROPERTIES}


def since_parameter(since: datetime) -> str:
    """Format the lower bound used by the filtered query."""
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    return since.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S")


def since_parameters(since: datetime) -> list[dict[str, Any]]:
    """Query parameters for each stored shape of updatedAt, truncated to seconds."""
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    seconds = math.floor(since.timestamp())
    return [
        {"name": "@since", "value": since_parameter(since)},
        {"name": "@since_ms", "value": seconds * 1000},
        {"name": "@since_seconds", "value": seconds},
    ]


class CosmosRemoteSource(RemoteSource):
    """Remote source reading collections from Azure Cosmos DB."""

    def __init__(self, config: SyncConfig):
        """Initialize the Cosmos source.

        Args:
            config: Sync configuration with Cosmos connection info
        """
        if not config.cosmos_endpoint:
            raise ConfigurationError("Cosmos endpoint is required")

        self.config = config
        self._credential: Any = None
        self._client: CosmosClient | None = None
        self._database: DatabaseProxy | None = None

    def _ensure_client(self) -> DatabaseProxy:
        """Create the client lazily; no network traffic happens here."""
        if self._database is not None:
            return self._database

        self._credential = _get_credential(self.config)
        self._client = CosmosClient(
            self.config.cosmos_endpoint,  # type: ignore[arg-type]
            credential=self._credential,
        )
        self._database = self._client.get_database_client(self.config.cosmos_database)
        logger.info(
            f"Cosmos source ready: {self.config.cosmos_endpoint} "
            f"(database={self.config.cosmos_database}, "
            f"auth={self.config.cosmos_auth_method.value})"
        )
        return self._database

    async def query(self, collection: str, since: datetime | None) -> list[dict[str, Any]]:
        database = self._ensure_client()
        container = database.get_container_client(self.config.container_name(collection))

        if since is None:
            query = FULL_QUERY
            parameters: list[dict[str, Any]] = []
        else:
            query = FILTERED_QUERY
            parameters = since_parameters(since)

        async def run() -> list[dict[str, Any]]:
            results: list[dict[str, Any]] = []
            async for item in container.query_items(query=query, parameters=parameters):
                results.append(strip_system_properties(item))
            return results

        try:
            return await self._with_retry(run)
        except CosmosResourceNotFoundError:
            logger.info("Container for %s does not exist, treating as empty", collection)
            return []
        except CosmosHttpResponseError as e:
            if e.status_code in (401, 403):
                raise AuthenticationError(self.config.cosmos_endpoint or "cosmos", str(e)) from e
            if e.status_code == 400 and since is not None:
                raise QueryUnsupportedError(collection, str(e)) from e
            raise TransportError(f"Query failed for {collection}", collection, e) from e

    async def _with_retry(self, operation: Any) -> Any:
        """Execute an operation with retry logic for transient failures.

        Args:
            operation: Async callable to execute

        Returns:
            Result of the operation

        Raises:
            CosmosHttpResponseError for client errors, TransportError
            after max retries or for unknown errors
        """
        last_error: Exception | None = None

        for attempt in range(self.config.max_retries):
            try:
                return await operation()
            except CosmosHttpResponseError as e:
                # Don't retry client errors (4xx) other than throttling
                status = e.status_code or 0
                if 400 <= status < 500 and status != 429:
                    raise

                last_error = e
                if attempt < self.config.max_retries - 1:
                    delay = self.config.retry_delay * (2**attempt)
                    logger.debug(
                        "Transient Cosmos error %s, retrying in %.1fs", e.status_code, delay
                    )
                    await asyncio.sleep(delay)
            except Exception as e:
                raise TransportError("Cosmos operation failed", cause=e) from e

        raise TransportError("Cosmos operation failed after retries", cause=last_error)

    async def close(self) -> None:
        """Close the Cosmos DB connection."""
        if self._client:
            await self._client.close()
            self._client = None
            self._database = None
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()
        self._credential = None

    async def __aenter__(self) -> CosmosRemoteSource:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
