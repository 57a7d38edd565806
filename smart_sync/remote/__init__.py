"""
Remote store access.

Key classes:
- RemoteSource: Query interface of the hosted document store
- RemoteFetcher: Never-raising fetch with filtered-query fallback
- CosmosRemoteSource: Azure Cosmos DB implementation (import from
  smart_sync.remote.cosmos; requires azure-cosmos)
"""

from .base import (
    FetchResult,
    QueryErr,
    QueryOk,
    QueryResult,
    RemoteFetcher,
    RemoteSource,
    filter_since,
)

__all__ = [
    "RemoteSource",
    "RemoteFetcher",
    "FetchResult",
    "QueryOk",
    "QueryErr",
    "QueryResult",
    "filter_since",
]
