"""
Remote fetcher for smart sync.

Wraps a RemoteSource (the hosted document database) behind a single
operation, `fetch_since`, that never raises. Each query attempt is
turned into a typed result (QueryOk / QueryErr) and the fallback from a
filtered query to a full fetch is an explicit step on that result.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..exceptions import QueryUnsupportedError, SmartSyncError, TransportError
from ..records import DEFAULT_ID_FALLBACKS, Record, format_instant, records_from_dicts

logger = logging.getLogger(__name__)


class RemoteSource(ABC):
    """Query interface of the remote document store.

    Implementations raise TransportError (or AuthenticationError) when
    the store cannot be reached, and QueryUnsupportedError when a
    filtered query cannot run.
    """

    @abstractmethod
    async def query(self, collection: str, since: datetime | None) -> list[dict[str, Any]]:
        """Return raw documents of collection.

        Args:
            collection: Collection name
            since: Only return documents with updatedAt >= since; None for all

        Returns:
            List of raw documents
        """
        ...

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
        return None


@dataclass(frozen=True)
class QueryOk:
    """Successful query attempt."""

    records: list[Record]
    skipped: int = 0


@dataclass(frozen=True)
class QueryErr:
    """Failed query attempt."""

    error: SmartSyncError


QueryResult = QueryOk | QueryErr


@dataclass
class FetchResult:
    """Outcome of fetch_since.

    Attributes:
        records: Fetched records (empty on failure)
        used_filtered_query: False when the full collection was fetched,
            either on first sync or after a fallback
        error: Failure reported by the remote store, None on success
        skipped: Documents dropped because they had no identifier
    """

    records: list[Record] = field(default_factory=list)
    used_filtered_query: bool = False
    error: SmartSyncError | None = None
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def filter_since(records: Iterable[Record], since: datetime | None) -> list[Record]:
    """Client-side equivalent of the server filter updatedAt >= since.

    Records without a timestamp are kept: they cannot be proven old.
    """
    if since is None:
        return list(records)
    return [r for r in records if r.updated_at is None or r.updated_at >= since]


class RemoteFetcher:
    """Fetches the changed subset of a remote collection."""

    def __init__(
        self,
        source: RemoteSource,
        id_fallbacks: Sequence[str] = DEFAULT_ID_FALLBACKS,
    ):
        """Initialize the fetcher.

        Args:
            source: Remote document store
            id_fallbacks: Identifier fields tried when a document has no `id`
        """
        self.source = source
        self.id_fallbacks = tuple(id_fallbacks)

    async def _attempt(self, collection: str, since: datetime | None) -> QueryResult:
        """Run one query and capture its outcome as a value."""
        try:
            documents = await self.source.query(collection, since)
        except SmartSyncError as e:
            return QueryErr(e)
        except Exception as e:
            return QueryErr(TransportError(f"Query failed for {collection}", collection, e))

        records, skipped = records_from_dicts(documents, self.id_fallbacks)
        return QueryOk(records, skipped)

    async def fetch_since(self, collection: str, since: datetime | None) -> FetchResult:
        """Fetch records of collection updated at or after since.

        Args:
            collection: Collection name
            since: Last successful sync instant, None for a full fetch

        Returns:
            FetchResult; failures are reported in `error`, never raised
        """
        if since is None:
            result = await self._attempt(collection, None)
            return self._finish(collection, result, used_filtered_query=False)

        result = await self._attempt(collection, since)
        if isinstance(result, QueryErr) and isinstance(result.error, QueryUnsupportedError):
            logger.warning(
                "Filtered query unsupported for %s (since %s), falling back to full fetch: %s",
                collection,
                format_instant(since),
                result.error.message,
            )
            result = await self._attempt(collection, None)
            return self._finish(collection, result, used_filtered_query=False)

        return self._finish(collection, result, used_filtered_query=True)

    def _finish(
        self,
        collection: str,
        result: QueryResult,
        used_filtered_query: bool,
    ) -> FetchResult:
        if isinstance(result, QueryErr):
            logger.warning("Fetch failed for %s: %s", collection, result.error.message)
            return FetchResult(used_filtered_query=used_filtered_query, error=result.error)

        logger.debug(
            "Fetched %d records from %s (filtered=%s)",
            len(result.records),
            collection,
            used_filtered_query,
        )
        return FetchResult(
            records=result.records,
            used_filtered_query=used_filtered_query,
            skipped=result.skipped,
        )
