"""
Merge engine for local and remote record sets.

Reconciles the local cache of a collection with records fetched from
the remote store:

- Records only present remotely are added
- Records present on both sides are replaced only when the remote
  `updatedAt` is strictly later
- Ties keep the local record, so unsynced local edits are never
  overwritten by equally-timestamped or older remote data
- A missing `updatedAt` loses against any timestamped counterpart

Resolution is whole-record; fields are never merged individually.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from .records import Record


@dataclass
class MergeResult:
    """Outcome of merging a remote record set into a local one.

    Attributes:
        records: Reconciled records, one per distinct identifier
        added: Remote records whose identifier was not present locally
        overridden: Local records replaced by a newer remote record
        kept: Remote records discarded because the local copy won
    """

    records: list[Record] = field(default_factory=list)
    added: int = 0
    overridden: int = 0
    kept: int = 0

    @property
    def changed(self) -> int:
        """Number of identifiers whose value came from the remote side."""
        return self.added + self.overridden


def _wins(candidate: Record, incumbent: Record) -> bool:
    """Whether candidate supersedes incumbent (strictly later timestamp)."""
    return candidate.sort_instant > incumbent.sort_instant


def merge_records(local: Iterable[Record], remote: Iterable[Record]) -> MergeResult:
    """Merge remote records into local records.

    Neither input is mutated. The result lists local records in their
    original order followed by newly added remote records in remote
    order. Duplicate identifiers inside one input collapse using the
    same precedence rule, keeping the first occurrence on ties.

    Args:
        local: Records currently in the local cache
        remote: Records fetched from the remote store

    Returns:
        MergeResult with the reconciled records and change counts
    """
    merged: dict[str, Record] = {}
    for record in local:
        current = merged.get(record.id)
        if current is None or _wins(record, current):
            merged[record.id] = record
    local_ids = set(merged)

    result = MergeResult()
    for record in remote:
        current = merged.get(record.id)
        if current is None:
            merged[record.id] = record
            result.added += 1
        elif _wins(record, current):
            merged[record.id] = record
            if record.id in local_ids:
                result.overridden += 1
        else:
            result.kept += 1

    result.records = list(merged.values())
    return result


def merge(local: Iterable[Record], remote: Iterable[Record]) -> list[Record]:
    """Merge remote records into local records and return the reconciled list."""
    return merge_records(local, remote).records
