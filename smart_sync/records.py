"""
Record model for synchronized collections.

A record is a uniquely identified, timestamped mapping of fields. The
`id` and `updatedAt` fields are lifted into typed attributes; every
other field travels untouched in an open attribute bag so unknown
fields survive a merge.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from .exceptions import RecordValidationError

logger = logging.getLogger(__name__)

ID_FIELD = "id"
UPDATED_AT_FIELD = "updatedAt"

# Identifier fields used by older browser caches, tried after `id`
DEFAULT_ID_FALLBACKS: tuple[str, ...] = ("firebaseId", "uniqueId")

# Sort key for records without a timestamp
EARLIEST = datetime.min.replace(tzinfo=UTC)


def parse_instant(value: Any) -> datetime | None:
    """Parse a stored timestamp into an aware UTC datetime.

    Accepts:
    - datetime (naive values are taken as UTC)
    - ISO-8601 strings, including a trailing "Z"
    - epoch milliseconds as int/float (JavaScript Date values)
    - {"seconds": ..., "nanoseconds": ...} mappings (Firestore timestamps)

    Args:
        value: Raw timestamp value

    Returns:
        Aware datetime in UTC, or None if absent or unparseable
    """
    if value is None or value == "":
        return None

    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, bool):
            return None
        elif isinstance(value, int | float):
            parsed = datetime.fromtimestamp(value / 1000, UTC)
        elif isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
        elif isinstance(value, dict):
            seconds = value.get("seconds", value.get("_seconds"))
            nanos = value.get("nanoseconds", value.get("_nanoseconds", 0))
            if seconds is None:
                return None
            parsed = datetime.fromtimestamp(seconds + nanos / 1e9, UTC)
        else:
            return None
    except (ValueError, TypeError, OverflowError, OSError):
        logger.warning("Ignoring unparseable timestamp: %r", value)
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_instant(instant: datetime) -> str:
    """Format an instant as an ISO-8601 UTC string."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC).isoformat()


@dataclass(frozen=True)
class Record:
    """A single record of a collection.

    Attributes:
        id: Stable unique identifier within the collection
        updated_at: Last modification instant (None if never stamped)
        attributes: All other fields, preserved as-is
    """

    id: str
    updated_at: datetime | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def sort_instant(self) -> datetime:
        """Instant used for precedence; missing timestamps sort first."""
        return self.updated_at if self.updated_at is not None else EARLIEST

    def get(self, name: str, default: Any = None) -> Any:
        """Read a field the way it appears in the wire form."""
        if name == ID_FIELD:
            return self.id
        if name == UPDATED_AT_FIELD:
            return self.updated_at
        return self.attributes.get(name, default)

    def touched(self, instant: datetime, **changes: Any) -> Record:
        """Return a copy with updated fields and a new timestamp."""
        return replace(
            self,
            updated_at=parse_instant(instant),
            attributes={**self.attributes, **changes},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire form."""
        data: dict[str, Any] = {ID_FIELD: self.id}
        if self.updated_at is not None:
            data[UPDATED_AT_FIELD] = format_instant(self.updated_at)
        data.update(self.attributes)
        return data

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        id_fallbacks: Sequence[str] = DEFAULT_ID_FALLBACKS,
    ) -> Record:
        """Deserialize from the wire form.

        Raises:
            RecordValidationError: If no identifier field is present
        """
        if not isinstance(data, dict):
            raise RecordValidationError("record", "expected a mapping", repr(data)[:80])

        record_id: Any = None
        for name in (ID_FIELD, *id_fallbacks):
            candidate = data.get(name)
            if candidate not in (None, ""):
                record_id = candidate
                break
        if record_id is None:
            raise RecordValidationError(ID_FIELD, "record has no identifier")

        attributes = {
            key: value
            for key, value in data.items()
            if key not in (ID_FIELD, UPDATED_AT_FIELD)
        }
        return cls(
            id=str(record_id),
            updated_at=parse_instant(data.get(UPDATED_AT_FIELD)),
            attributes=attributes,
        )


def partition_records(
    items: Iterable[Any],
    id_fallbacks: Sequence[str] = DEFAULT_ID_FALLBACKS,
) -> tuple[list[Record], list[Any]]:
    """Split raw items into records and the items that are not valid records.

    Invalid items are returned untouched, in their original order.
    """
    records: list[Record] = []
    invalid: list[Any] = []
    for item in items:
        try:
            records.append(Record.from_dict(item, id_fallbacks))
        except RecordValidationError as e:
            invalid.append(item)
            logger.warning("Invalid record: %s", e.message)
    return records, invalid


def records_from_dicts(
    items: Iterable[dict[str, Any]],
    id_fallbacks: Sequence[str] = DEFAULT_ID_FALLBACKS,
) -> tuple[list[Record], int]:
    """Convert raw mappings to records, skipping invalid ones.

    Returns:
        Tuple of (records, number of skipped items)
    """
    records, invalid = partition_records(items, id_fallbacks)
    return records, len(invalid)
