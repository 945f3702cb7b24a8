"""NormalizedRecord and PartitionKey."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from src.shared.timeutil import parse_ts

PARTITION_COLUMNS: tuple[str, ...] = ("year", "month", "day", "hour")


def table_name(schema_id: str) -> str:
    """Catalog table for a schema: ``AWS.CloudTrail`` -> ``aws_cloudtrail``."""
    return re.sub(r"[^a-z0-9]+", "_", schema_id.lower()).strip("_")


@dataclass(slots=True, frozen=True, order=True)
class PartitionKey:
    """(database, table, ordered partition values).  Hashable, orderable."""

    database: str
    table: str
    partition_values: tuple[tuple[str, str], ...]

    @property
    def path(self) -> str:
        """Hive-style suffix, e.g. ``year=2026/month=02/day=26/hour=10``."""
        return "/".join(f"{k}={v}" for k, v in self.partition_values)

    @property
    def ident(self) -> str:
        return f"{self.database}.{self.table}/{self.path}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "database": self.database,
            "table": self.table,
            "partition_values": [[k, v] for k, v in self.partition_values],
        }

    @classmethod
    def from_dict(cls, body: dict[str, Any]) -> PartitionKey:
        return cls(
            database=str(body["database"]),
            table=str(body["table"]),
            partition_values=tuple((str(k), str(v)) for k, v in body["partition_values"]),
        )


@dataclass(slots=True, frozen=True)
class NormalizedRecord:
    """One canonical record.  Immutable once written."""

    schema_id: str
    event_timestamp: str  # ISO-8601 UTC
    payload: dict[str, Any] = field(hash=False, compare=True)
    source_id: str = ""
    ingest_object_location: str = ""

    def partition_key(self, database: str) -> PartitionKey:
        """Exactly one partition per record: schema table x event hour."""
        dt = parse_ts(self.event_timestamp)
        values = (
            ("year", f"{dt.year:04d}"),
            ("month", f"{dt.month:02d}"),
            ("day", f"{dt.day:02d}"),
            ("hour", f"{dt.hour:02d}"),
        )
        return PartitionKey(database=database, table=table_name(self.schema_id), partition_values=values)

    def to_json(self) -> str:
        return json.dumps(
            {
                "p_schema_id": self.schema_id,
                "p_event_time": self.event_timestamp,
                "p_source_id": self.source_id,
                "p_ingest_object": self.ingest_object_location,
                **self.payload,
            },
            ensure_ascii=False,
            separators=(",", ":"),
            sort_keys=True,
        )
