"""IngestEvent — one "new object" notification from object storage."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import unquote_plus

from src.shared.errors import MalformedInputError
from src.shared.timeutil import utc_now


@dataclass(slots=True, frozen=True)
class IngestEvent:
    object_location: str  # s3://bucket/key
    source_id: str
    received_at: str  # ISO-8601 UTC
    size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, body: dict[str, Any]) -> IngestEvent:
        try:
            return cls(
                object_location=str(body["object_location"]),
                source_id=str(body["source_id"]),
                received_at=str(body.get("received_at") or utc_now()),
                size_bytes=int(body.get("size_bytes", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedInputError(f"invalid ingest event body: {exc}") from exc


def locations_from_notification(body: dict[str, Any]) -> list[tuple[str, int, str]]:
    """Extract ``(object_location, size_bytes, event_time)`` from an S3-style notification.

    Accepts the ``{"Records": [{"s3": {...}, "eventTime": ...}]}`` envelope;
    keys are URL-decoded the way S3 encodes them.  Test events (no
    ``Records``) yield an empty list.
    """
    out: list[tuple[str, int, str]] = []
    for rec in body.get("Records", []):
        s3 = rec.get("s3", {})
        bucket = s3.get("bucket", {}).get("name")
        obj = s3.get("object", {})
        key = obj.get("key")
        if not bucket or not key:
            raise MalformedInputError(f"notification record without bucket/key: {rec}")
        out.append(
            (
                f"s3://{bucket}/{unquote_plus(key)}",
                int(obj.get("size", 0)),
                str(rec.get("eventTime") or utc_now()),
            )
        )
    return out
