"""Read-only lookup of per-source classification hints, keyed by source id.

Backed by ``config/sources.yaml``::

    sources:
      cloudtrail-prod:
        format: jsonl            # classifier variant
        schema: AWS.CloudTrail   # schema id of produced records
        encoding: utf-8
        timestamp_field: eventTime
        bucket: raw-logs         # where this source drops objects
        prefix: cloudtrail/
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.shared.config_loader import load_yaml
from src.shared.errors import ConfigurationError

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SourceHints:
    source_id: str
    format: str
    schema: str
    encoding: str = "utf-8"
    timestamp_field: str = ""
    profile: str = ""  # regex profile name for format=regex
    bucket: str = ""
    prefix: str = ""

    @classmethod
    def from_dict(cls, source_id: str, cfg: dict[str, Any]) -> SourceHints:
        if "format" not in cfg:
            raise ConfigurationError(f"source '{source_id}' has no format")
        return cls(
            source_id=source_id,
            format=str(cfg["format"]),
            schema=str(cfg.get("schema", source_id)),
            encoding=str(cfg.get("encoding", "utf-8")),
            timestamp_field=str(cfg.get("timestamp_field", "")),
            profile=str(cfg.get("profile", "")),
            bucket=str(cfg.get("bucket", "")),
            prefix=str(cfg.get("prefix", "")),
        )


class SourceRegistry:
    """Typed, read-only registry of :class:`SourceHints`."""

    def __init__(self, sources: dict[str, SourceHints]) -> None:
        self._sources = dict(sources)

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> SourceRegistry:
        sources = {
            sid: SourceHints.from_dict(sid, body or {})
            for sid, body in cfg.get("sources", {}).items()
        }
        log.info("Loaded %d log sources: %s", len(sources), ", ".join(sorted(sources)))
        return cls(sources)

    @classmethod
    def load(cls, path: str | Path) -> SourceRegistry:
        return cls.from_config(load_yaml(path))

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self):
        return iter(self._sources.values())

    def get(self, source_id: str) -> SourceHints:
        try:
            return self._sources[source_id]
        except KeyError:
            raise ConfigurationError(f"unknown source id '{source_id}'") from None

    def resolve_location(self, object_location: str) -> SourceHints:
        """Find the source owning ``s3://bucket/key`` (longest matching prefix wins)."""
        if not object_location.startswith("s3://"):
            raise ConfigurationError(f"not an object location: {object_location}")
        bucket, _, key = object_location[len("s3://"):].partition("/")
        best: SourceHints | None = None
        for hints in self._sources.values():
            if hints.bucket != bucket or not key.startswith(hints.prefix):
                continue
            if best is None or len(hints.prefix) > len(best.prefix):
                best = hints
        if best is None:
            raise ConfigurationError(f"no source configured for {object_location}")
        return best

    def schemas(self) -> list[str]:
        return sorted({h.schema for h in self._sources.values()})
