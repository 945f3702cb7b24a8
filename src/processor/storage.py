"""Object storage: raw object fetch, partitioned normalized output, quarantine.

``s3://bucket/key`` locations map onto ``<root>/bucket/key`` on a local
(or mounted) filesystem.  Writes are atomic (temp file + rename) and
append-only: an existing object is never overwritten.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
from collections import defaultdict
from pathlib import Path, PurePosixPath

from src.contracts.ingest import IngestEvent
from src.contracts.record import NormalizedRecord, PartitionKey
from src.processor.classifier import LineFailure
from src.shared.errors import MalformedInputError, TransientIOError
from src.shared.fileio import atomic_write_bytes, atomic_write_text
from src.shared.timeutil import utc_now

log = logging.getLogger(__name__)


def split_location(location: str) -> tuple[str, str]:
    """``s3://bucket/a/b.json`` -> ``("bucket", "a/b.json")``."""
    if not location.startswith("s3://"):
        raise MalformedInputError(f"unsupported object location: {location}")
    bucket, _, key = location[len("s3://"):].partition("/")
    if not bucket or not key or ".." in PurePosixPath(key).parts:
        raise MalformedInputError(f"invalid object location: {location}")
    return bucket, key


class LocalObjectStore:
    """Filesystem-backed object store."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, location: str) -> Path:
        bucket, key = split_location(location)
        return self.root / bucket / key

    def get(self, location: str) -> bytes:
        path = self.path_for(location)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            # notification may precede object visibility; retry like any I/O error
            raise TransientIOError(f"object not found: {location}") from exc
        except OSError as exc:
            raise TransientIOError(f"cannot read {location}: {exc}") from exc

    def put(self, location: str, data: bytes) -> bool:
        """Write a new object.  Returns False (and writes nothing) if it already exists."""
        path = self.path_for(location)
        if path.exists():
            return False
        try:
            atomic_write_bytes(path, data)
        except OSError as exc:
            raise TransientIOError(f"cannot write {location}: {exc}") from exc
        return True


class NormalizedWriter:
    """Writes records as gzip JSON-lines, one object per (input object, partition).

    Output names are derived from the input location and content hash, so
    re-processing the same input maps onto the same, already existing,
    objects and never duplicates records.
    """

    def __init__(self, store: LocalObjectStore, bucket: str, database: str) -> None:
        self.store = store
        self.bucket = bucket
        self.database = database

    def location_for(self, key: PartitionKey, object_location: str, content_digest: str) -> str:
        name = hashlib.sha1(f"{object_location}\x1f{content_digest}".encode()).hexdigest()[:24]
        return f"s3://{self.bucket}/logs/{key.table}/{key.path}/{name}.json.gz"

    def write(
        self,
        records: list[NormalizedRecord],
        object_location: str,
        content_digest: str,
    ) -> list[PartitionKey]:
        groups: dict[PartitionKey, list[NormalizedRecord]] = defaultdict(list)
        for rec in records:
            groups[rec.partition_key(self.database)].append(rec)

        for key, recs in sorted(groups.items()):
            location = self.location_for(key, object_location, content_digest)
            body = "".join(r.to_json() + "\n" for r in recs).encode("utf-8")
            if self.store.put(location, gzip.compress(body, mtime=0)):
                log.debug("Wrote %d records -> %s", len(recs), location)
            else:
                log.info("Output %s already present; not rewritten", location)
        return sorted(groups)


class QuarantineWriter:
    """Keeps malformed lines, one JSON-lines file per (input object, content).

    The file name derives from the input location and content hash, so a
    redelivered object maps onto the file its first delivery wrote and each
    ``(object_location, sha256, line_no)`` is recorded once.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, object_location: str, content_digest: str) -> Path:
        name = hashlib.sha256(f"{object_location}\x1f{content_digest}".encode()).hexdigest()[:32]
        return self.root / f"{name}.jsonl"

    def write(self, event: IngestEvent, content_digest: str, failures: list[LineFailure]) -> bool:
        """Returns False when this input was already quarantined."""
        if not failures:
            return False
        path = self.path_for(event.object_location, content_digest)
        if path.exists():
            log.info("Malformed lines of %s already quarantined", event.object_location)
            return False
        now = utc_now()
        lines = [
            json.dumps(
                {
                    "object_location": event.object_location,
                    "sha256": content_digest,
                    "source_id": event.source_id,
                    "line_no": f.line_no,
                    "raw_line": f.raw_line,
                    "reason": f.reason,
                    "recorded_at": now,
                },
                ensure_ascii=False,
            )
            for f in failures
        ]
        try:
            atomic_write_text(path, "\n".join(lines) + "\n")
        except OSError as exc:
            raise TransientIOError(f"cannot write quarantine {path}: {exc}") from exc
        log.warning("Quarantined %d malformed lines from %s", len(failures), event.object_location)
        return True

    def read(self) -> list[dict]:
        rows: list[dict] = []
        for path in sorted(self.root.glob("*.jsonl")):
            with open(path, encoding="utf-8") as fh:
                rows.extend(json.loads(line) for line in fh if line.strip())
        return sorted(rows, key=lambda r: (r["object_location"], r["line_no"]))
