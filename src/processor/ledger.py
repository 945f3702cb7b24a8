"""Ledger of fully processed input objects, keyed by location + content hash."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from src.shared.sqlite import init_schema, transaction

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS processed_objects (
    object_location TEXT    NOT NULL,
    content_sha256  TEXT    NOT NULL,
    records         INTEGER NOT NULL,
    failures        INTEGER NOT NULL,
    partitions      INTEGER NOT NULL,
    processed_at    REAL    NOT NULL,
    PRIMARY KEY (object_location, content_sha256)
);
"""


class ProcessedObjectLedger:
    def __init__(self, db_path: str | Path, clock: Callable[[], float] = time.time) -> None:
        self.db_path = Path(db_path)
        self.clock = clock
        init_schema(self.db_path, SCHEMA)

    def is_processed(self, object_location: str, content_sha256: str) -> bool:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_objects WHERE object_location = ? AND content_sha256 = ?",
                (object_location, content_sha256),
            ).fetchone()
        return row is not None

    def mark_processed(
        self,
        object_location: str,
        content_sha256: str,
        records: int,
        failures: int,
        partitions: int,
    ) -> None:
        with transaction(self.db_path, immediate=True) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO processed_objects "
                "(object_location, content_sha256, records, failures, partitions, processed_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (object_location, content_sha256, records, failures, partitions, self.clock()),
            )

    def count(self) -> int:
        with transaction(self.db_path) as conn:
            return int(conn.execute("SELECT COUNT(*) FROM processed_objects").fetchone()[0])
