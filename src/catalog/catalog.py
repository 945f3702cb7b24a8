"""Partition catalog (databases -> tables -> partitions) on the state database.

``ensure_partition`` is idempotent and race-tolerant: the partition row has
a primary key over (database, table, values) and is inserted with
``INSERT OR IGNORE``, so concurrent callers registering the same key all
succeed and exactly one of them creates it.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from src.contracts.enums import PartitionResult
from src.contracts.record import PARTITION_COLUMNS, PartitionKey
from src.shared.errors import CatalogTableNotFound, ConfigurationError
from src.shared.sqlite import init_schema, transaction

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS catalog_databases (
    name       TEXT PRIMARY KEY,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS catalog_tables (
    database       TEXT NOT NULL,
    name           TEXT NOT NULL,
    partition_keys TEXT NOT NULL,
    location       TEXT NOT NULL,
    created_at     REAL NOT NULL,
    PRIMARY KEY (database, name)
);
CREATE TABLE IF NOT EXISTS catalog_partitions (
    database   TEXT NOT NULL,
    table_name TEXT NOT NULL,
    path       TEXT NOT NULL,
    location   TEXT NOT NULL,
    created_at REAL NOT NULL,
    PRIMARY KEY (database, table_name, path)
);
"""


class SqliteCatalog:
    def __init__(self, db_path: str | Path, clock: Callable[[], float] = time.time) -> None:
        self.db_path = Path(db_path)
        self.clock = clock
        init_schema(self.db_path, SCHEMA)

    # ── schema management ────────────────────────────────────────────────

    def create_database(self, name: str) -> bool:
        with transaction(self.db_path, immediate=True) as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO catalog_databases (name, created_at) VALUES (?, ?)",
                (name, self.clock()),
            )
            return cur.rowcount == 1

    def create_table(
        self,
        database: str,
        name: str,
        location: str,
        partition_keys: Sequence[str] = PARTITION_COLUMNS,
    ) -> bool:
        with transaction(self.db_path, immediate=True) as conn:
            if conn.execute("SELECT 1 FROM catalog_databases WHERE name = ?", (database,)).fetchone() is None:
                raise CatalogTableNotFound(database)
            cur = conn.execute(
                "INSERT OR IGNORE INTO catalog_tables (database, name, partition_keys, location, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (database, name, json.dumps(list(partition_keys)), location.rstrip("/"), self.clock()),
            )
            return cur.rowcount == 1

    def tables(self, database: str) -> list[str]:
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT name FROM catalog_tables WHERE database = ? ORDER BY name", (database,)
            ).fetchall()
        return [r["name"] for r in rows]

    # ── partitions ───────────────────────────────────────────────────────

    def ensure_partition(self, key: PartitionKey) -> PartitionResult:
        """Create the partition if absent; an existing one is success, untouched."""
        with transaction(self.db_path, immediate=True) as conn:
            table = conn.execute(
                "SELECT partition_keys, location FROM catalog_tables WHERE database = ? AND name = ?",
                (key.database, key.table),
            ).fetchone()
            if table is None:
                if conn.execute("SELECT 1 FROM catalog_databases WHERE name = ?", (key.database,)).fetchone() is None:
                    raise CatalogTableNotFound(key.database)
                raise CatalogTableNotFound(key.database, key.table)

            expected = json.loads(table["partition_keys"])
            given = [k for k, _ in key.partition_values]
            if given != expected:
                raise ConfigurationError(
                    f"partition columns {given} do not match {key.database}.{key.table} {expected}"
                )
            cur = conn.execute(
                "INSERT OR IGNORE INTO catalog_partitions (database, table_name, path, location, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (key.database, key.table, key.path, f"{table['location']}/{key.path}/", self.clock()),
            )
            created = cur.rowcount == 1
        return PartitionResult.CREATED if created else PartitionResult.ALREADY_EXISTS

    def partitions(self, database: str, table: str) -> list[str]:
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT path FROM catalog_partitions WHERE database = ? AND table_name = ? ORDER BY path",
                (database, table),
            ).fetchall()
        return [r["path"] for r in rows]

    def has_partition(self, key: PartitionKey) -> bool:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM catalog_partitions WHERE database = ? AND table_name = ? AND path = ?",
                (key.database, key.table, key.path),
            ).fetchone()
        return row is not None
