"""SQLite helpers for the state database (ledger, alerts, catalog).

Every operation opens its own short-lived connection so that worker threads
and worker processes can share one database file.  Writers take the
reserved lock up front (``BEGIN IMMEDIATE``) which makes a read-then-write
inside one transaction atomic across processes.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from src.shared.errors import TransientIOError

log = logging.getLogger(__name__)

_BUSY_TIMEOUT_SEC = 5.0
_TRANSIENT_MARKERS = ("locked", "busy", "unable to open")


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


def init_schema(db_path: str | Path, ddl: str) -> None:
    """Create tables/indexes from *ddl* (idempotent) and switch to WAL mode."""
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(p), timeout=_BUSY_TIMEOUT_SEC)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript(ddl)
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction(db_path: str | Path, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Yield a connection inside an explicit transaction; commit on success.

    Lock contention and similar ``OperationalError``s surface as
    ``TransientIOError`` so that callers retry them with backoff.
    """
    try:
        conn = sqlite3.connect(str(db_path), timeout=_BUSY_TIMEOUT_SEC, isolation_level=None)
    except sqlite3.OperationalError as exc:
        raise TransientIOError(f"cannot open state db {db_path}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.OperationalError as exc:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        if _is_transient(exc):
            raise TransientIOError(f"state db busy: {exc}") from exc
        raise
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()
