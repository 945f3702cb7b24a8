"""Alert history store.

Write side (forwarder): versioned upsert, delivery bookkeeping.
Read side (alerts query contract): by id, by rule, by creation-time range.
Status is changed only by operators: OPEN -> TRIAGED -> CLOSED, OPEN -> CLOSED.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from src.contracts.alert import Alert
from src.contracts.enums import AlertStatus
from src.shared.errors import ConcurrencyConflict, ConfigurationError
from src.shared.sqlite import init_schema, transaction

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS alerts (
    id                TEXT PRIMARY KEY,
    rule_id           TEXT    NOT NULL,
    dedup_key         TEXT    NOT NULL,
    creation_time     TEXT    NOT NULL,
    last_update_time  TEXT    NOT NULL,
    time_partition    TEXT    NOT NULL,
    severity          TEXT    NOT NULL,
    status            TEXT    NOT NULL,
    title             TEXT    NOT NULL,
    event_ids         TEXT    NOT NULL,
    delivery_attempts INTEGER NOT NULL DEFAULT 0,
    version           INTEGER NOT NULL,
    delivered_version INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_alerts_rule ON alerts(rule_id, creation_time);
CREATE INDEX IF NOT EXISTS idx_alerts_time ON alerts(time_partition, creation_time);
"""

_TRANSITIONS: dict[AlertStatus, set[AlertStatus]] = {
    AlertStatus.OPEN: {AlertStatus.TRIAGED, AlertStatus.CLOSED},
    AlertStatus.TRIAGED: {AlertStatus.CLOSED},
    AlertStatus.CLOSED: set(),
}


def _row_to_alert(row: sqlite3.Row) -> Alert:
    return Alert(
        id=row["id"],
        rule_id=row["rule_id"],
        dedup_key=row["dedup_key"],
        creation_time=row["creation_time"],
        last_update_time=row["last_update_time"],
        severity=row["severity"],
        status=AlertStatus(row["status"]),
        event_ids=json.loads(row["event_ids"]),
        title=row["title"],
        delivery_attempts=int(row["delivery_attempts"]),
        version=int(row["version"]),
        delivered_version=int(row["delivered_version"]),
    )


class AlertStore:
    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        init_schema(self.db_path, SCHEMA)

    # ── write side ───────────────────────────────────────────────────────

    def put(self, alert: Alert, expected_version: int | None) -> None:
        """Insert (``expected_version=None``) or replace a version we read.

        Status, delivery counters and delivered_version are not touched by
        an update; they have their own writers.
        """
        with transaction(self.db_path, immediate=True) as conn:
            if expected_version is None:
                try:
                    conn.execute(
                        "INSERT INTO alerts (id, rule_id, dedup_key, creation_time, last_update_time, "
                        "time_partition, severity, status, title, event_ids, delivery_attempts, version, "
                        "delivered_version) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            alert.id,
                            alert.rule_id,
                            alert.dedup_key,
                            alert.creation_time,
                            alert.last_update_time,
                            alert.time_partition,
                            alert.severity,
                            alert.status.value,
                            alert.title,
                            json.dumps(alert.event_ids),
                            alert.delivery_attempts,
                            alert.version,
                            alert.delivered_version,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ConcurrencyConflict(f"alert {alert.id} created concurrently") from exc
                return
            cur = conn.execute(
                "UPDATE alerts SET last_update_time = ?, severity = ?, title = ?, event_ids = ?, version = ? "
                "WHERE id = ? AND version = ?",
                (
                    alert.last_update_time,
                    alert.severity,
                    alert.title,
                    json.dumps(alert.event_ids),
                    alert.version,
                    alert.id,
                    expected_version,
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrencyConflict(f"alert {alert.id} changed since version {expected_version}")

    def mark_delivered(self, alert_id: str, version: int, published: bool = True) -> None:
        with transaction(self.db_path, immediate=True) as conn:
            conn.execute(
                "UPDATE alerts SET delivery_attempts = delivery_attempts + ?, "
                "delivered_version = MAX(delivered_version, ?) WHERE id = ?",
                (1 if published else 0, version, alert_id),
            )

    def update_status(self, alert_id: str, status: AlertStatus) -> Alert:
        with transaction(self.db_path, immediate=True) as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            if row is None:
                raise KeyError(alert_id)
            current = AlertStatus(row["status"])
            if status is current:
                return _row_to_alert(row)
            if status not in _TRANSITIONS[current]:
                raise ConfigurationError(f"alert {alert_id}: cannot move {current.value} -> {status.value}")
            conn.execute("UPDATE alerts SET status = ? WHERE id = ?", (status.value, alert_id))
        log.info("Alert %s status %s -> %s", alert_id, current.value, status.value)
        return self.get(alert_id)

    # ── read side ────────────────────────────────────────────────────────

    def get(self, alert_id: str) -> Alert | None:
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        return _row_to_alert(row) if row else None

    def list_by_rule(self, rule_id: str, limit: int = 100) -> list[Alert]:
        """Newest first."""
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM alerts WHERE rule_id = ? ORDER BY creation_time DESC LIMIT ?",
                (rule_id, limit),
            ).fetchall()
        return [_row_to_alert(r) for r in rows]

    def list_by_time(self, start: str, end: str, limit: int = 1000) -> list[Alert]:
        """Alerts created in ``[start, end)`` (ISO-8601 UTC), oldest first."""
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM alerts WHERE time_partition BETWEEN ? AND ? "
                "AND creation_time >= ? AND creation_time < ? ORDER BY creation_time LIMIT ?",
                (start[:10], end[:10], start, end, limit),
            ).fetchall()
        return [_row_to_alert(r) for r in rows]
