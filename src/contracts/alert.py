"""Alert history entity and the delivery notification derived from it."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from src.contracts.enums import AlertStatus


@dataclass(slots=True)
class Alert:
    """Materialized alert.  Never deleted, only status-transitioned."""

    id: str
    rule_id: str
    dedup_key: str
    creation_time: str  # ISO-8601 — first event of the incident
    last_update_time: str
    severity: str
    status: AlertStatus
    event_ids: list[str]
    title: str = ""
    delivery_attempts: int = 0
    version: int = 0  # highest DedupEntry version applied
    delivered_version: int = 0  # highest version a delivery notification went out for

    @property
    def time_partition(self) -> str:
        return self.creation_time[:10]

    @property
    def event_count(self) -> int:
        return len(self.event_ids)


@dataclass(slots=True, frozen=True)
class AlertNotification:
    """Outbound delivery message, idempotency-tagged with ``(alert_id, version)``."""

    alert_id: str
    version: int
    rule_id: str
    severity: str
    title: str
    event_count: int
    creation_time: str
    last_update_time: str
    is_update: bool

    @property
    def idempotency_key(self) -> str:
        return f"{self.alert_id}:{self.version}"

    @property
    def summary(self) -> str:
        verb = "updated" if self.is_update else "new"
        return f"[{self.severity.upper()}] {self.title} ({verb}, {self.event_count} events)"

    def to_dict(self) -> dict[str, Any]:
        body = asdict(self)
        body["idempotency_key"] = self.idempotency_key
        body["summary"] = self.summary
        return body

    @classmethod
    def for_alert(cls, alert: Alert) -> AlertNotification:
        return cls(
            alert_id=alert.id,
            version=alert.version,
            rule_id=alert.rule_id,
            severity=alert.severity,
            title=alert.title or alert.rule_id,
            event_count=alert.event_count,
            creation_time=alert.creation_time,
            last_update_time=alert.last_update_time,
            is_update=alert.delivered_version > 0,
        )
