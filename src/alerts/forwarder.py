"""Alert Forwarder — dedup change stream -> alert history + delivery queue.

Per change event:
  * a version not newer than the stored alert's is stale and dropped
    (same-key ordering is enforced by version, never by arrival order);
  * otherwise the alert is created or merged (event ids are unioned) with a
    conditional write, and exactly one delivery notification tagged
    ``<alert_id>:<version>`` is published;
  * a redelivered event whose version equals the stored one but was never
    delivered (publish failed after the upsert) publishes it now.

The delivery queue drops a second send with the same tag, so redelivery of
an already published version never reaches downstream twice.
"""

from __future__ import annotations

import logging
from typing import Any

from src.alerts.rules import RuleCatalog
from src.alerts.store import AlertStore
from src.contracts.alert import Alert, AlertNotification
from src.contracts.dedup import DedupChange, DedupEntry
from src.contracts.enums import AlertStatus, ItemOutcome
from src.messaging.stream_queue import StreamQueue
from src.shared.errors import ConcurrencyConflict, ExhaustedRetriesError

log = logging.getLogger(__name__)

_MAX_CONFLICT_RETRIES = 20


def merge_alert(existing: Alert | None, entry: DedupEntry, rules: RuleCatalog) -> Alert:
    """Alert after applying *entry*: union of event ids, newest times, highest version."""
    rule = rules.get(entry.rule_id)
    if existing is None:
        return Alert(
            id=entry.alert_id,
            rule_id=entry.rule_id,
            dedup_key=entry.dedup_key,
            creation_time=entry.first_event_time,
            last_update_time=entry.last_event_time,
            severity=rule.severity,
            status=AlertStatus.OPEN,
            event_ids=list(entry.event_ids),
            title=rule.name,
            version=entry.version,
        )
    seen = set(existing.event_ids)
    merged_ids = existing.event_ids + [e for e in entry.event_ids if e not in seen]
    return Alert(
        id=existing.id,
        rule_id=existing.rule_id,
        dedup_key=existing.dedup_key,
        creation_time=existing.creation_time,
        last_update_time=max(existing.last_update_time, entry.last_event_time),
        severity=rule.severity,
        status=existing.status,
        event_ids=merged_ids,
        title=rule.name,
        delivery_attempts=existing.delivery_attempts,
        version=max(existing.version, entry.version),
        delivered_version=existing.delivered_version,
    )


class AlertForwarder:
    """Handler for the dedup stream queue (plug into ``BatchWorker``)."""

    def __init__(self, alerts: AlertStore, delivery_queue: StreamQueue, rules: RuleCatalog) -> None:
        self.alerts = alerts
        self.delivery_queue = delivery_queue
        self.rules = rules

    def __call__(self, body: dict[str, Any]) -> ItemOutcome:
        return self.handle(DedupChange.from_dict(body))

    def handle(self, change: DedupChange) -> ItemOutcome:
        entry = change.entry
        alert_id = entry.alert_id
        for _ in range(_MAX_CONFLICT_RETRIES):
            existing = self.alerts.get(alert_id)
            if existing is not None and change.version <= existing.version:
                if change.version == existing.version and existing.delivered_version < existing.version:
                    log.info("Alert %s v%d stored but not delivered; publishing", alert_id, existing.version)
                    self._publish(existing)
                    return ItemOutcome.SUCCEEDED
                log.debug("Stale change v%d for alert %s (at v%d)", change.version, alert_id, existing.version)
                return ItemOutcome.SKIPPED

            alert = merge_alert(existing, entry, self.rules)
            try:
                self.alerts.put(alert, existing.version if existing else None)
            except ConcurrencyConflict:
                continue
            log.info(
                "%s alert %s (%s/%s) v%d: %d events",
                "Updated" if existing else "Created",
                alert_id,
                alert.rule_id,
                alert.dedup_key,
                alert.version,
                alert.event_count,
            )
            self._publish(alert)
            return ItemOutcome.SUCCEEDED
        raise ExhaustedRetriesError(f"alert {alert_id} upsert lost {_MAX_CONFLICT_RETRIES} races")

    def _publish(self, alert: Alert) -> None:
        note = AlertNotification.for_alert(alert)
        sent = self.delivery_queue.send(note.to_dict(), dedup_id=note.idempotency_key)
        if sent is None:
            log.info("Delivery %s already published", note.idempotency_key)
        self.alerts.mark_delivered(alert.id, alert.version, published=sent is not None)
