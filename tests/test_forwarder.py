"""Tests for src.alerts.forwarder — versioned alert upsert and delivery notifications."""

from __future__ import annotations

import pytest

from src.alerts.dedup import AlertDeduplicator
from src.alerts.forwarder import AlertForwarder, merge_alert
from src.alerts.rules import RuleCatalog
from src.alerts.store import AlertStore
from src.contracts.dedup import DedupChange
from src.contracts.enums import AlertStatus, ItemOutcome
from src.messaging.stream_queue import StreamQueue
from src.messaging.worker import BatchWorker
from src.shared.errors import TransientIOError
from tests.conftest import make_entry, make_match

# ═══════════════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def rules() -> RuleCatalog:
    return RuleCatalog.from_config(
        {"rules": [{"id": "AWS.CloudTrail.RootActivity", "name": "Root account activity", "severity": "critical"}]},
        default_severity="medium",
    )


@pytest.fixture
def alerts(state_db) -> AlertStore:
    return AlertStore(state_db)


@pytest.fixture
def delivery(make_queue) -> StreamQueue:
    return make_queue("alert-delivery")


@pytest.fixture
def forwarder(alerts, delivery, rules) -> AlertForwarder:
    return AlertForwarder(alerts, delivery, rules)


def _change(kind: str = "created", **kwargs) -> dict:
    return DedupChange(kind=kind, entry=make_entry(**kwargs)).to_dict()


def _deliveries(queue: StreamQueue) -> list[dict]:
    return [m.body for m in queue.receive(100, 30)]


class FlakyQueue(StreamQueue):
    """Delivery queue whose first ``failures`` sends raise."""

    def __init__(self, *args, failures: int = 1, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failures = failures

    def send(self, body, dedup_id=None):
        if self.failures > 0:
            self.failures -= 1
            raise TransientIOError("delivery queue unavailable")
        return super().send(body, dedup_id=dedup_id)


# ═══════════════════════════════════════════════════════════════════════════
#  merge_alert
# ═══════════════════════════════════════════════════════════════════════════


class TestMergeAlert:
    def test_new_alert_graded_from_rule(self, rules):
        alert = merge_alert(None, make_entry(event_ids=("e1", "e2")), rules)
        assert alert.severity == "critical"
        assert alert.title == "Root account activity"
        assert alert.status is AlertStatus.OPEN
        assert alert.event_ids == ["e1", "e2"]

    def test_unknown_rule_uses_default_severity(self, rules):
        alert = merge_alert(None, make_entry(rule_id="Custom.Unknown"), rules)
        assert alert.severity == "medium"
        assert alert.title == "Custom.Unknown"

    def test_union_of_event_ids(self, rules):
        existing = merge_alert(None, make_entry(event_ids=("e1", "e2", "e3"), version=3), rules)
        merged = merge_alert(existing, make_entry(event_ids=("e3", "e9"), version=5), rules)
        assert merged.event_ids == ["e1", "e2", "e3", "e9"]
        assert merged.version == 5

    def test_status_preserved_on_merge(self, rules):
        existing = merge_alert(None, make_entry(), rules)
        existing.status = AlertStatus.TRIAGED
        merged = merge_alert(existing, make_entry(event_ids=("e1", "e2"), version=2), rules)
        assert merged.status is AlertStatus.TRIAGED


# ═══════════════════════════════════════════════════════════════════════════
#  Forwarder
# ═══════════════════════════════════════════════════════════════════════════


class TestForwarder:
    def test_create_publishes_one_notification(self, forwarder, alerts, delivery):
        entry = make_entry()
        assert forwarder(_change()) is ItemOutcome.SUCCEEDED
        stored = alerts.get(entry.alert_id)
        assert stored.version == 1
        assert stored.delivered_version == 1
        [note] = _deliveries(delivery)
        assert note["idempotency_key"] == f"{entry.alert_id}:1"
        assert note["is_update"] is False

    def test_update_publishes_again(self, forwarder, delivery):
        forwarder(_change())
        forwarder(_change("updated", event_ids=("evt-1", "evt-2"), version=2))
        notes = _deliveries(delivery)
        assert [n["version"] for n in notes] == [1, 2]
        assert notes[1]["is_update"] is True
        assert notes[1]["event_count"] == 2

    def test_redelivered_change_is_skipped(self, forwarder, delivery):
        forwarder(_change())
        assert forwarder(_change()) is ItemOutcome.SKIPPED
        assert len(_deliveries(delivery)) == 1

    def test_out_of_order_changes_converge(self, forwarder, alerts, delivery):
        v3 = _change("updated", event_ids=("e1", "e2", "e3"), version=3)
        v2 = _change("updated", event_ids=("e1", "e2"), version=2)
        assert forwarder(v3) is ItemOutcome.SUCCEEDED
        assert forwarder(v2) is ItemOutcome.SKIPPED
        stored = alerts.get(make_entry().alert_id)
        assert stored.version == 3
        assert stored.event_ids == ["e1", "e2", "e3"]
        assert [n["version"] for n in _deliveries(delivery)] == [3]

    def test_publish_failure_retried_on_redelivery(self, redis_client, clock, alerts, rules):
        flaky = FlakyQueue(redis_client, "alert-delivery", clock=clock, failures=1)
        forwarder = AlertForwarder(alerts, flaky, rules)
        entry = make_entry()

        with pytest.raises(TransientIOError):
            forwarder(_change())
        stored = alerts.get(entry.alert_id)
        assert stored.version == 1
        assert stored.delivered_version == 0

        assert forwarder(_change()) is ItemOutcome.SUCCEEDED
        assert alerts.get(entry.alert_id).delivered_version == 1
        assert len(_deliveries(flaky)) == 1
        assert forwarder(_change()) is ItemOutcome.SKIPPED

    def test_separate_incidents_make_separate_alerts(self, forwarder, alerts):
        forwarder(_change())
        forwarder(_change(incident_seq=2, first="2026-02-26T10:10:00Z", version=3))
        assert len(alerts.list_by_rule("AWS.CloudTrail.RootActivity")) == 2


# ═══════════════════════════════════════════════════════════════════════════
#  Dedup -> stream -> forwarder
# ═══════════════════════════════════════════════════════════════════════════


class TestDedupToForwarder:
    def test_three_matches_converge_to_one_alert(self, dedup_store, forwarder, alerts, delivery):
        dedup = AlertDeduplicator(dedup_store, window_sec=300)
        for i in range(3):
            dedup.record_match(make_match(event_id=f"e{i}", offset_sec=i * 60))

        with BatchWorker(dedup_store.stream, forwarder) as worker:
            report = worker.run_once()
        assert report.committed == 3

        [alert] = alerts.list_by_rule("AWS.CloudTrail.RootActivity")
        assert alert.event_ids == ["e0", "e1", "e2"]
        assert alert.version == 3
        keys = [n["idempotency_key"] for n in _deliveries(delivery)]
        assert len(keys) == len(set(keys))
        assert f"{alert.id}:3" in keys
