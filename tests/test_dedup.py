"""Tests for src.alerts.dedup — fixed-window alert deduplication state machine."""

from __future__ import annotations

import threading

import pytest

from src.alerts.dedup import AlertDeduplicator
from src.alerts.dedup_store import DedupStore
from src.contracts.dedup import DedupEntry
from src.contracts.enums import DedupStatus
from src.shared.errors import ConcurrencyConflict, ExhaustedRetriesError
from tests.conftest import make_entry, make_match, ts_offset

# ═══════════════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def dedup(dedup_store) -> AlertDeduplicator:
    return AlertDeduplicator(dedup_store, window_sec=300)


def _stream_kinds(store: DedupStore) -> list[tuple[str, int]]:
    msgs = store.stream.receive(100, 30)
    return [(m.body["kind"], m.body["entry"]["version"]) for m in msgs]


# ═══════════════════════════════════════════════════════════════════════════
#  Pure transitions
# ═══════════════════════════════════════════════════════════════════════════


class TestNextState:
    def test_absent_creates_entry(self, dedup):
        new, sealed = dedup.next_state(None, make_match())
        assert new.alert_count == 1
        assert new.version == 1
        assert new.status is DedupStatus.ACTIVE
        assert sealed is None

    def test_duplicate_event_id_is_a_noop(self, dedup):
        current = make_entry(event_ids=("evt-1",))
        assert dedup.next_state(current, make_match(event_id="evt-1")) == (None, None)

    def test_match_inside_window_updates(self, dedup):
        current = make_entry()
        new, sealed = dedup.next_state(current, make_match(event_id="evt-2", offset_sec=299))
        assert sealed is None
        assert new.alert_count == 2
        assert new.last_event_time == ts_offset(seconds=299)
        assert new.first_event_time == current.first_event_time
        assert new.version == 2

    def test_window_end_is_exclusive(self, dedup):
        new, sealed = dedup.next_state(make_entry(version=4), make_match(event_id="evt-2", offset_sec=300))
        assert sealed.status is DedupStatus.TIMED_OUT
        assert new.incident_seq == 2
        assert new.alert_count == 1
        assert new.version == 5

    def test_late_event_keeps_latest_time(self, dedup):
        current = make_entry(last=ts_offset(seconds=100))
        new, _ = dedup.next_state(current, make_match(event_id="evt-2", offset_sec=50))
        assert new.last_event_time == ts_offset(seconds=100)
        assert new.alert_count == 2

    def test_sealed_entry_starts_new_incident(self, dedup):
        current = make_entry(status=DedupStatus.MERGED, version=3)
        new, sealed = dedup.next_state(current, make_match(event_id="evt-2", offset_sec=10))
        assert sealed is current
        assert new.incident_seq == 2
        assert new.status is DedupStatus.ACTIVE

    def test_match_before_window_joins_when_span_fits(self, dedup):
        current = make_entry(first=ts_offset(seconds=100), event_ids=("evt-1",))
        new, sealed = dedup.next_state(current, make_match(event_id="evt-0", offset_sec=50))
        assert sealed is None
        assert new.alert_count == 2
        assert new.first_event_time == current.first_event_time
        assert new.last_event_time == current.last_event_time

    def test_match_before_window_dropped_when_span_too_long(self, dedup):
        current = make_entry(last=ts_offset(seconds=250))
        assert dedup.next_state(current, make_match(event_id="evt-0", offset_sec=-60)) == (None, None)

    def test_match_inside_sealed_window_dropped(self, dedup):
        previous = make_entry(status=DedupStatus.TIMED_OUT, version=2)
        current = make_entry(event_ids=("evt-2",), first=ts_offset(seconds=400), version=3, incident_seq=2)
        match = make_match(event_id="evt-9", offset_sec=290)
        assert dedup.next_state(current, match, previous) == (None, None)


# ═══════════════════════════════════════════════════════════════════════════
#  record_match against the store
# ═══════════════════════════════════════════════════════════════════════════


class TestRecordMatch:
    def test_first_match_creates_and_emits(self, dedup, dedup_store):
        entry = dedup.record_match(make_match())
        assert dedup_store.get(entry.rule_id, entry.dedup_key) == entry
        assert _stream_kinds(dedup_store) == [("created", 1)]

    def test_three_matches_in_window_make_one_alert(self, dedup, dedup_store):
        for i, offset in enumerate((0, 60, 120)):
            entry = dedup.record_match(make_match(event_id=f"e{i}", offset_sec=offset))
        assert entry.alert_count == 3
        assert entry.event_ids == ("e0", "e1", "e2")
        assert _stream_kinds(dedup_store) == [("created", 1), ("updated", 2), ("updated", 3)]

    def test_window_does_not_slide(self, dedup, dedup_store):
        dedup.record_match(make_match(event_id="e0", offset_sec=0))
        dedup.record_match(make_match(event_id="e1", offset_sec=250))
        entry = dedup.record_match(make_match(event_id="e2", offset_sec=350))
        assert entry.incident_seq == 2
        assert entry.alert_count == 1
        assert entry.first_event_time == ts_offset(seconds=350)
        [old] = dedup_store.history(entry.rule_id, entry.dedup_key)
        assert old.status is DedupStatus.TIMED_OUT
        assert old.alert_count == 2

    def test_redelivered_match_counted_once(self, dedup, dedup_store):
        dedup.record_match(make_match(event_id="e0"))
        entry = dedup.record_match(make_match(event_id="e0"))
        assert entry.alert_count == 1
        assert _stream_kinds(dedup_store) == [("created", 1)]

    def test_keys_are_independent(self, dedup):
        a = dedup.record_match(make_match(dedup_key="acct-a", event_id="e0"))
        b = dedup.record_match(make_match(dedup_key="acct-b", event_id="e0"))
        assert a.alert_id != b.alert_id
        assert a.alert_count == b.alert_count == 1

    def test_capacity_seals_as_merged(self, dedup_store):
        dedup = AlertDeduplicator(dedup_store, window_sec=300, max_event_ids=2)
        for i in range(3):
            entry = dedup.record_match(make_match(event_id=f"e{i}", offset_sec=i))
        assert entry.incident_seq == 2
        [old] = dedup_store.history(entry.rule_id, entry.dedup_key)
        assert old.status is DedupStatus.MERGED
        assert old.event_ids == ("e0", "e1")

    def test_redelivery_of_sealed_incident_event_not_recounted(self, dedup, dedup_store):
        dedup.record_match(make_match(event_id="e1", offset_sec=0))
        dedup.record_match(make_match(event_id="e2", offset_sec=400))
        entry = dedup.record_match(make_match(event_id="e1", offset_sec=0))
        assert entry.incident_seq == 2
        assert entry.event_ids == ("e2",)
        [old] = dedup_store.history(entry.rule_id, entry.dedup_key)
        assert old.event_ids == ("e1",)
        assert _stream_kinds(dedup_store) == [("created", 1), ("created", 2)]

    def test_out_of_order_matches_share_one_incident(self, dedup):
        dedup.record_match(make_match(event_id="e1", offset_sec=10))
        entry = dedup.record_match(make_match(event_id="e0", offset_sec=0))
        assert entry.incident_seq == 1
        assert entry.alert_count == 2
        assert entry.first_event_time == ts_offset(seconds=10)

    def test_late_match_for_sealed_window_dropped(self, dedup, dedup_store, caplog):
        dedup.record_match(make_match(event_id="e1", offset_sec=0))
        dedup.record_match(make_match(event_id="e2", offset_sec=400))
        with caplog.at_level("WARNING", logger="src.alerts.dedup"):
            entry = dedup.record_match(make_match(event_id="e3", offset_sec=100))
        assert entry.alert_count == 1
        assert entry.event_ids == ("e2",)
        [old] = dedup_store.history(entry.rule_id, entry.dedup_key)
        assert old.alert_count == 1
        assert "dropped" in caplog.text


# ═══════════════════════════════════════════════════════════════════════════
#  Concurrency
# ═══════════════════════════════════════════════════════════════════════════


class RacingStore(DedupStore):
    """Lets a competing writer in between the first read and write."""

    def __init__(self, *args, rival: AlertDeduplicator | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.rival = rival
        self.conflicts = 0

    def put(self, entry: DedupEntry, expected_version: int | None, sealed: DedupEntry | None = None) -> None:
        if self.rival is not None:
            rival, self.rival = self.rival, None
            rival.record_match(make_match(event_id="rival"))
        try:
            super().put(entry, expected_version, sealed=sealed)
        except ConcurrencyConflict:
            self.conflicts += 1
            raise


class TestConcurrency:
    def test_conflict_is_retried_and_nothing_lost(self, dedup_store):
        dedup = AlertDeduplicator(dedup_store)
        dedup.record_match(make_match(event_id="e0"))

        rival = AlertDeduplicator(dedup_store)
        racing = RacingStore(dedup_store.stream, rival=rival)
        entry = AlertDeduplicator(racing).record_match(make_match(event_id="e1", offset_sec=5))

        assert racing.conflicts == 1
        assert entry.alert_count == 3
        assert set(entry.event_ids) == {"e0", "rival", "e1"}

    def test_parallel_workers_count_every_match(self, dedup_store):
        dedup = AlertDeduplicator(dedup_store, window_sec=3600)
        errors = []

        def work(worker: int) -> None:
            try:
                for i in range(5):
                    dedup.record_match(make_match(event_id=f"w{worker}-{i}", offset_sec=i))
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=work, args=(w,)) for w in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        entry = dedup_store.get("AWS.CloudTrail.RootActivity", "123456789012")
        assert entry.alert_count == 20
        assert len(set(entry.event_ids)) == 20
        assert entry.version == 20

    def test_gives_up_after_retry_budget(self, dedup_store):
        class AlwaysConflicting(DedupStore):
            def put(self, entry, expected_version, sealed=None):
                raise ConcurrencyConflict("lost")

        store = AlwaysConflicting(dedup_store.stream)
        with pytest.raises(ExhaustedRetriesError):
            AlertDeduplicator(store, max_conflict_retries=3).record_match(make_match())

    def test_entries_and_change_stream_share_one_server(self, dedup_store):
        assert dedup_store.redis is dedup_store.stream.redis


# ═══════════════════════════════════════════════════════════════════════════
#  Close / expire
# ═══════════════════════════════════════════════════════════════════════════


class TestSealing:
    def test_close_marks_merged(self, dedup, dedup_store):
        dedup.record_match(make_match())
        assert dedup.close("AWS.CloudTrail.RootActivity", "123456789012") is True
        entry = dedup_store.get("AWS.CloudTrail.RootActivity", "123456789012")
        assert entry.status is DedupStatus.MERGED
        assert dedup.close("AWS.CloudTrail.RootActivity", "123456789012") is False

    def test_close_unknown_key(self, dedup):
        assert dedup.close("r", "nope") is False

    def test_match_after_close_opens_new_incident(self, dedup):
        first = dedup.record_match(make_match(event_id="e0"))
        dedup.close(first.rule_id, first.dedup_key)
        second = dedup.record_match(make_match(event_id="e1", offset_sec=10))
        assert second.incident_seq == 2
        assert second.alert_id != first.alert_id

    def test_sealing_emits_no_change_event(self, dedup, dedup_store):
        dedup.record_match(make_match())
        dedup.close("AWS.CloudTrail.RootActivity", "123456789012")
        assert _stream_kinds(dedup_store) == [("created", 1)]

    def test_expire_only_elapsed_windows(self, dedup, dedup_store):
        dedup.record_match(make_match(dedup_key="old", offset_sec=0))
        dedup.record_match(make_match(dedup_key="new", offset_sec=200))
        assert dedup.expire(ts_offset(seconds=300)) == 1
        assert [e.dedup_key for e in dedup_store.active()] == ["new"]
        [old] = dedup_store.history("AWS.CloudTrail.RootActivity", "old")
        assert old.status is DedupStatus.TIMED_OUT
