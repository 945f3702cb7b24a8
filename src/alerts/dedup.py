"""Alert Deduplicator — collapses rule matches into one evolving incident per key.

State machine per (rule_id, dedup_key)::

    ABSENT --first match--> ACTIVE --match inside window--> ACTIVE
    ACTIVE --window elapsed / close / capacity--> TIMED_OUT | MERGED (sealed)
    sealed --next match--> new ACTIVE entry (incident_seq + 1)

The window is fixed: ``[first_event_time, first_event_time + window)``.
Later matches never extend it.  An event id counted once, by the live
incident or a sealed one, is never counted again.  State lives only in
the dedup store, so any worker instance can continue any incident; every
transition is a read-modify-write guarded by the store's version
check and repeated on conflict.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta

from src.alerts.dedup_store import DedupStore
from src.contracts.dedup import DedupEntry, RuleMatch
from src.contracts.enums import DedupStatus
from src.shared.errors import ConcurrencyConflict, ExhaustedRetriesError
from src.shared.timeutil import format_ts, parse_ts

log = logging.getLogger(__name__)

_DEFAULT_WINDOW_SEC = 300.0
_DEFAULT_MAX_EVENT_IDS = 1000
_MAX_CONFLICT_RETRIES = 50


def _fresh(match: RuleMatch, version: int, incident_seq: int) -> DedupEntry:
    ts = format_ts(parse_ts(match.match_time))
    return DedupEntry(
        rule_id=match.rule_id,
        dedup_key=match.dedup_key,
        alert_count=1,
        first_event_time=ts,
        last_event_time=ts,
        event_ids=(match.event_id,),
        status=DedupStatus.ACTIVE,
        version=version,
        incident_seq=incident_seq,
    )


class AlertDeduplicator:
    def __init__(
        self,
        store: DedupStore,
        window_sec: float = _DEFAULT_WINDOW_SEC,
        max_event_ids: int = _DEFAULT_MAX_EVENT_IDS,
        max_conflict_retries: int = _MAX_CONFLICT_RETRIES,
    ) -> None:
        self.store = store
        self.window = timedelta(seconds=window_sec)
        self.max_event_ids = max_event_ids
        self.max_conflict_retries = max_conflict_retries

    def window_end(self, entry: DedupEntry) -> datetime:
        return parse_ts(entry.first_event_time) + self.window

    # ── transitions ──────────────────────────────────────────────────────

    def next_state(
        self,
        current: DedupEntry | None,
        match: RuleMatch,
        previous: DedupEntry | None = None,
    ) -> tuple[DedupEntry | None, DedupEntry | None]:
        """Pure transition: returns ``(new_entry, sealed_entry)``.

        ``new_entry`` is None when the match is not applied: a redelivery of
        an event id already counted in the current entry, or a late match
        that falls before the current window and cannot join it.

        *previous* is the last sealed incident of the key; a late match
        inside its window is dropped because sealed incidents never change.
        A late match joins the current ACTIVE incident only while the whole
        span of the incident stays shorter than one window.
        """
        if current is None:
            return _fresh(match, version=1, incident_seq=1), None

        if match.event_id in current.event_ids:
            return None, None

        match_dt = parse_ts(match.match_time)
        first = parse_ts(current.first_event_time)
        has_room = len(current.event_ids) < self.max_event_ids

        if match_dt < first:
            if previous is not None and parse_ts(previous.first_event_time) <= match_dt < self.window_end(previous):
                return None, None
            fits = parse_ts(current.last_event_time) < match_dt + self.window
            if current.status is DedupStatus.ACTIVE and has_room and fits:
                return self._merge(current, match_dt, match.event_id), None
            return None, None

        if current.status is DedupStatus.ACTIVE:
            if match_dt < self.window_end(current) and has_room:
                return self._merge(current, match_dt, match.event_id), None
            status = DedupStatus.TIMED_OUT if match_dt >= self.window_end(current) else DedupStatus.MERGED
            sealed = replace(current, status=status)
        else:
            sealed = current

        return _fresh(match, version=current.version + 1, incident_seq=current.incident_seq + 1), sealed

    @staticmethod
    def _merge(current: DedupEntry, match_dt: datetime, event_id: str) -> DedupEntry:
        # first_event_time is part of alert_id and never moves.
        last = max(parse_ts(current.last_event_time), match_dt)
        return replace(
            current,
            alert_count=current.alert_count + 1,
            last_event_time=format_ts(last),
            event_ids=current.event_ids + (event_id,),
            version=current.version + 1,
        )

    def _previous(self, current: DedupEntry | None, match: RuleMatch) -> DedupEntry | None:
        if current is None or current.incident_seq < 2:
            return None
        if parse_ts(match.match_time) >= parse_ts(current.first_event_time):
            return None
        return self.store.sealed_incident(match.rule_id, match.dedup_key, current.incident_seq - 1)

    def record_match(self, match: RuleMatch) -> DedupEntry:
        """Apply one rule match; returns the entry that now holds it.

        Redeliveries of an event already counted, by the live incident or a
        sealed one, are no-ops.  A late match that fits no open window is
        dropped with a warning and the unchanged entry is returned.
        """
        for attempt in range(1, self.max_conflict_retries + 1):
            current = self.store.get(match.rule_id, match.dedup_key)
            if current is not None and match.event_id in current.event_ids:
                log.debug("Match %s already counted for %s/%s", match.event_id, match.rule_id, match.dedup_key)
                return current
            if self.store.counted_by_sealed(match.rule_id, match.dedup_key, match.event_id):
                log.debug(
                    "Match %s already counted by a sealed incident of %s/%s",
                    match.event_id,
                    match.rule_id,
                    match.dedup_key,
                )
                return current
            new_entry, sealed = self.next_state(current, match, self._previous(current, match))
            if new_entry is None:
                log.warning(
                    "Late match %s at %s for %s/%s falls outside every open window; dropped",
                    match.event_id,
                    match.match_time,
                    match.rule_id,
                    match.dedup_key,
                )
                return current
            try:
                self.store.put(new_entry, current.version if current else None, sealed=sealed)
            except ConcurrencyConflict as exc:
                log.debug("Conflict on %s/%s (attempt %d): %s", match.rule_id, match.dedup_key, attempt, exc)
                continue
            if sealed is not None:
                log.info(
                    "Sealed %s/%s incident %d as %s (%d events)",
                    sealed.rule_id,
                    sealed.dedup_key,
                    sealed.incident_seq,
                    sealed.status.value,
                    sealed.alert_count,
                )
            return new_entry
        raise ExhaustedRetriesError(
            f"dedup update for {match.rule_id}/{match.dedup_key} lost {self.max_conflict_retries} races"
        )

    def _seal(self, rule_id: str, dedup_key: str, status: DedupStatus, only_if_before: datetime | None) -> bool:
        for _ in range(self.max_conflict_retries):
            current = self.store.get(rule_id, dedup_key)
            if current is None or current.status.terminal:
                return False
            if only_if_before is not None and self.window_end(current) > only_if_before:
                return False
            try:
                self.store.put(current.sealed(status), current.version)
            except ConcurrencyConflict:
                continue
            log.info("Sealed %s/%s incident %d as %s", rule_id, dedup_key, current.incident_seq, status.value)
            return True
        raise ExhaustedRetriesError(f"sealing {rule_id}/{dedup_key} lost {self.max_conflict_retries} races")

    def close(self, rule_id: str, dedup_key: str) -> bool:
        """Explicitly close the live incident of a key.  False if none is active."""
        return self._seal(rule_id, dedup_key, DedupStatus.MERGED, only_if_before=None)

    def expire(self, now: str) -> int:
        """Seal every ACTIVE entry whose window ended at or before *now*."""
        now_dt = parse_ts(now)
        sealed = 0
        for entry in self.store.active():
            if self.window_end(entry) <= now_dt and self._seal(
                entry.rule_id, entry.dedup_key, DedupStatus.TIMED_OUT, only_if_before=now_dt
            ):
                sealed += 1
        if sealed:
            log.info("Expired %d dedup windows", sealed)
        return sealed
