"""Dedup store: one Redis key per (rule_id, dedup_key) holding the current incident.

Writes are conditional on the version read by the caller (``WATCH`` on the
entry key, compare, then ``MULTI``), so concurrent rule-evaluation workers
can never both turn alert_count=3 into 4.  A creation or update of an ACTIVE
entry appends its change event to the dedup stream inside the same
``MULTI``; sealed incidents are copied to the key's history hash and never
change again.

Keys under ``<prefix>:dedup``::

    entry:<rule>:<key>     JSON of the current entry
    history:<rule>:<key>   hash, incident_seq -> JSON of the sealed entry
    sealed-ids:<rule>:<key> set of event ids counted by sealed incidents
    active                 set of JSON ``[rule, key]`` pairs with an ACTIVE entry
"""

from __future__ import annotations

import json
import logging

import redis

from src.contracts.dedup import DedupChange, DedupEntry
from src.messaging.stream_queue import StreamQueue
from src.shared.errors import ConcurrencyConflict
from src.shared.redis_client import redis_errors

log = logging.getLogger(__name__)

SEALED_IDS_TTL_SEC = 7 * 86400


def _dump(entry: DedupEntry) -> str:
    return json.dumps(entry.to_dict(), separators=(",", ":"))


def _load(raw: str) -> DedupEntry:
    return DedupEntry.from_dict(json.loads(raw))


class DedupStore:
    def __init__(self, stream: StreamQueue, key_prefix: str | None = None) -> None:
        # Entries and their change stream share one server, so one MULTI covers both.
        self.stream = stream
        self.redis: redis.Redis = stream.redis
        self.prefix = f"{key_prefix or stream.key_prefix}:dedup"
        self.active_key = f"{self.prefix}:active"

    def _key(self, kind: str, rule_id: str, dedup_key: str) -> str:
        return f"{self.prefix}:{kind}:{rule_id}:{dedup_key}"

    def get(self, rule_id: str, dedup_key: str) -> DedupEntry | None:
        with redis_errors("dedup get"):
            raw = self.redis.get(self._key("entry", rule_id, dedup_key))
        return _load(raw) if raw else None

    def put(
        self,
        entry: DedupEntry,
        expected_version: int | None,
        sealed: DedupEntry | None = None,
    ) -> None:
        """Write *entry* if the stored version still equals *expected_version*.

        ``expected_version=None`` means "the key must not exist yet".  When
        *sealed* is given, that finished incident is archived in the same
        transaction.  Raises ConcurrencyConflict when another writer won.
        """
        key = self._key("entry", entry.rule_id, entry.dedup_key)
        member = json.dumps([entry.rule_id, entry.dedup_key])
        with redis_errors("dedup put"), self.redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                stored = _load(raw).version if raw else None
                if stored != expected_version:
                    raise ConcurrencyConflict(
                        f"dedup entry {entry.rule_id}/{entry.dedup_key} is at version {stored}, "
                        f"expected {expected_version}"
                    )
                pipe.multi()
                pipe.set(key, _dump(entry))
                if sealed is not None:
                    self._archive(pipe, sealed)
                if entry.status.terminal:
                    self._archive(pipe, entry)
                    pipe.srem(self.active_key, member)
                else:
                    pipe.sadd(self.active_key, member)
                    kind = "updated" if sealed is None and expected_version is not None else "created"
                    self.stream.send_in(pipe, DedupChange(kind=kind, entry=entry).to_dict())
                pipe.execute()
            except redis.WatchError as exc:
                raise ConcurrencyConflict(
                    f"dedup entry {entry.rule_id}/{entry.dedup_key} changed concurrently"
                ) from exc

    def _archive(self, pipe: redis.client.Pipeline, entry: DedupEntry) -> None:
        pipe.hsetnx(self._key("history", entry.rule_id, entry.dedup_key), str(entry.incident_seq), _dump(entry))
        ids_key = self._key("sealed-ids", entry.rule_id, entry.dedup_key)
        if entry.event_ids:
            pipe.sadd(ids_key, *entry.event_ids)
            pipe.expire(ids_key, SEALED_IDS_TTL_SEC)

    def history(self, rule_id: str, dedup_key: str) -> list[DedupEntry]:
        """Sealed incidents of a key, oldest first."""
        with redis_errors("dedup history"):
            rows = self.redis.hgetall(self._key("history", rule_id, dedup_key))
        return [_load(rows[seq]) for seq in sorted(rows, key=int)]

    def sealed_incident(self, rule_id: str, dedup_key: str, incident_seq: int) -> DedupEntry | None:
        with redis_errors("dedup history"):
            raw = self.redis.hget(self._key("history", rule_id, dedup_key), str(incident_seq))
        return _load(raw) if raw else None

    def counted_by_sealed(self, rule_id: str, dedup_key: str, event_id: str) -> bool:
        """True when a sealed incident of the key already counted *event_id*."""
        with redis_errors("dedup history"):
            return bool(self.redis.sismember(self._key("sealed-ids", rule_id, dedup_key), event_id))

    def active(self) -> list[DedupEntry]:
        """ACTIVE entries, oldest window first."""
        with redis_errors("dedup active"):
            members = [json.loads(m) for m in self.redis.smembers(self.active_key)]
            if not members:
                return []
            raws = self.redis.mget([self._key("entry", rule, key) for rule, key in members])
        entries = [_load(raw) for raw in raws if raw]
        return sorted((e for e in entries if not e.status.terminal), key=lambda e: e.first_event_time)
