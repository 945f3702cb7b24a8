"""Durable at-least-once queue on a Redis stream with one consumer group.

Keys, all under ``<prefix>:queue:<name>``::

    <name>              stream of live messages (group ``workers``)
    <name>-dlq          dead-letter stream
    <name>:deadlines    sorted set, pending message id -> visible-again time
    <name>:deliveries   hash, pending message id -> "<receive_count>:<token>"
    <name>:sent:<id>    producer dedup marker, expires after the retention period

Semantics follow an SQS standard queue with a redrive policy:

* ``receive`` re-claims pending messages whose deadline passed (``XCLAIM``)
  and then reads new ones (``XREADGROUP``).  Every delivery gets a fresh
  receipt and a deadline of ``now + visibility_timeout``; an unacknowledged
  message is handed out again once the deadline lapses.
* A message whose receive count already reached ``max_attempts`` when its
  deadline lapses is moved to ``<name>-dlq`` instead.
* ``send`` may carry a ``dedup_id``; a second send with the same id within
  the retention period is a no-op.

Deadlines come from the injected clock, not from server idle time, which
lets ``release`` postpone redelivery by a backoff delay.  Receipt checks and
state moves run as ``WATCH``/``MULTI`` transactions.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from typing import Any

import redis

from src.messaging.message import Message
from src.shared.redis_client import redis_errors
from src.shared.retry import BackoffPolicy

log = logging.getLogger(__name__)

DLQ_SUFFIX = "-dlq"
GROUP = "workers"
DEFAULT_KEY_PREFIX = "logpipe"
DEFAULT_DEDUP_RETENTION_SEC = 14 * 86400
_ORPHAN_SCAN = 100


def dlq_name(queue: str) -> str:
    return queue + DLQ_SUFFIX


def stream_order(message_id: str) -> tuple[int, int]:
    """Sort key for stream ids (``"1700000000000-2"`` -> ``(1700000000000, 2)``)."""
    ms, _, seq = message_id.partition("-")
    return int(ms), int(seq or 0)


def _consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def _receive_count(delivery: str | None) -> int:
    return int(delivery.partition(":")[0]) if delivery else 0


class StreamQueue:
    """One named queue (and its dead-letter stream) on a Redis server."""

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        max_attempts: int = 10,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        dedup_retention_sec: float = DEFAULT_DEDUP_RETENTION_SEC,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.redis = client
        self.name = name
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy()
        self.clock = clock
        self.key_prefix = key_prefix
        self.dedup_retention_sec = max(int(dedup_retention_sec), 1)
        self.consumer = _consumer_name()

        self.stream = f"{key_prefix}:queue:{name}"
        self.dlq_stream = f"{key_prefix}:queue:{dlq_name(name)}"
        self.deadlines = f"{self.stream}:deadlines"
        self.deliveries = f"{self.stream}:deliveries"
        self._ensure_group()

    @property
    def dead_letter_queue(self) -> str:
        return dlq_name(self.name)

    def _ensure_group(self) -> None:
        with redis_errors(f"queue {self.name}"):
            try:
                self.redis.xgroup_create(self.stream, GROUP, id="0", mkstream=True)
            except redis.exceptions.ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise

    # ── producer side ────────────────────────────────────────────────────

    def _fields(self, body: dict[str, Any]) -> dict[str, str]:
        return {"data": json.dumps(body, separators=(",", ":")), "sent_at": f"{self.clock():.6f}"}

    def send(self, body: dict[str, Any], dedup_id: str | None = None) -> str | None:
        """Enqueue *body*.  Returns the message id, or None for a de-duplicated send."""
        fields = self._fields(body)
        with redis_errors(f"send to {self.name}"):
            if dedup_id is None:
                return self.redis.xadd(self.stream, fields)
            return self._send_once(fields, dedup_id)

    def _send_once(self, fields: dict[str, str], dedup_id: str) -> str | None:
        marker = f"{self.stream}:sent:{dedup_id}"
        with self.redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(marker)
                    if pipe.exists(marker):
                        log.debug("[%s] duplicate send suppressed: %s", self.name, dedup_id)
                        return None
                    pipe.multi()
                    pipe.set(marker, fields["sent_at"], ex=self.dedup_retention_sec)
                    pipe.xadd(self.stream, fields)
                    _, message_id = pipe.execute()
                    return message_id
                except redis.WatchError:
                    continue

    def send_in(self, pipe: redis.client.Pipeline, body: dict[str, Any]) -> None:
        """Add the send to *pipe* (already in MULTI) so it commits with the caller's writes."""
        pipe.xadd(self.stream, self._fields(body))

    # ── consumer side ────────────────────────────────────────────────────

    def receive(self, max_messages: int = 10, visibility_timeout_sec: float = 30.0) -> list[Message]:
        """Claim up to *max_messages* visible messages for *visibility_timeout_sec*.

        Messages that already used their last attempt are redriven to the
        dead-letter stream here rather than delivered again.
        """
        now = self.clock()
        with redis_errors(f"receive from {self.name}"):
            self._adopt_orphans(now, visibility_timeout_sec)
            out = self._reclaim_due(now, max_messages, visibility_timeout_sec)
            if len(out) < max_messages:
                out += self._read_new(now, max_messages - len(out), visibility_timeout_sec)
        if out:
            log.debug("[%s] received %d messages", self.name, len(out))
        return out

    def _adopt_orphans(self, now: float, visibility_timeout_sec: float) -> None:
        """Give a deadline to pending entries whose reader died before setting one."""
        pending = self.redis.xpending_range(self.stream, GROUP, min="-", max="+", count=_ORPHAN_SCAN)
        if not pending:
            return
        with self.redis.pipeline(transaction=False) as pipe:
            for p in pending:
                pipe.zscore(self.deadlines, p["message_id"])
            scores = pipe.execute()
        idle_ms = visibility_timeout_sec * 1000
        orphans = [
            p["message_id"]
            for p, score in zip(pending, scores)
            if score is None and p["time_since_delivered"] >= idle_ms
        ]
        if not orphans:
            return
        with self.redis.pipeline() as pipe:
            pipe.zadd(self.deadlines, {m: now for m in orphans}, nx=True)
            for m in orphans:
                pipe.hsetnx(self.deliveries, m, "1:")
            pipe.execute()
        log.warning("[%s] adopted %d pending messages without a deadline", self.name, len(orphans))

    def _reclaim_due(self, now: float, limit: int, visibility_timeout_sec: float) -> list[Message]:
        with self.redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.deadlines, self.deliveries)
                    due = pipe.zrangebyscore(self.deadlines, "-inf", now, start=0, num=limit)
                    if not due:
                        return []
                    counts = dict(zip(due, (_receive_count(d) for d in pipe.hmget(self.deliveries, due))))
                    exhausted = {m: self._entry(pipe, m) for m in due if counts[m] >= self.max_attempts}
                    claim = [m for m in due if counts[m] and m not in exhausted]
                    receipts = {m: f"{counts[m] + 1}:{uuid.uuid4().hex}" for m in claim}

                    pipe.multi()
                    for m in due:
                        if not counts[m]:
                            pipe.zrem(self.deadlines, m)  # settled meanwhile
                    for m, fields in exhausted.items():
                        self._queue_dead_letter(
                            pipe, m, fields, "visibility timeout lapsed on final attempt", counts[m], now
                        )
                    if claim:
                        pipe.zadd(self.deadlines, {m: now + visibility_timeout_sec for m in claim})
                        pipe.hset(self.deliveries, mapping=receipts)
                        pipe.xclaim(self.stream, GROUP, self.consumer, 0, claim)
                    results = pipe.execute()
                    break
                except redis.WatchError:
                    continue

        for m in exhausted:
            log.error("[%s] message %s dead-lettered: visibility timeout lapsed on final attempt", self.name, m)
        claimed = results[-1] if claim else []
        return [self._message(m, fields, receipts[m]) for m, fields in claimed if fields]

    def _read_new(self, now: float, limit: int, visibility_timeout_sec: float) -> list[Message]:
        resp = self.redis.xreadgroup(GROUP, self.consumer, {self.stream: ">"}, count=limit)
        entries = [entry for _stream, batch in resp or [] for entry in batch]
        if not entries:
            return []
        receipts = {m: f"1:{uuid.uuid4().hex}" for m, _ in entries}
        with self.redis.pipeline() as pipe:
            pipe.zadd(self.deadlines, {m: now + visibility_timeout_sec for m in receipts})
            pipe.hset(self.deliveries, mapping=receipts)
            pipe.execute()
        return [self._message(m, fields, receipts[m]) for m, fields in entries]

    def _message(self, message_id: str, fields: dict[str, str], receipt: str) -> Message:
        return Message(
            id=message_id,
            queue=self.name,
            body=json.loads(fields["data"]),
            receive_count=_receive_count(receipt),
            receipt=receipt,
            sent_at=float(fields.get("sent_at", 0)),
        )

    def _entry(self, pipe: redis.client.Pipeline, message_id: str) -> dict[str, str] | None:
        rows = pipe.xrange(self.stream, min=message_id, max=message_id, count=1)
        return rows[0][1] if rows else None

    def _queue_dead_letter(
        self,
        pipe: redis.client.Pipeline,
        message_id: str,
        fields: dict[str, str] | None,
        reason: str,
        receive_count: int,
        now: float,
    ) -> None:
        if fields is not None:
            pipe.xadd(
                self.dlq_stream,
                {
                    "data": fields["data"],
                    "sent_at": fields.get("sent_at", "0"),
                    "origin": self.name,
                    "reason": reason[:1000],
                    "dead_at": f"{now:.6f}",
                    "receive_count": str(receive_count),
                },
            )
        self._queue_forget(pipe, message_id)

    def _queue_forget(self, pipe: redis.client.Pipeline, message_id: str) -> None:
        pipe.xack(self.stream, GROUP, message_id)
        pipe.xdel(self.stream, message_id)
        pipe.zrem(self.deadlines, message_id)
        pipe.hdel(self.deliveries, message_id)

    def _settle(
        self,
        message: Message,
        action: str,
        apply: Callable[[redis.client.Pipeline, dict[str, str] | None], None],
    ) -> bool:
        """Run *apply* in MULTI if *message*'s receipt is still the current one."""
        with redis_errors(f"{action} on {self.name}"), self.redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.deadlines, self.deliveries)
                    if pipe.hget(self.deliveries, message.id) != message.receipt:
                        log.warning(
                            "[%s] %s of message %s ignored: receipt no longer valid", self.name, action, message.id
                        )
                        return False
                    fields = self._entry(pipe, message.id)
                    pipe.multi()
                    apply(pipe, fields)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue

    def ack(self, message: Message) -> bool:
        """Delete a delivered message.  False if the receipt is stale (redelivered since)."""
        return self._settle(message, "ack", lambda pipe, _fields: self._queue_forget(pipe, message.id))

    def release(self, message: Message, delay_sec: float = 0.0) -> bool:
        """Make a delivered message visible again after *delay_sec* (failed item)."""
        visible_at = self.clock() + delay_sec
        return self._settle(
            message, "release", lambda pipe, _fields: pipe.zadd(self.deadlines, {message.id: visible_at})
        )

    def dead_letter(self, message: Message, reason: str) -> bool:
        """Move a delivered message to ``<name>-dlq`` with *reason*."""
        now = self.clock()
        moved = self._settle(
            message,
            "dead-letter",
            lambda pipe, fields: self._queue_dead_letter(
                pipe, message.id, fields, reason, message.receive_count, now
            ),
        )
        if moved:
            log.error("[%s] message %s dead-lettered: %s", self.name, message.id, reason)
        return moved

    # ── operator side ────────────────────────────────────────────────────

    def _dead_message(self, message_id: str, fields: dict[str, str]) -> Message:
        return Message(
            id=message_id,
            queue=self.dead_letter_queue,
            body=json.loads(fields["data"]),
            receive_count=int(fields.get("receive_count", 0)),
            receipt="",
            sent_at=float(fields.get("sent_at", 0)),
            dead_reason=fields.get("reason", ""),
            dead_at=float(fields.get("dead_at", 0)),
        )

    def dead_letters(self, limit: int | None = None) -> list[Message]:
        """Inspect the dead-letter stream without claiming anything."""
        with redis_errors(f"read {self.dead_letter_queue}"):
            rows = self.redis.xrange(self.dlq_stream, count=limit)
        return [self._dead_message(m, fields) for m, fields in rows]

    def requeue_dead_letters(self, limit: int | None = None) -> int:
        """Replay dead-lettered messages onto this queue with a fresh attempt budget."""
        with redis_errors(f"requeue {self.dead_letter_queue}"):
            rows = self.redis.xrange(self.dlq_stream, count=limit)
            for message_id, fields in rows:
                with self.redis.pipeline() as pipe:
                    pipe.xadd(self.stream, {"data": fields["data"], "sent_at": fields.get("sent_at", "0")})
                    pipe.xdel(self.dlq_stream, message_id)
                    pipe.execute()
        log.info("[%s] requeued %d dead-lettered messages", self.name, len(rows))
        return len(rows)

    def purge_dead_letters(self, older_than_sec: float) -> int:
        """Drop dead letters past retention (14 days by default in the CLI)."""
        cutoff = self.clock() - older_than_sec
        with redis_errors(f"purge {self.dead_letter_queue}"):
            rows = self.redis.xrange(self.dlq_stream)
            old = [m for m, fields in rows if float(fields.get("dead_at", 0)) < cutoff]
            if old:
                self.redis.xdel(self.dlq_stream, *old)
        if old:
            log.warning("[%s] purged %d dead letters older than %.0fs", self.name, len(old), older_than_sec)
        return len(old)

    def stats(self) -> dict[str, int]:
        now = self.clock()
        with redis_errors(f"stats of {self.name}"), self.redis.pipeline() as pipe:
            pipe.xlen(self.stream)
            pipe.zcount(self.deadlines, f"({now}", "+inf")
            pipe.xlen(self.dlq_stream)
            total, hidden, dead = pipe.execute()
        return {"visible": max(total - hidden, 0), "not_visible": hidden, "dead_lettered": dead}

    def snapshot(self) -> list[dict[str, Any]]:
        """One row per live or dead-lettered message (operator report input)."""
        with redis_errors(f"snapshot of {self.name}"), self.redis.pipeline() as pipe:
            pipe.xrange(self.stream)
            pipe.zrange(self.deadlines, 0, -1, withscores=True)
            pipe.xrange(self.dlq_stream)
            live, deadlines, dead = pipe.execute()
        visible_at = dict(deadlines)
        rows = [
            {
                "id": m,
                "queue": self.name,
                "origin_queue": None,
                "visible_at": visible_at.get(m, 0.0),
                "sent_at": float(fields.get("sent_at", 0)),
                "dead_reason": None,
                "dead_at": None,
            }
            for m, fields in live
        ]
        rows += [
            {
                "id": m,
                "queue": self.dead_letter_queue,
                "origin_queue": self.name,
                "visible_at": None,
                "sent_at": float(fields.get("sent_at", 0)),
                "dead_reason": fields.get("reason", ""),
                "dead_at": float(fields.get("dead_at", 0)),
            }
            for m, fields in dead
        ]
        return rows
