"""Tests for src.messaging.stream_queue — Redis-stream at-least-once queue."""

from __future__ import annotations

import pytest
import redis

from src.messaging.stream_queue import GROUP, StreamQueue, dlq_name, stream_order
from src.shared.errors import TransientIOError

# ═══════════════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def queue(make_queue) -> StreamQueue:
    return make_queue("input-notifications", max_attempts=3)


# ═══════════════════════════════════════════════════════════════════════════
#  Send / receive / ack
# ═══════════════════════════════════════════════════════════════════════════


class TestDelivery:
    def test_send_receive_ack(self, queue, redis_client):
        msg_id = queue.send({"object_location": "s3://raw-logs/a.json"})
        [msg] = queue.receive(10, 30)
        assert msg.id == msg_id
        assert msg.body == {"object_location": "s3://raw-logs/a.json"}
        assert msg.receive_count == 1
        assert queue.ack(msg) is True
        assert queue.stats() == {"visible": 0, "not_visible": 0, "dead_lettered": 0}
        assert redis_client.xlen(queue.stream) == 0
        assert redis_client.xpending(queue.stream, GROUP)["pending"] == 0

    def test_receive_respects_batch_size_in_fifo_order(self, queue):
        for i in range(15):
            queue.send({"n": i})
        batch = queue.receive(10, 30)
        assert [m.body["n"] for m in batch] == list(range(10))
        assert [m.body["n"] for m in queue.receive(10, 30)] == list(range(10, 15))

    def test_received_message_hidden_until_visibility_lapses(self, queue, clock):
        queue.send({"n": 1})
        [first] = queue.receive(10, 30)
        assert queue.receive(10, 30) == []
        assert queue.stats() == {"visible": 0, "not_visible": 1, "dead_lettered": 0}
        clock.advance(31)
        [again] = queue.receive(10, 30)
        assert again.id == first.id
        assert again.receive_count == 2
        assert again.receipt != first.receipt

    def test_stale_receipt_cannot_ack(self, queue, clock):
        queue.send({"n": 1})
        [first] = queue.receive(10, 30)
        clock.advance(31)
        [second] = queue.receive(10, 30)
        assert queue.ack(first) is False
        assert queue.ack(second) is True

    def test_release_with_delay(self, queue, clock):
        queue.send({"n": 1})
        [msg] = queue.receive(10, 30)
        assert queue.release(msg, delay_sec=5)
        assert queue.receive(10, 30) == []
        clock.advance(5)
        [again] = queue.receive(10, 30)
        assert again.receive_count == 2

    def test_redelivered_before_new_messages(self, queue, clock):
        queue.send({"n": 1})
        [msg] = queue.receive(10, 30)
        queue.release(msg)
        queue.send({"n": 2})
        assert [m.body["n"] for m in queue.receive(10, 30)] == [1, 2]

    def test_queues_are_isolated(self, make_queue, queue):
        other = make_queue("catalog-updates")
        other.send({"x": 1})
        assert queue.receive(10, 30) == []
        assert len(other.receive(10, 30)) == 1

    def test_second_consumer_shares_the_group(self, make_queue, queue, clock):
        other_worker = make_queue("input-notifications", max_attempts=3)
        queue.send({"n": 1})
        [msg] = queue.receive(10, 30)
        assert other_worker.receive(10, 30) == []
        clock.advance(31)
        [again] = other_worker.receive(10, 30)
        assert again.id == msg.id
        assert queue.ack(msg) is False
        assert other_worker.ack(again) is True

    def test_stream_order_sorts_numerically(self):
        ids = ["1700000000000-10", "1700000000000-2", "999-0"]
        assert sorted(ids, key=stream_order) == ["999-0", "1700000000000-2", "1700000000000-10"]


# ═══════════════════════════════════════════════════════════════════════════
#  De-duplicated sends
# ═══════════════════════════════════════════════════════════════════════════


class TestDedupId:
    def test_second_send_with_same_id_is_dropped(self, queue):
        assert queue.send({"n": 1}, dedup_id="k") is not None
        assert queue.send({"n": 1}, dedup_id="k") is None
        assert queue.stats()["visible"] == 1

    def test_suppression_survives_ack(self, queue):
        queue.send({"n": 1}, dedup_id="k")
        [msg] = queue.receive(10, 30)
        queue.ack(msg)
        assert queue.send({"n": 1}, dedup_id="k") is None

    def test_dedup_ids_are_per_queue(self, make_queue, queue):
        other = make_queue("catalog-updates")
        assert queue.send({"n": 1}, dedup_id="k") is not None
        assert other.send({"n": 1}, dedup_id="k") is not None

    def test_dedup_marker_expires_after_retention(self, make_queue, redis_client):
        queue = make_queue("catalog-updates", dedup_retention_sec=3600)
        queue.send({"n": 1}, dedup_id="k")
        ttl = redis_client.ttl(f"{queue.stream}:sent:k")
        assert 0 < ttl <= 3600

    def test_send_after_marker_expired_goes_through(self, queue, redis_client):
        queue.send({"n": 1}, dedup_id="k")
        redis_client.delete(f"{queue.stream}:sent:k")
        assert queue.send({"n": 1}, dedup_id="k") is not None


# ═══════════════════════════════════════════════════════════════════════════
#  Dead-letter queue
# ═══════════════════════════════════════════════════════════════════════════


class TestDeadLetter:
    def test_dlq_name(self):
        assert dlq_name("alert-dedup-stream") == "alert-dedup-stream-dlq"

    def test_dead_letter_with_reason(self, queue, redis_client):
        queue.send({"n": 1})
        [msg] = queue.receive(10, 30)
        assert queue.dead_letter(msg, "ConfigurationError: unknown source")
        [dead] = queue.dead_letters()
        assert dead.queue == "input-notifications-dlq"
        assert dead.dead_reason == "ConfigurationError: unknown source"
        assert dead.body == {"n": 1}
        assert queue.stats() == {"visible": 0, "not_visible": 0, "dead_lettered": 1}
        assert redis_client.xlen("logpipe:queue:input-notifications-dlq") == 1

    def test_redrive_after_final_attempt_lapses(self, queue, clock):
        queue.send({"n": 1})
        for _ in range(3):
            assert len(queue.receive(10, 30)) == 1
            clock.advance(31)
        assert queue.receive(10, 30) == []
        [dead] = queue.dead_letters()
        assert dead.receive_count == 3
        assert "final attempt" in dead.dead_reason

    def test_dead_letter_with_stale_receipt_is_ignored(self, queue, clock):
        queue.send({"n": 1})
        [first] = queue.receive(10, 30)
        clock.advance(31)
        queue.receive(10, 30)
        assert queue.dead_letter(first, "late") is False
        assert queue.dead_letters() == []

    def test_requeue_resets_attempt_budget(self, queue):
        queue.send({"n": 1})
        [msg] = queue.receive(10, 30)
        queue.dead_letter(msg, "boom")
        assert queue.requeue_dead_letters() == 1
        [again] = queue.receive(10, 30)
        assert again.receive_count == 1
        assert again.body == {"n": 1}
        assert queue.dead_letters() == []

    def test_requeue_limit(self, queue):
        for i in range(3):
            queue.send({"n": i})
        for msg in queue.receive(10, 30):
            queue.dead_letter(msg, "boom")
        assert queue.requeue_dead_letters(limit=2) == 2
        assert len(queue.dead_letters()) == 1

    def test_purge_respects_retention(self, queue, clock):
        queue.send({"n": 1})
        queue.send({"n": 2})
        first, second = queue.receive(10, 30)
        queue.dead_letter(first, "old")
        clock.advance(14 * 86400)
        queue.dead_letter(second, "new")
        clock.advance(1)
        assert queue.purge_dead_letters(older_than_sec=14 * 86400) == 1
        assert [m.dead_reason for m in queue.dead_letters()] == ["new"]

    def test_max_attempts_must_be_positive(self, redis_client):
        with pytest.raises(ValueError):
            StreamQueue(redis_client, "q", max_attempts=0)


# ═══════════════════════════════════════════════════════════════════════════
#  Snapshot / connection errors
# ═══════════════════════════════════════════════════════════════════════════


class TestOperatorViews:
    def test_snapshot_lists_live_and_dead_messages(self, queue, clock):
        queue.send({"n": 1})
        queue.send({"n": 2})
        first, _second = queue.receive(10, 30)
        queue.dead_letter(first, "boom")
        rows = queue.snapshot()
        live = [r for r in rows if r["queue"] == "input-notifications"]
        dead = [r for r in rows if r["queue"] == "input-notifications-dlq"]
        assert len(live) == 1 and live[0]["visible_at"] == pytest.approx(clock.now + 30)
        assert len(dead) == 1 and dead[0]["origin_queue"] == "input-notifications"
        assert dead[0]["dead_reason"] == "boom"

    def test_connection_loss_is_transient(self, queue, monkeypatch):
        def down(*args, **kwargs):
            raise redis.exceptions.ConnectionError("connection refused")

        monkeypatch.setattr(queue.redis, "xreadgroup", down)
        with pytest.raises(TransientIOError):
            queue.receive(10, 30)
