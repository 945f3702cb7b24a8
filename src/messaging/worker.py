"""Pull-based batch worker.

    receive batch -> run handler per item (thread pool) -> per-item outcome
        succeeded / skipped  -> ack
        failed, retryable    -> release with backoff (redelivered later)
        failed, terminal     -> dead-letter(item, reason)
        timed out            -> left unacknowledged; visibility timeout redelivers

Items of a batch never affect each other: one failure only returns that
item to the queue, the rest of the batch commits.  A settle call that
itself fails (queue unreachable) leaves the item unacknowledged, so the
visibility timeout redelivers it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from src.contracts.enums import ItemOutcome
from src.messaging.message import Message
from src.messaging.stream_queue import StreamQueue, stream_order
from src.shared.errors import ExhaustedRetriesError, PipelineError
from src.shared.retry import BackoffPolicy

log = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], ItemOutcome | None]


@dataclass(slots=True)
class ItemResult:
    message_id: str
    outcome: ItemOutcome
    attempt: int
    reason: str = ""


@dataclass
class BatchReport:
    queue: str
    results: list[ItemResult] = field(default_factory=list)

    def count(self, outcome: ItemOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def received(self) -> int:
        return len(self.results)

    @property
    def committed(self) -> int:
        return self.count(ItemOutcome.SUCCEEDED) + self.count(ItemOutcome.SKIPPED)

    @property
    def failed_ids(self) -> list[str]:
        return [r.message_id for r in self.results if r.outcome is ItemOutcome.FAILED]


def _reason(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class BatchWorker:
    """Consume one queue with a handler, enforcing the partial-batch contract."""

    def __init__(
        self,
        queue: StreamQueue,
        handler: Handler,
        batch_size: int = 10,
        visibility_timeout_sec: float = 30.0,
        item_timeout_sec: float | None = None,
        concurrency: int | None = None,
        loop_backoff: BackoffPolicy | None = None,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.batch_size = batch_size
        self.visibility_timeout_sec = visibility_timeout_sec
        # An item must give up before its message would reappear to another worker.
        self.item_timeout_sec = item_timeout_sec or max(visibility_timeout_sec * 0.9, 0.1)
        self.loop_backoff = loop_backoff or BackoffPolicy(base_sec=1.0, max_sec=30.0)
        self._pool = ThreadPoolExecutor(
            max_workers=concurrency or batch_size,
            thread_name_prefix=f"{queue.name}-worker",
        )

    # ── lifecycle ────────────────────────────────────────────────────────

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> BatchWorker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── one pass ─────────────────────────────────────────────────────────

    def run_once(self) -> BatchReport:
        """Receive one batch and settle every item in it."""
        messages = self.queue.receive(self.batch_size, self.visibility_timeout_sec)
        report = BatchReport(queue=self.queue.name)
        if not messages:
            return report

        futures: dict[Future[ItemOutcome | None], Message] = {
            self._pool.submit(self.handler, m.body): m for m in messages
        }
        done, pending = wait(futures, timeout=self.item_timeout_sec)

        for fut in done:
            msg = futures[fut]
            try:
                report.results.append(self._settle(msg, fut))
            except PipelineError as exc:
                log.warning(
                    "[%s] could not settle message %s (%s); left for redelivery",
                    self.queue.name,
                    msg.id,
                    _reason(exc),
                )
                report.results.append(
                    ItemResult(msg.id, ItemOutcome.FAILED, msg.receive_count, f"settle failed: {_reason(exc)}")
                )
        for fut in pending:
            fut.cancel()
            msg = futures[fut]
            log.warning(
                "[%s] message %s exceeded %.1fs processing timeout; left for redelivery",
                self.queue.name,
                msg.id,
                self.item_timeout_sec,
            )
            report.results.append(ItemResult(msg.id, ItemOutcome.FAILED, msg.receive_count, "processing timeout"))

        report.results.sort(key=lambda r: stream_order(r.message_id))
        log.info(
            "[%s] batch: received=%d committed=%d failed=%d dead_lettered=%d",
            self.queue.name,
            report.received,
            report.committed,
            report.count(ItemOutcome.FAILED),
            report.count(ItemOutcome.DEAD_LETTERED),
        )
        return report

    def _settle(self, msg: Message, fut: Future[ItemOutcome | None]) -> ItemResult:
        exc = fut.exception()
        if exc is None:
            outcome = fut.result() or ItemOutcome.SUCCEEDED
            self.queue.ack(msg)
            return ItemResult(msg.id, outcome, msg.receive_count)

        reason = _reason(exc)
        retryable = getattr(exc, "retryable", True)
        if not retryable:
            log.error("[%s] message %s failed permanently: %s", self.queue.name, msg.id, reason)
            self.queue.dead_letter(msg, reason)
            return ItemResult(msg.id, ItemOutcome.DEAD_LETTERED, msg.receive_count, reason)

        if msg.receive_count >= self.queue.max_attempts:
            exhausted = ExhaustedRetriesError(
                f"{msg.receive_count} attempts exhausted; last error {reason}"
            )
            self.queue.dead_letter(msg, _reason(exhausted))
            return ItemResult(msg.id, ItemOutcome.DEAD_LETTERED, msg.receive_count, _reason(exhausted))

        delay = self.queue.backoff.delay(msg.receive_count)
        log.warning(
            "[%s] message %s attempt %d/%d failed (%s); retry in %.1fs",
            self.queue.name,
            msg.id,
            msg.receive_count,
            self.queue.max_attempts,
            reason,
            delay,
        )
        self.queue.release(msg, delay)
        return ItemResult(msg.id, ItemOutcome.FAILED, msg.receive_count, reason)

    # ── loop ─────────────────────────────────────────────────────────────

    def run_forever(
        self,
        poll_interval_sec: float = 1.0,
        stop: threading.Event | None = None,
    ) -> None:
        """Poll until *stop* is set or Ctrl+C.

        In-flight items are never acknowledged on the way out; they become
        visible to another worker once their visibility timeout lapses.
        A failed poll (queue unreachable) is logged and retried with backoff.
        """
        stop = stop or threading.Event()
        batches = 0
        errors = 0
        log.info(
            "[%s] worker started (batch_size=%d, visibility=%.0fs)",
            self.queue.name,
            self.batch_size,
            self.visibility_timeout_sec,
        )
        try:
            while not stop.is_set():
                try:
                    report = self.run_once()
                except PipelineError as exc:
                    errors += 1
                    delay = self.loop_backoff.delay(errors)
                    log.error("[%s] poll failed (%s); retrying in %.1fs", self.queue.name, _reason(exc), delay)
                    stop.wait(delay)
                    continue
                errors = 0
                if report.received:
                    batches += 1
                else:
                    stop.wait(poll_interval_sec)
        except KeyboardInterrupt:
            log.info("[%s] worker interrupted", self.queue.name)
        finally:
            self.close()
            log.info("[%s] worker stopped after %d batches", self.queue.name, batches)
