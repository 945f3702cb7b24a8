"""Log Processor — notification queue item -> normalized records + partition events.

Per IngestEvent:
  1. fetch the raw object (I/O failure fails the item; the queue redelivers it)
  2. skip it if ``(location, sha256)`` is already in the ledger
  3. classify; malformed lines are quarantined, valid records kept
  4. write records to partitioned storage (deterministic, append-only)
  5. send one partition-registration event per touched partition,
     retried in-process until the catalog queue accepts it
  6. record the object in the ledger

A crash between 4 and 6 only causes step 4 to find its objects already
written on redelivery, and step 5 to be de-duplicated by the catalog queue.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from typing import Any

from src.contracts.enums import ItemOutcome
from src.contracts.ingest import IngestEvent
from src.contracts.record import PartitionKey
from src.messaging.stream_queue import StreamQueue
from src.processor.classifier import ClassifierRegistry
from src.processor.ledger import ProcessedObjectLedger
from src.processor.storage import LocalObjectStore, NormalizedWriter, QuarantineWriter
from src.shared.errors import MalformedInputError
from src.shared.retry import BackoffPolicy, retry_call

log = logging.getLogger(__name__)


class LogProcessor:
    """Handler for the notification queue (plug into ``BatchWorker``)."""

    def __init__(
        self,
        store: LocalObjectStore,
        registry: ClassifierRegistry,
        writer: NormalizedWriter,
        ledger: ProcessedObjectLedger,
        partition_queue: StreamQueue,
        quarantine: QuarantineWriter,
        emit_backoff: BackoffPolicy | None = None,
        emit_attempts: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.registry = registry
        self.writer = writer
        self.ledger = ledger
        self.partition_queue = partition_queue
        self.quarantine = quarantine
        self.emit_backoff = emit_backoff or BackoffPolicy(base_sec=0.2, max_sec=5.0)
        self.emit_attempts = emit_attempts
        self.sleep = sleep

    def __call__(self, body: dict[str, Any]) -> ItemOutcome:
        return self.handle(IngestEvent.from_dict(body))

    def handle(self, event: IngestEvent) -> ItemOutcome:
        data = self.store.get(event.object_location)
        digest = hashlib.sha256(data).hexdigest()

        if self.ledger.is_processed(event.object_location, digest):
            log.info("Skipping already processed %s (sha256 %s…)", event.object_location, digest[:12])
            return ItemOutcome.SKIPPED

        classifier, hints = self.registry.resolve(event.source_id)
        result = classifier.classify(data, hints, event.object_location, event.received_at)

        if result.failures:
            self.quarantine.write(event, digest, result.failures)
        if not result.records and result.failures:
            raise MalformedInputError(
                f"{event.object_location}: no parsable lines ({len(result.failures)} malformed, "
                f"first reason {result.failures[0].reason})"
            )

        partitions = self.writer.write(result.records, event.object_location, digest)
        for key in partitions:
            self._emit_partition(key)

        self.ledger.mark_processed(
            event.object_location,
            digest,
            records=len(result.records),
            failures=len(result.failures),
            partitions=len(partitions),
        )
        log.info(
            "Processed %s [%s/%s]: %d records, %d malformed lines, %d partitions",
            event.object_location,
            hints.source_id,
            classifier.format_name,
            len(result.records),
            len(result.failures),
            len(partitions),
        )
        return ItemOutcome.SUCCEEDED

    def _emit_partition(self, key: PartitionKey) -> None:
        retry_call(
            lambda: self.partition_queue.send(key.to_dict(), dedup_id=key.ident),
            self.emit_backoff,
            self.emit_attempts,
            sleep=self.sleep,
            what=f"partition event {key.ident}",
        )
