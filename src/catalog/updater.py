"""Catalog Updater — partition events -> ``ensure_partition``.

Transient catalog errors are retried in-process with backoff, then handed
back to the queue.  A missing database/table is a ConfigurationError: it is
not retried and goes straight to the dead-letter queue for an operator.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from src.catalog.catalog import SqliteCatalog
from src.contracts.enums import ItemOutcome, PartitionResult
from src.contracts.record import PartitionKey
from src.shared.errors import MalformedInputError
from src.shared.retry import BackoffPolicy, retry_call

log = logging.getLogger(__name__)


class CatalogUpdater:
    def __init__(
        self,
        catalog: SqliteCatalog,
        backoff: BackoffPolicy | None = None,
        attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.catalog = catalog
        self.backoff = backoff or BackoffPolicy(base_sec=0.5, max_sec=5.0)
        self.attempts = attempts
        self.sleep = sleep

    def __call__(self, body: dict[str, Any]) -> ItemOutcome:
        try:
            key = PartitionKey.from_dict(body)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedInputError(f"invalid partition event: {exc}") from exc
        self.ensure_partition(key)
        return ItemOutcome.SUCCEEDED

    def ensure_partition(self, key: PartitionKey) -> PartitionResult:
        result = retry_call(
            lambda: self.catalog.ensure_partition(key),
            self.backoff,
            self.attempts,
            sleep=self.sleep,
            what=f"ensure_partition {key.ident}",
        )
        if result is PartitionResult.CREATED:
            log.info("Registered partition %s", key.ident)
        else:
            log.debug("Partition %s already registered", key.ident)
        return result
