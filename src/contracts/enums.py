"""Canonical enumerations for the pipeline contracts."""

from __future__ import annotations

from enum import Enum


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    OPEN = "open"
    TRIAGED = "triaged"
    CLOSED = "closed"


class DedupStatus(str, Enum):
    ACTIVE = "active"
    TIMED_OUT = "timed_out"  # window elapsed
    MERGED = "merged"  # explicitly closed, or event-id capacity reached

    @property
    def terminal(self) -> bool:
        return self is not DedupStatus.ACTIVE


class ItemOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"  # duplicate redelivery / stale version, acknowledged
    FAILED = "failed"  # left for redelivery
    DEAD_LETTERED = "dead_lettered"


class PartitionResult(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
