"""Pipeline contracts — canonical data structures shared by all stages."""

from src.contracts.alert import Alert, AlertNotification
from src.contracts.dedup import DedupChange, DedupEntry, RuleMatch
from src.contracts.enums import AlertStatus, DedupStatus, ItemOutcome, PartitionResult, Severity
from src.contracts.ingest import IngestEvent
from src.contracts.record import NormalizedRecord, PartitionKey

__all__ = [
    "Alert",
    "AlertNotification",
    "AlertStatus",
    "DedupChange",
    "DedupEntry",
    "DedupStatus",
    "IngestEvent",
    "ItemOutcome",
    "NormalizedRecord",
    "PartitionKey",
    "PartitionResult",
    "RuleMatch",
    "Severity",
]
