"""Rule matches, dedup entries and their change events."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from typing import Any

from src.contracts.enums import DedupStatus
from src.shared.errors import MalformedInputError


@dataclass(slots=True, frozen=True)
class RuleMatch:
    """Inbound contract from the rule-evaluation engine."""

    rule_id: str
    dedup_key: str
    event_id: str
    match_time: str  # ISO-8601 UTC

    @classmethod
    def from_dict(cls, body: dict[str, Any]) -> RuleMatch:
        try:
            return cls(
                rule_id=str(body["rule_id"]),
                dedup_key=str(body["dedup_key"]),
                event_id=str(body["event_id"]),
                match_time=str(body["match_time"]),
            )
        except KeyError as exc:
            raise MalformedInputError(f"rule match missing field {exc}") from exc


@dataclass(slots=True, frozen=True)
class DedupEntry:
    """One live (or sealed) incident for ``(rule_id, dedup_key)``.

    ``version`` is a per-key sequence that grows on every write, across
    incidents, so it orders all change events of a key.  ``incident_seq``
    numbers the incidents of a key.
    """

    rule_id: str
    dedup_key: str
    alert_count: int
    first_event_time: str
    last_event_time: str
    event_ids: tuple[str, ...]
    status: DedupStatus = DedupStatus.ACTIVE
    version: int = 1
    incident_seq: int = 1

    @property
    def alert_id(self) -> str:
        """Stable id of the alert this incident materializes into."""
        raw = f"{self.rule_id}\x1f{self.dedup_key}\x1f{self.incident_seq}\x1f{self.first_event_time}"
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()

    def sealed(self, status: DedupStatus) -> DedupEntry:
        return replace(self, status=status, version=self.version + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "dedup_key": self.dedup_key,
            "alert_count": self.alert_count,
            "first_event_time": self.first_event_time,
            "last_event_time": self.last_event_time,
            "event_ids": list(self.event_ids),
            "status": self.status.value,
            "version": self.version,
            "incident_seq": self.incident_seq,
        }

    @classmethod
    def from_dict(cls, body: dict[str, Any]) -> DedupEntry:
        return cls(
            rule_id=str(body["rule_id"]),
            dedup_key=str(body["dedup_key"]),
            alert_count=int(body["alert_count"]),
            first_event_time=str(body["first_event_time"]),
            last_event_time=str(body["last_event_time"]),
            event_ids=tuple(body.get("event_ids", ())),
            status=DedupStatus(body.get("status", DedupStatus.ACTIVE.value)),
            version=int(body.get("version", 1)),
            incident_seq=int(body.get("incident_seq", 1)),
        )


@dataclass(slots=True, frozen=True)
class DedupChange:
    """Change-stream record emitted in the same transaction as the entry write."""

    kind: str  # "created" | "updated"
    entry: DedupEntry = field(compare=False)

    @property
    def version(self) -> int:
        return self.entry.version

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "entry": self.entry.to_dict()}

    @classmethod
    def from_dict(cls, body: dict[str, Any]) -> DedupChange:
        try:
            return cls(kind=str(body["kind"]), entry=DedupEntry.from_dict(body["entry"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedInputError(f"invalid dedup change: {exc}") from exc
