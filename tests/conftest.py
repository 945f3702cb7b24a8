"""Shared fixtures for the log pipeline tests."""

from __future__ import annotations

import gzip
from datetime import datetime, timedelta
from pathlib import Path

import fakeredis
import pytest

from src.alerts.dedup_store import DedupStore
from src.contracts.alert import Alert
from src.contracts.dedup import DedupEntry, RuleMatch
from src.contracts.enums import AlertStatus, DedupStatus
from src.contracts.ingest import IngestEvent
from src.messaging.stream_queue import StreamQueue
from src.processor.storage import LocalObjectStore
from src.settings.sources import SourceRegistry
from src.shared.retry import BackoffPolicy

# ── Injected time ───────────────────────────────────────────────────────


class FakeClock:
    """Callable clock for queue visibility / backoff tests (epoch seconds)."""

    def __init__(self, start: float = 1_772_100_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ts_offset(base: str = "2026-02-26T10:00:00Z", seconds: int = 0) -> str:
    """Return an ISO-8601 timestamp offset from *base* by *seconds*."""
    dt = datetime.fromisoformat(base.replace("Z", "+00:00"))
    dt += timedelta(seconds=seconds)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


# ── Helper: contracts with sensible defaults ────────────────────────────


def make_ingest_event(
    *,
    object_location: str = "s3://raw-logs/cloudtrail/a.json.gz",
    source_id: str = "cloudtrail-prod",
    received_at: str = "2026-02-26T10:05:00Z",
    size_bytes: int = 0,
) -> IngestEvent:
    return IngestEvent(
        object_location=object_location,
        source_id=source_id,
        received_at=received_at,
        size_bytes=size_bytes,
    )


def make_match(
    *,
    rule_id: str = "AWS.CloudTrail.RootActivity",
    dedup_key: str = "123456789012",
    event_id: str = "evt-1",
    offset_sec: int = 0,
) -> RuleMatch:
    return RuleMatch(
        rule_id=rule_id,
        dedup_key=dedup_key,
        event_id=event_id,
        match_time=ts_offset(seconds=offset_sec),
    )


def make_entry(
    *,
    rule_id: str = "AWS.CloudTrail.RootActivity",
    dedup_key: str = "123456789012",
    event_ids: tuple[str, ...] = ("evt-1",),
    first: str = "2026-02-26T10:00:00Z",
    last: str | None = None,
    status: DedupStatus = DedupStatus.ACTIVE,
    version: int = 1,
    incident_seq: int = 1,
) -> DedupEntry:
    return DedupEntry(
        rule_id=rule_id,
        dedup_key=dedup_key,
        alert_count=len(event_ids),
        first_event_time=first,
        last_event_time=last or first,
        event_ids=event_ids,
        status=status,
        version=version,
        incident_seq=incident_seq,
    )


def make_alert(
    *,
    alert_id: str = "alert-0001",
    rule_id: str = "AWS.CloudTrail.RootActivity",
    dedup_key: str = "123456789012",
    creation_time: str = "2026-02-26T10:00:00Z",
    severity: str = "critical",
    status: AlertStatus = AlertStatus.OPEN,
    event_ids: list[str] | None = None,
    version: int = 1,
) -> Alert:
    return Alert(
        id=alert_id,
        rule_id=rule_id,
        dedup_key=dedup_key,
        creation_time=creation_time,
        last_update_time=creation_time,
        severity=severity,
        status=status,
        event_ids=event_ids or ["evt-1"],
        title="Root account activity",
        version=version,
    )


def gz(text: str) -> bytes:
    return gzip.compress(text.encode("utf-8"))


# ── Storage fixtures ────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_db(tmp_path: Path) -> Path:
    return tmp_path / "state.db"


@pytest.fixture
def object_store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def no_backoff() -> BackoffPolicy:
    return BackoffPolicy(base_sec=0.0, factor=1.0, max_sec=0.0)


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server: fakeredis.FakeServer) -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def make_queue(redis_client: fakeredis.FakeRedis, clock: FakeClock):
    """Factory: ``make_queue("name", max_attempts=3)`` on the shared fake server."""

    def factory(name: str = "jobs", **kwargs) -> StreamQueue:
        kwargs.setdefault("clock", clock)
        return StreamQueue(redis_client, name, **kwargs)

    return factory


@pytest.fixture
def dedup_store(make_queue) -> DedupStore:
    return DedupStore(make_queue("alert-dedup-stream"))


# ── Config fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def sources_cfg() -> dict:
    """Two sources: JSON lines CloudTrail and a regex-profile API gateway."""
    return {
        "sources": {
            "cloudtrail-prod": {
                "format": "jsonl",
                "schema": "AWS.CloudTrail",
                "timestamp_field": "eventTime",
                "bucket": "raw-logs",
                "prefix": "cloudtrail/",
            },
            "api-gateway": {
                "format": "regex",
                "schema": "Custom.ApiGateway",
                "profile": "api_gateway",
                "bucket": "raw-logs",
                "prefix": "apps/api/",
            },
        }
    }


@pytest.fixture
def sources(sources_cfg: dict) -> SourceRegistry:
    return SourceRegistry.from_config(sources_cfg)


@pytest.fixture
def mapping_cfg() -> dict:
    """Minimal regex mapping with one API gateway profile."""
    return {
        "defaults": {"host": "unknown", "component": "unknown", "event": "raw_log", "severity": "low"},
        "profiles": {
            "api_gateway": {
                "key_pattern": "apps/api/",
                "line_regex": (
                    r"^(?P<ts>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\s+"
                    r"(?P<level>\w+)\s+(?P<host>\S+)\s+(?P<msg>.+)$"
                ),
                "timestamp_format": "iso_space",
                "host_field": "host",
                "level_field": "level",
                "message_field": "msg",
                "severity_map": {"info": "low", "warn": "medium", "error": "high"},
                "event_rules": [
                    {"pattern": r"(?i)auth.*fail|login.*fail", "event": "auth_failure", "tags": "auth"},
                ],
                "ip_regex": r"from (\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})",
                "actor_regex": r"user[= ](\S+)",
            }
        },
    }
