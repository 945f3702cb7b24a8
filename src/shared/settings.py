"""Typed view over ``config/pipeline.yaml``.

Every key has a default so that a partial file (or none at all) yields a
working single-host setup rooted at ``data/`` with Redis on localhost.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.shared.config_loader import load_optional_yaml
from src.shared.retry import BackoffPolicy


@dataclass(slots=True)
class QueueSettings:
    """Consumer settings for one queue (mirrors the SQS event-source mapping)."""

    name: str
    batch_size: int = 10
    visibility_timeout_sec: float = 30.0
    max_attempts: int = 10
    item_timeout_sec: float = 25.0

    @classmethod
    def from_dict(cls, name: str, cfg: dict[str, Any] | None, **defaults: Any) -> QueueSettings:
        merged = {**defaults, **(cfg or {})}
        return cls(
            name=str(merged.get("name", name)),
            batch_size=int(merged.get("batch_size", 10)),
            visibility_timeout_sec=float(merged.get("visibility_timeout_sec", 30.0)),
            max_attempts=int(merged.get("max_attempts", 10)),
            item_timeout_sec=float(merged.get("item_timeout_sec", 25.0)),
        )


@dataclass(slots=True)
class PipelineSettings:
    state_db: Path = Path("data/state.db")
    object_root: Path = Path("data/objects")
    processed_bucket: str = "processed-logs"
    quarantine_dir: Path = Path("out/quarantine")
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "logpipe"
    catalog_database: str = "log_data"
    notifications: QueueSettings = field(
        default_factory=lambda: QueueSettings("input-notifications", visibility_timeout_sec=180.0, item_timeout_sec=170.0)
    )
    partitions: QueueSettings = field(default_factory=lambda: QueueSettings("catalog-updates"))
    dedup_stream: QueueSettings = field(default_factory=lambda: QueueSettings("alert-dedup-stream"))
    delivery_queue: str = "alert-delivery"
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    emit_attempts: int = 5
    dedup_window_sec: float = 300.0
    dedup_max_event_ids: int = 1000
    default_severity: str = "medium"
    dlq_retention_days: float = 14.0
    dedup_id_retention_days: float = 14.0

    @classmethod
    def from_dict(cls, cfg: dict[str, Any]) -> PipelineSettings:
        storage = cfg.get("storage", {})
        queues = cfg.get("queues", {})
        dedup = cfg.get("dedup", {})
        alerts = cfg.get("alerts", {})
        redis_cfg = cfg.get("redis", {})
        base = cls()
        return cls(
            state_db=Path(storage.get("state_db", base.state_db)),
            object_root=Path(storage.get("object_root", base.object_root)),
            processed_bucket=str(storage.get("processed_bucket", base.processed_bucket)),
            quarantine_dir=Path(storage.get("quarantine_dir", base.quarantine_dir)),
            redis_url=str(redis_cfg.get("url") or os.environ.get("REDIS_URL") or base.redis_url),
            key_prefix=str(redis_cfg.get("key_prefix", base.key_prefix)),
            catalog_database=str(cfg.get("catalog", {}).get("database", base.catalog_database)),
            notifications=QueueSettings.from_dict(
                "input-notifications",
                queues.get("notifications"),
                visibility_timeout_sec=180.0,
                item_timeout_sec=170.0,
            ),
            partitions=QueueSettings.from_dict("catalog-updates", queues.get("partitions")),
            dedup_stream=QueueSettings.from_dict("alert-dedup-stream", queues.get("dedup_stream")),
            delivery_queue=str(queues.get("delivery", {}).get("name", base.delivery_queue)),
            backoff=BackoffPolicy.from_dict(cfg.get("backoff")),
            emit_attempts=int(cfg.get("emit_attempts", base.emit_attempts)),
            dedup_window_sec=float(dedup.get("window_sec", base.dedup_window_sec)),
            dedup_max_event_ids=int(dedup.get("max_event_ids", base.dedup_max_event_ids)),
            default_severity=str(alerts.get("default_severity", base.default_severity)),
            dlq_retention_days=float(cfg.get("dlq_retention_days", base.dlq_retention_days)),
            dedup_id_retention_days=float(cfg.get("dedup_id_retention_days", base.dedup_id_retention_days)),
        )


def load_settings(config_dir: str | Path = "config") -> PipelineSettings:
    return PipelineSettings.from_dict(load_optional_yaml(Path(config_dir) / "pipeline.yaml"))
