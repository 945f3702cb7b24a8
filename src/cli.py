"""CLI entry-point for the log pipeline workers and operator tools.

Usage examples
--------------
# Publish object notifications (S3 envelope or flat IngestEvent bodies):
logpipe enqueue notifications/*.json

# Run the workers (``--once`` processes a single batch and exits):
logpipe process
logpipe update-catalog --once
logpipe forward-alerts

# Feed rule matches (JSONL) into the deduplicator, sealing elapsed windows:
logpipe match data/matches.jsonl --sweep

# Operator tools:
logpipe init-catalog
logpipe requeue --queue input-notifications
logpipe dlq-report --out-dir out/ --purge
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from src.alerts.dedup import AlertDeduplicator
from src.alerts.dedup_store import DedupStore
from src.alerts.forwarder import AlertForwarder
from src.alerts.rules import RuleCatalog
from src.alerts.store import AlertStore
from src.catalog.catalog import SqliteCatalog
from src.catalog.updater import CatalogUpdater
from src.contracts.dedup import RuleMatch
from src.contracts.ingest import IngestEvent, locations_from_notification
from src.contracts.record import table_name
from src.messaging.report import write_report
from src.messaging.stream_queue import StreamQueue
from src.messaging.worker import BatchWorker
from src.processor.classifier import ClassifierRegistry, JsonLinesClassifier, RegexProfileClassifier
from src.processor.ledger import ProcessedObjectLedger
from src.processor.parser import build_profiles
from src.processor.processor import LogProcessor
from src.processor.storage import LocalObjectStore, NormalizedWriter, QuarantineWriter
from src.settings.sources import SourceRegistry
from src.shared.config_loader import load_optional_yaml
from src.shared.errors import PipelineError
from src.shared.logger import setup_logging
from src.shared.redis_client import connect
from src.shared.settings import PipelineSettings, QueueSettings, load_settings
from src.shared.timeutil import utc_now

log = logging.getLogger(__name__)


# ── Wiring ───────────────────────────────────────────────────────────────────


def _stream_queue(settings: PipelineSettings, name: str, max_attempts: int = 10) -> StreamQueue:
    return StreamQueue(
        connect(settings.redis_url),
        name,
        max_attempts=max_attempts,
        backoff=settings.backoff,
        key_prefix=settings.key_prefix,
        dedup_retention_sec=settings.dedup_id_retention_days * 86400,
    )


def _queue(settings: PipelineSettings, qs: QueueSettings) -> StreamQueue:
    return _stream_queue(settings, qs.name, qs.max_attempts)


def _all_queues(settings: PipelineSettings) -> list[StreamQueue]:
    """Every queue the pipeline owns, the delivery queue included."""
    queues = [_queue(settings, qs) for qs in (settings.notifications, settings.partitions, settings.dedup_stream)]
    return queues + [_stream_queue(settings, settings.delivery_queue)]


def _worker(queue: StreamQueue, qs: QueueSettings, handler: Any) -> BatchWorker:
    return BatchWorker(
        queue,
        handler,
        batch_size=qs.batch_size,
        visibility_timeout_sec=qs.visibility_timeout_sec,
        item_timeout_sec=qs.item_timeout_sec,
    )


def _run(worker: BatchWorker, once: bool, poll_interval_sec: float) -> None:
    if once:
        with worker:
            worker.run_once()
    else:
        worker.run_forever(poll_interval_sec)


def build_processor(settings: PipelineSettings, config_dir: Path) -> LogProcessor:
    sources = SourceRegistry.load(config_dir / "sources.yaml")
    profiles = build_profiles(load_optional_yaml(config_dir / "mapping.yaml"))
    registry = ClassifierRegistry(sources, [JsonLinesClassifier(), RegexProfileClassifier(profiles)])
    store = LocalObjectStore(settings.object_root)
    return LogProcessor(
        store=store,
        registry=registry,
        writer=NormalizedWriter(store, settings.processed_bucket, settings.catalog_database),
        ledger=ProcessedObjectLedger(settings.state_db),
        partition_queue=_queue(settings, settings.partitions),
        quarantine=QuarantineWriter(settings.quarantine_dir),
        emit_backoff=settings.backoff,
        emit_attempts=settings.emit_attempts,
    )


def build_deduplicator(settings: PipelineSettings) -> AlertDeduplicator:
    stream = _queue(settings, settings.dedup_stream)
    return AlertDeduplicator(
        DedupStore(stream),
        window_sec=settings.dedup_window_sec,
        max_event_ids=settings.dedup_max_event_ids,
    )


def build_forwarder(settings: PipelineSettings, config_dir: Path) -> AlertForwarder:
    return AlertForwarder(
        AlertStore(settings.state_db),
        _stream_queue(settings, settings.delivery_queue),
        RuleCatalog.load(config_dir / "rules.yaml", settings.default_severity),
    )


# ── Input readers ────────────────────────────────────────────────────────────


def _read_bodies(path: Path) -> list[dict[str, Any]]:
    """JSON object, JSON array of objects, or JSON lines."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    if path.suffix == ".jsonl":
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    data = json.loads(text)
    return data if isinstance(data, list) else [data]


def ingest_events(body: dict[str, Any], sources: SourceRegistry) -> list[IngestEvent]:
    if "Records" not in body:
        return [IngestEvent.from_dict(body)]
    events = []
    for location, size, event_time in locations_from_notification(body):
        hints = sources.resolve_location(location)
        events.append(IngestEvent(location, hints.source_id, event_time, size))
    return events


# ── Commands ─────────────────────────────────────────────────────────────────


def cmd_enqueue(args: argparse.Namespace, settings: PipelineSettings) -> int:
    sources = SourceRegistry.load(args.config_dir / "sources.yaml")
    queue = _queue(settings, settings.notifications)
    sent = 0
    for path in args.files:
        for body in _read_bodies(Path(path)):
            for event in ingest_events(body, sources):
                queue.send(event.to_dict())
                sent += 1
    log.info("Enqueued %d ingest events on %s", sent, queue.name)
    return 0


def cmd_process(args: argparse.Namespace, settings: PipelineSettings) -> int:
    processor = build_processor(settings, args.config_dir)
    qs = settings.notifications
    _run(_worker(_queue(settings, qs), qs, processor), args.once, args.poll_interval)
    return 0


def cmd_update_catalog(args: argparse.Namespace, settings: PipelineSettings) -> int:
    updater = CatalogUpdater(SqliteCatalog(settings.state_db), settings.backoff)
    qs = settings.partitions
    _run(_worker(_queue(settings, qs), qs, updater), args.once, args.poll_interval)
    return 0


def cmd_forward_alerts(args: argparse.Namespace, settings: PipelineSettings) -> int:
    forwarder = build_forwarder(settings, args.config_dir)
    qs = settings.dedup_stream
    _run(_worker(_queue(settings, qs), qs, forwarder), args.once, args.poll_interval)
    return 0


def cmd_match(args: argparse.Namespace, settings: PipelineSettings) -> int:
    dedup = build_deduplicator(settings)
    applied = 0
    for body in _read_bodies(Path(args.file)):
        dedup.record_match(RuleMatch.from_dict(body))
        applied += 1
    log.info("Applied %d rule matches", applied)
    if args.sweep:
        dedup.expire(utc_now())
    return 0


def cmd_init_catalog(args: argparse.Namespace, settings: PipelineSettings) -> int:
    sources = SourceRegistry.load(args.config_dir / "sources.yaml")
    catalog = SqliteCatalog(settings.state_db)
    database = settings.catalog_database
    catalog.create_database(database)
    for schema in sources.schemas():
        table = table_name(schema)
        created = catalog.create_table(database, table, f"s3://{settings.processed_bucket}/logs/{table}")
        log.info("Table %s.%s %s", database, table, "created" if created else "already exists")
    return 0


def cmd_requeue(args: argparse.Namespace, settings: PipelineSettings) -> int:
    queue = _stream_queue(settings, args.queue)
    moved = queue.requeue_dead_letters(args.limit)
    print(f"{moved} messages moved from {queue.dead_letter_queue} to {queue.name}")
    return 0


def cmd_dlq_report(args: argparse.Namespace, settings: PipelineSettings) -> int:
    if args.purge:
        retention = settings.dlq_retention_days * 86400
        for queue in _all_queues(settings):
            queue.purge_dead_letters(retention)
    frames = write_report(_all_queues(settings), args.out_dir)
    for name, frame in frames.items():
        print(f"── {name} ──")
        print(frame.to_string(index=False) if not frame.empty else "(empty)")
    return 0


# ── Parser ───────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config-dir",
        type=Path,
        default=Path("config"),
        help="Directory with pipeline.yaml, sources.yaml, mapping.yaml, rules.yaml. Default: config/",
    )
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level. Default: INFO",
    )

    worker = argparse.ArgumentParser(add_help=False)
    worker.add_argument("--once", action="store_true", help="Process a single batch and exit.")
    worker.add_argument(
        "--poll-interval",
        type=float,
        default=1.0,
        help="Seconds to wait after an empty receive (default: 1.0).",
    )

    p = argparse.ArgumentParser(
        prog="logpipe",
        description="Log ingestion pipeline: classify, partition, catalog, deduplicate and forward alerts",
    )
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("enqueue", parents=[common], help="Publish ingest events to the notification queue.")
    s.add_argument("files", nargs="+", help="JSON / JSONL files with notifications or IngestEvent bodies.")
    s.set_defaults(func=cmd_enqueue)

    s = sub.add_parser("process", parents=[common, worker], help="Run the Log Processor.")
    s.set_defaults(func=cmd_process)

    s = sub.add_parser("update-catalog", parents=[common, worker], help="Run the Catalog Updater.")
    s.set_defaults(func=cmd_update_catalog)

    s = sub.add_parser("match", parents=[common], help="Apply rule matches (JSONL) to the deduplicator.")
    s.add_argument("file", help="JSONL file of {rule_id, dedup_key, event_id, match_time}.")
    s.add_argument("--sweep", action="store_true", help="Seal every elapsed window afterwards.")
    s.set_defaults(func=cmd_match)

    s = sub.add_parser("forward-alerts", parents=[common, worker], help="Run the Alert Forwarder.")
    s.set_defaults(func=cmd_forward_alerts)

    s = sub.add_parser("init-catalog", parents=[common], help="Create the catalog database and tables.")
    s.set_defaults(func=cmd_init_catalog)

    s = sub.add_parser("requeue", parents=[common], help="Replay dead-lettered messages.")
    s.add_argument("--queue", required=True, help="Queue to replay onto (its -dlq is drained).")
    s.add_argument("--limit", type=int, default=None, help="Replay at most N messages.")
    s.set_defaults(func=cmd_requeue)

    s = sub.add_parser("dlq-report", parents=[common], help="Write the backlog / dead-letter report.")
    s.add_argument("--out-dir", default="out", help="Output directory. Default: out/")
    s.add_argument("--purge", action="store_true", help="Drop dead letters past retention first.")
    s.set_defaults(func=cmd_dlq_report)
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    settings = load_settings(args.config_dir)
    try:
        return args.func(args, settings)
    except PipelineError as exc:
        log.error("%s: %s", type(exc).__name__, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
