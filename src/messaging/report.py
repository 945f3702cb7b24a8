"""Backlog and dead-letter report for operators.

Collects a snapshot of every queue (live and dead-letter streams) into a
DataFrame and produces two views:

  backlog      — per queue: visible, not_visible (in flight or backing off),
                 dead_lettered, oldest message age
  dead_letters — per originating queue and reason: count, first/last dead-letter time
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from pathlib import Path

import pandas as pd

from src.messaging.stream_queue import DLQ_SUFFIX, StreamQueue
from src.shared.fileio import atomic_write_text

log = logging.getLogger(__name__)

MESSAGE_COLUMNS = ["id", "queue", "origin_queue", "visible_at", "sent_at", "dead_reason", "dead_at"]
BACKLOG_COLUMNS = ["queue", "visible", "not_visible", "dead_lettered", "oldest_age_sec"]
DEAD_LETTER_COLUMNS = ["queue", "reason", "count", "first_dead_at", "last_dead_at"]


def load_messages(queues: Iterable[StreamQueue]) -> pd.DataFrame:
    """One row per message; an empty frame (with all columns) when every queue is empty."""
    rows = [row for q in queues for row in q.snapshot()]
    return pd.DataFrame(rows, columns=MESSAGE_COLUMNS)


def backlog(df: pd.DataFrame, now: float) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=BACKLOG_COLUMNS)
    is_dead = df["queue"].str.endswith(DLQ_SUFFIX)
    live = df[~is_dead].copy()
    dead = df[is_dead]

    live["visible"] = live["visible_at"] <= now
    live["age"] = now - live["sent_at"]
    grouped = live.groupby("queue").agg(
        visible=("visible", "sum"),
        total=("id", "count"),
        oldest_age_sec=("age", "max"),
    )
    grouped["not_visible"] = grouped["total"] - grouped["visible"]

    dead_counts = dead.groupby("origin_queue")["id"].count().rename("dead_lettered")
    out = grouped.join(dead_counts, how="outer").fillna(0)
    out.index.name = "queue"
    out = out.reset_index()
    for col in ("visible", "not_visible", "dead_lettered"):
        out[col] = out[col].astype(int)
    out["oldest_age_sec"] = out["oldest_age_sec"].astype(float).round(1)
    return out[BACKLOG_COLUMNS].sort_values("queue").reset_index(drop=True)


def dead_letter_reasons(df: pd.DataFrame) -> pd.DataFrame:
    dead = df[df["queue"].str.endswith(DLQ_SUFFIX)] if not df.empty else df
    if dead.empty:
        return pd.DataFrame(columns=DEAD_LETTER_COLUMNS)
    # "ExhaustedRetriesError: 10 attempts exhausted; last error ..." -> first clause only
    reasons = dead["dead_reason"].fillna("").str.split(";").str[0]
    out = (
        dead.assign(reason=reasons)
        .groupby(["origin_queue", "reason"])
        .agg(count=("id", "count"), first_dead_at=("dead_at", "min"), last_dead_at=("dead_at", "max"))
        .reset_index()
        .rename(columns={"origin_queue": "queue"})
    )
    for col in ("first_dead_at", "last_dead_at"):
        out[col] = pd.to_datetime(out[col], unit="s", utc=True).dt.strftime("%Y-%m-%dT%H:%M:%SZ")
    return out[DEAD_LETTER_COLUMNS].sort_values(["queue", "count"], ascending=[True, False]).reset_index(drop=True)


def write_report(
    queues: Iterable[StreamQueue], out_dir: str | Path, now: float | None = None
) -> dict[str, pd.DataFrame]:
    """Write ``backlog.csv`` and ``dead_letters.csv`` into *out_dir*."""
    now = time.time() if now is None else now
    df = load_messages(queues)
    frames = {"backlog": backlog(df, now), "dead_letters": dead_letter_reasons(df)}
    out = Path(out_dir)
    for name, frame in frames.items():
        atomic_write_text(out / f"{name}.csv", frame.to_csv(index=False))
    total_dead = int(frames["backlog"]["dead_lettered"].sum()) if not frames["backlog"].empty else 0
    log.info("Queue report -> %s (%d queues, %d dead-lettered)", out, len(frames["backlog"]), total_dead)
    return frames
