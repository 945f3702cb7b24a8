"""Redis connection for queues and the dedup store."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import redis

from src.shared.errors import TransientIOError

log = logging.getLogger(__name__)


def connect(url: str) -> redis.Redis:
    """Client with ``str`` responses; one per process, shared by worker threads."""
    log.debug("Connecting to %s", url)
    return redis.Redis.from_url(url, decode_responses=True)


@contextmanager
def redis_errors(what: str) -> Iterator[None]:
    """Surface connection loss and timeouts as ``TransientIOError``."""
    try:
        yield
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
        raise TransientIOError(f"{what}: {exc}") from exc
