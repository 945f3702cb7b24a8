"""Exponential backoff policy and an in-process retry helper."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from src.shared.errors import TransientIOError

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Delay before attempt ``n + 1`` = ``base_sec * factor ** (n - 1)``, capped.

    ``jitter_sec`` adds a uniform random component so that workers failing
    on the same dependency do not retry in lock-step.
    """

    base_sec: float = 1.0
    factor: float = 2.0
    max_sec: float = 60.0
    jitter_sec: float = 0.0

    def delay(self, attempt: int) -> float:
        """Return the delay (seconds) after the *attempt*-th failure (1-based)."""
        n = max(1, attempt)
        value = min(self.base_sec * self.factor ** (n - 1), self.max_sec)
        if self.jitter_sec:
            value += random.uniform(0, self.jitter_sec)
        return value

    @classmethod
    def from_dict(cls, cfg: dict[str, Any] | None) -> BackoffPolicy:
        cfg = cfg or {}
        return cls(
            base_sec=float(cfg.get("base_sec", 1.0)),
            factor=float(cfg.get("factor", 2.0)),
            max_sec=float(cfg.get("max_sec", 60.0)),
            jitter_sec=float(cfg.get("jitter_sec", 0.0)),
        )


def retry_call(
    fn: Callable[[], T],
    policy: BackoffPolicy,
    attempts: int,
    retry_on: tuple[type[BaseException], ...] = (TransientIOError,),
    sleep: Callable[[float], None] = time.sleep,
    what: str = "call",
) -> T:
    """Call *fn* up to *attempts* times, sleeping per *policy* between tries.

    Only exceptions listed in *retry_on* are retried; the last one is
    re-raised unchanged once the attempts are used up so that the caller's
    queue-level retry budget still applies.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts:
                log.warning("%s failed after %d attempts: %s", what, attempt, exc)
                raise
            delay = policy.delay(attempt)
            log.info("%s failed (%s); retry %d/%d in %.2fs", what, exc, attempt, attempts - 1, delay)
            sleep(delay)
    raise AssertionError("unreachable")
