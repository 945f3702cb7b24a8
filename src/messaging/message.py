"""Message envelope handed to consumers by a queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class Message:
    id: str  # stream entry id, "<ms>-<seq>"
    queue: str
    body: dict[str, Any] = field(compare=False)
    receive_count: int  # includes the current delivery
    receipt: str  # valid only for this delivery
    sent_at: float
    dead_reason: str = ""
    dead_at: float = 0.0
