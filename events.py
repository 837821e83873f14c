# events.py
"""
In-process lifecycle notifications.

Best-effort only: listeners are called synchronously, in registration order,
and a failing listener is logged and skipped. There is no buffering and no
delivery guarantee; the analytics mirror is the durable record, not this.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger("flipsol.events")

ROUND_STARTED = "round_started"
ROUND_SETTLED = "round_settled"
ROUND_STATUS = "round_status"

Event = Dict[str, Any]
Listener = Callable[[Event], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def add_listener(self, callback: Listener) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Listener) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, event: Event) -> int:
        """Deliver to every listener; returns how many accepted it."""
        delivered = 0
        for callback in list(self._listeners):
            try:
                callback(event)
                delivered += 1
            except Exception:
                LOGGER.exception("[events] listener failed for %s", event.get("type"))
        return delivered


# ---------------- Event shapes ----------------
def round_started(round_id: int, signature: str) -> Event:
    return {
        "type": ROUND_STARTED,
        "roundId": round_id,
        "transactionHash": signature,
        "timestamp": _now_iso(),
    }


def round_settled(
    round_id: int,
    signature: Optional[str],
    heads_total: int,
    tails_total: int,
    winning_side: Optional[int],
    winner: str,
) -> Event:
    return {
        "type": ROUND_SETTLED,
        "roundId": round_id,
        "transactionHash": signature,
        "headsTotal": heads_total,
        "tailsTotal": tails_total,
        "totalPot": heads_total + tails_total,
        "winningSide": winning_side,
        "winner": winner,
        "timestamp": _now_iso(),
    }


def round_status(
    round_id: int,
    settled: bool,
    heads_total: int,
    tails_total: int,
    winning_side: int,
    ends_at: int,
) -> Event:
    return {
        "type": ROUND_STATUS,
        "roundId": round_id,
        "settled": settled,
        "headsTotal": heads_total,
        "tailsTotal": tails_total,
        "totalPot": heads_total + tails_total,
        "winningSide": winning_side,
        "endsAt": ends_at,
        "timestamp": _now_iso(),
    }
