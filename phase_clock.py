# phase_clock.py
"""
Wall-clock round timing. Pure and stateless; the UI mirrors the same
arithmetic so both sides agree on phases without asking the ledger.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Phase(str, enum.Enum):
    BETTING = "betting"
    SETTLING = "settling"


@dataclass(frozen=True)
class LogicalRound:
    round_id: int          # time slot index, not the on-ledger round id
    phase_start: int       # ms
    betting_deadline: int  # ms
    round_end: int         # ms
    phase: Phase

    def seconds_left_to_bet(self, now_ms: int) -> int:
        return max(0, -(-(self.betting_deadline - now_ms) // 1000))

    def to_dict(self) -> dict:
        return {
            "roundId": self.round_id,
            "phaseStart": self.phase_start,
            "bettingDeadline": self.betting_deadline,
            "roundEnd": self.round_end,
            "phase": self.phase.value,
        }


def logical_round(now_ms: int, round_duration_ms: int, betting_window_ms: int) -> LogicalRound:
    if round_duration_ms <= 0:
        raise ValueError("round_duration_ms must be > 0")
    if not 0 < betting_window_ms <= round_duration_ms:
        raise ValueError("betting_window_ms must be within 1..round_duration_ms")

    now_ms = int(now_ms)
    time_slot = now_ms // round_duration_ms
    slot_start = time_slot * round_duration_ms
    betting_end = slot_start + betting_window_ms
    slot_end = slot_start + round_duration_ms

    phase = Phase.BETTING if slot_start <= now_ms < betting_end else Phase.SETTLING
    return LogicalRound(
        round_id=time_slot,
        phase_start=slot_start,
        betting_deadline=betting_end,
        round_end=slot_end,
        phase=phase,
    )
