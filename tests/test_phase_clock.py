"""Wall-clock round slots."""

import pytest

from phase_clock import Phase, logical_round


class TestLogicalRound:
    def test_slot_boundaries(self) -> None:
        slot = logical_round(125_000, 60_000, 60_000)
        assert slot.round_id == 2
        assert slot.phase_start == 120_000
        assert slot.betting_deadline == 180_000
        assert slot.round_end == 180_000
        assert slot.phase is Phase.BETTING

    def test_exact_boundary_starts_new_slot(self) -> None:
        slot = logical_round(180_000, 60_000, 60_000)
        assert slot.round_id == 3
        assert slot.phase_start == 180_000

    def test_settling_phase_after_betting_window(self) -> None:
        slot = logical_round(150_000, 60_000, 20_000)
        assert slot.phase is Phase.SETTLING
        assert slot.seconds_left_to_bet(150_000) == 0

    def test_seconds_left_rounds_up(self) -> None:
        slot = logical_round(120_500, 60_000, 60_000)
        assert slot.seconds_left_to_bet(120_500) == 60

    def test_is_deterministic(self) -> None:
        assert logical_round(1_700_000_000_123, 60_000, 45_000) == logical_round(
            1_700_000_000_123, 60_000, 45_000
        )

    def test_to_dict_uses_wire_names(self) -> None:
        data = logical_round(0, 60_000, 60_000).to_dict()
        assert data == {
            "roundId": 0,
            "phaseStart": 0,
            "bettingDeadline": 60_000,
            "roundEnd": 60_000,
            "phase": "betting",
        }

    def test_negative_now_floors_to_earlier_slot(self) -> None:
        slot = logical_round(-1, 60_000, 20_000)
        assert slot.round_id == -1
        assert slot.phase_start == -60_000
        assert slot.phase is Phase.SETTLING

    @pytest.mark.parametrize(
        "duration, window",
        [(0, 0), (-1, 10), (60_000, 0), (60_000, 60_001)],
    )
    def test_invalid_configuration_rejected(self, duration, window) -> None:
        with pytest.raises(ValueError):
            logical_round(1_000, duration, window)


# =====================================================================
# Invariants over a sweep of instants
# =====================================================================

TIMINGS = [(60_000, 60_000), (60_000, 45_000), (60_000, 1), (7, 3), (1, 1)]


def _instants(duration: int, window: int):
    points = {-2 * duration - 1, -duration, -1, 0, 1, 1_700_000_000_123}
    for base in (0, 5 * duration, -3 * duration):
        points.update({
            base, base + 1, base - 1,
            base + window - 1, base + window, base + window + 1,
            base + duration - 1, base + duration,
        })
    return sorted(points)


SWEEP = [
    (duration, window, now)
    for duration, window in TIMINGS
    for now in _instants(duration, window)
]


@pytest.mark.parametrize("duration, window, now", SWEEP)
def test_slot_invariants_hold_for_any_instant(duration, window, now) -> None:
    slot = logical_round(now, duration, window)
    assert slot.phase_start <= now < slot.round_end
    assert slot.phase_start < slot.betting_deadline <= slot.round_end
    assert slot.round_end - slot.phase_start == duration
    in_window = slot.phase_start <= now < slot.betting_deadline
    # exactly one phase holds
    assert (slot.phase is Phase.BETTING) == in_window
    assert (slot.phase is Phase.SETTLING) == (not in_window)
