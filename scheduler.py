# scheduler.py
"""
Round Coordinator.

One reconciliation pass per tick: read GlobalState and the current RoundState,
compare the round's expiry with the wall clock, and decide whether anything has
to happen. The only mutating action (settlement) is gated on a freshly read
`settled == False`, so repeating a tick against unchanged ledger state is a
no-op. Failed settlements are not retried inside a tick; the next tick sees the
same expired, unsettled round and tries again.

Ticks are single-flight: a tick that fires while another is running is
dropped, not queued. Winnings distribution runs detached after a short delay.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional, Set

from db import AnalyticsMirror, SettlementRecord
from decoder import AccountDecodeError, RoundState, decode_global_state, decode_round_state, side_label
from events import EventEmitter, round_settled, round_status
from instructions import global_state_address, round_address
from ledger import LedgerClient, LedgerError
from payouts import DistributionReport, WinningsDistributor
from phase_clock import logical_round
from settlement import SettlementExecutor, SettlementOutcome, SettlementResult

LOGGER = logging.getLogger("flipsol.scheduler")

LAMPORTS_PER_SOL = 1_000_000_000


def _sol(lamports: int) -> str:
    return f"{lamports / LAMPORTS_PER_SOL:.3f} SOL"


class Decision(str, enum.Enum):
    NOT_INITIALIZED = "not_initialized"
    WAITING_FOR_FIRST_WAGER = "waiting_for_first_wager"
    ROUND_NOT_VISIBLE = "round_not_visible"
    UNREADABLE = "unreadable"
    CORRUPTED_TIMESTAMP = "corrupted_timestamp"
    ALREADY_SETTLED = "already_settled"
    EXPIRED_NO_WAGERS = "expired_no_wagers"
    SETTLED = "settled"
    SETTLEMENT_DEFERRED = "settlement_deferred"
    SETTLEMENT_FAILED = "settlement_failed"
    ACTIVE = "active"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TickResult:
    decision: Decision
    activity: str
    round_id: Optional[int] = None
    settlement: Optional[SettlementResult] = None


@dataclass(frozen=True)
class CoordinatorStatus:
    is_running: bool = False
    last_activity: str = "Initializing..."
    last_check_timestamp: int = 0
    rounds_processed: int = 0
    rounds_closed: int = 0
    recent_errors: tuple = ()
    ticks_skipped: int = 0
    last_decision: Optional[str] = None
    last_round_id: Optional[int] = None
    config: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "isRunning": self.is_running,
            "lastActivity": self.last_activity,
            "lastCheckTimestamp": self.last_check_timestamp,
            "roundsProcessed": self.rounds_processed,
            "roundsClosed": self.rounds_closed,
            "recentErrors": list(self.recent_errors),
            "ticksSkipped": self.ticks_skipped,
            "lastDecision": self.last_decision,
            "lastRoundId": self.last_round_id,
            "config": dict(self.config),
        }


class RoundCoordinator:
    def __init__(
        self,
        ledger: LedgerClient,
        executor: SettlementExecutor,
        distributor: WinningsDistributor,
        emitter: EventEmitter,
        *,
        mirror: Optional[AnalyticsMirror] = None,
        round_duration_ms: int = 60_000,
        betting_window_ms: int = 60_000,
        check_interval_s: float = 30.0,
        distribution_delay_s: float = 3.0,
        max_recent_errors: int = 10,
        min_valid_ends_at: int = 1_000_000_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.distributor = distributor
        self.emitter = emitter
        self.mirror = mirror
        self.round_duration_ms = round_duration_ms
        self.betting_window_ms = betting_window_ms
        self.check_interval_s = check_interval_s
        self.distribution_delay_s = distribution_delay_s
        self.min_valid_ends_at = min_valid_ends_at
        self._clock = clock

        self._running = False
        self._tick_in_progress = False
        self._loop_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self._last_activity = "Initializing..."
        self._last_check = 0
        self._rounds_processed = 0
        self._rounds_closed = 0
        self._ticks_skipped = 0
        self._last_decision: Optional[Decision] = None
        self._last_round_id: Optional[int] = None
        self._errors: Deque[str] = deque(maxlen=max(1, max_recent_errors))
        self._snapshot = CoordinatorStatus(config=self._config())

    # =========================================================
    # Status
    # =========================================================
    def _config(self) -> Dict[str, float]:
        return {
            "roundDurationMs": self.round_duration_ms,
            "bettingWindowMs": self.betting_window_ms,
            "checkIntervalS": self.check_interval_s,
            "distributionDelayS": self.distribution_delay_s,
        }

    def _publish(self) -> None:
        # readers only ever see a whole snapshot
        self._snapshot = CoordinatorStatus(
            is_running=self._running,
            last_activity=self._last_activity,
            last_check_timestamp=self._last_check,
            rounds_processed=self._rounds_processed,
            rounds_closed=self._rounds_closed,
            recent_errors=tuple(self._errors),
            ticks_skipped=self._ticks_skipped,
            last_decision=self._last_decision.value if self._last_decision else None,
            last_round_id=self._last_round_id,
            config=self._config(),
        )

    def status(self) -> CoordinatorStatus:
        return self._snapshot

    @property
    def is_running(self) -> bool:
        return self._running

    def _record_error(self, category: str, message: str) -> None:
        ts = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        self._errors.append(f"{ts}: [{category}] {message}")

    # =========================================================
    # Lifecycle
    # =========================================================
    def start(self) -> None:
        if self._running:
            LOGGER.warning("[round_scheduler] already running")
            return
        self._running = True
        LOGGER.info(
            "[round_scheduler] starting (check every %.0fs, round %dms, betting %dms)",
            self.check_interval_s, self.round_duration_ms, self.betting_window_ms,
        )
        self._loop_task = asyncio.create_task(self._run())
        self._publish()

    async def stop(self) -> None:
        if not self._running:
            LOGGER.warning("[round_scheduler] not running")
            return
        self._running = False
        tasks = [t for t in (self._loop_task, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._background.clear()
        self._publish()
        LOGGER.info("[round_scheduler] stopped")

    async def _run(self) -> None:
        # fixed-rate timer; ticks run as their own tasks so a slow one
        # makes the next one skip instead of delaying the schedule
        while self._running:
            self._spawn(self.tick())
            await asyncio.sleep(self.check_interval_s)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for ticks and post-settlement jobs started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================
    # Tick
    # =========================================================
    async def tick(self) -> TickResult:
        if self._tick_in_progress:
            self._ticks_skipped += 1
            LOGGER.debug("[round_scheduler] previous check still running, skipping")
            self._publish()
            return TickResult(Decision.SKIPPED, "Previous check still running")

        self._tick_in_progress = True
        now_ms = int(self._clock() * 1000)
        self._last_check = now_ms
        try:
            result = await self._reconcile(now_ms)
        except LedgerError as e:
            LOGGER.warning("[round_scheduler] transient_io: %s", e)
            self._record_error("transient_io", str(e))
            result = TickResult(Decision.LEDGER_UNAVAILABLE, f"Ledger unavailable: {e}")
        except Exception as e:
            LOGGER.exception("[round_scheduler] error in round cycle")
            self._record_error("error", str(e) or type(e).__name__)
            result = TickResult(Decision.ERROR, f"Error: {e}")
        finally:
            self._tick_in_progress = False

        self._last_activity = result.activity
        self._last_decision = result.decision
        self._publish()
        return result

    async def _read_round(self, round_id: int) -> Optional[RoundState]:
        snapshot = await self.ledger.read_account(round_address(self.ledger.program_id, round_id))
        return decode_round_state(snapshot.data) if snapshot else None

    async def _reconcile(self, now_ms: int) -> TickResult:
        snapshot = await self.ledger.read_account(global_state_address(self.ledger.program_id))
        if snapshot is None:
            LOGGER.warning("[round_scheduler] missing_data: global state not found - program not initialized")
            return TickResult(Decision.NOT_INITIALIZED, "Ledger program not initialized")
        try:
            global_state = decode_global_state(snapshot.data)
        except AccountDecodeError as e:
            LOGGER.error("[round_scheduler] missing_data: %s", e)
            self._record_error("missing_data", str(e))
            return TickResult(Decision.UNREADABLE, f"Global state unreadable: {e}")

        round_id = global_state.current_round_id
        if round_id == 0:
            return TickResult(Decision.WAITING_FOR_FIRST_WAGER, "No rounds created yet - waiting for first wager")

        try:
            state = await self._read_round(round_id)
        except AccountDecodeError as e:
            LOGGER.error("[round_scheduler] missing_data: round %s: %s", round_id, e)
            self._record_error("missing_data", f"round {round_id}: {e}")
            return TickResult(Decision.UNREADABLE, f"Round {round_id} unreadable: {e}", round_id)
        if state is None:
            LOGGER.info("[round_scheduler] round %s referenced by global state not visible yet", round_id)
            return TickResult(
                Decision.ROUND_NOT_VISIBLE,
                f"Round {round_id} referenced by global state not yet visible",
                round_id,
            )

        if round_id != self._last_round_id:
            self._rounds_processed += 1
            self._last_round_id = round_id

        self.emitter.emit(round_status(
            round_id, state.settled, state.heads_total, state.tails_total,
            state.winning_side, state.ends_at,
        ))

        if state.ends_at < self.min_valid_ends_at:
            LOGGER.warning(
                "[round_scheduler] missing_data: round %s has corrupted timestamp %s, skipping",
                round_id, state.ends_at,
            )
            return TickResult(
                Decision.CORRUPTED_TIMESTAMP,
                f"Round {round_id} has invalid timestamp ({state.ends_at}) - skipping",
                round_id,
            )

        pot = state.total_pot
        is_expired = now_ms >= state.ends_at_ms

        if state.settled:
            return TickResult(Decision.ALREADY_SETTLED, f"Round {round_id} settled - pot {_sol(pot)}", round_id)

        if is_expired and pot == 0:
            LOGGER.info("[round_scheduler] round %s expired with no wagers - skipping settlement", round_id)
            return TickResult(
                Decision.EXPIRED_NO_WAGERS,
                f"Round {round_id} expired with no wagers - skipped settlement",
                round_id,
            )

        if is_expired:
            return await self._settle(round_id, state)

        slot = logical_round(now_ms, self.round_duration_ms, self.betting_window_ms)
        time_left = max(0, state.ends_at_ms - now_ms) / 1000
        return TickResult(
            Decision.ACTIVE,
            f"Round {round_id} active - {time_left:.0f}s left, pot {_sol(pot)} "
            f"(clock slot {slot.round_id}, {slot.phase.value})",
            round_id,
        )

    async def _settle(self, round_id: int, state: RoundState) -> TickResult:
        LOGGER.info("[round_scheduler] settling round %s with %s pot", round_id, _sol(state.total_pot))
        result = await self.executor.settle(round_id)

        if result.outcome is SettlementOutcome.DEPENDENCY_ERROR:
            self._record_error("dependency_error", f"round {round_id}: {result.reason}")
            return TickResult(
                Decision.SETTLEMENT_DEFERRED,
                f"Settlement of round {round_id} deferred - auxiliary account problem",
                round_id, result,
            )
        if not result.ok:
            category = result.category.value if result.category else "error"
            self._record_error(category, f"round {round_id}: {result.reason}")
            return TickResult(
                Decision.SETTLEMENT_FAILED,
                f"Failed to settle round {round_id} ({category})",
                round_id, result,
            )

        if result.outcome is SettlementOutcome.CONFIRMED:
            self._rounds_closed += 1

        settled_state = await self._reread_after_settlement(round_id)
        after = settled_state or state
        winner = settled_state.winner if settled_state else None
        self.emitter.emit(round_settled(
            round_id, result.signature, after.heads_total, after.tails_total,
            winner, side_label(winner),
        ))
        self._spawn(self._post_settlement(round_id, result.signature))

        tx = (result.signature or "")[:8]
        return TickResult(
            Decision.SETTLED,
            f"Settled round {round_id} - {side_label(winner)} wins, tx {tx or 'n/a'}",
            round_id, result,
        )

    async def _reread_after_settlement(self, round_id: int) -> Optional[RoundState]:
        try:
            state = await self._read_round(round_id)
        except (LedgerError, AccountDecodeError) as e:
            LOGGER.info("[round_scheduler] round %s re-read after settlement failed: %s", round_id, e)
            return None
        return state if state and state.settled else None

    # =========================================================
    # Post-settlement
    # =========================================================
    async def _post_settlement(self, round_id: int, signature: Optional[str]) -> None:
        await asyncio.sleep(self.distribution_delay_s)
        await self.redistribute(round_id, signature)

    async def redistribute(self, round_id: int, signature: Optional[str] = None) -> DistributionReport:
        """
        Run winnings distribution for one round now, then refresh its mirror
        row. Safe to repeat; a run that stopped early leaves the mirror alone.
        """
        try:
            report = await self.distributor.distribute(round_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.exception("[round_scheduler] distribution for round %s failed", round_id)
            return DistributionReport(round_id=round_id, reason=str(e))
        await self._mirror_settlement(report, signature)
        return report

    async def _mirror_settlement(self, report: DistributionReport, signature: Optional[str]) -> None:
        state = report.round_state
        if self.mirror is None or state is None or not state.settled:
            return
        if report.reason:
            # participant count is unknown until bets were enumerated
            LOGGER.info("[mirror] round %s not recorded: %s", report.round_id, report.reason)
            return
        record = SettlementRecord(
            round_id=report.round_id,
            winning_side=state.winner,
            heads_total=state.heads_total,
            tails_total=state.tails_total,
            participant_count=report.participant_count,
            signature=signature,
        )
        try:
            await self.mirror.record_settlement(record, report.results)
        except Exception:
            LOGGER.exception("[mirror] failed to record settlement for round %s", report.round_id)
