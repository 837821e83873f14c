# payouts.py
"""
Winnings Distributor: after a round settles, credit every winning bet with one
`distribute_to_credit` transaction.

Best-effort and auditable rather than guaranteed: winners are processed with
bounded parallelism, each credit succeeds or fails on its own, and failures are
counted and logged but not retried here. Re-running distribution for a round
is safe because already-claimed bets are skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from solders.keypair import Keypair

from decoder import (
    AccountDecodeError,
    GlobalState,
    RoundState,
    UserBet,
    decode_global_state,
    decode_round_state,
    decode_user_bet,
    side_label,
    user_bet_filters,
)
from instructions import distribute_to_credit_ix, global_state_address, round_address
from ledger import LedgerClient, LedgerError

LOGGER = logging.getLogger("flipsol.payouts")

BPS_DENOMINATOR = 10_000


# ---------------- Settlement math ----------------
def winner_pool(total_pot: int, rake_bps: int, jackpot_bps: int) -> int:
    rake = total_pot * rake_bps // BPS_DENOMINATOR
    jackpot = total_pot * jackpot_bps // BPS_DENOMINATOR
    return total_pot - rake - jackpot


def payout_for(amount: int, winning_total: int, pool: int) -> int:
    """Proportional share of the winner pool, floored like the program does."""
    if winning_total <= 0 or amount <= 0:
        return 0
    return amount * pool // winning_total


# ---------------- Results ----------------
@dataclass(frozen=True)
class CreditResult:
    user: str
    amount: int
    expected_payout: Optional[int]
    signature: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DistributionReport:
    round_id: int
    round_state: Optional[RoundState] = None
    participant_count: int = 0
    results: List[CreditResult] = field(default_factory=list)
    skipped_claimed: int = 0
    reason: str = ""

    @property
    def winners(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


class WinningsDistributor:
    def __init__(
        self,
        ledger: LedgerClient,
        authority: Keypair,
        *,
        concurrency: int = 4,
        credit_timeout: float = 60.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.ledger = ledger
        self.authority = authority
        self.concurrency = concurrency
        self.credit_timeout = credit_timeout

    async def _read_round(self, round_id: int) -> Optional[RoundState]:
        snapshot = await self.ledger.read_account(round_address(self.ledger.program_id, round_id))
        if snapshot is None:
            return None
        return decode_round_state(snapshot.data)

    async def _read_global(self) -> Optional[GlobalState]:
        try:
            snapshot = await self.ledger.read_account(global_state_address(self.ledger.program_id))
            return decode_global_state(snapshot.data) if snapshot else None
        except (LedgerError, AccountDecodeError) as e:
            LOGGER.warning("[payouts] global state unavailable, payout amounts unknown: %s", e)
            return None

    async def round_bets(self, round_id: int) -> List[UserBet]:
        data_size, memcmp = user_bet_filters(round_id)
        bets: List[UserBet] = []
        for snapshot in await self.ledger.program_accounts(data_size, memcmp):
            try:
                bet = decode_user_bet(snapshot.data)
            except AccountDecodeError as e:
                LOGGER.debug("[payouts] skipping %s: %s", snapshot.address, e)
                continue
            if bet.round_id == round_id:
                bets.append(bet)
        return bets

    @staticmethod
    def split_winners(bets: List[UserBet], winning_side: int) -> Tuple[List[UserBet], int]:
        """Unclaimed winning bets, plus how many winners were already claimed."""
        winners = [b for b in bets if b.side == winning_side]
        pending = [b for b in winners if not b.claimed]
        return pending, len(winners) - len(pending)

    async def distribute(self, round_id: int) -> DistributionReport:
        LOGGER.info("[payouts] starting credit distribution for round %s", round_id)
        report = DistributionReport(round_id=round_id)

        try:
            state = await self._read_round(round_id)
        except (LedgerError, AccountDecodeError) as e:
            report.reason = f"round state unreadable: {e}"
            LOGGER.warning("[payouts] round %s: %s", round_id, report.reason)
            return report
        report.round_state = state
        if state is None or state.winner is None:
            report.reason = "round not settled yet"
            LOGGER.warning("[payouts] round %s not settled yet, skipping distribution", round_id)
            return report

        try:
            bets = await self.round_bets(round_id)
        except LedgerError as e:
            report.reason = f"bet enumeration failed: {e}"
            LOGGER.error("[payouts] round %s: %s", round_id, report.reason)
            return report
        report.participant_count = len(bets)

        pending, report.skipped_claimed = self.split_winners(bets, state.winner)
        LOGGER.info(
            "[payouts] round %s %s wins: %d winners (%d already claimed)",
            round_id, side_label(state.winner), len(pending) + report.skipped_claimed,
            report.skipped_claimed,
        )
        if not pending:
            return report

        global_state = await self._read_global()
        pool = (
            winner_pool(state.total_pot, global_state.rake_bps, global_state.jackpot_bps)
            if global_state else None
        )

        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(bet: UserBet) -> CreditResult:
            async with semaphore:
                return await self._credit_one(round_id, bet, state, pool)

        report.results = list(await asyncio.gather(*(worker(b) for b in pending)))
        LOGGER.info(
            "[payouts] credit distribution complete for round %s: %d succeeded, %d failed",
            round_id, report.succeeded, report.failed,
        )
        return report

    async def _credit_one(
        self,
        round_id: int,
        bet: UserBet,
        state: RoundState,
        pool: Optional[int],
    ) -> CreditResult:
        expected = payout_for(bet.amount, state.winning_total, pool) if pool is not None else None
        user = str(bet.user)
        ix = distribute_to_credit_ix(self.ledger.program_id, self.authority.pubkey(), bet.user, round_id)
        try:
            signature = await asyncio.wait_for(
                self.ledger.submit_and_confirm([ix], self.authority),
                timeout=self.credit_timeout,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            LOGGER.error("[payouts] payout_failure: credit to %s for round %s timed out", user, round_id)
            return CreditResult(user, bet.amount, expected, error="timeout")
        except Exception as e:
            LOGGER.error("[payouts] payout_failure: credit to %s for round %s failed: %s", user, round_id, e)
            return CreditResult(user, bet.amount, expected, error=str(e) or type(e).__name__)

        LOGGER.info("[payouts] credited %s for round %s (expected %s) tx=%s", user, round_id, expected, signature)
        return CreditResult(user, bet.amount, expected, signature=signature)
