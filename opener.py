# opener.py
"""
Round opening, driven by the first wager rather than by the coordinator loop.
Refuses to open while the current on-ledger round is still unsettled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from solders.keypair import Keypair

from decoder import AccountDecodeError, decode_global_state, decode_round_state
from events import EventEmitter, round_started
from instructions import global_state_address, round_address, start_round_ix
from ledger import LedgerClient, LedgerError

LOGGER = logging.getLogger("flipsol.opener")


@dataclass(frozen=True)
class StartResult:
    started: bool
    round_id: Optional[int] = None
    signature: Optional[str] = None
    reason: str = ""


class RoundOpener:
    def __init__(self, ledger: LedgerClient, authority: Keypair, emitter: EventEmitter) -> None:
        self.ledger = ledger
        self.authority = authority
        self.emitter = emitter

    async def start_round(self, duration_seconds: int) -> StartResult:
        if not 0 < duration_seconds <= 86_400:
            return StartResult(False, reason="duration must be within 1..86400 seconds")

        program_id = self.ledger.program_id
        try:
            snapshot = await self.ledger.read_account(global_state_address(program_id))
            if snapshot is None:
                LOGGER.error("[opener] cannot start round - global state not found")
                return StartResult(False, reason="ledger program not initialized")
            current = decode_global_state(snapshot.data).current_round_id

            if current > 0:
                round_snap = await self.ledger.read_account(round_address(program_id, current))
                if round_snap is not None:
                    state = decode_round_state(round_snap.data)
                    if not state.settled:
                        LOGGER.warning(
                            "[opener] cannot start round %s - round %s still active with pot %s",
                            current + 1, current, state.total_pot,
                        )
                        return StartResult(False, round_id=current, reason=f"round {current} is still active")
                else:
                    LOGGER.warning("[opener] round %s account not found; proceeding", current)
        except (LedgerError, AccountDecodeError) as e:
            LOGGER.error("[opener] pre-check failed: %s", e)
            return StartResult(False, reason=str(e))

        next_round = current + 1
        ix = start_round_ix(program_id, self.authority.pubkey(), next_round, duration_seconds)
        LOGGER.info("[opener] starting round %s (%ss)", next_round, duration_seconds)
        try:
            signature = await self.ledger.submit_and_confirm([ix], self.authority)
        except LedgerError as e:
            LOGGER.error("[opener] failed to start round %s: %s", next_round, e)
            return StartResult(False, round_id=next_round, reason=str(e))

        LOGGER.info("[opener] round %s started tx=%s", next_round, signature)
        self.emitter.emit(round_started(next_round, signature))
        return StartResult(True, round_id=next_round, signature=signature)
