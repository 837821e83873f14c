# settlement.py
"""
Settlement Executor: builds, submits and confirms `close_round` for one round
and classifies what happened. One attempt per call; retries come from the
coordinator's next tick re-observing an expired, unsettled round.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from solders.keypair import Keypair

from instructions import close_round_ix, treasury_address
from ledger import (
    LedgerClient,
    LedgerError,
    LedgerTimeout,
    SubmissionError,
    extract_error_code,
    submission_error_from,
)

LOGGER = logging.getLogger("flipsol.settlement")

# Program error codes (Anchor custom errors start at 6000)
ROUND_SETTLED_CODE = 6002
ROUND_NOT_EXPIRED_CODE = 6004
ALREADY_SETTLED_CODE = 6005
NO_BETS_CODE = 6006

# Anchor framework account-constraint codes
ACCOUNT_DISCRIMINATOR_NOT_FOUND = 3001
ACCOUNT_OWNED_BY_WRONG_PROGRAM = 3007
ACCOUNT_NOT_INITIALIZED = 3012

BENIGN_CODES = frozenset({ROUND_SETTLED_CODE, ALREADY_SETTLED_CODE})
# program rejections that mean the ledger disagrees with what this tick saw
REJECTION_NAMES = {
    ROUND_NOT_EXPIRED_CODE: "RoundNotExpired",
    NO_BETS_CODE: "NoBets",
}
DEPENDENCY_CODES = frozenset({
    ACCOUNT_DISCRIMINATOR_NOT_FOUND,
    ACCOUNT_OWNED_BY_WRONG_PROGRAM,
    ACCOUNT_NOT_INITIALIZED,
})

# Minimum set of known message signatures, matched case-insensitively when the
# node gives us no structured code. Not exhaustive.
BENIGN_SIGNATURES = (
    "alreadysettled",
    "round already settled",
)
DEPENDENCY_SIGNATURES = (
    "jackpot",
    "accountnotinitialized",
    "0xbc4",
    "expected this account to be already initialized",
    "accountownedbywrongprogram",
    "0xbbf",
)


class ErrorCategory(str, enum.Enum):
    BENIGN_RACE = "benign_race"
    DEPENDENCY_ERROR = "dependency_error"
    REJECTED = "rejected"
    TRANSIENT_IO = "transient_io"


class SettlementOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    ALREADY_SETTLED = "already_settled"
    DEPENDENCY_ERROR = "dependency_error"
    FAILED = "failed"


@dataclass(frozen=True)
class SettlementResult:
    round_id: int
    outcome: SettlementOutcome
    signature: Optional[str] = None
    reason: str = ""
    category: Optional[ErrorCategory] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (SettlementOutcome.CONFIRMED, SettlementOutcome.ALREADY_SETTLED)


def error_code(exc: BaseException) -> Optional[int]:
    """Structured code if the client attached one, else one parsed from message and logs."""
    if isinstance(exc, LedgerTimeout):
        return None
    err = exc if isinstance(exc, SubmissionError) else submission_error_from(exc)
    return err.code if err.code is not None else extract_error_code(err.text())


def classify_submission_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, LedgerTimeout):
        return ErrorCategory.TRANSIENT_IO

    err = exc if isinstance(exc, SubmissionError) else submission_error_from(exc)
    code = error_code(err)
    if code in BENIGN_CODES:
        return ErrorCategory.BENIGN_RACE
    if code in DEPENDENCY_CODES:
        return ErrorCategory.DEPENDENCY_ERROR

    text = err.text().lower()
    if any(sig in text for sig in BENIGN_SIGNATURES):
        return ErrorCategory.BENIGN_RACE
    if any(sig in text for sig in DEPENDENCY_SIGNATURES):
        return ErrorCategory.DEPENDENCY_ERROR
    if code is not None:
        return ErrorCategory.REJECTED
    return ErrorCategory.TRANSIENT_IO


class SettlementExecutor:
    def __init__(self, ledger: LedgerClient, authority: Keypair) -> None:
        self.ledger = ledger
        self.authority = authority

    def build(self, round_id: int):
        return close_round_ix(self.ledger.program_id, self.authority.pubkey(), round_id)

    async def settle(self, round_id: int) -> SettlementResult:
        LOGGER.info("[settlement] closing round %s", round_id)
        ix = self.build(round_id)
        try:
            signature = await self.ledger.submit_and_confirm([ix], self.authority)
        except LedgerError as e:
            return await self._classify(round_id, e)

        LOGGER.info("[settlement] round %s closed tx=%s", round_id, signature)
        return SettlementResult(round_id, SettlementOutcome.CONFIRMED, signature=signature)

    async def _classify(self, round_id: int, exc: LedgerError) -> SettlementResult:
        category = classify_submission_error(exc)
        reason = str(exc)

        if category is ErrorCategory.BENIGN_RACE:
            LOGGER.info("[settlement] round %s was already settled elsewhere", round_id)
            return SettlementResult(
                round_id, SettlementOutcome.ALREADY_SETTLED,
                signature=getattr(exc, "signature", None), reason=reason, category=category,
            )

        if category is ErrorCategory.DEPENDENCY_ERROR:
            context = await self._describe_treasury()
            LOGGER.critical(
                "[settlement] %s: round %s deferred, auxiliary account problem: %s | %s",
                category.value, round_id, context, reason,
            )
            return SettlementResult(
                round_id, SettlementOutcome.DEPENDENCY_ERROR,
                reason=f"{context}; {reason}", category=category,
            )

        if category is ErrorCategory.REJECTED:
            code = error_code(exc)
            reason = f"{REJECTION_NAMES.get(code, f'program error {code}')}: {reason}"
        LOGGER.error("[settlement] %s: round %s not settled: %s", category.value, round_id, reason)
        return SettlementResult(round_id, SettlementOutcome.FAILED, reason=reason, category=category)

    async def _describe_treasury(self) -> str:
        program_id = self.ledger.program_id
        address = treasury_address(program_id)
        try:
            snapshot = await self.ledger.read_account(address)
        except LedgerError as e:
            return f"treasury={address} lookup failed ({e})"
        if snapshot is None:
            return f"treasury={address} missing (expected owner {program_id})"
        return f"treasury={address} owner={snapshot.owner} expected_owner={program_id}"
