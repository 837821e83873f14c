from __future__ import annotations

import inspect
import struct
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import base58 as _b58
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from decoder import GLOBAL_STATE_DISC, ROUND_STATE_DISC, UNSET_SIDE, USER_BET_DISC, decode_round_state
from instructions import (
    CLOSE_ROUND,
    find_address,
    global_state_address,
    round_address,
    user_bet_address,
)
from ledger import AccountSnapshot

PROGRAM_ID = Pubkey.from_string("BTU8kuz95iPH6XqBMp7a4VEsLhdco62s9H81Jt6G4GQL")
SOL = 1_000_000_000

NOW_S = 2_000_000_000
PAST_S = NOW_S - 120
FUTURE_S = NOW_S + 45


def fixed_clock(seconds: float = NOW_S) -> Callable[[], float]:
    return lambda: seconds


# ---------------- Account encoders ----------------
def encode_global_state(
    current_round: int,
    rake_bps: int = 200,
    jackpot_bps: int = 100,
    authority: Optional[Pubkey] = None,
) -> bytes:
    authority = authority or Pubkey.default()
    return (
        GLOBAL_STATE_DISC
        + bytes(authority)
        + struct.pack("<QHHBBQ", current_round, rake_bps, jackpot_bps, 254, 253, 10_000_000)
    )


def encode_round_state(
    round_id: int,
    heads: int,
    tails: int,
    ends_at: int,
    settled: bool = False,
    winning_side: int = UNSET_SIDE,
) -> bytes:
    return ROUND_STATE_DISC + struct.pack(
        "<QQQqBBB", round_id, heads, tails, ends_at, int(settled), winning_side, 255
    )


def encode_user_bet(user: Pubkey, round_id: int, side: int, amount: int, claimed: bool = False) -> bytes:
    return USER_BET_DISC + bytes(user) + struct.pack("<QBQBB", round_id, side, amount, int(claimed), 252)


# ---------------- Fake node ----------------
SubmitHandler = Callable[[List[Instruction]], object]


class FakeLedger:
    """In-memory stand-in for LedgerClient."""

    def __init__(self, program_id: Pubkey = PROGRAM_ID) -> None:
        self.program_id = program_id
        self.accounts: Dict[Pubkey, AccountSnapshot] = {}
        self.submitted: List[List[Instruction]] = []
        self.on_submit: Optional[SubmitHandler] = None
        self.read_error: Optional[Exception] = None
        self.enumerate_error: Optional[Exception] = None
        self.reads = 0
        self._sig = 0

    # --- state setup ---
    def put(self, address: Pubkey, data: bytes, owner: Optional[Pubkey] = None) -> None:
        self.accounts[address] = AccountSnapshot(address, bytes(data), owner or self.program_id, 1_000_000)

    def set_global(self, current_round: int, **kwargs) -> None:
        self.put(global_state_address(self.program_id), encode_global_state(current_round, **kwargs))

    def set_round(self, round_id: int, heads: int, tails: int, ends_at: int, **kwargs) -> None:
        self.put(round_address(self.program_id, round_id), encode_round_state(round_id, heads, tails, ends_at, **kwargs))

    def add_bet(self, user: Pubkey, round_id: int, side: int, amount: int, claimed: bool = False) -> None:
        self.put(
            user_bet_address(self.program_id, user, round_id),
            encode_user_bet(user, round_id, side, amount, claimed),
        )

    def round_state(self, round_id: int):
        return decode_round_state(self.accounts[round_address(self.program_id, round_id)].data)

    # --- LedgerClient surface ---
    def derive_address(self, *seeds: bytes) -> Pubkey:
        return find_address(self.program_id, *seeds)

    async def read_account(self, address: Pubkey) -> Optional[AccountSnapshot]:
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        return self.accounts.get(address)

    async def program_accounts(
        self,
        data_size: Optional[int],
        memcmp: Sequence[Tuple[int, str]] = (),
    ) -> List[AccountSnapshot]:
        if self.enumerate_error is not None:
            raise self.enumerate_error
        out = []
        for snap in self.accounts.values():
            if data_size is not None and len(snap.data) != data_size:
                continue
            if all(
                snap.data[offset:offset + len(raw)] == raw
                for offset, raw in ((o, _b58.b58decode(b)) for o, b in memcmp)
            ):
                out.append(snap)
        return out

    async def submit_and_confirm(self, instructions: Sequence[Instruction], signer: Keypair) -> str:
        instructions = list(instructions)
        self.submitted.append(instructions)
        self._sig += 1
        if self.on_submit is None:
            return f"sig{self._sig}"
        result = self.on_submit(instructions)
        if inspect.isawaitable(result):
            result = await result
        return str(result) if result is not None else f"sig{self._sig}"

    async def submit(self, instructions: Sequence[Instruction], signer: Keypair) -> str:
        return await self.submit_and_confirm(instructions, signer)

    async def confirm(self, signature: str) -> None:
        return None

    async def close(self) -> None:
        return None

    # --- inspection ---
    def settlement_submissions(self) -> List[Instruction]:
        return [ix for batch in self.submitted for ix in batch if bytes(ix.data) == CLOSE_ROUND]


def account_keys(ix: Instruction) -> Tuple[Pubkey, ...]:
    return tuple(meta.pubkey for meta in ix.accounts)


def settle_on_submit(ledger: FakeLedger, winning_side: int = 0) -> SubmitHandler:
    """Submit handler that applies close_round to the fake state."""

    def handler(instructions: List[Instruction]):
        for ix in instructions:
            if bytes(ix.data) != CLOSE_ROUND:
                continue
            round_pda = ix.accounts[1].pubkey
            state = decode_round_state(ledger.accounts[round_pda].data)
            ledger.put(round_pda, encode_round_state(
                state.round_id, state.heads_total, state.tails_total, state.ends_at,
                settled=True, winning_side=winning_side,
            ))
        return None

    return handler


def raising(exc: Exception) -> SubmitHandler:
    def handler(instructions: List[Instruction]):
        raise exc

    return handler
