# decoder.py
"""
Typed views over raw FlipSOL account bytes.

Every layout below is a versioned wire format: Anchor 8-byte discriminator,
then little-endian fields in declaration order. Decoders check length and
discriminator up front and raise AccountDecodeError instead of letting
struct errors escape. Pure functions, no I/O.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Optional, Tuple

import base58 as _b58
from solders.pubkey import Pubkey

from instructions import account_discriminator

DISCRIMINATOR_LEN = 8

HEADS = 0
TAILS = 1
UNSET_SIDE = 2

GLOBAL_STATE_MIN_LEN = 52   # disc + authority + current_round + rake_bps + jackpot_bps
ROUND_STATE_MIN_LEN = 42    # disc + round_id + heads + tails + ends_at + settled + winning_side
USER_BET_MIN_LEN = 58       # disc + user + round_id + side + amount + claimed
USER_BET_ACCOUNT_LEN = 8 + 32 + 8 + 1 + 8 + 1 + 1

GLOBAL_STATE_DISC = account_discriminator("GlobalState")
ROUND_STATE_DISC = account_discriminator("RoundState")
USER_BET_DISC = account_discriminator("UserBet")

USER_BET_ROUND_OFFSET = 40


class AccountDecodeError(ValueError):
    """Account data is too short or is not the expected account type."""


def side_label(side: Optional[int]) -> str:
    if side == HEADS:
        return "HEADS"
    if side == TAILS:
        return "TAILS"
    return "UNSET"


@dataclass(frozen=True)
class GlobalState:
    authority: Pubkey
    current_round_id: int
    rake_bps: int
    jackpot_bps: int
    treasury_bump: Optional[int] = None
    jackpot_bump: Optional[int] = None
    min_bet: Optional[int] = None


@dataclass(frozen=True)
class RoundState:
    round_id: int
    heads_total: int
    tails_total: int
    ends_at: int          # unix seconds
    settled: bool
    winning_side: int
    bump: Optional[int] = None

    @property
    def total_pot(self) -> int:
        return self.heads_total + self.tails_total

    @property
    def ends_at_ms(self) -> int:
        return self.ends_at * 1000

    @property
    def winner(self) -> Optional[int]:
        """Winning side, only once settled."""
        if self.settled and self.winning_side in (HEADS, TAILS):
            return self.winning_side
        return None

    @property
    def winning_total(self) -> int:
        if self.winner == HEADS:
            return self.heads_total
        if self.winner == TAILS:
            return self.tails_total
        return 0


@dataclass(frozen=True)
class UserBet:
    user: Pubkey
    round_id: int
    side: int
    amount: int
    claimed: bool
    bump: Optional[int] = None


def _check(data: bytes, min_len: int, disc: bytes, label: str) -> bytes:
    if data is None:
        raise AccountDecodeError(f"{label}: no data")
    data = bytes(data)
    if len(data) < min_len:
        raise AccountDecodeError(f"{label}: account data too small ({len(data)} < {min_len} bytes)")
    if data[:DISCRIMINATOR_LEN] != disc:
        raise AccountDecodeError(f"{label}: discriminator mismatch ({data[:DISCRIMINATOR_LEN].hex()})")
    return data


def _opt_u8(data: bytes, offset: int) -> Optional[int]:
    return data[offset] if len(data) > offset else None


def decode_global_state(data: bytes) -> GlobalState:
    data = _check(data, GLOBAL_STATE_MIN_LEN, GLOBAL_STATE_DISC, "GlobalState")
    current_round, rake_bps, jackpot_bps = struct.unpack_from("<QHH", data, 40)
    min_bet = struct.unpack_from("<Q", data, 54)[0] if len(data) >= 62 else None
    return GlobalState(
        authority=Pubkey.from_bytes(data[8:40]),
        current_round_id=current_round,
        rake_bps=rake_bps,
        jackpot_bps=jackpot_bps,
        treasury_bump=_opt_u8(data, 52),
        jackpot_bump=_opt_u8(data, 53),
        min_bet=min_bet,
    )


def decode_round_state(data: bytes) -> RoundState:
    data = _check(data, ROUND_STATE_MIN_LEN, ROUND_STATE_DISC, "RoundState")
    round_id, heads, tails, ends_at = struct.unpack_from("<QQQq", data, 8)
    return RoundState(
        round_id=round_id,
        heads_total=heads,
        tails_total=tails,
        ends_at=ends_at,
        settled=data[40] == 1,
        winning_side=data[41],
        bump=_opt_u8(data, 42),
    )


def decode_user_bet(data: bytes) -> UserBet:
    data = _check(data, USER_BET_MIN_LEN, USER_BET_DISC, "UserBet")
    round_id, side, amount = struct.unpack_from("<QBQ", data, USER_BET_ROUND_OFFSET)
    return UserBet(
        user=Pubkey.from_bytes(data[8:40]),
        round_id=round_id,
        side=side,
        amount=amount,
        claimed=data[57] == 1,
        bump=_opt_u8(data, 58),
    )


def user_bet_filters(round_id: int) -> Tuple[int, List[Tuple[int, str]]]:
    """
    getProgramAccounts filters for every UserBet of one round:
    (data size, [(offset, base58 bytes), ...]).
    """
    return USER_BET_ACCOUNT_LEN, [
        (0, _b58.b58encode(USER_BET_DISC).decode()),
        (USER_BET_ROUND_OFFSET, _b58.b58encode(struct.pack("<Q", int(round_id))).decode()),
    ]
