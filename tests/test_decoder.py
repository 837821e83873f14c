"""Account layouts, PDAs and instruction encoding."""

import hashlib
import struct

import base58
import pytest
from solders.keypair import Keypair
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from decoder import (
    GLOBAL_STATE_DISC,
    ROUND_STATE_DISC,
    USER_BET_ACCOUNT_LEN,
    AccountDecodeError,
    decode_global_state,
    decode_round_state,
    decode_user_bet,
    side_label,
    user_bet_filters,
)
from instructions import (
    CLOSE_ROUND,
    START_ROUND,
    close_round_ix,
    distribute_to_credit_ix,
    global_state_address,
    round_address,
    start_round_ix,
    treasury_address,
    user_bet_address,
    user_credit_address,
)
from tests.helpers import (
    PROGRAM_ID,
    SOL,
    account_keys,
    encode_global_state,
    encode_round_state,
    encode_user_bet,
)


# =====================================================================
# Decoding
# =====================================================================


class TestGlobalState:
    def test_decodes_fields(self) -> None:
        authority = Keypair().pubkey()
        state = decode_global_state(encode_global_state(12, 250, 50, authority))
        assert state.authority == authority
        assert state.current_round_id == 12
        assert state.rake_bps == 250
        assert state.jackpot_bps == 50
        assert state.min_bet == 10_000_000

    def test_short_layout_without_optional_tail(self) -> None:
        data = encode_global_state(3)[:52]
        state = decode_global_state(data)
        assert state.current_round_id == 3
        assert state.treasury_bump is None
        assert state.min_bet is None

    def test_too_short(self) -> None:
        with pytest.raises(AccountDecodeError, match="too small"):
            decode_global_state(GLOBAL_STATE_DISC + b"\x00" * 10)

    def test_wrong_discriminator(self) -> None:
        data = encode_round_state(1, 0, 0, 0) + b"\x00" * 20
        with pytest.raises(AccountDecodeError, match="discriminator"):
            decode_global_state(data)


class TestRoundState:
    def test_decodes_settled_round(self) -> None:
        state = decode_round_state(
            encode_round_state(5, 3 * SOL, SOL, 1_900_000_000, settled=True, winning_side=1)
        )
        assert state.round_id == 5
        assert state.total_pot == 4 * SOL
        assert state.ends_at_ms == 1_900_000_000_000
        assert state.settled is True
        assert state.winner == 1
        assert state.winning_total == SOL

    def test_unsettled_round_has_no_winner(self) -> None:
        state = decode_round_state(encode_round_state(5, SOL, SOL, 1_900_000_000, winning_side=0))
        assert state.winner is None
        assert state.winning_total == 0

    def test_unset_side_after_settlement_has_no_winner(self) -> None:
        state = decode_round_state(encode_round_state(5, 0, 0, 1_900_000_000, settled=True))
        assert state.winner is None

    def test_negative_ends_at_is_signed(self) -> None:
        state = decode_round_state(encode_round_state(1, 0, 0, -5))
        assert state.ends_at == -5

    def test_truncated(self) -> None:
        with pytest.raises(AccountDecodeError):
            decode_round_state(ROUND_STATE_DISC + b"\x01" * 20)

    def test_none(self) -> None:
        with pytest.raises(AccountDecodeError, match="no data"):
            decode_round_state(None)


class TestUserBet:
    def test_decodes_fields(self) -> None:
        user = Keypair().pubkey()
        data = encode_user_bet(user, 9, 1, 2 * SOL, claimed=True)
        assert len(data) == USER_BET_ACCOUNT_LEN
        bet = decode_user_bet(data)
        assert bet.user == user
        assert bet.round_id == 9
        assert bet.side == 1
        assert bet.amount == 2 * SOL
        assert bet.claimed is True

    def test_filters_match_encoded_account(self) -> None:
        data = encode_user_bet(Keypair().pubkey(), 77, 0, SOL)
        size, memcmp = user_bet_filters(77)
        assert size == len(data)
        for offset, encoded in memcmp:
            raw = base58.b58decode(encoded)
            assert data[offset:offset + len(raw)] == raw

    def test_filters_differ_per_round(self) -> None:
        assert user_bet_filters(1)[1][1] != user_bet_filters(2)[1][1]


def test_side_labels() -> None:
    assert side_label(0) == "HEADS"
    assert side_label(1) == "TAILS"
    assert side_label(2) == "UNSET"
    assert side_label(None) == "UNSET"


# =====================================================================
# Instructions
# =====================================================================


class TestInstructions:
    def test_discriminators_follow_anchor_convention(self) -> None:
        assert CLOSE_ROUND == hashlib.sha256(b"global:close_round").digest()[:8]
        assert GLOBAL_STATE_DISC == hashlib.sha256(b"account:GlobalState").digest()[:8]

    def test_round_address_depends_on_id(self) -> None:
        assert round_address(PROGRAM_ID, 1) != round_address(PROGRAM_ID, 2)
        assert round_address(PROGRAM_ID, 1) == round_address(PROGRAM_ID, 1)

    def test_close_round_account_order(self) -> None:
        authority = Keypair().pubkey()
        ix = close_round_ix(PROGRAM_ID, authority, 5)
        assert bytes(ix.data) == CLOSE_ROUND
        assert ix.program_id == PROGRAM_ID
        assert account_keys(ix) == (
            global_state_address(PROGRAM_ID),
            round_address(PROGRAM_ID, 5),
            treasury_address(PROGRAM_ID),
            authority,
            SYSTEM_PROGRAM_ID,
        )
        flags = [(m.is_signer, m.is_writable) for m in ix.accounts]
        assert flags == [(False, False), (False, True), (False, True), (True, True), (False, False)]

    def test_start_round_encodes_duration(self) -> None:
        ix = start_round_ix(PROGRAM_ID, Keypair().pubkey(), 6, 90)
        data = bytes(ix.data)
        assert data[:8] == START_ROUND
        assert struct.unpack("<q", data[8:])[0] == 90
        assert ix.accounts[1].pubkey == round_address(PROGRAM_ID, 6)

    def test_distribute_to_credit_accounts(self) -> None:
        authority, user = Keypair().pubkey(), Keypair().pubkey()
        keys = account_keys(distribute_to_credit_ix(PROGRAM_ID, authority, user, 3))
        assert keys[2] == user_bet_address(PROGRAM_ID, user, 3)
        assert keys[3] == user_credit_address(PROGRAM_ID, user)
        assert keys[4] == authority
