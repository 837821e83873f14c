# instructions.py
"""
Program-derived addresses and raw instruction builders for the FlipSOL program.

Instructions are built by hand (no IDL client): 8-byte Anchor discriminator
followed by little-endian arguments, with the account list in the exact order
the program declares it.
"""

from __future__ import annotations

import hashlib
import struct

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

# ---------- Seeds ----------
GLOBAL_STATE_SEED = b"global_state"
TREASURY_SEED = b"treasury"
ROUND_SEED = b"round"
USER_BET_SEED = b"user_bet"
USER_CREDIT_SEED = b"user_credit"


def instruction_discriminator(name: str) -> bytes:
    """Anchor: first 8 bytes of sha256("global:<snake_case_name>")."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def account_discriminator(name: str) -> bytes:
    """Anchor: first 8 bytes of sha256("account:<StructName>")."""
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


CLOSE_ROUND = instruction_discriminator("close_round")
START_ROUND = instruction_discriminator("start_round")
DISTRIBUTE_TO_CREDIT = instruction_discriminator("distribute_to_credit")


def round_id_seed(round_id: int) -> bytes:
    return struct.pack("<Q", int(round_id))


# ---------------- PDAs ----------------
def find_address(program_id: Pubkey, *seeds: bytes) -> Pubkey:
    address, _bump = Pubkey.find_program_address(list(seeds), program_id)
    return address


def global_state_address(program_id: Pubkey) -> Pubkey:
    return find_address(program_id, GLOBAL_STATE_SEED)


def treasury_address(program_id: Pubkey) -> Pubkey:
    return find_address(program_id, TREASURY_SEED)


def round_address(program_id: Pubkey, round_id: int) -> Pubkey:
    return find_address(program_id, ROUND_SEED, round_id_seed(round_id))


def user_bet_address(program_id: Pubkey, user: Pubkey, round_id: int) -> Pubkey:
    return find_address(program_id, USER_BET_SEED, bytes(user), round_id_seed(round_id))


def user_credit_address(program_id: Pubkey, user: Pubkey) -> Pubkey:
    return find_address(program_id, USER_CREDIT_SEED, bytes(user))


# ---------------- Builders ----------------
def close_round_ix(program_id: Pubkey, authority: Pubkey, round_id: int) -> Instruction:
    """
    Settlement. Account order is fixed by the program:
    global (ro), round (rw), treasury (rw), authority (rw, signer), system program.
    The jackpot slot was removed from the program and must not be passed.
    """
    accounts = [
        AccountMeta(global_state_address(program_id), is_signer=False, is_writable=False),
        AccountMeta(round_address(program_id, round_id), is_signer=False, is_writable=True),
        AccountMeta(treasury_address(program_id), is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, CLOSE_ROUND, accounts)


def start_round_ix(
    program_id: Pubkey,
    authority: Pubkey,
    next_round_id: int,
    duration_seconds: int,
) -> Instruction:
    accounts = [
        AccountMeta(global_state_address(program_id), is_signer=False, is_writable=True),
        AccountMeta(round_address(program_id, next_round_id), is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = START_ROUND + struct.pack("<q", int(duration_seconds))
    return Instruction(program_id, data, accounts)


def distribute_to_credit_ix(
    program_id: Pubkey,
    authority: Pubkey,
    user: Pubkey,
    round_id: int,
) -> Instruction:
    accounts = [
        AccountMeta(global_state_address(program_id), is_signer=False, is_writable=False),
        AccountMeta(round_address(program_id, round_id), is_signer=False, is_writable=True),
        AccountMeta(user_bet_address(program_id, user, round_id), is_signer=False, is_writable=True),
        AccountMeta(user_credit_address(program_id, user), is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, DISTRIBUTE_TO_CREDIT, accounts)
