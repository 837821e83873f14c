# db.py

"""
FlipSOL engine: db.py
Analytics mirror: a write-only (from the engine's side) SQLite record of
settled rounds and credit attempts. The ledger stays authoritative; failures
here are logged and never reach the coordinator.
"""

from __future__ import annotations
from typing import Iterable, Optional
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
import aiosqlite

LOGGER = logging.getLogger("flipsol.mirror")

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS round_settlements (
  round_id           INTEGER PRIMARY KEY,
  winning_side       INTEGER,
  heads_total        INTEGER NOT NULL DEFAULT 0,
  tails_total        INTEGER NOT NULL DEFAULT 0,
  total_pot          INTEGER NOT NULL DEFAULT 0,
  participant_count  INTEGER NOT NULL DEFAULT 0,
  signature          TEXT,
  settled_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS round_credits (
  id           INTEGER PRIMARY KEY AUTOINCREMENT,
  round_id     INTEGER NOT NULL,
  user         TEXT NOT NULL,
  amount       INTEGER NOT NULL,
  payout       INTEGER,
  signature    TEXT,
  error        TEXT,
  created_at   TEXT NOT NULL,
  FOREIGN KEY(round_id) REFERENCES round_settlements(round_id)
);

CREATE INDEX IF NOT EXISTS idx_settlements_settled_at ON round_settlements(settled_at);
CREATE INDEX IF NOT EXISTS idx_credits_round           ON round_credits(round_id);
""".strip()


@dataclass(frozen=True)
class SettlementRecord:
    round_id: int
    winning_side: Optional[int]
    heads_total: int
    tails_total: int
    participant_count: int
    signature: Optional[str] = None

    @property
    def total_pot(self) -> int:
        return self.heads_total + self.tails_total


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# =========================================================
# Connection
# =========================================================
async def connect(db_path: str) -> aiosqlite.Connection:
    """
    Async connection; ensures schema and sets PRAGMAs.
    """
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = await aiosqlite.connect(db_path)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA busy_timeout=5000")

    conn.row_factory = aiosqlite.Row

    await ensure_schema(conn)
    return conn


async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)
    await conn.commit()


# =========================================================
# Mirror
# =========================================================
class AnalyticsMirror:
    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn

    @classmethod
    async def open(cls, db_path: str) -> "AnalyticsMirror":
        return cls(await connect(db_path))

    async def close(self) -> None:
        await self.conn.close()

    async def record_settlement(self, record: SettlementRecord, credits: Iterable = ()) -> None:
        """
        Upsert one settled round, then append its credit attempts.
        `credits` are payouts.CreditResult values.
        """
        now = _utc_now()
        await self.conn.execute(
            "INSERT INTO round_settlements"
            "(round_id, winning_side, heads_total, tails_total, total_pot, participant_count, signature, settled_at) "
            "VALUES(?,?,?,?,?,?,?,?) "
            "ON CONFLICT(round_id) DO UPDATE SET "
            "winning_side=excluded.winning_side, heads_total=excluded.heads_total, "
            "tails_total=excluded.tails_total, total_pot=excluded.total_pot, "
            "participant_count=excluded.participant_count, "
            "signature=COALESCE(excluded.signature, round_settlements.signature)",
            (
                record.round_id,
                record.winning_side,
                record.heads_total,
                record.tails_total,
                record.total_pot,
                record.participant_count,
                record.signature,
                now,
            ),
        )
        for c in credits:
            await self.conn.execute(
                "INSERT INTO round_credits(round_id, user, amount, payout, signature, error, created_at) "
                "VALUES(?,?,?,?,?,?,?)",
                (record.round_id, c.user, c.amount, c.expected_payout, c.signature, c.error, now),
            )
        await self.conn.commit()
        LOGGER.info("[mirror] recorded settlement for round %s", record.round_id)

    async def get_settlement(self, round_id: int) -> Optional[dict]:
        async with self.conn.execute(
            "SELECT * FROM round_settlements WHERE round_id=?", (round_id,)
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def credits_for(self, round_id: int) -> list:
        async with self.conn.execute(
            "SELECT user, amount, payout, signature, error FROM round_credits WHERE round_id=? ORDER BY id",
            (round_id,),
        ) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]
