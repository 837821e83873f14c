"""
FlipSOL engine: init_db.py
One-shot initializer for the analytics mirror database:
- Ensures schema (PRAGMA + tables + indexes)
- Reports how many settlements are already mirrored
"""

import os
import asyncio
import logging

import aiosqlite
from config import settings  # keeps DB path consistent with app
from db import SCHEMA

LOGGER = logging.getLogger("flipsol.mirror")


# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)


async def init(db_path: str = DB_PATH) -> int:
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.executescript(SCHEMA)
        await db.commit()
        async with db.execute("SELECT COUNT(*) FROM round_settlements") as cur:
            row = await cur.fetchone()
    return int(row[0]) if row else 0


# =========================================================
# Main
# =========================================================
async def main():
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    LOGGER.info("Using DB_PATH=%s", DB_PATH)
    count = await init(DB_PATH)
    LOGGER.info("Schema ready; %d settled rounds mirrored", count)


if __name__ == "__main__":
    asyncio.run(main())
