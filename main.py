# main.py
# =========================================================
# FlipSOL Engine (FastAPI)
# =========================================================
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from config import ConfigError, settings
from db import AnalyticsMirror
from events import EventEmitter
from ledger import LedgerClient, load_keypair, to_public_key
from opener import RoundOpener
from payouts import WinningsDistributor
from phase_clock import logical_round
from scheduler import CoordinatorStatus, RoundCoordinator
from settlement import SettlementExecutor

LOGGER = logging.getLogger("flipsol")

VERSION = "0.1.0"
FEED_QUEUE_SIZE = 100
FEED_KEEPALIVE_S = 15.0


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore", "solana"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# --- admin auth ---
ADMIN_TOKEN = getattr(settings, "ADMIN_TOKEN", "")
_auth_scheme = HTTPBearer(auto_error=False)


def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    if not ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if getattr(settings, "DEBUG", False):
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != ADMIN_TOKEN:
        raise HTTPException(401, "Unauthorized")
    return True


# =========================================================
# App Init
# =========================================================
app = FastAPI(title="FlipSOL Engine", version=VERSION)

# lives outside startup so subscribers can attach before the engine runs
emitter = EventEmitter()
app.state.emitter = emitter
app.state.coordinator = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = (getattr(settings, "API_PREFIX", "/api") or "/api").rstrip("/")


# =========================================================
# Lifecycle
# =========================================================
def _load_identity():
    if not settings.has_authority:
        raise ConfigError("AUTHORITY_SECRET is not set; settlement and payouts need the round authority")
    try:
        authority = load_keypair(settings.AUTHORITY_SECRET or "")
    except ValueError as e:
        raise ConfigError(f"AUTHORITY_SECRET is invalid: {e}") from e
    try:
        program_id = to_public_key(settings.PROGRAM_ID)
    except ValueError as e:
        raise ConfigError(f"PROGRAM_ID is invalid: {e}") from e
    return authority, program_id


@app.on_event("startup")
async def on_startup():
    setup_logging(settings.LOG_LEVEL)
    if not settings.ENGINE_ENABLED:
        LOGGER.warning("[startup] ENGINE_ENABLED=false - round coordinator not started")
        return

    try:
        authority, program_id = _load_identity()
    except ConfigError:
        LOGGER.critical("[startup] fatal configuration error - refusing to start", exc_info=True)
        raise

    ledger = LedgerClient(
        settings.RPC_URL,
        program_id,
        timeout=settings.RPC_TIMEOUT_S,
        confirm_timeout=settings.CONFIRM_TIMEOUT_S,
    )

    mirror: Optional[AnalyticsMirror] = None
    try:
        mirror = await AnalyticsMirror.open(settings.DB_PATH)
    except Exception:
        LOGGER.exception("[startup] analytics mirror unavailable at %s; continuing without it", settings.DB_PATH)

    executor = SettlementExecutor(ledger, authority)
    distributor = WinningsDistributor(
        ledger,
        authority,
        concurrency=settings.DISTRIBUTION_CONCURRENCY,
        credit_timeout=settings.CREDIT_TIMEOUT_S,
    )
    coordinator = RoundCoordinator(
        ledger,
        executor,
        distributor,
        emitter,
        mirror=mirror,
        round_duration_ms=settings.ROUND_DURATION_MS,
        betting_window_ms=settings.BETTING_WINDOW_MS,
        check_interval_s=settings.CHECK_INTERVAL_S,
        distribution_delay_s=settings.DISTRIBUTION_DELAY_S,
        max_recent_errors=settings.MAX_RECENT_ERRORS,
        min_valid_ends_at=settings.MIN_VALID_ENDS_AT,
    )

    app.state.ledger = ledger
    app.state.mirror = mirror
    app.state.opener = RoundOpener(ledger, authority, emitter)
    app.state.coordinator = coordinator

    LOGGER.info(
        "[startup] engine initialized program=%s authority=%s rpc=%s",
        program_id, authority.pubkey(), settings.RPC_URL,
    )
    coordinator.start()


@app.on_event("shutdown")
async def on_shutdown():
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None and coordinator.is_running:
        await coordinator.stop()
    mirror = getattr(app.state, "mirror", None)
    if mirror is not None:
        await mirror.close()
    ledger = getattr(app.state, "ledger", None)
    if ledger is not None:
        await ledger.close()


def _coordinator() -> RoundCoordinator:
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(503, "Round coordinator is not running")
    return coordinator


# =========================================================
# Health / Status
# =========================================================
@app.get(f"{API}/health")
async def health():
    return {"ok": True, "ts": time.time(), "service": "flipsol-engine", "version": VERSION}


@app.get(f"{API}/engine/status")
async def engine_status():
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        return CoordinatorStatus(last_activity="Engine not started").to_dict()
    return coordinator.status().to_dict()


@app.get(f"{API}/rounds/phase")
async def rounds_phase():
    now_ms = int(time.time() * 1000)
    slot = logical_round(now_ms, settings.ROUND_DURATION_MS, settings.BETTING_WINDOW_MS)
    return {**slot.to_dict(), "now": now_ms, "secondsLeftToBet": slot.seconds_left_to_bet(now_ms)}


# =========================================================
# Live feed (server-sent events)
# =========================================================
@app.get(f"{API}/feed")
async def feed(request: Request):
    """Republish emitter events verbatim. A slow client loses events, never blocks."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=FEED_QUEUE_SIZE)

    def listener(event: dict) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            LOGGER.debug("[feed] client queue full, dropping %s", event.get("type"))

    async def stream():
        # listener lives exactly as long as the stream body
        emitter.add_listener(listener)
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=FEED_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event.get('type', 'message')}\ndata: {json.dumps(event)}\n\n"
        finally:
            emitter.remove_listener(listener)

    return StreamingResponse(stream(), media_type="text/event-stream")


# =========================================================
# Admin
# =========================================================
class StartRoundReq(BaseModel):
    duration_seconds: int = Field(default=settings.START_ROUND_DURATION_S, ge=1, le=86_400)


@app.post(f"{API}/admin/round/start")
async def admin_start_round(body: Optional[StartRoundReq] = None, auth: bool = Depends(admin_guard)):
    """First-wager trigger: open the next on-ledger round."""
    _coordinator()
    duration = body.duration_seconds if body else settings.START_ROUND_DURATION_S
    result = await app.state.opener.start_round(duration)
    if not result.started:
        raise HTTPException(409, result.reason or "round not started")
    return {"ok": True, "round_id": result.round_id, "tx": result.signature}


@app.post(f"{API}/admin/round/{{round_id}}/distribute")
async def admin_distribute(round_id: int, auth: bool = Depends(admin_guard)):
    """Re-run winnings distribution for one round; already-credited winners are skipped."""
    report = await _coordinator().redistribute(round_id)
    return {
        "ok": not report.reason,
        "round_id": round_id,
        "winners": report.winners,
        "succeeded": report.succeeded,
        "failed": report.failed,
        "skipped_claimed": report.skipped_claimed,
        "reason": report.reason or None,
    }


@app.post(f"{API}/admin/tick")
async def admin_tick(auth: bool = Depends(admin_guard)):
    """Run one reconciliation pass now (dropped if one is already running)."""
    result = await _coordinator().tick()
    return {
        "decision": result.decision.value,
        "activity": result.activity,
        "round_id": result.round_id,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
