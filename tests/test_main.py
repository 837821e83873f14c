"""HTTP surface. The startup hook is not run; components are injected."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from solders.keypair import Keypair

import main
from events import EventEmitter
from opener import RoundOpener
from payouts import WinningsDistributor
from scheduler import RoundCoordinator
from settlement import SettlementExecutor
from tests.helpers import FUTURE_S, PAST_S, SOL, FakeLedger, fixed_clock

AUTH = {"Authorization": "Bearer secret"}


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def engine(monkeypatch):
    ledger = FakeLedger()
    authority = Keypair()
    emitter = EventEmitter()
    coordinator = RoundCoordinator(
        ledger,
        SettlementExecutor(ledger, authority),
        WinningsDistributor(ledger, authority),
        emitter,
        check_interval_s=3600,
        clock=fixed_clock(),
    )
    monkeypatch.setattr(main, "ADMIN_TOKEN", "secret")
    monkeypatch.setattr(main.app.state, "coordinator", coordinator, raising=False)
    monkeypatch.setattr(main.app.state, "opener", RoundOpener(ledger, authority, emitter), raising=False)
    return ledger


class TestPublic:
    def test_health(self, client) -> None:
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["ok"] is True

    def test_status_before_start(self, client) -> None:
        body = client.get("/api/engine/status").json()
        assert body["isRunning"] is False
        assert body["lastActivity"] == "Engine not started"
        assert body["recentErrors"] == []

    def test_phase(self, client) -> None:
        body = client.get("/api/rounds/phase").json()
        assert body["phase"] in ("betting", "settling")
        assert body["phaseStart"] <= body["now"] < body["roundEnd"]


class TestAdmin:
    def test_requires_token(self, client) -> None:
        assert client.post("/api/admin/tick").status_code == 401

    def test_wrong_token(self, client, engine) -> None:
        resp = client.post("/api/admin/tick", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_no_coordinator_is_503(self, client, monkeypatch) -> None:
        monkeypatch.setattr(main, "ADMIN_TOKEN", "secret")
        assert client.post("/api/admin/tick", headers=AUTH).status_code == 503

    def test_tick_then_status(self, client, engine) -> None:
        engine.set_global(2)
        engine.set_round(2, SOL, 0, ends_at=FUTURE_S)
        body = client.post("/api/admin/tick", headers=AUTH).json()
        assert body["decision"] == "active"
        assert body["round_id"] == 2
        status = client.get("/api/engine/status").json()
        assert status["lastDecision"] == "active"
        assert status["roundsProcessed"] == 1

    def test_start_round(self, client, engine) -> None:
        engine.set_global(0)
        body = client.post("/api/admin/round/start", headers=AUTH, json={"duration_seconds": 45}).json()
        assert body == {"ok": True, "round_id": 1, "tx": "sig1"}

    def test_start_round_conflict(self, client, engine) -> None:
        engine.set_global(3)
        engine.set_round(3, SOL, 0, ends_at=FUTURE_S)
        resp = client.post("/api/admin/round/start", headers=AUTH)
        assert resp.status_code == 409
        assert "still active" in resp.json()["detail"]

    def test_start_round_validates_duration(self, client, engine) -> None:
        resp = client.post("/api/admin/round/start", headers=AUTH, json={"duration_seconds": 0})
        assert resp.status_code == 422

    def test_distribute(self, client, engine) -> None:
        engine.set_global(8)
        engine.set_round(8, SOL, SOL, ends_at=PAST_S, settled=True, winning_side=1)
        engine.add_bet(Keypair().pubkey(), 8, 1, SOL)
        body = client.post("/api/admin/round/8/distribute", headers=AUTH).json()
        assert body["ok"] is True
        assert body["succeeded"] == 1
        assert body["reason"] is None


class _ConnectedRequest:
    async def is_disconnected(self) -> bool:
        return False


def test_feed_listener_lives_with_stream() -> None:
    async def scenario():
        before = main.emitter.listener_count
        response = await main.feed(_ConnectedRequest())
        unstarted = main.emitter.listener_count
        body = response.body_iterator
        first = await body.__anext__()
        streaming = main.emitter.listener_count
        await body.aclose()
        return before, unstarted, first, streaming, main.emitter.listener_count

    before, unstarted, first, streaming, after = asyncio.run(scenario())
    assert unstarted == before
    assert first == ": connected\n\n"
    assert streaming == before + 1
    assert after == before
