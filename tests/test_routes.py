"""HTTP surface tests against create_app with scripted providers."""

import json
import random

import pytest
from fastapi.testclient import TestClient

from backend.app import create_app, load_secrets


@pytest.fixture
def client(tmp_path, monkeypatch, provider_factory):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-anthropic")
    app = create_app(tmp_path / "data", provider_factory=provider_factory, rng=random.Random(7))
    app.state.store.update_config({"reviewer": {"enabled": False}})
    return TestClient(app)


def _brain(**fields) -> str:
    payload = {
        "stateUpdates": {},
        "narrativeCues": [{"type": "action", "content": "You act."}],
        "diceRolls": [],
    }
    payload.update(fields)
    return json.dumps(payload)


def _start(client, turns: int = 30) -> str:
    client.app.state.store.create_user("u1", turns=turns)
    res = client.post("/api/campaigns", json={
        "world": "classic", "owner": "u1", "title": "Ash Road",
        "state": {"gold": 5, "character": {"name": "Kael", "inventory": ["Rope"]}},
    })
    assert res.status_code == 201
    return res.json()["id"]


# ── Settings ─────────────────────────────────────────────


class TestSettings:
    def test_health(self, client) -> None:
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_get_and_patch(self, client) -> None:
        assert client.get("/api/settings").json()["models"]["voice"] == "claude-3-5-sonnet"
        res = client.patch("/api/settings", json={"default_turn_cost": 3})
        assert res.status_code == 200
        assert res.json()["default_turn_cost"] == 3
        assert client.get("/api/settings").json()["default_turn_cost"] == 3


def test_load_secrets_reads_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-a")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    assert load_secrets() == {"openai": "sk-a"}


# ── Campaigns ────────────────────────────────────────────


class TestCampaigns:
    def test_create_and_get(self, client) -> None:
        campaign_id = _start(client)
        body = client.get(f"/api/campaigns/{campaign_id}").json()
        assert body["state"]["gold"] == 5
        assert body["turnNumber"] == 0

    def test_missing_campaign(self, client) -> None:
        assert client.get("/api/campaigns/nope").status_code == 404
        assert client.get("/api/campaigns/nope/messages").status_code == 404


# ── Turns ────────────────────────────────────────────────


class TestTurns:
    def test_turn_saves_and_charges(self, client, providers) -> None:
        campaign_id = _start(client)
        providers["brain"].script(_brain(stateUpdates={"gold": 11}))
        providers["voice"].script("You count your coins.")

        res = client.post(f"/api/campaigns/{campaign_id}/turns", json={
            "userInput": "I count my gold", "userId": "u1",
        })

        assert res.status_code == 200
        body = res.json()
        assert body["success"] is True
        assert body["narrative"] == "You count your coins."
        assert body["turnCost"] == 10
        assert body["remainingTurns"] == 20
        assert body["stateUpdates"]["gold"] == 11

        messages = client.get(f"/api/campaigns/{campaign_id}/messages").json()
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert client.get("/api/users/u1").json()["turns"] == 20

    def test_insufficient_balance_is_402(self, client, providers) -> None:
        campaign_id = _start(client, turns=5)
        res = client.post(f"/api/campaigns/{campaign_id}/turns", json={
            "userInput": "I attack", "userId": "u1",
        })
        assert res.status_code == 402
        assert res.json()["errorCode"] == "insufficient_balance"
        assert providers["brain"].calls == []

    def test_missing_input_is_400(self, client) -> None:
        campaign_id = _start(client)
        res = client.post(f"/api/campaigns/{campaign_id}/turns", json={"userId": "u1"})
        assert res.status_code == 400
        assert res.json()["errorCode"] == "validation_error"

    def test_brain_failure_is_502(self, client, providers) -> None:
        campaign_id = _start(client)
        providers["brain"].script("no json here")
        res = client.post(f"/api/campaigns/{campaign_id}/turns", json={
            "userInput": "I attack", "userId": "u1",
        })
        assert res.status_code == 502
        assert client.get("/api/users/u1").json()["turns"] == 30

    def test_pending_roll_round_trip(self, client, providers) -> None:
        campaign_id = _start(client)
        pending = {"purpose": "Climb the wall", "stat": "STR", "difficulty": 10}
        providers["brain"].script(
            _brain(requiresUserInput=True, pendingRoll=pending),
            _brain(diceRolls=[{"result": 12, "modifier": 0, "total": 12}]),
        )
        providers["voice"].script("You haul yourself over.")

        first = client.post(f"/api/campaigns/{campaign_id}/turns", json={
            "userInput": "I climb", "userId": "u1", "interactiveDiceRolls": True,
        }).json()
        assert first["requiresUserInput"] is True
        assert first["turnCost"] == 0

        second = client.post(f"/api/campaigns/{campaign_id}/turns", json={
            "userInput": "I climb", "userId": "u1", "interactiveDiceRolls": True,
            "rollResult": 12, "pendingRoll": first["pendingRoll"],
        }).json()
        assert second["success"] is True
        assert second["diceRolls"][0]["rawRolls"] == [12]
        assert client.get("/api/users/u1").json()["turns"] == 20


# ── Quests ───────────────────────────────────────────────


class TestQuests:
    def _with_suggestion(self, client) -> str:
        store = client.app.state.store
        campaign = store.create_campaign(world="classic", state={
            "suggestedQuests": [{"id": "rats", "title": "Cellar Rats", "status": "available"}],
        })
        return campaign["id"]

    def test_accept(self, client) -> None:
        campaign_id = self._with_suggestion(client)
        res = client.post(f"/api/campaigns/{campaign_id}/quests/rats/accept")
        assert res.status_code == 200
        state = res.json()["state"]
        assert state["suggestedQuests"] == []
        assert state["questLog"][0]["status"] == "active"
        assert state["activeQuestId"] == "rats"

    def test_decline(self, client) -> None:
        campaign_id = self._with_suggestion(client)
        res = client.post(f"/api/campaigns/{campaign_id}/quests/rats/decline")
        assert res.json()["state"]["suggestedQuests"] == []

    def test_unknown_quest(self, client) -> None:
        campaign_id = self._with_suggestion(client)
        assert client.post(f"/api/campaigns/{campaign_id}/quests/ghost/accept").status_code == 404


# ── Users and knowledge ──────────────────────────────────


def test_unknown_user(client):
    assert client.get("/api/users/ghost").status_code == 404


def test_add_knowledge_is_visible_to_next_turn(client, providers):
    campaign_id = _start(client)
    assert client.get("/api/knowledge").json() == []

    res = client.post("/api/knowledge", json={
        "title": "Gods", "content": "Three gods rule the sky.", "world": "classic", "targetModel": "brain",
    })
    assert res.status_code == 201
    assert res.json()["targetModel"] == "brain"

    providers["brain"].script(_brain())
    providers["voice"].script("ok")
    client.post(f"/api/campaigns/{campaign_id}/turns", json={"userInput": "I pray", "userId": "u1"})
    assert "Three gods rule the sky." in providers["brain"].calls[0]["system"]


def test_invalid_knowledge_target(client):
    res = client.post("/api/knowledge", json={"title": "x", "content": "y", "targetModel": "everyone"})
    assert res.status_code == 422
