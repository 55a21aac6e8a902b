"""HTTP API tests for the roll routes."""
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from roll_engine.config import Settings
from roll_engine.core.dice import SequenceRandomSource
from roll_engine.main import create_app


pytestmark = pytest.mark.api


@pytest.fixture
def client():
    settings = Settings()
    settings.RULES_PRESET = "standard"
    settings.DEBUG = False
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


def force_dice(client, values):
    """Make the application engine roll a fixed sequence."""
    engine = client.app.state.roll_engine
    engine.configure(replace(engine.config, random_source=SequenceRandomSource(values)))


CONTEXT = {"character": {"id": "p1"}}

WEAPON_CONTEXT = {
    "character": {"id": "p1"},
    "source": {
        "type": "weapon",
        "name": "Longsword",
        "tags": ["martial", "melee"],
        "properties": {"damage": "1d8", "damage_type": "slashing"},
        "source_id": "longsword",
    },
}


class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "online"

    def test_health_lists_resolvers(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["rules_preset"] == "standard"
        assert "class_feature" in data["resolvers"]


class TestNotationEndpoints:
    """Tests for /parse and /validate."""

    def test_parse(self, client):
        response = client.post("/api/rolls/parse", json={"expression": "attack:1d20+5,damage:1d8+3"})
        assert response.status_code == 200
        data = response.json()
        assert data["notation"] == "attack:1d20+5,damage:1d8+3"
        attack = data["expressions"][0]
        assert attack["label"] == "attack"
        assert (attack["min"], attack["max"]) == (6, 25)
        assert attack["average"] == 15.5

    def test_parse_operations(self, client):
        data = client.post("/api/rolls/parse", json={"expression": "2d6r1,2"}).json()
        assert data["expressions"][0]["operations"] == [{"type": "reroll", "value": [1, 2]}]

    def test_parse_error(self, client):
        response = client.post("/api/rolls/parse", json={"expression": "1d7"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "DICE_PARSE_ERROR"
        assert error["details"]["expression"] == "1d7"
        assert error["error_id"]

    def test_validate_valid(self, client):
        data = client.post("/api/rolls/validate", json={"expression": "2d20kh1+5"}).json()
        assert data == {"valid": True, "error": None, "errors": []}

    def test_validate_operations(self, client):
        data = client.post("/api/rolls/validate", json={"expression": "3d6kh5"}).json()
        assert data["valid"] is False
        assert data["errors"] == ["Cannot keep 5 dice when only rolling 3"]

    def test_validate_parse_failure(self, client):
        response = client.post("/api/rolls/validate", json={"expression": "abc"})
        assert response.status_code == 200
        assert response.json()["valid"] is False
        assert response.json()["error"]


class TestRollEndpoints:
    """Tests for /analyze, /execute and /attack."""

    def test_execute_labeled_roll(self, client):
        force_dice(client, [15, 5])
        response = client.post("/api/rolls/execute", json={
            "context": CONTEXT,
            "expression": "attack:1d20+6,damage:1d8+3",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 29
        assert [item["label"] for item in data["multi_results"]] == ["attack", "damage"]
        assert len(data["breakdown"]) == 4
        assert data["metadata"]["roll_id"].startswith("roll_")

    def test_execute_with_dice_modifier(self, client):
        force_dice(client, [4, 3])
        response = client.post("/api/rolls/execute", json={
            "context": CONTEXT,
            "type": "damage",
            "expression": "1d8",
            "modifiers": [{"id": "hex", "name": "Hex", "type": "dice_bonus", "value": "1d6", "stacks": True}],
        })
        assert response.json()["total"] == 7

    def test_dice_bonus_with_number_rejected(self, client):
        response = client.post("/api/rolls/execute", json={
            "context": CONTEXT,
            "expression": "10",
            "modifiers": [{"id": "hex", "name": "Hex", "type": "dice_bonus", "value": 4}],
        })
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field"] == "value"

    def test_flat_bonus_with_dice_rejected(self, client):
        response = client.post("/api/rolls/execute", json={
            "context": CONTEXT,
            "expression": "10",
            "modifiers": [{"id": "luck", "name": "Luck", "type": "flat_bonus", "value": "1d4"}],
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert client.get("/api/rolls/history").json()["count"] == 0

    def test_execute_invalid_operations(self, client):
        response = client.post("/api/rolls/execute", json={"context": CONTEXT, "expression": "3d6kh5"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_OPERATIONS"
        assert error["details"]["errors"] == ["Cannot keep 5 dice when only rolling 3"]

    def test_execute_parse_error(self, client):
        response = client.post("/api/rolls/execute", json={"context": CONTEXT, "expression": "1d20+"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "DICE_PARSE_ERROR"

    def test_request_validation(self, client):
        response = client.post("/api/rolls/execute", json={"expression": "1d20"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_invalid_cover(self, client):
        context = {**CONTEXT, "environment": {"cover": "total"}}
        response = client.post("/api/rolls/analyze", json={"context": context})
        assert response.status_code == 422

    def test_analyze(self, client):
        response = client.post("/api/rolls/analyze", json={
            "context": {**WEAPON_CONTEXT, "environment": {"advantage": True}},
            "type": "attack",
            "expression": "1d20+5",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["dice"][0]["expression"] == "2d20kh1+5"
        assert data["critical_range"] == [20]
        assert data["estimated_range"]["min"] == 6

    def test_attack_critical(self, client):
        force_dice(client, [20, 4, 6])
        response = client.post("/api/rolls/attack", json={"context": WEAPON_CONTEXT, "attack_expression": "1d20"})
        assert response.status_code == 200
        data = response.json()
        assert data["critical_hit"] is True
        assert data["damage"]["total"] == 10
        assert data["damage"]["breakdown"][-1]["label"] == "Critical Hit"
        assert data["hit"] is None

    def test_attack_against_armor_class(self, client):
        force_dice(client, [12, 3])
        context = {**WEAPON_CONTEXT, "target": {"ac": 15}}
        data = client.post("/api/rolls/attack", json={
            "context": context,
            "attack_expression": "1d20+2",
            "damage_expression": "1d6",
        }).json()
        assert data["hit"] is False
        assert data["damage"]["total"] == 3


class TestHistoryEndpoints:

    def test_history_and_stats(self, client):
        force_dice(client, [20, 10])
        for _ in range(2):
            client.post("/api/rolls/execute", json={"context": CONTEXT, "type": "attack", "expression": "1d20"})

        history = client.get("/api/rolls/history", params={"limit": 1}).json()
        assert history["count"] == 1
        assert history["rolls"][0]["total"] == 10

        stats = client.get("/api/rolls/stats").json()
        assert stats["total_rolls"] == 2
        assert stats["critical_hits"] == 1

        assert client.delete("/api/rolls/history").json() == {"success": True}
        assert client.get("/api/rolls/history").json()["count"] == 0


class TestModifierEndpoints:

    def test_character_modifiers_apply(self, client):
        response = client.post("/api/rolls/modifiers/character/p1", json={
            "modifiers": [{"id": "luck", "name": "Luck", "value": 2}],
        })
        assert response.json() == {"character_id": "p1", "registered": ["luck"]}

        force_dice(client, [10])
        data = client.post("/api/rolls/execute", json={"context": CONTEXT, "expression": "1d20"}).json()
        assert data["total"] == 12

    def test_item_modifiers(self, client):
        response = client.post("/api/rolls/modifiers/item/longsword", json={
            "modifiers": [{"id": "flame", "name": "Flame Tongue", "source": "item", "type": "dice_bonus",
                           "value": "2d6", "application": "on_damage", "roll_types": ["damage"]}],
        })
        assert response.json()["registered"] == ["flame"]

        force_dice(client, [5, 1, 2])
        data = client.post("/api/rolls/execute", json={"context": WEAPON_CONTEXT, "type": "damage"}).json()
        assert data["total"] == 8

    def test_mismatched_modifier_not_registered(self, client):
        response = client.post("/api/rolls/modifiers/character/p1", json={
            "modifiers": [{"id": "rage", "name": "Rage", "type": "multiplier", "value": "2d4"}],
        })
        assert response.status_code == 400
        assert client.app.state.roll_engine.registry.character_modifiers("p1") == []

    def test_temporary_modifiers(self, client):
        response = client.post("/api/rolls/modifiers/temporary", json={
            "modifiers": [{"id": "bless_flat", "name": "Blessed", "source": "spell", "value": 1}],
        })
        assert response.json()["temporary"] == ["bless_flat"]

        assert client.delete("/api/rolls/modifiers/temporary").json() == {"success": True}
        assert client.app.state.roll_engine.registry.temporary == []
