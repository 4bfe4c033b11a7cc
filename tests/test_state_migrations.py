import pytest

from world.migrations import (
    SnapshotMigrationError,
    load_world_state,
    migrate_session_payload,
    migrate_world_state,
)
from world.schemas import CURRENT_WORLD_STATE_VERSION, default_world_state


def _legacy_snapshot() -> dict:
    return {
        "scene": {"location": {"name": "Harbor"}, "time": "Morning"},
        "player": {"name": "Ada", "status": "rested", "attributes": {"gold": 12}},
        "entities": {
            "gull": {"name": "Gull", "status": "hungry", "attributes": {"wings": 2}},
        },
        "quests": [{"id": "q1", "title": "Catch a fish", "status": "ACTIVE"}],
    }


def test_legacy_snapshot_upgrades_to_current_version() -> None:
    payload = _legacy_snapshot()

    upgraded = migrate_world_state(payload)

    assert upgraded["schemaVersion"] == CURRENT_WORLD_STATE_VERSION
    assert upgraded["entities"] == [
        {
            "id": "gull",
            "name": "Gull",
            "condition": "hungry",
            "attributes": [{"key": "wings", "value": 2}],
        }
    ]
    assert upgraded["quests"][0]["label"] == "Catch a fish"
    assert "title" not in upgraded["quests"][0]
    assert upgraded["player"]["condition"] == "rested"
    assert upgraded["player"]["attributes"] == [{"key": "gold", "value": 12}]
    assert "entities" in payload and isinstance(payload["entities"], dict)


def test_load_world_state_validates_upgraded_payload() -> None:
    state = load_world_state(_legacy_snapshot())

    assert state.schema_version == CURRENT_WORLD_STATE_VERSION
    assert state.entity("gull").condition == "hungry"
    assert state.player.name == "Ada"


def test_v1_snapshot_without_player_gets_default_player() -> None:
    upgraded = migrate_world_state(
        {"schemaVersion": 1, "scene": {"location": {"name": "Road"}, "time": "Noon"}}
    )

    assert upgraded["player"]["name"] == "Player"
    assert upgraded["schemaVersion"] == 2


def test_current_snapshot_round_trips_unchanged() -> None:
    wire = default_world_state().to_wire()

    assert migrate_world_state(wire) == wire
    assert load_world_state(wire) == default_world_state()


def test_newer_snapshot_is_rejected() -> None:
    with pytest.raises(SnapshotMigrationError):
        migrate_world_state({"schemaVersion": CURRENT_WORLD_STATE_VERSION + 1})


def test_invalid_version_is_rejected() -> None:
    with pytest.raises(SnapshotMigrationError):
        migrate_world_state({"schemaVersion": "two"})
    with pytest.raises(SnapshotMigrationError):
        migrate_world_state(["not", "a", "dict"])


def test_session_payload_upgrades_each_node_state() -> None:
    payload = {
        "id": "s1",
        "tree": {
            "rootId": "root",
            "headId": "root",
            "nodes": {
                "root": {"id": "root", "state": _legacy_snapshot()},
                "bare": {"id": "bare", "state": None},
            },
        },
    }

    upgraded = migrate_session_payload(payload)

    assert upgraded["tree"]["nodes"]["root"]["state"]["schemaVersion"] == 2
    assert upgraded["tree"]["nodes"]["bare"]["state"] is None
    assert "schemaVersion" not in payload["tree"]["nodes"]["root"]["state"]
