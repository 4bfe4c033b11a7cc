"""Upgrade chain for persisted world-state snapshots.

Each step takes a snapshot dict at version N and returns one at N + 1.
Steps run once, at load time, so the merge engine only ever sees the
current shape.
"""

from __future__ import annotations

import copy
from typing import Callable

from world.schemas import CURRENT_WORLD_STATE_VERSION, DEFAULT_WORLD_STATE, WorldState

VERSION_KEY = "schemaVersion"


class SnapshotMigrationError(ValueError):
    """Raised when a snapshot cannot be brought up to the current schema."""


Migration = Callable[[dict], dict]


def _attributes_as_list(value) -> list[dict]:
    if isinstance(value, dict):
        return [{"key": str(key), "value": item} for key, item in value.items()]
    if isinstance(value, list):
        return list(value)
    return []


def _migrate_v0_to_v1(payload: dict) -> dict:
    entities = payload.get("entities")
    if isinstance(entities, dict):
        items = []
        for entity_id, entity in entities.items():
            if isinstance(entity, dict):
                items.append({"id": entity_id, **entity})
        entities = items
    elif not isinstance(entities, list):
        entities = []

    upgraded_entities = []
    for entity in entities:
        entity = dict(entity)
        if "status" in entity:
            status = entity.pop("status")
            entity.setdefault("condition", status)
        entity["attributes"] = _attributes_as_list(entity.get("attributes"))
        upgraded_entities.append(entity)

    upgraded = dict(payload)
    upgraded["entities"] = upgraded_entities
    upgraded[VERSION_KEY] = 1
    return upgraded


def _migrate_v1_to_v2(payload: dict) -> dict:
    quests = []
    for quest in payload.get("quests") or []:
        quest = dict(quest)
        if "title" in quest:
            title = quest.pop("title")
            quest.setdefault("label", title)
        quest["attributes"] = _attributes_as_list(quest.get("attributes"))
        quests.append(quest)

    player = payload.get("player")
    if not isinstance(player, dict):
        player = DEFAULT_WORLD_STATE.player.to_wire()
    else:
        player = dict(player)
        if "status" in player:
            status = player.pop("status")
            player.setdefault("condition", status)
        player["attributes"] = _attributes_as_list(player.get("attributes"))

    upgraded = dict(payload)
    upgraded["quests"] = quests
    upgraded["player"] = player
    upgraded[VERSION_KEY] = 2
    return upgraded


MIGRATIONS: dict[int, Migration] = {
    0: _migrate_v0_to_v1,
    1: _migrate_v1_to_v2,
}


def migrate_world_state(
    payload: dict,
    target_version: int = CURRENT_WORLD_STATE_VERSION,
) -> dict:
    if not isinstance(payload, dict):
        raise SnapshotMigrationError("World state snapshot was not an object.")

    version = payload.get(VERSION_KEY, payload.get("schema_version", 0))
    if version is None:
        version = 0
    if not isinstance(version, int) or isinstance(version, bool):
        raise SnapshotMigrationError("World state version missing or invalid.")
    if version > target_version:
        raise SnapshotMigrationError(
            f"World state schema {version} is newer than supported {target_version}."
        )

    current = copy.deepcopy(payload)
    current.pop("schema_version", None)
    while version < target_version:
        migrator = MIGRATIONS.get(version)
        if migrator is None:
            raise SnapshotMigrationError(
                f"No migration available for world state schema {version}."
            )
        current = migrator(current)
        version = current.get(VERSION_KEY, version + 1)
        if not isinstance(version, int):
            raise SnapshotMigrationError("Migration produced an invalid schema version.")

    current[VERSION_KEY] = version
    return current


def load_world_state(payload: dict | WorldState) -> WorldState:
    if isinstance(payload, WorldState):
        return payload.model_copy(deep=True)
    return WorldState.model_validate(migrate_world_state(payload))


def migrate_session_payload(payload: dict) -> dict:
    """Upgrade every node snapshot inside a persisted session's tree."""
    if not isinstance(payload, dict):
        raise SnapshotMigrationError("Session payload was not an object.")
    upgraded = copy.deepcopy(payload)
    tree = upgraded.get("tree")
    if not isinstance(tree, dict):
        return upgraded
    nodes = tree.get("nodes")
    if not isinstance(nodes, dict):
        return upgraded
    for node in nodes.values():
        if isinstance(node, dict) and isinstance(node.get("state"), dict):
            node["state"] = migrate_world_state(node["state"])
    return upgraded
