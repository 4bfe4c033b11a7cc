from __future__ import annotations

import logging
from typing import Iterable, Sequence

from pydantic import BaseModel

from world.schemas import (
    Attribute,
    EntityPatch,
    EntityState,
    Location,
    LocationPatch,
    PlayerPatch,
    PlayerState,
    Quest,
    QuestPatch,
    ScenePatch,
    SceneState,
    SetDiff,
    StatePatch,
    StoryThread,
    ThreadPatch,
    WorldState,
)

logger = logging.getLogger(__name__)

UNKNOWN_LOCATION = "Unknown"


def apply_state_patch(current: WorldState, patch: StatePatch) -> WorldState:
    """Fold a partial diff into a world-state snapshot.

    Pure: ``current`` and ``patch`` are left untouched and the result shares
    no mutable containers with either. Entries that would create an entity,
    quest or thread without its minimum fields are skipped, never raised.
    """
    update: dict = {}

    if patch.scene is not None:
        update["scene"] = _merge_scene(current.scene, patch.scene)
    if patch.player is not None:
        update["player"] = _merge_player(current.player, patch.player)
    if patch.entities is not None:
        update["entities"] = _merge_entities(current.entities, patch.entities)
    if patch.quests is not None:
        update["quests"] = _merge_quests(current.quests, patch.quests)
    if patch.threads is not None:
        update["threads"] = _merge_threads(current.threads, patch.threads)
    for name in ("facts", "hypotheses", "secrets"):
        diff = getattr(patch, name)
        if diff is not None:
            update[name] = apply_set_diff(getattr(current, name), diff)

    return current.model_copy(update=update).model_copy(deep=True)


def apply_set_diff(items: Iterable[str], diff: SetDiff) -> list[str]:
    removed = set(diff.remove)
    result = [item for item in items if item not in removed]
    seen = set(result)
    for item in diff.add:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def merge_attributes(
    current: Iterable[Attribute],
    updates: Iterable[Attribute] | None,
) -> list[Attribute]:
    merged = [attr.model_copy() for attr in current]
    if not updates:
        return merged
    index = {attr.key: pos for pos, attr in enumerate(merged)}
    for attr in updates:
        pos = index.get(attr.key)
        if pos is None:
            index[attr.key] = len(merged)
            merged.append(attr.model_copy())
        else:
            merged[pos] = Attribute(key=attr.key, value=attr.value)
    return merged


def _merge_location(current: Location, patch: LocationPatch | None) -> Location:
    if patch is None:
        return current.model_copy()
    return current.model_copy(update=_specified(patch))


def _merge_scene(current: SceneState, patch: ScenePatch) -> SceneState:
    fields = _specified(patch, exclude={"location"})
    fields["location"] = _merge_location(current.location, patch.location)
    return current.model_copy(update=fields)


def _merge_player(current: PlayerState, patch: PlayerPatch) -> PlayerState:
    fields = _specified(
        patch,
        exclude={"location", "inventory", "capabilities", "attributes"},
    )
    fields["location"] = _merge_location(current.location, patch.location)
    fields["attributes"] = merge_attributes(current.attributes, patch.attributes)
    if patch.inventory is not None:
        fields["inventory"] = apply_set_diff(current.inventory, patch.inventory)
    if patch.capabilities is not None:
        fields["capabilities"] = apply_set_diff(current.capabilities, patch.capabilities)
    return current.model_copy(update=fields)


def _merge_entities(
    current: list[EntityState],
    patches: list[EntityPatch],
) -> list[EntityState]:
    entities = list(current)
    for entry in patches:
        pos = _find(entities, entry.id)
        if entry.deleted:
            if pos is not None:
                del entities[pos]
            continue
        if pos is not None:
            entities[pos] = _merge_entity(entities[pos], entry)
            continue
        created = _create_entity(entry)
        if created is None:
            logger.debug("Skipping entity %s: a new entity needs a name.", entry.id)
            continue
        entities.append(created)
    return entities


def _merge_entity(current: EntityState, patch: EntityPatch) -> EntityState:
    fields = _specified(patch, exclude={"id", "deleted", "location", "attributes"})
    fields["location"] = _merge_location(current.location, patch.location)
    fields["attributes"] = merge_attributes(current.attributes, patch.attributes)
    return current.model_copy(update=fields)


def _create_entity(patch: EntityPatch) -> EntityState | None:
    if not patch.name:
        return None
    location = Location(name=UNKNOWN_LOCATION)
    if patch.location is not None:
        location = Location(**_specified(patch.location, base={"name": UNKNOWN_LOCATION}))
    return EntityState(
        id=patch.id,
        canon_id=patch.canon_id,
        name=patch.name,
        location=location,
        activity=patch.activity,
        condition=patch.condition,
        intent=patch.intent,
        relation_to_player=patch.relation_to_player,
        attributes=merge_attributes([], patch.attributes),
    )


def _merge_quests(current: list[Quest], patches: list[QuestPatch]) -> list[Quest]:
    quests = list(current)
    for entry in patches:
        pos = _find(quests, entry.id)
        if pos is not None:
            existing = quests[pos]
            fields = _specified(entry, exclude={"id", "steps", "attributes"})
            if entry.steps is not None:
                fields["steps"] = [step.model_copy() for step in entry.steps]
            fields["attributes"] = merge_attributes(existing.attributes, entry.attributes)
            quests[pos] = existing.model_copy(update=fields)
            continue
        if not entry.label or entry.status is None:
            logger.debug("Skipping quest %s: a new quest needs label and status.", entry.id)
            continue
        quests.append(
            Quest(
                id=entry.id,
                label=entry.label,
                description=entry.description,
                status=entry.status,
                steps=[step.model_copy() for step in entry.steps or []],
                attributes=merge_attributes([], entry.attributes),
            )
        )
    return quests


def _merge_threads(
    current: list[StoryThread],
    patches: list[ThreadPatch],
) -> list[StoryThread]:
    threads = list(current)
    for entry in patches:
        pos = _find(threads, entry.id)
        if pos is not None:
            threads[pos] = threads[pos].model_copy(update=_specified(entry, exclude={"id"}))
            continue
        if not entry.description:
            logger.debug("Skipping thread %s: a new thread needs a description.", entry.id)
            continue
        threads.append(
            StoryThread(
                id=entry.id,
                description=entry.description,
                status=entry.status or "UNRESOLVED",
            )
        )
    return threads


def _find(items: Sequence[EntityState | Quest | StoryThread], item_id: str) -> int | None:
    for pos, item in enumerate(items):
        if item.id == item_id:
            return pos
    return None


def _specified(
    model: BaseModel,
    *,
    exclude: set[str] | None = None,
    base: dict | None = None,
) -> dict:
    # null in a patch means "not mentioned"
    fields = dict(base or {})
    for name in type(model).model_fields:
        if exclude and name in exclude:
            continue
        value = getattr(model, name)
        if value is not None:
            fields[name] = value
    return fields
