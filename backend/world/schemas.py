from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CURRENT_WORLD_STATE_VERSION = 2

AttributeValue = str | int | float | bool
QuestStatus = Literal["ACTIVE", "COMPLETED", "FAILED", "PAUSED"]
ThreadStatus = Literal["UNRESOLVED", "RESOLVED", "ABANDONED"]
CanonCategory = Literal["CHARACTER", "LOCATION", "ITEM", "LORE", "RULE", "FACTION"]
ChronicleEventType = Literal[
    "SCENE_START",
    "SCENE_END",
    "MAJOR_DECISION",
    "COMBAT_RESULT",
    "ACQUISITION",
    "LOSS",
    "NOTE",
]


class WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Attribute(WireModel):
    key: str
    value: AttributeValue


class Location(WireModel):
    id: str | None = None
    name: str
    detail: str | None = None


class SceneState(WireModel):
    location: Location
    time: str
    weather: str | None = None
    atmosphere: str | None = None


class PlayerState(WireModel):
    name: str = "Player"
    location: Location = Field(default_factory=lambda: Location(name="Unknown"))
    condition: str | None = None
    activity: str | None = None
    intent: str | None = None
    inventory: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
    attributes: list[Attribute] = Field(default_factory=list)


class EntityState(WireModel):
    id: str
    canon_id: str | None = None
    name: str
    location: Location = Field(default_factory=lambda: Location(name="Unknown"))
    activity: str | None = None
    condition: str | None = None
    intent: str | None = None
    relation_to_player: str | None = None
    attributes: list[Attribute] = Field(default_factory=list)


class QuestStep(WireModel):
    description: str
    completed: bool = False


class Quest(WireModel):
    id: str
    label: str
    description: str | None = None
    status: QuestStatus
    steps: list[QuestStep] = Field(default_factory=list)
    attributes: list[Attribute] = Field(default_factory=list)


class StoryThread(WireModel):
    id: str
    description: str
    status: ThreadStatus = "UNRESOLVED"


class WorldState(WireModel):
    schema_version: int = CURRENT_WORLD_STATE_VERSION
    scene: SceneState
    player: PlayerState = Field(default_factory=PlayerState)
    entities: list[EntityState] = Field(default_factory=list)
    quests: list[Quest] = Field(default_factory=list)
    threads: list[StoryThread] = Field(default_factory=list)
    facts: list[str] = Field(default_factory=list)
    hypotheses: list[str] = Field(default_factory=list)
    secrets: list[str] = Field(default_factory=list)

    def entity(self, entity_id: str) -> EntityState | None:
        for entity in self.entities:
            if entity.id == entity_id:
                return entity
        return None


DEFAULT_WORLD_STATE = WorldState(
    scene=SceneState(location=Location(name="Unknown"), time="Start of Adventure"),
    player=PlayerState(name="Player", location=Location(name="Unknown")),
)


def default_world_state() -> WorldState:
    return DEFAULT_WORLD_STATE.model_copy(deep=True)


# --- State patch ---


class SetDiff(WireModel):
    add: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)


class LocationPatch(WireModel):
    id: str | None = None
    name: str | None = None
    detail: str | None = None


class ScenePatch(WireModel):
    location: LocationPatch | None = None
    time: str | None = None
    weather: str | None = None
    atmosphere: str | None = None


class PlayerPatch(WireModel):
    name: str | None = None
    location: LocationPatch | None = None
    condition: str | None = None
    activity: str | None = None
    intent: str | None = None
    inventory: SetDiff | None = None
    capabilities: SetDiff | None = None
    attributes: list[Attribute] | None = None


class EntityPatch(WireModel):
    id: str
    deleted: bool = False
    canon_id: str | None = None
    name: str | None = None
    location: LocationPatch | None = None
    activity: str | None = None
    condition: str | None = None
    intent: str | None = None
    relation_to_player: str | None = None
    attributes: list[Attribute] | None = None


class QuestPatch(WireModel):
    id: str
    label: str | None = None
    description: str | None = None
    status: QuestStatus | None = None
    steps: list[QuestStep] | None = None
    attributes: list[Attribute] | None = None


class ThreadPatch(WireModel):
    id: str
    description: str | None = None
    status: ThreadStatus | None = None


class ChronicleEventDraft(WireModel):
    type: ChronicleEventType
    summary: str
    related_entity_ids: list[str] = Field(default_factory=list)


class StatePatch(WireModel):
    scene: ScenePatch | None = None
    player: PlayerPatch | None = None
    entities: list[EntityPatch] | None = None
    quests: list[QuestPatch] | None = None
    threads: list[ThreadPatch] | None = None
    facts: SetDiff | None = None
    hypotheses: SetDiff | None = None
    secrets: SetDiff | None = None
    events: list[ChronicleEventDraft] | None = None


# --- Canon and chronicle ---


class CanonEntry(WireModel):
    id: str
    category: CanonCategory
    name: str
    description: str
    tags: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)


class CanonEntryDraft(WireModel):
    category: CanonCategory
    name: str
    description: str
    tags: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)


class Canon(WireModel):
    entries: list[CanonEntry] = Field(default_factory=list)
    global_rules: list[str] = Field(default_factory=list)


class ChronicleEvent(WireModel):
    id: str
    timestamp: datetime
    summary: str
    type: ChronicleEventType
    related_entity_ids: list[str] = Field(default_factory=list)
    chat_node_id: str | None = None


class Chapter(WireModel):
    id: str
    title: str
    summary: str
    event_ids: list[str] = Field(default_factory=list)


class Chronicle(WireModel):
    events: list[ChronicleEvent] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)
