from __future__ import annotations

import os
from datetime import datetime

from pydantic import Field

from chat.tree import ChatTree
from world.schemas import Canon, Chronicle, WireModel

DEFAULT_SYSTEM_PROMPT = "You are a creative roleplay partner. Write in a vivid, engaging style."
DEFAULT_TITLE = "New Chat"
SESSION_SCHEMA_VERSION = 1


def _default_history_limit() -> int:
    return int(os.getenv("STORY_HISTORY_LIMIT", "20"))


class GenerationConfig(WireModel):
    model: str | None = None
    temperature: float = Field(default=0.7, ge=0, le=2)
    include_thoughts: bool = False
    history_limit: int = Field(default_factory=_default_history_limit, ge=1)


class StorySession(WireModel):
    id: str
    title: str = DEFAULT_TITLE
    created_at: datetime
    updated_at: datetime
    tree: ChatTree
    config: GenerationConfig = Field(default_factory=GenerationConfig)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    canon: Canon | None = None
    chronicle: Chronicle | None = None
    schema_version: int = SESSION_SCHEMA_VERSION


class SessionMetadata(WireModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
