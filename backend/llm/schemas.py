from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from chat.tree import Part
from world.schemas import CanonEntryDraft, StatePatch, WireModel


class StoryResponse(WireModel):
    narrative: str
    state_patch: StatePatch | None = None


class ChapterSummary(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    title: str
    summary: str


class CanonProposal(WireModel):
    type: Literal["CREATE", "UPDATE"]
    target_canon_id: str | None = None
    entry: CanonEntryDraft
    reason: str


class CanonProposalList(WireModel):
    proposals: list[CanonProposal] = Field(default_factory=list)


class StoryReply(BaseModel):
    model_config = ConfigDict(extra="forbid")

    parts: list[Part]
    raw_text: str
    state_patch: StatePatch | None = None
