from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable

from world.schemas import Chapter, Chronicle, ChronicleEvent, ChronicleEventDraft

logger = logging.getLogger(__name__)

CHAPTER_EVENT_LIMIT = 20


def empty_chronicle() -> Chronicle:
    return Chronicle(events=[], chapters=[])


def append_events(
    chronicle: Chronicle | None,
    drafts: Iterable[ChronicleEventDraft],
    *,
    chat_node_id: str | None = None,
) -> Chronicle:
    current = chronicle or empty_chronicle()
    timestamp = datetime.now(timezone.utc)
    new_events = [
        ChronicleEvent(
            id=str(uuid.uuid4()),
            timestamp=timestamp,
            summary=draft.summary,
            type=draft.type,
            related_entity_ids=list(draft.related_entity_ids),
            chat_node_id=chat_node_id,
        )
        for draft in drafts
    ]
    return current.model_copy(update={"events": [*current.events, *new_events]}).model_copy(
        deep=True
    )


def needs_wrap_up_before(
    chronicle: Chronicle | None,
    drafts: Iterable[ChronicleEventDraft],
) -> bool:
    """A new scene closes the chapter still holding pending events."""
    if chronicle is None or not chronicle.events:
        return False
    return any(draft.type == "SCENE_START" for draft in drafts)


def needs_wrap_up_after(
    chronicle: Chronicle | None,
    drafts: Iterable[ChronicleEventDraft],
) -> bool:
    if chronicle is None or not chronicle.events:
        return False
    if any(draft.type == "SCENE_END" for draft in drafts):
        return True
    return len(chronicle.events) >= CHAPTER_EVENT_LIMIT


def wrap_up_chapter(chronicle: Chronicle, title: str, summary: str) -> Chronicle:
    if not chronicle.events:
        return chronicle
    chapter = Chapter(
        id=str(uuid.uuid4()),
        title=title,
        summary=summary,
        event_ids=[event.id for event in chronicle.events],
    )
    logger.info("Chapter created: %s (%s events)", title, len(chapter.event_ids))
    return Chronicle(events=[], chapters=[*chronicle.chapters, chapter])
