from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from chat.tree import (
    ChatTree,
    Direction,
    Part,
    TreeStructureError,
    append_user,
    attach_state,
    create_empty_tree,
    find_state_node,
    navigate_branch,
    regenerate_assistant,
    reply_assistant,
    resolve_state,
    rewrite_node,
    set_head,
    text_parts,
)
from gm_os.chronicle import (
    append_events,
    needs_wrap_up_after,
    needs_wrap_up_before,
    wrap_up_chapter,
)
from gm_os.schemas import DEFAULT_SYSTEM_PROMPT, GenerationConfig, StorySession
from llm.client import LLMClientError
from llm.schemas import ChapterSummary, StoryReply
from world.migrations import load_world_state
from world.patch import apply_state_patch
from world.schemas import Chronicle, ChronicleEvent, StatePatch, WorldState, default_world_state

logger = logging.getLogger(__name__)


class TurnError(ValueError):
    pass


class GenerationError(RuntimeError):
    """The provider failed after part of the turn was already committed.

    ``session`` holds that committed snapshot (for example the new user
    node) so the caller can keep and persist it.
    """

    def __init__(self, message: str, session: StorySession) -> None:
        super().__init__(message)
        self.session = session


class StoryClient(Protocol):
    def generate_from_tree(
        self,
        tree: ChatTree,
        *,
        history_limit: int | None = ...,
        include_thoughts: bool = ...,
        temperature: float = ...,
        context: dict | None = ...,
        model: str | None = ...,
    ) -> StoryReply: ...

    def summarize_chapter(self, events: list[ChronicleEvent]) -> ChapterSummary: ...


@dataclass(frozen=True)
class TurnOutcome:
    session: StorySession
    state: WorldState | None = None
    patch: StatePatch | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_session(
    system_prompt: str | None = None,
    *,
    initial_state: WorldState | None = None,
    config: GenerationConfig | None = None,
    title: str | None = None,
) -> StorySession:
    prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
    now = _now()
    fields = {}
    if title:
        fields["title"] = title
    return StorySession(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        tree=create_empty_tree(prompt, initial_state),
        config=config or GenerationConfig(),
        system_prompt=prompt,
        **fields,
    )


def send_message(session: StorySession, text: str, llm_client: StoryClient) -> TurnOutcome:
    if not text or not text.strip():
        raise TurnError("Message text is required.")

    tree = append_user(session.tree, text)
    user_id = tree.head_id
    state = resolve_state(tree, user_id, include_self=False)
    reply = _generate(session, tree, state, llm_client, committed=tree)
    return _commit_reply(session, tree, state, reply, llm_client, parent_id=user_id)


def regenerate(
    session: StorySession,
    llm_client: StoryClient,
    node_id: str | None = None,
) -> TurnOutcome:
    tree = session.tree
    target_id = node_id or tree.head_id
    node = tree.nodes.get(target_id)
    if node is None:
        raise TreeStructureError(f"target_id does not exist in nodes. target_id={target_id}")
    if node.role != "assistant":
        raise TurnError("Only assistant nodes can be regenerated.")
    if not node.parent_id:
        raise TreeStructureError("Root node cannot be regenerated.")

    state = resolve_state(tree, node.parent_id)
    provisional = set_head(tree, node.parent_id)
    reply = _generate(session, provisional, state, llm_client, committed=tree)
    return _commit_reply(session, tree, state, reply, llm_client, regenerate_of=target_id)


def edit_message(
    session: StorySession,
    node_id: str,
    text: str,
    llm_client: StoryClient,
) -> TurnOutcome:
    node = session.tree.nodes.get(node_id)
    if node is None:
        raise TreeStructureError(f"target_id does not exist in nodes. target_id={node_id}")
    if not text or not text.strip():
        raise TurnError("Message text is required.")

    tree = rewrite_node(session.tree, node_id, text_parts(text))
    if node.role != "user":
        return TurnOutcome(session=_with(session, tree=tree))

    rewritten_id = tree.head_id
    state = resolve_state(tree, rewritten_id, include_self=False)
    reply = _generate(session, tree, state, llm_client, committed=tree)
    return _commit_reply(session, tree, state, reply, llm_client, parent_id=rewritten_id)


def navigate(session: StorySession, node_id: str, direction: Direction) -> TurnOutcome:
    if direction not in ("next", "prev"):
        raise TurnError(f"Unknown direction: {direction}")
    tree = navigate_branch(session.tree, node_id, direction)
    return TurnOutcome(session=_with(session, tree=tree), state=resolve_state(tree))


def update_player_name(session: StorySession, name: str) -> TurnOutcome:
    if not name or not name.strip():
        raise TurnError("Player name is required.")
    tree = session.tree
    state_node = find_state_node(tree)
    if state_node is not None and state_node.state is not None:
        target_id = state_node.id
        state = load_world_state(state_node.state)
    else:
        target_id = tree.head_id
        state = default_world_state()

    player = state.player.model_copy(update={"name": name.strip()})
    next_state = state.model_copy(update={"player": player})
    return TurnOutcome(
        session=_with(session, tree=attach_state(tree, target_id, next_state)),
        state=next_state,
    )


def _generate(
    session: StorySession,
    tree: ChatTree,
    state: WorldState,
    llm_client: StoryClient,
    *,
    committed: ChatTree,
) -> StoryReply:
    config = session.config
    context = {"canon": session.canon, "chronicle": session.chronicle, "state": state}
    try:
        return llm_client.generate_from_tree(
            tree,
            history_limit=config.history_limit,
            include_thoughts=config.include_thoughts,
            temperature=config.temperature,
            context=context,
            model=config.model,
        )
    except LLMClientError as exc:
        raise GenerationError(str(exc), _with(session, tree=committed)) from exc


def _commit_reply(
    session: StorySession,
    tree: ChatTree,
    state: WorldState,
    reply: StoryReply,
    llm_client: StoryClient,
    *,
    parent_id: str | None = None,
    regenerate_of: str | None = None,
) -> TurnOutcome:
    next_state = state
    if reply.state_patch is not None:
        next_state = apply_state_patch(state, reply.state_patch)
        logger.debug("State updated from patch: %s", reply.state_patch.to_wire())

    parts: list[Part] = list(reply.parts)
    if regenerate_of is not None:
        final_tree = regenerate_assistant(tree, regenerate_of, parts, next_state)
    else:
        final_tree = reply_assistant(tree, parent_id, parts, next_state)

    chronicle = session.chronicle
    events = reply.state_patch.events if reply.state_patch is not None else None
    if events:
        chronicle = _record_events(chronicle, events, final_tree.head_id, llm_client)

    return TurnOutcome(
        session=_with(session, tree=final_tree, chronicle=chronicle),
        state=next_state,
        patch=reply.state_patch,
    )


def _record_events(
    chronicle: Chronicle | None,
    drafts: list,
    node_id: str,
    llm_client: StoryClient,
) -> Chronicle:
    if needs_wrap_up_before(chronicle, drafts):
        logger.info("Scene start detected: wrapping up previous chapter first.")
        chronicle = _close_chapter(chronicle, llm_client)
    chronicle = append_events(chronicle, drafts, chat_node_id=node_id)
    if needs_wrap_up_after(chronicle, drafts):
        logger.info("Triggering chapter wrap-up at %s events.", len(chronicle.events))
        chronicle = _close_chapter(chronicle, llm_client)
    return chronicle


def _close_chapter(chronicle: Chronicle, llm_client: StoryClient) -> Chronicle:
    try:
        summary = llm_client.summarize_chapter(list(chronicle.events))
    except LLMClientError as exc:
        logger.warning("Chapter wrap-up failed: %s", exc)
        return chronicle
    return wrap_up_chapter(chronicle, summary.title, summary.summary)


def _with(session: StorySession, **fields) -> StorySession:
    return session.model_copy(update=fields)
