from __future__ import annotations

import json
import logging
import os
from typing import Any, Iterable

import requests
from pydantic import ValidationError

from chat.tree import (
    ChatNode,
    ChatTree,
    TextPart,
    ThoughtPart,
    extract_system_prompt,
    get_path_nodes_from_head,
)
from llm.schemas import (
    CanonProposal,
    CanonProposalList,
    ChapterSummary,
    StoryReply,
    StoryResponse,
)
from world.schemas import Canon, Chronicle, ChronicleEvent, WorldState

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
DEFAULT_HISTORY_LIMIT = 20
TITLE_PATH_LIMIT = 6
FALLBACK_TITLE = "New Chat"


class LLMClientError(RuntimeError):
    pass


class OllamaClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        model: str | None = None,
        timeout: int | None = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("OLLAMA_URL") or "http://localhost:11434").rstrip(
            "/"
        )
        self.model = model or os.getenv("OLLAMA_MODEL") or "gpt-oss:20b"
        if timeout is None:
            timeout = int(os.getenv("OLLAMA_TIMEOUT", "120"))
        self.timeout = timeout

    def generate_from_tree(
        self,
        tree: ChatTree,
        *,
        history_limit: int | None = DEFAULT_HISTORY_LIMIT,
        include_thoughts: bool = False,
        temperature: float = 0.7,
        context: dict | None = None,
        model: str | None = None,
    ) -> StoryReply:
        context_payload = context or {}
        history = build_history_messages(
            tree,
            limit=history_limit,
            include_thoughts=include_thoughts,
            latest_state=context_payload.get("state"),
        )
        attempts = 0
        last_error: str | None = None
        while attempts < MAX_ATTEMPTS:
            attempts += 1
            system = build_system_prompt(tree, context_payload)
            if attempts > 1 and last_error:
                system += f"\n\nPrevious output invalid: {last_error}. Return JSON only."
            try:
                message = self._chat(
                    messages=[{"role": "system", "content": system}, *history],
                    temperature=temperature,
                    format=StoryResponse.model_json_schema(),
                    think=include_thoughts,
                    model=model,
                )
                response = _parse_story_response(message["content"])
            except (requests.RequestException, LLMClientError, ValidationError, ValueError) as exc:
                last_error = str(exc)
                logger.warning("Story generation attempt %s failed: %s", attempts, last_error)
                continue
            parts = []
            thinking = message.get("thinking")
            if include_thoughts and isinstance(thinking, str) and thinking:
                parts.append(ThoughtPart(thought=thinking))
            parts.append(TextPart(text=response.narrative))
            return StoryReply(
                parts=parts,
                raw_text=response.narrative,
                state_patch=response.state_patch,
            )
        raise LLMClientError("Failed to build StoryResponse JSON.")

    def summarize_chapter(self, events: Iterable[ChronicleEvent]) -> ChapterSummary:
        events = list(events)
        if not events:
            raise LLMClientError("No events to summarize.")
        attempts = 0
        last_error: str | None = None
        while attempts < MAX_ATTEMPTS:
            attempts += 1
            try:
                message = self._chat(
                    messages=_chapter_messages(events, attempts, last_error),
                    temperature=0.5,
                    format=ChapterSummary.model_json_schema(),
                )
                payload = _extract_json(message["content"])
                return ChapterSummary.model_validate(payload)
            except (requests.RequestException, LLMClientError, ValidationError, ValueError) as exc:
                last_error = str(exc)
        raise LLMClientError("Failed to build ChapterSummary JSON.")

    def generate_title(self, tree: ChatTree) -> str:
        try:
            message = self._chat(messages=_title_messages(tree), temperature=0.7)
        except (requests.RequestException, LLMClientError) as exc:
            logger.warning("Title generation failed: %s", exc)
            return FALLBACK_TITLE
        title = message["content"].strip().strip('"').strip()
        return title or FALLBACK_TITLE

    def curate_canon(self, context: dict) -> list[CanonProposal]:
        attempts = 0
        last_error: str | None = None
        while attempts < MAX_ATTEMPTS:
            attempts += 1
            try:
                message = self._chat(
                    messages=_curation_messages(context, attempts, last_error),
                    temperature=0.3,
                    format=CanonProposalList.model_json_schema(),
                )
                payload = _extract_json(message["content"])
                return CanonProposalList.model_validate(payload).proposals
            except (requests.RequestException, LLMClientError, ValidationError, ValueError) as exc:
                last_error = str(exc)
        raise LLMClientError("Failed to build CanonProposal JSON.")

    def _chat(
        self,
        *,
        messages: list[dict[str, str]],
        temperature: float,
        format: str | dict | None = None,
        think: bool = False,
        model: str | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/api/chat"
        payload: dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if format:
            payload["format"] = format
        if think:
            payload["think"] = True
        response = requests.post(url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        message = data.get("message", {})
        content = message.get("content")
        if not isinstance(content, str):
            raise LLMClientError("Invalid response from Ollama.")
        return message


def build_history_messages(
    tree: ChatTree,
    *,
    limit: int | None = DEFAULT_HISTORY_LIMIT,
    include_thoughts: bool = False,
    latest_state: WorldState | None = None,
) -> list[dict[str, str]]:
    """Render the head path as chat turns.

    The system node is left out; the provider gets it as the system prompt.
    When the newest turn is the player's, the current world state is
    inlined ahead of it.
    """
    nodes = [node for node in get_path_nodes_from_head(tree, limit) if node.role != "system"]
    messages = []
    for index, node in enumerate(nodes):
        message = _node_message(node, include_thoughts)
        is_last = index == len(nodes) - 1
        if is_last and latest_state is not None and node.role == "user":
            message["content"] = _state_block(latest_state) + message["content"]
        messages.append(message)
    return messages


def build_system_prompt(tree: ChatTree, context: dict | None = None) -> str:
    context = context or {}
    prompt = extract_system_prompt(tree)

    canon: Canon | None = context.get("canon")
    if canon is not None:
        if canon.global_rules:
            rules = "\n".join(f"- {rule}" for rule in canon.global_rules)
            prompt += f"\n\n# World Rules (Important)\n{rules}"
        entries = [entry.to_wire() for entry in canon.entries]
        prompt += f"\n\n# Canon (World Setting)\n{json.dumps(entries, indent=2, ensure_ascii=False)}"

    chronicle: Chronicle | None = context.get("chronicle")
    if chronicle is not None:
        prompt += (
            "\n\n# Chronicle (History)\n"
            f"{json.dumps(chronicle.to_wire(), indent=2, ensure_ascii=False)}"
        )

    state: WorldState | None = context.get("state")
    player_name = state.player.name if state is not None else "Player"
    prompt += (
        "\n\nROLE: Game Master."
        f'\nUSER ROLE: The user is playing as the character named "{player_name}".'
        "\nIMPORTANT: You must respond in valid JSON matching the schema. "
        "The 'narrative' field contains your main response. "
        "The 'statePatch' field contains any updates to the world state: "
        "scene/player overrides, add/remove lists for inventory, capabilities, "
        "facts, hypotheses and secrets, entity entries keyed by id "
        "(set deleted=true when an entity leaves the story for good), "
        "quest and thread upserts, and chronicle events."
    )
    return prompt


def _node_message(node: ChatNode, include_thoughts: bool) -> dict[str, str]:
    texts = [part.text for part in node.parts if isinstance(part, TextPart)]
    message = {"role": _chat_role(node.role), "content": "\n\n".join(texts)}
    if include_thoughts:
        thoughts = [part.thought for part in node.parts if isinstance(part, ThoughtPart)]
        if thoughts:
            message["thinking"] = "\n\n".join(thoughts)
    return message


def _chat_role(role: str) -> str:
    if role == "user":
        return "user"
    if role == "assistant":
        return "assistant"
    if role == "system":
        raise LLMClientError("System nodes are rendered as the system prompt.")
    raise LLMClientError(f"Unknown role: {role}")


def _state_block(state: WorldState) -> str:
    rendered = json.dumps(state.to_wire(), indent=2, ensure_ascii=False)
    return f"# Current World State\n```json\n{rendered}\n```\n\n"


def _chapter_messages(
    events: list[ChronicleEvent],
    attempt: int,
    last_error: str | None,
) -> list[dict[str, str]]:
    system = (
        "You are the chronicle keeper. Summarize the following chronological events "
        "as one chapter of the story. Keep it brief but capture the main developments, "
        "key decisions and their results. "
        'Return JSON only: {"title": "short evocative chapter title", '
        '"summary": "two or three sentence summary"}.'
    )
    if attempt > 1 and last_error:
        system += f" Previous output invalid: {last_error}. Return JSON only."
    lines = "\n".join(f"[{event.type}] {event.summary}" for event in events)
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": lines},
    ]


def _title_messages(tree: ChatTree) -> list[dict[str, str]]:
    lines = []
    for node in get_path_nodes_from_head(tree, TITLE_PATH_LIMIT):
        if node.role == "system":
            continue
        text = next((part.text for part in node.parts if isinstance(part, TextPart)), "")
        lines.append(f"{node.role}: {text}")
    system = (
        "Summarize the following conversation into a short, concise title (max 6 words). "
        "Do not use quotes. Output the title directly."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": "Conversation:\n" + "\n".join(lines)},
    ]


def _curation_messages(
    context: dict,
    attempt: int,
    last_error: str | None,
) -> list[dict[str, str]]:
    system = (
        "You curate the canon: a long-term encyclopedia of world facts. "
        "Compare the current world state and chronicle with the canon and propose "
        "entries to CREATE for newly established characters, locations, items or lore, "
        "or to UPDATE when an existing entry is now out of date. "
        'Return JSON only: {"proposals": [{"type": "CREATE|UPDATE", '
        '"targetCanonId": "string|null", "entry": {"category": '
        '"CHARACTER|LOCATION|ITEM|LORE|RULE|FACTION", "name": "string", '
        '"description": "string", "tags": ["string"], "aliases": ["string"]}, '
        '"reason": "string"}]}. For UPDATE the entry is the merged final entry.'
    )
    if attempt > 1 and last_error:
        system += f" Previous output invalid: {last_error}. Return JSON only."

    user: dict[str, Any] = {}
    for key in ("canon", "chronicle", "state"):
        value = context.get(key)
        user[key] = value.to_wire() if value is not None else None
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": json.dumps(user, ensure_ascii=False)},
    ]


def _parse_story_response(content: str) -> StoryResponse:
    payload = _extract_json(content)
    return StoryResponse.model_validate(payload)


def _extract_json(content: str) -> dict[str, Any]:
    try:
        data = json.loads(content)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    start = content.find("{")
    end = content.rfind("}")
    if start >= 0 and end > start:
        data = json.loads(content[start : end + 1])
        if isinstance(data, dict):
            return data
    raise LLMClientError("Failed to parse JSON response.")
