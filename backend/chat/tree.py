from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import Field

from world.migrations import load_world_state
from world.schemas import WireModel, WorldState, default_world_state

Role = Literal["system", "user", "assistant"]
Relation = Literal["initiate", "reply", "regenerate", "rewrite"]
Direction = Literal["next", "prev"]

DEFAULT_PATH_LIMIT = 10
ACTIVE_PATH_LIMIT = 10_000


class TreeStructureError(ValueError):
    pass


class TextPart(WireModel):
    kind: Literal["text"] = "text"
    text: str


class ThoughtPart(WireModel):
    kind: Literal["thought"] = "thought"
    thought: str


class ImageRefPart(WireModel):
    kind: Literal["image_ref"] = "image_ref"
    id: str
    caption: str | None = None


Part = Annotated[TextPart | ThoughtPart | ImageRefPart, Field(discriminator="kind")]


class ChatNode(WireModel):
    id: str
    relation: Relation
    role: Role
    parts: list[Part] = Field(default_factory=list)
    parent_id: str | None = None
    created_at: datetime
    state: WorldState | None = None


class ChatTree(WireModel):
    root_id: str
    head_id: str
    nodes: dict[str, ChatNode]
    children: dict[str, list[str]] = Field(default_factory=dict)
    active_child_by_parent: dict[str, str] = Field(default_factory=dict)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _make_id() -> str:
    return str(uuid.uuid4())


def text_parts(text: str) -> list[Part]:
    return [TextPart(text=text)]


def _require_node(tree: ChatTree, node_id: str, label: str) -> ChatNode:
    node = tree.nodes.get(node_id)
    if node is None:
        raise TreeStructureError(f"{label} does not exist in nodes. {label}={node_id}")
    return node


def _require_parent(tree: ChatTree, node_id: str, label: str) -> str:
    node = _require_node(tree, node_id, label)
    if not node.parent_id:
        raise TreeStructureError(f"{label} does not have a parent_id. {label}={node_id}")
    return node.parent_id


def create_empty_tree(system_prompt: str, initial_state: WorldState | None = None) -> ChatTree:
    root_id = _make_id()
    root = ChatNode(
        id=root_id,
        relation="initiate",
        role="system",
        parts=text_parts(system_prompt),
        parent_id=None,
        created_at=_now(),
        state=initial_state.model_copy(deep=True) if initial_state else None,
    )
    return ChatTree(
        root_id=root_id,
        head_id=root_id,
        nodes={root_id: root},
        children={},
        active_child_by_parent={},
    )


def add_child(
    tree: ChatTree,
    parent_id: str,
    relation: Relation,
    role: Role,
    parts: list[Part],
    state: WorldState | None = None,
) -> ChatTree:
    """Create a node under ``parent_id``, activate it and move the head to it.

    The node map, the child index and the active-child index are only ever
    updated together, here.
    """
    _require_node(tree, parent_id, "parent_id")

    child_id = _make_id()
    child = ChatNode(
        id=child_id,
        relation=relation,
        role=role,
        parts=[part.model_copy() for part in parts],
        parent_id=parent_id,
        created_at=_now(),
        state=state.model_copy(deep=True) if state else None,
    )

    siblings = list(tree.children.get(parent_id, []))
    if child_id not in siblings:
        siblings.append(child_id)

    return tree.model_copy(
        update={
            "nodes": {**tree.nodes, child_id: child},
            "children": {**tree.children, parent_id: siblings},
            "active_child_by_parent": {**tree.active_child_by_parent, parent_id: child_id},
            "head_id": child_id,
        }
    )


def append_user(tree: ChatTree, text: str) -> ChatTree:
    return add_child(tree, tree.head_id, "reply", "user", text_parts(text))


def reply_assistant(
    tree: ChatTree,
    parent_id: str,
    parts: list[Part],
    state: WorldState | None = None,
) -> ChatTree:
    return add_child(tree, parent_id, "reply", "assistant", parts, state)


def regenerate_assistant(
    tree: ChatTree,
    target_id: str,
    parts: list[Part],
    state: WorldState | None = None,
) -> ChatTree:
    parent_id = _require_parent(tree, target_id, "target_id")
    return add_child(tree, parent_id, "regenerate", "assistant", parts, state)


def rewrite_node(tree: ChatTree, target_id: str, parts: list[Part]) -> ChatTree:
    parent_id = _require_parent(tree, target_id, "target_id")
    role = tree.nodes[target_id].role
    return add_child(tree, parent_id, "rewrite", role, parts)


def get_alternatives(tree: ChatTree, parent_id: str) -> list[ChatNode]:
    ids = tree.children.get(parent_id, [])
    return [tree.nodes[node_id] for node_id in ids if node_id in tree.nodes]


def set_active(tree: ChatTree, target_id: str, move_head: bool = True) -> ChatTree:
    parent_id = _require_parent(tree, target_id, "target_id")
    if target_id not in tree.children.get(parent_id, []):
        raise TreeStructureError(
            f"target_id is not in children[parent_id]. "
            f"parent_id={parent_id}, target_id={target_id}"
        )

    updated = tree.model_copy(
        update={
            "active_child_by_parent": {**tree.active_child_by_parent, parent_id: target_id},
        }
    )
    if move_head:
        return updated.model_copy(update={"head_id": target_id})
    return recalculate_head_id(updated)


def set_head(tree: ChatTree, node_id: str) -> ChatTree:
    _require_node(tree, node_id, "head_id")
    return tree.model_copy(update={"head_id": node_id})


def get_head_node(tree: ChatTree) -> ChatNode:
    return _require_node(tree, tree.head_id, "head_id")


def get_path_nodes_from_head(
    tree: ChatTree,
    limit: int | None = DEFAULT_PATH_LIMIT,
    stop_at_root: bool = True,
) -> list[ChatNode]:
    """Walk parent pointers back from the head, returned oldest first."""
    out: list[ChatNode] = []
    current_id = tree.head_id
    while current_id and (limit is None or len(out) < limit):
        node = tree.nodes.get(current_id)
        if node is None:
            break
        out.append(node)
        if stop_at_root and current_id == tree.root_id:
            break
        current_id = node.parent_id
    out.reverse()
    return out


def get_active_path_nodes(tree: ChatTree, limit: int = ACTIVE_PATH_LIMIT) -> list[ChatNode]:
    """Walk the active-child chain forward from the root."""
    out: list[ChatNode] = []
    current_id: str | None = tree.root_id
    for _ in range(limit):
        node = tree.nodes.get(current_id) if current_id else None
        if node is None:
            break
        out.append(node)
        current_id = tree.active_child_by_parent.get(current_id)
    return out


def recalculate_head_id(tree: ChatTree) -> ChatTree:
    node_id = tree.root_id
    seen = {node_id}
    while True:
        next_id = tree.active_child_by_parent.get(node_id)
        if not next_id or next_id in seen:
            break
        seen.add(next_id)
        node_id = next_id
    return tree.model_copy(update={"head_id": node_id})


def branch_position(tree: ChatTree, node_id: str) -> tuple[int, int]:
    node = _require_node(tree, node_id, "node_id")
    if not node.parent_id:
        return 0, 1
    siblings = tree.children.get(node.parent_id, [])
    if node_id not in siblings:
        raise TreeStructureError(
            f"node_id is not in children[parent_id]. "
            f"parent_id={node.parent_id}, node_id={node_id}"
        )
    return siblings.index(node_id), len(siblings)


def select_branch(tree: ChatTree, node_id: str) -> ChatTree:
    """Activate ``node_id`` and every ancestor leading to it.

    The head is then recomputed from the root, so it lands on the leaf the
    active links reach and the head path equals the active path.
    """
    _require_node(tree, node_id, "node_id")
    active = dict(tree.active_child_by_parent)
    current_id = node_id
    while True:
        parent_id = tree.nodes[current_id].parent_id
        if not parent_id:
            break
        if current_id not in tree.children.get(parent_id, []):
            raise TreeStructureError(
                f"node_id is not in children[parent_id]. "
                f"parent_id={parent_id}, node_id={current_id}"
            )
        active[parent_id] = current_id
        current_id = parent_id
    return recalculate_head_id(tree.model_copy(update={"active_child_by_parent": active}))


def navigate_branch(tree: ChatTree, node_id: str, direction: Direction) -> ChatTree:
    node = _require_node(tree, node_id, "node_id")
    if not node.parent_id:
        return tree
    index, count = branch_position(tree, node_id)
    step = 1 if direction == "next" else -1
    target_id = tree.children[node.parent_id][(index + step) % count]
    return select_branch(tree, target_id)


def resolve_state(
    tree: ChatTree,
    node_id: str | None = None,
    *,
    include_self: bool = True,
) -> WorldState:
    """Recover the world state in effect at a node.

    Walks ancestors until a node carrying a snapshot is found, falling back
    to the default state when the whole path is bare.
    """
    start_id = node_id or tree.head_id
    node = _require_node(tree, start_id, "node_id")
    current_id = start_id if include_self else node.parent_id
    while current_id:
        node = tree.nodes.get(current_id)
        if node is None:
            break
        if node.state is not None:
            return load_world_state(node.state)
        current_id = node.parent_id
    return default_world_state()


def find_state_node(tree: ChatTree, node_id: str | None = None) -> ChatNode | None:
    current_id = node_id or tree.head_id
    while current_id:
        node = tree.nodes.get(current_id)
        if node is None:
            return None
        if node.state is not None:
            return node
        current_id = node.parent_id
    return None


def attach_state(tree: ChatTree, node_id: str, state: WorldState) -> ChatTree:
    node = _require_node(tree, node_id, "node_id")
    replaced = node.model_copy(update={"state": state.model_copy(deep=True)})
    return tree.model_copy(update={"nodes": {**tree.nodes, node_id: replaced}})


def extract_system_prompt(tree: ChatTree) -> str:
    root = tree.nodes.get(tree.root_id)
    if root is None:
        raise TreeStructureError("Root node does not exist")
    if root.role != "system":
        raise TreeStructureError("Root node must be system")
    return "\n".join(part.text for part in root.parts if isinstance(part, TextPart))


def validate_tree(tree: ChatTree) -> list[str]:
    errors: list[str] = []
    roots = [node.id for node in tree.nodes.values() if node.parent_id is None]
    if roots != [tree.root_id]:
        errors.append(f"expected single root {tree.root_id}, found {roots}")
    if tree.head_id not in tree.nodes:
        errors.append(f"head_id {tree.head_id} is not a node")

    expected: dict[str, list[str]] = {}
    for node_id, node in tree.nodes.items():
        if node.id != node_id:
            errors.append(f"node stored under {node_id} has id {node.id}")
        if node.parent_id is None:
            continue
        if node.parent_id not in tree.nodes:
            errors.append(f"node {node_id} has unknown parent {node.parent_id}")
        expected.setdefault(node.parent_id, []).append(node_id)

    actual_keys = {key for key, ids in tree.children.items() if ids}
    if actual_keys != set(expected):
        errors.append("children index keys do not match parent pointers")
    for parent_id, ids in tree.children.items():
        if sorted(ids) != sorted(expected.get(parent_id, [])):
            errors.append(f"children[{parent_id}] does not match parent pointers")
        if len(set(ids)) != len(ids):
            errors.append(f"children[{parent_id}] has duplicate ids")

    for parent_id, child_id in tree.active_child_by_parent.items():
        if parent_id not in tree.nodes or child_id not in tree.nodes:
            errors.append(f"active child {parent_id} -> {child_id} references a missing node")
        elif child_id not in tree.children.get(parent_id, []):
            errors.append(f"active child {child_id} is not listed under {parent_id}")
    return errors
