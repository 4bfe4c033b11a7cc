from __future__ import annotations

import uuid

from llm.schemas import CanonProposal
from world.schemas import Canon, CanonEntry, CanonEntryDraft


def empty_canon() -> Canon:
    return Canon(entries=[], global_rules=[])


def add_entry(canon: Canon | None, draft: CanonEntryDraft) -> Canon:
    current = canon or empty_canon()
    entry = CanonEntry(id=str(uuid.uuid4()), **draft.model_dump())
    return current.model_copy(update={"entries": [*current.entries, entry]})


def update_entry(canon: Canon | None, entry_id: str, updates: dict) -> Canon:
    current = canon or empty_canon()
    fields = {key: value for key, value in updates.items() if key != "id"}
    entries = []
    for entry in current.entries:
        if entry.id == entry_id:
            merged = {**entry.model_dump(), **fields, "id": entry.id}
            entry = CanonEntry.model_validate(merged)
        entries.append(entry)
    return current.model_copy(update={"entries": entries})


def delete_entry(canon: Canon | None, entry_id: str) -> Canon:
    current = canon or empty_canon()
    entries = [entry for entry in current.entries if entry.id != entry_id]
    return current.model_copy(update={"entries": entries})


def set_global_rules(canon: Canon | None, rules: list[str]) -> Canon:
    current = canon or empty_canon()
    return current.model_copy(update={"global_rules": [rule for rule in rules if rule.strip()]})


def apply_proposal(canon: Canon | None, proposal: CanonProposal) -> Canon:
    if proposal.type == "CREATE":
        return add_entry(canon, proposal.entry)
    if proposal.target_canon_id is None:
        return canon or empty_canon()
    return update_entry(canon, proposal.target_canon_id, proposal.entry.model_dump())
