from gm_os.canon import add_entry, apply_proposal, delete_entry, set_global_rules, update_entry
from llm.schemas import CanonProposal
from world.schemas import CanonEntryDraft


def _draft(name: str = "Marta", description: str = "Keeps the inn.") -> CanonEntryDraft:
    return CanonEntryDraft(category="CHARACTER", name=name, description=description)


def test_add_update_delete_entry() -> None:
    canon = add_entry(None, _draft())
    entry_id = canon.entries[0].id

    canon = update_entry(canon, entry_id, {"description": "Owns the inn.", "id": "ignored"})
    assert canon.entries[0].id == entry_id
    assert canon.entries[0].description == "Owns the inn."
    assert canon.entries[0].name == "Marta"

    assert delete_entry(canon, entry_id).entries == []


def test_global_rules_drop_blank_lines() -> None:
    canon = set_global_rules(None, ["Magic is rare.", "  ", "No guns."])

    assert canon.global_rules == ["Magic is rare.", "No guns."]


def test_create_proposal_adds_new_entry() -> None:
    proposal = CanonProposal(type="CREATE", entry=_draft(), reason="New character")

    canon = apply_proposal(None, proposal)

    assert [entry.name for entry in canon.entries] == ["Marta"]


def test_update_proposal_keeps_target_id() -> None:
    canon = add_entry(None, _draft())
    entry_id = canon.entries[0].id
    proposal = CanonProposal(
        type="UPDATE",
        target_canon_id=entry_id,
        entry=_draft(description="Retired innkeeper."),
        reason="She sold the inn",
    )

    updated = apply_proposal(canon, proposal)

    assert len(updated.entries) == 1
    assert updated.entries[0].id == entry_id
    assert updated.entries[0].description == "Retired innkeeper."


def test_update_proposal_without_target_changes_nothing() -> None:
    canon = add_entry(None, _draft())
    proposal = CanonProposal(type="UPDATE", entry=_draft(name="Other"), reason="?")

    assert apply_proposal(canon, proposal) == canon
