from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from chat.tree import text_parts
from llm.client import LLMClientError
from llm.schemas import CanonProposal, ChapterSummary, StoryReply
from models import Base
from world.schemas import CanonEntryDraft, StatePatch


class DummyOllama:
    replies: list = []

    def __init__(self, *args, **kwargs):
        pass

    def generate_from_tree(self, tree, **kwargs):
        reply = DummyOllama.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def summarize_chapter(self, events):
        return ChapterSummary(title="Chapter", summary="Summary")

    def generate_title(self, tree):
        return "Harbor Tales"

    def curate_canon(self, context):
        return [
            CanonProposal(
                type="CREATE",
                entry=CanonEntryDraft(category="LOCATION", name="Harbor", description="A port"),
                reason="Visited",
            )
        ]


def _client(monkeypatch, *replies) -> TestClient:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    monkeypatch.setattr(
        "gm_os.store.SessionLocal",
        sessionmaker(bind=engine, autoflush=False, autocommit=False),
    )
    monkeypatch.setattr(DummyOllama, "replies", list(replies))
    monkeypatch.setattr("app.main.OllamaClient", DummyOllama)
    return TestClient(app)


def _reply(text: str, patch: dict | None = None) -> StoryReply:
    return StoryReply(
        parts=text_parts(text),
        raw_text=text,
        state_patch=StatePatch.model_validate(patch) if patch is not None else None,
    )


def test_create_and_fetch_session(monkeypatch) -> None:
    client = _client(monkeypatch)

    created = client.post("/sessions", json={"title": "Harbor", "systemPrompt": "Narrate."})
    assert created.status_code == 200
    body = created.json()
    assert body["title"] == "Harbor"
    assert body["tree"]["rootId"] == body["tree"]["headId"]

    fetched = client.get(f"/sessions/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["systemPrompt"] == "Narrate."

    listing = client.get("/sessions")
    assert [item["id"] for item in listing.json()] == [body["id"]]


def test_create_session_without_body(monkeypatch) -> None:
    client = _client(monkeypatch)

    response = client.post("/sessions")

    assert response.status_code == 200
    assert response.json()["title"] == "New Chat"


def test_create_session_rejects_bad_initial_state(monkeypatch) -> None:
    client = _client(monkeypatch)

    response = client.post("/sessions", json={"initialState": {"schemaVersion": 99}})

    assert response.status_code == 400


def test_unknown_session_is_404(monkeypatch) -> None:
    client = _client(monkeypatch)

    assert client.get("/sessions/missing").status_code == 404
    assert client.delete("/sessions/missing").status_code == 404
    assert client.post("/sessions/missing/messages", json={"text": "hi"}).status_code == 404


def test_message_turn_returns_session_state_and_patch(monkeypatch) -> None:
    client = _client(monkeypatch, _reply("Gulls cry.", {"facts": {"add": ["Gulls nest here."]}}))
    session_id = client.post("/sessions").json()["id"]

    response = client.post(f"/sessions/{session_id}/messages", json={"text": "I walk to the docks."})

    assert response.status_code == 200
    body = response.json()
    assert body["state"]["facts"] == ["Gulls nest here."]
    assert body["patch"]["facts"]["add"] == ["Gulls nest here."]
    stored = client.get(f"/sessions/{session_id}").json()
    assert len(stored["tree"]["nodes"]) == 3


def test_generation_failure_persists_user_turn(monkeypatch) -> None:
    client = _client(monkeypatch, LLMClientError("down"))
    session_id = client.post("/sessions").json()["id"]

    response = client.post(f"/sessions/{session_id}/messages", json={"text": "Hello?"})

    assert response.status_code == 502
    stored = client.get(f"/sessions/{session_id}").json()
    head = stored["tree"]["nodes"][stored["tree"]["headId"]]
    assert head["role"] == "user"


def test_regenerate_and_navigate(monkeypatch) -> None:
    client = _client(monkeypatch, _reply("First."), _reply("Second."))
    session_id = client.post("/sessions").json()["id"]
    first = client.post(f"/sessions/{session_id}/messages", json={"text": "Go."}).json()
    first_id = first["session"]["tree"]["headId"]

    regenerated = client.post(f"/sessions/{session_id}/regenerate")
    assert regenerated.status_code == 200
    second_id = regenerated.json()["session"]["tree"]["headId"]
    assert second_id != first_id

    navigated = client.post(
        f"/sessions/{session_id}/navigate",
        json={"nodeId": second_id, "direction": "prev"},
    )
    assert navigated.status_code == 200
    assert navigated.json()["session"]["tree"]["headId"] == first_id


def test_regenerate_user_node_is_400(monkeypatch) -> None:
    client = _client(monkeypatch, _reply("First."))
    session_id = client.post("/sessions").json()["id"]
    tree = client.post(f"/sessions/{session_id}/messages", json={"text": "Go."}).json()["session"]["tree"]
    user_id = tree["nodes"][tree["headId"]]["parentId"]

    response = client.post(f"/sessions/{session_id}/regenerate", json={"nodeId": user_id})

    assert response.status_code == 400


def test_edit_and_player_name(monkeypatch) -> None:
    client = _client(monkeypatch, _reply("First."), _reply("Edited."))
    session_id = client.post("/sessions").json()["id"]
    tree = client.post(f"/sessions/{session_id}/messages", json={"text": "Go."}).json()["session"]["tree"]
    user_id = tree["nodes"][tree["headId"]]["parentId"]

    edited = client.post(f"/sessions/{session_id}/edit", json={"nodeId": user_id, "text": "Run."})
    assert edited.status_code == 200

    named = client.post(f"/sessions/{session_id}/player-name", json={"name": "Ada"})
    assert named.status_code == 200
    assert named.json()["state"]["player"]["name"] == "Ada"


def test_rename_put_and_delete(monkeypatch) -> None:
    client = _client(monkeypatch)
    session = client.post("/sessions").json()
    session_id = session["id"]

    assert client.patch(f"/sessions/{session_id}", json={"title": "  "}).status_code == 400
    renamed = client.patch(f"/sessions/{session_id}", json={"title": "Renamed"})
    assert renamed.json()["title"] == "Renamed"

    mismatch = client.put(f"/sessions/{session_id}", json={**session, "id": "other"})
    assert mismatch.status_code == 400
    replaced = client.put(f"/sessions/{session_id}", json={**session, "title": "Replaced"})
    assert replaced.status_code == 200
    assert client.get(f"/sessions/{session_id}").json()["title"] == "Replaced"

    assert client.delete(f"/sessions/{session_id}").json() == {"success": True}
    assert client.get(f"/sessions/{session_id}").status_code == 404


def test_title_and_canon_curation(monkeypatch) -> None:
    client = _client(monkeypatch, _reply("Gulls cry."))
    session_id = client.post("/sessions").json()["id"]

    assert client.post(f"/sessions/{session_id}/curate").status_code == 400

    client.post(f"/sessions/{session_id}/messages", json={"text": "Docks."})
    assert client.post(f"/sessions/{session_id}/title").json() == {"title": "Harbor Tales"}

    proposals = client.post(f"/sessions/{session_id}/curate").json()["proposals"]
    assert proposals[0]["entry"]["name"] == "Harbor"

    applied = client.post(
        f"/sessions/{session_id}/canon/proposals/apply",
        json={"proposal": proposals[0]},
    )
    assert applied.status_code == 200
    assert [entry["name"] for entry in applied.json()["canon"]["entries"]] == ["Harbor"]


def test_manual_canon_editing(monkeypatch) -> None:
    client = _client(monkeypatch)
    session_id = client.post("/sessions").json()["id"]

    created = client.post(
        f"/sessions/{session_id}/canon/entries",
        json={"category": "CHARACTER", "name": "Marta", "description": "Keeps the inn.", "tags": ["npc"]},
    )
    assert created.status_code == 200
    entry = created.json()["canon"]["entries"][0]

    updated = client.patch(
        f"/sessions/{session_id}/canon/entries/{entry['id']}",
        json={"description": "Owns the inn."},
    )
    assert updated.status_code == 200
    entries = updated.json()["canon"]["entries"]
    assert entries == [{**entry, "description": "Owns the inn."}]

    rules = client.put(
        f"/sessions/{session_id}/canon/rules",
        json={"rules": ["Magic is rare.", " "]},
    )
    assert rules.json()["canon"]["globalRules"] == ["Magic is rare."]

    stored = client.get(f"/sessions/{session_id}").json()
    assert stored["canon"]["entries"][0]["description"] == "Owns the inn."
    assert stored["canon"]["globalRules"] == ["Magic is rare."]

    deleted = client.delete(f"/sessions/{session_id}/canon/entries/{entry['id']}")
    assert deleted.status_code == 200
    assert deleted.json()["canon"]["entries"] == []


def test_canon_entry_routes_reject_unknown_entries(monkeypatch) -> None:
    client = _client(monkeypatch)
    session_id = client.post("/sessions").json()["id"]

    assert client.patch(f"/sessions/{session_id}/canon/entries/missing", json={"name": "X"}).status_code == 404
    assert client.delete(f"/sessions/{session_id}/canon/entries/missing").status_code == 404
    assert (
        client.post(
            f"/sessions/{session_id}/canon/entries",
            json={"category": "WEAPON", "name": "Sword", "description": "Sharp"},
        ).status_code
        == 422
    )
