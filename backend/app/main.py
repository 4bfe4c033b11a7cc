import logging
from typing import Any, Literal

from fastapi import Body, FastAPI, HTTPException
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from chat.tree import TreeStructureError, find_state_node, resolve_state
from db import check_db_connection
from gm_os.canon import add_entry, apply_proposal, delete_entry, set_global_rules, update_entry
from gm_os.play import (
    GenerationError,
    TurnError,
    TurnOutcome,
    edit_message,
    navigate,
    new_session,
    regenerate,
    send_message,
    update_player_name,
)
from gm_os.schemas import GenerationConfig, StorySession
from gm_os.store import (
    SessionNotFoundError,
    delete_session,
    list_sessions,
    load_session,
    rename_session,
    save_session,
)
from llm.client import LLMClientError, OllamaClient
from llm.schemas import CanonProposal
from world.migrations import SnapshotMigrationError, load_world_state, migrate_session_payload
from world.schemas import CanonCategory, CanonEntryDraft, WireModel

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="story-sessions API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


@app.get("/health")
def health() -> dict:
    try:
        check_db_connection()
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"status": "ok"}


class SessionCreate(WireModel):
    title: str | None = None
    system_prompt: str | None = None
    initial_state: dict[str, Any] | None = None
    config: dict[str, Any] | None = None


class SessionRename(WireModel):
    title: str


class MessageRequest(WireModel):
    text: str


class RegenerateRequest(WireModel):
    node_id: str | None = None


class EditRequest(WireModel):
    node_id: str
    text: str


class NavigateRequest(WireModel):
    node_id: str
    direction: Literal["next", "prev"]


class PlayerNameRequest(WireModel):
    name: str


class ProposalApplyRequest(WireModel):
    proposal: dict[str, Any]


class CanonEntryUpdate(WireModel):
    category: CanonCategory | None = None
    name: str | None = None
    description: str | None = None
    tags: list[str] | None = None
    aliases: list[str] | None = None


class GlobalRulesRequest(WireModel):
    rules: list[str]


def _load(session_id: str) -> StorySession:
    try:
        return load_session(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc


def _persist(session: StorySession) -> StorySession:
    try:
        return save_session(session)
    except SQLAlchemyError:
        logger.exception("Saving session %s failed", session.id)
        return session


def _outcome_response(outcome: TurnOutcome) -> dict:
    session = _persist(outcome.session)
    return {
        "session": session.to_wire(),
        "state": outcome.state.to_wire() if outcome.state is not None else None,
        "patch": outcome.patch.to_wire() if outcome.patch is not None else None,
    }


def _run_turn(action) -> dict:
    try:
        outcome = action()
    except GenerationError as exc:
        _persist(exc.session)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except (TreeStructureError, TurnError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _outcome_response(outcome)


@app.get("/sessions")
def list_sessions_endpoint() -> list[dict]:
    return [item.to_wire() for item in list_sessions()]


@app.post("/sessions")
def create_session(payload: SessionCreate | None = Body(default=None)) -> dict:
    payload = payload or SessionCreate()
    try:
        initial_state = (
            load_world_state(payload.initial_state) if payload.initial_state is not None else None
        )
        config = GenerationConfig.model_validate(payload.config or {})
    except (SnapshotMigrationError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    session = new_session(
        payload.system_prompt,
        initial_state=initial_state,
        config=config,
        title=payload.title,
    )
    return save_session(session).to_wire()


@app.get("/sessions/{session_id}")
def get_session(session_id: str) -> dict:
    return _load(session_id).to_wire()


@app.put("/sessions/{session_id}")
def put_session(session_id: str, payload: dict[str, Any] = Body(...)) -> dict:
    if payload.get("id") != session_id:
        raise HTTPException(status_code=400, detail="ID mismatch")
    try:
        session = StorySession.model_validate(migrate_session_payload(payload))
    except (SnapshotMigrationError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return save_session(session).to_wire()


@app.patch("/sessions/{session_id}")
def patch_session(session_id: str, payload: SessionRename) -> dict:
    if not payload.title.strip():
        raise HTTPException(status_code=400, detail="Title is required")
    try:
        session = rename_session(session_id, payload.title.strip())
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc
    return session.to_wire()


@app.delete("/sessions/{session_id}")
def delete_session_endpoint(session_id: str) -> dict:
    try:
        delete_session(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc
    return {"success": True}


@app.post("/sessions/{session_id}/messages")
def post_message(session_id: str, payload: MessageRequest) -> dict:
    session = _load(session_id)
    return _run_turn(lambda: send_message(session, payload.text, OllamaClient()))


@app.post("/sessions/{session_id}/regenerate")
def post_regenerate(
    session_id: str,
    payload: RegenerateRequest | None = Body(default=None),
) -> dict:
    session = _load(session_id)
    node_id = payload.node_id if payload else None
    return _run_turn(lambda: regenerate(session, OllamaClient(), node_id))


@app.post("/sessions/{session_id}/edit")
def post_edit(session_id: str, payload: EditRequest) -> dict:
    session = _load(session_id)
    return _run_turn(lambda: edit_message(session, payload.node_id, payload.text, OllamaClient()))


@app.post("/sessions/{session_id}/navigate")
def post_navigate(session_id: str, payload: NavigateRequest) -> dict:
    session = _load(session_id)
    return _run_turn(lambda: navigate(session, payload.node_id, payload.direction))


@app.post("/sessions/{session_id}/player-name")
def post_player_name(session_id: str, payload: PlayerNameRequest) -> dict:
    session = _load(session_id)
    return _run_turn(lambda: update_player_name(session, payload.name))


@app.post("/sessions/{session_id}/title")
def post_title(session_id: str) -> dict:
    session = _load(session_id)
    title = OllamaClient().generate_title(session.tree)
    session = _persist(session.model_copy(update={"title": title}))
    return {"title": session.title}


@app.post("/sessions/{session_id}/curate")
def post_curate(session_id: str) -> dict:
    session = _load(session_id)
    if find_state_node(session.tree) is None:
        raise HTTPException(status_code=400, detail="No world state to curate")
    context = {
        "canon": session.canon,
        "chronicle": session.chronicle,
        "state": resolve_state(session.tree),
    }
    try:
        proposals = OllamaClient().curate_canon(context)
    except LLMClientError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"proposals": [proposal.to_wire() for proposal in proposals]}


@app.post("/sessions/{session_id}/canon/proposals/apply")
def post_apply_proposal(session_id: str, payload: ProposalApplyRequest) -> dict:
    session = _load(session_id)
    try:
        proposal = CanonProposal.model_validate(payload.proposal)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    canon = apply_proposal(session.canon, proposal)
    session = _persist(session.model_copy(update={"canon": canon}))
    return {"canon": canon.to_wire(), "session": session.to_wire()}


def _require_entry(session: StorySession, entry_id: str) -> None:
    entries = session.canon.entries if session.canon is not None else []
    if not any(entry.id == entry_id for entry in entries):
        raise HTTPException(status_code=404, detail="Canon entry not found")


def _canon_response(session: StorySession) -> dict:
    session = _persist(session)
    return {"canon": session.canon.to_wire(), "session": session.to_wire()}


@app.post("/sessions/{session_id}/canon/entries")
def post_canon_entry(session_id: str, payload: CanonEntryDraft) -> dict:
    session = _load(session_id)
    canon = add_entry(session.canon, payload)
    return _canon_response(session.model_copy(update={"canon": canon}))


@app.patch("/sessions/{session_id}/canon/entries/{entry_id}")
def patch_canon_entry(session_id: str, entry_id: str, payload: CanonEntryUpdate) -> dict:
    session = _load(session_id)
    _require_entry(session, entry_id)
    try:
        canon = update_entry(session.canon, entry_id, payload.model_dump(exclude_none=True))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _canon_response(session.model_copy(update={"canon": canon}))


@app.delete("/sessions/{session_id}/canon/entries/{entry_id}")
def delete_canon_entry(session_id: str, entry_id: str) -> dict:
    session = _load(session_id)
    _require_entry(session, entry_id)
    canon = delete_entry(session.canon, entry_id)
    return _canon_response(session.model_copy(update={"canon": canon}))


@app.put("/sessions/{session_id}/canon/rules")
def put_canon_rules(session_id: str, payload: GlobalRulesRequest) -> dict:
    session = _load(session_id)
    canon = set_global_rules(session.canon, payload.rules)
    return _canon_response(session.model_copy(update={"canon": canon}))
