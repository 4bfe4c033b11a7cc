import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gm_os.play import new_session
from gm_os.store import (
    SessionNotFoundError,
    delete_session,
    list_sessions,
    load_session,
    rename_session,
    save_session,
)
from models import Base, StorySessionRecord
from world.schemas import default_world_state


def _use_sqlite(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    monkeypatch.setattr("gm_os.store.SessionLocal", factory)
    return factory


def test_save_and_load_round_trip(monkeypatch) -> None:
    _use_sqlite(monkeypatch)
    session = new_session("Prompt", initial_state=default_world_state(), title="Harbor")

    saved = save_session(session)
    loaded = load_session(session.id)

    assert saved.updated_at >= session.updated_at
    assert loaded.id == session.id
    assert loaded.title == "Harbor"
    assert loaded.tree == saved.tree
    assert loaded.tree.nodes[loaded.tree.root_id].state == default_world_state()


def test_save_overwrites_existing_record(monkeypatch) -> None:
    factory = _use_sqlite(monkeypatch)
    session = save_session(new_session(title="First"))

    save_session(session.model_copy(update={"title": "Second"}))

    with factory() as db:
        records = db.query(StorySessionRecord).all()
    assert [record.title for record in records] == ["Second"]


def test_load_upgrades_legacy_node_state(monkeypatch) -> None:
    factory = _use_sqlite(monkeypatch)
    session = save_session(new_session())
    with factory() as db:
        record = db.get(StorySessionRecord, session.id)
        payload = dict(record.payload_json)
        tree = dict(payload["tree"])
        nodes = {key: dict(value) for key, value in tree["nodes"].items()}
        nodes[tree["rootId"]]["state"] = {
            "scene": {"location": {"name": "Harbor"}, "time": "Morning"},
            "entities": {"gull": {"name": "Gull", "status": "hungry"}},
        }
        tree["nodes"] = nodes
        payload["tree"] = tree
        record.payload_json = payload
        db.commit()

    loaded = load_session(session.id)

    state = loaded.tree.nodes[loaded.tree.root_id].state
    assert state.schema_version == 2
    assert state.entity("gull").condition == "hungry"


def test_list_sessions_returns_metadata(monkeypatch) -> None:
    _use_sqlite(monkeypatch)
    first = save_session(new_session(title="First"))
    second = save_session(new_session(title="Second"))

    items = list_sessions()

    assert {item.id for item in items} == {first.id, second.id}
    assert {item.title for item in items} == {"First", "Second"}


def test_rename_and_delete(monkeypatch) -> None:
    _use_sqlite(monkeypatch)
    session = save_session(new_session())

    renamed = rename_session(session.id, "Renamed")
    assert renamed.title == "Renamed"
    assert load_session(session.id).title == "Renamed"

    delete_session(session.id)
    with pytest.raises(SessionNotFoundError):
        load_session(session.id)
    with pytest.raises(SessionNotFoundError):
        delete_session(session.id)
