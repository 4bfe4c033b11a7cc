from __future__ import annotations

from datetime import datetime, timezone

from db import SessionLocal
from gm_os.schemas import SessionMetadata, StorySession
from models import StorySessionRecord
from world.migrations import migrate_session_payload


class SessionNotFoundError(LookupError):
    pass


def list_sessions() -> list[SessionMetadata]:
    with SessionLocal() as db:
        records = (
            db.query(StorySessionRecord)
            .order_by(StorySessionRecord.updated_at.desc())
            .all()
        )
        return [
            SessionMetadata(
                id=record.id,
                title=record.title,
                created_at=record.created_at,
                updated_at=record.updated_at,
            )
            for record in records
        ]


def load_session(session_id: str) -> StorySession:
    with SessionLocal() as db:
        record = db.get(StorySessionRecord, session_id)
        if record is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        payload = migrate_session_payload(record.payload_json)
    return StorySession.model_validate(payload)


def save_session(session: StorySession) -> StorySession:
    stamped = session.model_copy(update={"updated_at": datetime.now(timezone.utc)})
    payload = stamped.to_wire()
    with SessionLocal() as db:
        record = db.get(StorySessionRecord, stamped.id)
        if record is None:
            record = StorySessionRecord(id=stamped.id, created_at=stamped.created_at)
            db.add(record)
        record.title = stamped.title
        record.updated_at = stamped.updated_at
        record.schema_version = stamped.schema_version
        record.payload_json = payload
        db.commit()
    return stamped


def rename_session(session_id: str, title: str) -> StorySession:
    session = load_session(session_id)
    return save_session(session.model_copy(update={"title": title}))


def delete_session(session_id: str) -> None:
    with SessionLocal() as db:
        record = db.get(StorySessionRecord, session_id)
        if record is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        db.delete(record)
        db.commit()
