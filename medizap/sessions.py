"""Server-held conversation sessions.

The caller only echoes ``sessionId``; the state itself lives in
``conversation_sessions``. A turn reads the row with its ``version`` and saves
with ``WHERE version = <read version>``, so of two overlapping turns on one
session only the first save lands.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from medizap.conversation import ConversationState
from medizap.models import ConversationLog, ConversationSession, utcnow


class SessionError(Exception):
    status_code = 400
    error = "Session error"


class SessionNotFound(SessionError):
    status_code = 404
    error = "Session not found"


class SessionExpired(SessionError):
    status_code = 410
    error = "Session expired"


class SessionConflict(SessionError):
    status_code = 409
    error = "Session busy"


def state_of(row: ConversationSession) -> ConversationState:
    return ConversationState(
        step=row.step,
        intent=row.intent,
        collected_data=dict(row.collected_data or {}),
        attempt_count=row.attempt_count or 0,
        last_activity=row.last_activity,
    )


def is_expired(row: ConversationSession, now: datetime, ttl_minutes: int) -> bool:
    return row.last_activity is not None and now - row.last_activity > timedelta(minutes=ttl_minutes)


def open_session(db: Session, clinic_id: str, session_id: Optional[str], ttl_minutes: int,
                 now: Optional[datetime] = None) -> ConversationSession:
    now = now or utcnow()
    if not session_id:
        row = ConversationSession(clinic_id=clinic_id, step="greeting", collected_data={},
                                  attempt_count=0, version=0, last_activity=now, created_at=now)
        db.add(row)
        db.flush()
        return row
    row = db.get(ConversationSession, session_id)
    if row is None or row.clinic_id != clinic_id:
        raise SessionNotFound(f"No conversation {session_id} for this clinic")
    if is_expired(row, now, ttl_minutes):
        raise SessionExpired("The conversation timed out; start a new one")
    return row


def save_state(db: Session, session_id: str, read_version: int, state: ConversationState) -> int:
    """Persist ``state`` if nobody else saved since ``read_version``; returns the new version."""
    res = db.execute(
        update(ConversationSession)
        .where(ConversationSession.id == session_id, ConversationSession.version == read_version)
        .values(
            step=state.step,
            intent=state.intent,
            collected_data=dict(state.collected_data),
            attempt_count=state.attempt_count,
            last_activity=state.last_activity or utcnow(),
            version=read_version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise SessionConflict("Another request advanced this conversation first")
    return read_version + 1


def log_turn(db: Session, session_id: str, clinic_id: str, step: str,
             user_input: Optional[str], agent_response: Optional[str]) -> None:
    db.add(ConversationLog(session_id=session_id, clinic_id=clinic_id, step=step,
                           user_input=user_input, agent_response=agent_response))


def open_call_session(db: Session, clinic_id: str, call_sid: str, caller_phone: Optional[str] = None,
                      now: Optional[datetime] = None) -> ConversationSession:
    """The session of a phone call, created on the call's first webhook.

    Calls are keyed by Twilio's ``CallSid`` and do not idle out; the call
    ending closes them instead.
    """
    now = now or utcnow()
    row = db.get(ConversationSession, call_sid)
    if row is None:
        row = ConversationSession(id=call_sid, clinic_id=clinic_id, channel="phone", caller_phone=caller_phone,
                                  step="greeting", collected_data={}, attempt_count=0, version=0,
                                  last_activity=now, created_at=now)
        db.add(row)
        db.flush()
        return row
    if row.clinic_id != clinic_id:
        raise SessionNotFound(f"Call {call_sid} belongs to another clinic")
    return row


def end_call(db: Session, call_sid: str, now: Optional[datetime] = None) -> Optional[int]:
    """Record when the call ended; returns its duration in seconds, None for unknown calls."""
    row = db.get(ConversationSession, call_sid)
    if row is None:
        return None
    if row.ended_at is None:
        row.ended_at = now or utcnow()
        row.duration_seconds = max(0, int((row.ended_at - row.created_at).total_seconds()))
    return row.duration_seconds
