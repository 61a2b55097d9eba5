from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from medizap import conversation as conv
from medizap.db import get_session
from medizap.models import ConversationLog, ConversationSession
from medizap.sessions import (
    SessionConflict, SessionExpired, SessionNotFound, log_turn, open_session, save_state, state_of,
)

NOW = datetime(2030, 1, 7, 9, 0)


def new_session(clinic_id="c1"):
    with get_session() as db:
        row = open_session(db, clinic_id, None, 30, NOW)
        return row.id


def test_new_session_starts_at_greeting(clinics):
    sid = new_session()
    with get_session() as db:
        row = db.get(ConversationSession, sid)
        assert row.step == conv.GREETING
        assert row.version == 0
        assert state_of(row).collected_data == {}


def test_save_bumps_version(clinics):
    sid = new_session()
    with get_session() as db:
        row = open_session(db, "c1", sid, 30, NOW)
        nxt = conv.advance(state_of(row), None, NOW).state
        assert save_state(db, sid, row.version, nxt) == 1
    with get_session() as db:
        row = db.get(ConversationSession, sid)
        assert row.step == conv.INTENT_DETECTION
        assert row.version == 1


def test_stale_version_is_rejected(clinics):
    sid = new_session()
    with get_session() as db:
        first = open_session(db, "c1", sid, 30, NOW)
        read_version = first.version
        state = state_of(first)

    # two overlapping turns read the same version; only the first save lands
    with get_session() as db:
        save_state(db, sid, read_version, replace(state, step=conv.INTENT_DETECTION))
    with pytest.raises(SessionConflict):
        with get_session() as db:
            save_state(db, sid, read_version, replace(state, step=conv.FAQ))

    with get_session() as db:
        assert db.get(ConversationSession, sid).step == conv.INTENT_DETECTION


def test_expired_session(clinics):
    sid = new_session()
    with get_session() as db:
        assert open_session(db, "c1", sid, 30, NOW + timedelta(minutes=29)).id == sid
    with pytest.raises(SessionExpired):
        with get_session() as db:
            open_session(db, "c1", sid, 30, NOW + timedelta(minutes=31))


def test_unknown_or_foreign_session(clinics):
    sid = new_session()
    with pytest.raises(SessionNotFound):
        with get_session() as db:
            open_session(db, "c1", "no-such-session", 30, NOW)
    with pytest.raises(SessionNotFound):
        with get_session() as db:
            open_session(db, "c2", sid, 30, NOW)


def test_log_turn(clinics):
    sid = new_session()
    with get_session() as db:
        log_turn(db, sid, "c1", conv.INTENT_DETECTION, "hello", "Welcome!")
    with get_session() as db:
        logs = db.query(ConversationLog).filter_by(session_id=sid).all()
        assert [(l.user_input, l.agent_response) for l in logs] == [("hello", "Welcome!")]
