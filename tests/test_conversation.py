from datetime import date, datetime

import pytest

from medizap import conversation as conv
from medizap.conversation import ConversationState, ModelReply

NOW = datetime(2030, 1, 7, 9, 30)

FULL_BOOKING = {
    "patientName": "Jane Roe",
    "patientPhone": "+15550001111",
    "departmentId": "dept1",
    "doctorId": "d1",
    "appointmentDate": "2030-01-08",
    "appointmentTime": "10:00",
}


def state(step, **kw):
    return ConversationState(step=step, **kw)


def test_greeting_moves_to_intent_detection():
    tr = conv.advance(ConversationState(), None, NOW)
    assert tr.state.step == conv.INTENT_DETECTION
    assert tr.advanced is True
    assert tr.state.attempt_count == 0
    assert tr.state.last_activity == NOW


@pytest.mark.parametrize("step", [conv.INTENT_DETECTION, conv.APPOINTMENT_BOOKING,
                                  conv.WALKIN_REGISTRATION, conv.FAQ, conv.COMPLETE])
@pytest.mark.parametrize("action", sorted(conv.ACTIONS))
def test_no_transition_returns_to_greeting(step, action):
    tr = conv.advance(state(step), ModelReply(action=action), NOW)
    assert tr.state.step != conv.GREETING


def test_intent_actions_select_flow():
    booking = conv.advance(state(conv.INTENT_DETECTION), ModelReply(action="book_appointment"), NOW)
    assert booking.state.step == conv.APPOINTMENT_BOOKING
    assert booking.state.intent == "appointment"

    walkin = conv.advance(state(conv.INTENT_DETECTION), ModelReply(action="register_walkin"), NOW)
    assert walkin.state.step == conv.WALKIN_REGISTRATION
    assert walkin.state.intent == "walkin"

    faq = conv.advance(state(conv.INTENT_DETECTION), ModelReply(action="answer_faq"), NOW)
    assert faq.state.step == conv.FAQ


def test_unparseable_reply_keeps_step_and_counts_attempt():
    s = state(conv.APPOINTMENT_BOOKING, collected_data={"patientName": "Jane"}, attempt_count=1)
    tr = conv.advance(s, None, NOW)
    assert tr.state.step == conv.APPOINTMENT_BOOKING
    assert tr.state.attempt_count == 2
    assert tr.state.collected_data == {"patientName": "Jane"}
    assert tr.advanced is False


def test_action_not_allowed_from_step_counts_attempt():
    tr = conv.advance(state(conv.INTENT_DETECTION), ModelReply(action="confirm_booking", data=FULL_BOOKING), NOW)
    assert tr.state.step == conv.INTENT_DETECTION
    assert tr.state.attempt_count == 1
    assert tr.attempt is None
    assert tr.state.collected_data == {}


def test_complete_is_terminal():
    done = state(conv.COMPLETE, intent="appointment")
    tr = conv.advance(done, ModelReply(action="book_appointment", data={"patientName": "X"}), NOW)
    assert tr.state.step == conv.COMPLETE
    assert tr.state.collected_data == {}
    assert tr.advanced is False


def test_progress_resets_attempts_and_merges_data():
    s = state(conv.APPOINTMENT_BOOKING, collected_data={"patientName": "Jane Roe"}, attempt_count=2)
    tr = conv.advance(s, ModelReply(action="collect", data={"patientPhone": "555", "patientName": " "}), NOW)
    assert tr.state.attempt_count == 0
    assert tr.state.collected_data == {"patientName": "Jane Roe", "patientPhone": "555"}


def test_confirm_booking_requires_every_field():
    s = state(conv.APPOINTMENT_BOOKING, collected_data=dict(FULL_BOOKING, appointmentTime=""))
    tr = conv.advance(s, ModelReply(action="confirm_booking"), NOW)
    assert tr.attempt is None
    assert conv.missing_fields(tr.state) == ["appointmentTime"]

    tr = conv.advance(s, ModelReply(action="confirm_booking", data={"appointmentTime": "10:00"}), NOW)
    assert tr.attempt == "booking"


def test_confirm_walkin():
    s = state(conv.WALKIN_REGISTRATION, collected_data={"patientName": "Jane", "patientPhone": "+15550001111"})
    assert conv.advance(s, ModelReply(action="confirm_walkin"), NOW).attempt is None
    tr = conv.advance(s, ModelReply(action="confirm_walkin", data={"reasonForVisit": "fever"}), NOW)
    assert tr.attempt == "walkin"


def test_end_action_completes():
    tr = conv.advance(state(conv.FAQ), ModelReply(action="end"), NOW)
    assert tr.state.step == conv.COMPLETE


def test_exhausted():
    assert conv.exhausted(state(conv.FAQ, attempt_count=3), 3)
    assert not conv.exhausted(state(conv.FAQ, attempt_count=2), 3)
    assert not conv.exhausted(state(conv.COMPLETE, attempt_count=5), 3)


def test_state_to_dict_is_camel_case():
    d = state(conv.FAQ, intent="faq", attempt_count=1, last_activity=NOW).to_dict()
    assert d == {
        "step": "faq",
        "intent": "faq",
        "collectedData": {},
        "attemptCount": 1,
        "lastActivity": "2030-01-07T09:30:00",
    }


# ---- model replies ----

def test_parse_model_reply_plain_and_fenced():
    raw = '{"action": "collect", "text": " What is your name? ", "data": {"patientPhone": "555"}}'
    reply = conv.parse_model_reply(raw)
    assert reply == ModelReply(action="collect", text="What is your name?", data={"patientPhone": "555"})
    fenced = conv.parse_model_reply("```json\n" + raw + "\n```")
    assert fenced == reply


@pytest.mark.parametrize("raw", [
    None,
    "",
    "Sure, I can help with that!",
    '["collect"]',
    '{"action": "dance", "text": "hi"}',
    '{"text": "no action"}',
])
def test_parse_model_reply_rejects(raw):
    assert conv.parse_model_reply(raw) is None


def test_parse_model_reply_tolerates_bad_data():
    reply = conv.parse_model_reply('{"action": "collect", "text": 5, "data": "x"}')
    assert reply.text == ""
    assert reply.data == {}


def test_merge_collected_ignores_unknown_keys():
    merged = conv.merge_collected({"patientName": "Jane"}, {"favouriteColour": "blue", "gender": "female"})
    assert merged == {"patientName": "Jane", "gender": "female"}


# ---- spoken input ----

@pytest.mark.parametrize("text,expected", [
    ("my number is 555 123 4567", "+15551234567"),
    ("+44 20 7946 0958", "+442079460958"),
    ("call 1234", None),
    ("", None),
])
def test_extract_phone_number(text, expected):
    assert conv.extract_phone_number(text) == expected


def test_find_best_match():
    doctors = [{"id": "d1", "name": "Dr. Maya Patel"}, {"id": "d2", "name": "Dr. Arjun Mehta"}]
    assert conv.find_best_match("dr. arjun mehta", doctors)["id"] == "d2"
    assert conv.find_best_match("Maya", doctors)["id"] == "d1"
    assert conv.find_best_match("doctor Patel please", doctors)["id"] == "d1"
    assert conv.find_best_match("nobody", doctors) is None


@pytest.mark.parametrize("text,expected", [
    ("2030-01-10", date(2030, 1, 10)),
    ("today", date(2030, 1, 7)),
    ("tomorrow morning", date(2030, 1, 8)),
    ("next friday", date(2030, 1, 11)),
    ("monday", date(2030, 1, 14)),
    ("whenever", None),
])
def test_parse_spoken_date(text, expected):
    assert conv.parse_spoken_date(text, date(2030, 1, 7)) == expected


@pytest.mark.parametrize("text,expected", [
    ("10:00", "10:00"),
    ("10 am", "10:00"),
    ("3:30 pm", "15:30"),
    ("12 pm", "12:00"),
    ("12 a.m.", "00:00"),
    ("around noon", None),
    ("25:00", None),
])
def test_parse_spoken_time(text, expected):
    assert conv.parse_spoken_time(text) == expected


@pytest.mark.parametrize("text,expected", [
    ("1990-03-05", date(1990, 3, 5)),
    ("March 5th 1990", date(1990, 3, 5)),
    ("5th of March, 1990", date(1990, 3, 5)),
    ("Sept 12, 1985", date(1985, 9, 12)),
    ("03/05/1990", date(1990, 3, 5)),
    ("February 30 1990", None),
    ("2031-01-01", None),
    ("sometime in the nineties", None),
])
def test_parse_birth_date(text, expected):
    assert conv.parse_birth_date(text, date(2030, 1, 7)) == expected


def test_add_months_clamps_day():
    assert conv.add_months(date(2030, 1, 7), 3) == date(2030, 4, 7)
    assert conv.add_months(date(2030, 11, 30), 3) == date(2031, 2, 28)


def test_appointment_date_problem():
    today = date(2030, 1, 7)
    assert "already passed" in conv.appointment_date_problem(date(2030, 1, 6), today)
    assert conv.appointment_date_problem(today, today) is None
    assert conv.appointment_date_problem(date(2030, 4, 5), today) is None
    assert "3 months in advance" in conv.appointment_date_problem(date(2030, 4, 8), today)
    assert "closed on weekends" in conv.appointment_date_problem(date(2030, 1, 12), today)

    twice_weekly = conv.appointment_date_problem(date(2030, 1, 12), today, ["Monday", "thursday"], "Dr. Arjun Mehta")
    assert twice_weekly == (
        "Dr. Arjun Mehta is not available on Saturdays. Available days are Monday and Thursday. "
        "Which of those works for you?"
    )
    # a doctor who works Saturdays is bookable on one
    assert conv.appointment_date_problem(date(2030, 1, 12), today, ["saturday"]) is None


def test_failed_attempt_counts_and_forgets_fields():
    before = state(conv.WALKIN_REGISTRATION, attempt_count=1)
    after = state(conv.WALKIN_REGISTRATION, collected_data={"patientName": "Sam", "dateOfBirth": "someday"})
    s = conv.failed_attempt(before, after, ["dateOfBirth"], NOW)
    assert s.attempt_count == 2
    assert s.collected_data == {"patientName": "Sam"}
    assert s.last_activity == NOW
    assert conv.exhausted(conv.failed_attempt(s, s), 3)


def test_closest_slot():
    assert conv.closest_slot("10:15", ["09:00", "10:30", "11:00"]) == "10:30"
    assert conv.closest_slot("10:00", ["10:00"]) == "10:00"
    assert conv.closest_slot("08:00", ["11:00"]) is None


def test_describe_missing():
    assert conv.describe_missing(["patientName"]) == "your full name"
    assert conv.describe_missing(["patientName", "appointmentDate", "appointmentTime"]) == (
        "your full name, the date and the time"
    )


def test_faq_answer_topics():
    hours = conv.faq_answer("What are your opening hours?", "Sunrise Clinic", "+15551230000")
    assert "Monday through Friday" in hours and "+15551230000" in hours
    where = conv.faq_answer("Where are you?", "Sunrise Clinic", address="120 Harbor Street")
    assert "120 Harbor Street" in where
    services = conv.faq_answer("Which departments do you have?", "Sunrise Clinic",
                               departments=["Cardiology", "Pediatrics"])
    assert "Cardiology, Pediatrics" in services
