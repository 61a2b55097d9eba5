"""Dialogue progression for the voice agent.

Nothing in here touches the database or the network. The language model
declares an ``action`` and some ``data``; :func:`advance` turns that into the
next :class:`ConversationState` and tells the caller whether enough has been
collected to attempt a booking or a walk-in registration.

Steps::

    greeting -> intent_detection -> appointment_booking -> complete
                                 -> walkin_registration -> complete
                                 -> faq

``complete`` is terminal and no transition ever leads back to ``greeting``.
"""
from __future__ import annotations

import calendar
import json
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Sequence

GREETING = "greeting"
INTENT_DETECTION = "intent_detection"
APPOINTMENT_BOOKING = "appointment_booking"
WALKIN_REGISTRATION = "walkin_registration"
FAQ = "faq"
COMPLETE = "complete"

# action -> (steps it may be taken from, step it leads to; None keeps the step)
ACTIONS: dict[str, tuple[tuple[str, ...], Optional[str]]] = {
    "book_appointment": ((INTENT_DETECTION, FAQ, APPOINTMENT_BOOKING, WALKIN_REGISTRATION), APPOINTMENT_BOOKING),
    "register_walkin": ((INTENT_DETECTION, FAQ, APPOINTMENT_BOOKING, WALKIN_REGISTRATION), WALKIN_REGISTRATION),
    "answer_faq": ((INTENT_DETECTION, FAQ, APPOINTMENT_BOOKING, WALKIN_REGISTRATION), FAQ),
    "collect": ((INTENT_DETECTION, FAQ, APPOINTMENT_BOOKING, WALKIN_REGISTRATION), None),
    "confirm_booking": ((APPOINTMENT_BOOKING,), None),
    "confirm_walkin": ((WALKIN_REGISTRATION,), None),
    "end": ((INTENT_DETECTION, FAQ, APPOINTMENT_BOOKING, WALKIN_REGISTRATION), COMPLETE),
}

INTENT_FOR_STEP = {
    APPOINTMENT_BOOKING: "appointment",
    WALKIN_REGISTRATION: "walkin",
    FAQ: "faq",
}

COLLECTED_FIELDS = (
    "patientName", "patientPhone", "patientEmail", "dateOfBirth", "gender",
    "departmentId", "departmentName", "doctorId", "doctorName",
    "appointmentDate", "appointmentTime", "reasonForVisit", "notes",
)

BOOKING_FIELDS = ("patientName", "patientPhone", "departmentId", "doctorId", "appointmentDate", "appointmentTime")
WALKIN_FIELDS = ("patientName", "patientPhone", "reasonForVisit")

FIELD_LABELS = {
    "patientName": "your full name",
    "patientPhone": "a phone number",
    "departmentId": "the department",
    "doctorId": "the doctor",
    "appointmentDate": "the date",
    "appointmentTime": "the time",
    "reasonForVisit": "the reason for your visit",
}


@dataclass
class ConversationState:
    step: str = GREETING
    intent: Optional[str] = None
    collected_data: dict[str, Any] = field(default_factory=dict)
    attempt_count: int = 0
    last_activity: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "intent": self.intent,
            "collectedData": dict(self.collected_data),
            "attemptCount": self.attempt_count,
            "lastActivity": self.last_activity.isoformat() if self.last_activity else None,
        }


@dataclass
class ModelReply:
    action: str
    text: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class Transition:
    state: ConversationState
    # "booking" or "walkin" when everything needed has been collected
    attempt: Optional[str] = None
    advanced: bool = False


_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_model_reply(raw: Optional[str]) -> Optional[ModelReply]:
    """Parse ``{"action", "text", "data"}``; None when the reply is unusable."""
    if not raw:
        return None
    body = raw.strip()
    m = _FENCE.match(body)
    if m:
        body = m.group(1)
    try:
        obj = json.loads(body)
    except (TypeError, ValueError):
        return None
    if not isinstance(obj, dict):
        return None
    action = obj.get("action")
    if action not in ACTIONS:
        return None
    text = obj.get("text")
    data = obj.get("data")
    return ModelReply(
        action=action,
        text=text.strip() if isinstance(text, str) else "",
        data=data if isinstance(data, dict) else {},
    )


def merge_collected(current: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    out = dict(current)
    for key in COLLECTED_FIELDS:
        if key not in incoming:
            continue
        val = incoming[key]
        if val is None or (isinstance(val, str) and not val.strip()):
            continue
        out[key] = val.strip() if isinstance(val, str) else val
    return out


def missing_fields(state: ConversationState) -> list[str]:
    if state.step == APPOINTMENT_BOOKING:
        required: Sequence[str] = BOOKING_FIELDS
    elif state.step == WALKIN_REGISTRATION:
        required = WALKIN_FIELDS
    else:
        return []
    return [f for f in required if not str(state.collected_data.get(f) or "").strip()]


def advance(state: ConversationState, reply: Optional[ModelReply], now: Optional[datetime] = None) -> Transition:
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    if state.step == COMPLETE:
        return Transition(state=replace(state, last_activity=now))

    if state.step == GREETING:
        # the greeting turn needs no model reply
        nxt = replace(state, step=INTENT_DETECTION, attempt_count=0, last_activity=now,
                      collected_data=dict(state.collected_data))
        return Transition(state=nxt, advanced=True)

    if reply is None:
        return Transition(state=replace(state, attempt_count=state.attempt_count + 1, last_activity=now))

    allowed_from, target = ACTIONS[reply.action]
    if state.step not in allowed_from:
        return Transition(state=replace(state, attempt_count=state.attempt_count + 1, last_activity=now))

    step = target or state.step
    nxt = replace(
        state,
        step=step,
        intent=INTENT_FOR_STEP.get(step, state.intent),
        collected_data=merge_collected(state.collected_data, reply.data),
        attempt_count=0,
        last_activity=now,
    )
    attempt = None
    if reply.action == "confirm_booking" and not missing_fields(nxt):
        attempt = "booking"
    elif reply.action == "confirm_walkin" and not missing_fields(nxt):
        attempt = "walkin"
    return Transition(state=nxt, attempt=attempt, advanced=step != state.step)


def complete(state: ConversationState, now: Optional[datetime] = None) -> ConversationState:
    return replace(state, step=COMPLETE, attempt_count=0, last_activity=now or state.last_activity)


def exhausted(state: ConversationState, max_attempts: int) -> bool:
    return state.step != COMPLETE and state.attempt_count >= max_attempts


def failed_attempt(previous: ConversationState, current: ConversationState, drop: Sequence[str] = (),
                   now: Optional[datetime] = None) -> ConversationState:
    """A confirmation that could not be carried out.

    It counts as an unproductive turn on top of ``previous`` and forgets the
    fields in ``drop`` so the caller is asked for them again.
    """
    data = {k: v for k, v in current.collected_data.items() if k not in drop}
    return replace(current, collected_data=data, attempt_count=previous.attempt_count + 1,
                   last_activity=now or current.last_activity)


def describe_missing(fields: Sequence[str]) -> str:
    return spoken_list([FIELD_LABELS.get(f, f) for f in fields])


def spoken_list(items: Sequence[str]) -> str:
    items = list(items)
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    return ", ".join(items[:-1]) + " and " + items[-1]


# ---- spoken input helpers ----

def extract_phone_number(text: str) -> Optional[str]:
    """E.164-ish number from speech: 10 digits get +1, 10-15 digits are kept."""
    digits = re.sub(r"\D", "", text or "")
    if len(digits) < 10 or len(digits) > 15:
        return None
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def find_best_match(text: str, items: Sequence[dict[str, Any]], key: str = "name") -> Optional[dict[str, Any]]:
    """Exact name, then containment either way, then a shared word of 3+ letters."""
    needle = (text or "").strip().lower()
    if not needle:
        return None
    for item in items:
        if str(item.get(key, "")).lower() == needle:
            return item
    for item in items:
        name = str(item.get(key, "")).lower()
        if name and (needle in name or name in needle):
            return item
    words = {w for w in needle.split() if len(w) > 2}
    for item in items:
        if words & set(str(item.get(key, "")).lower().split()):
            return item
    return None


_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def parse_spoken_date(text: str, today: date) -> Optional[date]:
    """ISO dates, "today", "tomorrow" and weekday names (next occurrence)."""
    s = (text or "").strip().lower()
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        pass
    if "today" in s:
        return today
    if "tomorrow" in s:
        return today + timedelta(days=1)
    for idx, name in enumerate(_WEEKDAYS):
        if name in s:
            ahead = (idx - today.weekday()) % 7 or 7
            return today + timedelta(days=ahead)
    return None


_MONTHS = {name[:3].lower(): i for i, name in enumerate(calendar.month_name) if name}
_MONTH_DAY_YEAR = re.compile(r"([a-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})")
_DAY_MONTH_YEAR = re.compile(r"(\d{1,2})(?:st|nd|rd|th)?(?:\s+of)?\s+([a-z]+)\.?,?\s+(\d{4})")
_NUMERIC_DATE = re.compile(r"(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})")


def _safe_date(year: int, month: Optional[int], day: int) -> Optional[date]:
    if not month:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_birth_date(text: str, today: date) -> Optional[date]:
    """ISO, "March 5th 1990", "5 March 1990" or "03/05/1990" (month first).

    Dates in the future or before 1900 are not birth dates and give None.
    """
    s = (text or "").strip().lower()
    if not s:
        return None
    try:
        day = date.fromisoformat(s[:10])
    except ValueError:
        day = None
        m = _MONTH_DAY_YEAR.search(s)
        if m:
            day = _safe_date(int(m.group(3)), _MONTHS.get(m.group(1)[:3]), int(m.group(2)))
        if day is None:
            m = _DAY_MONTH_YEAR.search(s)
            if m:
                day = _safe_date(int(m.group(3)), _MONTHS.get(m.group(2)[:3]), int(m.group(1)))
        if day is None:
            m = _NUMERIC_DATE.search(s)
            if m:
                day = _safe_date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
    if day is None or day > today or day.year < 1900:
        return None
    return day


MAX_BOOKING_MONTHS = 3


def add_months(day: date, months: int) -> date:
    index = day.month - 1 + months
    year, month = day.year + index // 12, index % 12 + 1
    return day.replace(year=year, month=month, day=min(day.day, calendar.monthrange(year, month)[1]))


def appointment_date_problem(day: date, today: date, available_days: Optional[Sequence[str]] = None,
                             doctor_name: Optional[str] = None) -> Optional[str]:
    """What to tell the caller when ``day`` cannot be booked, or None.

    A doctor's working days replace the weekend rule when they are known.
    """
    if day < today:
        return "I'm sorry, but that date has already passed. Could you please choose a future date?"
    if day > add_months(today, MAX_BOOKING_MONTHS):
        return (f"I can only schedule appointments up to {MAX_BOOKING_MONTHS} months in advance. "
                "Could you please choose an earlier date?")
    listed = {str(d).strip().lower() for d in (available_days or [])}
    working = [d for d in _WEEKDAYS if d in listed]
    weekday = _WEEKDAYS[day.weekday()]
    if working:
        if weekday not in working:
            return (f"{doctor_name or 'The doctor'} is not available on {weekday.title()}s. "
                    f"Available days are {spoken_list([d.title() for d in working])}. "
                    "Which of those works for you?")
    elif day.weekday() >= 5:
        return "We're closed on weekends. Could you please choose a weekday for your appointment?"
    return None


_TIME = re.compile(r"(\d{1,2})(?::|\s)?(\d{2})?\s*(am|pm|a\.m\.|p\.m\.)?")


def parse_spoken_time(text: str) -> Optional[str]:
    s = (text or "").strip().lower()
    m = _TIME.search(s)
    if not m:
        return None
    hour = int(m.group(1))
    minute = int(m.group(2) or 0)
    meridiem = (m.group(3) or "").replace(".", "")
    if meridiem == "pm" and hour < 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def closest_slot(wanted: str, slots: Sequence[str], tolerance_minutes: int = 30) -> Optional[str]:
    if wanted in slots:
        return wanted

    def minutes(hhmm: str) -> int:
        h, m = hhmm.split(":")
        return int(h) * 60 + int(m)

    target = minutes(wanted)
    best, best_diff = None, tolerance_minutes + 1
    for slot in slots:
        diff = abs(minutes(slot) - target)
        if diff < best_diff:
            best, best_diff = slot, diff
    return best


def faq_answer(question: str, clinic_name: str, phone: Optional[str] = None,
               address: Optional[str] = None, departments: Sequence[str] = ()) -> str:
    q = (question or "").lower()
    phone_text = phone or "our main number"
    if any(w in q for w in ("hours", "open", "close")):
        return (f"{clinic_name} is typically open Monday through Friday from 9 AM to 6 PM, "
                f"and Saturday from 9 AM to 2 PM. We're closed on Sundays. "
                f"For specific hours, please call us at {phone_text}.")
    if any(w in q for w in ("location", "address", "where")):
        if address:
            return f"{clinic_name} is located at {address}. You can also call us at {phone_text} for directions."
        return f"For our location and directions, please call us at {phone_text}."
    if any(w in q for w in ("phone", "contact", "call")):
        if phone:
            return f"You can reach {clinic_name} at {phone}. Our staff will be happy to assist you."
        return "Please visit our website or ask our staff for contact information."
    if any(w in q for w in ("service", "treatment", "department")):
        listed = ", ".join(departments) if departments else "a range of medical services"
        return f"{clinic_name} offers {listed}. For specific treatments, please speak with our staff."
    return (f"For specific information about {clinic_name}, I recommend speaking with our staff. "
            f"You can call us at {phone_text}.")
