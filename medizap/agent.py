"""One turn of the voice receptionist.

``run_turn`` loads nothing by itself: the endpoint hands it the session row and
clinic, it asks the model what to do, lets :mod:`medizap.conversation` decide
the next state and performs the booking or walk-in registration once the
tracker says everything needed has been collected.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from medizap import conversation as conv
from medizap.booking import (
    BookingRequest, BookingValidationError, SlotUnavailable, appointment_summary,
    available_time_slots, book_appointment,
)
from medizap.models import Clinic, ConversationSession, Department, Doctor
from medizap.sessions import state_of
from medizap.walkins import register_walkin, walkin_to_dict

log = logging.getLogger(__name__)

TECHNICAL_DIFFICULTIES = (
    "I'm sorry, I'm experiencing technical difficulties. "
    "Please try again in a moment or call the clinic directly."
)
HANDOFF = (
    "I understand you might need help with something specific. "
    "Let me connect you with our staff who can assist you better."
)
NOT_UNDERSTOOD = "I'm sorry, I didn't catch that. Could you say it again?"

SYSTEM_PROMPT = """You are the phone receptionist of {clinic_name}. Keep answers short and friendly; they are read aloud.
You can book appointments, register walk-in patients and answer questions about the clinic.

Reply with ONE JSON object and nothing else:
{{"action": "<action>", "text": "<what to say to the caller>", "data": {{<fields learned this turn>}}}}

Actions:
- book_appointment: the caller wants an appointment
- register_walkin: the caller is at the clinic and wants to be seen without an appointment
- answer_faq: the caller asks about hours, location, contact or services
- collect: you are asking for or acknowledging details
- confirm_booking: the caller confirmed the appointment details
- confirm_walkin: the caller confirmed the walk-in details
- end: the caller is done

Data fields: patientName, patientPhone, patientEmail, dateOfBirth (YYYY-MM-DD), gender,
departmentId, departmentName, doctorId, doctorName, appointmentDate (YYYY-MM-DD),
appointmentTime (HH:MM, 24h), reasonForVisit, notes.
Only use ids from the lists below. Never claim an appointment is booked; the system confirms it.

Today is {today} ({weekday}). Current step: {step}. Intent: {intent}.
Collected so far: {collected}

Departments:
{departments}

Doctors:
{doctors}"""


@dataclass
class TurnOutcome:
    text: str
    should_end: bool
    state: conv.ConversationState
    appointment: Optional[dict[str, Any]] = None
    walkin: Optional[dict[str, Any]] = None
    # kwargs for the confirmation email, sent after commit
    confirmation: Optional[dict[str, Any]] = None
    # attempts ran out and the caller should reach a person
    handed_off: bool = False


def clinic_directory(db: Session, clinic_id: str) -> tuple[list[dict], list[dict]]:
    departments = [
        {"id": d.id, "name": d.name}
        for d in db.execute(
            select(Department)
            .where(Department.clinic_id == clinic_id, Department.is_active.is_(True))
            .order_by(Department.name)
        ).scalars().all()
    ]
    doctors = [
        {
            "id": d.id,
            "name": d.name,
            "departmentId": d.department_id,
            "specialization": d.specialization,
            "availableDays": list(d.available_days or []),
            "availableTimes": list(d.available_times or []),
        }
        for d in db.execute(
            select(Doctor)
            .where(Doctor.clinic_id == clinic_id, Doctor.is_active.is_(True))
            .order_by(Doctor.name)
        ).scalars().all()
    ]
    return departments, doctors


def greeting_text(clinic: Clinic) -> str:
    return (
        f"Welcome to {clinic.name}! I'm your AI assistant. I can help you book an appointment, "
        "register as a walk-in patient, or answer questions about our services. "
        "How can I assist you today?"
    )


def build_messages(clinic: Clinic, state: conv.ConversationState, departments: list[dict],
                   doctors: list[dict], user_input: str, now: datetime) -> list[dict[str, str]]:
    dept_lines = "\n".join(f"- {d['id']}: {d['name']}" for d in departments) or "- none"
    doc_lines = "\n".join(
        f"- {d['id']}: {d['name']} (department {d['departmentId']}, {d['specialization'] or 'general'}; "
        f"days {', '.join(d['availableDays']) or 'n/a'}; times {', '.join(d['availableTimes']) or 'n/a'})"
        for d in doctors
    ) or "- none"
    system = SYSTEM_PROMPT.format(
        clinic_name=clinic.name,
        today=now.date().isoformat(),
        weekday=now.strftime("%A"),
        step=state.step,
        intent=state.intent or "unknown",
        collected=json.dumps(state.collected_data, ensure_ascii=False),
        departments=dept_lines,
        doctors=doc_lines,
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user_input or ""},
    ]


def normalize_collected(data: dict[str, Any], departments: list[dict], doctors: list[dict],
                        now: datetime) -> dict[str, Any]:
    """Map spoken names to ids and coerce dates, times and phones."""
    out = dict(data)
    dept_ids = {d["id"] for d in departments}
    doc_by_id = {d["id"]: d for d in doctors}

    if out.get("departmentId") not in dept_ids:
        hint = out.pop("departmentId", None) or out.get("departmentName")
        match = conv.find_best_match(str(hint), departments) if hint else None
        if match:
            out["departmentId"], out["departmentName"] = match["id"], match["name"]

    if out.get("doctorId") not in doc_by_id:
        hint = out.pop("doctorId", None) or out.get("doctorName")
        match = conv.find_best_match(str(hint), doctors) if hint else None
        if match:
            out["doctorId"], out["doctorName"] = match["id"], match["name"]
    doc = doc_by_id.get(out.get("doctorId"))
    if doc and not out.get("departmentId"):
        out["departmentId"] = doc["departmentId"]

    if out.get("patientPhone"):
        phone = conv.extract_phone_number(str(out["patientPhone"]))
        if phone:
            out["patientPhone"] = phone
    if out.get("appointmentDate"):
        day = conv.parse_spoken_date(str(out["appointmentDate"]), now.date())
        if day:
            out["appointmentDate"] = day.isoformat()
        else:
            out.pop("appointmentDate")
    if out.get("appointmentTime"):
        t = conv.parse_spoken_time(str(out["appointmentTime"]))
        if t:
            out["appointmentTime"] = t
        else:
            out.pop("appointmentTime")
    if out.get("dateOfBirth"):
        dob = conv.parse_birth_date(str(out["dateOfBirth"]), now.date())
        if dob:
            out["dateOfBirth"] = dob.isoformat()
        else:
            out.pop("dateOfBirth")
    return out


def _relay_text(raw: str) -> str:
    """Unparseable model output is spoken as-is, minus any JSON wrapping."""
    raw = (raw or "").strip()
    if not raw:
        return NOT_UNDERSTOOD
    try:
        obj = json.loads(raw)
    except ValueError:
        return raw
    if isinstance(obj, dict) and isinstance(obj.get("text"), str) and obj["text"].strip():
        return obj["text"].strip()
    return NOT_UNDERSTOOD


def date_problem(db: Session, data: dict[str, Any], today: date) -> Optional[str]:
    """Reprompt for a collected appointment date the agent should not book."""
    try:
        day = date.fromisoformat(str(data.get("appointmentDate")))
    except ValueError:
        return None
    doctor = db.get(Doctor, data["doctorId"]) if data.get("doctorId") else None
    if doctor is None:
        return conv.appointment_date_problem(day, today)
    return conv.appointment_date_problem(day, today, doctor.available_days, doctor.name)


def _attempt_booking(db: Session, clinic: Clinic, previous: conv.ConversationState,
                     state: conv.ConversationState, now: datetime, created_by: Optional[str]):
    data = state.collected_data
    problem = date_problem(db, data, now.date())
    if problem:
        return problem, conv.failed_attempt(previous, state, ["appointmentDate"], now), None, None
    try:
        req = BookingRequest.from_payload({
            "clinicId": clinic.id,
            "patientName": data.get("patientName"),
            "patientPhone": data.get("patientPhone"),
            "patientEmail": data.get("patientEmail"),
            "doctorId": data.get("doctorId"),
            "departmentId": data.get("departmentId"),
            "appointmentDate": data.get("appointmentDate"),
            "appointmentTime": data.get("appointmentTime"),
            "notes": data.get("notes"),
        })
        appt = book_appointment(db, req, created_by=created_by)
    except SlotUnavailable:
        doctor = db.get(Doctor, data.get("doctorId"))
        day = conv.parse_spoken_date(str(data.get("appointmentDate")), now.date())
        free = available_time_slots(db, doctor, day) if doctor and day else []
        remaining = {k: v for k, v in data.items() if k != "appointmentTime"}
        text = "I'm sorry, that time is no longer available."
        near = conv.closest_slot(str(data.get("appointmentTime")), free) if free else None
        if near:
            text += f" The closest time I have that day is {near}. Would that work for you?"
        elif free:
            text += f" I still have {', '.join(free[:5])} that day. Which time works for you?"
        else:
            text += " Would you like to try another day?"
        return text, replace(state, collected_data=remaining), None, None
    except BookingValidationError as e:
        state = conv.failed_attempt(previous, state, e.fields, now)
        return f"I couldn't book that yet: {e.message}.", state, None, None

    doctor = db.get(Doctor, appt.doctor_id)
    dept = db.get(Department, appt.department_id)
    summary = appointment_summary(appt, doctor.name if doctor else None, dept.name if dept else None)
    summary["emailSent"] = bool(appt.email)
    confirmation = None
    if appt.email:
        confirmation = {
            "to": appt.email,
            "patient_name": appt.patient_name,
            "appointment_id": appt.id,
            "appointment_date": summary["appointmentDate"],
            "appointment_time": appt.appointment_time,
            "doctor_name": summary["doctorName"],
            "department_name": summary["departmentName"],
            "clinic_name": clinic.name,
        }
    text = (
        f"You're all set! Your appointment with {summary['doctorName'] or 'the doctor'} is booked for "
        f"{summary['appointmentDate']} at {appt.appointment_time}. "
        f"Your reference number is {appt.id}."
    )
    return text, conv.complete(state, now), summary, confirmation


def run_turn(db: Session, row: ConversationSession, clinic: Clinic, user_input: str, services,
             now: datetime, max_attempts: int, created_by: Optional[str] = None) -> TurnOutcome:
    """Advance the conversation by one caller utterance.

    Raises ``VendorError`` when the model cannot be reached; the session is
    left untouched in that case.
    """
    state = state_of(row)

    if state.step == conv.COMPLETE:
        return TurnOutcome(
            text=f"This conversation has ended. Thank you for contacting {clinic.name}.",
            should_end=True,
            state=state,
        )

    if state.step == conv.GREETING:
        tr = conv.advance(state, None, now)
        return TurnOutcome(text=greeting_text(clinic), should_end=False, state=tr.state)

    departments, doctors = clinic_directory(db, clinic.id)
    raw = services.llm.complete(build_messages(clinic, state, departments, doctors, user_input, now))
    reply = conv.parse_model_reply(raw)
    if reply is not None:
        reply = replace(reply, data=normalize_collected(reply.data, departments, doctors, now))
    previous = state
    tr = conv.advance(state, reply, now)
    state = tr.state

    appointment = walkin = confirmation = None
    if reply is None:
        log.info("unparseable model reply at step %s", state.step)
        text = _relay_text(raw)
    else:
        text = reply.text or NOT_UNDERSTOOD
        if reply.action == "answer_faq" and not reply.text:
            text = conv.faq_answer(user_input, clinic.name, clinic.phone, clinic.address,
                                   [d["name"] for d in departments])
        if (
            state.step == conv.APPOINTMENT_BOOKING
            and tr.attempt is None
            and ("appointmentDate" in reply.data or "doctorId" in reply.data)
            and state.collected_data.get("appointmentDate")
        ):
            # a date the caller just gave (or a doctor who does not work that day) is rejected right away
            problem = date_problem(db, state.collected_data, now.date())
            if problem:
                remaining = {k: v for k, v in state.collected_data.items() if k != "appointmentDate"}
                state = replace(state, collected_data=remaining)
                text = problem
        if tr.attempt == "booking":
            text, state, appointment, confirmation = _attempt_booking(db, clinic, previous, state, now, created_by)
        elif tr.attempt == "walkin":
            try:
                w = register_walkin(db, clinic.id, state.collected_data)
            except BookingValidationError as e:
                state = conv.failed_attempt(previous, state, e.fields, now)
                text = f"I couldn't register you yet: {e.message}."
            else:
                walkin = walkin_to_dict(w)
                state = conv.complete(state, now)
                text = (
                    f"Perfect! You've been registered as a walk-in patient. Your reference number is "
                    f"{w.reference_number}. Please have a seat and our staff will call you shortly."
                )
        elif reply.action in ("confirm_booking", "confirm_walkin") and state.step != conv.COMPLETE:
            state = conv.failed_attempt(previous, state, now=now)
            missing = conv.missing_fields(state)
            if missing:
                text = f"Before I can do that, I still need {conv.describe_missing(missing)}."

    handed_off = conv.exhausted(state, max_attempts)
    if handed_off:
        state = conv.complete(state, now)
        text = HANDOFF

    return TurnOutcome(
        text=text,
        should_end=state.step == conv.COMPLETE,
        state=state,
        appointment=appointment,
        walkin=walkin,
        confirmation=confirmation,
        handed_off=handed_off,
    )
