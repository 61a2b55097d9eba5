"""Appointment booking: request validation, slot conflict check and the insert.

The conflict check is a plain read, but it is not the guarantee. The partial
unique index ``ux_appointments_active_slot`` covers (doctor, date, time) for
pending and confirmed rows, so when two writers race past the read the
second INSERT fails and is reported as ``SlotUnavailable`` as well.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medizap.identifiers import APPOINTMENT_COUNTER, allocate_display_id
from medizap.models import (
    ACTIVE_APPOINTMENT_STATUSES, APPOINTMENT_STATUSES, Appointment, Clinic, Department, Doctor,
)

log = logging.getLogger(__name__)

REQUIRED_BOOKING_FIELDS = (
    "clinicId", "patientName", "patientPhone", "doctorId",
    "departmentId", "appointmentDate", "appointmentTime",
)
DEFAULT_BOOKING_NOTES = "Booked via AI voice agent"
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
SLOT_INDEX = "ux_appointments_active_slot"


class BookingError(Exception):
    status_code = 400
    error = "Booking failed"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BookingValidationError(BookingError):
    status_code = 400
    error = "Missing required fields"

    def __init__(self, message: str, fields: Optional[list[str]] = None, error: Optional[str] = None):
        super().__init__(message)
        self.fields = fields or []
        if error:
            self.error = error


class SlotUnavailable(BookingError):
    status_code = 409
    error = "Time slot not available"

    def __init__(self, message: str = "The selected time slot is already booked"):
        super().__init__(message)


def is_slot_violation(exc: IntegrityError) -> bool:
    """True when the error comes from the one-live-booking-per-slot index."""
    diag = getattr(exc.orig, "diag", None)
    if getattr(diag, "constraint_name", None) == SLOT_INDEX:
        return True
    msg = str(exc.orig)
    # sqlite names the indexed columns instead of the index
    return SLOT_INDEX in msg or ("appointments.doctor_id" in msg and "appointments.appointment_time" in msg)


def parse_iso_date(value: Any, field: str = "appointmentDate") -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise BookingValidationError(f"{field} must be a date in YYYY-MM-DD format", [field], error="Invalid field")


def parse_slot_time(value: Any, field: str = "appointmentTime") -> str:
    raw = str(value).strip()
    # accept "09:00:00" as stored by some clients
    if len(raw) == 8 and raw.endswith(":00"):
        raw = raw[:5]
    if not TIME_PATTERN.match(raw):
        raise BookingValidationError(f"{field} must be a time in HH:MM format", [field], error="Invalid field")
    return raw


@dataclass
class BookingRequest:
    clinic_id: str
    patient_name: str
    patient_phone: str
    doctor_id: str
    department_id: str
    appointment_date: date
    appointment_time: str
    patient_email: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "BookingRequest":
        missing = [f for f in REQUIRED_BOOKING_FIELDS if not str(payload.get(f) or "").strip()]
        if missing:
            raise BookingValidationError(f"Missing fields: {', '.join(missing)}", missing)
        email = str(payload.get("patientEmail") or "").strip() or None
        notes = str(payload.get("notes") or "").strip() or None
        return cls(
            clinic_id=str(payload["clinicId"]).strip(),
            patient_name=str(payload["patientName"]).strip(),
            patient_phone=str(payload["patientPhone"]).strip(),
            doctor_id=str(payload["doctorId"]).strip(),
            department_id=str(payload["departmentId"]).strip(),
            appointment_date=parse_iso_date(payload["appointmentDate"]),
            appointment_time=parse_slot_time(payload["appointmentTime"]),
            patient_email=email,
            notes=notes,
        )


def find_conflicts(db: Session, doctor_id: str, day: date, slot_time: str) -> list[str]:
    """Ids of live (pending/confirmed) appointments holding this exact slot."""
    rows = db.execute(
        select(Appointment.id).where(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date == day,
            Appointment.appointment_time == slot_time,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        )
    ).scalars().all()
    return list(rows)


def is_slot_taken(db: Session, doctor_id: str, day: date, slot_time: str) -> bool:
    return bool(find_conflicts(db, doctor_id, day, slot_time))


def _resolve_references(db: Session, req: BookingRequest) -> tuple[Clinic, Doctor, Department]:
    clinic = db.get(Clinic, req.clinic_id)
    if not clinic or not clinic.is_active:
        raise BookingValidationError("Clinic not found or inactive", ["clinicId"], error="Invalid reference")
    doctor = db.get(Doctor, req.doctor_id)
    if not doctor or doctor.clinic_id != clinic.id or not doctor.is_active:
        raise BookingValidationError("Doctor not found in this clinic", ["doctorId"], error="Invalid reference")
    dept = db.get(Department, req.department_id)
    if not dept or dept.clinic_id != clinic.id:
        raise BookingValidationError("Department not found in this clinic", ["departmentId"], error="Invalid reference")
    if doctor.department_id != dept.id:
        raise BookingValidationError("Doctor does not belong to this department", ["doctorId", "departmentId"], error="Invalid reference")
    return clinic, doctor, dept


def book_appointment(db: Session, req: BookingRequest, created_by: Optional[str] = None) -> Appointment:
    """Insert a pending appointment if the slot is free.

    Raises ``SlotUnavailable`` both when the read finds a live booking and when
    the unique index rejects the insert because a concurrent request won.
    On that second path the session has been rolled back. Any other integrity
    failure on the insert is re-raised unchanged.
    """
    _resolve_references(db, req)
    if is_slot_taken(db, req.doctor_id, req.appointment_date, req.appointment_time):
        raise SlotUnavailable()

    appt = Appointment(
        id=allocate_display_id(db, APPOINTMENT_COUNTER),
        clinic_id=req.clinic_id,
        doctor_id=req.doctor_id,
        department_id=req.department_id,
        patient_name=req.patient_name,
        phone_number=req.patient_phone,
        email=req.patient_email,
        appointment_date=req.appointment_date,
        appointment_time=req.appointment_time,
        status="pending",
        notes=req.notes or DEFAULT_BOOKING_NOTES,
        created_by=created_by,
    )
    db.add(appt)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        if not is_slot_violation(e):
            raise
        log.info("slot taken concurrently doctor=%s %s %s", req.doctor_id, req.appointment_date, req.appointment_time)
        raise SlotUnavailable()
    log.info("booked %s doctor=%s %s %s", appt.id, req.doctor_id, req.appointment_date, req.appointment_time)
    return appt


def available_time_slots(db: Session, doctor: Doctor, day: date) -> list[str]:
    """The doctor's listed start times on ``day`` that no live booking holds."""
    days = {str(d).strip().lower() for d in (doctor.available_days or [])}
    if WEEKDAYS[day.weekday()] not in days:
        return []
    taken = set(
        db.execute(
            select(Appointment.appointment_time).where(
                Appointment.doctor_id == doctor.id,
                Appointment.appointment_date == day,
                Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
            )
        ).scalars().all()
    )
    times = {str(t).strip()[:5] for t in (doctor.available_times or [])}
    return sorted(t for t in times if TIME_PATTERN.match(t) and t not in taken)


def update_appointment_status(db: Session, appt: Appointment, status: str) -> Appointment:
    if status not in APPOINTMENT_STATUSES:
        raise BookingValidationError(
            f"status must be one of: {', '.join(APPOINTMENT_STATUSES)}", ["status"], error="Invalid field"
        )
    reviving = appt.status not in ACTIVE_APPOINTMENT_STATUSES and status in ACTIVE_APPOINTMENT_STATUSES
    if reviving:
        others = [i for i in find_conflicts(db, appt.doctor_id, appt.appointment_date, appt.appointment_time) if i != appt.id]
        if others:
            raise SlotUnavailable("The slot has been booked by another appointment")
    appt.status = status
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        if not is_slot_violation(e):
            raise
        raise SlotUnavailable("The slot has been booked by another appointment")
    return appt


def appointment_summary(appt: Appointment, doctor_name: Optional[str], department_name: Optional[str]) -> dict[str, Any]:
    return {
        "appointmentId": appt.id,
        "patientName": appt.patient_name,
        "doctorName": doctor_name,
        "departmentName": department_name,
        "appointmentDate": appt.appointment_date.isoformat(),
        "appointmentTime": appt.appointment_time,
        "status": appt.status,
        "notes": appt.notes,
    }
