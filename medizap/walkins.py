from datetime import date
from typing import Any, Optional

from sqlalchemy.orm import Session

from medizap.booking import BookingValidationError
from medizap.identifiers import WALKIN_COUNTER, allocate_display_id
from medizap.models import WALKIN_STATUSES, WalkIn


def _optional_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise BookingValidationError("dateOfBirth must be a date in YYYY-MM-DD format", ["dateOfBirth"], error="Invalid field")


def register_walkin(db: Session, clinic_id: Optional[str], data: dict[str, Any]) -> WalkIn:
    """Queue a walk-in as ``waiting`` with a fresh W#### reference number."""
    name = str(data.get("patientName") or "").strip()
    if not name:
        raise BookingValidationError("Missing fields: patientName", ["patientName"])
    dob = _optional_date(data.get("dateOfBirth"))
    walkin = WalkIn(
        clinic_id=clinic_id,
        patient_name=name,
        reference_number=allocate_display_id(db, WALKIN_COUNTER),
        date_of_birth=dob,
        gender=(str(data.get("gender") or "").strip() or None),
        contact_number=(str(data.get("patientPhone") or data.get("contactNumber") or "").strip() or None),
        reason_for_visit=(str(data.get("reasonForVisit") or "").strip() or None),
        status="waiting",
    )
    db.add(walkin)
    db.flush()
    return walkin


def set_walkin_status(db: Session, walkin: WalkIn, status: str) -> WalkIn:
    if status not in WALKIN_STATUSES:
        raise BookingValidationError(f"status must be one of: {', '.join(WALKIN_STATUSES)}", ["status"], error="Invalid field")
    walkin.status = status
    db.flush()
    return walkin


def walkin_to_dict(w: WalkIn) -> dict[str, Any]:
    return {
        "id": w.id,
        "clinicId": w.clinic_id,
        "patientName": w.patient_name,
        "referenceNumber": w.reference_number,
        "dateOfBirth": w.date_of_birth.isoformat() if w.date_of_birth else None,
        "gender": w.gender,
        "contactNumber": w.contact_number,
        "reasonForVisit": w.reason_for_visit,
        "status": w.status,
        "createdAt": w.created_at.isoformat() if w.created_at else None,
    }
