"""Clinic registration and configuration."""
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from medizap.errors import ApiError
from medizap.identifiers import DEPARTMENT_COUNTER, allocate_display_id, generate_clinic_slug
from medizap.models import Clinic, ClinicUser, Department, Doctor

DEFAULT_DEPARTMENTS = (
    ("General Medicine", "General medical consultations and check-ups"),
    ("Pediatrics", "Medical care for infants, children, and adolescents"),
    ("Cardiology", "Heart and cardiovascular system care"),
    ("Dermatology", "Skin, hair, and nail care"),
    ("Orthopedics", "Bone, joint, and muscle care"),
)

CLINIC_FIELDS = ("name", "email", "phone", "address", "website", "subscription_plan", "is_active")


def create_clinic_with_admin(db: Session, owner_id: str, name: str, email: str,
                             phone: Optional[str] = None, address: Optional[str] = None,
                             website: Optional[str] = None) -> Clinic:
    """Register a clinic, make ``owner_id`` its admin and add the default departments."""
    name = (name or "").strip()
    email = (email or "").strip().lower()
    missing = [f for f, v in (("name", name), ("email", email)) if not v]
    if missing:
        raise ApiError(400, "Missing required fields", f"Missing fields: {', '.join(missing)}")
    taken = db.execute(select(Clinic.id).where(func.lower(Clinic.email) == email)).first()
    if taken:
        raise ApiError(409, "Clinic already exists", "A clinic with this email already exists")

    clinic = Clinic(
        name=name, email=email, phone=phone, address=address, website=website,
        slug=generate_clinic_slug(db, name),
    )
    db.add(clinic)
    db.flush()
    db.add(ClinicUser(clinic_id=clinic.id, user_id=owner_id, role="admin", is_active=True))
    for dept_name, description in DEFAULT_DEPARTMENTS:
        db.add(Department(
            id=allocate_display_id(db, DEPARTMENT_COUNTER),
            clinic_id=clinic.id, name=dept_name, description=description, is_active=True,
        ))
    db.flush()
    return clinic


def update_clinic(db: Session, clinic: Clinic, changes: dict[str, Any]) -> Clinic:
    for key, value in changes.items():
        if key in CLINIC_FIELDS:
            setattr(clinic, key, value)
    if "email" in changes:
        clash = db.execute(
            select(Clinic.id).where(func.lower(Clinic.email) == str(clinic.email).lower(), Clinic.id != clinic.id)
        ).first()
        if clash:
            raise ApiError(409, "Clinic already exists", "A clinic with this email already exists")
    # slug is derived once; only an empty one is regenerated
    if not clinic.slug:
        clinic.slug = generate_clinic_slug(db, clinic.name, exclude_id=clinic.id)
    db.flush()
    return clinic


def add_department(db: Session, clinic_id: str, name: str, description: Optional[str] = None) -> Department:
    name = (name or "").strip()
    if not name:
        raise ApiError(400, "Missing required fields", "Missing fields: name")
    exists = db.execute(
        select(Department.id).where(Department.clinic_id == clinic_id, func.lower(Department.name) == name.lower())
    ).first()
    if exists:
        raise ApiError(409, "Department already exists", f"Department '{name}' already exists in this clinic")
    dept = Department(id=allocate_display_id(db, DEPARTMENT_COUNTER), clinic_id=clinic_id,
                      name=name, description=description, is_active=True)
    db.add(dept)
    db.flush()
    return dept


def add_doctor(db: Session, clinic_id: str, data: dict[str, Any]) -> Doctor:
    name = str(data.get("name") or "").strip()
    department_id = str(data.get("departmentId") or "").strip()
    missing = [f for f, v in (("name", name), ("departmentId", department_id)) if not v]
    if missing:
        raise ApiError(400, "Missing required fields", f"Missing fields: {', '.join(missing)}")
    dept = db.get(Department, department_id)
    if not dept or dept.clinic_id != clinic_id:
        raise ApiError(400, "Invalid reference", "Department not found in this clinic")
    doctor = Doctor(
        clinic_id=clinic_id,
        department_id=department_id,
        name=name,
        specialization=data.get("specialization"),
        email=data.get("email"),
        phone=data.get("phone"),
        available_days=[str(d).strip().lower() for d in (data.get("availableDays") or [])],
        available_times=[str(t).strip() for t in (data.get("availableTimes") or [])],
        is_active=True,
    )
    db.add(doctor)
    db.flush()
    return doctor


def clinic_to_public(c: Clinic) -> dict[str, Any]:
    return {"id": c.id, "name": c.name, "address": c.address, "phone": c.phone, "slug": c.slug}


def clinic_to_dict(c: Clinic) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "email": c.email,
        "phone": c.phone,
        "address": c.address,
        "website": c.website,
        "slug": c.slug,
        "subscriptionPlan": c.subscription_plan,
        "isActive": c.is_active,
        "createdAt": c.created_at.isoformat() if c.created_at else None,
    }
