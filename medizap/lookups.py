"""Doctor and department listings used by the voice vendor and the dashboard.

Both accept the same filters either as query parameters (GET) or as a JSON
body (POST) and answer with the ``{success, data, meta, filters, timestamp}``
envelope.
"""
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from medizap.errors import ApiError, iso_now
from medizap.models import Clinic, Department, Doctor

MAX_LIMIT = 100
DEFAULT_PAGE = 50


def _as_bool(value: Any, field: str) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("true", "1", "yes"):
        return True
    if s in ("false", "0", "no"):
        return False
    raise ApiError(400, "Invalid parameter", f"{field} must be true or false")


def _as_int(value: Any, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ApiError(400, "Invalid parameter", f"{field} must be an integer")
    if n < 0:
        raise ApiError(400, "Invalid parameter", f"{field} must not be negative")
    return n


@dataclass
class LookupFilters:
    clinic_id: Optional[str] = None
    department_id: Optional[str] = None
    is_active: Optional[bool] = None
    include_availability: bool = False
    limit: Optional[int] = None
    offset: int = 0

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "LookupFilters":
        limit = _as_int(params.get("limit"), "limit")
        if limit is not None:
            limit = min(limit, MAX_LIMIT) or None
        return cls(
            clinic_id=(str(params["clinicId"]).strip() or None) if params.get("clinicId") else None,
            department_id=(str(params["departmentId"]).strip() or None) if params.get("departmentId") else None,
            is_active=_as_bool(params.get("isActive"), "isActive"),
            include_availability=bool(_as_bool(params.get("includeAvailability"), "includeAvailability")),
            limit=limit,
            offset=_as_int(params.get("offset"), "offset") or 0,
        )

    @property
    def applied_limit(self) -> Optional[int]:
        """The page size actually used; an offset alone pages by DEFAULT_PAGE."""
        if self.limit:
            return self.limit
        return DEFAULT_PAGE if self.offset else None

    def echo(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "clinicId": self.clinic_id,
            "departmentId": self.department_id,
            "isActive": self.is_active,
            "limit": self.limit,
            "offset": self.offset,
        }
        return out


def _page(q, f: LookupFilters):
    if f.applied_limit:
        q = q.limit(f.applied_limit)
    if f.offset:
        q = q.offset(f.offset)
    return q


def envelope(rows: list[dict], total: int, f: LookupFilters, filters: dict[str, Any]) -> dict[str, Any]:
    count = len(rows)
    limit = f.applied_limit
    return {
        "success": True,
        "data": rows,
        "meta": {
            "total": total,
            "count": count,
            "limit": limit,
            "offset": f.offset,
            "hasMore": limit is not None and f.offset + count < total,
        },
        "filters": filters,
        "timestamp": iso_now(),
    }


def list_doctors(db: Session, f: LookupFilters, clinic_ids: Optional[list[str]] = None) -> dict[str, Any]:
    """``clinic_ids`` restricts the result to those clinics (membership scope)."""
    conds = []
    if f.clinic_id:
        conds.append(Doctor.clinic_id == f.clinic_id)
    if clinic_ids is not None:
        conds.append(Doctor.clinic_id.in_(clinic_ids))
    if f.department_id:
        conds.append(Doctor.department_id == f.department_id)
    if f.is_active is not None:
        conds.append(Doctor.is_active.is_(f.is_active))

    total = db.execute(select(func.count(Doctor.id)).where(*conds)).scalar_one()
    q = (
        select(Doctor, Department, Clinic)
        .join(Department, Doctor.department_id == Department.id)
        .join(Clinic, Doctor.clinic_id == Clinic.id)
        .where(*conds)
        .order_by(Doctor.name.asc(), Doctor.id.asc())
    )
    rows = []
    for doc, dep, clinic in db.execute(_page(q, f)).all():
        item = {
            "id": doc.id,
            "clinic_id": doc.clinic_id,
            "department_id": doc.department_id,
            "name": doc.name,
            "specialization": doc.specialization,
            "phone": doc.phone,
            "is_active": doc.is_active,
            "created_at": doc.created_at.isoformat() if doc.created_at else None,
            "updated_at": doc.updated_at.isoformat() if doc.updated_at else None,
            "department": {"id": dep.id, "name": dep.name, "description": dep.description},
            "clinic": {"id": clinic.id, "name": clinic.name},
        }
        if f.include_availability:
            item["available_days"] = list(doc.available_days or [])
            item["available_times"] = list(doc.available_times or [])
        rows.append(item)
    filters = f.echo()
    filters["includeAvailability"] = f.include_availability
    return envelope(rows, total, f, filters)


def list_departments(db: Session, f: LookupFilters, clinic_ids: Optional[list[str]] = None) -> dict[str, Any]:
    conds = []
    if f.clinic_id:
        conds.append(Department.clinic_id == f.clinic_id)
    if clinic_ids is not None:
        conds.append(Department.clinic_id.in_(clinic_ids))
    if f.is_active is not None:
        conds.append(Department.is_active.is_(f.is_active))

    total = db.execute(select(func.count(Department.id)).where(*conds)).scalar_one()
    q = (
        select(Department, Clinic)
        .join(Clinic, Department.clinic_id == Clinic.id)
        .where(*conds)
        .order_by(Department.name.asc(), Department.id.asc())
    )
    rows = [
        {
            "id": dep.id,
            "clinic_id": dep.clinic_id,
            "name": dep.name,
            "description": dep.description,
            "is_active": dep.is_active,
            "created_at": dep.created_at.isoformat() if dep.created_at else None,
            "updated_at": dep.updated_at.isoformat() if dep.updated_at else None,
            "clinic": {"id": clinic.id, "name": clinic.name},
        }
        for dep, clinic in db.execute(_page(q, f)).all()
    ]
    filters = f.echo()
    filters.pop("departmentId")
    return envelope(rows, total, f, filters)
