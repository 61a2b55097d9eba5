from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select

from medizap.db import get_session
from medizap.identifiers import DEPARTMENT_COUNTER, allocate_display_id, ensure_counters, generate_clinic_slug
from medizap.models import Clinic, Department, Doctor

log = logging.getLogger(__name__)


def load_json(file_path: str | Path) -> Dict[str, Any]:
    p = Path(file_path)
    if not p.exists():
        raise FileNotFoundError(f"Seed file not found: {file_path}")
    with p.open("r", encoding="utf-8") as f:
        data = json.load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Seed JSON must be an object with key 'clinics'")
    return data


def _coerce_phone(val: Any) -> Optional[str]:
    if val is None:
        return None
    s = "".join(ch for ch in str(val) if ch.isdigit() or ch == "+")
    return s or None


def _str_list(val: Any, lower: bool = False) -> List[str]:
    if not isinstance(val, list):
        return []
    out = [str(v).strip() for v in val if str(v).strip()]
    return [v.lower() for v in out] if lower else out


def upsert_clinics_json(file_path: str | Path) -> Dict[str, int]:
    """Load a clinics.json-style file and upsert clinics, departments and doctors.

    Expected schema:
    {
      "clinics": [
        {
          "name": str, "email": str, "phone": str?, "address": str?, "website": str?,
          "departments": [
            {
              "name": str, "description": str?,
              "doctors": [
                { "name": str, "specialization": str?, "phone": str?, "email": str?,
                  "availableDays": [str], "availableTimes": ["HH:MM"] }
              ]
            }
          ]
        }
      ]
    }

    Clinics are matched by email, departments by name within the clinic and
    doctors by name within the department, so loading a file twice is a no-op.
    """
    data = load_json(file_path)
    clinics = data.get("clinics", [])
    if not isinstance(clinics, list):
        raise ValueError("'clinics' must be a list")

    stats = {"clinics": 0, "departments": 0, "doctors": 0}
    with get_session() as db:
        ensure_counters(db)
        for c in clinics:
            if not isinstance(c, dict):
                continue
            c_name = str(c.get("name", "")).strip()
            c_email = str(c.get("email", "")).strip().lower()
            if not c_name or not c_email:
                continue
            clinic = db.execute(select(Clinic).where(func.lower(Clinic.email) == c_email)).scalars().first()
            if not clinic:
                clinic = Clinic(
                    name=c_name,
                    email=c_email,
                    phone=_coerce_phone(c.get("phone")),
                    address=c.get("address"),
                    website=c.get("website"),
                    slug=generate_clinic_slug(db, c_name),
                )
                db.add(clinic)
                db.flush()
                stats["clinics"] += 1

            for d in c.get("departments", []) or []:
                if not isinstance(d, dict):
                    continue
                d_name = str(d.get("name", "")).strip()
                if not d_name:
                    continue
                dep = db.execute(
                    select(Department).where(Department.clinic_id == clinic.id, Department.name == d_name)
                ).scalars().first()
                if not dep:
                    dep = Department(
                        id=allocate_display_id(db, DEPARTMENT_COUNTER),
                        clinic_id=clinic.id, name=d_name, description=d.get("description"),
                    )
                    db.add(dep)
                    db.flush()
                    stats["departments"] += 1

                for doc in d.get("doctors", []) or []:
                    if not isinstance(doc, dict):
                        continue
                    doc_name = str(doc.get("name", "")).strip()
                    if not doc_name:
                        continue
                    days = _str_list(doc.get("availableDays"), lower=True)
                    times = _str_list(doc.get("availableTimes"))
                    existing = db.execute(
                        select(Doctor).where(Doctor.department_id == dep.id, Doctor.name == doc_name)
                    ).scalars().first()
                    if not existing:
                        db.add(Doctor(
                            clinic_id=clinic.id, department_id=dep.id, name=doc_name,
                            specialization=doc.get("specialization"),
                            phone=_coerce_phone(doc.get("phone")), email=doc.get("email"),
                            available_days=days, available_times=times,
                        ))
                        stats["doctors"] += 1
                    else:
                        phone_val = _coerce_phone(doc.get("phone"))
                        if phone_val and existing.phone != phone_val:
                            existing.phone = phone_val
                        if days:
                            existing.available_days = days
                        if times:
                            existing.available_times = times
    return stats


def seed_files(files: List[Union[str, Path]]) -> Dict[str, Any]:
    """Seed from a list of JSON files. Returns per-file stats or error."""
    summary: Dict[str, Any] = {}
    for f in files:
        p = Path(f)
        key = p.name
        if not p.exists():
            summary[key] = {"error": f"missing: {p}"}
            continue
        try:
            summary[key] = upsert_clinics_json(p)
        except (OSError, ValueError) as e:
            log.warning("seed file %s rejected: %s", p, e)
            summary[key] = {"error": str(e)}
    return summary


def seed_path(path: Union[str, Path], pattern: str = "*.json", recursive: bool = False) -> Dict[str, Any]:
    """Seed all JSON files under a path (file or directory)."""
    p = Path(path)
    if p.is_file():
        return seed_files([p])
    if not p.exists():
        return {"error": f"path not found: {p}"}
    files = sorted(p.rglob(pattern) if recursive else p.glob(pattern))
    return seed_files(files)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) < 2:
        print("usage: python -m medizap.seed_loader <file-or-directory>")
        sys.exit(2)
    print(json.dumps(seed_path(sys.argv[1]), indent=2))
