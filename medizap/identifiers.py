"""Human-readable identifiers and clinic slugs.

Display ids (``A0007``, ``D0003``, ``W0012``) are built from two separate
pieces: an atomic counter row in ``id_counters`` and a pure formatting
function. Counters are global, so every clinic draws from the same
appointment sequence.
"""
from __future__ import annotations

import re
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from medizap.models import Clinic, IdCounter

APPOINTMENT_COUNTER = "appointment"
DEPARTMENT_COUNTER = "department"
WALKIN_COUNTER = "walkin"

COUNTER_PREFIXES = {
    APPOINTMENT_COUNTER: "A",
    DEPARTMENT_COUNTER: "D",
    WALKIN_COUNTER: "W",
}

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def format_display_id(prefix: str, value: int, width: int = 4) -> str:
    """``format_display_id("A", 7) -> "A0007"``. Wider numbers are kept whole."""
    if value < 0:
        raise ValueError("counter value must not be negative")
    return f"{prefix}{value:0{width}d}"


def ensure_counters(db: Session) -> None:
    """Create any missing counter rows at 0."""
    existing = set(db.execute(select(IdCounter.name)).scalars().all())
    for name in COUNTER_PREFIXES:
        if name not in existing:
            db.add(IdCounter(name=name, value=0))
    db.flush()


def next_counter_value(db: Session, name: str) -> int:
    # UPDATE takes the row lock, so concurrent callers are serialised until commit
    res = db.execute(
        update(IdCounter)
        .where(IdCounter.name == name)
        .values(value=IdCounter.value + 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        db.add(IdCounter(name=name, value=1))
        db.flush()
        return 1
    return int(db.execute(select(IdCounter.value).where(IdCounter.name == name)).scalar_one())


def allocate_display_id(db: Session, counter: str) -> str:
    return format_display_id(COUNTER_PREFIXES[counter], next_counter_value(db, counter))


def slugify_clinic_name(name: str) -> str:
    slug = _SLUG_SEPARATORS.sub("-", (name or "").lower()).strip("-")
    return slug or "clinic"


def generate_clinic_slug(db: Session, name: str, exclude_id: Optional[str] = None) -> str:
    """Unique slug for ``name``: ``base``, then ``base-1``, ``base-2``..."""
    base = slugify_clinic_name(name)
    candidate = base
    n = 0
    while True:
        q = select(Clinic.id).where(Clinic.slug == candidate)
        if exclude_id:
            q = q.where(Clinic.id != exclude_id)
        if db.execute(q.limit(1)).first() is None:
            return candidate
        n += 1
        candidate = f"{base}-{n}"
