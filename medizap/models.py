from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Integer, ForeignKey, DateTime, Date, Text, UniqueConstraint, Boolean,
    CheckConstraint, Index, JSON, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, date, timezone
import uuid

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite for local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

APPOINTMENT_STATUSES = ("pending", "confirmed", "cancelled", "completed")
# statuses that hold a slot; cancelled/completed free it again
ACTIVE_APPOINTMENT_STATUSES = ("pending", "confirmed")
CLINIC_ROLES = ("admin", "staff", "doctor")
WALKIN_STATUSES = ("waiting", "in-progress", "completed", "cancelled")


def utcnow() -> datetime:
    # naive UTC, matching the DateTime columns below
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Clinic(Base):
    __tablename__ = "clinics"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    subscription_plan: Mapped[str] = mapped_column(String(32), nullable=False, default="basic")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    departments: Mapped[list["Department"]] = relationship(back_populates="clinic")


class Department(Base):
    __tablename__ = "departments"
    # display code from the "department" counter, e.g. D0003
    id: Mapped[str] = mapped_column(String(16), primary_key=True)
    clinic_id: Mapped[str] = mapped_column(ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    clinic: Mapped[Clinic] = relationship(back_populates="departments")
    doctors: Mapped[list["Doctor"]] = relationship(back_populates="department")
    __table_args__ = (UniqueConstraint("clinic_id", "name", name="uq_department_clinic_name"),)


class Doctor(Base):
    __tablename__ = "doctors"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    clinic_id: Mapped[str] = mapped_column(ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    department_id: Mapped[str] = mapped_column(ForeignKey("departments.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    specialization: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # weekday names ("monday") and "HH:MM" start times
    available_days: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    available_times: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    department: Mapped[Department] = relationship(back_populates="doctors")
    clinic: Mapped[Clinic] = relationship()


class Appointment(Base):
    __tablename__ = "appointments"
    # display code from the "appointment" counter, e.g. A0007
    id: Mapped[str] = mapped_column(String(16), primary_key=True)
    clinic_id: Mapped[str] = mapped_column(ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    doctor_id: Mapped[str] = mapped_column(ForeignKey("doctors.id"), nullable=False)
    department_id: Mapped[str] = mapped_column(ForeignKey("departments.id"), nullable=False)
    patient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False)
    appointment_time: Mapped[str] = mapped_column(String(5), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # null for guest and voice-agent bookings
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    doctor: Mapped[Doctor] = relationship()
    department: Mapped[Department] = relationship()

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'completed')",
            name="ck_appointment_status",
        ),
        # one live booking per slot; this index is what makes check-and-insert atomic
        Index(
            "ux_appointments_active_slot",
            "doctor_id", "appointment_date", "appointment_time",
            unique=True,
            postgresql_where=text("status IN ('pending', 'confirmed')"),
            sqlite_where=text("status IN ('pending', 'confirmed')"),
        ),
        Index("ix_appointments_clinic_date", "clinic_id", "appointment_date"),
    )


class WalkIn(Base):
    __tablename__ = "walk_ins"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clinic_id: Mapped[str | None] = mapped_column(ForeignKey("clinics.id", ondelete="SET NULL"), nullable=True)
    patient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # shown to the patient, e.g. W0012
    reference_number: Mapped[str | None] = mapped_column(String(16), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contact_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reason_for_visit: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="waiting")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ClinicUser(Base):
    """Membership of an authenticated account in a clinic.

    Every clinic-scoped permission check goes through these rows.
    """
    __tablename__ = "clinic_users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clinic_id: Mapped[str] = mapped_column(ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="staff")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    __table_args__ = (
        UniqueConstraint("clinic_id", "user_id", name="uq_clinic_user"),
        CheckConstraint("role IN ('admin', 'staff', 'doctor')", name="ck_clinic_user_role"),
        Index("ix_clinic_users_user", "user_id"),
    )


class IdCounter(Base):
    __tablename__ = "id_counters"
    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ConversationSession(Base):
    __tablename__ = "conversation_sessions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    clinic_id: Mapped[str] = mapped_column(ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    step: Mapped[str] = mapped_column(String(32), nullable=False, default="greeting")
    intent: Mapped[str | None] = mapped_column(String(32), nullable=True)
    collected_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # bumped on every saved turn; a stale version means another request won
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    # "web" or "phone"; phone sessions are keyed by the call sid
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="web")
    caller_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ConversationLog(Base):
    __tablename__ = "conversation_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("conversation_sessions.id", ondelete="CASCADE"), nullable=False)
    clinic_id: Mapped[str] = mapped_column(String(36), nullable=False)
    step: Mapped[str] = mapped_column(String(32), nullable=False)
    user_input: Mapped[str | None] = mapped_column(Text, nullable=True)
    agent_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_conversation_logs_session", "session_id", "created_at"),)
