from fastapi import FastAPI, Query, Depends, Header, Request, BackgroundTasks
import base64
import binascii
import json
import logging
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional
from sqlalchemy import select, inspect
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from medizap import config, telephony
from medizap.access import (
    ADMIN_ONLY, ANY_MEMBER, Caller, clinic_ids_for, get_caller, get_user_caller, require_clinic_role,
)
from medizap.agent import TECHNICAL_DIFFICULTIES, run_turn
from medizap.booking import (
    BookingError, BookingRequest, appointment_summary, available_time_slots, book_appointment,
    parse_iso_date, update_appointment_status,
)
from medizap.clinics import (
    add_department, add_doctor, clinic_to_dict, clinic_to_public, create_clinic_with_admin, update_clinic,
)
from medizap.db import get_session, engine
from medizap.emails import send_appointment_confirmation
from medizap.errors import ApiError, error_body, iso_now
from medizap.identifiers import ensure_counters
from medizap.instrumentation import TimingMiddleware, attach_sqlalchemy_instrumentation
from medizap.lookups import LookupFilters, list_departments, list_doctors
from medizap.models import (
    CLINIC_ROLES, Appointment, Clinic, ClinicUser, Department, Doctor, WalkIn, utcnow,
)
from medizap.sessions import (
    SessionError, end_call, log_turn, open_call_session, open_session, save_state, state_of,
)
from medizap.telephony import (
    CALL_TROUBLE, NOT_CONFIGURED, clinic_for_number, empty_reply, signature_is_valid, twiml_reply,
)
from medizap.voice import VendorError, VoiceServices, get_voice_services
from medizap.walkins import register_walkin, set_walkin_status, walkin_to_dict

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("medizap")

app = FastAPI(title="MediZap API")
app.add_middleware(TimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"]
)


# --------- Error envelopes ---------
@app.exception_handler(ApiError)
def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.error, exc.message, exc.code))


@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.error, exc.message))


@app.exception_handler(SessionError)
def session_error_handler(request: Request, exc: SessionError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.error, str(exc)))


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 405:
        body = error_body("Method Not Allowed", f"Method {request.method} is not allowed on {request.url.path}")
    elif exc.status_code == 404:
        body = error_body("Not Found", f"No route for {request.url.path}")
    else:
        body = error_body(str(exc.detail), str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        return JSONResponse(status_code=400, content=error_body("Invalid JSON in request body", "Request body is not valid JSON"))
    parts = []
    for e in errors[:5]:
        loc = ".".join(str(p) for p in e.get("loc", ()) if p != "body")
        parts.append(f"{loc or 'body'}: {e.get('msg')}")
    return JSONResponse(status_code=400, content=error_body("Invalid request", "; ".join(parts) or "Invalid request"))


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError):
    log.exception("database error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("Database error", "The request could not be completed", exc.__class__.__name__),
    )


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    # runs in ServerErrorMiddleware, the exception is re-raised after the response
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("Internal server error", "An unexpected error occurred", exc.__class__.__name__),
    )


# --------- Startup ---------
@app.on_event("startup")
def startup():
    attach_sqlalchemy_instrumentation(engine)
    try:
        if inspect(engine).has_table("id_counters"):
            with get_session() as db:
                ensure_counters(db)
        else:
            log.warning("id_counters missing; run `alembic upgrade head`")
    except SQLAlchemyError as e:
        log.error("startup counter check failed: %s", e)
    if config.SEED_PATH:
        from medizap.seed_loader import seed_path
        log.info("[seed] %s", seed_path(config.SEED_PATH))


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": iso_now()}


# --------- Booking ---------
class BookingPayload(BaseModel):
    clinicId: Optional[str] = None
    patientName: Optional[str] = None
    patientPhone: Optional[str] = None
    patientEmail: Optional[str] = None
    doctorId: Optional[str] = None
    departmentId: Optional[str] = None
    appointmentDate: Optional[str] = None
    appointmentTime: Optional[str] = None
    notes: Optional[str] = None


@app.post("/api/book-appointment", status_code=201)
def book_appointment_route(payload: BookingPayload, background: BackgroundTasks, caller: Caller = Depends(get_caller)):
    """Validate, check the slot and insert a pending appointment.

    400 missing/invalid fields, 401 bad credentials, 409 slot already held.
    """
    req = BookingRequest.from_payload(payload.model_dump())
    with get_session() as db:
        appt = book_appointment(db, req, created_by=caller.user_id)
        doctor = db.get(Doctor, appt.doctor_id)
        dept = db.get(Department, appt.department_id)
        clinic = db.get(Clinic, appt.clinic_id)
        data = appointment_summary(appt, doctor.name if doctor else None, dept.name if dept else None)
        clinic_name = clinic.name if clinic else None
    data["emailSent"] = bool(appt.email)
    if appt.email:
        background.add_task(
            send_appointment_confirmation,
            to=appt.email,
            patient_name=appt.patient_name,
            appointment_id=appt.id,
            appointment_date=data["appointmentDate"],
            appointment_time=appt.appointment_time,
            doctor_name=data["doctorName"],
            department_name=data["departmentName"],
            clinic_name=clinic_name,
        )
    return {
        "success": True,
        "data": data,
        "message": "Appointment booked successfully",
        "timestamp": iso_now(),
    }


@app.get("/api/doctors/{doctor_id}/available-slots")
def doctor_available_slots(doctor_id: str, date_str: str = Query(..., alias="date"), caller: Caller = Depends(get_caller)):
    day = parse_iso_date(date_str, "date")
    with get_session() as db:
        doctor = db.get(Doctor, doctor_id)
        if not doctor or not doctor.is_active:
            raise ApiError(404, "Doctor not found", f"No active doctor {doctor_id}")
        slots = available_time_slots(db, doctor, day)
    return {
        "success": True,
        "data": {"doctorId": doctor_id, "date": day.isoformat(), "slots": slots},
        "timestamp": iso_now(),
    }


# --------- Lookups ---------
async def lookup_params(request: Request) -> dict[str, Any]:
    """Filters from the query string (GET) or the JSON body (POST)."""
    if request.method == "GET":
        return dict(request.query_params)
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise ApiError(400, "Invalid JSON in request body", f"JSON parsing failed: {e}")
    if not isinstance(body, dict):
        raise ApiError(400, "Invalid JSON in request body", "Request body must be a JSON object")
    return body


def _lookup_scope(db, caller: Caller) -> Optional[list[str]]:
    # the voice vendor sees every clinic; users only their own
    if caller.is_agent:
        return None
    return clinic_ids_for(db, caller.user_id)


@app.api_route("/api/get-doctors", methods=["GET", "POST"])
def get_doctors(caller: Caller = Depends(get_caller), params: dict = Depends(lookup_params)):
    filters = LookupFilters.from_params(params)
    with get_session() as db:
        return list_doctors(db, filters, _lookup_scope(db, caller))


@app.api_route("/api/get-departments", methods=["GET", "POST"])
def get_departments(caller: Caller = Depends(get_caller), params: dict = Depends(lookup_params)):
    filters = LookupFilters.from_params(params)
    with get_session() as db:
        return list_departments(db, filters, _lookup_scope(db, caller))


# --------- Voice agent ---------
class VoiceContext(BaseModel):
    clinicId: str
    sessionId: Optional[str] = None
    language: Optional[str] = "en"
    callerPhone: Optional[str] = None


class VoiceAgentPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    userInput: Optional[str] = None
    audioData: Optional[str] = None
    context: VoiceContext
    vendorConfig: Optional[dict[str, Any]] = Field(default=None, alias="config")


def _decode_audio(data: str) -> bytes:
    if "," in data and data.startswith("data:"):
        data = data.split(",", 1)[1]
    try:
        audio = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ApiError(400, "Invalid audio", "audioData must be base64 encoded")
    if not audio:
        raise ApiError(400, "Invalid audio", "audioData is empty")
    return audio


@app.post("/api/voice-agent")
def voice_agent(
    payload: VoiceAgentPayload,
    background: BackgroundTasks,
    caller: Caller = Depends(get_caller),
    services: VoiceServices = Depends(get_voice_services),
):
    """One conversational turn. State stays on the server under ``sessionId``."""
    services = services.with_credentials(payload.vendorConfig)
    ctx = payload.context
    now = utcnow()
    with get_session() as db:
        clinic = db.get(Clinic, ctx.clinicId)
        if not clinic or not clinic.is_active:
            raise ApiError(404, "Clinic not found", "I'm sorry, I'm having trouble accessing clinic information.")
        row = open_session(db, clinic.id, ctx.sessionId, config.CONVERSATION_TTL_MINUTES, now)
        session_id, version = row.id, row.version
        user_input = (payload.userInput or "").strip()
        try:
            if not user_input and payload.audioData:
                user_input = services.transcriber.transcribe(_decode_audio(payload.audioData), ctx.language or "en")
            outcome = run_turn(
                db, row, clinic, user_input, services, now,
                config.CONVERSATION_MAX_ATTEMPTS, created_by=caller.user_id,
            )
        except VendorError as e:
            log.warning("voice turn aborted for session %s: %s", session_id, e)
            return {
                "text": TECHNICAL_DIFFICULTIES,
                "shouldEnd": False,
                "sessionId": session_id,
                "conversationState": state_of(row).to_dict(),
            }
        save_state(db, session_id, version, outcome.state)
        log_turn(db, session_id, clinic.id, outcome.state.step, user_input or None, outcome.text)

    if outcome.confirmation:
        background.add_task(send_appointment_confirmation, **outcome.confirmation)
    resp: dict[str, Any] = {
        "text": outcome.text,
        "shouldEnd": outcome.should_end,
        "sessionId": session_id,
        "conversationState": outcome.state.to_dict(),
    }
    if outcome.appointment:
        resp["appointmentData"] = outcome.appointment
    if outcome.walkin:
        resp["walkinData"] = outcome.walkin
    audio_url = services.speech.synthesize(outcome.text)
    if audio_url:
        resp["audioUrl"] = audio_url
    return resp


class TranscribePayload(BaseModel):
    audioData: str
    language: Optional[str] = "en"


@app.post("/api/transcribe")
def transcribe(payload: TranscribePayload, caller: Caller = Depends(get_caller),
               services: VoiceServices = Depends(get_voice_services)):
    audio = _decode_audio(payload.audioData)
    try:
        text = services.transcriber.transcribe(audio, payload.language or "en")
    except VendorError:
        raise ApiError(502, "Transcription failed", "The speech service is unavailable")
    return {"success": True, "text": text, "timestamp": iso_now()}


# --------- Phone calls (Twilio) ---------
TWIML = "application/xml"


def _webhook_url(request: Request) -> str:
    return config.TWILIO_WEBHOOK_URL or str(request.url)


async def twilio_form(request: Request, x_twilio_signature: Optional[str] = Header(None)) -> dict[str, str]:
    """The posted call fields, accepted only with a valid Twilio signature."""
    if not config.TWILIO_AUTH_TOKEN:
        raise ApiError(503, "Phone calls not configured", "TWILIO_AUTH_TOKEN is not set")
    form = await request.form()
    params = {k: str(v) for k, v in form.items()}
    if not signature_is_valid(_webhook_url(request), params, x_twilio_signature):
        raise ApiError(403, "Invalid signature", "The request is not signed by Twilio")
    return params


@app.post("/api/twilio-webhook")
def twilio_webhook(
    request: Request,
    background: BackgroundTasks,
    form: dict = Depends(twilio_form),
    services: VoiceServices = Depends(get_voice_services),
):
    """One utterance of a phone call, answered with TwiML.

    The session is keyed by ``CallSid``; a ``completed`` status closes it and
    records the call duration.
    """
    call_sid = (form.get("CallSid") or "").strip()
    if not call_sid:
        raise ApiError(400, "Missing required fields", "Missing fields: CallSid")
    action_url = _webhook_url(request)
    language = "en"
    now = utcnow()

    if form.get("CallStatus") == "completed":
        with get_session() as db:
            duration = end_call(db, call_sid, now)
        log.info("call %s completed, duration=%s s", call_sid, duration)
        return Response(empty_reply(), media_type=TWIML)

    with get_session() as db:
        clinic = clinic_for_number(db, form.get("To"))
        if clinic is None:
            log.warning("call %s to unknown number %s", call_sid, form.get("To"))
            return Response(twiml_reply(NOT_CONFIGURED, action_url, language, hang_up=True), media_type=TWIML)
        row = open_call_session(db, clinic.id, call_sid, form.get("From"), now)
        version = row.version
        user_input = (form.get("SpeechResult") or "").strip()
        try:
            if not user_input and form.get("RecordingUrl"):
                audio = telephony.fetch_recording(form["RecordingUrl"])
                if audio:
                    user_input = services.transcriber.transcribe(audio, language, filename="recording.wav")
            outcome = run_turn(db, row, clinic, user_input, services, now, config.CONVERSATION_MAX_ATTEMPTS)
        except VendorError as e:
            log.warning("call %s turn aborted: %s", call_sid, e)
            return Response(twiml_reply(CALL_TROUBLE, action_url, language, transfer=True), media_type=TWIML)
        save_state(db, call_sid, version, outcome.state)
        log_turn(db, call_sid, clinic.id, outcome.state.step, user_input or None, outcome.text)

    if outcome.confirmation:
        background.add_task(send_appointment_confirmation, **outcome.confirmation)
    xml = twiml_reply(
        outcome.text, action_url, language,
        hang_up=outcome.should_end and not outcome.handed_off,
        transfer=outcome.handed_off,
    )
    return Response(xml, media_type=TWIML)


# --------- Public (QR walk-in form) ---------
@app.get("/api/public/clinics")
def public_clinics():
    with get_session() as db:
        rows = db.execute(
            select(Clinic).where(Clinic.is_active.is_(True)).order_by(Clinic.name.asc())
        ).scalars().all()
        return {"success": True, "data": [clinic_to_public(c) for c in rows], "timestamp": iso_now()}


def _clinic_by_slug(db, slug: str) -> Clinic:
    clinic = db.execute(select(Clinic).where(Clinic.slug == slug)).scalar_one_or_none()
    if not clinic or not clinic.is_active:
        raise ApiError(404, "Clinic not found", f"No active clinic '{slug}'")
    return clinic


@app.get("/api/public/clinics/{slug}")
def public_clinic(slug: str):
    with get_session() as db:
        return {"success": True, "data": clinic_to_public(_clinic_by_slug(db, slug)), "timestamp": iso_now()}


class WalkInPayload(BaseModel):
    patientName: Optional[str] = None
    dateOfBirth: Optional[str] = None
    gender: Optional[str] = None
    contactNumber: Optional[str] = None
    reasonForVisit: Optional[str] = None


@app.post("/api/public/clinics/{slug}/walk-ins", status_code=201)
def public_walkin(slug: str, payload: WalkInPayload):
    with get_session() as db:
        clinic = _clinic_by_slug(db, slug)
        w = register_walkin(db, clinic.id, payload.model_dump())
        return {
            "success": True,
            "data": walkin_to_dict(w),
            "message": f"Registered with {clinic.name}. Your reference number is {w.reference_number}.",
            "timestamp": iso_now(),
        }


# --------- Clinic administration ---------
class ClinicPayload(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None


class ClinicUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    subscriptionPlan: Optional[str] = None
    isActive: Optional[bool] = None


@app.post("/api/clinics", status_code=201)
def create_clinic(payload: ClinicPayload, caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        clinic = create_clinic_with_admin(
            db, caller.user_id, payload.name, payload.email,
            phone=payload.phone, address=payload.address, website=payload.website,
        )
        out = clinic_to_dict(clinic)
        out["departments"] = [
            {"id": d.id, "name": d.name}
            for d in db.execute(
                select(Department).where(Department.clinic_id == clinic.id).order_by(Department.id)
            ).scalars().all()
        ]
        return {"success": True, "data": out, "message": "Clinic created successfully", "timestamp": iso_now()}


@app.get("/api/me/clinics")
def my_clinics(caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        rows = db.execute(
            select(ClinicUser, Clinic)
            .join(Clinic, ClinicUser.clinic_id == Clinic.id)
            .where(ClinicUser.user_id == caller.user_id, ClinicUser.is_active.is_(True))
            .order_by(Clinic.name.asc())
        ).all()
        return {
            "success": True,
            "data": [{"clinic": clinic_to_public(c), "role": m.role} for m, c in rows],
            "timestamp": iso_now(),
        }


def _get_clinic(db, clinic_id: str) -> Clinic:
    clinic = db.get(Clinic, clinic_id)
    if not clinic:
        raise ApiError(404, "Clinic not found", f"No clinic {clinic_id}")
    return clinic


@app.patch("/api/clinics/{clinic_id}")
def patch_clinic(clinic_id: str, payload: ClinicUpdate, caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        clinic = _get_clinic(db, clinic_id)
        require_clinic_role(db, caller, clinic_id, ADMIN_ONLY)
        changes = payload.model_dump(exclude_unset=True)
        renamed = {
            "subscription_plan" if k == "subscriptionPlan" else "is_active" if k == "isActive" else k: v
            for k, v in changes.items()
        }
        update_clinic(db, clinic, renamed)
        return {"success": True, "data": clinic_to_dict(clinic), "timestamp": iso_now()}


class DepartmentPayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


@app.post("/api/clinics/{clinic_id}/departments", status_code=201)
def create_department(clinic_id: str, payload: DepartmentPayload, caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        _get_clinic(db, clinic_id)
        require_clinic_role(db, caller, clinic_id, ADMIN_ONLY)
        dept = add_department(db, clinic_id, payload.name, payload.description)
        return {
            "success": True,
            "data": {"id": dept.id, "clinicId": dept.clinic_id, "name": dept.name,
                     "description": dept.description, "isActive": dept.is_active},
            "timestamp": iso_now(),
        }


@app.delete("/api/departments/{department_id}")
def deactivate_department(department_id: str, caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        dept = db.get(Department, department_id)
        if not dept:
            raise ApiError(404, "Department not found", f"No department {department_id}")
        require_clinic_role(db, caller, dept.clinic_id, ADMIN_ONLY)
        dept.is_active = False
        return {"success": True, "data": {"id": dept.id, "isActive": False}, "timestamp": iso_now()}


class DoctorPayload(BaseModel):
    name: Optional[str] = None
    departmentId: Optional[str] = None
    specialization: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    availableDays: list[str] = []
    availableTimes: list[str] = []


@app.post("/api/clinics/{clinic_id}/doctors", status_code=201)
def create_doctor(clinic_id: str, payload: DoctorPayload, caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        _get_clinic(db, clinic_id)
        require_clinic_role(db, caller, clinic_id, ADMIN_ONLY)
        doctor = add_doctor(db, clinic_id, payload.model_dump())
        return {
            "success": True,
            "data": {
                "id": doctor.id, "clinicId": doctor.clinic_id, "departmentId": doctor.department_id,
                "name": doctor.name, "specialization": doctor.specialization,
                "availableDays": doctor.available_days, "availableTimes": doctor.available_times,
            },
            "timestamp": iso_now(),
        }


@app.delete("/api/doctors/{doctor_id}")
def deactivate_doctor(doctor_id: str, caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        doctor = db.get(Doctor, doctor_id)
        if not doctor:
            raise ApiError(404, "Doctor not found", f"No doctor {doctor_id}")
        require_clinic_role(db, caller, doctor.clinic_id, ADMIN_ONLY)
        doctor.is_active = False
        return {"success": True, "data": {"id": doctor.id, "isActive": False}, "timestamp": iso_now()}


class MemberPayload(BaseModel):
    userId: str
    role: str = "staff"
    isActive: bool = True


@app.post("/api/clinics/{clinic_id}/members")
def upsert_member(clinic_id: str, payload: MemberPayload, caller: Caller = Depends(get_user_caller)):
    if payload.role not in CLINIC_ROLES:
        raise ApiError(400, "Invalid field", f"role must be one of: {', '.join(CLINIC_ROLES)}")
    with get_session() as db:
        _get_clinic(db, clinic_id)
        require_clinic_role(db, caller, clinic_id, ADMIN_ONLY)
        member = db.execute(
            select(ClinicUser).where(ClinicUser.clinic_id == clinic_id, ClinicUser.user_id == payload.userId)
        ).scalar_one_or_none()
        if member is None:
            member = ClinicUser(clinic_id=clinic_id, user_id=payload.userId)
            db.add(member)
        member.role = payload.role
        member.is_active = payload.isActive
        db.flush()
        return {
            "success": True,
            "data": {"clinicId": clinic_id, "userId": member.user_id, "role": member.role, "isActive": member.is_active},
            "timestamp": iso_now(),
        }


def appointment_to_dict(ap: Appointment, doctor: Doctor, dept: Department) -> dict[str, Any]:
    out = appointment_summary(ap, doctor.name, dept.name)
    out.update({
        "clinicId": ap.clinic_id,
        "doctorId": ap.doctor_id,
        "departmentId": ap.department_id,
        "patientPhone": ap.phone_number,
        "patientEmail": ap.email,
        "createdBy": ap.created_by,
        "createdAt": ap.created_at.isoformat() if ap.created_at else None,
    })
    return out


@app.get("/api/clinics/{clinic_id}/appointments")
def clinic_appointments(
    clinic_id: str,
    date_str: Optional[str] = Query(None, alias="date"),
    status: Optional[str] = Query(None),
    caller: Caller = Depends(get_user_caller),
):
    with get_session() as db:
        require_clinic_role(db, caller, clinic_id, ANY_MEMBER)
        q = (
            select(Appointment, Doctor, Department)
            .join(Doctor, Appointment.doctor_id == Doctor.id)
            .join(Department, Appointment.department_id == Department.id)
            .where(Appointment.clinic_id == clinic_id)
            .order_by(Appointment.appointment_date.asc(), Appointment.appointment_time.asc())
        )
        if date_str:
            q = q.where(Appointment.appointment_date == parse_iso_date(date_str, "date"))
        if status:
            q = q.where(Appointment.status == status)
        rows = db.execute(q).all()
        return {
            "success": True,
            "data": [appointment_to_dict(ap, doc, dep) for ap, doc, dep in rows],
            "timestamp": iso_now(),
        }


class StatusPayload(BaseModel):
    status: str


@app.patch("/api/appointments/{appointment_id}/status")
def patch_appointment_status(appointment_id: str, payload: StatusPayload, caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        ap = db.get(Appointment, appointment_id)
        if not ap:
            raise ApiError(404, "Appointment not found", f"No appointment {appointment_id}")
        require_clinic_role(db, caller, ap.clinic_id, ANY_MEMBER)
        update_appointment_status(db, ap, payload.status)
        return {"success": True, "data": {"appointmentId": ap.id, "status": ap.status}, "timestamp": iso_now()}


@app.get("/api/clinics/{clinic_id}/walk-ins")
def clinic_walkins(clinic_id: str, status: Optional[str] = Query(None), caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        require_clinic_role(db, caller, clinic_id, ANY_MEMBER)
        q = select(WalkIn).where(WalkIn.clinic_id == clinic_id).order_by(WalkIn.created_at.asc(), WalkIn.id.asc())
        if status:
            q = q.where(WalkIn.status == status)
        rows = db.execute(q).scalars().all()
        return {"success": True, "data": [walkin_to_dict(w) for w in rows], "timestamp": iso_now()}


@app.patch("/api/walk-ins/{walkin_id}/status")
def patch_walkin_status(walkin_id: int, payload: StatusPayload, caller: Caller = Depends(get_user_caller)):
    with get_session() as db:
        w = db.get(WalkIn, walkin_id)
        if not w or not w.clinic_id:
            raise ApiError(404, "Walk-in not found", f"No walk-in {walkin_id}")
        require_clinic_role(db, caller, w.clinic_id, ANY_MEMBER)
        set_walkin_status(db, w, payload.status)
        return {"success": True, "data": walkin_to_dict(w), "timestamp": iso_now()}
