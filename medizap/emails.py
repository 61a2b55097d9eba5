import logging
from datetime import date, datetime
from typing import Optional

import resend

from medizap import config

log = logging.getLogger(__name__)

resend.api_key = config.RESEND_API_KEY


def _format_date(value: str) -> str:
    try:
        d = date.fromisoformat(value)
    except ValueError:
        return value
    return d.strftime("%A, %B %d, %Y").replace(" 0", " ")


def _format_time(value: str) -> str:
    try:
        t = datetime.strptime(value[:5], "%H:%M")
    except ValueError:
        return value
    return t.strftime("%I:%M %p").lstrip("0")


def render_confirmation_html(patient_name, clinic_name, appointment_id, appointment_date, appointment_time, doctor_name, department_name) -> str:
    return (
        "<h1>Appointment Confirmation</h1>"
        f"<p>Dear {patient_name},</p>"
        f"<p>Your appointment has been successfully booked with {clinic_name}. "
        "Here are your appointment details:</p>"
        "<ul>"
        f"<li><strong>Date:</strong> {_format_date(appointment_date)}</li>"
        f"<li><strong>Time:</strong> {_format_time(appointment_time)}</li>"
        f"<li><strong>Doctor:</strong> {doctor_name or '-'}</li>"
        f"<li><strong>Department:</strong> {department_name or '-'}</li>"
        "</ul>"
        f"<p>Your appointment reference number is: <strong>{appointment_id}</strong></p>"
        "<p>Please arrive 15 minutes before your scheduled appointment time. "
        "If you need to reschedule or cancel your appointment, please contact us at least 24 hours in advance.</p>"
        f"<p>Thank you for choosing {clinic_name} for your healthcare needs.</p>"
    )


def send_appointment_confirmation(
    to: str,
    patient_name: str,
    appointment_id: str,
    appointment_date: str,
    appointment_time: str,
    doctor_name: Optional[str],
    department_name: Optional[str],
    clinic_name: Optional[str] = None,
) -> bool:
    """Send the booking confirmation. Runs after the response, so it only logs failures."""
    clinic_name = clinic_name or config.DEFAULT_CLINIC_NAME
    if not config.RESEND_API_KEY:
        log.info("RESEND_API_KEY not set; skipping confirmation for %s", appointment_id)
        return False
    try:
        resend.Emails.send(
            {
                "from": config.EMAIL_FROM,
                "to": to,
                "subject": f"Appointment Confirmation - {clinic_name}",
                "html": render_confirmation_html(
                    patient_name, clinic_name, appointment_id,
                    appointment_date, appointment_time, doctor_name, department_name,
                ),
            }
        )
    except Exception:
        log.exception("confirmation email for %s failed", appointment_id)
        return False
    log.info("confirmation email sent for %s", appointment_id)
    return True
