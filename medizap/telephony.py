"""Phone calls through Twilio.

Twilio posts a form for every caller utterance. The dialled number picks the
clinic, the call sid keys the conversation session and the reply is TwiML
that speaks the agent's answer and gathers the next utterance.
"""
import logging
from typing import Any, Optional

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import VoiceResponse

from medizap import config
from medizap.conversation import extract_phone_number
from medizap.models import Clinic

log = logging.getLogger(__name__)

NOT_CONFIGURED = (
    "I'm sorry, but this number is not configured for a clinic. "
    "Please check the number and try again."
)
CALL_TROUBLE = "I'm sorry, I'm experiencing technical difficulties. Let me transfer you to our staff."
SPEAK_PROMPT = "Please speak your response."
NO_INPUT = "I didn't hear anything. Let me transfer you to our staff."
HOLD = "Please hold while I transfer you."
STAFF_UNAVAILABLE = "I'm sorry, but our staff is not available right now. Please try calling back later."

GATHER_LANGUAGES = {"en": "en-US", "ml": "ml-IN"}


def signature_is_valid(url: str, params: dict[str, Any], signature: Optional[str]) -> bool:
    if not config.TWILIO_AUTH_TOKEN or not signature:
        return False
    return RequestValidator(config.TWILIO_AUTH_TOKEN).validate(url, params, signature)


def clinic_for_number(db: Session, dialled: Optional[str]) -> Optional[Clinic]:
    """Active clinic whose phone is the dialled number, compared digit for digit."""
    wanted = extract_phone_number(dialled or "")
    if not wanted:
        return None
    clinics = db.execute(
        select(Clinic).where(Clinic.is_active.is_(True), Clinic.phone.is_not(None)).order_by(Clinic.created_at)
    ).scalars().all()
    for clinic in clinics:
        if extract_phone_number(clinic.phone) == wanted:
            return clinic
    return None


def fetch_recording(url: str) -> Optional[bytes]:
    auth = (config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN) if config.TWILIO_ACCOUNT_SID else None
    try:
        resp = requests.get(url, auth=auth, timeout=config.VENDOR_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        log.warning("recording download failed: %s", e)
        return None
    if resp.status_code != 200:
        log.warning("recording download answered %s", resp.status_code)
        return None
    return resp.content or None


def _voice(language: str) -> str:
    return "Polly.Aditi" if language == "ml" else "alice"


def _transfer(resp: VoiceResponse, voice: str, announce: bool = True) -> None:
    if not config.CLINIC_TRANSFER_NUMBER:
        resp.say(STAFF_UNAVAILABLE, voice=voice)
        resp.hangup()
        return
    if announce:
        resp.say(HOLD, voice=voice)
    resp.dial(config.CLINIC_TRANSFER_NUMBER, timeout=30)
    resp.say(STAFF_UNAVAILABLE, voice=voice)
    resp.hangup()


def twiml_reply(message: str, action_url: str, language: str = "en",
                hang_up: bool = False, transfer: bool = False) -> str:
    """Say ``message``, then hang up, transfer to staff or listen for the next utterance.

    When listening, a recording is the fallback for speech Twilio could not
    recognise, and silence ends in a transfer.
    """
    resp = VoiceResponse()
    voice = _voice(language)
    resp.say(message, voice=voice)
    if hang_up:
        resp.hangup()
    elif transfer:
        _transfer(resp, voice)
    else:
        gather = resp.gather(input="speech", action=action_url, method="POST", timeout=10,
                             speech_timeout=3, language=GATHER_LANGUAGES.get(language, language))
        gather.say(SPEAK_PROMPT, voice=voice)
        resp.record(action=action_url, method="POST", timeout=10, max_length=30)
        resp.say(NO_INPUT, voice=voice)
        _transfer(resp, voice, announce=False)
    return str(resp)


def empty_reply() -> str:
    return str(VoiceResponse())
