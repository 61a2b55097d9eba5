"""Email and speech/language clients, with the vendor SDKs stubbed out."""
import pytest
import requests

from medizap import config, emails, voice
from medizap.voice import LanguageModel, SpeechSynthesizer, Transcriber, VendorError, VoiceServices


# ---- confirmation email ----

CONFIRMATION = dict(
    to="jane@example.com",
    patient_name="Jane Roe",
    appointment_id="A0007",
    appointment_date="2030-01-07",
    appointment_time="09:00",
    doctor_name="Dr. Maya Patel",
    department_name="General Medicine",
    clinic_name="Sunrise Clinic",
)


def test_confirmation_html():
    html = emails.render_confirmation_html("Jane Roe", "Sunrise Clinic", "A0007", "2030-01-07", "14:30",
                                           "Dr. Maya Patel", None)
    assert "Monday, January 7, 2030" in html
    assert "2:30 PM" in html
    assert "<strong>A0007</strong>" in html
    assert "<strong>Department:</strong> -" in html


def test_email_skipped_without_key(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", "")
    sent = []
    monkeypatch.setattr(emails.resend.Emails, "send", lambda params: sent.append(params))
    assert emails.send_appointment_confirmation(**CONFIRMATION) is False
    assert sent == []


def test_email_sent(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", "re_test")
    sent = []
    monkeypatch.setattr(emails.resend.Emails, "send", lambda params: sent.append(params) or {"id": "1"})
    assert emails.send_appointment_confirmation(**CONFIRMATION) is True
    assert sent[0]["to"] == "jane@example.com"
    assert sent[0]["subject"] == "Appointment Confirmation - Sunrise Clinic"


def test_email_failure_is_swallowed(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", "re_test")

    def boom(params):
        raise RuntimeError("resend down")

    monkeypatch.setattr(emails.resend.Emails, "send", boom)
    assert emails.send_appointment_confirmation(**dict(CONFIRMATION, clinic_name=None)) is False


# ---- speech synthesis ----

class FakeResponse:
    def __init__(self, status_code, content=b""):
        self.status_code = status_code
        self.content = content


def test_speech_returns_data_url(monkeypatch):
    calls = []

    def fake_post(url, headers, json, timeout):
        calls.append((url, headers, json))
        return FakeResponse(200, b"\x01\x02")

    monkeypatch.setattr(voice.requests, "post", fake_post)
    url = SpeechSynthesizer(api_key="xi-key", voice_id="voice-1").synthesize("Hello")
    assert url == "data:audio/mpeg;base64,AQI="
    assert calls[0][0].endswith("/text-to-speech/voice-1")
    assert calls[0][1]["xi-api-key"] == "xi-key"
    assert calls[0][2]["text"] == "Hello"


def test_speech_failures_drop_audio(monkeypatch):
    monkeypatch.setattr(voice.requests, "post", lambda *a, **kw: FakeResponse(401))
    assert SpeechSynthesizer(api_key="xi-key").synthesize("Hello") is None

    def unreachable(*a, **kw):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(voice.requests, "post", unreachable)
    assert SpeechSynthesizer(api_key="xi-key").synthesize("Hello") is None
    assert SpeechSynthesizer(api_key="").synthesize("Hello") is None


# ---- language model and transcription ----

def test_missing_openai_key_is_vendor_error(monkeypatch):
    monkeypatch.setattr(config, "OPENAI_API_KEY", "")
    with pytest.raises(VendorError):
        LanguageModel().complete([{"role": "user", "content": "hi"}])
    with pytest.raises(VendorError):
        Transcriber().transcribe(b"audio")


def test_sdk_errors_become_vendor_errors():
    class Broken:
        class chat:
            class completions:
                @staticmethod
                def create(**kwargs):
                    raise RuntimeError("503")

    llm = LanguageModel(api_key="sk-test")
    llm._client = Broken()
    with pytest.raises(VendorError):
        llm.complete([{"role": "user", "content": "hi"}])


def test_with_credentials_swaps_clients():
    base = VoiceServices(llm="llm", transcriber="stt", speech="tts")
    assert base.with_credentials(None) is base
    assert base.with_credentials({}) is base

    swapped = base.with_credentials({"openaiApiKey": "sk-caller", "elevenLabsVoiceId": "v2"})
    assert isinstance(swapped.llm, LanguageModel) and swapped.llm.api_key == "sk-caller"
    assert isinstance(swapped.transcriber, Transcriber) and swapped.transcriber.api_key == "sk-caller"
    assert isinstance(swapped.speech, SpeechSynthesizer) and swapped.speech.voice_id == "v2"
