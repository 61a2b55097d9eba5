import os


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DB_SLOW_MS = _int_env("DB_SLOW_MS", 100)

# Machine-to-machine calls from the voice vendor carry this in X-Elevenlabs-Secret
ELEVENLABS_FUNCTION_SECRET = os.getenv("ELEVENLABS_FUNCTION_SECRET", "")

# Bearer tokens for clinic staff sessions
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
OPENAI_TRANSCRIBE_MODEL = os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1")

ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
ELEVENLABS_MODEL_ID = os.getenv("ELEVENLABS_MODEL_ID", "eleven_monolingual_v1")
VENDOR_TIMEOUT_SECONDS = _int_env("VENDOR_TIMEOUT_SECONDS", 20)

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", "MediZap <noreply@medizap.app>")
DEFAULT_CLINIC_NAME = os.getenv("DEFAULT_CLINIC_NAME", "MediZap Clinic")

CONVERSATION_TTL_MINUTES = _int_env("CONVERSATION_TTL_MINUTES", 30)
CONVERSATION_MAX_ATTEMPTS = _int_env("CONVERSATION_MAX_ATTEMPTS", 3)


# Seed clinics from this JSON file or folder at startup when set
SEED_PATH = os.getenv("SEED_PATH", "")

# Phone calls: webhook signatures are checked with the account auth token
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
# Public URL Twilio posts to; needed behind proxies where request.url differs
TWILIO_WEBHOOK_URL = os.getenv("TWILIO_WEBHOOK_URL", "")
CLINIC_TRANSFER_NUMBER = os.getenv("CLINIC_TRANSFER_NUMBER", "")
