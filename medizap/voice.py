"""Clients for the speech and language vendors.

One failed call aborts the turn that needed it: completion and transcription
raise ``VendorError``; speech synthesis only loses the audio and returns None.
"""
import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests
from openai import OpenAI

from medizap import config

logger = logging.getLogger(__name__)

ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"


class VendorError(Exception):
    pass


class LanguageModel:
    """Chat completions that answer with a JSON object."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or config.OPENAI_API_KEY
        self.model = model or config.OPENAI_CHAT_MODEL
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise VendorError("OPENAI_API_KEY not configured")
            self._client = OpenAI(api_key=self.api_key, timeout=config.VENDOR_TIMEOUT_SECONDS)
        return self._client

    def complete(self, messages: list[dict[str, str]]) -> str:
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=0.3,
                max_tokens=400,
            )
        except Exception as e:
            logger.error("chat completion failed: %s", e)
            raise VendorError("language model unavailable") from e
        return response.choices[0].message.content or ""


class Transcriber:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or config.OPENAI_API_KEY
        self.model = model or config.OPENAI_TRANSCRIBE_MODEL
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise VendorError("OPENAI_API_KEY not configured")
            self._client = OpenAI(api_key=self.api_key, timeout=config.VENDOR_TIMEOUT_SECONDS)
        return self._client

    def transcribe(self, audio: bytes, language: str = "en", filename: str = "audio.webm") -> str:
        client = self._get_client()
        try:
            result = client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio),
                language=language,
            )
        except Exception as e:
            logger.error("transcription failed: %s", e)
            raise VendorError("transcription unavailable") from e
        return (result.text or "").strip()


class SpeechSynthesizer:
    def __init__(self, api_key: Optional[str] = None, voice_id: Optional[str] = None, model_id: Optional[str] = None):
        self.api_key = api_key or config.ELEVENLABS_API_KEY
        self.voice_id = voice_id or config.ELEVENLABS_VOICE_ID
        self.model_id = model_id or config.ELEVENLABS_MODEL_ID

    def synthesize(self, text: str) -> Optional[str]:
        """``data:audio/mpeg;base64,...`` or None when speech is unavailable."""
        if not self.api_key or not text:
            return None
        try:
            resp = requests.post(
                ELEVENLABS_TTS_URL.format(voice_id=self.voice_id),
                headers={
                    "Accept": "audio/mpeg",
                    "xi-api-key": self.api_key,
                    "Content-Type": "application/json",
                },
                json={
                    "text": text,
                    "model_id": self.model_id,
                    "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
                },
                timeout=config.VENDOR_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.warning("speech synthesis failed: %s", e)
            return None
        if resp.status_code != 200:
            logger.warning("speech synthesis returned %s", resp.status_code)
            return None
        return "data:audio/mpeg;base64," + base64.b64encode(resp.content).decode("ascii")


@dataclass
class VoiceServices:
    llm: Any
    transcriber: Any
    speech: Any

    def with_credentials(self, overrides: Optional[dict[str, Any]]) -> "VoiceServices":
        """Per-request vendor keys from the conversation request's ``config``."""
        if not overrides:
            return self
        llm, transcriber, speech = self.llm, self.transcriber, self.speech
        if overrides.get("openaiApiKey"):
            llm = LanguageModel(api_key=overrides["openaiApiKey"])
            transcriber = Transcriber(api_key=overrides["openaiApiKey"])
        if overrides.get("elevenLabsApiKey") or overrides.get("elevenLabsVoiceId"):
            speech = SpeechSynthesizer(
                api_key=overrides.get("elevenLabsApiKey"),
                voice_id=overrides.get("elevenLabsVoiceId"),
            )
        return VoiceServices(llm=llm, transcriber=transcriber, speech=speech)


_default_services: Optional[VoiceServices] = None


def get_voice_services() -> VoiceServices:
    """FastAPI dependency; tests swap it through ``app.dependency_overrides``."""
    global _default_services
    if _default_services is None:
        _default_services = VoiceServices(llm=LanguageModel(), transcriber=Transcriber(), speech=SpeechSynthesizer())
    return _default_services
