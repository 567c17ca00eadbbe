# backend/brain.py
# Central brain for FixLens (text / audio / image all go here)

import base64
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional

import openai
from openai import OpenAI

from backend_logging import get_logger
from backend_matcher import ScoredMatch, find_relevant_issues
from backend_prompt import build_issues_context, build_system_prompt, build_user_content
from backend_settings import Settings


logger = get_logger("brain")

FALLBACK_REPLY = "Sorry, I couldn't generate a response. Please try again."

_SCRIPT_LANGUAGES = [
    (re.compile(r"[\u0600-\u06FF]"), "ar"),
    (re.compile(r"[\u0400-\u04FF]"), "ru"),
    (re.compile(r"[\u0370-\u03FF]"), "el"),
    (re.compile(r"[\u3040-\u30FF\u4E00-\u9FFF\uAC00-\uD7AF]"), "cjk"),
]

_AUDIO_EXTENSIONS = ("m4a", "mp3", "wav", "webm", "mp4", "ogg", "oga", "flac")

_AUDIO_MIME_HINTS = [
    (("m4a", "mp4", "aac"), "m4a"),
    (("mpeg", "mp3"), "mp3"),
    (("wav",), "wav"),
    (("webm",), "webm"),
    (("ogg",), "ogg"),
    (("flac",), "flac"),
]


class ProviderError(Exception):
    """The AI provider could not be reached or returned an error."""


def guess_language(text: Optional[str]) -> Optional[str]:
    """Rough script-based guess; the model still decides the reply language."""
    if not text or not text.strip():
        return None
    for pattern, lang in _SCRIPT_LANGUAGES:
        if pattern.search(text):
            return lang
    return "en"


def image_data_url(data: bytes, content_type: Optional[str] = None) -> str:
    mime = (content_type or "").lower()
    b64 = base64.b64encode(data).decode("ascii")

    if not mime.startswith("image/"):
        # sniff magic bytes
        if data[:2] == b"\xff\xd8":
            mime = "image/jpeg"
        elif data[:4] == b"\x89PNG":
            mime = "image/png"
        elif data[:4] == b"RIFF" and data[8:12] == b"WEBP":
            mime = "image/webp"
        else:
            mime = "image/jpeg"
    return f"data:{mime};base64,{b64}"


def audio_extension(content_type: Optional[str] = None, filename: Optional[str] = None) -> str:
    name = (filename or "").lower()
    for ext in _AUDIO_EXTENSIONS:
        if name.endswith("." + ext):
            return ext

    mime = (content_type or "").lower()
    for hints, ext in _AUDIO_MIME_HINTS:
        if any(h in mime for h in hints):
            return ext
    return "webm"


@dataclass
class Diagnosis:
    reply: str
    mode: str
    language: Optional[str]
    model: str
    matches: List[ScoredMatch] = field(default_factory=list)
    latency_ms: int = 0


class FixLensBrain:
    """
    Wraps the OpenAI client: transcription for voice notes and chat
    completions (text or vision) seeded with knowledge-base matches.
    """

    def __init__(self, client: Optional[OpenAI], settings: Settings):
        self.client = client
        self.settings = settings

    def _require_client(self) -> OpenAI:
        if self.client is None:
            raise ProviderError("OPENAI_API_KEY is not configured.")
        return self.client

    def transcribe(self, data: bytes, filename: Optional[str] = None, content_type: Optional[str] = None) -> str:
        client = self._require_client()
        upload_name = f"audio.{audio_extension(content_type, filename)}"
        try:
            transcription = client.audio.transcriptions.create(
                model=self.settings.openai_model_transcribe,
                file=(upload_name, data),
            )
        except openai.OpenAIError as e:
            logger.error("transcription_failed", error=str(e), error_type=type(e).__name__)
            raise ProviderError(f"Transcription failed: {e}") from e
        return (transcription.text or "").strip()

    def diagnose(
        self,
        mode: str,
        text: Optional[str],
        image: Optional[bytes] = None,
        image_content_type: Optional[str] = None,
        language: Optional[str] = None,
        systems: Optional[List[str]] = None,
    ) -> Diagnosis:
        client = self._require_client()
        start = time.perf_counter()

        matches = find_relevant_issues(text, self.settings.match_top_n, systems=systems)
        lang = language or guess_language(text)

        system_prompt = build_system_prompt(mode, build_issues_context(matches), lang)
        data_url = image_data_url(image, image_content_type) if image else None
        model = self.settings.openai_model_vision if data_url else self.settings.openai_model_text

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": build_user_content(mode, text, data_url)},
        ]

        try:
            completion = client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self.settings.openai_temperature,
            )
        except openai.OpenAIError as e:
            logger.error("completion_failed", mode=mode, model=model, error=str(e))
            raise ProviderError(f"Diagnosis failed: {e}") from e

        reply = ""
        if completion.choices:
            reply = (completion.choices[0].message.content or "").strip()

        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "diagnosis_complete",
            mode=mode,
            model=model,
            matches=len(matches),
            latency_ms=latency_ms,
        )
        return Diagnosis(
            reply=reply or FALLBACK_REPLY,
            mode=mode,
            language=lang,
            model=model,
            matches=matches,
            latency_ms=latency_ms,
        )
