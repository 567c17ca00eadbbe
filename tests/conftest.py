"""
Pytest fixtures for the FixLens backend tests.

Every test starts with a fresh settings cache, an empty knowledge cache and
no Supabase client. Provider calls go to FakeOpenAI, never to the network.
"""

from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

import backend_logs
import backend_matcher
from backend_matcher import IssueRecord
from backend_settings import get_settings


DATA_DIR = Path(__file__).resolve().parent.parent / "data"

_ENV_VARS = [
    "OPENAI_API_KEY",
    "OPENAI_KEY",
    "SUPABASE_URL",
    "NEXT_PUBLIC_SUPABASE_URL",
    "SUPABASE_KEY",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_ANON_KEY",
    "MAX_UPLOAD_BYTES",
    "MATCH_TOP_N",
]


def _reset_state() -> None:
    get_settings.cache_clear()
    backend_matcher.reset_collection()
    backend_logs.reset_supabase_client()


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KNOWLEDGE_PATH", str(DATA_DIR))
    _reset_state()
    yield
    _reset_state()


def make_record(**fields: Any) -> IssueRecord:
    return IssueRecord.model_validate(fields)


class FakeOpenAI:
    """Stands in for openai.OpenAI: records calls, returns canned replies."""

    def __init__(self, reply: Optional[str] = "fake reply", transcript: str = "", error: Optional[Exception] = None):
        self.reply = reply
        self.transcript = transcript
        self.error = error
        self.completion_calls: List[Dict[str, Any]] = []
        self.transcription_calls: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create_completion))
        self.audio = SimpleNamespace(transcriptions=SimpleNamespace(create=self._create_transcription))

    def _create_completion(self, **kwargs):
        self.completion_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    def _create_transcription(self, **kwargs):
        self.transcription_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text=self.transcript)


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI()
